"""
File identity used for change detection and bundle naming.
"""

import hashlib
import os

from plugins.consolidate.errors import ConfigurationError, PathResolutionError

MTIME = "mtime"
CONTENT_HASH = "content-hash"

# Names used by older configurations.
ALGORITHM_ALIASES = {
    "filemtime": MTIME,
    "sha1": CONTENT_HASH,
}


def normalize_algorithm(name: str) -> str:
    algorithm = ALGORITHM_ALIASES.get(name, name)
    if algorithm not in (MTIME, CONTENT_HASH):
        raise ConfigurationError(f"Unknown file check algorithm `{name}`")
    return algorithm


class ContentFingerprinter:
    """Compute a stable identity string for a file.

    `mtime` is cheap (modification time and size), `content-hash` hashes the
    full bytes and also catches replacements that keep the timestamp.
    """

    chunk_size = 64 * 1024

    def __init__(self, algorithm: str = CONTENT_HASH):
        self.algorithm = normalize_algorithm(algorithm)

    def fingerprint(self, path: str) -> str:
        try:
            if self.algorithm == MTIME:
                st = os.stat(path)
                return f"{st.st_mtime_ns}:{st.st_size}"

            digest = hashlib.sha1()
            with open(path, "rb") as f:
                for chunk in iter(lambda: f.read(self.chunk_size), b""):
                    digest.update(chunk)
            return digest.hexdigest()
        except OSError as e:
            raise PathResolutionError(f"Cannot fingerprint `{path}`: {e}") from e
