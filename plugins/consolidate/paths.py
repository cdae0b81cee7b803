"""
Map asset references (URLs or relative paths) onto the web root.
"""

import os
from typing import NamedTuple, Optional, Sequence, Tuple
from urllib.parse import urlsplit

from plugins.consolidate.errors import PathResolutionError

LOCAL = "local"
EXTERNAL = "external"

# Schemes that are never resolved, read or rewritten.
DEFAULT_SCHEMAS: Tuple[str, ...] = ("//", "http://", "https://", "ftp://")


class ResolvedPath(NamedTuple):
    kind: str
    absolute_path: Optional[str]
    public_url: str


def split_reference(reference: str) -> Tuple[str, str]:
    """Split `reference` into its path and its `?query#fragment` suffix."""
    cut = len(reference)
    for marker in ("?", "#"):
        idx = reference.find(marker)
        if idx != -1:
            cut = min(cut, idx)
    return reference[:cut], reference[cut:]


class PathResolver:
    """Resolve asset references against a `base_path`/`web_path` alias pair.

    - `base_path`: absolute filesystem directory served as the web root.
    - `web_path`: public URL of that directory (`/`, `/docs/` or a full URL).
    - `schemas`: reference prefixes treated as external; `data:` always is.
    """

    def __init__(self, base_path: str, web_path: str = "/", schemas: Sequence[str] = DEFAULT_SCHEMAS):
        self.base_path = os.path.normpath(os.path.abspath(base_path))
        self.web_path = web_path or "/"
        self.schemas = tuple(s.lower() for s in schemas)
        # Path part of `web_path`, used to strip root-relative references.
        self._web_prefix = "/" + urlsplit(self.web_path).path.strip("/")
        if not self._web_prefix.endswith("/"):
            self._web_prefix += "/"

    def is_external(self, reference: str) -> bool:
        ref = reference.strip().lower()
        return ref.startswith(self.schemas) or ref.startswith("data:")

    def public_url(self, absolute_path: str) -> str:
        """Return the public URL of a file located under `base_path`."""
        rel = os.path.relpath(absolute_path, self.base_path).replace(os.sep, "/")
        if rel == ".":
            rel = ""
        return self.web_path.rstrip("/") + "/" + rel

    def contains(self, absolute_path: str) -> bool:
        path = os.path.normpath(os.path.abspath(absolute_path))
        try:
            return os.path.commonpath([path, self.base_path]) == self.base_path
        except ValueError:
            # Different drives on Windows.
            return False

    def resolve(self, reference: str, base_dir: Optional[str] = None, must_exist: bool = False) -> ResolvedPath:
        """Classify and resolve `reference`.

        External references are returned untouched. Local ones are resolved
        relative to `base_dir` (defaults to `base_path`), or through
        `web_path` when root-relative, and normalized.

        Raises `PathResolutionError` when the result escapes `base_path`, or
        when `must_exist` is set and no file is there.
        """
        reference = reference.strip()
        if self.is_external(reference):
            return ResolvedPath(EXTERNAL, None, reference)

        path, suffix = split_reference(reference)
        if not path:
            raise PathResolutionError(f"Empty asset reference `{reference}`")

        if path.startswith("/"):
            if not (path + "/").startswith(self._web_prefix):
                raise PathResolutionError(f"`{reference}` is outside of web path `{self.web_path}`")
            candidate = os.path.join(self.base_path, path[len(self._web_prefix):])
        else:
            candidate = os.path.join(base_dir or self.base_path, path)

        candidate = os.path.normpath(os.path.abspath(candidate))
        if not self.contains(candidate):
            raise PathResolutionError(f"`{reference}` resolves outside of web root `{self.base_path}`")
        if must_exist and not os.path.isfile(candidate):
            raise PathResolutionError(f"Asset file not found `{candidate}`")

        return ResolvedPath(LOCAL, candidate, self.public_url(candidate) + suffix)
