"""
Crash-safe, create-if-absent persistence of bundle files.
"""

import logging
import os
import uuid
from pathlib import Path
from typing import Optional, Union

from plugins.consolidate.errors import WriteError

logger = logging.getLogger(f"mkdocs.plugins.{__name__}")


class OutputWriter:
    """Write bundle files so readers never observe a partial file.

    The data goes to a unique temporary file next to the target, gets its
    mode, and is then hard-linked to the final name. Linking fails if the
    name already exists, so an existing fingerprinted file is never replaced.
    """

    def __init__(self, file_mode: Optional[int] = None):
        self.file_mode = file_mode

    def write(self, path: Union[str, Path], data: str, mode: Optional[int] = None) -> bool:
        """Persist `data` at `path` unless a file is already there.

        Returns True if this call created the file, False if another writer
        got there first. Raises `WriteError` on OS failures.
        """
        target = Path(path)
        mode = self.file_mode if mode is None else mode
        if target.exists():
            return False

        tmp = target.parent / f".{target.name}.{os.getpid()}.{uuid.uuid4().hex}.tmp"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o666)
            with os.fdopen(fd, "wb") as f:
                f.write(data.encode("utf8"))
                f.flush()
                os.fsync(f.fileno())
            if mode is not None:
                os.chmod(str(tmp), mode)
            return self._publish(tmp, target)
        except OSError as e:
            raise WriteError(f"Cannot write `{target}`: {e}") from e
        finally:
            self._cleanup(tmp)

    @staticmethod
    def _cleanup(tmp: Path) -> None:
        try:
            if tmp.exists():
                tmp.unlink()
        except OSError as e:
            logger.warning("Cannot remove temporary file `%s`: %s", tmp, e)

    @staticmethod
    def _publish(tmp: Path, target: Path) -> bool:
        try:
            os.link(str(tmp), str(target))
        except FileExistsError:
            logger.debug("[writer] %s already written by another process", target.name)
            return False
        except (NotImplementedError, PermissionError, AttributeError):
            # No hard links here. Same name means same content.
            os.replace(str(tmp), str(target))
        return True
