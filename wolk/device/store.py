"""Directory-based storage for files received from the platform."""

from __future__ import annotations

import hashlib
from pathlib import Path

from loguru import logger


class FileStore:
    """Flat directory of received files, addressed by file name.

    Parameters
    ----------
    file_dir:
        Directory holding the files. Created on first write.
    """

    def __init__(self, file_dir: str | Path) -> None:
        self._dir = Path(file_dir).expanduser()

    @property
    def path(self) -> Path:
        return self._dir

    def _resolve(self, name: str) -> Path:
        if not name or name in (".", "..") or "/" in name or "\\" in name:
            raise ValueError(f"invalid file name {name!r}")
        return self._dir / name

    def get_file(self, name: str) -> Path | None:
        """Return the path of a stored file, or None if it is absent."""
        try:
            path = self._resolve(name)
        except ValueError:
            return None
        return path if path.is_file() else None

    def store_file(self, name: str, data: bytes) -> Path:
        """Write *data* under *name*, replacing any existing file."""
        path = self._resolve(name)
        self._dir.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".part")
        tmp.write_bytes(data)
        tmp.replace(path)
        logger.info(
            "[Store] stored {!r} ({} bytes, sha256={}…)",
            name, len(data), hashlib.sha256(data).hexdigest()[:12],
        )
        return path

    def remove_file(self, name: str) -> bool:
        """Delete a stored file. Returns True if it existed."""
        path = self.get_file(name)
        if path is None:
            return False
        path.unlink()
        logger.info("[Store] removed {!r}", name)
        return True

    def list_files(self) -> list[str]:
        """Return the names of all stored files, sorted."""
        if not self._dir.is_dir():
            return []
        return sorted(
            p.name for p in self._dir.iterdir()
            if p.is_file() and not p.name.endswith(".part")
        )
