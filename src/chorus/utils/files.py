"""File access for auxiliary artifacts."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Protocol


class FileStore(Protocol):
    """Read/write/delete access to artifact files."""

    def read(self, path: str | Path) -> str | None:
        ...

    def write(self, path: str | Path, content: str) -> None:
        ...

    def delete(self, path: str | Path) -> bool:
        ...


class FileService:
    """Filesystem-backed FileStore rooted at a project directory."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _resolve(self, path: str | Path) -> Path:
        path = Path(path)
        return path if path.is_absolute() else self.root / path

    def read(self, path: str | Path) -> str | None:
        """Read a file, or None if it does not exist."""
        target = self._resolve(path)
        if not target.exists():
            return None
        return target.read_text()

    def write(self, path: str | Path, content: str) -> None:
        """Write a file atomically, creating parent directories."""
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
            os.replace(tmp, target)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def delete(self, path: str | Path) -> bool:
        """Delete a file. Returns False if it did not exist."""
        target = self._resolve(path)
        if not target.exists():
            return False
        target.unlink()
        return True
