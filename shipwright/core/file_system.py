"""File-system collaborator used for citation checks."""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Union


class FileSystem(ABC):
    """Read-only view of a repository's working tree."""

    @abstractmethod
    def exists(self, path: str) -> bool:
        """Check whether a file exists at a repository-relative path."""

    @abstractmethod
    def read_lines(self, path: str) -> List[str]:
        """Read a file as a list of lines without line terminators."""

    def line_count(self, path: str) -> int:
        return len(self.read_lines(path))


class LocalFileSystem(FileSystem):
    """File system rooted at a repository directory on disk."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        candidate = Path(path)
        if candidate.is_absolute():
            return candidate
        return self.root / candidate

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def read_lines(self, path: str) -> List[str]:
        with open(self._resolve(path), "r", encoding="utf-8", errors="replace") as f:
            return f.read().splitlines()


class InMemoryFileSystem(FileSystem):
    """Dictionary-backed file system, handy for tests and dry runs."""

    def __init__(self, files: Optional[Dict[str, str]] = None):
        self.files: Dict[str, str] = dict(files or {})

    def exists(self, path: str) -> bool:
        return path in self.files

    def read_lines(self, path: str) -> List[str]:
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path].splitlines()
