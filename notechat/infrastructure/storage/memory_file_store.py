from typing import Dict, List, Set
import asyncio
import posixpath

from .file_store import FileStore, normalize_path


class InMemoryFileStore(FileStore):
    """Dictionary-backed file store for tests and ephemeral sessions"""

    def __init__(self, files: Dict[str, str] = None):
        super().__init__()
        self.files: Dict[str, str] = {}
        self.folders: Set[str] = set()
        self._lock = asyncio.Lock()
        for path, content in (files or {}).items():
            path = normalize_path(path)
            self.files[path] = content
            self._add_parents(path)

    def _add_parents(self, path: str) -> None:
        parent = posixpath.dirname(path)
        while parent:
            self.folders.add(parent)
            parent = posixpath.dirname(parent)

    async def read(self, path: str) -> str:
        path = normalize_path(path)
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    async def create(self, path: str, content: str) -> None:
        path = normalize_path(path)
        async with self._lock:
            if path in self.files:
                raise FileExistsError(path)
            self.files[path] = content
            self._add_parents(path)
        self._emit("create", path)

    async def write(self, path: str, content: str) -> None:
        path = normalize_path(path)
        async with self._lock:
            if path not in self.files:
                raise FileNotFoundError(path)
            self.files[path] = content
        self._emit("modify", path)

    async def delete(self, path: str) -> None:
        path = normalize_path(path)
        async with self._lock:
            if path not in self.files:
                raise FileNotFoundError(path)
            del self.files[path]
        self._emit("delete", path)

    async def rename(self, old_path: str, new_path: str) -> None:
        old_path = normalize_path(old_path)
        new_path = normalize_path(new_path)
        async with self._lock:
            if old_path not in self.files:
                raise FileNotFoundError(old_path)
            if new_path in self.files:
                raise FileExistsError(new_path)
            self.files[new_path] = self.files.pop(old_path)
            self._add_parents(new_path)
        self._emit("rename", new_path, old_path=old_path)

    async def exists(self, path: str) -> bool:
        return normalize_path(path) in self.files

    async def list_files(self, folder: str) -> List[str]:
        folder = normalize_path(folder)
        return sorted(p for p in self.files if posixpath.dirname(p) == folder)

    async def list_all_files(self) -> List[str]:
        return sorted(self.files)

    async def ensure_folder(self, folder: str) -> None:
        folder = normalize_path(folder)
        while folder:
            self.folders.add(folder)
            folder = posixpath.dirname(folder)
