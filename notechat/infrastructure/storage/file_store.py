from abc import ABC, abstractmethod
from typing import Callable, List, Literal, Optional
from pydantic import BaseModel
import posixpath

import structlog

logger = structlog.get_logger(__name__)


class FileChangeEvent(BaseModel):
    """A change notification emitted by a file store"""
    kind: Literal["create", "modify", "delete", "rename"]
    path: str
    old_path: Optional[str] = None


FileChangeListener = Callable[[FileChangeEvent], None]


def normalize_path(path: str) -> str:
    """Normalize a vault path to POSIX form without leading/trailing slashes"""
    normalized = posixpath.normpath(path.replace("\\", "/")).strip("/")
    return "" if normalized == "." else normalized


def basename(path: str) -> str:
    """File name without folder and extension"""
    name = posixpath.basename(path)
    stem, _ = posixpath.splitext(name)
    return stem


class FileStore(ABC):
    """
    Text file store backing notes and prompts.

    Change events are delivered synchronously to every listener before the
    mutating call returns, so a caller can mark its own writes beforehand
    and have listeners recognize them.
    """

    def __init__(self):
        self._listeners: List[FileChangeListener] = []

    def subscribe(self, listener: FileChangeListener) -> Callable[[], None]:
        """Register a change listener; returns the unsubscribe callable"""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: str, path: str, old_path: Optional[str] = None) -> None:
        event = FileChangeEvent(kind=kind, path=path, old_path=old_path)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error("Error in file change listener", kind=kind, path=path, error=str(e))

    async def start_watching(self) -> None:
        """Begin reporting changes made outside this store; no-op by default"""

    async def stop_watching(self) -> None:
        """Stop reporting outside changes"""

    @abstractmethod
    async def read(self, path: str) -> str:
        """Read a file; raises FileNotFoundError when absent"""

    @abstractmethod
    async def create(self, path: str, content: str) -> None:
        """Create a new file; raises FileExistsError when present"""

    @abstractmethod
    async def write(self, path: str, content: str) -> None:
        """Replace the content of an existing file"""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Delete a file"""

    @abstractmethod
    async def rename(self, old_path: str, new_path: str) -> None:
        """Move a file to a new path"""

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """Whether a file exists at path"""

    @abstractmethod
    async def list_files(self, folder: str) -> List[str]:
        """Paths of the files directly inside folder, sorted"""

    @abstractmethod
    async def list_all_files(self) -> List[str]:
        """Paths of every file in the store, sorted"""

    @abstractmethod
    async def ensure_folder(self, folder: str) -> None:
        """Create folder (and parents) if missing"""
