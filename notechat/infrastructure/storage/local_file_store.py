from typing import Dict, Iterable, List, Optional, Set, Tuple
import asyncio
import pathlib

from watchfiles import Change, awatch
import structlog

from notechat.domain.errors import FileStoreError
from .file_store import FileStore, normalize_path

logger = structlog.get_logger(__name__)

# (mtime_ns, size) of a file after our own write, None after our own delete
Signature = Optional[Tuple[int, int]]

_CHANGE_KINDS = {
    Change.added: "create",
    Change.modified: "modify",
    Change.deleted: "delete",
}


class LocalFileStore(FileStore):
    """
    File store rooted at a directory on disk.

    Writes made through the store emit events immediately. With
    start_watching() the root is also watched for changes made by other
    programs; watcher reports that match the store's own last write or
    delete of a path are dropped so each change is announced once.
    """

    def __init__(
        self,
        root: pathlib.Path,
        watch_debounce_ms: int = 300,
        force_polling: Optional[bool] = None
    ):
        super().__init__()
        self.root = pathlib.Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

        self.watch_debounce_ms = watch_debounce_ms
        self.force_polling = force_polling
        self._own_changes: Dict[str, Signature] = {}
        self._watch_task: Optional[asyncio.Task] = None
        self._watch_stop: Optional[asyncio.Event] = None

    def _abs(self, path: str) -> pathlib.Path:
        target = (self.root / normalize_path(path)).resolve()
        if target != self.root and self.root not in target.parents:
            raise FileStoreError(f"Path escapes the vault root: {path}")
        return target

    @staticmethod
    def _signature(target: pathlib.Path) -> Signature:
        try:
            stat = target.stat()
        except FileNotFoundError:
            return None
        return stat.st_mtime_ns, stat.st_size

    def _record(self, path: str, target: Optional[pathlib.Path] = None) -> None:
        if self.is_watching:
            self._own_changes[path] = self._signature(target) if target is not None else None

    async def read(self, path: str) -> str:
        target = self._abs(path)
        if not target.is_file():
            raise FileNotFoundError(path)
        return await asyncio.to_thread(target.read_text, encoding="utf-8")

    async def create(self, path: str, content: str) -> None:
        target = self._abs(path)
        if target.exists():
            raise FileExistsError(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_text, content, encoding="utf-8")
        path = normalize_path(path)
        self._record(path, target)
        self._emit("create", path)

    async def write(self, path: str, content: str) -> None:
        target = self._abs(path)
        if not target.is_file():
            raise FileNotFoundError(path)
        tmp = target.with_suffix(target.suffix + ".tmp")
        await asyncio.to_thread(tmp.write_text, content, encoding="utf-8")
        tmp.replace(target)
        path = normalize_path(path)
        self._record(path, target)
        self._emit("modify", path)

    async def delete(self, path: str) -> None:
        target = self._abs(path)
        if not target.is_file():
            raise FileNotFoundError(path)
        await asyncio.to_thread(target.unlink)
        path = normalize_path(path)
        self._record(path)
        self._emit("delete", path)

    async def rename(self, old_path: str, new_path: str) -> None:
        source = self._abs(old_path)
        target = self._abs(new_path)
        if not source.is_file():
            raise FileNotFoundError(old_path)
        if target.exists():
            raise FileExistsError(new_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(source.rename, target)
        old_path, new_path = normalize_path(old_path), normalize_path(new_path)
        self._record(old_path)
        self._record(new_path, target)
        self._emit("rename", new_path, old_path=old_path)

    async def exists(self, path: str) -> bool:
        return self._abs(path).is_file()

    async def list_files(self, folder: str) -> List[str]:
        directory = self._abs(folder)
        if not directory.is_dir():
            return []
        return sorted(
            p.relative_to(self.root).as_posix()
            for p in directory.iterdir()
            if p.is_file() and not p.name.endswith(".tmp")
        )

    async def list_all_files(self) -> List[str]:
        return sorted(
            p.relative_to(self.root).as_posix()
            for p in self.root.rglob("*")
            if p.is_file() and not p.name.endswith(".tmp")
        )

    async def ensure_folder(self, folder: str) -> None:
        self._abs(folder).mkdir(parents=True, exist_ok=True)

    # Watching

    @property
    def is_watching(self) -> bool:
        return self._watch_task is not None and not self._watch_task.done()

    async def start_watching(self) -> None:
        if self.is_watching:
            return
        self._watch_stop = asyncio.Event()
        self._watch_task = asyncio.create_task(self._watch())
        logger.info("Watching vault for outside changes", root=str(self.root))

    async def stop_watching(self) -> None:
        if self._watch_task is None:
            return
        self._watch_stop.set()
        task, self._watch_task = self._watch_task, None
        try:
            await asyncio.wait_for(task, timeout=5)
        except asyncio.TimeoutError:
            logger.warning("Vault watcher did not stop in time")
        except Exception as e:
            logger.error("Vault watcher failed", error=str(e))
        self._own_changes.clear()
        logger.info("Stopped watching vault", root=str(self.root))

    async def _watch(self) -> None:
        async for changes in awatch(
            self.root,
            stop_event=self._watch_stop,
            debounce=self.watch_debounce_ms,
            force_polling=self.force_polling,
        ):
            self.handle_changes(changes)

    def handle_changes(self, changes: Iterable[Tuple[Change, str]]) -> None:
        """Turn a batch of watcher reports into change events"""

        seen: Set[str] = set()
        for change, raw_path in sorted(changes, key=lambda c: (c[1], c[0])):
            target = pathlib.Path(raw_path)
            if target.name.endswith(".tmp"):
                continue
            try:
                path = target.resolve().relative_to(self.root).as_posix()
            except ValueError:
                continue
            if path in seen:
                continue
            seen.add(path)

            current = self._signature(target) if target.is_file() else None
            if change == Change.deleted and current is not None:
                # replaced in place, e.g. an atomic save
                change = Change.modified
            elif change != Change.deleted and current is None:
                if target.exists():
                    continue
                change = Change.deleted

            if path in self._own_changes:
                if self._own_changes[path] == current:
                    continue
                del self._own_changes[path]

            self._emit(_CHANGE_KINDS[change], path)
