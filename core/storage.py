"""Object store implementations and background persistence.

FileObjectStore writes atomically (temp file, then rename) and keeps the
content type and metadata in a ``.meta.json`` sidecar. MemoryObjectStore
backs tests and paper sessions that do not need durability.
"""

import asyncio
import json
import os
import tempfile
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from core.errors import PersistenceFailure
from core.logging_utils import get_logger
from core.trading_interfaces import IObjectStore

logger = get_logger(__name__)

META_SUFFIX = ".meta.json"


def _normalize(path: str) -> str:
    path = path.strip().lstrip("/")
    if not path or ".." in Path(path).parts:
        raise ValueError(f"invalid object path: {path!r}")
    return path


class MemoryObjectStore(IObjectStore):
    """Dict-backed store."""

    def __init__(self):
        self.location = f"memory-{uuid.uuid4().hex}"
        self._objects: Dict[str, bytes] = {}
        self._meta: Dict[str, dict] = {}

    async def put(self, path, data, content_type="application/json", metadata=None):
        path = _normalize(path)
        self._objects[path] = bytes(data)
        self._meta[path] = {"content_type": content_type, "metadata": dict(metadata or {})}

    async def get(self, path):
        return self._objects.get(_normalize(path))

    async def list(self, prefix):
        prefix = prefix.lstrip("/")
        return sorted(p for p in self._objects if p.startswith(prefix))

    async def delete(self, path):
        path = _normalize(path)
        self._meta.pop(path, None)
        return self._objects.pop(path, None) is not None

    def metadata(self, path: str) -> Optional[dict]:
        return self._meta.get(_normalize(path))


class FileObjectStore(IObjectStore):
    """Filesystem store rooted at ``root``."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.location = str(self.root.resolve())

    def _resolve(self, path: str) -> Path:
        return self.root / _normalize(path)

    def _atomic_write(self, target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(dir=target.parent, prefix=".obj_", suffix=".tmp")
        try:
            with os.fdopen(temp_fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, target)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def _put_sync(self, path: str, data: bytes, content_type: str, metadata: Optional[dict]) -> None:
        target = self._resolve(path)
        self._atomic_write(target, data)
        meta = {"content_type": content_type, "metadata": dict(metadata or {})}
        self._atomic_write(target.with_name(target.name + META_SUFFIX), json.dumps(meta).encode("utf-8"))

    def _get_sync(self, path: str) -> Optional[bytes]:
        target = self._resolve(path)
        if not target.exists():
            return None
        return target.read_bytes()

    def _list_sync(self, prefix: str) -> List[str]:
        if not self.root.exists():
            return []
        prefix = prefix.lstrip("/")
        found = []
        for file in self.root.rglob("*"):
            if not file.is_file() or file.name.endswith(META_SUFFIX) or file.name.startswith(".obj_"):
                continue
            rel = file.relative_to(self.root).as_posix()
            if rel.startswith(prefix):
                found.append(rel)
        return sorted(found)

    def _delete_sync(self, path: str) -> bool:
        target = self._resolve(path)
        meta = target.with_name(target.name + META_SUFFIX)
        if meta.exists():
            meta.unlink()
        if target.exists():
            target.unlink()
            return True
        return False

    async def put(self, path, data, content_type="application/json", metadata=None):
        await asyncio.to_thread(self._put_sync, path, bytes(data), content_type, metadata)

    async def get(self, path):
        return await asyncio.to_thread(self._get_sync, path)

    async def list(self, prefix):
        return await asyncio.to_thread(self._list_sync, prefix)

    async def delete(self, path):
        return await asyncio.to_thread(self._delete_sync, path)


async def put_json(store: IObjectStore, path: str, payload: Any, metadata: Optional[dict] = None) -> None:
    """Serialize and write; wraps any store error as PersistenceFailure."""
    data = json.dumps(payload, default=str, indent=2).encode("utf-8")
    try:
        await store.put(path, data, "application/json", metadata)
    except Exception as e:
        raise PersistenceFailure(path, e) from e


async def get_json(store: IObjectStore, path: str) -> Optional[Any]:
    """Read and decode; a corrupted object reads as missing."""
    raw = await store.get(path)
    if raw is None:
        return None
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.error("[STORE] Corrupted object %s: %s", path, e)
        return None


class BackgroundSaver:
    """Detached JSON writes that never block the caller.

    Failures go to the log and a counter; in-memory state keeps working
    until the next successful write.
    """

    def __init__(self, store: IObjectStore):
        self.store = store
        self._tasks: Set[asyncio.Task] = set()
        self.failures = 0
        self.last_error: Optional[str] = None

    def submit(self, path: str, payload: Any, metadata: Optional[dict] = None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._save(path, payload, metadata))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _save(self, path: str, payload: Any, metadata: Optional[dict]) -> bool:
        try:
            await put_json(self.store, path, payload, metadata)
            self.last_error = None
            return True
        except PersistenceFailure as e:
            self.failures += 1
            self.last_error = str(e)
            logger.error("[STORE] Background save failed for %s: %s", path, e.cause)
            return False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @property
    def degraded(self) -> bool:
        return self.last_error is not None

    async def drain(self) -> None:
        """Wait for outstanding saves (used at shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
