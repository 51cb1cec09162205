from __future__ import annotations

import asyncio
import copy
import logging
from functools import lru_cache
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict

from .events import ChangeLog

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ADMIN_KEY: str = "change-me"
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:8080"
    CORS_ORIGIN_REGEX: Optional[str] = None
    ROOM_ID: str = "party-room"
    ROOM_CODE: str = "EVENT"
    QUIZ_TITLE: str = "Quiz Night"
    DEFAULT_TIME_LIMIT: int = 20
    POINTS_PER_CORRECT: int = 10
    AUTO_REVEAL: bool = False
    VERSIONED_STATE_WRITES: bool = False
    MAX_WRITE_RETRIES: int = 3
    CHANGE_LOG_LIMIT: int = 1000


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


class StoreError(RuntimeError):
    """A write or read against the shared tree failed."""


class StaleWriteError(StoreError):
    """A versioned write lost the race against another writer."""


class Snapshot(BaseModel):
    path: str
    seq: int
    value: Any = None


def split_path(path: str) -> List[str]:
    return [segment for segment in path.split("/") if segment]


def _paths_overlap(a: List[str], b: List[str]) -> bool:
    n = min(len(a), len(b))
    return a[:n] == b[:n]


class TreeSubscription:
    """Async stream of whole-subtree snapshots for one path.

    The first item is the value at subscription time (``None`` when the path
    is empty); every later item follows a write that touched the path.
    """

    def __init__(self, tree: "InMemoryTree", path: str):
        self._tree = tree
        self.path = "/".join(split_path(path))
        self.segments = split_path(path)
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def _push(self, snapshot: Snapshot) -> None:
        if not self.closed:
            self._queue.put_nowait(snapshot)

    async def next(self) -> Snapshot:
        if self.closed:
            raise StopAsyncIteration
        snapshot = await self._queue.get()
        if snapshot is None:
            raise StopAsyncIteration
        return snapshot

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._tree._unsubscribe(self)
        # wake up a consumer blocked on next()
        self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Snapshot:
        return await self.next()


class InMemoryTree:
    """In-process stand-in for the realtime database: a JSON tree addressed by
    slash-separated paths with whole-subtree subscriptions."""

    def __init__(self, change_log_limit: Optional[int] = None):
        self._root: Dict[str, Any] = {}
        self._lock = asyncio.Lock()
        self._subscriptions: List[TreeSubscription] = []
        self.changes = ChangeLog(limit=change_log_limit or settings.CHANGE_LOG_LIMIT)

    @property
    def seq(self) -> int:
        return self.changes.seq

    def _read(self, segments: List[str]) -> Any:
        node: Any = self._root
        for segment in segments:
            if isinstance(node, dict):
                node = node.get(segment)
            elif isinstance(node, list) and segment.isdigit() and int(segment) < len(node):
                node = node[int(segment)]
            else:
                return None
            if node is None:
                return None
        if isinstance(node, dict) and not node:
            return None
        return node

    @staticmethod
    def _as_map(items: List[Any]) -> Dict[str, Any]:
        return {str(i): v for i, v in enumerate(items) if v is not None}

    def _container(self, segments: List[str]) -> Dict[str, Any]:
        """Walk to the parent of ``segments``, creating maps on the way.

        Lists met on the way become string-keyed maps, which is why readers
        must accept either shape.
        """
        node = self._root
        for segment in segments[:-1]:
            child = node.get(segment)
            if isinstance(child, list):
                child = self._as_map(child)
                node[segment] = child
            elif not isinstance(child, dict):
                child = {}
                node[segment] = child
            node = child
        return node

    def _write(self, segments: List[str], value: Any) -> None:
        if not segments:
            raise ValueError("Cannot write to the root of the tree")
        if value is None:
            self._delete(segments)
            return
        parent = self._container(segments)
        parent[segments[-1]] = copy.deepcopy(value)

    def _delete(self, segments: List[str]) -> None:
        trail = []
        node: Dict[str, Any] = self._root
        for segment in segments[:-1]:
            child = node.get(segment)
            if isinstance(child, list):
                child = self._as_map(child)
                node[segment] = child
            if not isinstance(child, dict):
                return
            trail.append((node, segment))
            node = child
        if segments[-1] not in node:
            return
        del node[segments[-1]]
        # prune parents left empty
        for parent, key in reversed(trail):
            child = parent[key]
            if isinstance(child, (dict, list)) and not child:
                del parent[key]
            else:
                break

    def _notify(self, changed: List[List[str]], seq: int) -> None:
        for sub in list(self._subscriptions):
            if any(_paths_overlap(sub.segments, c) for c in changed):
                value = copy.deepcopy(self._read(sub.segments))
                sub._push(Snapshot(path=sub.path, seq=seq, value=value))

    def _commit(self, changed: List[List[str]]) -> None:
        seq = self.changes.append(["/".join(c) for c in changed])
        self._notify(changed, seq)

    async def get(self, path: str) -> Any:
        async with self._lock:
            return copy.deepcopy(self._read(split_path(path)))

    async def snapshot(self, path: str) -> Snapshot:
        async with self._lock:
            segments = split_path(path)
            return Snapshot(path="/".join(segments), seq=self.seq, value=copy.deepcopy(self._read(segments)))

    async def set(self, path: str, value: Any) -> None:
        segments = split_path(path)
        async with self._lock:
            self._write(segments, value)
            self._commit([segments])

    async def update(self, updates: Dict[str, Any]) -> None:
        """Apply several path writes as one atomic step."""
        if not updates:
            return
        parsed = [(split_path(p), v) for p, v in updates.items()]
        if any(not segments for segments, _ in parsed):
            raise ValueError("Cannot write to the root of the tree")
        async with self._lock:
            for segments, value in parsed:
                self._write(segments, value)
            self._commit([segments for segments, _ in parsed])

    async def remove(self, path: str) -> None:
        segments = split_path(path)
        if not segments:
            raise ValueError("Cannot remove the root of the tree")
        async with self._lock:
            self._delete(segments)
            self._commit([segments])

    async def set_if_revision(self, path: str, value: Any, expected: int) -> None:
        """Write ``value`` only when the stored ``revision`` still equals ``expected``."""
        segments = split_path(path)
        async with self._lock:
            current = self._read(segments)
            revision = 0
            if isinstance(current, dict):
                try:
                    revision = int(current.get("revision") or 0)
                except (TypeError, ValueError):
                    revision = 0
            if revision != expected:
                raise StaleWriteError(f"{path}: expected revision {expected}, found {revision}")
            self._write(segments, value)
            self._commit([segments])

    def subscribe(self, path: str) -> TreeSubscription:
        sub = TreeSubscription(self, path)
        self._subscriptions.append(sub)
        sub._push(Snapshot(path=sub.path, seq=self.seq, value=copy.deepcopy(self._read(sub.segments))))
        return sub

    def _unsubscribe(self, sub: TreeSubscription) -> None:
        try:
            self._subscriptions.remove(sub)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
