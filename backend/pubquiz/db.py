from __future__ import annotations

import asyncio
import copy
import inspect
import itertools
from functools import lru_cache
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Tuple, Union

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from pymongo import ReturnDocument


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"
    CORS_ORIGIN_REGEX: Optional[str] = None
    DEFAULT_TIMER_SEC: int = Field(60, ge=40, le=60)
    CHUNK_SIZE: int = Field(10, gt=0)
    REVEAL_ANSWERS: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[str] = None


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


class InMemoryCursor:
    def __init__(self, collection: "InMemoryCollection", query: Dict[str, Any]):
        self._collection = collection
        self._query = query or {}
        self._sort_key: Optional[str] = None
        self._sort_direction: int = 1
        self._limit: Optional[int] = None
        self._materialised: Optional[Iterator[Dict[str, Any]]] = None

    def sort(self, key: str, direction: int):
        self._sort_key = key
        self._sort_direction = direction
        return self

    def limit(self, limit: int):
        self._limit = limit
        return self

    async def _ensure_materialised(self):
        if self._materialised is not None:
            return

        docs = await self._collection._find_all(self._query)

        if self._sort_key is not None:
            reverse = self._sort_direction < 0
            docs.sort(key=lambda d: d.get(self._sort_key), reverse=reverse)

        if self._limit is not None:
            docs = docs[: self._limit]

        self._materialised = iter(docs)

    def __aiter__(self):
        return self

    async def __anext__(self):
        await self._ensure_materialised()
        assert self._materialised is not None
        try:
            return next(self._materialised)
        except StopIteration as exc:
            raise StopAsyncIteration from exc


class InMemoryCollection:
    def __init__(self):
        self._docs: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()

    async def _find_all(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        async with self._lock:
            return [copy.deepcopy(doc) for doc in self._docs if self._matches(doc, query)]

    def find(self, query: Dict[str, Any]):
        return InMemoryCursor(self, query)

    async def insert_one(self, document: Dict[str, Any]):
        async with self._lock:
            self._docs.append(copy.deepcopy(document))

    async def delete_many(self, query: Dict[str, Any]):
        async with self._lock:
            self._docs = [doc for doc in self._docs if not self._matches(doc, query)]

    async def find_one_and_update(
        self,
        query: Dict[str, Any],
        update: Dict[str, Any],
        *,
        upsert: bool = False,
        return_document: bool = ReturnDocument.BEFORE,
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    original = copy.deepcopy(doc)
                    updated = self._apply_update(copy.deepcopy(doc), update)
                    self._docs[idx] = updated
                    return copy.deepcopy(updated if return_document == ReturnDocument.AFTER else original)

            if upsert:
                new_doc = copy.deepcopy(query)
                new_doc = self._apply_update(new_doc, update)
                self._docs.append(new_doc)
                if return_document == ReturnDocument.AFTER:
                    return copy.deepcopy(new_doc)
                return None

        return None

    def _apply_update(self, doc: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        for op, payload in update.items():
            if op == "$set":
                for key, value in payload.items():
                    doc[key] = copy.deepcopy(value)
            elif op == "$inc":
                for key, value in payload.items():
                    current = doc.get(key, 0)
                    doc[key] = current + value
            else:  # pragma: no cover - only the above operators are used today
                raise ValueError(f"Unsupported update operator: {op}")
        return doc

    def _matches(self, doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
        for key, expected in (query or {}).items():
            actual = doc.get(key)
            if isinstance(expected, dict):
                if "$gt" in expected:
                    if actual is None or actual <= expected["$gt"]:
                        return False
                else:  # pragma: no cover - extend as new operators are required
                    raise ValueError(f"Unsupported query operator(s): {expected}")
            else:
                if actual != expected:
                    return False
        return True


class InMemoryDatabase:
    def __init__(self):
        self.room_event_counters = InMemoryCollection()
        self.room_events = InMemoryCollection()


Listener = Callable[[Any], Union[Awaitable[None], None]]

SERVER_TIME_OFFSET_PATH = ".info/serverTimeOffset"


def split_path(path: str) -> List[str]:
    return [part for part in path.strip("/").split("/") if part]


class RealtimeDatabase:
    """In-memory JSON tree addressed by slash separated paths.

    Mirrors the primitives of a hosted realtime database: ``get``, ``set``,
    ``update`` (multi-key merge applied atomically), ``push`` (append under a
    generated, chronologically ordered key) and ``subscribe``. Writing ``None``
    deletes a node. Subscribers get the current value straight away and then
    the new value every time the node under their path changes.
    """

    def __init__(self):
        self._root: Dict[str, Any] = {}
        self._lock = asyncio.Lock()
        self._listeners: Dict[int, Tuple[List[str], Listener]] = {}
        self._listener_ids = itertools.count(1)
        self._push_ids = itertools.count(1)

    def _node(self, parts: List[str]) -> Any:
        node: Any = self._root
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def _put(self, parts: List[str], value: Any) -> None:
        if not parts:
            raise ValueError("Cannot write to the database root")

        node = self._root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                if value is None:
                    return
                child = {}
                node[part] = child
            node = child

        if value is None:
            node.pop(parts[-1], None)
        else:
            node[parts[-1]] = copy.deepcopy(value)

    @staticmethod
    def _related(a: List[str], b: List[str]) -> bool:
        shortest = min(len(a), len(b))
        return a[:shortest] == b[:shortest]

    async def _write(self, writes: List[Tuple[List[str], Any]]) -> None:
        async with self._lock:
            watched = []
            for listener_parts, listener in list(self._listeners.values()):
                if any(self._related(listener_parts, parts) for parts, _ in writes):
                    watched.append((listener_parts, listener, copy.deepcopy(self._node(listener_parts))))

            for parts, value in writes:
                self._put(parts, value)

            changes = []
            for listener_parts, listener, before in watched:
                after = self._node(listener_parts)
                if after != before:
                    changes.append((listener, copy.deepcopy(after)))

        # Listeners run outside the lock so they may write back.
        for listener, value in changes:
            await self._call(listener, value)

    @staticmethod
    async def _call(listener: Listener, value: Any) -> None:
        result = listener(value)
        if inspect.isawaitable(result):
            await result

    async def get(self, path: str) -> Any:
        async with self._lock:
            return copy.deepcopy(self._node(split_path(path)))

    async def exists(self, path: str) -> bool:
        return await self.get(path) is not None

    async def set(self, path: str, value: Any) -> None:
        await self._write([(split_path(path), value)])

    async def update(self, path: str, fields: Dict[str, Any]) -> None:
        base = split_path(path)
        await self._write([(base + split_path(key), value) for key, value in fields.items()])

    async def push(self, path: str, value: Any) -> str:
        key = f"{next(self._push_ids):012d}"
        await self._write([(split_path(path) + [key], value)])
        return key

    async def subscribe(self, path: str, listener: Listener) -> Callable[[], None]:
        parts = split_path(path)
        listener_id = next(self._listener_ids)
        async with self._lock:
            self._listeners[listener_id] = (parts, listener)
            current = copy.deepcopy(self._node(parts))

        def unsubscribe() -> None:
            self._listeners.pop(listener_id, None)

        await self._call(listener, current)
        return unsubscribe

    async def set_server_time_offset(self, offset_ms: int) -> None:
        await self.set(SERVER_TIME_OFFSET_PATH, offset_ms)


db: Any = InMemoryDatabase()
realtime = RealtimeDatabase()
