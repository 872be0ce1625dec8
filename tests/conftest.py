"""
Pytest configuration and in-memory fakes.

- FakeRedis: the subset of redis.asyncio used by SessionStore, with TTLs
  driven by a controllable clock
- FakeVectorStore: dict-backed collections with failure injection
- make_llm: LangChain runnable standing in for a chat model
"""
import asyncio
import fnmatch
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Tuple

import pytest
from langchain_core.documents import Document
from langchain_core.messages import AIMessage
from langchain_core.runnables import RunnableLambda

from kb_chat.exception.custom_exception import NotFoundError, SourceProcessingError
from kb_chat.redis_cache.redis_client import SessionStore
from kb_chat.src.document_ingestion.base_loader import SourceLoader
from kb_chat.src.vector_store.faiss_store import CollectionInfo, RetrievedChunk

pytest_plugins = ["pytest_asyncio"]


class FrozenClock:
    def __init__(self, start: datetime = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class _FakeLock:
    def __init__(self, lock: asyncio.Lock):
        self._lock = lock

    async def acquire(self):
        await self._lock.acquire()
        return True

    async def release(self):
        self._lock.release()


class FakeRedis:
    def __init__(self, clock: FrozenClock):
        self.clock = clock
        self.data: Dict[str, str] = {}
        self.expiry: Dict[str, datetime] = {}
        self.ttls: Dict[str, int] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _alive(self, key: str) -> bool:
        deadline = self.expiry.get(key)
        if deadline is not None and self.clock() >= deadline:
            self.data.pop(key, None)
            self.expiry.pop(key, None)
        return key in self.data

    async def ping(self):
        return True

    async def aclose(self):
        return None

    async def setex(self, key, ttl, value):
        self.data[key] = str(value)
        self.expiry[key] = self.clock() + timedelta(seconds=ttl)
        self.ttls[key] = ttl
        return True

    async def set(self, key, value):
        self.data[key] = str(value)
        self.expiry.pop(key, None)
        return True

    async def get(self, key):
        return self.data[key] if self._alive(key) else None

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self.data.pop(key, None)
            self.expiry.pop(key, None)
        return removed

    async def exists(self, *keys):
        return sum(1 for key in keys if self._alive(key))

    async def expire(self, key, seconds):
        if not self._alive(key):
            return False
        self.expiry[key] = self.clock() + timedelta(seconds=seconds)
        return True

    async def incr(self, key):
        value = int(self.data.get(key, "0")) + 1 if self._alive(key) else 1
        self.data[key] = str(value)
        return value

    async def scan_iter(self, match=None):
        for key in list(self.data):
            if self._alive(key) and fnmatch.fnmatchcase(key, match or "*"):
                yield key

    def lock(self, name, timeout=None, blocking_timeout=None):
        return _FakeLock(self._locks.setdefault(name, asyncio.Lock()))


class FakeVectorStore:
    def __init__(self, clock: FrozenClock):
        self.clock = clock
        self.collections: Dict[str, Tuple[List[RetrievedChunk], datetime]] = {}
        self.failing_prefixes: set = set()
        self.failing_queries: set = set()
        self.queries: List[str] = []

    def add(self, name: str, texts: List[str], created_at: datetime = None, **metadata):
        chunks = [RetrievedChunk(text=t, metadata=dict(metadata)) for t in texts]
        self.collections[name] = (chunks, created_at or self.clock())

    async def create_collection(self, name: str, documents: List[Document]) -> int:
        if any(name.startswith(prefix) for prefix in self.failing_prefixes):
            raise RuntimeError("embedding service unavailable")
        chunks = [
            RetrievedChunk(text=d.page_content, metadata={"type": str(d.metadata.get("type"))})
            for d in documents
        ]
        self.collections[name] = (chunks, self.clock())
        return len(chunks)

    async def query(self, name: str, text: str, k: int = 3) -> List[RetrievedChunk]:
        self.queries.append(name)
        if name in self.failing_queries:
            raise RuntimeError("vector store unavailable")
        if name not in self.collections:
            raise NotFoundError(f"Collection {name} not found")
        return self.collections[name][0][:k]

    async def delete_collection(self, name: str) -> bool:
        self.collections.pop(name, None)
        return True

    async def list_collections(self) -> List[CollectionInfo]:
        return [
            CollectionInfo(name=name, created_at=created)
            for name, (_, created) in self.collections.items()
        ]


class StaticLoader(SourceLoader):
    """Loader returning canned documents, or failing with a given message."""

    def __init__(self, vector_store, kind: str, texts=None, error: str = None, extra=None):
        super().__init__(vector_store)
        self.kind = kind
        self.texts = texts or [f"{kind} content"]
        self.error = error
        self.extra = extra or {}
        self.calls = 0

    async def _load(self, raw, token, options):
        self.calls += 1
        if self.error:
            raise SourceProcessingError(self.kind, self.error)
        docs = [Document(page_content=t, metadata={"source": str(raw)}) for t in self.texts]
        return docs, dict(self.extra)


def make_llm(fn: Callable[[str], str]):
    """Chat model stand-in: ``fn`` gets the rendered prompt text."""
    return RunnableLambda(lambda prompt_value: AIMessage(content=fn(prompt_value.to_string())))


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def store(fake_redis):
    return SessionStore(fake_redis)


@pytest.fixture
def vector_store(clock):
    return FakeVectorStore(clock)
