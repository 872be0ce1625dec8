from __future__ import annotations

import re
import shutil
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from cachetools import TTLCache
from langchain_community.vectorstores import FAISS
from langchain_core.documents import Document
from pydantic import BaseModel, Field

from kb_chat.exception.custom_exception import KnowledgeChatException, NotFoundError
from kb_chat.logger import GLOBAL_LOGGER as log
from kb_chat.utils.thread_pool import run_sync

_COLLECTION_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-]*$")

MetadataValue = Union[str, int, float]


class RetrievedChunk(BaseModel):
    """One ranked chunk handed back by a collection query."""

    text: str
    metadata: Dict[str, MetadataValue] = Field(default_factory=dict)


class CollectionInfo(BaseModel):
    name: str
    created_at: datetime


def _flatten_metadata(md: Optional[dict]) -> Dict[str, MetadataValue]:
    out: Dict[str, MetadataValue] = {}
    for key, value in (md or {}).items():
        if isinstance(value, bool):
            out[key] = str(value).lower()
        elif isinstance(value, (str, int, float)):
            out[key] = value
        elif value is not None:
            out[key] = str(value)
    return out


class FaissVectorStore:
    """
    Named FAISS collections on disk, one directory per collection:
    faiss_index/{collection_name}/index.faiss + index.pkl

    Loaded indexes are kept in a TTL cache so a chat turn does not reload the
    index from disk every time.
    """

    def __init__(
        self,
        index_dir: Union[str, Path],
        embeddings,
        cache_size: int = 256,
        cache_ttl_seconds: int = 3600,
    ):
        self.index_dir = Path(index_dir)
        self.index_dir.mkdir(parents=True, exist_ok=True)
        self.emb = embeddings
        self.cache: TTLCache = TTLCache(maxsize=cache_size, ttl=cache_ttl_seconds)
        # TTLCache is not thread-safe and is touched from the IO pool
        self._cache_lock = threading.Lock()

    def _collection_path(self, name: str) -> Path:
        if not _COLLECTION_NAME_RE.match(name):
            raise ValueError(f"Invalid collection name: {name!r}")
        return self.index_dir / name

    def _exists(self, path: Path) -> bool:
        return (path / "index.faiss").exists() and (path / "index.pkl").exists()

    def _build(self, name: str, documents: List[Document]) -> int:
        path = self._collection_path(name)
        if path.exists():
            log.warning("Collection already exists, replacing | collection=%s", name)
            shutil.rmtree(path, ignore_errors=True)

        vs = FAISS.from_documents(documents, embedding=self.emb)
        vs.save_local(str(path))

        with self._cache_lock:
            self.cache[name] = vs

        log.info(
            "FAISS collection created | collection=%s | chunks=%d", name, len(documents)
        )
        return len(documents)

    def _load(self, name: str) -> FAISS:
        with self._cache_lock:
            vs = self.cache.get(name)
        if vs is not None:
            log.debug("Reusing cached collection | collection=%s", name)
            return vs

        path = self._collection_path(name)
        if not self._exists(path):
            raise NotFoundError(f"Collection {name} not found")

        vs = FAISS.load_local(str(path), self.emb, allow_dangerous_deserialization=True)
        with self._cache_lock:
            self.cache[name] = vs
        log.info("Loaded FAISS collection | collection=%s", name)
        return vs

    def _search(self, name: str, text: str, k: int) -> List[RetrievedChunk]:
        vs = self._load(name)
        docs = vs.similarity_search(text, k=k)
        return [
            RetrievedChunk(text=d.page_content, metadata=_flatten_metadata(d.metadata))
            for d in docs
        ]

    def _remove(self, name: str) -> bool:
        with self._cache_lock:
            self.cache.pop(name, None)
        path = self._collection_path(name)
        if path.exists():
            shutil.rmtree(path)
            log.info("FAISS collection removed | collection=%s", name)
        return True

    def _list(self) -> List[CollectionInfo]:
        out = []
        for child in self.index_dir.iterdir():
            if child.is_dir() and self._exists(child):
                created = datetime.fromtimestamp(child.stat().st_mtime, tz=timezone.utc)
                out.append(CollectionInfo(name=child.name, created_at=created))
        return out

    async def create_collection(self, name: str, documents: List[Document]) -> int:
        """Embed ``documents`` into a new collection. Returns the chunk count."""
        if not documents:
            raise ValueError("Cannot create a collection with no documents")
        try:
            return await run_sync(self._build, name, documents)
        except ValueError:
            raise
        except Exception as e:
            log.error("Collection build failed | collection=%s | error=%s", name, str(e))
            raise KnowledgeChatException(f"Failed to build collection {name}", e) from e

    async def query(self, name: str, text: str, k: int = 3) -> List[RetrievedChunk]:
        """Top-k chunks for ``text``; NotFoundError when the collection is absent."""
        return await run_sync(self._search, name, text, k)

    async def delete_collection(self, name: str) -> bool:
        try:
            return await run_sync(self._remove, name)
        except Exception as e:
            log.error("Collection delete failed | collection=%s | error=%s", name, str(e))
            return False

    async def list_collections(self) -> List[CollectionInfo]:
        return await run_sync(self._list)
