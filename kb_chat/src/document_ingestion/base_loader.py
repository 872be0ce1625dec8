from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from langchain_core.documents import Document
from langchain_text_splitters import RecursiveCharacterTextSplitter
from pydantic import BaseModel, Field

from kb_chat.exception.custom_exception import SourceProcessingError
from kb_chat.logger import GLOBAL_LOGGER as log
from kb_chat.utils.thread_pool import run_sync


class IngestionResult(BaseModel):
    """Outcome of one loader run, folded into the knowledge-base record."""

    success: bool
    collection_name: Optional[str] = None
    document_count: int = 0
    chunk_count: int = 0
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def failed(cls, error: str) -> "IngestionResult":
        return cls(success=False, error=error)


class SourceLoader(ABC):
    """
    Shared pipeline for every modality:

    - normalize raw input into Documents with provenance metadata (_load)
    - split into overlapping chunks
    - embed and write to a new collection named ``{kind}-{token}``

    ``ingest`` never raises: every failure comes back as
    ``IngestionResult(success=False, error=...)``.
    """

    kind: str = ""

    def __init__(self, vector_store, chunk_size: int = 1000, chunk_overlap: int = 200):
        self.vector_store = vector_store
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.text_splitter = self._make_splitter(chunk_size, chunk_overlap)

    @staticmethod
    def _make_splitter(chunk_size: int, chunk_overlap: int) -> RecursiveCharacterTextSplitter:
        return RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            separators=["\n\n", "\n", " ", ""],
        )

    def collection_name(self, token: str) -> str:
        return f"{self.kind}-{token}"

    @abstractmethod
    async def _load(
        self, raw: Any, token: str, options: Dict[str, Any]
    ) -> Tuple[List[Document], Dict[str, Any]]:
        """Return the normalized documents plus modality-specific metadata."""

    def _split(self, docs: List[Document], options: Dict[str, Any]) -> List[Document]:
        chunk_size = options.get("chunk_size", self.chunk_size)
        chunk_overlap = options.get("chunk_overlap", self.chunk_overlap)

        splitter = self.text_splitter
        if (chunk_size, chunk_overlap) != (self.chunk_size, self.chunk_overlap):
            splitter = self._make_splitter(chunk_size, chunk_overlap)

        chunks = splitter.split_documents(docs)
        for idx, chunk in enumerate(chunks):
            chunk.metadata = dict(chunk.metadata or {})
            chunk.metadata.setdefault("type", self.kind)
            chunk.metadata["chunk_index"] = idx
        return chunks

    async def ingest(
        self, raw: Any, token: str, options: Optional[Dict[str, Any]] = None
    ) -> IngestionResult:
        options = options or {}
        collection_name = self.collection_name(token)

        try:
            docs, extra = await self._load(raw, token, options)

            if not docs:
                return IngestionResult.failed(f"No content extracted from {self.kind}")

            chunks = await run_sync(self._split, docs, options)
            log.info(
                "Split %s source | documents=%d | chunks=%d",
                self.kind,
                len(docs),
                len(chunks),
            )

            if not chunks:
                return IngestionResult.failed(f"No chunks created from {self.kind}")

            chunk_count = await self.vector_store.create_collection(collection_name, chunks)

            log.info(
                "%s indexed successfully | collection=%s | chunks=%d",
                self.kind,
                collection_name,
                chunk_count,
            )
            return IngestionResult(
                success=True,
                collection_name=collection_name,
                document_count=len(docs),
                chunk_count=chunk_count,
                metadata=extra,
            )

        except SourceProcessingError as e:
            log.warning(
                "%s processing failed | token=%s | error=%s", self.kind, token, str(e)
            )
            return IngestionResult.failed(e.error_message)
        except Exception as e:
            log.exception(
                "Unexpected %s ingestion error | token=%s | error=%s",
                self.kind,
                token,
                str(e),
            )
            return IngestionResult.failed(f"Failed to process {self.kind}")

    async def delete_collection(self, token: str) -> bool:
        """Best-effort, idempotent removal of this loader's collection for ``token``."""
        try:
            return await self.vector_store.delete_collection(self.collection_name(token))
        except Exception as e:
            log.error(
                "Error deleting %s collection | token=%s | error=%s",
                self.kind,
                token,
                str(e),
            )
            return False
