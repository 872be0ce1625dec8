from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError as SchemaError

from kb_chat.logger import GLOBAL_LOGGER as log
from kb_chat.redis_cache.redis_client import (
    KNOWLEDGE_BASE_PREFIX,
    SessionStore,
    chat_session_key,
    knowledge_base_key,
)
from kb_chat.src.document_ingestion.base_loader import IngestionResult, SourceLoader
from kb_chat.src.knowledge_base.schemas import (
    SOURCE_KINDS,
    FieldError,
    FileSourceInfo,
    KnowledgeBaseInput,
    KnowledgeBaseRecord,
    KnowledgeBaseResponse,
    LinkSourceInfo,
    SourceInfo,
    TextSourceInfo,
    VideoSourceInfo,
)
from kb_chat.utils.thread_pool import with_timeout
from kb_chat.utils.time_utils import utc_now
from kb_chat.utils.url_utils import is_valid_url, is_youtube_url

DEFAULT_ALLOWED_FILE_TYPES = ["application/pdf", "text/csv", "application/vnd.ms-excel"]


def count_words(text: str) -> int:
    return len(text.split())


class KnowledgeBaseManager:
    """
    Creates, reads and deletes knowledge bases.

    A knowledge base is one record in the session store plus one vector
    collection per ingested source. Creation validates input up front, ingests
    every source concurrently, and only persists the record when all of them
    succeed.
    """

    def __init__(
        self,
        store: SessionStore,
        loaders: Dict[str, SourceLoader],
        config: Optional[dict] = None,
        vector_store=None,
        clock: Callable = utc_now,
    ):
        cfg = config or {}
        self.store = store
        self.loaders = loaders
        self.vector_store = vector_store
        self.clock = clock

        self.ttl_seconds = int(cfg.get("ttl_seconds", 3600))
        self.text_word_limit = int(cfg.get("text_word_limit", 10000))
        self.file_size_limit = int(cfg.get("file_size_limit_bytes", 5 * 1024 * 1024))
        self.allowed_file_types = list(cfg.get("allowed_file_types", DEFAULT_ALLOWED_FILE_TYPES))
        self.ingestion_timeout = cfg.get("ingestion_timeout_seconds", 300)
        self.sweep_grace_seconds = int(cfg.get("sweep_grace_seconds", 600))

    # ------------------------------------------------------------------
    # validation
    # ------------------------------------------------------------------
    def validate_input(self, data: KnowledgeBaseInput) -> List[FieldError]:
        """Field-tagged problems with the input. Pure, no I/O."""
        errors: List[FieldError] = []

        if not data.present_kinds():
            errors.append(
                FieldError(
                    field="general",
                    message="At least one of text, file, link, or video URL must be provided",
                )
            )
            return errors

        if data.text:
            word_count = count_words(data.text)
            if word_count > self.text_word_limit:
                errors.append(
                    FieldError(
                        field="text",
                        message=(
                            f"Text exceeds the limit of {self.text_word_limit} words. "
                            f"Current word count: {word_count}"
                        ),
                    )
                )

        if data.file:
            if data.file.size > self.file_size_limit:
                limit_mb = self.file_size_limit / (1024 * 1024)
                size_mb = data.file.size / (1024 * 1024)
                errors.append(
                    FieldError(
                        field="file",
                        message=(
                            f"File size exceeds the limit of {limit_mb:g}MB. "
                            f"Current size: {size_mb:.2f}MB"
                        ),
                    )
                )
            if data.file.mimetype not in self.allowed_file_types:
                errors.append(FieldError(field="file", message="Only PDF and CSV files are allowed"))

        if data.link and not is_valid_url(data.link):
            errors.append(FieldError(field="link", message="Invalid URL format"))

        if data.video_url and not is_youtube_url(data.video_url):
            errors.append(FieldError(field="video", message="Invalid YouTube URL provided"))

        return errors

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------
    def _raw_input(self, kind: str, data: KnowledgeBaseInput):
        if kind == "text":
            return data.text, {}
        if kind == "file":
            return data.file, {}
        if kind == "link":
            return data.link, {"crawl_depth": data.crawl_depth} if data.crawl_depth else {}
        return data.video_url, {}

    async def _run_ingestion(self, kind: str, token: str, data: KnowledgeBaseInput) -> IngestionResult:
        loader = self.loaders.get(kind)
        if loader is None:
            return IngestionResult.failed(f"{kind} sources are not supported")

        raw, options = self._raw_input(kind, data)
        return await with_timeout(
            loader.ingest(raw, token, options),
            self.ingestion_timeout,
            f"{kind} ingestion",
        )

    @staticmethod
    def _source_info(kind: str, result: IngestionResult) -> SourceInfo:
        base = {
            "collection_name": result.collection_name,
            "document_count": result.document_count,
            "chunk_count": result.chunk_count,
        }
        md = result.metadata
        if kind == "text":
            return TextSourceInfo(**base)
        if kind == "file":
            return FileSourceInfo(
                **base, filename=md["filename"], size=md["size"], mimetype=md["mimetype"]
            )
        if kind == "link":
            return LinkSourceInfo(
                **base,
                url=md["url"],
                crawl_depth=md.get("crawl_depth", "site"),
                pages=md.get("pages", []),
            )
        return VideoSourceInfo(
            **base,
            url=md["url"],
            video_id=md["video_id"],
            title=md.get("title", "Unknown Title"),
            author=md.get("author", "Unknown Author"),
        )

    async def create(self, data: KnowledgeBaseInput) -> KnowledgeBaseResponse:
        errors = self.validate_input(data)
        if errors:
            log.info("Knowledge base input rejected | errors=%s", [e.field for e in errors])
            return KnowledgeBaseResponse(success=False, errors=errors)

        try:
            token = str(uuid.uuid4())
            now = self.clock()
            kinds = data.present_kinds()

            log.info("Starting parallel ingestion | token=%s | sources=%s", token, kinds)

            # every task settles; no fail-fast
            results = await asyncio.gather(
                *(self._run_ingestion(kind, token, data) for kind in kinds),
                return_exceptions=True,
            )

            failures: List[FieldError] = []
            sources: Dict[str, SourceInfo] = {}

            for kind, result in zip(kinds, results):
                if isinstance(result, BaseException):
                    log.error(
                        "%s ingestion raised | token=%s | error=%s", kind, token, str(result)
                    )
                    failures.append(FieldError(field=kind, message=f"Failed to process {kind}"))
                elif not result.success:
                    log.error(
                        "%s ingestion failed | token=%s | error=%s", kind, token, result.error
                    )
                    failures.append(
                        FieldError(field=kind, message=result.error or f"Failed to process {kind}")
                    )
                else:
                    sources[f"{kind}_source"] = self._source_info(kind, result)

            if failures:
                # sibling collections are left for the orphan sweep
                return KnowledgeBaseResponse(success=False, errors=failures[:1])

            record = KnowledgeBaseRecord(
                token=token,
                created_at=now,
                expires_at=now + timedelta(seconds=self.ttl_seconds),
                **sources,
            )
            await self.store.set(
                knowledge_base_key(token), record.model_dump_json(), self.ttl_seconds
            )

            log.info("Knowledge base created | token=%s | sources=%s", token, kinds)
            return KnowledgeBaseResponse(success=True, token=token)

        except Exception as e:
            log.exception("Error processing knowledge base | error=%s", str(e))
            return KnowledgeBaseResponse(
                success=False,
                errors=[FieldError(field="server", message="Internal server error")],
            )

    # ------------------------------------------------------------------
    # read / delete / list
    # ------------------------------------------------------------------
    async def _load_record(self, token: str) -> Optional[KnowledgeBaseRecord]:
        raw = await self.store.get(knowledge_base_key(token))
        if not raw:
            return None
        try:
            return KnowledgeBaseRecord.model_validate_json(raw)
        except SchemaError as e:
            log.error("Corrupt knowledge base record | token=%s | error=%s", token, str(e))
            return None

    async def get(self, token: str) -> Optional[KnowledgeBaseRecord]:
        """
        The live record, or None. Reading an expired record deletes it; its
        collections stay while the token still has an active chat session.
        """
        if not token:
            return None

        record = await self._load_record(token)
        if record is None:
            return None

        if record.is_expired(self.clock()):
            log.info("Knowledge base expired on read | token=%s", token)
            if await self.store.exists(chat_session_key(token)):
                # an active chat still answers from these collections
                await self.store.delete(knowledge_base_key(token))
            else:
                await self.delete(token)
            return None

        return record

    async def delete(self, token: str) -> bool:
        """
        Remove the record, its chat session and its collections. Returns
        whether a record existed; safe to call repeatedly.
        """
        key = knowledge_base_key(token)
        existed = await self.store.exists(key)
        record = await self._load_record(token) if existed else None

        if record is not None:
            kinds = [kind for kind in record.sources() if kind in self.loaders]
            await asyncio.gather(*(self.loaders[kind].delete_collection(token) for kind in kinds))

        await self.store.delete(key)
        await self.store.delete(chat_session_key(token))

        if existed:
            log.info("Knowledge base deleted | token=%s", token)
        return existed

    async def list_tokens(self) -> List[str]:
        keys = await self.store.keys(f"{KNOWLEDGE_BASE_PREFIX}*")
        return [key[len(KNOWLEDGE_BASE_PREFIX):] for key in keys]

    async def sweep_orphaned_collections(self) -> int:
        """
        Delete ``{kind}-{token}`` collections whose record and chat session
        no longer exist. Collections younger than the grace period are skipped
        because their ingestion may still be in flight.
        """
        if self.vector_store is None:
            return 0

        now = self.clock()
        removed = 0

        for info in await self.vector_store.list_collections():
            kind, sep, token = info.name.partition("-")
            if not sep or kind not in SOURCE_KINDS or not token:
                continue
            if (now - info.created_at).total_seconds() < self.sweep_grace_seconds:
                continue
            if await self.store.exists(knowledge_base_key(token)):
                continue
            if await self.store.exists(chat_session_key(token)):
                continue

            if await self.vector_store.delete_collection(info.name):
                removed += 1
                log.info("Swept orphaned collection | collection=%s", info.name)

        log.info("Collection sweep finished | removed=%d", removed)
        return removed
