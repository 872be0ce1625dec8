"""
Service container.

Everything the HTTP layer needs is built here once per process and hung off
``app.state.services``; routes get it through ``Depends``.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from kb_chat.logger import GLOBAL_LOGGER as log
from kb_chat.redis_cache.redis_client import SessionStore, create_redis_client
from kb_chat.src.chat_session.manager import ChatSessionManager
from kb_chat.src.course_chat.service import CourseChatService
from kb_chat.src.document_chat.answer_engine import RetrievalAnswerEngine
from kb_chat.src.document_chat.persona import PersonaRewriter
from kb_chat.src.document_ingestion.file_loader import FileLoader
from kb_chat.src.document_ingestion.text_loader import TextLoader
from kb_chat.src.document_ingestion.transcript_providers import build_transcript_provider
from kb_chat.src.document_ingestion.video_loader import VideoLoader
from kb_chat.src.document_ingestion.web_loader import WebLoader
from kb_chat.src.knowledge_base.manager import KnowledgeBaseManager
from kb_chat.src.vector_store.faiss_store import FaissVectorStore
from kb_chat.utils.api_tracker import ApiTracker
from kb_chat.utils.config_loader import load_config
from kb_chat.utils.model_loader import ModelLoader


@dataclass
class Services:
    config: dict
    store: SessionStore
    vector_store: object
    kb_manager: KnowledgeBaseManager
    engine: RetrievalAnswerEngine
    chat_manager: ChatSessionManager
    course_chat: CourseChatService
    api_tracker: ApiTracker


def build_loaders(config: dict, vector_store) -> dict:
    chunking = config.get("chunking", {})
    chunk_size = chunking.get("chunk_size", 1000)
    chunk_overlap = chunking.get("chunk_overlap", 200)
    web_cfg = config.get("web", {})
    video_cfg = config.get("video", {})

    return {
        "text": TextLoader(vector_store, chunk_size, chunk_overlap),
        "file": FileLoader(vector_store, chunk_size, chunk_overlap),
        "link": WebLoader(
            vector_store,
            chunk_size,
            chunk_overlap,
            crawl_depth=web_cfg.get("crawl_depth", "site"),
            max_pages=web_cfg.get("max_pages", 10),
            request_timeout_seconds=web_cfg.get("request_timeout_seconds", 30),
            delay_seconds=web_cfg.get("delay_seconds", 1.0),
            user_agent=web_cfg.get("user_agent", "kb-chat-crawler/1.0"),
        ),
        "video": VideoLoader(
            vector_store,
            build_transcript_provider(video_cfg),
            chunk_size,
            chunk_overlap,
            languages=video_cfg.get("languages"),
            segment_seconds=video_cfg.get("segment_seconds", 120),
            request_timeout_seconds=video_cfg.get("request_timeout_seconds", 30),
        ),
    }


LOCK_MARGIN_SECONDS = 30


def chat_lock_timeout(config: dict) -> float:
    """Session lock timeout that outlasts the slowest possible locked turn."""
    retrieval_cfg = config.get("retrieval", {})
    worst_turn = (
        retrieval_cfg.get("query_timeout_seconds", 30)
        + retrieval_cfg.get("llm_timeout_seconds", 60)
        + retrieval_cfg.get("synthesis_timeout_seconds", 90)
    )
    if config.get("persona", {}).get("enabled"):
        worst_turn += retrieval_cfg.get("llm_timeout_seconds", 60)

    configured = config.get("chat", {}).get("lock_timeout_seconds", 0)
    return max(configured, worst_turn + LOCK_MARGIN_SECONDS)


def build_services(config: Optional[dict] = None, store: Optional[SessionStore] = None) -> Services:
    config = config if config is not None else load_config()
    store = store or SessionStore(create_redis_client())

    model_loader = ModelLoader(config)
    vs_cfg = config.get("vector_store", {})
    vector_store = FaissVectorStore(
        index_dir=vs_cfg.get("index_dir", "faiss_index"),
        embeddings=model_loader.load_embeddings(),
        cache_size=vs_cfg.get("cache_size", 256),
        cache_ttl_seconds=vs_cfg.get("cache_ttl_seconds", 3600),
    )

    kb_manager = KnowledgeBaseManager(
        store,
        build_loaders(config, vector_store),
        config.get("knowledge_base", {}),
        vector_store=vector_store,
    )

    persona_cfg = config.get("persona", {})
    retrieval_cfg = config.get("retrieval", {})
    rewriter = None
    if persona_cfg.get("enabled"):
        rewriter = PersonaRewriter(
            model_loader.load_llm("persona"),
            persona_cfg.get("description", ""),
            retrieval_cfg.get("llm_timeout_seconds", 60),
        )
        log.info("Persona rewriting enabled")

    engine = RetrievalAnswerEngine(
        vector_store,
        model_loader.load_llm("rag"),
        synthesis_llm=model_loader.load_llm("synthesis"),
        kb_manager=kb_manager,
        rewriter=rewriter,
        config=retrieval_cfg,
    )

    chat_cfg = {**config.get("chat", {}), "lock_timeout_seconds": chat_lock_timeout(config)}
    chat_manager = ChatSessionManager(store, kb_manager, engine, chat_cfg)
    course_chat = CourseChatService(
        store, vector_store, model_loader.load_llm("course"), config.get("course_chat", {})
    )

    log.info("Services built")
    return Services(
        config=config,
        store=store,
        vector_store=vector_store,
        kb_manager=kb_manager,
        engine=engine,
        chat_manager=chat_manager,
        course_chat=course_chat,
        api_tracker=ApiTracker(store, config.get("api_tracker", {})),
    )


async def run_collection_sweeper(kb_manager: KnowledgeBaseManager, interval_seconds: float):
    """Background loop deleting orphaned collections until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await kb_manager.sweep_orphaned_collections()
        except Exception as e:
            log.error("Collection sweep failed | error=%s", str(e))
