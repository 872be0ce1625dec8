from __future__ import annotations

import contextlib
from typing import Callable, List, Optional

from pydantic import ValidationError as SchemaError
from redis.exceptions import RedisError

from kb_chat.exception.custom_exception import (
    KnowledgeChatException,
    NotFoundError,
    TransientServiceError,
)
from kb_chat.logger import GLOBAL_LOGGER as log
from kb_chat.redis_cache.redis_client import CHAT_SESSION_PREFIX, SessionStore, chat_session_key
from kb_chat.src.chat_session.schemas import ChatMessage, ChatResult, ChatSession
from kb_chat.utils.time_utils import utc_now

SESSION_NOT_FOUND_MESSAGE = "Session expired or not found. Please upload your documents again."
PROCESSING_ERROR_MESSAGE = "Failed to process your message. Please try again."
UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred. Please try again."


class ChatSessionManager:
    """
    Owns the per-token conversation: lazily creates it from a live knowledge
    base, runs each turn through the answer engine and persists the bounded
    history with a sliding TTL.
    """

    def __init__(
        self,
        store: SessionStore,
        kb_manager,
        engine,
        config: Optional[dict] = None,
        clock: Callable = utc_now,
    ):
        cfg = config or {}
        self.store = store
        self.kb_manager = kb_manager
        self.engine = engine
        self.clock = clock

        self.session_ttl = int(cfg.get("session_ttl_seconds", 3600))
        self.max_history_length = int(cfg.get("max_history_length", 100))
        self.lock_sessions = bool(cfg.get("lock_sessions", True))
        self.lock_timeout = cfg.get("lock_timeout_seconds", 300)
        self.lock_wait = cfg.get("lock_wait_seconds", 60)

    def _session_lock(self, token: str):
        if not self.lock_sessions:
            return contextlib.nullcontext()
        return self.store.lock(chat_session_key(token), self.lock_timeout, self.lock_wait)

    async def _load(self, token: str) -> Optional[ChatSession]:
        raw = await self.store.get(chat_session_key(token))
        if not raw:
            return None
        try:
            return ChatSession.model_validate_json(raw)
        except SchemaError as e:
            log.error("Corrupt chat session | token=%s | error=%s", token, str(e))
            return None

    async def _save(self, session: ChatSession) -> None:
        await self.store.set(
            chat_session_key(session.token), session.model_dump_json(), self.session_ttl
        )

    async def get_or_create_session(self, token: str) -> Optional[ChatSession]:
        """Existing live session, else one bootstrapped from the knowledge base, else None."""
        session = await self._load(token)
        if session is not None:
            # lives by its own sliding TTL, independent of the record's expiry
            return session

        record = await self.kb_manager.get(token)
        if record is None:
            return None

        now = self.clock()
        session = ChatSession(
            token=token,
            history=[],
            knowledge_base=record,
            created_at=now,
            last_activity=now,
        )
        await self._save(session)
        log.info("Chat session created | token=%s", token)
        return session

    async def process_chat(self, message: str, token: str) -> ChatResult:
        if not message or not message.strip():
            return ChatResult(success=False, error="Message is required", error_type="validation")
        if not token or not token.strip():
            return ChatResult(success=False, error="Token is required", error_type="validation")

        try:
            async with self._session_lock(token):
                session = await self.get_or_create_session(token)
                if session is None:
                    return ChatResult(
                        success=False, error=SESSION_NOT_FOUND_MESSAGE, error_type="not_found"
                    )

                session.history.append(
                    ChatMessage(role="user", content=message, timestamp=self.clock())
                )

                reply = await self.engine.answer_from_record(
                    session.knowledge_base, message, session.history
                )

                session.history.append(
                    ChatMessage(role="assistant", content=reply, timestamp=self.clock())
                )
                if len(session.history) > self.max_history_length:
                    session.history = session.history[-self.max_history_length:]

                session.last_activity = self.clock()
                await self._save(session)

            log.info(
                "Chat turn processed | token=%s | history=%d", token, len(session.history)
            )
            return ChatResult(success=True, message=reply, session_id=token)

        except NotFoundError:
            return ChatResult(success=False, error=SESSION_NOT_FOUND_MESSAGE, error_type="not_found")
        except (TransientServiceError, KnowledgeChatException, RedisError) as e:
            log.error("Chat processing failed | token=%s | error=%s", token, str(e))
            return ChatResult(success=False, error=PROCESSING_ERROR_MESSAGE, error_type="processing")
        except Exception as e:
            log.exception("Unexpected chat error | token=%s | error=%s", token, str(e))
            return ChatResult(success=False, error=UNEXPECTED_ERROR_MESSAGE, error_type="unexpected")

    async def get_chat_history(self, token: str) -> Optional[List[ChatMessage]]:
        session = await self._load(token)
        if session is None:
            return None
        return session.history

    async def clear_chat_history(self, token: str) -> bool:
        async with self._session_lock(token):
            session = await self._load(token)
            if session is None:
                return False
            session.history = []
            session.last_activity = self.clock()
            await self._save(session)
        log.info("Chat history cleared | token=%s", token)
        return True

    async def get_session_count(self) -> int:
        return len(await self.store.keys(f"{CHAT_SESSION_PREFIX}*"))
