from __future__ import annotations

import json
import re
import uuid
from typing import Callable, List, Optional

from langchain_core.output_parsers import StrOutputParser
from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaError

from kb_chat.exception.custom_exception import NotFoundError
from kb_chat.logger import GLOBAL_LOGGER as log
from kb_chat.prompts.prompt_library import PROMPT_REGISTRY
from kb_chat.redis_cache.redis_client import SessionStore, course_chat_key
from kb_chat.src.chat_session.schemas import ChatMessage, ErrorType
from kb_chat.src.document_chat.answer_engine import format_history
from kb_chat.utils.thread_pool import run_sync, with_timeout
from kb_chat.utils.time_utils import utc_now

_COURSE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-]*$")


def course_collection_name(course_name: str) -> str:
    return f"course-{course_name}"


class CourseConversation(BaseModel):
    course_name: str
    history: List[ChatMessage] = Field(default_factory=list)


class CourseChatResult(BaseModel):
    success: bool
    message: Optional[str] = None
    token: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None


class CourseChatService:
    """
    Teaching-assistant chat over shared, pre-built ``course-{name}``
    collections. The conversation carried between turns is a short window of
    recent messages kept under ``course_chat:{token}``.
    """

    def __init__(
        self,
        store: SessionStore,
        vector_store,
        llm,
        config: Optional[dict] = None,
        clock: Callable = utc_now,
    ):
        cfg = config or {}
        self.store = store
        self.vector_store = vector_store
        self.clock = clock
        self.top_k = int(cfg.get("top_k", 3))
        self.ttl_seconds = int(cfg.get("ttl_seconds", 3600))
        self.history_window = int(cfg.get("history_window", 6))
        self.llm_timeout = cfg.get("llm_timeout_seconds", 60)
        self.chain = PROMPT_REGISTRY["course"] | llm | StrOutputParser()

    async def _load_conversation(self, token: str, course_name: str) -> CourseConversation:
        raw = await self.store.get(course_chat_key(token))
        if raw:
            try:
                conv = CourseConversation.model_validate_json(raw)
                if conv.course_name == course_name:
                    return conv
            except SchemaError as e:
                log.warning("Corrupt course conversation | token=%s | error=%s", token, str(e))
        return CourseConversation(course_name=course_name)

    async def chat(
        self, message: str, course_name: str, token: Optional[str] = None
    ) -> CourseChatResult:
        if not message or not message.strip():
            return CourseChatResult(
                success=False, error="Message is required", error_type="validation"
            )
        if not course_name or not _COURSE_NAME_RE.match(course_name):
            return CourseChatResult(
                success=False, error="A valid course name is required", error_type="validation"
            )

        token = token or str(uuid.uuid4())

        try:
            chunks = await self.vector_store.query(
                course_collection_name(course_name), message, self.top_k
            )
        except NotFoundError:
            log.info("Course collection not found | course=%s", course_name)
            return CourseChatResult(
                success=False, error="Course not found", token=token, error_type="not_found"
            )
        except Exception as e:
            log.error("Course retrieval failed | course=%s | error=%s", course_name, str(e))
            return CourseChatResult(
                success=False,
                error="Failed to process your message. Please try again.",
                token=token,
                error_type="processing",
            )

        try:
            conv = await self._load_conversation(token, course_name)
            answer = await with_timeout(
                run_sync(
                    self.chain.invoke,
                    {
                        "course_name": course_name,
                        "context": json.dumps(
                            [c.model_dump() for c in chunks], ensure_ascii=False
                        ),
                        "history": format_history(conv.history, self.history_window),
                        "input": message,
                    },
                ),
                self.llm_timeout,
                "Course answer",
            )

            conv.history.append(ChatMessage(role="user", content=message, timestamp=self.clock()))
            conv.history.append(
                ChatMessage(role="assistant", content=answer, timestamp=self.clock())
            )
            conv.history = conv.history[-self.history_window:]
            await self.store.set(course_chat_key(token), conv.model_dump_json(), self.ttl_seconds)

            log.info("Course chat answered | course=%s | token=%s", course_name, token)
            return CourseChatResult(success=True, message=answer, token=token)

        except Exception as e:
            log.error("Course chat failed | course=%s | error=%s", course_name, str(e))
            return CourseChatResult(
                success=False,
                error="Failed to process your message. Please try again.",
                token=token,
                error_type="processing",
            )
