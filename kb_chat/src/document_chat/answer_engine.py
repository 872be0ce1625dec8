from __future__ import annotations

import asyncio
import json
from typing import Awaitable, Callable, List, Optional, Sequence

from langchain_core.output_parsers import StrOutputParser

from kb_chat.exception.custom_exception import NotFoundError
from kb_chat.logger import GLOBAL_LOGGER as log
from kb_chat.prompts.prompt_library import PROMPT_REGISTRY, SOURCE_INSTRUCTIONS, SOURCE_LABELS
from kb_chat.src.chat_session.schemas import ChatMessage
from kb_chat.src.knowledge_base.schemas import KnowledgeBaseRecord, SourceInfo
from kb_chat.utils.thread_pool import run_sync, with_timeout

NO_ANSWER_MESSAGE = "No relevant information found in the knowledge base for your query."

Rewriter = Callable[[str], Awaitable[str]]


def format_history(history: Optional[Sequence[ChatMessage]], window: int) -> str:
    """Last ``window`` messages as a prompt block, or an empty string."""
    if not history or window <= 0:
        return ""
    lines = [f"{msg.role}: {msg.content}" for msg in list(history)[-window:]]
    return "Previous conversation:\n" + "\n".join(lines) + "\n\n"


def format_candidates(answers: List[str]) -> str:
    return "\n\n---\n\n".join(
        f"Source {idx}:\n{answer}" for idx, answer in enumerate(answers, start=1)
    )


class RetrievalAnswerEngine:
    """
    Answers a question against every source of a knowledge base.

    Each source is queried and answered concurrently. A source that fails,
    times out or has no matching chunks simply contributes no answer. The
    surviving answers are then passed through as-is (one) or merged by a
    synthesis call (several).
    """

    def __init__(
        self,
        vector_store,
        llm,
        synthesis_llm=None,
        kb_manager=None,
        rewriter: Optional[Rewriter] = None,
        config: Optional[dict] = None,
    ):
        cfg = config or {}
        self.vector_store = vector_store
        self.kb_manager = kb_manager
        self.rewriter = rewriter

        self.top_k = int(cfg.get("top_k", 3))
        self.history_window = int(cfg.get("history_window", 6))
        self.query_timeout = cfg.get("query_timeout_seconds", 30)
        self.llm_timeout = cfg.get("llm_timeout_seconds", 60)
        self.synthesis_timeout = cfg.get("synthesis_timeout_seconds", 90)

        self.source_chain = PROMPT_REGISTRY["source_answer"] | llm | StrOutputParser()
        self.synthesis_chain = (
            PROMPT_REGISTRY["synthesis"] | (synthesis_llm or llm) | StrOutputParser()
        )

    async def answer(
        self, token: str, message: str, history: Optional[Sequence[ChatMessage]] = None
    ) -> str:
        if self.kb_manager is None:
            raise RuntimeError("answer() needs a knowledge base manager")
        record = await self.kb_manager.get(token)
        if record is None:
            raise NotFoundError(f"Knowledge base {token} not found")
        return await self.answer_from_record(record, message, history)

    async def answer_from_record(
        self,
        record: KnowledgeBaseRecord,
        message: str,
        history: Optional[Sequence[ChatMessage]] = None,
    ) -> str:
        sources = record.sources()
        log.info(
            "Answering from knowledge base | token=%s | sources=%s",
            record.token,
            list(sources),
        )

        results = await asyncio.gather(
            *(
                self._answer_from_source(kind, info, message, history)
                for kind, info in sources.items()
            ),
            return_exceptions=True,
        )

        candidates: List[str] = []
        for kind, result in zip(sources, results):
            if isinstance(result, BaseException):
                log.error("Source answer raised | source=%s | error=%s", kind, str(result))
                continue
            if result:
                candidates.append(result)

        log.info("Per-source answers collected | answers=%d", len(candidates))

        if not candidates:
            return NO_ANSWER_MESSAGE

        if len(candidates) == 1:
            answer = candidates[0]
        else:
            answer = await self._synthesize(candidates, message, history)

        return await self._rewrite(answer)

    async def _answer_from_source(
        self,
        kind: str,
        info: SourceInfo,
        message: str,
        history: Optional[Sequence[ChatMessage]],
    ) -> Optional[str]:
        try:
            chunks = await with_timeout(
                self.vector_store.query(info.collection_name, message, self.top_k),
                self.query_timeout,
                f"{kind} retrieval",
            )
            if not chunks:
                log.info("No chunks retrieved | source=%s", kind)
                return None

            payload = {
                "source_instructions": SOURCE_INSTRUCTIONS[kind],
                "source_label": SOURCE_LABELS[kind],
                "context": json.dumps(
                    [chunk.model_dump() for chunk in chunks], ensure_ascii=False
                ),
                "history": format_history(history, self.history_window),
                "input": message,
            }
            content = await with_timeout(
                run_sync(self.source_chain.invoke, payload),
                self.llm_timeout,
                f"{kind} answer",
            )

            log.info(
                "Answer from source | source=%s | collection=%s | chunks=%d | answer_len=%d",
                kind,
                info.collection_name,
                len(chunks),
                len(content or ""),
            )
            return content.strip() if content and content.strip() else None

        except Exception as e:
            log.error("Error getting answer from source | source=%s | error=%s", kind, str(e))
            return None

    async def _synthesize(
        self,
        answers: List[str],
        message: str,
        history: Optional[Sequence[ChatMessage]],
    ) -> str:
        try:
            combined = await with_timeout(
                run_sync(
                    self.synthesis_chain.invoke,
                    {
                        "input": message,
                        "history": format_history(history, self.history_window),
                        "answers": format_candidates(answers),
                    },
                ),
                self.synthesis_timeout,
                "Answer synthesis",
            )
        except Exception as e:
            log.error("Error combining answers, using first | error=%s", str(e))
            return answers[0]

        if not combined or not combined.strip():
            return answers[0]
        return combined.strip()

    async def _rewrite(self, answer: str) -> str:
        if self.rewriter is None:
            return answer
        try:
            return await self.rewriter(answer)
        except Exception as e:
            log.warning("Answer rewrite failed | error=%s", str(e))
            return answer
