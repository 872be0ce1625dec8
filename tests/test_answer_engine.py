import pytest

from conftest import make_llm
from kb_chat.exception.custom_exception import NotFoundError
from kb_chat.prompts.prompt_library import PROMPT_REGISTRY
from kb_chat.src.chat_session.schemas import ChatMessage
from kb_chat.src.document_chat.answer_engine import (
    NO_ANSWER_MESSAGE,
    RetrievalAnswerEngine,
    format_history,
)
from kb_chat.src.knowledge_base.schemas import KnowledgeBaseRecord

SOURCE_MARKERS = {
    "Context from text": "answer from text",
    "Context from document": "answer from file",
    "Context from website": "answer from link",
    "Context from youtube": "answer from video",
}


def source_llm(prompt: str) -> str:
    for marker, answer in SOURCE_MARKERS.items():
        if marker in prompt:
            return answer
    raise AssertionError("unexpected prompt")


def make_record(clock, *kinds):
    data = {"token": "tok", "created_at": clock(), "expires_at": clock()}
    extras = {
        "text": {},
        "file": {"filename": "a.pdf", "size": 1, "mimetype": "application/pdf"},
        "link": {"url": "https://example.com"},
        "video": {"url": "https://youtu.be/v", "video_id": "v"},
    }
    for kind in kinds:
        data[f"{kind}_source"] = {"collection_name": f"{kind}-tok", **extras[kind]}
    return KnowledgeBaseRecord.model_validate(data)


def fill_collections(vector_store, *kinds):
    for kind in kinds:
        vector_store.add(f"{kind}-tok", [f"{kind} chunk"], type=kind)


class RecordingSynthesis:
    def __init__(self, reply="combined answer", fail=False):
        self.prompts = []
        self.reply = reply
        self.fail = fail

    def __call__(self, prompt):
        self.prompts.append(prompt)
        if self.fail:
            raise RuntimeError("synthesis model down")
        return self.reply


@pytest.mark.asyncio
async def test_no_sources_with_chunks_returns_sentinel(vector_store, clock):
    record = make_record(clock, "text", "link")
    vector_store.add("text-tok", [])
    vector_store.add("link-tok", [])
    engine = RetrievalAnswerEngine(vector_store, make_llm(source_llm))

    assert await engine.answer_from_record(record, "what?") == NO_ANSWER_MESSAGE


@pytest.mark.asyncio
async def test_single_answer_passes_through_without_synthesis(vector_store, clock):
    record = make_record(clock, "text", "link")
    fill_collections(vector_store, "text")
    vector_store.failing_queries.add("link-tok")
    synthesis = RecordingSynthesis()
    engine = RetrievalAnswerEngine(
        vector_store, make_llm(source_llm), synthesis_llm=make_llm(synthesis)
    )

    answer = await engine.answer_from_record(record, "what?")

    assert answer == "answer from text"
    assert synthesis.prompts == []


@pytest.mark.asyncio
async def test_partial_failure_still_answers(vector_store, clock):
    record = make_record(clock, "text", "file", "link", "video")
    fill_collections(vector_store, "text", "file", "link", "video")

    def flaky(prompt):
        if "Context from document" in prompt:
            raise RuntimeError("rate limited")
        return source_llm(prompt)

    synthesis = RecordingSynthesis()
    engine = RetrievalAnswerEngine(vector_store, make_llm(flaky), synthesis_llm=make_llm(synthesis))

    answer = await engine.answer_from_record(record, "what?")

    assert answer == "combined answer"
    prompt = synthesis.prompts[0]
    assert "answer from file" not in prompt
    # candidates keep fan-out order
    assert prompt.index("Source 1:\nanswer from text") < prompt.index("Source 2:\nanswer from link")
    assert "Source 3:\nanswer from video" in prompt


@pytest.mark.asyncio
async def test_synthesis_failure_falls_back_to_first_candidate(vector_store, clock):
    record = make_record(clock, "file", "video")
    fill_collections(vector_store, "file", "video")
    engine = RetrievalAnswerEngine(
        vector_store,
        make_llm(source_llm),
        synthesis_llm=make_llm(RecordingSynthesis(fail=True)),
    )

    assert await engine.answer_from_record(record, "what?") == "answer from file"


@pytest.mark.asyncio
async def test_source_prompt_carries_chunks_and_recent_history(vector_store, clock):
    record = make_record(clock, "video")
    fill_collections(vector_store, "video")
    seen = []

    def capture(prompt):
        seen.append(prompt)
        return "ok"

    history = [ChatMessage(role="user", content=f"message {i}") for i in range(8)]
    engine = RetrievalAnswerEngine(vector_store, make_llm(capture))

    await engine.answer_from_record(record, "what?", history)

    prompt = seen[0]
    assert '"text": "video chunk"' in prompt
    assert "timestamped_video_link" in prompt
    assert "message 1" not in prompt
    assert "message 2" in prompt and "message 7" in prompt


@pytest.mark.asyncio
async def test_rewriter_applies_after_synthesis_and_failures_fall_back(vector_store, clock):
    record = make_record(clock, "text")
    fill_collections(vector_store, "text")

    async def shout(answer):
        return answer.upper()

    async def broken(answer):
        raise RuntimeError("persona model down")

    engine = RetrievalAnswerEngine(vector_store, make_llm(source_llm), rewriter=shout)
    assert await engine.answer_from_record(record, "q") == "ANSWER FROM TEXT"

    engine.rewriter = broken
    assert await engine.answer_from_record(record, "q") == "answer from text"


@pytest.mark.asyncio
async def test_answer_by_token_requires_live_record(vector_store):
    class NoRecords:
        async def get(self, token):
            return None

    engine = RetrievalAnswerEngine(vector_store, make_llm(source_llm), kb_manager=NoRecords())

    with pytest.raises(NotFoundError):
        await engine.answer("missing", "hello")


def test_format_history_window():
    history = [ChatMessage(role="user", content="a"), ChatMessage(role="assistant", content="b")]
    assert format_history(history, 1) == "Previous conversation:\nassistant: b\n\n"
    assert format_history([], 6) == ""


def test_synthesis_prompt_ends_with_the_user_turn():
    messages = PROMPT_REGISTRY["synthesis"].format_messages(
        input="What is FastAPI?", history="", answers="Source 1:\nA web framework."
    )

    assert messages[0].type == "system"
    assert messages[-1].type == "human"
    assert messages[-1].content == "What is FastAPI?"
