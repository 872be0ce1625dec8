import asyncio

import pytest

from conftest import make_llm
from kb_chat.redis_cache.redis_client import chat_session_key, knowledge_base_key
from kb_chat.src.chat_session.manager import SESSION_NOT_FOUND_MESSAGE, ChatSessionManager
from kb_chat.src.chat_session.schemas import ChatSession
from kb_chat.src.document_chat.answer_engine import RetrievalAnswerEngine
from kb_chat.src.document_ingestion.text_loader import TextLoader
from kb_chat.src.knowledge_base.manager import KnowledgeBaseManager
from kb_chat.src.knowledge_base.schemas import KnowledgeBaseInput


@pytest.fixture
def kb_manager(store, vector_store, clock):
    return KnowledgeBaseManager(
        store, {"text": TextLoader(vector_store)}, {}, vector_store=vector_store, clock=clock
    )


@pytest.fixture
def engine(vector_store, kb_manager):
    return RetrievalAnswerEngine(
        vector_store, make_llm(lambda prompt: "FastAPI is a Python web framework.")
    )


def make_chat_manager(store, kb_manager, engine, clock, **config):
    return ChatSessionManager(store, kb_manager, engine, config, clock=clock)


async def create_kb(kb_manager, text="FastAPI is a modern Python web framework."):
    result = await kb_manager.create(KnowledgeBaseInput(text=text))
    assert result.success
    return result.token


@pytest.mark.asyncio
async def test_happy_path_two_turns(store, kb_manager, engine, clock, fake_redis):
    token = await create_kb(kb_manager)
    chat = make_chat_manager(store, kb_manager, engine, clock)

    first = await chat.process_chat("What is FastAPI?", token)
    assert first.success is True
    assert first.session_id == token
    assert first.message == "FastAPI is a Python web framework."
    assert len(await chat.get_chat_history(token)) == 2

    second = await chat.process_chat("Is it async?", token)
    assert second.success is True

    history = await chat.get_chat_history(token)
    assert [m.role for m in history] == ["user", "assistant", "user", "assistant"]
    assert history[2].content == "Is it async?"
    assert fake_redis.ttls[chat_session_key(token)] == 3600


@pytest.mark.asyncio
async def test_each_turn_resets_session_ttl(store, kb_manager, engine, clock):
    token = await create_kb(kb_manager)
    chat = make_chat_manager(store, kb_manager, engine, clock, session_ttl_seconds=100)

    await chat.process_chat("one", token)
    clock.advance(80)
    await chat.process_chat("two", token)
    clock.advance(80)

    # 160s after creation, but only 80s after the last turn
    assert await store.get(chat_session_key(token)) is not None


@pytest.mark.asyncio
async def test_history_is_bounded_fifo(store, kb_manager, engine, clock):
    token = await create_kb(kb_manager)
    chat = make_chat_manager(store, kb_manager, engine, clock, max_history_length=4)

    for i in range(3):
        await chat.process_chat(f"question {i}", token)

    history = await chat.get_chat_history(token)
    assert len(history) == 4
    assert history[0].content == "question 1"
    assert history[-2].content == "question 2"


@pytest.mark.asyncio
async def test_garbage_token_is_not_found(store, kb_manager, engine, clock):
    chat = make_chat_manager(store, kb_manager, engine, clock)

    result = await chat.process_chat("hello", "garbage-token")

    assert result.success is False
    assert result.error_type == "not_found"
    assert result.error == SESSION_NOT_FOUND_MESSAGE
    assert await store.get(chat_session_key("garbage-token")) is None


@pytest.mark.asyncio
async def test_active_session_outlives_knowledge_base_ttl(
    store, kb_manager, engine, clock, vector_store
):
    token = await create_kb(kb_manager)
    chat = make_chat_manager(store, kb_manager, engine, clock)

    for _ in range(5):
        result = await chat.process_chat("still there?", token)
        assert result.success is True
        clock.advance(1000)

    # 5000s after creation, the record is gone but the session is still sliding
    assert await kb_manager.get(token) is None
    assert f"text-{token}" in vector_store.collections
    assert len(await chat.get_chat_history(token)) == 10


@pytest.mark.asyncio
async def test_expired_knowledge_base_without_session_writes_nothing(
    store, kb_manager, engine, clock
):
    token = await create_kb(kb_manager)
    chat = make_chat_manager(store, kb_manager, engine, clock)
    clock.advance(3601)

    result = await chat.process_chat("hello", token)

    assert result.success is False
    assert result.error_type == "not_found"
    assert await store.get(chat_session_key(token)) is None


@pytest.mark.asyncio
async def test_idle_session_expires(store, kb_manager, engine, clock):
    token = await create_kb(kb_manager)
    chat = make_chat_manager(store, kb_manager, engine, clock, session_ttl_seconds=100)
    await chat.process_chat("hello", token)

    clock.advance(3601)

    assert (await chat.process_chat("hello again", token)).error_type == "not_found"


@pytest.mark.asyncio
async def test_validation_errors(store, kb_manager, engine, clock):
    chat = make_chat_manager(store, kb_manager, engine, clock)

    assert (await chat.process_chat("", "tok")).error_type == "validation"
    assert (await chat.process_chat("   ", "tok")).error_type == "validation"
    assert (await chat.process_chat("hi", "")).error_type == "validation"


@pytest.mark.asyncio
async def test_engine_crash_is_an_unexpected_error(store, kb_manager, clock):
    class BrokenEngine:
        async def answer_from_record(self, record, message, history):
            raise RuntimeError("boom")

    token = await create_kb(kb_manager)
    chat = make_chat_manager(store, kb_manager, BrokenEngine(), clock)

    result = await chat.process_chat("hello", token)

    assert result.success is False
    assert result.error_type == "unexpected"
    session = ChatSession.model_validate_json(await store.get(chat_session_key(token)))
    assert session.history == []


@pytest.mark.asyncio
async def test_concurrent_turns_keep_every_message(store, kb_manager, engine, clock):
    token = await create_kb(kb_manager)
    chat = make_chat_manager(store, kb_manager, engine, clock)

    results = await asyncio.gather(*(chat.process_chat(f"q{i}", token) for i in range(5)))

    assert all(r.success for r in results)
    assert len(await chat.get_chat_history(token)) == 10


@pytest.mark.asyncio
async def test_clear_history_and_session_count(store, kb_manager, engine, clock):
    token = await create_kb(kb_manager)
    other = await create_kb(kb_manager, "Redis is a key value store.")
    chat = make_chat_manager(store, kb_manager, engine, clock)
    await chat.process_chat("hello", token)
    await chat.process_chat("hello", other)

    assert await chat.get_session_count() == 2
    assert await chat.clear_chat_history(token) is True
    assert await chat.get_chat_history(token) == []
    assert await chat.clear_chat_history("missing") is False
    assert await chat.get_chat_history("missing") is None


@pytest.mark.asyncio
async def test_session_survives_knowledge_base_snapshot(store, kb_manager, engine, clock):
    token = await create_kb(kb_manager)
    chat = make_chat_manager(store, kb_manager, engine, clock)
    await chat.process_chat("hello", token)

    # the session keeps answering from its snapshot
    await store.delete(knowledge_base_key(token))
    result = await chat.process_chat("again", token)

    assert result.success is True
