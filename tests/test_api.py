import pytest
from fastapi.testclient import TestClient

from conftest import FakeRedis, FakeVectorStore, FrozenClock, StaticLoader, make_llm
from api.main import create_app
from kb_chat.redis_cache.redis_client import SessionStore
from kb_chat.services import Services
from kb_chat.src.chat_session.manager import ChatSessionManager
from kb_chat.src.course_chat.service import CourseChatService
from kb_chat.src.document_chat.answer_engine import RetrievalAnswerEngine
from kb_chat.src.document_ingestion.text_loader import TextLoader
from kb_chat.src.knowledge_base.manager import KnowledgeBaseManager
from kb_chat.utils.api_tracker import ApiTracker

CONFIG = {
    "knowledge_base": {"sweep_interval_seconds": 0},
    "cors": {"allow_origins": ["*"]},
}


def build_fake_services(config):
    clock = FrozenClock()
    store = SessionStore(FakeRedis(clock))
    vector_store = FakeVectorStore(clock)
    vector_store.add("course-python", ["Generators yield values lazily."])

    loaders = {
        "text": TextLoader(vector_store),
        "file": StaticLoader(
            vector_store,
            "file",
            extra={"filename": "notes.pdf", "size": 9, "mimetype": "application/pdf"},
        ),
    }
    kb_manager = KnowledgeBaseManager(store, loaders, {}, vector_store=vector_store, clock=clock)
    engine = RetrievalAnswerEngine(vector_store, make_llm(lambda p: "Answer from the docs."))
    return Services(
        config=config,
        store=store,
        vector_store=vector_store,
        kb_manager=kb_manager,
        engine=engine,
        chat_manager=ChatSessionManager(store, kb_manager, engine, {}, clock=clock),
        course_chat=CourseChatService(store, vector_store, make_llm(lambda p: "Course answer.")),
        api_tracker=ApiTracker(store),
    )


@pytest.fixture
def client():
    app = create_app(CONFIG, services_factory=build_fake_services)
    with TestClient(app) as c:
        yield c


def create_kb(client, **fields):
    resp = client.post("/knowledge-base", json=fields)
    assert resp.status_code == 201, resp.json()
    return resp.json()["token"]


class TestKnowledgeBaseRoutes:
    def test_create_from_json(self, client):
        resp = client.post("/knowledge-base", json={"text": "FastAPI uses Starlette."})

        assert resp.status_code == 201
        body = resp.json()
        assert body["success"] is True
        assert body["message"] == "Knowledge base created successfully"
        assert body["token"]

    def test_create_from_multipart_file(self, client):
        resp = client.post(
            "/knowledge-base",
            data={"text": "extra text"},
            files={"file": ("notes.pdf", b"%PDF-1.4", "application/pdf")},
        )
        assert resp.status_code == 201

        summary = client.get(f"/knowledge-base/{resp.json()['token']}").json()["data"]
        assert summary["file_source"]["filename"] == "notes.pdf"
        assert summary["text_source"]["collection_name"].startswith("text-")

    def test_missing_sources_is_400(self, client):
        resp = client.post("/knowledge-base", json={})

        assert resp.status_code == 400
        assert resp.json() == {
            "success": False,
            "message": "At least one of text, file, link, or video URL must be provided",
            "errors": [
                {
                    "field": "general",
                    "message": "At least one of text, file, link, or video URL must be provided",
                }
            ],
        }

    def test_bad_file_type_is_400(self, client):
        resp = client.post(
            "/knowledge-base",
            files={"file": ("image.png", b"\x89PNG", "image/png")},
        )
        assert resp.status_code == 400
        assert resp.json()["message"] == "Only PDF and CSV files are allowed"

    def test_bad_youtube_url_is_400(self, client):
        resp = client.post("/knowledge-base", json={"youtubeUrl": "https://vimeo.com/1"})
        assert resp.status_code == 400
        assert resp.json()["errors"][0]["field"] == "video"

    def test_bad_crawl_depth_is_400(self, client):
        resp = client.post(
            "/knowledge-base", json={"link": "https://example.com", "crawl_depth": "deep"}
        )
        assert resp.status_code == 400

    def test_get_list_delete(self, client):
        token = create_kb(client, text="Redis keeps keys in memory.")

        listing = client.get("/knowledge-base").json()
        assert listing["data"] == {"tokens": [token], "count": 1}

        assert client.delete(f"/knowledge-base/{token}").status_code == 200
        assert client.get(f"/knowledge-base/{token}").status_code == 404
        assert client.delete(f"/knowledge-base/{token}").status_code == 404


class TestChatRoutes:
    def test_chat_round_trip(self, client):
        token = create_kb(client, text="FastAPI is built on Starlette.")

        resp = client.post("/chat", json={"message": "What is it built on?", "token": token})

        assert resp.status_code == 200
        assert resp.json() == {
            "success": True,
            "message": "Answer from the docs.",
            "session_id": token,
        }

        history = client.get(f"/chat/{token}/history").json()["data"]
        assert history["count"] == 2
        assert history["history"][0]["role"] == "user"

        assert client.delete(f"/chat/{token}/history").status_code == 200
        assert client.get(f"/chat/{token}/history").json()["data"]["count"] == 0

    def test_chat_requires_message_and_token(self, client):
        resp = client.post("/chat", json={"message": "hi"})
        assert resp.status_code == 400
        assert resp.json()["message"] == "Both message and token are required"

    def test_chat_unknown_token_is_404(self, client):
        resp = client.post("/chat", json={"message": "hi", "token": "garbage"})
        assert resp.status_code == 404
        assert resp.json()["success"] is False

    def test_history_unknown_token_is_404(self, client):
        assert client.get("/chat/garbage/history").status_code == 404


class TestCourseChatRoute:
    def test_course_chat_accepts_camel_case(self, client):
        resp = client.post("/course-chat", json={"message": "What is yield?", "courseName": "python"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["message"] == "Course answer."
        assert body["token"]

    def test_unknown_course_is_404(self, client):
        resp = client.post("/course-chat", json={"message": "hi", "course_name": "rust"})
        assert resp.status_code == 404


def test_health_reports_sessions_and_counts(client):
    client.get("/knowledge-base")
    client.get("/knowledge-base")

    body = client.get("/health").json()

    assert body["status"] == "ok"
    assert body["active_sessions"] == 0
    assert body["api_counts"]["GET:/knowledge-base"] == 2
