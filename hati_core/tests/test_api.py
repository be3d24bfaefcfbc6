import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from hati_core.api import create_app
from hati_core.config.settings import Settings
from hati_core.domain.events import parse_event_line
from hati_core.domain.exceptions import ApiError
from hati_core.domain.models import ChatStreamChunk, ImageResult, SpeechChunk
from hati_core.infrastructure.storage.json_store import JsonConversationStore


class FakeProvider:
    name = "fake"

    def __init__(self):
        self.fail_chat = False

    async def chat_stream(self, req):
        if self.fail_chat:
            raise ApiError(code="API_ERROR", message="upstream down")
        for piece in ("Hi", " there", "!"):
            yield ChatStreamChunk(provider="fake", model=req.model, content=piece)

    async def speech_stream(self, req):
        for data in ("AAAB", "AAAC"):
            yield SpeechChunk(audio=data)

    async def generate_image(self, req):
        return ImageResult(b64_json=f"img:{req.prompt}:{req.size}")


def _events(text):
    return [e for e in (parse_event_line(line) for line in text.splitlines()) if e is not None]


@pytest.fixture
def env():
    with tempfile.TemporaryDirectory() as d:
        cfg = Settings(auth_enabled=False, app_password="pw", session_secret="s3cret")
        provider = FakeProvider()
        store = JsonConversationStore(root=Path(d) / ".storage")
        app = create_app(cfg, store=store, provider_client=provider, persona_prompt="You are Hati.")
        yield TestClient(app), provider, store


def test_health(env):
    client, _, _ = env
    assert client.get("/health").json() == {"status": "ok"}


def test_conversation_crud(env):
    client, _, _ = env
    resp = client.post("/conversations", json={"title": ""})
    assert resp.status_code == 201
    conv = resp.json()
    assert conv["title"] == "New Chat"
    assert isinstance(conv["id"], int)

    named = client.post("/conversations", json={"title": "Songs"}).json()
    assert [c["id"] for c in client.get("/conversations").json()] == [named["id"], conv["id"]]

    detail = client.get(f"/conversations/{conv['id']}").json()
    assert detail["messages"] == []

    assert client.delete(f"/conversations/{conv['id']}").status_code == 204
    resp = client.get(f"/conversations/{conv['id']}")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "CONVERSATION_NOT_FOUND"


def test_create_conversation_without_body(env):
    client, _, _ = env
    assert client.post("/conversations").json()["title"] == "New Chat"


def test_send_message_streams_sse(env):
    client, _, _ = env
    conv = client.post("/conversations", json={}).json()

    resp = client.post(f"/conversations/{conv['id']}/messages", json={"content": "hello"})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache"

    events = _events(resp.text)
    assert [e.kind for e in events] == ["content", "content", "content", "done"]
    streamed = "".join(e.content for e in events if e.kind == "content")

    messages = client.get(f"/conversations/{conv['id']}").json()["messages"]
    assert [(m["role"], m["content"]) for m in messages] == [("user", "hello"), ("assistant", streamed)]


def test_send_empty_message(env):
    client, _, store = env
    conv = client.post("/conversations", json={}).json()
    resp = client.post(f"/conversations/{conv['id']}/messages", json={"content": ""})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "EMPTY_MESSAGE"
    assert store.list_messages(conv["id"]) == []


def test_send_to_unknown_conversation(env):
    client, _, _ = env
    resp = client.post("/conversations/999/messages", json={"content": "hi"})
    assert resp.status_code == 404


def test_upstream_failure_before_stream(env):
    client, provider, store = env
    provider.fail_chat = True
    conv = client.post("/conversations", json={}).json()
    resp = client.post(f"/conversations/{conv['id']}/messages", json={"content": "hi"})
    assert resp.status_code == 502
    assert resp.json()["error"]["message"] == "upstream down"
    assert [m.role for m in store.list_messages(conv["id"])] == ["user"]


def test_tts_stream(env):
    client, _, _ = env
    resp = client.post("/tts", json={"text": "Hello"})
    assert resp.status_code == 200
    events = _events(resp.text)
    assert [e.kind for e in events] == ["audio", "audio", "done"]
    assert events[0].audio == "AAAB"

    assert client.post("/tts", json={"text": ""}).status_code == 400


def test_generate_image(env):
    client, _, _ = env
    resp = client.post("/generate-image", json={"prompt": "a fox", "size": "512x512"})
    assert resp.json() == {"b64_json": "img:a fox:512x512"}

    resp = client.post("/generate-image", json={"prompt": "a fox", "size": "13x13"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVALID_SIZE"
    assert client.post("/generate-image", json={"prompt": " "}).json()["error"]["code"] == "EMPTY_PROMPT"


def test_projects_and_songs(env):
    client, _, _ = env
    project = client.post("/projects", json={"title": "Snake", "code": "let x = 1"})
    assert project.status_code == 201
    pid = project.json()["id"]
    assert client.get(f"/projects/{pid}").json()["language"] == "javascript"
    assert [p["id"] for p in client.get("/projects").json()] == [pid]
    assert client.get("/projects/999").status_code == 404
    assert client.post("/projects", json={"title": ""}).status_code == 422

    song = client.post("/songs", json={"title": "Moon", "lyrics": "la la", "genre": "pop"}).json()
    assert client.get(f"/songs/{song['id']}").json()["lyrics"] == "la la"
    assert len(client.get("/songs").json()) == 1


def test_login_required_when_auth_enabled():
    with tempfile.TemporaryDirectory() as d:
        cfg = Settings(auth_enabled=True, app_password="pw", session_secret="s3cret")
        store = JsonConversationStore(root=Path(d) / ".storage")
        client = TestClient(create_app(cfg, store=store, provider_client=FakeProvider(), persona_prompt="x"))

        resp = client.get("/conversations")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "MISSING_TOKEN"

        assert client.post("/auth/login", json={"password": "nope"}).status_code == 401
        token = client.post("/auth/login", json={"password": "pw"}).json()["token"]

        headers = {"Authorization": f"Bearer {token}"}
        assert client.get("/conversations", headers=headers).status_code == 200
        assert client.get("/conversations", headers={"Authorization": "Bearer bad.token"}).status_code == 401
        assert client.get("/health").status_code == 200
