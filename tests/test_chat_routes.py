"""Tests for the chat HTTP routes using FastAPI's TestClient."""
import jwt
import pytest
from fastapi.testclient import TestClient

from app.config import settings
from app.core.deps import get_registry
from app.main import app
from app.services.chat_service import (
    ChatSessionRegistry,
    ConversationLifecycle,
    LocalMessage,
    SentTurn,
)


def _auth(user_id: str) -> dict:
    token = jwt.encode({"sub": user_id}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def registry(store, generator):
    return ChatSessionRegistry(lambda: ConversationLifecycle(store, generator))


@pytest.fixture
def client(registry, monkeypatch):
    monkeypatch.setattr(settings, "TYPING_DELAY_MS", 0)
    app.dependency_overrides[get_registry] = lambda: registry
    yield TestClient(app)
    app.dependency_overrides.clear()


def _session_controller(client, registry) -> ConversationLifecycle:
    return registry.get(client.cookies.get(settings.SESSION_COOKIE))


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_missing_token_rejected(client):
    response = client.post("/api/user-1/session")
    assert response.status_code == 401


def test_invalid_token_rejected(client):
    response = client.post("/api/user-1/session", headers={"Authorization": "Bearer nonsense"})
    assert response.status_code == 401


def test_user_mismatch_rejected(client):
    response = client.get("/api/user-1/conversations", headers=_auth("user-2"))
    assert response.status_code == 401
    assert response.json()["detail"] == "User ID mismatch"


def test_sign_in_without_conversations(client):
    response = client.post("/api/user-1/session", headers=_auth("user-1"))

    assert response.status_code == 200
    body = response.json()
    assert body["state"] == "ready"
    assert body["active_conversation"] is None
    assert body["conversations"] == []
    assert settings.SESSION_COOKIE in client.cookies


def test_sign_in_starts_new_conversation_when_latest_has_content(client, store):
    existing = store.create_conversation("user-1")
    store.append_message(existing.id, "user", "Tell me about moss")

    body = client.post("/api/user-1/session", headers=_auth("user-1")).json()

    assert body["active_conversation"]["id"] != existing.id
    assert body["active_conversation"]["title"] == "New Chat"
    assert len(body["conversations"]) == 2


def test_chat_flow_titles_and_persists(client, store):
    headers = _auth("user-1")
    client.post("/api/user-1/session", headers=headers)
    created = client.post("/api/user-1/conversations", headers=headers)
    assert created.status_code == 201

    response = client.post(
        "/api/user-1/chat", json={"message": "What is photosynthesis?"}, headers=headers
    )

    assert response.status_code == 200
    body = response.json()
    assert body["conversation_id"] == created.json()["id"]
    assert body["title"] == "What is photosynthesis?"
    assert body["user_message"]["status"] == "confirmed"
    assert body["assistant_message"]["html"] == (
        "<strong>Photosynthesis</strong> turns light into sugar."
    )
    assert body["assistant_message"]["plain"] == "Photosynthesis turns light into sugar."

    messages = client.get("/api/user-1/messages", headers=headers).json()
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert all(m["status"] == "confirmed" for m in messages)

    conversations = client.get("/api/user-1/conversations", headers=headers).json()
    assert conversations[0]["title"] == "What is photosynthesis?"


def test_blank_message_is_bad_request(client):
    headers = _auth("user-1")
    response = client.post("/api/user-1/chat", json={"message": "  "}, headers=headers)
    assert response.status_code == 400


def test_select_foreign_conversation_is_not_found(client, store):
    foreign = store.create_conversation("user-2")

    response = client.post(
        f"/api/user-1/conversations/{foreign.id}/select", headers=_auth("user-1")
    )

    assert response.status_code == 404


def test_select_conversation_returns_its_messages(client, store):
    headers = _auth("user-1")
    older = store.create_conversation("user-1")
    store.append_message(older.id, "user", "Ferns?")
    client.post("/api/user-1/session", headers=headers)

    body = client.post(f"/api/user-1/conversations/{older.id}/select", headers=headers).json()

    assert body["active_conversation"]["id"] == older.id
    assert [m["content"] for m in body["messages"]] == ["Ferns?"]


def test_concurrent_send_is_conflict(client, registry):
    headers = _auth("user-1")
    client.post("/api/user-1/session", headers=headers)
    conversation_id = client.post("/api/user-1/conversations", headers=headers).json()["id"]
    controller = _session_controller(client, registry)

    with controller.guard.hold(conversation_id):
        response = client.post("/api/user-1/chat", json={"message": "Hi"}, headers=headers)

    assert response.status_code == 409


def test_guest_chat_is_not_persisted(client, store):
    response = client.post("/api/chat", json={"message": "What is a seed?"})

    assert response.status_code == 200
    body = response.json()
    assert body["conversation_id"] is None
    assert body["user_message"]["status"] == "local"
    assert body["assistant_message"]["status"] == "local"


def test_guest_chat_refused_for_signed_in_session(client):
    client.post("/api/user-1/session", headers=_auth("user-1"))

    response = client.post("/api/chat", json={"message": "Hello"})

    assert response.status_code == 409


def test_sign_out_then_guest_chat(client):
    headers = _auth("user-1")
    client.post("/api/user-1/session", headers=headers)

    assert client.delete("/api/user-1/session", headers=headers).status_code == 204
    assert client.post("/api/chat", json={"message": "Hello"}).status_code == 200


def test_sign_out_forgets_the_session(client, registry):
    headers = _auth("user-1")
    client.post("/api/user-1/session", headers=headers)
    signed_in = _session_controller(client, registry)
    assert len(registry) == 1

    client.delete("/api/user-1/session", headers=headers)

    assert len(registry) == 0
    assert _session_controller(client, registry) is not signed_in


def test_chat_response_names_conversation_the_send_started_in(client, registry, store, monkeypatch):
    headers = _auth("user-1")
    client.post("/api/user-1/session", headers=headers)
    controller = _session_controller(client, registry)
    started_in = store.create_conversation("user-1", title="Xylem")
    controller.new_conversation()

    turn = SentTurn(
        LocalMessage(role="user", content="What is xylem?", status="confirmed"),
        LocalMessage(role="assistant", content="Water transport tissue.", status="confirmed"),
        started_in,
    )
    monkeypatch.setattr(controller, "send_message", lambda text: turn)

    body = client.post("/api/user-1/chat", json={"message": "What is xylem?"}, headers=headers).json()

    assert body["conversation_id"] == started_in.id
    assert body["title"] == "Xylem"
    assert controller.active_conversation.id != started_in.id


def test_reveal_streams_frames_of_latest_reply(client):
    client.post("/api/chat", json={"message": "What is a seed?"})

    response = client.get("/api/chat/reveal")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    frames = [line for line in response.text.splitlines() if line.startswith("data: {\"html\"")]
    assert frames
    assert "<strong>Photosynthesis</strong> turns light into sugar." in frames[-1]
    assert "event: done" in response.text


def test_reveal_without_reply_is_not_found(client):
    response = client.get("/api/chat/reveal")
    assert response.status_code == 404
