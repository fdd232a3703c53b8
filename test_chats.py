"""
Tests for the conversation read surface and the send endpoint.

Tests cover:
- POST /api/send (outgoing messages, client-chosen ids, duplicates)
- GET /api/chats ordering, unread counts and contact fallback
- GET /api/chats/{conversation_id}
- POST /api/chats/{conversation_id}/read
- GET/POST /api/contacts
"""

import json

import pytest


def generic_message(client, wa_id: str, text: str, timestamp: int, name: str = None, message_id: str = None):
    """Helper to ingest one incoming message through the generic webhook shape."""
    body = {"wa_id": wa_id, "text": text, "type": "incoming", "timestamp": timestamp}
    if name is not None:
        body["name"] = name
    if message_id is not None:
        body["id"] = message_id

    response = client.post("/webhook", content=json.dumps(body), headers={"Content-Type": "application/json"})
    assert response.status_code == 200
    assert response.json()["applied"] >= 1


@pytest.fixture
def seeded_client(client):
    """Three conversations whose latest messages are at t1 < t2 < t3."""
    generic_message(client, "111", "first from 111", 1754400000, name="Ana", message_id="a1")
    generic_message(client, "222", "first from 222", 1754400100, name="Ben", message_id="b1")
    generic_message(client, "333", "first from 333", 1754400200, name="Cho", message_id="c1")
    generic_message(client, "111", "second from 111", 1754400300, name="Ana", message_id="a2")
    return client


class TestSendMessage:

    def test_send_outgoing(self, client):
        response = client.post("/api/send", json={"conversation_id": "111", "body": "Hello Ana"})

        assert response.status_code == 201
        data = response.json()
        assert data["success"] is True
        assert data["applied"] is True
        assert data["message"]["direction"] == "outgoing"
        assert data["message"]["display_name"] == "You"
        assert data["message"]["delivery_state"] == "sent"
        assert data["message"]["external_id"].startswith("msg_")

    def test_send_with_client_id_is_idempotent(self, client):
        body = {"conversation_id": "111", "body": "Hello", "external_id": "client-1"}

        first = client.post("/api/send", json=body)
        second = client.post("/api/send", json=body)

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json()["applied"] is False
        assert len(client.get("/api/chats/111").json()) == 1

    def test_send_creates_contact_lazily(self, client):
        client.post("/api/send", json={"conversation_id": "444", "body": "Hi"})

        contacts = client.get("/api/contacts").json()
        assert [c["conversation_id"] for c in contacts] == ["444"]
        assert contacts[0]["display_name"] == "Contact 444"

    def test_send_validation(self, client):
        assert client.post("/api/send", json={"conversation_id": "111"}).status_code == 422
        assert client.post("/api/send", json={"conversation_id": "111", "body": "   "}).status_code == 422
        assert client.post(
            "/api/send", json={"conversation_id": "111", "body": "x", "direction": "sideways"}
        ).status_code == 422

    def test_send_publishes_message_created(self, client, published):
        response = client.post("/api/send", json={"conversation_id": "111", "body": "Hi", "external_id": "c-9"})

        assert response.status_code == 201
        assert [(name, payload["external_id"]) for name, payload in published] == [("message-created", "c-9")]


class TestListChats:

    def test_empty(self, client):
        response = client.get("/api/chats")

        assert response.status_code == 200
        assert response.json() == []

    def test_ordered_by_latest_message_desc(self, seeded_client):
        chats = seeded_client.get("/api/chats").json()

        assert [c["conversation_id"] for c in chats] == ["111", "333", "222"]

    def test_messages_sorted_ascending(self, seeded_client):
        chats = seeded_client.get("/api/chats").json()
        ana = chats[0]

        assert [m["body"] for m in ana["messages"]] == ["first from 111", "second from 111"]
        assert ana["last_message"]["body"] == "second from 111"
        assert ana["display_name"] == "Ana"

    def test_unread_count(self, seeded_client):
        chats = {c["conversation_id"]: c for c in seeded_client.get("/api/chats").json()}

        assert chats["111"]["unread_count"] == 2
        assert chats["222"]["unread_count"] == 1

    def test_outgoing_messages_not_unread(self, seeded_client):
        seeded_client.post("/api/send", json={"conversation_id": "222", "body": "reply"})

        chats = {c["conversation_id"]: c for c in seeded_client.get("/api/chats").json()}
        assert chats["222"]["unread_count"] == 1
        assert len(chats["222"]["messages"]) == 2


class TestChatMessages:

    def test_messages_for_one_conversation(self, seeded_client):
        response = seeded_client.get("/api/chats/111")

        assert response.status_code == 200
        assert [m["external_id"] for m in response.json()] == ["a1", "a2"]

    def test_unknown_conversation(self, seeded_client):
        response = seeded_client.get("/api/chats/999")

        assert response.status_code == 200
        assert response.json() == []


class TestMarkRead:

    def test_mark_read_resets_unread(self, seeded_client):
        response = seeded_client.post("/api/chats/111/read")

        assert response.status_code == 200
        assert response.json() == {"success": True, "updated": 2}

        chats = {c["conversation_id"]: c for c in seeded_client.get("/api/chats").json()}
        assert chats["111"]["unread_count"] == 0
        assert all(m["delivery_state"] == "read" for m in chats["111"]["messages"])
        assert chats["222"]["unread_count"] == 1

    def test_mark_read_leaves_outgoing_alone(self, seeded_client):
        seeded_client.post("/api/send", json={"conversation_id": "111", "body": "ok"})

        seeded_client.post("/api/chats/111/read")

        messages = seeded_client.get("/api/chats/111").json()
        outgoing = [m for m in messages if m["direction"] == "outgoing"]
        assert outgoing[0]["delivery_state"] == "sent"

    def test_mark_read_publishes_bulk_event(self, seeded_client, published):
        seeded_client.post("/api/chats/222/read")

        assert published == [
            ("message-status-changed", {"conversation_id": "222", "new_state": "read", "bulk": True, "count": 1})
        ]


class TestContacts:

    def test_create_and_update_contact(self, client):
        created = client.post("/api/contacts", json={"conversation_id": "111", "display_name": "Ana"})
        updated = client.post(
            "/api/contacts",
            json={"conversation_id": "111", "display_name": "Ana Maria", "avatar_ref": "avatars/ana.png"},
        )

        assert created.status_code == 200
        assert updated.json()["display_name"] == "Ana Maria"
        contacts = client.get("/api/contacts").json()
        assert len(contacts) == 1
        assert contacts[0]["avatar_ref"] == "avatars/ana.png"

    def test_contact_name_used_for_later_messages(self, client):
        client.post("/api/contacts", json={"conversation_id": "777", "display_name": "Dora"})

        generic_message(client, "777", "hello", 1754400000)

        messages = client.get("/api/chats/777").json()
        assert messages[0]["display_name"] == "Dora"


class TestHealthAndMetrics:

    def test_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_metrics_exposes_intent_counters(self, client):
        generic_message(client, "111", "hello", 1754400000)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "ingest_intents_total" in response.text
        assert "webhook_requests_total" in response.text
