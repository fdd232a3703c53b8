"""
Client-side view of the conversations with optimistic sends.

A message typed by the user is shown immediately as pending under an id
the client picks; the server stores it under that same id, so the
``message-created`` event (or the send response) confirms it in place.
A failed send rolls the pending message back.
"""

import logging
from typing import Optional

import httpx

from wachat.intents import synthesize_message_id
from wachat.models import DeliveryState, Direction, utcnow
from wachat.normalizer import OUTGOING_DISPLAY_NAME
from wachat.realtime import MESSAGE_CREATED, MESSAGE_STATUS_CHANGED

logger = logging.getLogger(__name__)


def _same_message(a: dict, b: dict) -> bool:
    if a.get("external_id") and a.get("external_id") == b.get("external_id"):
        return True
    return bool(a.get("meta_id")) and a.get("meta_id") == b.get("meta_id")


def _unread_count(messages: list[dict]) -> int:
    return sum(
        1 for m in messages
        if m.get("direction") == Direction.INCOMING.value
        and m.get("delivery_state") != DeliveryState.READ.value
    )


class OptimisticTimeline:
    """Conversations keyed by conversation_id, each holding its message list."""

    def __init__(self, conversations: Optional[list[dict]] = None):
        self.conversations: dict[str, dict] = {}
        self.pending: dict[str, dict] = {}
        if conversations:
            self.load(conversations)

    def load(self, conversations: list[dict]) -> None:
        """Replace state with a GET /api/chats snapshot, keeping unconfirmed sends."""
        self.conversations = {}
        for view in conversations:
            copy = dict(view)
            copy["messages"] = [dict(m) for m in view.get("messages", [])]
            self.conversations[copy["conversation_id"]] = copy

        for external_id, message in list(self.pending.items()):
            conversation = self._conversation(message["conversation_id"])
            confirmed = next((m for m in conversation["messages"] if _same_message(m, message)), None)
            if confirmed is not None:
                del self.pending[external_id]
            else:
                conversation["messages"].append(message)

    def messages(self, conversation_id: str) -> list[dict]:
        conversation = self.conversations.get(conversation_id)
        return conversation["messages"] if conversation else []

    def _conversation(self, conversation_id: str) -> dict:
        if conversation_id not in self.conversations:
            self.conversations[conversation_id] = {
                "conversation_id": conversation_id,
                "display_name": f"Contact {conversation_id}",
                "messages": [],
                "unread_count": 0,
                "last_message": None,
            }
        return self.conversations[conversation_id]

    def add_pending(self, conversation_id: str, body: str) -> dict:
        message = {
            "external_id": synthesize_message_id(),
            "meta_id": None,
            "conversation_id": conversation_id,
            "counterpart_phone": conversation_id,
            "display_name": OUTGOING_DISPLAY_NAME,
            "body": body,
            "direction": Direction.OUTGOING.value,
            "delivery_state": DeliveryState.SENT.value,
            "content_kind": "text",
            "created_at": utcnow().isoformat(),
            "pending": True,
        }
        conversation = self._conversation(conversation_id)
        conversation["messages"].append(message)
        conversation["last_message"] = message
        self.pending[message["external_id"]] = message
        return message

    def reject(self, external_id: str) -> bool:
        """Roll back a pending message. Returns False if it was not pending."""
        message = self.pending.pop(external_id, None)
        if message is None:
            return False

        conversation = self._conversation(message["conversation_id"])
        conversation["messages"] = [m for m in conversation["messages"] if m is not message]
        if conversation.get("last_message") is message:
            conversation["last_message"] = conversation["messages"][-1] if conversation["messages"] else None
        logger.info(f"Rolled back unsent message {external_id}")
        return True

    def apply_event(self, event_name: str, payload: dict) -> None:
        if event_name == MESSAGE_CREATED:
            self._apply_created(payload)
        elif event_name == MESSAGE_STATUS_CHANGED:
            self._apply_status(payload)

    def _apply_created(self, record: dict) -> None:
        conversation = self._conversation(record["conversation_id"])
        messages = conversation["messages"]

        pending = self.pending.pop(record.get("external_id"), None)
        if pending is not None:
            index = next(i for i, m in enumerate(messages) if m is pending)
            messages[index] = dict(record)
            if conversation.get("last_message") is pending:
                conversation["last_message"] = messages[index]
            return

        if any(_same_message(m, record) for m in messages):
            return

        messages.append(dict(record))
        conversation["last_message"] = messages[-1]
        conversation["unread_count"] = _unread_count(messages)

    def _apply_status(self, payload: dict) -> None:
        conversation = self.conversations.get(payload.get("conversation_id"))
        if conversation is None:
            return

        new_state = payload.get("new_state")
        for message in conversation["messages"]:
            if payload.get("bulk"):
                if message.get("direction") == Direction.INCOMING.value:
                    message["delivery_state"] = new_state
            elif _same_message(message, payload):
                message["delivery_state"] = new_state
        conversation["unread_count"] = _unread_count(conversation["messages"])


class ChatClient:
    """HTTP client for the conversation API."""

    def __init__(self, base_url: str = "http://localhost:8000", timeout: float = 5.0,
                 http_client: Optional[httpx.Client] = None):
        self._http = http_client or httpx.Client(base_url=base_url, timeout=timeout)

    def fetch_conversations(self) -> list[dict]:
        response = self._http.get("/api/chats")
        response.raise_for_status()
        return response.json()

    def send_message(self, timeline: OptimisticTimeline, conversation_id: str, body: str) -> dict:
        """
        Show the message immediately, then store it.

        Raises:
            httpx.HTTPError: the send failed; the pending message was rolled back
        """
        pending = timeline.add_pending(conversation_id, body)
        try:
            response = self._http.post("/api/send", json={
                "conversation_id": conversation_id,
                "body": body,
                "direction": Direction.OUTGOING.value,
                "external_id": pending["external_id"],
            })
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to send message: {e}")
            timeline.reject(pending["external_id"])
            raise

        record = response.json()["message"]
        timeline.apply_event(MESSAGE_CREATED, record)
        return record

    def close(self) -> None:
        self._http.close()
