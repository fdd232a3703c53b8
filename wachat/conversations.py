"""
Conversation views: the read-side projection of stored messages.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from wachat import storage
from wachat.models import DeliveryState, Direction
from wachat.realtime import RealtimeEvent, bulk_read_event

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class ConversationView:
    conversation_id: str
    display_name: str
    phone: Optional[str] = None
    avatar_ref: Optional[str] = None
    is_online: bool = False
    last_seen_at: Optional[datetime] = None
    messages: list = field(default_factory=list)
    unread_count: int = 0
    last_message: Any = None


def _created_at(message) -> datetime:
    return message.created_at or EPOCH


def _is_unread(message) -> bool:
    return message.direction == Direction.INCOMING.value and message.delivery_state != DeliveryState.READ.value


def _view_from_messages(conversation_id: str, messages: list, contact) -> ConversationView:
    if contact is not None:
        view = ConversationView(
            conversation_id=conversation_id,
            display_name=contact.display_name,
            phone=contact.phone,
            avatar_ref=contact.avatar_ref,
            is_online=bool(contact.is_online),
            last_seen_at=contact.last_seen_at,
        )
    else:
        # No stored contact yet: describe the counterpart from its own messages
        named = next((m for m in messages if m.direction == Direction.INCOMING.value), messages[0])
        view = ConversationView(
            conversation_id=conversation_id,
            display_name=named.display_name,
            phone=named.counterpart_phone,
            avatar_ref=None,
        )

    view.messages = messages
    view.unread_count = sum(1 for m in messages if _is_unread(m))
    view.last_message = messages[-1] if messages else None
    return view


def build_conversation_views(messages: Iterable, contacts: Iterable) -> list[ConversationView]:
    """
    Group messages into per-conversation views.

    Messages within a view are sorted by created_at ascending; views are
    sorted by their last message's created_at, newest first.
    """
    contacts_by_id = {contact.conversation_id: contact for contact in contacts}

    groups: dict[str, list] = {}
    for message in messages:
        groups.setdefault(message.conversation_id, []).append(message)

    views = [
        _view_from_messages(conversation_id, sorted(group, key=_created_at), contacts_by_id.get(conversation_id))
        for conversation_id, group in groups.items()
    ]
    views.sort(key=lambda v: _created_at(v.last_message) if v.last_message is not None else EPOCH, reverse=True)
    return views


def list_conversation_views(db: Session) -> list[ConversationView]:
    views = build_conversation_views(storage.list_messages(db), storage.list_contacts(db))
    logger.debug(f"Built {len(views)} conversation views")
    return views


def list_conversation_messages(db: Session, conversation_id: str) -> list:
    return storage.list_messages(db, conversation_id=conversation_id)


def mark_conversation_read(db: Session, conversation_id: str) -> tuple[int, RealtimeEvent]:
    """
    Set every incoming message of the conversation to read.

    Returns:
        (number of messages updated, bulk status event to publish)
    """
    count = storage.mark_conversation_read(db, conversation_id)
    return count, bulk_read_event(conversation_id, count)
