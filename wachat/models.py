"""
SQLAlchemy ORM models for database tables.

This module contains the canonical Message and Contact records.
For Pydantic request/response schemas, see schemas.py.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.types import TypeDecorator

from wachat.storage import Base


class Direction(str, enum.Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class DeliveryState(str, enum.Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetime column.

    SQLite drops tzinfo on the way back; values are normalized to UTC on
    write and re-tagged as UTC on read so comparisons never mix naive and
    aware datetimes.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Message(Base):
    """
    A single chat-timeline entry.

    Table: messages
    Unique: external_id (NULLs allowed, so messages without a provider id
    never collide)
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_id = Column(String, unique=True, nullable=True)
    meta_id = Column(String, nullable=True, index=True)
    conversation_id = Column(String, nullable=False, index=True)
    counterpart_phone = Column(String, nullable=False)
    display_name = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    direction = Column(String, nullable=False)
    delivery_state = Column(String, nullable=False, default=DeliveryState.SENT.value)
    sender_address = Column(String, nullable=True)
    recipient_address = Column(String, nullable=True)
    content_kind = Column(String, nullable=False, default="text")
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    raw_origin = Column(JSON, nullable=False, default=dict)

    def __repr__(self) -> str:
        return f"<Message external_id={self.external_id} conversation_id={self.conversation_id}>"


class Contact(Base):
    """
    A conversation participant's profile.

    Table: contacts
    Unique: conversation_id (exactly one contact per conversation)
    """
    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String, unique=True, nullable=False)
    display_name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    avatar_ref = Column(String, nullable=True)
    last_seen_at = Column(UTCDateTime, nullable=False, default=utcnow)
    is_online = Column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return f"<Contact conversation_id={self.conversation_id} display_name={self.display_name}>"
