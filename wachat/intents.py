"""
Normalized ingestion intents.

The normalizer turns a raw payload into an ordered tuple of these values;
the upsert engine applies them one at a time. All of them are immutable.
"""

import time
import uuid
from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from wachat.models import DeliveryState, Direction, utcnow


def synthesize_message_id() -> str:
    """Build a provider-style id for messages that arrive without one."""
    return f"msg_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class MessageKey(BaseModel):
    """
    Composite dedup key for a message.

    A stored message matches a candidate id when either its external_id or
    its meta_id equals that id. Candidates are tried external id first,
    meta id second.
    """
    model_config = ConfigDict(frozen=True)

    external_id: Optional[str] = None
    meta_id: Optional[str] = None

    def candidates(self) -> list[str]:
        ids = []
        for value in (self.external_id, self.meta_id):
            if value and value not in ids:
                ids.append(value)
        return ids

    def is_empty(self) -> bool:
        return not self.candidates()

    def __str__(self) -> str:
        return "/".join(self.candidates()) or "<no id>"


class MessageData(BaseModel):
    """Field values for one canonical Message record."""
    model_config = ConfigDict(frozen=True)

    external_id: Optional[str] = None
    meta_id: Optional[str] = None
    conversation_id: str
    counterpart_phone: str
    display_name: str
    body: str
    direction: Direction
    delivery_state: DeliveryState = DeliveryState.SENT
    sender_address: Optional[str] = None
    recipient_address: Optional[str] = None
    content_kind: str = "text"
    created_at: datetime = Field(default_factory=utcnow)
    raw_origin: dict = Field(default_factory=dict)

    @property
    def key(self) -> MessageKey:
        return MessageKey(external_id=self.external_id, meta_id=self.meta_id)


class ContactUpsert(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["contact_upsert"] = "contact_upsert"
    conversation_id: str
    display_name: str
    phone: Optional[str] = None


class MessageUpsert(BaseModel):
    """Insert a message unless one with the same key already exists."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["message_upsert"] = "message_upsert"
    message: MessageData


class StatusUpdate(BaseModel):
    """Move an existing message to a new delivery state."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["status_update"] = "status_update"
    key: MessageKey
    delivery_state: DeliveryState
    annotation: dict = Field(default_factory=dict)


class MessageOverwrite(BaseModel):
    """
    Replace every mutable field of an existing message.

    Only produced for generic payloads whose id is already stored.
    """
    model_config = ConfigDict(frozen=True)

    kind: Literal["message_overwrite"] = "message_overwrite"
    key: MessageKey
    message: MessageData


Intent = Union[ContactUpsert, MessageUpsert, StatusUpdate, MessageOverwrite]
