"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for the send and contact endpoints
- Response models for API responses and realtime event payloads
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from wachat.models import DeliveryState, Direction


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """
    Body of POST /api/send.

    external_id lets a client that already shows the message optimistically
    choose the id it will reconcile against.
    """
    conversation_id: str = Field(..., min_length=1, description="Conversation identifier")
    body: str = Field(..., min_length=1, max_length=4096, description="Message text")
    direction: Direction = Field(default=Direction.OUTGOING, description="incoming or outgoing")
    external_id: Optional[str] = Field(
        default=None,
        min_length=1,
        description="Client-chosen message id (synthesized when absent)"
    )

    @field_validator("body")
    @classmethod
    def validate_body_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("body must not be blank")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"conversation_id": "919937320320", "body": "Hi there", "direction": "outgoing"}
            ]
        }
    }


class ContactRequest(BaseModel):
    """Body of POST /api/contacts."""
    conversation_id: str = Field(..., min_length=1)
    display_name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    avatar_ref: Optional[str] = None


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for webhook processing."""
    status: str = Field(default="ok", description="Operation status")
    shape: Optional[str] = Field(None, description="Detected payload shape, null if malformed")
    intents: int = Field(0, ge=0, description="Intents produced by normalization")
    applied: int = Field(0, ge=0, description="Intents that changed the store")
    skipped: int = Field(0, ge=0, description="Duplicates and status updates without a target")
    failed: int = Field(0, ge=0, description="Intents that hit an unavailable store")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class MessageResponse(BaseModel):
    """A stored message as returned by the API and carried by realtime events."""
    external_id: Optional[str] = None
    meta_id: Optional[str] = None
    conversation_id: str
    counterpart_phone: str
    display_name: str
    body: str
    direction: Direction
    delivery_state: DeliveryState
    sender_address: Optional[str] = None
    recipient_address: Optional[str] = None
    content_kind: str = "text"
    created_at: datetime
    raw_origin: dict = Field(default_factory=dict)

    model_config = {"from_attributes": True}


class SendMessageResponse(BaseModel):
    success: bool = True
    applied: bool = Field(..., description="False when the id was already stored")
    message: MessageResponse


class ContactResponse(BaseModel):
    conversation_id: str
    display_name: str
    phone: Optional[str] = None
    avatar_ref: Optional[str] = None
    last_seen_at: Optional[datetime] = None
    is_online: bool = False

    model_config = {"from_attributes": True}


class ConversationViewResponse(BaseModel):
    """A contact together with its ordered messages."""
    conversation_id: str
    display_name: str
    phone: Optional[str] = None
    avatar_ref: Optional[str] = None
    is_online: bool = False
    last_seen_at: Optional[datetime] = None
    messages: list[MessageResponse] = Field(default_factory=list)
    unread_count: int = Field(0, ge=0)
    last_message: Optional[MessageResponse] = None


class MarkReadResponse(BaseModel):
    success: bool = True
    updated: int = Field(..., ge=0, description="Incoming messages set to read")


class StatsResponse(BaseModel):
    """
    Response model for GET /stats.

    - total_messages / total_contacts
    - messages_by_direction: count per direction
    - messages_by_state: count per delivery state
    - first_message_at / last_message_at: null if no messages
    """
    total_messages: int = Field(..., ge=0)
    total_contacts: int = Field(..., ge=0)
    messages_by_direction: dict[str, int] = Field(default_factory=dict)
    messages_by_state: dict[str, int] = Field(default_factory=dict)
    first_message_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
