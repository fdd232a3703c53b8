"""
Idempotent upsert engine.

Applies one intent to the store and reports whether it changed anything.
Duplicates and status updates for unknown messages are outcomes, not
errors; only StoreUnavailable escapes from here.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from wachat import storage
from wachat.intents import ContactUpsert, Intent, MessageData, MessageOverwrite, MessageUpsert, StatusUpdate
from wachat.models import Direction, utcnow
from wachat.normalizer import fallback_display_name
from wachat.storage import StoreUnavailable

logger = logging.getLogger(__name__)


class OutcomeResult(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    DUPLICATE = "duplicate"
    TARGET_NOT_FOUND = "target_not_found"


@dataclass(frozen=True)
class UpsertOutcome:
    intent: Intent
    applied: bool
    result: OutcomeResult
    record: Any = None


def _message_columns(data: MessageData) -> dict:
    return {
        "external_id": data.external_id,
        "meta_id": data.meta_id,
        "conversation_id": data.conversation_id,
        "counterpart_phone": data.counterpart_phone,
        "display_name": data.display_name,
        "body": data.body,
        "direction": data.direction.value,
        "delivery_state": data.delivery_state.value,
        "sender_address": data.sender_address,
        "recipient_address": data.recipient_address,
        "content_kind": data.content_kind,
        "created_at": data.created_at,
        "raw_origin": dict(data.raw_origin),
    }


def _touch_contact(db: Session, data: MessageData) -> None:
    """Create the conversation's contact on first message; refresh presence on incoming ones."""
    incoming = data.direction == Direction.INCOMING
    contact = storage.find_contact(db, data.conversation_id)

    if contact is None:
        storage.upsert_contact(db, data.conversation_id, {
            "display_name": data.display_name if incoming else fallback_display_name(data.conversation_id),
            "phone": data.counterpart_phone,
            "last_seen_at": utcnow(),
            "is_online": incoming,
        })
    elif incoming:
        storage.upsert_contact(db, data.conversation_id, {
            "last_seen_at": utcnow(),
            "is_online": True,
        })


def apply_contact_upsert(db: Session, intent: ContactUpsert) -> UpsertOutcome:
    existed = storage.find_contact(db, intent.conversation_id) is not None
    contact = storage.upsert_contact(db, intent.conversation_id, {
        "display_name": intent.display_name,
        "phone": intent.phone,
        "last_seen_at": utcnow(),
    })
    result = OutcomeResult.UPDATED if existed else OutcomeResult.CREATED
    logger.debug(f"Contact {intent.conversation_id} {result.value}")
    return UpsertOutcome(intent=intent, applied=True, result=result, record=contact)


def apply_message_upsert(db: Session, intent: MessageUpsert) -> UpsertOutcome:
    data = intent.message

    if not data.key.is_empty():
        existing = storage.find_message(db, data.key)
        if existing is not None:
            logger.info(f"Message already exists: {data.key} - skipping")
            return UpsertOutcome(intent=intent, applied=False, result=OutcomeResult.DUPLICATE, record=existing)

    message = storage.insert_message(db, data)
    if message is None:
        # lost a concurrent insert race on external_id
        return UpsertOutcome(
            intent=intent,
            applied=False,
            result=OutcomeResult.DUPLICATE,
            record=storage.find_message(db, data.key),
        )

    try:
        _touch_contact(db, data)
    except StoreUnavailable as e:
        # the message is already committed
        logger.error(f"Contact refresh for {data.conversation_id} failed after storing {data.key}: {e}")
    logger.info(
        f"Message created: {data.key} direction={data.direction.value} conversation={data.conversation_id}"
    )
    return UpsertOutcome(intent=intent, applied=True, result=OutcomeResult.CREATED, record=message)


def apply_status_update(db: Session, intent: StatusUpdate) -> UpsertOutcome:
    message = storage.find_message(db, intent.key)
    if message is None:
        logger.warning(
            f"Status target not found: {intent.key} -> {intent.delivery_state.value}",
            extra={"external_id": intent.key.external_id, "meta_id": intent.key.meta_id},
        )
        return UpsertOutcome(intent=intent, applied=False, result=OutcomeResult.TARGET_NOT_FOUND)

    raw_origin = dict(message.raw_origin or {})
    raw_origin["status_update"] = intent.annotation
    raw_origin["status_updates"] = list(raw_origin.get("status_updates", [])) + [intent.annotation]

    storage.update_message(db, message, {
        "delivery_state": intent.delivery_state.value,
        "raw_origin": raw_origin,
    })
    logger.info(f"Updated message status: {intent.key} -> {intent.delivery_state.value}")
    return UpsertOutcome(intent=intent, applied=True, result=OutcomeResult.UPDATED, record=message)


def apply_message_overwrite(db: Session, intent: MessageOverwrite) -> UpsertOutcome:
    message = storage.find_message(db, intent.key)
    if message is None:
        return apply_message_upsert(db, MessageUpsert(message=intent.message))

    values = _message_columns(intent.message)
    # ids the new payload does not carry stay as stored
    for id_column in ("external_id", "meta_id"):
        if values[id_column] is None:
            del values[id_column]

    try:
        storage.update_message(db, message, values)
    except IntegrityError:
        db.rollback()
        logger.info(f"Overwrite of {intent.key} would duplicate another message's external_id - skipping")
        return UpsertOutcome(intent=intent, applied=False, result=OutcomeResult.DUPLICATE, record=message)

    logger.info(f"Message overwritten: {intent.key}")
    return UpsertOutcome(intent=intent, applied=True, result=OutcomeResult.UPDATED, record=message)


_HANDLERS = {
    ContactUpsert: apply_contact_upsert,
    MessageUpsert: apply_message_upsert,
    StatusUpdate: apply_status_update,
    MessageOverwrite: apply_message_overwrite,
}


def apply_intent(db: Session, intent: Intent) -> UpsertOutcome:
    """
    Apply one intent to the store.

    Raises:
        StoreUnavailable: the store could not be reached for this intent
    """
    return _HANDLERS[type(intent)](db, intent)
