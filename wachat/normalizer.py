"""
Payload normalization.

Converts the three webhook payload shapes we accept into an ordered tuple
of intents:

- BUSINESS_API_ENVELOPE: ``entry[].changes[].value`` (optionally wrapped in
  ``metaData`` as in provider export files)
- DIRECT: a bare ``value`` with top-level ``messages`` and/or ``statuses``
- GENERIC: ad-hoc fields (``wa_id``/``from``, ``text``/``message``, ``status``,
  ``id``/``message_id``/``meta_msg_id``)

Normalization never writes. The only store access it needs is read-only
and is passed in through StoreLookups.
"""

import enum
import logging
from datetime import datetime, timezone
from typing import Any, Callable, NamedTuple, Optional

from wachat.intents import (
    ContactUpsert,
    Intent,
    MessageData,
    MessageKey,
    MessageOverwrite,
    MessageUpsert,
    StatusUpdate,
    synthesize_message_id,
)
from wachat.models import DeliveryState, Direction, utcnow

logger = logging.getLogger(__name__)

MEDIA_PLACEHOLDER = "Media message"
OUTGOING_DISPLAY_NAME = "You"

# Timestamps above this are treated as epoch milliseconds
_EPOCH_MILLIS_THRESHOLD = 10 ** 11


class PayloadShape(str, enum.Enum):
    BUSINESS_API_ENVELOPE = "business_api_envelope"
    DIRECT = "direct"
    GENERIC = "generic"


class StoreLookups(NamedTuple):
    """Read-only store access used while normalizing."""
    contact_name: Callable[[str], Optional[str]] = lambda conversation_id: None
    message_exists: Callable[[MessageKey], bool] = lambda key: False


def fallback_display_name(address: str) -> str:
    return f"Contact {address}"


# =============================================================================
# Shape detection
# =============================================================================

def unwrap_payload(payload: Any) -> Any:
    """Strip the ``metaData`` wrapper used by provider export files."""
    if isinstance(payload, dict) and isinstance(payload.get("metaData"), dict):
        return payload["metaData"]
    return payload


def _is_envelope(payload: dict) -> bool:
    return isinstance(payload.get("entry"), list)


def _is_direct(payload: dict) -> bool:
    return isinstance(payload.get("messages"), list) or isinstance(payload.get("statuses"), list)


def _is_generic(payload: dict) -> bool:
    has_address = bool(_field(payload, "wa_id") or _field(payload, "from"))
    has_body = payload.get("text") is not None or payload.get("message") is not None
    if has_address and has_body:
        return True
    has_id = bool(_field(payload, "id") or _field(payload, "meta_msg_id") or _field(payload, "message_id"))
    return has_id and bool(payload.get("status"))


_SHAPE_PREDICATES = (
    (PayloadShape.BUSINESS_API_ENVELOPE, _is_envelope),
    (PayloadShape.DIRECT, _is_direct),
    (PayloadShape.GENERIC, _is_generic),
)


def detect_shape(payload: Any) -> Optional[PayloadShape]:
    """
    Classify a payload, trying shapes in priority order.

    Returns:
        The matching PayloadShape, or None for a malformed payload
    """
    payload = unwrap_payload(payload)
    if not isinstance(payload, dict):
        return None
    for shape, predicate in _SHAPE_PREDICATES:
        if predicate(payload):
            return shape
    return None


# =============================================================================
# Field helpers
# =============================================================================

def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse provider timestamps.

    Accepts epoch seconds (int, float or digit string), epoch milliseconds
    and ISO-8601 strings. Returns None for anything unparseable.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, str):
        stripped = value.strip()
        try:
            value = float(stripped)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(stripped.replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)

    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > _EPOCH_MILLIS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    return None


def _field(mapping: dict, key: str) -> Optional[str]:
    """Scalar field as a string; numbers are accepted, anything else is None."""
    value = mapping.get(key)
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        return None
    return str(value) or None


def extract_body(message: dict) -> str:
    text = message.get("text")
    if isinstance(text, dict) and _field(text, "body"):
        return _field(text, "body")

    interactive = message.get("interactive")
    if isinstance(interactive, dict):
        body = interactive.get("body")
        if isinstance(body, dict) and _field(body, "text"):
            return _field(body, "text")

    return MEDIA_PLACEHOLDER


def _profile_name(contact: dict) -> Optional[str]:
    profile = contact.get("profile")
    if isinstance(profile, dict) and _field(profile, "name"):
        return _field(profile, "name")
    return _field(contact, "name")


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _parse_state(value: Any) -> Optional[DeliveryState]:
    try:
        return DeliveryState(value)
    except ValueError:
        return None


class _Buckets:
    """Per-class intent lists, concatenated in class order at the end."""

    def __init__(self):
        self.contacts: list[Intent] = []
        self.messages: list[Intent] = []
        self.statuses: list[Intent] = []

    def freeze(self) -> tuple[Intent, ...]:
        return tuple(self.contacts + self.messages + self.statuses)


# =============================================================================
# Business-API envelope and direct shape
# =============================================================================

def _collect_payload_contacts(values: list[dict]) -> dict[str, str]:
    names = {}
    for value in values:
        for contact in _as_list(value.get("contacts")):
            wa_id = _field(contact, "wa_id") if isinstance(contact, dict) else None
            if wa_id:
                name = _profile_name(contact)
                if name and wa_id not in names:
                    names[wa_id] = name
    return names


def _message_data_from_value(
    value: dict,
    message: dict,
    source: str,
    payload: dict,
    payload_contacts: dict[str, str],
    lookups: StoreLookups,
) -> Optional[MessageData]:
    sender = _field(message, "from")
    if not sender:
        logger.warning(f"Skipping message without 'from' in payload from {source}")
        return None

    metadata = value.get("metadata") if isinstance(value.get("metadata"), dict) else {}
    business_phone = _field(metadata, "display_phone_number")
    value_contacts = [c for c in _as_list(value.get("contacts")) if isinstance(c, dict)]

    direction = Direction.OUTGOING if business_phone and sender == business_phone else Direction.INCOMING

    if direction == Direction.INCOMING:
        conversation_id = sender
        listed = next((c for c in value_contacts if _field(c, "wa_id") == sender), None)
        display_name = (
            (listed and _profile_name(listed))
            or payload_contacts.get(sender)
            or lookups.contact_name(sender)
            or fallback_display_name(sender)
        )
        recipient = business_phone
        state = DeliveryState.DELIVERED
    else:
        first_wa_id = next((_field(c, "wa_id") for c in value_contacts if _field(c, "wa_id")), None)
        conversation_id = first_wa_id or sender
        display_name = OUTGOING_DISPLAY_NAME
        recipient = conversation_id
        state = DeliveryState.SENT

    message_id = _field(message, "id")
    return MessageData(
        external_id=message_id or synthesize_message_id(),
        meta_id=message_id,
        conversation_id=conversation_id,
        counterpart_phone=conversation_id,
        display_name=display_name,
        body=extract_body(message),
        direction=direction,
        delivery_state=state,
        sender_address=sender,
        recipient_address=recipient,
        content_kind=_field(message, "type") or "text",
        created_at=parse_timestamp(message.get("timestamp")) or utcnow(),
        raw_origin={
            "source": source,
            "payload": payload,
            "message": message,
            "processed_at": utcnow().isoformat(),
        },
    )


def _status_update_from(status: dict, source: str) -> Optional[StatusUpdate]:
    status_id = _field(status, "id")
    state = _parse_state(status.get("status"))
    if not status_id or state is None:
        logger.warning(
            f"Skipping status update with id={status_id!r} status={status.get('status')!r} from {source}"
        )
        return None

    timestamp = parse_timestamp(status.get("timestamp"))
    return StatusUpdate(
        key=MessageKey(external_id=status_id, meta_id=_field(status, "meta_msg_id") or status_id),
        delivery_state=state,
        annotation={
            "status": state.value,
            "timestamp": timestamp.isoformat() if timestamp else None,
            "processed_at": utcnow().isoformat(),
            "source": source,
        },
    )


def _extract_values(values: list[dict], source: str, payload: dict, lookups: StoreLookups) -> tuple[Intent, ...]:
    buckets = _Buckets()
    payload_contacts = _collect_payload_contacts(values)

    for value in values:
        for contact in _as_list(value.get("contacts")):
            wa_id = _field(contact, "wa_id") if isinstance(contact, dict) else None
            if not wa_id:
                continue
            buckets.contacts.append(ContactUpsert(
                conversation_id=wa_id,
                display_name=_profile_name(contact) or fallback_display_name(wa_id),
                phone=wa_id,
            ))

        for message in _as_list(value.get("messages")):
            if not isinstance(message, dict):
                continue
            data = _message_data_from_value(value, message, source, payload, payload_contacts, lookups)
            if data is not None:
                buckets.messages.append(MessageUpsert(message=data))

        for status in _as_list(value.get("statuses")):
            if not isinstance(status, dict):
                continue
            intent = _status_update_from(status, source)
            if intent is not None:
                buckets.statuses.append(intent)

    return buckets.freeze()


def extract_envelope(payload: dict, source: str, lookups: StoreLookups) -> tuple[Intent, ...]:
    values = []
    for entry in _as_list(payload.get("entry")):
        if not isinstance(entry, dict):
            continue
        for change in _as_list(entry.get("changes")):
            if isinstance(change, dict) and isinstance(change.get("value"), dict):
                values.append(change["value"])
    return _extract_values(values, source, payload, lookups)


def extract_direct(payload: dict, source: str, lookups: StoreLookups) -> tuple[Intent, ...]:
    return _extract_values([payload], source, payload, lookups)


# =============================================================================
# Generic shape
# =============================================================================

def _generic_body(payload: dict) -> str:
    text = payload.get("text")
    if isinstance(text, dict):
        text = text.get("body")
    if not text:
        text = payload.get("message")
    return str(text) if text else MEDIA_PLACEHOLDER


def extract_generic(payload: dict, source: str, lookups: StoreLookups) -> tuple[Intent, ...]:
    address = _field(payload, "wa_id") or _field(payload, "from")
    external_id = _field(payload, "id")
    meta_id = _field(payload, "meta_msg_id") or _field(payload, "message_id")

    has_body = payload.get("text") is not None or payload.get("message") is not None
    if not address or not has_body:
        # status-only generic payload
        intent = _status_update_from(
            {
                "id": external_id or meta_id,
                "meta_msg_id": meta_id,
                "status": payload.get("status"),
                "timestamp": payload.get("timestamp"),
            },
            source,
        )
        return (intent,) if intent is not None else ()

    if not external_id and not meta_id:
        external_id = synthesize_message_id()

    try:
        direction = Direction(payload.get("type"))
    except ValueError:
        direction = Direction.INCOMING

    display_name = _field(payload, "name") or lookups.contact_name(address) or fallback_display_name(address)
    data = MessageData(
        external_id=external_id,
        meta_id=meta_id,
        conversation_id=address,
        counterpart_phone=_field(payload, "phone") or address,
        display_name=display_name,
        body=_generic_body(payload),
        direction=direction,
        delivery_state=_parse_state(payload.get("status")) or DeliveryState.DELIVERED,
        sender_address=_field(payload, "from"),
        recipient_address=_field(payload, "to"),
        content_kind=_field(payload, "message_type") or "text",
        created_at=parse_timestamp(payload.get("timestamp")) or utcnow(),
        raw_origin={
            "source": source,
            "payload": payload,
            "processed_at": utcnow().isoformat(),
        },
    )

    if lookups.message_exists(data.key):
        return (MessageOverwrite(key=data.key, message=data),)

    return (
        ContactUpsert(conversation_id=address, display_name=display_name, phone=data.counterpart_phone),
        MessageUpsert(message=data),
    )


_EXTRACTORS = {
    PayloadShape.BUSINESS_API_ENVELOPE: extract_envelope,
    PayloadShape.DIRECT: extract_direct,
    PayloadShape.GENERIC: extract_generic,
}


def normalize_payload(
    payload: Any,
    source: str,
    lookups: StoreLookups = StoreLookups(),
) -> tuple[Intent, ...]:
    """
    Convert one raw payload into an ordered tuple of intents.

    Contact intents come first, then message intents, then status intents,
    each in input order. A payload matching no shape yields an empty tuple.

    Args:
        payload: Decoded JSON body or batch file content
        source: "webhook" or the batch filename
        lookups: Read-only store access

    Returns:
        Tuple of intents (possibly empty)
    """
    shape = detect_shape(payload)
    if shape is None:
        logger.warning(f"Malformed payload from {source}: no known shape matched")
        return ()

    intents = _EXTRACTORS[shape](unwrap_payload(payload), source, lookups)
    logger.debug(f"Normalized {shape.value} payload from {source} into {len(intents)} intents")
    return intents
