"""
Ingestion pipeline.

payload -> normalize_payload() -> apply_intent() per intent -> realtime events

Failures are isolated per intent (webhook and send) and per file (batch):
a StoreUnavailable on one intent is counted and the remaining intents are
still applied.
"""

import functools
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from wachat import storage
from wachat.intents import MessageData, MessageUpsert, synthesize_message_id
from wachat.metrics import record_intent_outcome
from wachat.models import DeliveryState, Direction, utcnow
from wachat.normalizer import (
    OUTGOING_DISPLAY_NAME,
    StoreLookups,
    detect_shape,
    fallback_display_name,
    normalize_payload,
)
from wachat.realtime import EventBroker, RealtimeEvent, event_for_outcome, publish_events
from wachat.storage import StoreUnavailable
from wachat.upsert import UpsertOutcome, apply_intent

logger = logging.getLogger(__name__)

SEND_SOURCE = "api"


@dataclass
class IngestReport:
    source: str
    shape: Optional[str] = None
    intents: int = 0
    applied: int = 0
    skipped: int = 0
    failed: int = 0
    outcomes: list[UpsertOutcome] = field(default_factory=list)
    events: list[RealtimeEvent] = field(default_factory=list)


@dataclass
class FileResult:
    filename: str
    report: Optional[IngestReport] = None
    error: Optional[str] = None


@dataclass
class BatchReport:
    files: list[FileResult] = field(default_factory=list)

    @property
    def applied(self) -> int:
        return sum(f.report.applied for f in self.files if f.report)

    @property
    def skipped(self) -> int:
        return sum(f.report.skipped for f in self.files if f.report)

    @property
    def failed_files(self) -> list[FileResult]:
        return [f for f in self.files if f.error or (f.report and f.report.failed)]


def store_lookups(db: Session) -> StoreLookups:
    """Bind the normalizer's read-only lookups to a session."""

    def contact_name(conversation_id: str) -> Optional[str]:
        contact = storage.find_contact(db, conversation_id)
        return contact.display_name if contact else None

    return StoreLookups(
        contact_name=contact_name,
        message_exists=functools.partial(storage.message_exists, db),
    )


def _apply_all(db: Session, intents, report: IngestReport) -> IngestReport:
    for intent in intents:
        try:
            outcome = apply_intent(db, intent)
            event = event_for_outcome(outcome)
        except StoreUnavailable as e:
            report.failed += 1
            record_intent_outcome(intent.kind, "failed")
            logger.error(f"Intent {intent.kind} from {report.source} failed: {e}")
            continue

        report.outcomes.append(outcome)
        record_intent_outcome(intent.kind, outcome.result.value)
        if outcome.applied:
            report.applied += 1
        else:
            report.skipped += 1
        if event is not None:
            report.events.append(event)

    return report


def ingest_payload(db: Session, payload: Any, source: str) -> IngestReport:
    """
    Normalize one payload and apply its intents in order.

    Raises:
        StoreUnavailable: the store failed while normalizing (lookups)
    """
    shape = detect_shape(payload)
    report = IngestReport(source=source, shape=shape.value if shape else None)

    try:
        intents = normalize_payload(payload, source, store_lookups(db))
    except ValidationError as e:
        logger.warning(f"Malformed payload from {source}: {e.error_count()} invalid fields")
        return report
    report.intents = len(intents)
    if not intents:
        logger.warning(f"Payload from {source} produced no intents")
        return report

    _apply_all(db, intents, report)
    logger.info(
        f"Ingested {report.shape} payload from {source}: "
        f"{report.applied} applied, {report.skipped} skipped, {report.failed} failed"
    )
    return report


def ingest_outgoing(
    db: Session,
    conversation_id: str,
    body: str,
    direction: Direction = Direction.OUTGOING,
    external_id: Optional[str] = None,
) -> IngestReport:
    """
    Store one message sent through the API, bypassing shape detection.

    Raises:
        StoreUnavailable: the store could not be reached
    """
    contact = storage.find_contact(db, conversation_id)
    if direction == Direction.OUTGOING:
        display_name = OUTGOING_DISPLAY_NAME
    else:
        display_name = contact.display_name if contact else fallback_display_name(conversation_id)

    data = MessageData(
        external_id=external_id or synthesize_message_id(),
        conversation_id=conversation_id,
        counterpart_phone=(contact.phone if contact and contact.phone else conversation_id),
        display_name=display_name,
        body=body,
        direction=direction,
        delivery_state=DeliveryState.SENT,
        content_kind="text",
        created_at=utcnow(),
        raw_origin={"source": SEND_SOURCE, "processed_at": utcnow().isoformat()},
    )

    report = IngestReport(source=SEND_SOURCE, intents=1)
    _apply_all(db, (MessageUpsert(message=data),), report)
    if report.failed:
        raise StoreUnavailable(f"could not store message {data.external_id}")
    return report


def read_payload_file(path: Path) -> Any:
    with path.open(encoding="utf-8") as handle:
        return json.load(handle)


def ingest_directory(
    directory: Path,
    session_factory: Callable[[], Session] = storage.SessionLocal,
    event_broker: Optional[EventBroker] = None,
) -> BatchReport:
    """
    Ingest every *.json file in a directory, in filename order.

    Each file is one payload with source tag = filename and its own session.
    A file that cannot be read or fails while being processed is recorded
    and the run moves on to the next file.

    Raises:
        FileNotFoundError: directory does not exist
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Payloads directory not found: {directory}")

    paths = sorted(directory.glob("*.json"), key=lambda p: p.name)
    logger.info(f"Found {len(paths)} JSON files in {directory}")

    batch = BatchReport()
    for path in paths:
        result = FileResult(filename=path.name)
        batch.files.append(result)

        try:
            payload = read_payload_file(path)
        except (OSError, ValueError) as e:
            result.error = f"unreadable payload: {e}"
            logger.error(f"Skipping {path.name}: {e}")
            continue

        try:
            with session_factory() as db:
                result.report = ingest_payload(db, payload, path.name)
        except StoreUnavailable as e:
            result.error = str(e)
            logger.error(f"Store unavailable while processing {path.name}: {e}")
            continue
        except Exception as e:
            result.error = f"processing failed: {e}"
            logger.exception(f"Unexpected error while processing {path.name}")
            continue

        if event_broker is not None:
            publish_events(result.report.events, event_broker)

    logger.info(f"Batch complete: {batch.applied} applied, {batch.skipped} skipped, "
                f"{len(batch.failed_files)} files with failures")
    return batch
