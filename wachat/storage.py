import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Generator, Iterator, Optional

from sqlalchemy import create_engine, func, inspect, or_, text, update
from sqlalchemy.exc import DBAPIError, IntegrityError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from wachat.config import settings

if TYPE_CHECKING:
    from wachat.intents import MessageData, MessageKey
    from wachat.models import Message

logger = logging.getLogger(__name__)


def _connect_args(database_url: str) -> dict:
    # check_same_thread=False is required for SQLite to work with FastAPI's threadpool;
    # timeout bounds how long a call waits on a locked database
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": settings.STORE_TIMEOUT_SECONDS}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args(settings.DATABASE_URL),
    pool_timeout=settings.STORE_TIMEOUT_SECONDS,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


class StoreUnavailable(Exception):
    """A store operation failed for reasons other than a duplicate key."""


@contextmanager
def store_errors(db: Session, operation: str) -> Iterator[None]:
    """
    Translate connectivity-level database errors into StoreUnavailable.

    IntegrityError is left alone: duplicate-key rejections are handled by
    the callers as routine deduplication.
    """
    try:
        yield
    except IntegrityError:
        raise
    except (DBAPIError, PoolTimeoutError) as e:
        db.rollback()
        logger.error(f"Store operation '{operation}' failed: {e}")
        raise StoreUnavailable(f"{operation} failed") from e


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup; any failure here is fatal.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from wachat.models import Contact, Message  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and both tables exist, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            tables = set(inspect(db.get_bind()).get_table_names())
            missing = {"messages", "contacts"} - tables
            if missing:
                logger.error(f"Database schema not applied: missing tables {sorted(missing)}")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Repository Functions
# =============================================================================

def find_message(db: Session, key: "MessageKey") -> Optional["Message"]:
    """
    Find the message a MessageKey refers to.

    Each candidate id is matched against both external_id and meta_id;
    candidates are tried in precedence order and the first hit wins.

    Returns:
        Message object if found, None otherwise
    """
    from wachat.models import Message

    with store_errors(db, "find_message"):
        for candidate in key.candidates():
            message = (
                db.query(Message)
                .filter(or_(Message.external_id == candidate, Message.meta_id == candidate))
                .order_by(Message.id.asc())
                .first()
            )
            if message is not None:
                return message
    return None


def message_exists(db: Session, key: "MessageKey") -> bool:
    return find_message(db, key) is not None


def insert_message(db: Session, data: "MessageData") -> Optional["Message"]:
    """
    Insert a new message built from MessageData.

    Returns:
        The stored Message, or None when the unique constraint on
        external_id rejected it (another writer stored it first).
    """
    from wachat.models import Message

    message = Message(
        external_id=data.external_id,
        meta_id=data.meta_id,
        conversation_id=data.conversation_id,
        counterpart_phone=data.counterpart_phone,
        display_name=data.display_name,
        body=data.body,
        direction=data.direction.value,
        delivery_state=data.delivery_state.value,
        sender_address=data.sender_address,
        recipient_address=data.recipient_address,
        content_kind=data.content_kind,
        created_at=data.created_at,
        raw_origin=dict(data.raw_origin),
    )

    with store_errors(db, "insert_message"):
        try:
            db.add(message)
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info(f"Duplicate key rejected insert: {data.external_id}")
            return None
        db.refresh(message)

    logger.debug(f"Message stored: id={message.id} external_id={message.external_id}")
    return message


def update_message(db: Session, message: "Message", values: dict) -> "Message":
    """Assign the given column values to a stored message and commit."""
    with store_errors(db, "update_message"):
        for column, value in values.items():
            setattr(message, column, value)
        db.commit()
        db.refresh(message)
    return message


def list_messages(
    db: Session,
    conversation_id: Optional[str] = None,
    limit: Optional[int] = None,
    newest_first: bool = False,
) -> list:
    """
    Retrieve messages ordered by created_at (ascending unless newest_first).

    Args:
        db: Database session
        conversation_id: Restrict to one conversation
        limit: Maximum number of messages to return
        newest_first: Sort by created_at descending
    """
    from wachat.models import Message

    query = db.query(Message)
    if conversation_id is not None:
        query = query.filter(Message.conversation_id == conversation_id)

    if newest_first:
        query = query.order_by(Message.created_at.desc(), Message.id.desc())
    else:
        query = query.order_by(Message.created_at.asc(), Message.id.asc())

    if limit is not None:
        query = query.limit(limit)

    with store_errors(db, "list_messages"):
        return query.all()


def mark_conversation_read(db: Session, conversation_id: str) -> int:
    """
    Set every incoming message of a conversation to 'read'.

    Returns:
        Number of messages matched
    """
    from wachat.models import DeliveryState, Direction, Message

    statement = (
        update(Message)
        .where(
            Message.conversation_id == conversation_id,
            Message.direction == Direction.INCOMING.value,
        )
        .values(delivery_state=DeliveryState.READ.value)
        .execution_options(synchronize_session=False)
    )
    with store_errors(db, "mark_conversation_read"):
        result = db.execute(statement)
        db.commit()
    logger.info(f"Marked {result.rowcount} messages read in conversation {conversation_id}")
    return result.rowcount


def count_messages_by(db: Session, column_name: str) -> dict:
    """Group messages by one column and count each group."""
    from wachat.models import Message

    column = getattr(Message, column_name)
    with store_errors(db, "count_messages_by"):
        rows = db.query(column, func.count(Message.id)).group_by(column).all()
    return {value: count for value, count in rows}


# =============================================================================
# Contact Repository Functions
# =============================================================================

def find_contact(db: Session, conversation_id: str):
    from wachat.models import Contact

    with store_errors(db, "find_contact"):
        return db.query(Contact).filter(Contact.conversation_id == conversation_id).first()


def upsert_contact(db: Session, conversation_id: str, values: dict):
    """
    Find-or-create the contact for a conversation and assign values.

    A concurrent create that wins the unique constraint turns this call
    into an update of the row that won.
    """
    from wachat.models import Contact

    contact = find_contact(db, conversation_id)
    if contact is None:
        contact = Contact(conversation_id=conversation_id, **values)
        with store_errors(db, "upsert_contact"):
            try:
                db.add(contact)
                db.commit()
                db.refresh(contact)
                return contact
            except IntegrityError:
                db.rollback()
                logger.info(f"Contact {conversation_id} created concurrently, updating instead")
        contact = find_contact(db, conversation_id)

    with store_errors(db, "upsert_contact"):
        for column, value in values.items():
            setattr(contact, column, value)
        db.commit()
        db.refresh(contact)
    return contact


def list_contacts(db: Session) -> list:
    from wachat.models import Contact

    with store_errors(db, "list_contacts"):
        return db.query(Contact).order_by(Contact.last_seen_at.desc()).all()


def get_stats(db: Session) -> dict:
    """
    Get message statistics for the /stats endpoint and the batch summary.

    Computes:
    - total_messages / total_contacts
    - messages_by_direction / messages_by_state
    - first_message_at / last_message_at (null if no messages)
    """
    from wachat.models import Contact, Message

    logger.info("Computing message statistics")

    with store_errors(db, "get_stats"):
        total_messages = db.query(func.count(Message.id)).scalar() or 0
        total_contacts = db.query(func.count(Contact.id)).scalar() or 0
        first_message_at = db.query(func.min(Message.created_at)).scalar()
        last_message_at = db.query(func.max(Message.created_at)).scalar()

    return {
        "total_messages": total_messages,
        "total_contacts": total_contacts,
        "messages_by_direction": count_messages_by(db, "direction"),
        "messages_by_state": count_messages_by(db, "delivery_state"),
        "first_message_at": _as_utc(first_message_at),
        "last_message_at": _as_utc(last_message_at),
    }


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Aggregates bypass the column type, so SQLite hands back naive values
    if value is None or isinstance(value, datetime) and value.tzinfo is not None:
        return value
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return value.replace(tzinfo=timezone.utc)
