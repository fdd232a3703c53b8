"""
Realtime fan-out.

Every applied message mutation is published to the subscribers connected
at that moment. There is no backlog: a client that connects later catches
up through GET /api/chats.
"""

import asyncio
import functools
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from fastapi import WebSocket, WebSocketDisconnect

from wachat.intents import ContactUpsert
from wachat.metrics import record_realtime_event
from wachat.models import DeliveryState, Message
from wachat.schemas import MessageResponse
from wachat.upsert import OutcomeResult

logger = logging.getLogger(__name__)

MESSAGE_CREATED = "message-created"
MESSAGE_STATUS_CHANGED = "message-status-changed"
EVENT_NAMES = (MESSAGE_CREATED, MESSAGE_STATUS_CHANGED)

Handler = Callable[[dict], None]


@dataclass(frozen=True)
class RealtimeEvent:
    name: str
    payload: dict


@dataclass(eq=False)
class Subscription:
    event_name: str
    handler: Handler = field(repr=False)


class EventBroker:
    """
    In-process publish/subscribe channel.

    Handlers are plain callables taking the event payload. publish() can be
    called from any thread; a failing handler is logged and skipped.
    """

    def __init__(self):
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_name: str, handler: Handler) -> Subscription:
        subscription = Subscription(event_name=event_name, handler=handler)
        with self._lock:
            self._subscriptions.setdefault(event_name, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            handlers = self._subscriptions.get(subscription.event_name, [])
            if subscription in handlers:
                handlers.remove(subscription)

    def subscriber_count(self, event_name: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(event_name, []))

    def publish(self, event_name: str, payload: dict) -> int:
        """
        Deliver one event to the current subscribers.

        Returns:
            Number of handlers that accepted the event
        """
        with self._lock:
            subscriptions = list(self._subscriptions.get(event_name, []))

        delivered = 0
        for subscription in subscriptions:
            try:
                subscription.handler(payload)
                delivered += 1
                record_realtime_event(event_name, "published")
            except Exception as e:
                record_realtime_event(event_name, "failed")
                logger.error(f"Realtime handler failed for {event_name}: {e}")

        logger.debug(f"Published {event_name} to {delivered}/{len(subscriptions)} subscribers")
        return delivered


# Process-wide broker shared by the HTTP app and the websocket bridge
broker = EventBroker()


def message_payload(message: Message) -> dict:
    return MessageResponse.model_validate(message).model_dump(mode="json")


def event_for_outcome(outcome) -> Optional[RealtimeEvent]:
    """
    Build the event for an applied upsert outcome.

    Contact upserts and skipped intents publish nothing.
    """
    if not outcome.applied or isinstance(outcome.intent, ContactUpsert):
        return None

    record = message_payload(outcome.record)
    if outcome.result == OutcomeResult.CREATED:
        return RealtimeEvent(name=MESSAGE_CREATED, payload=record)

    return RealtimeEvent(
        name=MESSAGE_STATUS_CHANGED,
        payload={
            "external_id": record["external_id"],
            "meta_id": record["meta_id"],
            "conversation_id": record["conversation_id"],
            "new_state": record["delivery_state"],
            "record": record,
        },
    )


def bulk_read_event(conversation_id: str, count: int) -> RealtimeEvent:
    return RealtimeEvent(
        name=MESSAGE_STATUS_CHANGED,
        payload={
            "conversation_id": conversation_id,
            "new_state": DeliveryState.READ.value,
            "bulk": True,
            "count": count,
        },
    )


def publish_events(events: Iterable[RealtimeEvent], event_broker: Optional[EventBroker] = None) -> None:
    """Publish events fire-and-forget; nothing raised here reaches the caller."""
    event_broker = event_broker or broker
    for event in events:
        try:
            event_broker.publish(event.name, event.payload)
        except Exception as e:
            logger.error(f"Failed to publish {event.name}: {e}")


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


async def stream_events(websocket: WebSocket, event_broker: Optional[EventBroker] = None) -> None:
    """
    Forward broker events to one websocket as {"event", "data"} JSON frames
    until the client disconnects.
    """
    event_broker = event_broker or broker
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def forward(event_name: str, payload: dict) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, {"event": event_name, "data": payload})

    # subscribe before accepting so nothing published after the handshake is missed
    subscriptions = [
        event_broker.subscribe(name, functools.partial(forward, name)) for name in EVENT_NAMES
    ]
    disconnected = None
    try:
        await websocket.accept()
        logger.info("Realtime client connected")

        disconnected = asyncio.create_task(_wait_for_disconnect(websocket))
        while True:
            next_frame = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait({next_frame, disconnected}, return_when=asyncio.FIRST_COMPLETED)
            if disconnected in done:
                next_frame.cancel()
                break
            await websocket.send_json(next_frame.result())
    except WebSocketDisconnect:
        pass
    finally:
        for subscription in subscriptions:
            event_broker.unsubscribe(subscription)
        if disconnected is not None:
            disconnected.cancel()
        logger.info("Realtime client disconnected")
