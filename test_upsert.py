"""
Tests for the idempotent upsert engine.

Tests cover:
- Message insert and duplicate skipping
- Dual-key status matching (external_id or meta_id)
- Losing an insert race on the unique external_id
- Status updates without a target
- Generic overwrite
- Contact create/update and presence
"""

import logging
from datetime import datetime, timezone

from wachat import storage
from wachat.intents import (
    ContactUpsert,
    MessageData,
    MessageKey,
    MessageOverwrite,
    MessageUpsert,
    StatusUpdate,
)
from wachat.models import Contact, DeliveryState, Direction, Message
from wachat.upsert import OutcomeResult, apply_intent


def message_data(external_id="wamid.1", meta_id="wamid.1", conversation_id="555", body="hello", **overrides):
    values = dict(
        external_id=external_id,
        meta_id=meta_id,
        conversation_id=conversation_id,
        counterpart_phone=conversation_id,
        display_name="Alice",
        body=body,
        direction=Direction.INCOMING,
        delivery_state=DeliveryState.DELIVERED,
        created_at=datetime(2025, 8, 5, 13, 20, tzinfo=timezone.utc),
        raw_origin={"source": "test"},
    )
    values.update(overrides)
    return MessageData(**values)


class TestMessageUpsert:

    def test_creates_message_and_contact(self, db_session):
        outcome = apply_intent(db_session, MessageUpsert(message=message_data()))

        assert outcome.applied is True
        assert outcome.result == OutcomeResult.CREATED
        assert outcome.record.external_id == "wamid.1"
        assert outcome.record.created_at == datetime(2025, 8, 5, 13, 20, tzinfo=timezone.utc)

        contact = storage.find_contact(db_session, "555")
        assert contact.display_name == "Alice"
        assert contact.is_online is True

    def test_second_apply_is_duplicate(self, db_session):
        intent = MessageUpsert(message=message_data())

        apply_intent(db_session, intent)
        outcome = apply_intent(db_session, intent)

        assert outcome.applied is False
        assert outcome.result == OutcomeResult.DUPLICATE
        assert outcome.record.external_id == "wamid.1"
        assert db_session.query(Message).count() == 1

    def test_duplicate_matched_through_meta_id(self, db_session):
        apply_intent(db_session, MessageUpsert(message=message_data(external_id="g1", meta_id="wamid.1")))

        outcome = apply_intent(db_session, MessageUpsert(message=message_data(external_id="wamid.1", meta_id=None)))

        assert outcome.result == OutcomeResult.DUPLICATE
        assert db_session.query(Message).count() == 1

    def test_lost_insert_race_is_duplicate(self, db_session, monkeypatch):
        storage.insert_message(db_session, message_data())

        real_find = storage.find_message
        calls = []

        def find_after_race(db, key):
            calls.append(key)
            # the first lookup runs before the concurrent writer committed
            return None if len(calls) == 1 else real_find(db, key)

        monkeypatch.setattr(storage, "find_message", find_after_race)

        outcome = apply_intent(db_session, MessageUpsert(message=message_data(body="racing copy")))

        assert outcome.applied is False
        assert outcome.result == OutcomeResult.DUPLICATE
        assert outcome.record.body == "hello"
        assert db_session.query(Message).count() == 1

    def test_outgoing_message_creates_contact_with_fallback_name(self, db_session):
        data = message_data(direction=Direction.OUTGOING, display_name="You", delivery_state=DeliveryState.SENT)

        apply_intent(db_session, MessageUpsert(message=data))

        contact = storage.find_contact(db_session, "555")
        assert contact.display_name == "Contact 555"
        assert contact.is_online is False

    def test_contact_failure_keeps_created_outcome(self, db_session, monkeypatch):
        def unavailable(db, conversation_id, values):
            raise storage.StoreUnavailable("upsert_contact failed")

        monkeypatch.setattr(storage, "upsert_contact", unavailable)

        outcome = apply_intent(db_session, MessageUpsert(message=message_data()))

        assert outcome.applied is True
        assert outcome.result == OutcomeResult.CREATED
        assert outcome.record.external_id == "wamid.1"
        assert db_session.query(Message).count() == 1
        assert db_session.query(Contact).count() == 0


class TestStatusUpdate:

    def test_updates_state_and_annotation(self, db_session):
        apply_intent(db_session, MessageUpsert(message=message_data()))

        outcome = apply_intent(db_session, StatusUpdate(
            key=MessageKey(external_id="wamid.1", meta_id="wamid.1"),
            delivery_state=DeliveryState.READ,
            annotation={"status": "read"},
        ))

        assert outcome.applied is True
        assert outcome.result == OutcomeResult.UPDATED
        assert outcome.record.delivery_state == "read"
        assert outcome.record.raw_origin["status_update"] == {"status": "read"}
        assert outcome.record.raw_origin["status_updates"] == [{"status": "read"}]
        assert outcome.record.raw_origin["source"] == "test"

    def test_matches_by_meta_id(self, db_session):
        apply_intent(db_session, MessageUpsert(message=message_data(external_id="gs.1", meta_id="wamid.7")))

        outcome = apply_intent(db_session, StatusUpdate(
            key=MessageKey(external_id="other", meta_id="wamid.7"),
            delivery_state=DeliveryState.DELIVERED,
        ))

        assert outcome.applied is True
        assert outcome.record.external_id == "gs.1"

    def test_external_id_takes_precedence(self, db_session):
        apply_intent(db_session, MessageUpsert(message=message_data(external_id="A", meta_id=None)))
        apply_intent(db_session, MessageUpsert(message=message_data(external_id="B", meta_id=None)))

        outcome = apply_intent(db_session, StatusUpdate(
            key=MessageKey(external_id="B", meta_id="A"),
            delivery_state=DeliveryState.READ,
        ))

        assert outcome.record.external_id == "B"
        assert storage.find_message(db_session, MessageKey(external_id="A")).delivery_state == "delivered"

    def test_history_accumulates(self, db_session):
        apply_intent(db_session, MessageUpsert(message=message_data()))
        key = MessageKey(external_id="wamid.1")

        apply_intent(db_session, StatusUpdate(key=key, delivery_state=DeliveryState.DELIVERED, annotation={"n": 1}))
        outcome = apply_intent(db_session, StatusUpdate(key=key, delivery_state=DeliveryState.READ, annotation={"n": 2}))

        assert outcome.record.raw_origin["status_updates"] == [{"n": 1}, {"n": 2}]
        assert outcome.record.raw_origin["status_update"] == {"n": 2}

    def test_target_not_found(self, db_session, caplog):
        with caplog.at_level(logging.WARNING, logger="wachat.upsert"):
            outcome = apply_intent(db_session, StatusUpdate(
                key=MessageKey(external_id="missing"),
                delivery_state=DeliveryState.READ,
            ))

        assert outcome.applied is False
        assert outcome.result == OutcomeResult.TARGET_NOT_FOUND
        assert outcome.record is None
        assert db_session.query(Message).count() == 0
        assert any("Status target not found" in r.getMessage() for r in caplog.records)


class TestMessageOverwrite:

    def test_overwrites_mutable_fields(self, db_session):
        apply_intent(db_session, MessageUpsert(message=message_data(external_id="g1", meta_id=None)))

        data = message_data(external_id="g1", meta_id=None, body="edited", delivery_state=DeliveryState.READ)
        outcome = apply_intent(db_session, MessageOverwrite(key=data.key, message=data))

        assert outcome.applied is True
        assert outcome.result == OutcomeResult.UPDATED
        assert outcome.record.body == "edited"
        assert outcome.record.delivery_state == "read"
        assert db_session.query(Message).count() == 1

    def test_missing_target_falls_back_to_insert(self, db_session):
        data = message_data(external_id="g2", meta_id=None)

        outcome = apply_intent(db_session, MessageOverwrite(key=data.key, message=data))

        assert outcome.result == OutcomeResult.CREATED
        assert db_session.query(Message).count() == 1


class TestContactUpsert:

    def test_create_then_update(self, db_session):
        created = apply_intent(db_session, ContactUpsert(conversation_id="555", display_name="Alice", phone="555"))
        updated = apply_intent(db_session, ContactUpsert(conversation_id="555", display_name="Alice B", phone="555"))

        assert created.result == OutcomeResult.CREATED
        assert updated.result == OutcomeResult.UPDATED
        assert db_session.query(Contact).count() == 1
        assert storage.find_contact(db_session, "555").display_name == "Alice B"
