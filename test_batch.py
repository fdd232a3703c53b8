"""
Tests for batch ingestion of payload files.

Tests cover:
- Files processed in filename order, each with its own source tag
- Unreadable files recorded without stopping the run
- Status updates resolved against messages from earlier files
- Events published when a broker is given
- The wachat-batch CLI
"""

import json

import pytest
from typer.testing import CliRunner

from wachat.batch import app
from wachat.ingest import ingest_directory
from wachat.models import Message
from wachat.realtime import EVENT_NAMES, EventBroker


BUSINESS_PHONE = "918329446654"


def export_file(messages=(), statuses=(), contacts=()):
    """Provider export: an envelope wrapped in metaData."""
    return {
        "payload_type": "whatsapp_webhook",
        "_id": "conv1-msg1",
        "metaData": {
            "entry": [{
                "changes": [{
                    "field": "messages",
                    "value": {
                        "messaging_product": "whatsapp",
                        "metadata": {"display_phone_number": BUSINESS_PHONE},
                        "contacts": list(contacts),
                        "messages": list(messages),
                        "statuses": list(statuses),
                    },
                }],
            }],
        },
    }


@pytest.fixture
def payloads_dir(tmp_path):
    files = {
        "conversation_1_message_1.json": export_file(
            contacts=[{"profile": {"name": "Ravi Kumar"}, "wa_id": "919937320320"}],
            messages=[{
                "from": "919937320320", "id": "wamid.M1", "timestamp": "1754400000",
                "type": "text", "text": {"body": "Hi, I'd like to know more"},
            }],
        ),
        "conversation_1_message_2.json": export_file(
            contacts=[{"profile": {"name": "Ravi Kumar"}, "wa_id": "919937320320"}],
            messages=[{
                "from": BUSINESS_PHONE, "id": "wamid.M2", "timestamp": "1754400020",
                "type": "text", "text": {"body": "Hi Ravi! Sure"},
            }],
        ),
        "conversation_1_status_1.json": export_file(
            statuses=[{"id": "wamid.M2", "meta_msg_id": "wamid.M2", "status": "read", "timestamp": "1754400040"}],
        ),
    }
    for name, payload in files.items():
        (tmp_path / name).write_text(json.dumps(payload), encoding="utf-8")
    (tmp_path / "conversation_1_message_1b.json").write_text("{ not json", encoding="utf-8")
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")
    return tmp_path


class TestIngestDirectory:

    def test_processes_files_in_name_order(self, db_session, payloads_dir):
        report = ingest_directory(payloads_dir)

        assert [f.filename for f in report.files] == [
            "conversation_1_message_1.json",
            "conversation_1_message_1b.json",
            "conversation_1_message_2.json",
            "conversation_1_status_1.json",
        ]
        # contact + message, contact + message, status
        assert report.applied == 5

    def test_bad_file_recorded_and_run_continues(self, db_session, payloads_dir):
        report = ingest_directory(payloads_dir)

        bad = report.files[1]
        assert bad.report is None
        assert bad.error.startswith("unreadable payload")
        assert report.failed_files == [bad]
        assert db_session.query(Message).count() == 2

    def test_status_resolves_message_from_earlier_file(self, db_session, payloads_dir):
        ingest_directory(payloads_dir)

        outgoing = db_session.query(Message).filter(Message.external_id == "wamid.M2").one()
        assert outgoing.direction == "outgoing"
        assert outgoing.conversation_id == "919937320320"
        assert outgoing.delivery_state == "read"
        assert outgoing.raw_origin["source"] == "conversation_1_message_2.json"
        assert outgoing.raw_origin["status_update"]["source"] == "conversation_1_status_1.json"

    def test_rerun_is_idempotent(self, db_session, payloads_dir):
        ingest_directory(payloads_dir)
        second = ingest_directory(payloads_dir)

        assert db_session.query(Message).count() == 2
        # only contact refreshes and the status re-application change anything
        assert all(
            outcome.result.value != "created"
            for f in second.files if f.report
            for outcome in f.report.outcomes
            if outcome.intent.kind == "message_upsert"
        )

    def test_events_published_to_broker(self, db_session, payloads_dir):
        broker = EventBroker()
        received = []
        for name in EVENT_NAMES:
            broker.subscribe(name, lambda payload, name=name: received.append((name, payload.get("external_id"))))

        ingest_directory(payloads_dir, event_broker=broker)

        assert received == [
            ("message-created", "wamid.M1"),
            ("message-created", "wamid.M2"),
            ("message-status-changed", "wamid.M2"),
        ]

    def test_numeric_fields_do_not_stop_later_files(self, db_session, tmp_path):
        (tmp_path / "a.json").write_text(json.dumps({"wa_id": 555, "name": "Alice", "text": "hi"}), encoding="utf-8")
        (tmp_path / "b.json").write_text(json.dumps({"wa_id": "777", "name": "Bob", "text": "yo"}), encoding="utf-8")

        report = ingest_directory(tmp_path)

        assert report.failed_files == []
        assert sorted(m.conversation_id for m in db_session.query(Message).all()) == ["555", "777"]

    def test_unexpected_error_in_one_file_does_not_stop_the_run(self, db_session, tmp_path, monkeypatch):
        import wachat.ingest

        real_ingest_payload = wachat.ingest.ingest_payload

        def breaks_on_b(db, payload, source):
            if source == "b.json":
                raise RuntimeError("unexpected")
            return real_ingest_payload(db, payload, source)

        monkeypatch.setattr(wachat.ingest, "ingest_payload", breaks_on_b)
        for name, wa_id in (("a.json", "111"), ("b.json", "222"), ("c.json", "333")):
            (tmp_path / name).write_text(json.dumps({"wa_id": wa_id, "text": "hi"}), encoding="utf-8")

        report = ingest_directory(tmp_path)

        assert [f.filename for f in report.failed_files] == ["b.json"]
        assert report.files[1].error.startswith("processing failed")
        assert sorted(m.conversation_id for m in db_session.query(Message).all()) == ["111", "333"]

    def test_missing_directory(self, db_session, tmp_path):
        with pytest.raises(FileNotFoundError):
            ingest_directory(tmp_path / "missing")


class TestBatchCli:

    def test_process_reports_failed_file(self, db_session, payloads_dir):
        result = CliRunner().invoke(app, ["process", str(payloads_dir), "--no-summary"])

        assert result.exit_code == 2
        assert "conversation_1_message_1b.json" in result.output
        assert "Total items processed" in result.output

    def test_process_clean_directory_with_summary(self, db_session, payloads_dir):
        (payloads_dir / "conversation_1_message_1b.json").unlink()

        result = CliRunner().invoke(app, ["process", str(payloads_dir)])

        assert result.exit_code == 0
        assert "Processing Summary" in result.output

    def test_process_empty_directory(self, db_session, tmp_path):
        result = CliRunner().invoke(app, ["process", str(tmp_path)])

        assert result.exit_code == 1
        assert "no JSON payload files" in result.output

    def test_summary_command(self, db_session, payloads_dir):
        ingest_directory(payloads_dir)

        result = CliRunner().invoke(app, ["summary"])

        assert result.exit_code == 0
        assert "Messages" in result.output
        assert "Recent Messages" in result.output
