"""Tests for ingestion across push, catch-up and manual sources."""

from unittest.mock import MagicMock

from replygate.ingest import Ingestor, IngestionSource, collect, thread_key
from replygate.models import IncomingEmail, MessageStatus

ACCOUNT = "acct-1"


def test_thread_key_ignores_reply_prefix_and_direction(make_email):
    a = make_email(subject="Where is my order?")
    b = make_email(subject="RE: where is my order?", from_address=a.to_address, to_address=a.from_address)
    assert thread_key(ACCOUNT, a) == thread_key(ACCOUNT, b)
    assert thread_key("acct-2", a) != thread_key(ACCOUNT, a)


def test_same_email_from_two_sources_processed_once(harness, make_email):
    harness.automate()

    with Ingestor(harness.pipeline, max_workers=4) as ingestor:
        futures = [
            ingestor.submit(ACCOUNT, make_email(), IngestionSource.PUSH),
            ingestor.submit(ACCOUNT, make_email(), IngestionSource.LOGIN_SYNC),
            ingestor.submit(ACCOUNT, make_email(), "manual"),
        ]
        results = collect(futures)

    assert len(results) == 3
    assert sum(1 for r in results if r.duplicate) == 2
    assert harness.channel.send.call_count == 1


def test_batch_of_distinct_conversations(harness, make_email):
    harness.automate()
    emails = [
        make_email(f"batch-{i}", from_address=f"shopper{i}@shopper.io") for i in range(5)
    ]

    with Ingestor(harness.pipeline, max_workers=3) as ingestor:
        results = collect(ingestor.submit_batch(ACCOUNT, emails))

    assert {r.status for r in results} == {MessageStatus.RESOLVED}
    assert harness.channel.send.call_count == 5


def test_submit_manual_payload(harness):
    payload = {
        "message_id": 42,
        "from": "jane.doe@shopper.io",
        "to": "support@acme-store.io",
        "subject": "Where is my order #12345?",
        "body": "Any update?",
    }

    with Ingestor(harness.pipeline) as ingestor:
        result = ingestor.submit_manual(ACCOUNT, payload).result()

    assert result.external_id == "42"
    message = harness.store.get_message(result.message_id)
    assert message.subject == "Where is my order #12345?"


def test_catch_up_pulls_and_processes(harness):
    harness.automate()
    client = MagicMock()
    client.search_messages.return_value = [{"id": "g-1"}, {"id": "g-2"}]
    client.get_message.side_effect = lambda message_id: {"id": message_id}
    client.parse_message.side_effect = lambda raw: IncomingEmail(
        message_id=raw["id"],
        from_address=f"{raw['id']}@shopper.io",
        to_address="support@acme-store.io",
        subject="Where is my order #12345?",
        body="Any news?",
    )

    with Ingestor(harness.pipeline) as ingestor:
        results = ingestor.catch_up(ACCOUNT, client, "is:unread newer_than:2d")

    client.search_messages.assert_called_once_with("is:unread newer_than:2d")
    assert sorted(r.external_id for r in results) == ["g-1", "g-2"]
    assert harness.channel.send.call_count == 2


def test_catch_up_skips_unreadable_messages(harness):
    harness.automate()
    client = MagicMock()
    client.search_messages.return_value = [{"id": "g-1"}, {"id": "g-bad"}, {"id": "g-3"}]

    def get_message(message_id):
        if message_id == "g-bad":
            raise TimeoutError("read timed out")
        return {"id": message_id}

    client.get_message.side_effect = get_message
    client.parse_message.side_effect = lambda raw: IncomingEmail(
        message_id=raw["id"],
        from_address=f"{raw['id']}@shopper.io",
        to_address="support@acme-store.io",
        subject="Where is my order #12345?",
        body="Any news?",
    )

    with Ingestor(harness.pipeline) as ingestor:
        results = ingestor.catch_up(ACCOUNT, client, "is:unread")

    assert sorted(r.external_id for r in results) == ["g-1", "g-3"]
    assert harness.channel.send.call_count == 2


def test_collect_skips_failed_futures():
    ok, failed = MagicMock(), MagicMock()
    ok.result.return_value = "done"
    failed.result.side_effect = RuntimeError("worker crashed")
    assert collect([ok, failed]) == ["done"]
