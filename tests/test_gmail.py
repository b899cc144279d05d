"""Tests for the Gmail mailbox wrapper and delivery channel (mocked API)."""

import base64
import email
import json
from unittest.mock import MagicMock, patch

import pytest
from googleapiclient.errors import HttpError

from replygate.config import GmailConfig
from replygate.errors import CollaboratorError, DeliveryFailure
from replygate.gmail.auth import authenticate, connect_mailbox, token_path
from replygate.gmail.client import GmailChannel, GmailClient

SUPPORT = "support@acme-store.io"


def b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii")


@pytest.fixture
def raw_message():
    return {
        "id": "gmail-abc",
        "payload": {
            "mimeType": "multipart/mixed",
            "headers": [
                {"name": "From", "value": "Jane Doe <Jane.Doe@Shopper.io>"},
                {"name": "To", "value": SUPPORT},
                {"name": "Subject", "value": "Where is my order #12345?"},
                {"name": "Date", "value": "Wed, 1 May 2024 10:00:00 +0000"},
            ],
            "parts": [
                {
                    "mimeType": "multipart/alternative",
                    "parts": [
                        {"mimeType": "text/plain", "body": {"data": b64("Plain body")}},
                        {"mimeType": "text/html", "body": {"data": b64("<p>HTML body</p>")}},
                    ],
                },
                {
                    "mimeType": "application/pdf",
                    "filename": "receipt.pdf",
                    "body": {"attachmentId": "att-1"},
                },
            ],
        },
    }


def test_parse_message_prefers_plain_text(raw_message):
    parsed = GmailClient(MagicMock(), SUPPORT).parse_message(raw_message)

    assert parsed.message_id == "gmail-abc"
    assert parsed.from_address == "jane.doe@shopper.io"
    assert parsed.to_address == SUPPORT
    assert parsed.subject == "Where is my order #12345?"
    assert parsed.body == "Plain body"
    assert parsed.received_at == "Wed, 1 May 2024 10:00:00 +0000"


def test_parse_html_only_message(raw_message):
    raw_message["payload"]["parts"][0]["parts"].pop(0)
    parsed = GmailClient(MagicMock(), SUPPORT).parse_message(raw_message)
    assert parsed.body == "<p>HTML body</p>"


def test_parse_message_without_to_uses_mailbox(raw_message):
    headers = raw_message["payload"]["headers"]
    raw_message["payload"]["headers"] = [h for h in headers if h["name"] != "To"]
    parsed = GmailClient(MagicMock(), SUPPORT).parse_message(raw_message)
    assert parsed.to_address == SUPPORT


def test_search_messages_paginates():
    service = MagicMock()
    list_call = service.users.return_value.messages.return_value.list
    list_call.return_value.execute.side_effect = [
        {"messages": [{"id": "1"}, {"id": "2"}], "nextPageToken": "p2"},
        {"messages": [{"id": "3"}]},
    ]

    stubs = GmailClient(service, SUPPORT).search_messages("is:unread")

    assert [s["id"] for s in stubs] == ["1", "2", "3"]
    assert list_call.call_args_list[1].kwargs["pageToken"] == "p2"


def test_send_message_builds_raw_email():
    service = MagicMock()
    send_call = service.users.return_value.messages.return_value.send
    send_call.return_value.execute.return_value = {"id": "sent-1"}

    sent_id = GmailClient(service, SUPPORT).send_message(
        "jane.doe@shopper.io", "Re: Where is my order?", "It shipped.",
    )

    assert sent_id == "sent-1"
    raw = send_call.call_args.kwargs["body"]["raw"]
    msg = email.message_from_bytes(base64.urlsafe_b64decode(raw))
    assert msg["To"] == "jane.doe@shopper.io"
    assert msg["From"] == SUPPORT
    assert msg["Subject"] == "Re: Where is my order?"
    assert msg.get_payload().strip() == "It shipped."


def test_channel_wraps_http_error():
    client = MagicMock()
    client.send_message.side_effect = HttpError(
        MagicMock(status=400, reason="Bad Request"), b'{"error": {"message": "Invalid To header"}}'
    )
    with pytest.raises(DeliveryFailure, match="Gmail refused"):
        GmailChannel(client).send("acct-1", "jane.doe@shopper.io", "Re: Hi", "Body")


def test_channel_wraps_socket_errors():
    client = MagicMock()
    client.send_message.side_effect = TimeoutError("timed out")
    with pytest.raises(DeliveryFailure, match="Gmail send failed"):
        GmailChannel(client).send("acct-1", "jane.doe@shopper.io", "Re: Hi", "Body")


# --- auth -------------------------------------------------------------------


def test_missing_token_is_collaborator_error(tmp_path):
    config = GmailConfig(token_dir=str(tmp_path))
    with pytest.raises(CollaboratorError, match="connect the mailbox first"):
        authenticate(config, "acct-1")


def test_expired_token_is_refreshed_and_saved(tmp_path):
    config = GmailConfig(token_dir=str(tmp_path))
    path = token_path(config, "acct-1")
    path.write_text(json.dumps({"token": "old"}))

    creds = MagicMock(valid=False, expired=True, refresh_token="refresh-me")
    creds.to_json.return_value = json.dumps({"token": "new"})
    with patch("replygate.gmail.auth.Credentials") as mock_creds, \
            patch("replygate.gmail.auth.Request"):
        mock_creds.from_authorized_user_file.return_value = creds
        assert authenticate(config, "acct-1") is creds

    creds.refresh.assert_called_once()
    assert json.loads(path.read_text()) == {"token": "new"}


def test_revoked_token_is_collaborator_error(tmp_path):
    config = GmailConfig(token_dir=str(tmp_path))
    token_path(config, "acct-1").write_text("{}")

    creds = MagicMock(valid=False, expired=False, refresh_token=None)
    with patch("replygate.gmail.auth.Credentials") as mock_creds:
        mock_creds.from_authorized_user_file.return_value = creds
        with pytest.raises(CollaboratorError, match="invalid"):
            authenticate(config, "acct-1")


def test_channel_for_account_uses_mailbox_address():
    service = MagicMock()
    with patch("replygate.gmail.auth.get_gmail_service", return_value=service), \
            patch("replygate.gmail.auth.get_user_email", return_value=SUPPORT):
        channel = GmailChannel.for_account(GmailConfig(), "acct-1")

    assert channel.client.user_email == SUPPORT
    assert channel.client.service is service


def test_connect_mailbox_saves_token(tmp_path):
    credentials = tmp_path / "credentials.json"
    credentials.write_text("{}")
    config = GmailConfig(credentials_file=str(credentials), token_dir=str(tmp_path / "tokens"))

    with patch("replygate.gmail.auth.InstalledAppFlow") as mock_flow:
        mock_flow.from_client_secrets_file.return_value.run_local_server.return_value.to_json.return_value = '{"token": "t"}'
        saved = connect_mailbox(config, "acct-1")

    assert saved == tmp_path / "tokens" / "acct-1.json"
    assert json.loads(saved.read_text()) == {"token": "t"}
