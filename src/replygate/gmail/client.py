"""Gmail API wrapper: search, fetch, parse and send."""

from __future__ import annotations

import base64
import email.utils
import logging
from email.message import EmailMessage

from googleapiclient.errors import HttpError

from replygate.config import GmailConfig
from replygate.errors import CollaboratorError, DeliveryFailure
from replygate.models import IncomingEmail

logger = logging.getLogger(__name__)


class GmailClient:
    """Wraps the Gmail API service with pagination and message parsing."""

    def __init__(self, service, user_email: str):
        self.service = service
        self.user_email = user_email

    def search_messages(self, query: str) -> list[dict]:
        """Return all message stubs matching the Gmail search query."""
        messages: list[dict] = []
        page_token = None

        while True:
            result = (
                self.service.users()
                .messages()
                .list(userId="me", q=query, pageToken=page_token)
                .execute()
            )
            messages.extend(result.get("messages", []))
            page_token = result.get("nextPageToken")
            if not page_token:
                break

        return messages

    def get_message(self, message_id: str, fmt: str = "full") -> dict:
        """Fetch a single message in the specified format."""
        return (
            self.service.users()
            .messages()
            .get(userId="me", id=message_id, format=fmt)
            .execute()
        )

    def parse_message(self, raw_msg: dict) -> IncomingEmail:
        """Parse a raw Gmail API message into an IncomingEmail.

        The plain-text part is preferred; HTML-only messages keep their markup.
        """
        payload = raw_msg.get("payload", {})
        header_map: dict[str, str] = {}
        for h in payload.get("headers", []):
            key = h.get("name", "").lower()
            if key not in header_map:
                header_map[key] = h.get("value", "")

        body_parts: dict[str, list] = {"html": [], "text": []}
        self._extract_parts(payload, body_parts)
        body = "\n".join(body_parts["text"]) or "\n".join(body_parts["html"])

        from_email = email.utils.parseaddr(header_map.get("from", ""))[1].lower()
        to_email = email.utils.parseaddr(header_map.get("to", ""))[1].lower() or self.user_email

        return IncomingEmail(
            message_id=raw_msg["id"],
            from_address=from_email,
            to_address=to_email,
            subject=header_map.get("subject", ""),
            body=body,
            received_at=header_map.get("date"),
        )

    def _extract_parts(self, part: dict, body_parts: dict[str, list]) -> None:
        """Recursively collect text/plain and text/html bodies, skipping attachments."""
        if part.get("filename"):
            return

        sub_parts = part.get("parts", [])
        if sub_parts:
            for sub in sub_parts:
                self._extract_parts(sub, body_parts)
            return

        body_data = part.get("body", {}).get("data", "")
        if not body_data:
            return

        try:
            decoded = base64.urlsafe_b64decode(body_data).decode("utf-8", errors="replace")
        except (ValueError, TypeError):
            return

        mime_type = part.get("mimeType", "")
        if mime_type == "text/html":
            body_parts["html"].append(decoded)
        elif mime_type == "text/plain":
            body_parts["text"].append(decoded)

    def send_message(self, to: str, subject: str, body: str) -> str:
        """Send a plain-text email from the mailbox; returns the Gmail message id."""
        msg = EmailMessage()
        msg["To"] = to
        msg["From"] = self.user_email
        msg["Subject"] = subject
        msg.set_content(body)
        raw = base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii")
        result = (
            self.service.users()
            .messages()
            .send(userId="me", body={"raw": raw})
            .execute()
        )
        return result.get("id", "")


class GmailChannel:
    """Delivery channel sending through one account's own Gmail mailbox."""

    def __init__(self, client: GmailClient):
        self.client = client

    @classmethod
    def for_account(cls, config: GmailConfig, account_id: str) -> GmailChannel:
        from replygate.gmail.auth import get_gmail_service, get_user_email

        service = get_gmail_service(config, account_id)
        return cls(GmailClient(service, get_user_email(service)))

    def send(self, account_id: str, to: str, subject: str, body: str) -> str:
        try:
            return self.client.send_message(to, subject, body)
        except HttpError as e:
            raise DeliveryFailure(f"Gmail refused the send for {account_id}: {e}") from e
        except (OSError, CollaboratorError) as e:
            raise DeliveryFailure(f"Gmail send failed for {account_id}: {e}") from e
