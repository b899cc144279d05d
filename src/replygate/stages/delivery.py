"""Reply delivery through each account's own mailbox."""

from __future__ import annotations

import logging
import re
import threading
from typing import Callable, Protocol

from replygate.errors import CollaboratorError, DeliveryFailure

logger = logging.getLogger(__name__)

_RE_PREFIX = re.compile(r"^\s*re\s*:", re.IGNORECASE)


class DeliveryChannel(Protocol):
    def send(self, account_id: str, to: str, subject: str, body: str) -> str:
        """Send one email; returns the provider's message id. Raises DeliveryFailure."""
        ...


def reply_subject(subject: str) -> str:
    subject = (subject or "").strip()
    if _RE_PREFIX.match(subject):
        return subject
    return f"Re: {subject}" if subject else "Re: Your message"


class ChannelDirectory:
    """Resolves and caches one delivery channel per account."""

    def __init__(self, factory: Callable[[str], DeliveryChannel]):
        self.factory = factory
        self._channels: dict[str, DeliveryChannel] = {}
        self._lock = threading.Lock()

    def register(self, account_id: str, channel: DeliveryChannel) -> None:
        with self._lock:
            self._channels[account_id] = channel

    def channel_for(self, account_id: str) -> DeliveryChannel:
        with self._lock:
            channel = self._channels.get(account_id)
            if channel is None:
                try:
                    channel = self.factory(account_id)
                except (CollaboratorError, OSError) as e:
                    raise DeliveryFailure(f"No mailbox available for account {account_id}: {e}") from e
                self._channels[account_id] = channel
            return channel


class Deliverer:
    """Sends a reply once. Failures are raised, never retried."""

    def __init__(self, directory: ChannelDirectory):
        self.directory = directory

    def deliver(self, account_id: str, to: str, original_subject: str, body: str) -> str:
        channel = self.directory.channel_for(account_id)
        subject = reply_subject(original_subject)
        try:
            sent_id = channel.send(account_id, to, subject, body)
        except DeliveryFailure:
            raise
        except CollaboratorError as e:
            raise DeliveryFailure(str(e)) from e
        logger.info("Delivered reply to %s for account %s (%s)", to, account_id, sent_id)
        return sent_id
