"""Thread linking: group messages by normalized subject and participant pair."""

from __future__ import annotations

import logging
import re
import sqlite3

from replygate.errors import StepResult, ThreadLinkFailure
from replygate.models import Thread
from replygate.store import Store

logger = logging.getLogger(__name__)

_REPLY_PREFIX_RE = re.compile(r"^\s*((re|fw|fwd|aw|sv)\s*(\[\d+\])?\s*:\s*)+", re.IGNORECASE)


def normalize_subject(subject: str | None) -> str:
    """Strip reply/forward prefixes and surrounding whitespace.

    >>> normalize_subject("RE: Fwd: re[2]: Where is my order?")
    'Where is my order?'
    """
    return _REPLY_PREFIX_RE.sub("", subject or "").strip()


def participant_pair(sender: str, recipient: str) -> tuple[str, str]:
    """Unordered participant pair, as a sorted tuple of lowercased addresses."""
    a, b = sorted(((sender or "").strip().lower(), (recipient or "").strip().lower()))
    return a, b


class ThreadLinker:
    def __init__(self, store: Store):
        self.store = store

    def link(
        self, account_id: str, message_id: int, subject: str, sender: str, recipient: str
    ) -> StepResult:
        """Attach a message to its thread, creating the thread when needed.

        Storage failures are reported in the returned StepResult rather than
        raised; the caller continues as if the message starts a new thread.
        """
        normalized = normalize_subject(subject)
        try:
            thread_id, position = self._attach(account_id, message_id, normalized, sender, recipient)
        except ThreadLinkFailure as e:
            logger.warning("Thread linking failed for message %s: %s", message_id, e)
            return StepResult.failure("thread_link", e)
        return StepResult.success(
            "thread_link", thread_id=thread_id, position=position, normalized_subject=normalized,
        )

    def _attach(
        self, account_id: str, message_id: int, normalized: str, sender: str, recipient: str
    ) -> tuple[int, int]:
        a, b = participant_pair(sender, recipient)
        try:
            thread_id = self.store.find_or_create_thread(account_id, normalized, a, b)
            return thread_id, self.store.append_to_thread(thread_id, message_id)
        except sqlite3.Error as e:
            raise ThreadLinkFailure(str(e)) from e

    def thread_for(self, message_id: int) -> Thread | None:
        """The message's thread, or None when unlinked or storage is unavailable."""
        try:
            return self.store.thread_for_message(message_id)
        except sqlite3.Error as e:
            logger.warning("Thread lookup failed for message %s: %s", message_id, e)
            return None

    def is_first_message_in_thread(self, message_id: int) -> bool:
        thread = self.thread_for(message_id)
        return thread is None or thread.position_of(message_id) == 0

    def thread_size(self, message_id: int) -> int:
        thread = self.thread_for(message_id)
        return thread.size if thread else 1
