"""Ingestion: feed emails from push, login catch-up and manual paths into the pipeline.

All three sources share one ``ThreadPoolExecutor``. Messages that belong to
the same conversation are processed one at a time under a per-thread lock;
different conversations run in parallel. Duplicate delivery across sources
is resolved by the pipeline's claim on the external message id.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum

from replygate.models import IncomingEmail, ProcessedEmail
from replygate.pipeline import Pipeline
from replygate.stages.threads import normalize_subject, participant_pair

logger = logging.getLogger(__name__)


class IngestionSource(str, Enum):
    PUSH = "push"
    LOGIN_SYNC = "login_sync"
    MANUAL = "manual"


def thread_key(account_id: str, email: IncomingEmail) -> tuple:
    return (
        account_id,
        normalize_subject(email.subject).lower(),
        participant_pair(email.from_address, email.to_address),
    )


class Ingestor:
    """Submits inbound emails to the pipeline on a worker pool."""

    def __init__(self, pipeline: Pipeline, max_workers: int = 4):
        self.pipeline = pipeline
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ingest")
        self._thread_locks: dict[tuple, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: tuple) -> threading.Lock:
        with self._locks_guard:
            lock = self._thread_locks.get(key)
            if lock is None:
                lock = self._thread_locks[key] = threading.Lock()
            return lock

    def _run(self, account_id: str, email: IncomingEmail, source: IngestionSource) -> ProcessedEmail:
        with self._lock_for(thread_key(account_id, email)):
            result = self.pipeline.process(account_id, email)
        logger.info(
            "[%s] %s -> %s%s", source.value, email.message_id, result.status.value,
            " (duplicate)" if result.duplicate else "",
        )
        return result

    def submit(
        self, account_id: str, email: IncomingEmail, source: IngestionSource = IngestionSource.PUSH
    ) -> Future:
        return self.executor.submit(self._run, account_id, email, IngestionSource(source))

    def submit_batch(
        self,
        account_id: str,
        emails: list[IncomingEmail],
        source: IngestionSource = IngestionSource.PUSH,
    ) -> list[Future]:
        return [self.submit(account_id, email, source) for email in emails]

    def submit_manual(self, account_id: str, payload: dict) -> Future:
        """On-demand ingestion of a single email given as a plain dict."""
        email = IncomingEmail(
            message_id=str(payload["message_id"]),
            from_address=payload["from"],
            to_address=payload.get("to", ""),
            subject=payload.get("subject", ""),
            body=payload.get("body", ""),
            received_at=payload.get("received_at"),
        )
        return self.submit(account_id, email, IngestionSource.MANUAL)

    def catch_up(self, account_id: str, client, query: str) -> list[ProcessedEmail]:
        """Pull messages matching ``query`` from the mailbox and process them.

        Returns the results that completed. A message that cannot be fetched or
        parsed is logged and skipped; the rest of the batch still runs.
        """
        stubs = client.search_messages(query)
        logger.info("Catch-up for %s found %d messages", account_id, len(stubs))
        futures = []
        for stub in stubs:
            try:
                email = client.parse_message(client.get_message(stub["id"]))
            except Exception as e:
                logger.warning("Catch-up for %s skipped message %s: %s", account_id, stub.get("id"), e)
                continue
            futures.append(self.submit(account_id, email, IngestionSource.LOGIN_SYNC))
        return collect(futures)

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown()


def collect(futures: list[Future]) -> list[ProcessedEmail]:
    results = []
    for future in futures:
        try:
            results.append(future.result())
        except Exception as e:
            logger.error("Ingestion task failed: %s", e)
    return results
