"""Persistent stores: messages, threads, rules, settings, queues and the audit log.

All access goes through one ``Store`` so that pipelines running on several
threads can share a single SQLite connection. Each public method holds the
store lock for its whole read-modify-write and commits before returning.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from replygate.errors import InvalidTransition
from replygate.models import (
    STATUS_TRANSITIONS,
    AccountSettings,
    ActivityLogEntry,
    Actor,
    ApprovalQueueItem,
    ApprovalStatus,
    AutomationRule,
    BrandVoice,
    Category,
    EscalationQueueItem,
    EscalationStatus,
    IncomingEmail,
    Message,
    MessageStatus,
    Priority,
    Thread,
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _loads(raw: str | None, default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return default


class Store:
    """Thread-safe repository over a SQLite connection."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._lock = threading.RLock()

    @contextmanager
    def _tx(self):
        with self._lock:
            try:
                yield self.conn
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    # --- Account settings -------------------------------------------------

    def get_settings(self, account_id: str) -> AccountSettings:
        """Return the account's settings, or defaults when none are stored."""
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM account_settings WHERE account_id = ?", (account_id,)
            ).fetchone()
        if row is None:
            return AccountSettings(account_id=account_id)

        voice = _loads(row["brand_voice"], {})
        return AccountSettings(
            account_id=account_id,
            company_name=row["company_name"] or "Our Company",
            approval_required=bool(row["approval_required"]),
            empathy_level=row["empathy_level"] or 3,
            signature=row["signature"] or "Customer Support Team",
            brand_voice=BrandVoice(
                guidelines=voice.get("guidelines", ""),
                forbidden_phrases=list(voice.get("forbidden_phrases", [])),
            ),
            high_value_customers=_loads(row["high_value_customers"], []),
            loyal_customer_greeting=bool(row["loyal_customer_greeting"]),
            grounding_quality=row["grounding_quality"],
        )

    def save_settings(self, settings: AccountSettings) -> None:
        with self._tx() as conn:
            conn.execute(
                """INSERT INTO account_settings
                   (account_id, company_name, approval_required, empathy_level, signature,
                    brand_voice, high_value_customers, loyal_customer_greeting,
                    grounding_quality, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(account_id) DO UPDATE SET
                       company_name = excluded.company_name,
                       approval_required = excluded.approval_required,
                       empathy_level = excluded.empathy_level,
                       signature = excluded.signature,
                       brand_voice = excluded.brand_voice,
                       high_value_customers = excluded.high_value_customers,
                       loyal_customer_greeting = excluded.loyal_customer_greeting,
                       grounding_quality = excluded.grounding_quality,
                       updated_at = excluded.updated_at""",
                (
                    settings.account_id,
                    settings.company_name,
                    settings.approval_required,
                    settings.empathy_level,
                    settings.signature,
                    json.dumps({
                        "guidelines": settings.brand_voice.guidelines,
                        "forbidden_phrases": settings.brand_voice.forbidden_phrases,
                    }),
                    json.dumps(settings.high_value_customers),
                    settings.loyal_customer_greeting,
                    settings.grounding_quality,
                    _now(),
                ),
            )

    # --- Automation rules -------------------------------------------------

    def add_rule(
        self,
        account_id: str,
        name: str,
        category: Category,
        is_active: bool = True,
        refund_type: str | None = None,
        refund_value: float | None = None,
        refund_cap: float | None = None,
    ) -> int:
        with self._tx() as conn:
            cursor = conn.execute(
                """INSERT INTO automation_rules
                   (account_id, name, category, is_active, refund_type, refund_value, refund_cap)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (account_id, name, Category(category).value, is_active,
                 refund_type, refund_value, refund_cap),
            )
            return cursor.lastrowid

    def list_rules(self, account_id: str) -> list[AutomationRule]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM automation_rules WHERE account_id = ? ORDER BY id",
                (account_id,),
            ).fetchall()
        return [_row_to_rule(row) for row in rows]

    def get_rule(self, rule_id: int) -> AutomationRule | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM automation_rules WHERE id = ?", (rule_id,)
            ).fetchone()
        return _row_to_rule(row) if row else None

    def record_rule_trigger(self, rule_id: int) -> None:
        with self._tx() as conn:
            conn.execute(
                """UPDATE automation_rules
                   SET trigger_count = trigger_count + 1, last_triggered = ?
                   WHERE id = ?""",
                (_now(), rule_id),
            )

    # --- Messages ---------------------------------------------------------

    def claim_message(self, account_id: str, email: IncomingEmail) -> Message | None:
        """Create the message record unless the external id is already known.

        Returns the new Message, or None when another ingestion path got
        there first. The UNIQUE constraint on external_id makes this atomic.
        """
        metadata = {"received_at": email.received_at or _now()}
        with self._tx() as conn:
            cursor = conn.execute(
                """INSERT INTO messages
                   (account_id, external_id, from_address, to_address, subject, body,
                    status, metadata, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(external_id) DO NOTHING""",
                (
                    account_id, email.message_id, email.from_address, email.to_address,
                    email.subject, email.body, MessageStatus.RECEIVED.value,
                    json.dumps(metadata), _now(),
                ),
            )
            if cursor.rowcount == 0:
                return None
            message_id = cursor.lastrowid
        return self.get_message(message_id)

    def get_message(self, message_id: int) -> Message | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM messages WHERE id = ?", (message_id,)
            ).fetchone()
        return _row_to_message(row) if row else None

    def get_message_by_external_id(self, external_id: str) -> Message | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM messages WHERE external_id = ?", (external_id,)
            ).fetchone()
        return _row_to_message(row) if row else None

    def list_messages(self, account_id: str, status: MessageStatus | None = None) -> list[Message]:
        query = "SELECT * FROM messages WHERE account_id = ?"
        params: list = [account_id]
        if status is not None:
            query += " AND status = ?"
            params.append(MessageStatus(status).value)
        query += " ORDER BY id"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [_row_to_message(row) for row in rows]

    def update_classification(
        self,
        message_id: int,
        category: Category,
        confidence: int,
        priority: Priority,
        metadata: dict | None = None,
    ) -> None:
        """Store classification fields and merge ``metadata`` into the message's map."""
        with self._tx() as conn:
            row = conn.execute(
                "SELECT metadata FROM messages WHERE id = ?", (message_id,)
            ).fetchone()
            merged = _loads(row["metadata"], {}) if row else {}
            merged.update(metadata or {})
            conn.execute(
                """UPDATE messages SET category = ?, confidence = ?, priority = ?, metadata = ?
                   WHERE id = ?""",
                (Category(category).value, confidence, Priority(priority).value,
                 json.dumps(merged), message_id),
            )

    def merge_metadata(self, message_id: int, metadata: dict) -> None:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT metadata FROM messages WHERE id = ?", (message_id,)
            ).fetchone()
            merged = _loads(row["metadata"], {}) if row else {}
            merged.update(metadata)
            conn.execute(
                "UPDATE messages SET metadata = ? WHERE id = ?",
                (json.dumps(merged), message_id),
            )

    def set_status(
        self,
        message_id: int,
        new_status: MessageStatus,
        escalation_reason: str | None = None,
    ) -> None:
        """Move a message along its state machine.

        Raises InvalidTransition when the move is not allowed from the current
        status, or when a concurrent writer changed the status first.
        """
        new_status = MessageStatus(new_status)
        with self._tx() as conn:
            row = conn.execute(
                "SELECT status FROM messages WHERE id = ?", (message_id,)
            ).fetchone()
            if row is None:
                raise InvalidTransition(f"Message {message_id} does not exist")
            current = MessageStatus(row["status"])
            if new_status not in STATUS_TRANSITIONS[current]:
                raise InvalidTransition(
                    f"Message {message_id}: {current.value} -> {new_status.value} not allowed"
                )
            processed_at = _now() if new_status != MessageStatus.PROCESSING else None
            cursor = conn.execute(
                """UPDATE messages
                   SET status = ?, processed_at = COALESCE(?, processed_at),
                       escalation_reason = COALESCE(?, escalation_reason)
                   WHERE id = ? AND status = ?""",
                (new_status.value, processed_at, escalation_reason, message_id, current.value),
            )
            if cursor.rowcount == 0:
                raise InvalidTransition(f"Message {message_id} changed concurrently")

    # --- Threads ----------------------------------------------------------

    def find_or_create_thread(
        self, account_id: str, normalized_subject: str, participant_a: str, participant_b: str
    ) -> int:
        with self._tx() as conn:
            conn.execute(
                """INSERT INTO threads (account_id, normalized_subject, participant_a, participant_b)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(account_id, normalized_subject, participant_a, participant_b)
                   DO NOTHING""",
                (account_id, normalized_subject, participant_a, participant_b),
            )
            row = conn.execute(
                """SELECT id FROM threads WHERE account_id = ? AND normalized_subject = ?
                   AND participant_a = ? AND participant_b = ?""",
                (account_id, normalized_subject, participant_a, participant_b),
            ).fetchone()
            return row["id"]

    def append_to_thread(self, thread_id: int, message_id: int) -> int:
        """Append a message to a thread; returns its 0-based position.

        A message already linked keeps its original thread and position.
        """
        with self._tx() as conn:
            existing = conn.execute(
                "SELECT position FROM thread_messages WHERE message_id = ?", (message_id,)
            ).fetchone()
            if existing:
                return existing["position"]
            row = conn.execute(
                "SELECT COALESCE(MAX(position) + 1, 0) AS next FROM thread_messages WHERE thread_id = ?",
                (thread_id,),
            ).fetchone()
            conn.execute(
                "INSERT INTO thread_messages (thread_id, message_id, position) VALUES (?, ?, ?)",
                (thread_id, message_id, row["next"]),
            )
            return row["next"]

    def thread_for_message(self, message_id: int) -> Thread | None:
        """Return the thread a message is linked to, members in arrival order."""
        with self._lock:
            row = self.conn.execute(
                """SELECT t.* FROM threads t
                   JOIN thread_messages tm ON tm.thread_id = t.id
                   WHERE tm.message_id = ?""",
                (message_id,),
            ).fetchone()
            if row is None:
                return None
            members = self.conn.execute(
                "SELECT message_id FROM thread_messages WHERE thread_id = ? ORDER BY position",
                (row["id"],),
            ).fetchall()
        return Thread(
            id=row["id"],
            account_id=row["account_id"],
            normalized_subject=row["normalized_subject"],
            participant_a=row["participant_a"],
            participant_b=row["participant_b"],
            message_ids=[m["message_id"] for m in members],
        )

    # --- Knowledge chunks -------------------------------------------------

    def replace_chunks(self, account_id: str, source: str, chunks: list[str]) -> int:
        with self._tx() as conn:
            conn.execute(
                "DELETE FROM knowledge_chunks WHERE account_id = ? AND source = ?",
                (account_id, source),
            )
            conn.executemany(
                """INSERT INTO knowledge_chunks (account_id, source, chunk_index, content)
                   VALUES (?, ?, ?, ?)""",
                [(account_id, source, i, chunk) for i, chunk in enumerate(chunks)],
            )
        return len(chunks)

    def list_chunks(self, account_id: str) -> list[dict]:
        with self._lock:
            rows = self.conn.execute(
                """SELECT id, source, chunk_index, content, embedding, embedding_model
                   FROM knowledge_chunks
                   WHERE account_id = ? ORDER BY source, chunk_index""",
                (account_id,),
            ).fetchall()
        return [
            {
                "id": row["id"],
                "source": row["source"],
                "chunk_index": row["chunk_index"],
                "content": row["content"],
                "embedding": _loads(row["embedding"], None),
                "embedding_model": row["embedding_model"],
            }
            for row in rows
        ]

    def set_chunk_embedding(self, chunk_id: int, embedding: list[float], model: str) -> None:
        with self._tx() as conn:
            conn.execute(
                "UPDATE knowledge_chunks SET embedding = ?, embedding_model = ? WHERE id = ?",
                (json.dumps(embedding), model, chunk_id),
            )

    def clear_chunk_embeddings(self, account_id: str) -> int:
        with self._tx() as conn:
            cursor = conn.execute(
                """UPDATE knowledge_chunks SET embedding = NULL, embedding_model = NULL
                   WHERE account_id = ? AND embedding IS NOT NULL""",
                (account_id,),
            )
            return cursor.rowcount

    # --- Approval queue ---------------------------------------------------

    def create_approval(
        self,
        account_id: str,
        message_id: int,
        rule_id: int | None,
        proposed_reply: str,
        confidence: int,
        metadata: dict | None = None,
    ) -> ApprovalQueueItem:
        with self._tx() as conn:
            cursor = conn.execute(
                """INSERT INTO approval_queue
                   (account_id, message_id, rule_id, proposed_reply, confidence, status,
                    metadata, created_at)
                   VALUES (?, ?, ?, ?, ?, 'pending', ?, ?)""",
                (account_id, message_id, rule_id, proposed_reply, confidence,
                 json.dumps(metadata or {}), _now()),
            )
            item_id = cursor.lastrowid
        return self.get_approval(item_id)

    def get_approval(self, item_id: int) -> ApprovalQueueItem | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM approval_queue WHERE id = ?", (item_id,)
            ).fetchone()
        return _row_to_approval(row) if row else None

    def list_approvals(
        self, account_id: str, status: ApprovalStatus | None = ApprovalStatus.PENDING
    ) -> list[ApprovalQueueItem]:
        query = "SELECT * FROM approval_queue WHERE account_id = ?"
        params: list = [account_id]
        if status is not None:
            query += " AND status = ?"
            params.append(ApprovalStatus(status).value)
        query += " ORDER BY id"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [_row_to_approval(row) for row in rows]

    def decide_approval(
        self, item_id: int, status: ApprovalStatus, reviewer_note: str | None = None,
        proposed_reply: str | None = None,
    ) -> ApprovalQueueItem:
        """Move a pending approval item to approved/rejected exactly once."""
        status = ApprovalStatus(status)
        if status == ApprovalStatus.PENDING:
            raise InvalidTransition("Approval items cannot return to pending")
        with self._tx() as conn:
            cursor = conn.execute(
                """UPDATE approval_queue
                   SET status = ?, reviewer_note = ?, decided_at = ?,
                       proposed_reply = COALESCE(?, proposed_reply)
                   WHERE id = ? AND status = 'pending'""",
                (status.value, reviewer_note, _now(), proposed_reply, item_id),
            )
            if cursor.rowcount == 0:
                raise InvalidTransition(f"Approval item {item_id} is not pending")
        return self.get_approval(item_id)

    # --- Escalation queue -------------------------------------------------

    def create_escalation(
        self, account_id: str, message_id: int, priority: Priority, reason: str
    ) -> EscalationQueueItem:
        with self._tx() as conn:
            cursor = conn.execute(
                """INSERT INTO escalation_queue
                   (account_id, message_id, priority, reason, status, created_at)
                   VALUES (?, ?, ?, ?, 'pending', ?)""",
                (account_id, message_id, Priority(priority).value, reason, _now()),
            )
            item_id = cursor.lastrowid
        return self.get_escalation(item_id)

    def get_escalation(self, item_id: int) -> EscalationQueueItem | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM escalation_queue WHERE id = ?", (item_id,)
            ).fetchone()
        return _row_to_escalation(row) if row else None

    def list_escalations(
        self, account_id: str, status: EscalationStatus | None = EscalationStatus.PENDING
    ) -> list[EscalationQueueItem]:
        query = "SELECT * FROM escalation_queue WHERE account_id = ?"
        params: list = [account_id]
        if status is not None:
            query += " AND status = ?"
            params.append(EscalationStatus(status).value)
        query += """ ORDER BY CASE priority
                        WHEN 'urgent' THEN 0 WHEN 'high' THEN 1
                        WHEN 'medium' THEN 2 ELSE 3 END, id"""
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [_row_to_escalation(row) for row in rows]

    def resolve_escalation(self, item_id: int) -> EscalationQueueItem:
        with self._tx() as conn:
            cursor = conn.execute(
                """UPDATE escalation_queue SET status = 'resolved', resolved_at = ?
                   WHERE id = ? AND status = 'pending'""",
                (_now(), item_id),
            )
            if cursor.rowcount == 0:
                raise InvalidTransition(f"Escalation {item_id} is not pending")
        return self.get_escalation(item_id)

    # --- Activity log -----------------------------------------------------

    def add_activity(self, entry: ActivityLogEntry) -> int:
        with self._tx() as conn:
            cursor = conn.execute(
                """INSERT INTO activity_log
                   (account_id, message_id, action, type, actor, status, customer_email,
                    details, metadata, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    entry.account_id, entry.message_id, entry.action, entry.type,
                    Actor(entry.actor).value, entry.status, entry.customer_email,
                    entry.details, json.dumps(entry.metadata, default=str), _now(),
                ),
            )
            return cursor.lastrowid

    def list_activity(
        self,
        account_id: str,
        message_id: int | None = None,
        since: datetime | None = None,
    ) -> list[ActivityLogEntry]:
        query = "SELECT * FROM activity_log WHERE account_id = ?"
        params: list = [account_id]
        if message_id is not None:
            query += " AND message_id = ?"
            params.append(message_id)
        if since is not None:
            query += " AND created_at >= ?"
            params.append(since.isoformat())
        query += " ORDER BY id"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [
            ActivityLogEntry(
                id=row["id"],
                account_id=row["account_id"],
                message_id=row["message_id"],
                action=row["action"],
                type=row["type"],
                actor=Actor(row["actor"]),
                status=row["status"],
                customer_email=row["customer_email"],
                details=row["details"] or "",
                metadata=_loads(row["metadata"], {}),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def activity_since(self, account_id: str, days: int) -> list[ActivityLogEntry]:
        start = datetime.now(timezone.utc) - timedelta(days=days)
        start = start.replace(hour=0, minute=0, second=0, microsecond=0)
        return self.list_activity(account_id, since=start)


def _row_to_rule(row: sqlite3.Row) -> AutomationRule:
    return AutomationRule(
        id=row["id"],
        account_id=row["account_id"],
        name=row["name"],
        category=Category(row["category"]),
        is_active=bool(row["is_active"]),
        refund_type=row["refund_type"],
        refund_value=row["refund_value"],
        refund_cap=row["refund_cap"],
        trigger_count=row["trigger_count"] or 0,
        last_triggered=row["last_triggered"],
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        account_id=row["account_id"],
        external_id=row["external_id"],
        from_address=row["from_address"],
        to_address=row["to_address"],
        subject=row["subject"] or "",
        body=row["body"] or "",
        status=MessageStatus(row["status"]),
        category=Category(row["category"]) if row["category"] else None,
        confidence=row["confidence"],
        priority=Priority(row["priority"]) if row["priority"] else None,
        metadata=_loads(row["metadata"], {}),
        created_at=row["created_at"],
        processed_at=row["processed_at"],
    )


def _row_to_approval(row: sqlite3.Row) -> ApprovalQueueItem:
    return ApprovalQueueItem(
        id=row["id"],
        account_id=row["account_id"],
        message_id=row["message_id"],
        rule_id=row["rule_id"],
        proposed_reply=row["proposed_reply"],
        confidence=row["confidence"],
        status=ApprovalStatus(row["status"]),
        reviewer_note=row["reviewer_note"],
        metadata=_loads(row["metadata"], {}),
        created_at=row["created_at"],
        decided_at=row["decided_at"],
    )


def _row_to_escalation(row: sqlite3.Row) -> EscalationQueueItem:
    return EscalationQueueItem(
        id=row["id"],
        account_id=row["account_id"],
        message_id=row["message_id"],
        priority=Priority(row["priority"]),
        reason=row["reason"],
        status=EscalationStatus(row["status"]),
        created_at=row["created_at"],
        resolved_at=row["resolved_at"],
    )
