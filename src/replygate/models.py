"""Dataclasses mirroring DB tables and pipeline values."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Category(str, Enum):
    ORDER_STATUS = "order_status"
    PROMO_REFUND = "promo_refund"
    ORDER_CANCELLATION = "order_cancellation"
    RETURN_REQUEST = "return_request"
    SUBSCRIPTION_CHANGE = "subscription_change"
    SUBSCRIPTION_CANCEL = "subscription_cancel"
    PAYMENT_ISSUE = "payment_issue"
    ADDRESS_CHANGE = "address_change"
    PRODUCT_QUESTION = "product_question"
    ESCALATION = "escalation"
    GENERAL = "general"

    @classmethod
    def parse(cls, value: str) -> Category:
        """Map an oracle label to a category, raising ValueError when unknown."""
        key = (value or "").strip().lower().replace("-", "_").replace(" ", "_")
        key = CATEGORY_ALIASES.get(key, key)
        return cls(key)


# Labels used by older classification prompts
CATEGORY_ALIASES = {
    "subscription_changes": "subscription_change",
    "cancellation_requests": "subscription_cancel",
    "payment_issues": "payment_issue",
    "product": "product_question",
    "wismo": "order_status",
}


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class MessageStatus(str, Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    RESOLVED = "resolved"
    AWAITING_APPROVAL = "awaiting_approval"
    ESCALATED = "escalated"


TERMINAL_STATUSES = frozenset({
    MessageStatus.RESOLVED, MessageStatus.AWAITING_APPROVAL, MessageStatus.ESCALATED,
})

# Allowed status moves; nothing ever returns to processing
STATUS_TRANSITIONS = {
    MessageStatus.RECEIVED: {MessageStatus.PROCESSING},
    MessageStatus.PROCESSING: set(TERMINAL_STATUSES),
    MessageStatus.AWAITING_APPROVAL: {MessageStatus.RESOLVED, MessageStatus.ESCALATED},
    MessageStatus.RESOLVED: set(),
    MessageStatus.ESCALATED: set(),
}


class Disposition(str, Enum):
    AUTOMATE = "automate"
    APPROVE = "approve"
    ESCALATE = "escalate"


class Actor(str, Enum):
    AI = "ai"
    HUMAN = "human"
    SYSTEM = "system"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class EscalationStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"


@dataclass
class IncomingEmail:
    message_id: str
    from_address: str
    to_address: str
    subject: str = ""
    body: str = ""
    received_at: str | None = None


@dataclass
class Message:
    id: int
    account_id: str
    external_id: str
    from_address: str
    to_address: str
    subject: str = ""
    body: str = ""
    status: MessageStatus = MessageStatus.RECEIVED
    category: Category | None = None
    confidence: int | None = None
    priority: Priority | None = None
    metadata: dict = field(default_factory=dict)
    created_at: str | None = None
    processed_at: str | None = None


@dataclass
class Thread:
    id: int
    account_id: str
    normalized_subject: str
    participant_a: str
    participant_b: str
    message_ids: list[int] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.message_ids)

    def position_of(self, message_id: int) -> int:
        return self.message_ids.index(message_id)


@dataclass(frozen=True)
class ClassificationResult:
    category: Category
    confidence: int
    priority: Priority
    reasoning: str
    grounded: bool = False
    degraded: bool = False


@dataclass(frozen=True)
class SentimentAssessment:
    label: str  # POSITIVE | NEGATIVE | NEUTRAL | MIXED
    scores: dict[str, int]
    confidence: int

    @property
    def negative(self) -> int:
        return self.scores.get("negative", 0)

    @property
    def positive(self) -> int:
        return self.scores.get("positive", 0)


@dataclass(frozen=True)
class SentimentRisk:
    assessment: SentimentAssessment | None
    escalate: bool = False
    priority: Priority | None = None
    reason: str = ""
    threshold: int = 75
    urgent_keywords: bool = False

    @property
    def available(self) -> bool:
        return self.assessment is not None


@dataclass(frozen=True)
class RoutingDecision:
    disposition: Disposition
    priority: Priority
    reason: str
    rule_id: int | None = None


@dataclass
class AutomationRule:
    id: int
    account_id: str
    name: str
    category: Category
    is_active: bool = True
    refund_type: str | None = None  # percentage | fixed_amount
    refund_value: float | None = None
    refund_cap: float | None = None
    trigger_count: int = 0
    last_triggered: str | None = None


@dataclass
class BrandVoice:
    guidelines: str = ""
    forbidden_phrases: list[str] = field(default_factory=list)


@dataclass
class AccountSettings:
    account_id: str
    company_name: str = "Our Company"
    approval_required: bool = True
    empathy_level: int = 3
    signature: str = "Customer Support Team"
    brand_voice: BrandVoice = field(default_factory=BrandVoice)
    high_value_customers: list[str] = field(default_factory=list)
    loyal_customer_greeting: bool = False
    grounding_quality: str | None = None


@dataclass
class ApprovalQueueItem:
    id: int
    account_id: str
    message_id: int
    rule_id: int | None
    proposed_reply: str
    confidence: int
    status: ApprovalStatus = ApprovalStatus.PENDING
    reviewer_note: str | None = None
    metadata: dict = field(default_factory=dict)
    created_at: str | None = None
    decided_at: str | None = None


@dataclass
class EscalationQueueItem:
    id: int
    account_id: str
    message_id: int
    priority: Priority
    reason: str
    status: EscalationStatus = EscalationStatus.PENDING
    created_at: str | None = None
    resolved_at: str | None = None


@dataclass
class ActivityLogEntry:
    account_id: str
    action: str
    type: str
    actor: Actor
    status: str
    details: str = ""
    message_id: int | None = None
    customer_email: str | None = None
    metadata: dict = field(default_factory=dict)
    id: int | None = None
    created_at: str | None = None


@dataclass
class ProcessedEmail:
    message_id: int
    external_id: str
    status: MessageStatus
    disposition: Disposition | None = None
    category: Category | None = None
    confidence: int | None = None
    auto_response_sent: bool = False
    duplicate: bool = False
    rule_used: str | None = None
    reason: str = ""
