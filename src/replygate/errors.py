"""Exception taxonomy and non-fatal step results."""

from __future__ import annotations

from dataclasses import dataclass, field


class ReplyGateError(Exception):
    """Base class for all pipeline errors."""


class CollaboratorError(ReplyGateError):
    """An external service (oracle, commerce, mailbox) failed or timed out."""


class ClassificationDegraded(ReplyGateError):
    """Classification oracle failed; the general/30 fallback applies."""


class GroundingUnavailable(ReplyGateError):
    """Knowledge retrieval failed; classification proceeds ungrounded."""


class SentimentUnavailable(ReplyGateError):
    """Sentiment oracle failed; sentiment-based escalation is skipped."""


class ThreadLinkFailure(ReplyGateError):
    """Thread storage failed; the message is treated as first in its thread."""


class HandlerFailure(ReplyGateError):
    """A category handler could not produce a grounded reply."""


class DeliveryFailure(ReplyGateError):
    """The account mailbox refused or failed the send."""


class SafetyRejected(ReplyGateError):
    """The outgoing reply failed a safety layer and must not be sent."""

    def __init__(self, layer: str, reason: str):
        super().__init__(f"{layer}: {reason}")
        self.layer = layer
        self.reason = reason


class InvalidTransition(ReplyGateError):
    """A status change would violate a one-way state machine."""


@dataclass
class StepResult:
    """Outcome of a non-critical pipeline step (thread linking, audit logging)."""

    step: str
    ok: bool
    error: str | None = None
    data: dict = field(default_factory=dict)

    @classmethod
    def success(cls, step: str, **data) -> StepResult:
        return cls(step=step, ok=True, data=data)

    @classmethod
    def failure(cls, step: str, error: Exception | str) -> StepResult:
        return cls(step=step, ok=False, error=str(error))
