"""Safety gate for outgoing replies.

Layers run in order and the first failure wins: recipient, moderation,
brand_voice, outgoing_sentiment. A layer whose oracle errors or times out
rejects the reply.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from replygate.errors import CollaboratorError, SafetyRejected
from replygate.models import AccountSettings

logger = logging.getLogger(__name__)

BLOCKED_RECIPIENT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^test",
        r"^demo",
        r"example\.com$",
        r"test\.com$",
        r"\.test$",
        r"user\d+",
        r"demo_",
        r"\+test",
        r"noreply",
        r"donotreply",
    )
]

_PLACEHOLDER_RE = re.compile(r"\[[A-Z][A-Z0-9_ ]*\]|\{\{\s*[\w.]+\s*\}\}")

OUTGOING_NEGATIVE_LIMIT = 50


@dataclass(frozen=True)
class SafetyVerdict:
    approved: bool
    layer: str | None = None
    reason: str = ""

    @classmethod
    def ok(cls) -> SafetyVerdict:
        return cls(approved=True)

    @classmethod
    def reject(cls, layer: str, reason: str) -> SafetyVerdict:
        return cls(approved=False, layer=layer, reason=reason)


def is_deliverable_recipient(address: str) -> bool:
    address = (address or "").strip()
    if not address or "@" not in address:
        return False
    return not any(p.search(address) for p in BLOCKED_RECIPIENT_PATTERNS)


def find_placeholders(text: str) -> list[str]:
    return _PLACEHOLDER_RE.findall(text or "")


class SafetyGate:
    def __init__(self, moderation_oracle, sentiment_oracle):
        self.moderation = moderation_oracle
        self.sentiment = sentiment_oracle

    def validate(
        self, text: str, recipient: str, settings: AccountSettings, context: dict | None = None
    ) -> SafetyVerdict:
        verdict = self._check(text, recipient, settings, context or {})
        if not verdict.approved:
            logger.warning(
                "Reply to %s blocked by %s layer: %s", recipient, verdict.layer, verdict.reason
            )
        return verdict

    def enforce(
        self, text: str, recipient: str, settings: AccountSettings, context: dict | None = None
    ) -> None:
        """Like validate(), but raise SafetyRejected naming the failing layer."""
        verdict = self.validate(text, recipient, settings, context)
        if not verdict.approved:
            raise SafetyRejected(verdict.layer, verdict.reason)

    def _check(self, text, recipient, settings, context) -> SafetyVerdict:
        if not is_deliverable_recipient(recipient):
            return SafetyVerdict.reject("recipient", f"blocked recipient address {recipient!r}")

        try:
            moderation = self.moderation.validate(
                text,
                settings.account_id,
                {"guidelines": settings.brand_voice.guidelines, **context},
            )
        except (CollaboratorError, ValueError) as e:
            return SafetyVerdict.reject("moderation", f"moderation unavailable: {e}")
        if not moderation.approved:
            return SafetyVerdict.reject("moderation", moderation.reason or "content rejected")

        lowered = text.lower()
        for phrase in settings.brand_voice.forbidden_phrases:
            if phrase and phrase.lower() in lowered:
                return SafetyVerdict.reject("brand_voice", f"forbidden phrase {phrase!r}")
        placeholders = find_placeholders(text)
        if placeholders:
            return SafetyVerdict.reject(
                "brand_voice", f"unfilled placeholder {placeholders[0]}"
            )

        try:
            outgoing = self.sentiment.analyze(text)
        except (CollaboratorError, ValueError) as e:
            return SafetyVerdict.reject("outgoing_sentiment", f"sentiment unavailable: {e}")
        if outgoing.label == "NEGATIVE" and outgoing.negative > OUTGOING_NEGATIVE_LIMIT:
            return SafetyVerdict.reject(
                "outgoing_sentiment", f"reply reads as negative ({outgoing.negative})"
            )

        return SafetyVerdict.ok()
