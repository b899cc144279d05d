"""Sentiment risk: decide whether an angry customer must bypass automation."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from replygate.config import SentimentConfig
from replygate.errors import CollaboratorError, SentimentUnavailable
from replygate.models import Priority, SentimentAssessment, SentimentRisk

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RiskContext:
    sender: str
    thread_size: int = 1
    high_value: bool = False


def _keyword_pattern(keywords: list[str]) -> re.Pattern | None:
    if not keywords:
        return None
    alternatives = "|".join(re.escape(k.lower()) for k in keywords)
    return re.compile(rf"\b({alternatives})\b", re.IGNORECASE)


class SentimentRiskEvaluator:
    def __init__(self, oracle, config: SentimentConfig | None = None):
        self.oracle = oracle
        self.config = config or SentimentConfig()
        self._urgency_re = _keyword_pattern(self.config.urgency_keywords)
        self._billing_re = _keyword_pattern(self.config.billing_keywords)

    def has_urgency_keywords(self, text: str) -> bool:
        return bool(self._urgency_re and self._urgency_re.search(text or ""))

    def effective_threshold(self, body: str, context: RiskContext) -> int:
        """Nominal threshold minus the relaxations that apply, never below the floor."""
        cfg = self.config
        threshold = cfg.high_risk_threshold
        if context.high_value:
            threshold -= cfg.high_value_relaxation
        if context.thread_size > cfg.long_thread_messages:
            threshold -= cfg.long_thread_relaxation
        if self._billing_re and self._billing_re.search(body or ""):
            threshold -= cfg.billing_relaxation
        return max(cfg.threshold_floor, threshold)

    def _assess(self, body: str) -> SentimentAssessment:
        try:
            return self.oracle.analyze(body)
        except (CollaboratorError, ValueError) as e:
            raise SentimentUnavailable(str(e)) from e

    def evaluate(self, body: str, context: RiskContext) -> SentimentRisk:
        threshold = self.effective_threshold(body, context)
        urgent = self.has_urgency_keywords(body)

        try:
            assessment = self._assess(body)
        except SentimentUnavailable as e:
            logger.warning("Sentiment unavailable for %s: %s", context.sender, e)
            return SentimentRisk(
                assessment=None,
                escalate=False,
                priority=Priority.URGENT if urgent else None,
                threshold=threshold,
                urgent_keywords=urgent,
            )

        priority = None
        if assessment.label == "NEGATIVE":
            if assessment.negative > threshold and assessment.confidence > 90:
                priority = Priority.URGENT
            elif assessment.negative > threshold + 10 and assessment.confidence > 80:
                priority = Priority.HIGH

        if priority is None:
            return SentimentRisk(
                assessment=assessment,
                escalate=False,
                priority=Priority.URGENT if urgent else None,
                threshold=threshold,
                urgent_keywords=urgent,
            )

        if urgent:
            priority = Priority.URGENT
        reason = (
            f"negative sentiment: score {assessment.negative}, "
            f"confidence {assessment.confidence}, threshold {threshold}"
        )
        logger.info("Sentiment escalation for %s (%s)", context.sender, reason)
        return SentimentRisk(
            assessment=assessment,
            escalate=True,
            priority=priority,
            reason=reason,
            threshold=threshold,
            urgent_keywords=urgent,
        )
