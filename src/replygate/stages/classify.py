"""Intent classification, grounded in the account's knowledge base when possible."""

from __future__ import annotations

import logging

from replygate.errors import ClassificationDegraded, CollaboratorError, GroundingUnavailable
from replygate.models import Category, ClassificationResult, Priority
from replygate.stages.grounding import GroundingEngine, GroundingResult

logger = logging.getLogger(__name__)

FALLBACK_CATEGORY = Category.GENERAL
FALLBACK_CONFIDENCE = 30
FALLBACK_PRIORITY = Priority.MEDIUM


def fallback_result(reason: str) -> ClassificationResult:
    return ClassificationResult(
        category=FALLBACK_CATEGORY,
        confidence=FALLBACK_CONFIDENCE,
        priority=FALLBACK_PRIORITY,
        reasoning=f"Classification unavailable: {reason}",
        grounded=False,
        degraded=True,
    )


class Classifier:
    """Wraps a classification oracle with grounding and a degraded fallback.

    The oracle must provide ``classify(text, context)`` returning an object
    with ``category``, ``confidence``, ``priority`` and ``reasoning``.
    """

    def __init__(self, oracle, grounding: GroundingEngine | None = None):
        self.oracle = oracle
        self.grounding = grounding

    def retrieve(
        self, account_id: str | None, query: str, quality: str | None = None
    ) -> GroundingResult | None:
        """Search the knowledge base; None when unavailable or not configured."""
        if self.grounding is None or not account_id:
            return None
        try:
            return self.grounding.search(account_id, query, quality=quality)
        except GroundingUnavailable as e:
            logger.warning("Grounding unavailable for account %s: %s", account_id, e)
            return None

    def classify_with_grounding(
        self,
        subject: str,
        body: str,
        account_id: str | None = None,
        quality: str | None = None,
    ) -> tuple[ClassificationResult, GroundingResult | None]:
        """Classify and also return the grounding result used, if any."""
        grounding = self.retrieve(account_id, f"{subject}\n\n{body}", quality=quality)
        knowledge = grounding.sources if grounding and grounding.has_grounded_knowledge else []

        try:
            response = self._ask_oracle(subject, body, knowledge)
        except ClassificationDegraded as e:
            logger.warning("Classification oracle failed: %s", e)
            return fallback_result(str(e)), grounding

        result = ClassificationResult(
            category=response.category,
            confidence=max(0, min(100, int(response.confidence))),
            priority=response.priority,
            reasoning=response.reasoning,
            grounded=bool(knowledge),
            degraded=False,
        )
        return result, grounding

    def _ask_oracle(self, subject: str, body: str, knowledge: list):
        try:
            return self.oracle.classify(body, {"subject": subject, "knowledge": knowledge})
        except (CollaboratorError, ValueError) as e:
            raise ClassificationDegraded(str(e)) from e

    def classify(
        self, subject: str, body: str, account_id: str | None = None, quality: str | None = None
    ) -> ClassificationResult:
        result, _ = self.classify_with_grounding(subject, body, account_id, quality)
        return result
