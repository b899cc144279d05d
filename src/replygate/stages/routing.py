"""Routing decision: automate, queue for approval, or escalate.

``decide`` is a pure function of its inputs so every branch can be tested
without storage or oracles.
"""

from __future__ import annotations

from replygate.config import RoutingConfig
from replygate.models import (
    AutomationRule,
    Category,
    ClassificationResult,
    Disposition,
    Priority,
    RoutingDecision,
    SentimentRisk,
)

REASON_LOW_CONFIDENCE = "low confidence classification"
REASON_ESCALATION_CATEGORY = "explicit escalation category"
REASON_NO_RULE = "no matching rule"


def find_matching_rule(
    category: Category,
    confidence: int,
    rules: list[AutomationRule],
    generic_rule_max_confidence: int = 70,
) -> AutomationRule | None:
    """Exact-category active rule, else the active general rule when confidence is low."""
    active = [r for r in rules if r.is_active]
    for rule in active:
        if rule.category == category:
            return rule
    if confidence < generic_rule_max_confidence:
        for rule in active:
            if rule.category == Category.GENERAL:
                return rule
    return None


def decide(
    classification: ClassificationResult,
    risk: SentimentRisk | None,
    rules: list[AutomationRule],
    approval_required: bool = True,
    config: RoutingConfig | None = None,
) -> RoutingDecision:
    config = config or RoutingConfig()

    if risk is not None and risk.escalate:
        return RoutingDecision(
            disposition=Disposition.ESCALATE,
            priority=risk.priority or Priority.HIGH,
            reason=risk.reason,
        )

    priority = classification.priority
    if risk is not None and risk.urgent_keywords:
        priority = Priority.URGENT

    if classification.confidence < config.min_confidence:
        return RoutingDecision(Disposition.ESCALATE, priority, REASON_LOW_CONFIDENCE)

    if classification.category == Category.ESCALATION:
        return RoutingDecision(Disposition.ESCALATE, priority, REASON_ESCALATION_CATEGORY)

    rule = find_matching_rule(
        classification.category,
        classification.confidence,
        rules,
        generic_rule_max_confidence=config.generic_rule_max_confidence,
    )
    if rule is None:
        return RoutingDecision(Disposition.ESCALATE, priority, REASON_NO_RULE)

    if approval_required:
        return RoutingDecision(
            Disposition.APPROVE, priority, f"rule '{rule.name}' requires approval", rule.id,
        )
    return RoutingDecision(
        Disposition.AUTOMATE, priority, f"rule '{rule.name}' automated", rule.id,
    )
