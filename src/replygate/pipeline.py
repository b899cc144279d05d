"""End-to-end processing of one inbound support email.

``Pipeline.process`` claims the message, links its thread, classifies it,
weighs sentiment risk, routes it and then either sends an automated reply,
queues a draft for approval or escalates to a human. Every path ends in a
terminal status; unexpected errors escalate the message instead of leaving
it in ``processing``.
"""

from __future__ import annotations

import logging
import sqlite3

from replygate.config import Config
from replygate.errors import (
    DeliveryFailure,
    HandlerFailure,
    InvalidTransition,
    SafetyRejected,
    StepResult,
)
from replygate.models import (
    ActivityLogEntry,
    Actor,
    ApprovalStatus,
    ClassificationResult,
    Disposition,
    IncomingEmail,
    Message,
    MessageStatus,
    Priority,
    ProcessedEmail,
)
from replygate.stages.agents import AgentRegistry, ProposedReply, ReplyContext
from replygate.stages.classify import Classifier
from replygate.stages.delivery import Deliverer
from replygate.stages.routing import decide
from replygate.stages.safety import SafetyGate
from replygate.stages.sentiment import RiskContext, SentimentRiskEvaluator
from replygate.stages.threads import ThreadLinker
from replygate.store import Store

logger = logging.getLogger(__name__)

ACTION_RECEIVED = "Received email"
ACTION_CLASSIFIED = "Classified email"
ACTION_ROUTED = "Routing decision"
ACTION_QUEUED = "Queued reply for approval"
ACTION_ESCALATED = "Escalated to human"
ACTION_AUTO_SENT = "Sent automated reply"
ACTION_APPROVED_SENT = "Sent approved reply"
ACTION_BLOCKED = "Blocked reply"
ACTION_DELIVERY_FAILED = "Delivery failed"
ACTION_COMMIT_FAILED = "Order action failed"
ACTION_APPROVED = "Approved reply"
ACTION_REJECTED = "Rejected reply"
ACTION_RESOLVED = "Resolved escalation"
ACTION_THREAD_FAILED = "Thread linking failed"


class Pipeline:
    def __init__(
        self,
        store: Store,
        linker: ThreadLinker,
        classifier: Classifier,
        sentiment: SentimentRiskEvaluator,
        registry: AgentRegistry,
        safety: SafetyGate,
        deliverer: Deliverer,
        config: Config | None = None,
    ):
        self.store = store
        self.linker = linker
        self.classifier = classifier
        self.sentiment = sentiment
        self.registry = registry
        self.safety = safety
        self.deliverer = deliverer
        self.config = config or Config()

    # --- Audit ------------------------------------------------------------

    def _audit(
        self,
        message: Message,
        action: str,
        type: str,
        status: str,
        details: str = "",
        actor: Actor = Actor.SYSTEM,
        **metadata,
    ) -> StepResult:
        entry = ActivityLogEntry(
            account_id=message.account_id,
            message_id=message.id,
            action=action,
            type=type,
            actor=actor,
            status=status,
            details=details,
            customer_email=message.from_address,
            metadata=metadata,
        )
        try:
            return StepResult.success("audit", id=self.store.add_activity(entry))
        except sqlite3.Error as e:
            logger.error("Failed to write activity log for message %s: %s", message.id, e)
            return StepResult.failure("audit", e)

    # --- Entry points -----------------------------------------------------

    def process(self, account_id: str, email: IncomingEmail) -> ProcessedEmail:
        """Process one inbound email exactly once per external message id."""
        message = self.store.claim_message(account_id, email)
        if message is None:
            existing = self.store.get_message_by_external_id(email.message_id)
            logger.info("Skipping duplicate message %s", email.message_id)
            return ProcessedEmail(
                message_id=existing.id,
                external_id=existing.external_id,
                status=existing.status,
                category=existing.category,
                confidence=existing.confidence,
                duplicate=True,
            )

        self._audit(message, ACTION_RECEIVED, "email_received", "completed",
                    details=f"Subject: {message.subject}")
        self.store.set_status(message.id, MessageStatus.PROCESSING)
        try:
            return self._process(message)
        except Exception as e:
            logger.exception("Processing failed for message %s", message.id)
            return self._fail_safe(message, e, MessageStatus.PROCESSING)

    def approve(
        self, item_id: int, reviewer_note: str | None = None, edited_reply: str | None = None
    ) -> ProcessedEmail:
        """Approve a queued draft and send it (optionally with the reviewer's edits)."""
        self._require_approval(item_id)
        item = self.store.decide_approval(
            item_id, ApprovalStatus.APPROVED, reviewer_note, edited_reply
        )
        message = self.store.get_message(item.message_id)
        self._audit(message, ACTION_APPROVED, "approval", "approved",
                    details=reviewer_note or "", actor=Actor.HUMAN, approval_id=item.id,
                    edited=edited_reply is not None)

        try:
            settings = self.store.get_settings(message.account_id)
            ctx = ReplyContext(
                message=message,
                classification=_stored_classification(message),
                settings=settings,
                rule=self.store.get_rule(item.rule_id) if item.rule_id else None,
            )
            proposal = ProposedReply(
                text=item.proposed_reply,
                confidence=item.confidence,
                data=item.metadata.get("data", {}),
            )
            return self._send(message, ctx, proposal, message.priority or Priority.MEDIUM,
                              actor=Actor.HUMAN)
        except Exception as e:
            logger.exception("Sending approved reply failed for message %s", message.id)
            return self._fail_safe(message, e, MessageStatus.AWAITING_APPROVAL)

    def reject(self, item_id: int, reviewer_note: str | None = None) -> ProcessedEmail:
        """Reject a queued draft; the message is escalated to a human."""
        self._require_approval(item_id)
        item = self.store.decide_approval(item_id, ApprovalStatus.REJECTED, reviewer_note)
        message = self.store.get_message(item.message_id)
        self._audit(message, ACTION_REJECTED, "approval", "rejected",
                    details=reviewer_note or "", actor=Actor.HUMAN, approval_id=item.id)
        reason = "reply rejected by reviewer"
        if reviewer_note:
            reason += f": {reviewer_note}"
        return self._escalate(message, message.priority or Priority.MEDIUM, reason)

    def resolve_escalation(self, item_id: int) -> None:
        item = self.store.resolve_escalation(item_id)
        message = self.store.get_message(item.message_id)
        self._audit(message, ACTION_RESOLVED, "escalation_resolved", "resolved",
                    actor=Actor.HUMAN, escalation_id=item.id)

    def processing_stats(self, account_id: str, days: int = 7) -> dict:
        return processing_stats(self.store, account_id, days)

    # --- Internals --------------------------------------------------------

    def _require_approval(self, item_id: int) -> None:
        if self.store.get_approval(item_id) is None:
            raise InvalidTransition(f"Approval item {item_id} does not exist")

    def _process(self, message: Message) -> ProcessedEmail:
        account_id = message.account_id

        link = self.linker.link(
            account_id, message.id, message.subject, message.from_address, message.to_address
        )
        if not link.ok:
            self._audit(message, ACTION_THREAD_FAILED, "thread", "failed", details=link.error)
        first_in_thread = self.linker.is_first_message_in_thread(message.id)
        thread_size = self.linker.thread_size(message.id)

        settings = self.store.get_settings(account_id)
        classification, grounding = self.classifier.classify_with_grounding(
            message.subject, message.body, account_id, quality=settings.grounding_quality,
        )
        grounded_sources = grounding.sources if grounding else []
        self.store.update_classification(
            message.id,
            classification.category,
            classification.confidence,
            classification.priority,
            metadata={
                "reasoning": classification.reasoning,
                "grounded": classification.grounded,
                "degraded": classification.degraded,
                "training_data": bool(grounding and grounding.total_sources),
                "grounding_sources": [s.source for s in grounded_sources],
                "grounding_threshold": grounding.threshold if grounding else None,
                "thread_size": thread_size,
            },
        )
        self._audit(
            message, ACTION_CLASSIFIED, "classification",
            "degraded" if classification.degraded else "completed",
            details=classification.reasoning, actor=Actor.AI,
            category=classification.category.value, confidence=classification.confidence,
        )

        high_value = message.from_address.lower() in {
            c.lower() for c in settings.high_value_customers
        }
        risk = self.sentiment.evaluate(
            message.body, RiskContext(message.from_address, thread_size, high_value)
        )
        assessment = risk.assessment
        self.store.merge_metadata(message.id, {
            "sentiment": {
                "label": assessment.label,
                "scores": assessment.scores,
                "confidence": assessment.confidence,
            } if assessment else None,
            "sentiment_threshold": risk.threshold,
            "urgent_keywords": risk.urgent_keywords,
        })

        decision = decide(
            classification,
            risk,
            self.store.list_rules(account_id),
            approval_required=settings.approval_required,
            config=self.config.routing,
        )
        logger.info(
            "Message %s routed to %s (%s)", message.id, decision.disposition.value, decision.reason
        )
        self._audit(message, ACTION_ROUTED, "routing", decision.disposition.value,
                    details=decision.reason, rule_id=decision.rule_id,
                    priority=decision.priority.value)
        if decision.priority != classification.priority:
            self.store.update_classification(
                message.id, classification.category, classification.confidence, decision.priority,
            )
        message = self.store.get_message(message.id)

        if decision.disposition == Disposition.ESCALATE:
            return self._escalate(message, decision.priority, decision.reason)

        rule = self.store.get_rule(decision.rule_id)
        self.store.record_rule_trigger(rule.id)
        ctx = ReplyContext(
            message=message,
            classification=classification,
            settings=settings,
            rule=rule,
            grounding=grounding,
            sentiment=assessment,
            first_in_thread=first_in_thread,
            urgent=risk.urgent_keywords,
        )
        proposal = self.registry.handler_for(classification.category).propose(ctx)

        if decision.disposition == Disposition.APPROVE or proposal.degraded:
            return self._queue_for_approval(message, rule.id, proposal, rule.name)

        return self._send(message, ctx, proposal, decision.priority, actor=Actor.AI,
                          rule_name=rule.name)

    def _queue_for_approval(
        self, message: Message, rule_id: int, proposal: ProposedReply, rule_name: str
    ) -> ProcessedEmail:
        item = self.store.create_approval(
            message.account_id, message.id, rule_id, proposal.text, proposal.confidence,
            metadata={"data": proposal.data, "degraded": proposal.degraded},
        )
        self.store.set_status(message.id, MessageStatus.AWAITING_APPROVAL)
        self._audit(message, ACTION_QUEUED, "approval", "pending",
                    details=f"Draft reply awaiting review (confidence {proposal.confidence})",
                    actor=Actor.AI, approval_id=item.id, degraded=proposal.degraded)
        return ProcessedEmail(
            message_id=message.id,
            external_id=message.external_id,
            status=MessageStatus.AWAITING_APPROVAL,
            disposition=Disposition.APPROVE,
            category=message.category,
            confidence=message.confidence,
            rule_used=rule_name,
            reason="approval required" if not proposal.degraded else "degraded draft",
        )

    def _send(
        self,
        message: Message,
        ctx: ReplyContext,
        proposal: ProposedReply,
        priority: Priority,
        actor: Actor,
        rule_name: str | None = None,
    ) -> ProcessedEmail:
        """Safety gate, order side effects, then a single delivery attempt."""
        category = message.category.value if message.category else "unknown"
        summary = f"Category: {category}; Subject: {message.subject}"
        try:
            self.safety.enforce(
                proposal.text, message.from_address, ctx.settings, {"summary": summary}
            )
        except SafetyRejected as e:
            self._audit(message, ACTION_BLOCKED, "safety", "blocked",
                        details=e.reason, layer=e.layer)
            return self._escalate(
                message, priority, f"safety check failed ({e.layer}): {e.reason}"
            )

        handler = self.registry.handler_for(message.category)
        try:
            handler.commit(ctx, proposal)
        except HandlerFailure as e:
            self._audit(message, ACTION_COMMIT_FAILED, "action", "failed", details=str(e))
            return self._escalate(message, priority, f"order action failed: {e}")

        try:
            sent_id = self.deliverer.deliver(
                message.account_id, message.from_address, message.subject, proposal.text
            )
        except DeliveryFailure as e:
            self._audit(message, ACTION_DELIVERY_FAILED, "delivery", "failed", details=str(e))
            return self._escalate(message, priority, f"delivery failed: {e}")

        action = ACTION_AUTO_SENT if actor == Actor.AI else ACTION_APPROVED_SENT
        self._audit(message, action, "email_sent", "completed",
                    details=f"Reply sent to {message.from_address}", actor=actor,
                    sent_id=sent_id, confidence=proposal.confidence, rule=rule_name)
        self.store.set_status(message.id, MessageStatus.RESOLVED)
        return ProcessedEmail(
            message_id=message.id,
            external_id=message.external_id,
            status=MessageStatus.RESOLVED,
            disposition=Disposition.AUTOMATE if actor == Actor.AI else Disposition.APPROVE,
            category=message.category,
            confidence=message.confidence,
            auto_response_sent=True,
            rule_used=rule_name,
            reason="reply sent",
        )

    def _escalate(self, message: Message, priority: Priority, reason: str) -> ProcessedEmail:
        self.store.create_escalation(message.account_id, message.id, priority, reason)
        self.store.set_status(message.id, MessageStatus.ESCALATED, escalation_reason=reason)
        self._audit(message, ACTION_ESCALATED, "escalation", "pending",
                    details=reason, priority=Priority(priority).value)
        return ProcessedEmail(
            message_id=message.id,
            external_id=message.external_id,
            status=MessageStatus.ESCALATED,
            disposition=Disposition.ESCALATE,
            category=message.category,
            confidence=message.confidence,
            reason=reason,
        )

    def _fail_safe(
        self, message: Message, error: Exception, interrupted: MessageStatus
    ) -> ProcessedEmail:
        """Escalate a message an unexpected error left in the ``interrupted`` status."""
        current = self.store.get_message(message.id)
        if current.status == interrupted:
            return self._escalate(current, current.priority or Priority.HIGH,
                                  f"internal error: {error}")
        return ProcessedEmail(
            message_id=current.id,
            external_id=current.external_id,
            status=current.status,
            category=current.category,
            confidence=current.confidence,
            reason=f"internal error: {error}",
        )


def processing_stats(store: Store, account_id: str, days: int = 7) -> dict:
    """Automated vs. human-sent reply counts and the automation rate.

    The window starts at midnight UTC ``days`` days ago.
    """
    activities = store.activity_since(account_id, days)
    auto = sum(1 for a in activities if a.action == ACTION_AUTO_SENT)
    manual = sum(1 for a in activities if a.actor == Actor.HUMAN and a.type == "email_sent")
    escalations = sum(1 for a in activities if a.type == "escalation")
    total = auto + manual
    return {
        "days": days,
        "total_processed": total,
        "auto_responses": auto,
        "manual_responses": manual,
        "escalations": escalations,
        "automation_rate": round(auto / total * 100) if total else 0,
    }


def _stored_classification(message: Message) -> ClassificationResult:
    return ClassificationResult(
        category=message.category,
        confidence=message.confidence or 0,
        priority=message.priority or Priority.MEDIUM,
        reasoning=message.metadata.get("reasoning", ""),
        grounded=bool(message.metadata.get("grounded")),
        degraded=bool(message.metadata.get("degraded")),
    )


def build_pipeline(config: Config, store: Store, channel_factory=None) -> Pipeline:
    """Wire the production collaborators from config.

    ``channel_factory(account_id)`` defaults to the account's Gmail mailbox.
    """
    from replygate.ai import get_embedding_provider, get_provider
    from replygate.ai.oracles import (
        LLMClassificationOracle,
        LLMModerationOracle,
        LLMReplyWriter,
        LLMSentimentOracle,
    )
    from replygate.commerce import CommerceClient, FulfillmentClient
    from replygate.stages.agents import build_registry
    from replygate.stages.delivery import ChannelDirectory
    from replygate.stages.grounding import GroundingEngine

    provider, model = get_provider(
        f"{config.ai.provider}:{config.ai.model}", config=config.ai.to_provider_dict()
    )
    grounding = GroundingEngine(
        store,
        get_embedding_provider(config.ai.to_provider_dict()),
        config.ai.embedding_model,
        config.grounding,
    )
    sentiment_oracle = LLMSentimentOracle(provider, model, config.ai.max_body_chars)

    if channel_factory is None:
        from replygate.gmail.client import GmailChannel

        def channel_factory(account_id: str):
            return GmailChannel.for_account(config.gmail, account_id)

    return Pipeline(
        store=store,
        linker=ThreadLinker(store),
        classifier=Classifier(
            LLMClassificationOracle(provider, model, config.ai.max_body_chars), grounding
        ),
        sentiment=SentimentRiskEvaluator(sentiment_oracle, config.sentiment),
        registry=build_registry(
            LLMReplyWriter(provider, model),
            CommerceClient.from_config(config.commerce),
            FulfillmentClient.from_config(config.commerce),
        ),
        safety=SafetyGate(LLMModerationOracle(provider, model), sentiment_oracle),
        deliverer=Deliverer(ChannelDirectory(channel_factory)),
        config=config,
    )
