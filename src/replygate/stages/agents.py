"""Category handlers that draft replies and perform order side effects.

Each handler proposes a reply without touching the merchant's store; any
side effect (shipment hold, cancellation, address update) runs in
``commit`` right before delivery, so a reply that is rejected or waits for
approval never changes an order.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

from replygate.ai.oracles import format_knowledge
from replygate.ai.prompts import (
    AVAILABLE_ACTIONS,
    EMOTIONAL_GUIDANCE,
    EMPATHY_GUIDANCE,
    ISSUE_DESCRIPTIONS,
)
from replygate.commerce import CommerceClient, FulfillmentClient, OrderInfo
from replygate.errors import CollaboratorError, HandlerFailure
from replygate.models import (
    AccountSettings,
    AutomationRule,
    Category,
    ClassificationResult,
    Message,
    SentimentAssessment,
)
from replygate.stages.grounding import GroundingResult

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 15
MIN_CONFIDENCE = 10
MAX_CONFIDENCE = 95
UNGROUNDED_PRODUCT_CONFIDENCE = 40

AI_DISCLOSURE = (
    "This email was sent by a robot. We use AI to solve your problems as quickly "
    "as possible. Reply 'Human' anytime and a human will jump in."
)

FALLBACK_BODY = (
    "Thank you for contacting us. Your inquiry requires specialized assistance that "
    "our AI agent cannot provide at this time.\n\n"
    "A human team member will review your message and respond within 24 hours to "
    "ensure you receive the most accurate and helpful information.\n\n"
    "We appreciate your patience."
)

_ORDER_PATTERNS = [
    re.compile(r"#(\d{4,})"),
    re.compile(r"order\s*(?:number|no\.?)?\s*#?\s*(\d{4,})", re.IGNORECASE),
    re.compile(r"ord[er]*-(\d{4,})", re.IGNORECASE),
    re.compile(r"\b(\d{5,})\b"),
]

_ADDRESS_RE = re.compile(
    r"(?:new (?:shipping )?address(?: is)?|ship (?:it|the order) to|"
    r"change (?:my |the )?(?:shipping )?address to|address should be)\s*:?\s*(.+)",
    re.IGNORECASE,
)

DISPATCHABLE_CATEGORIES = frozenset(c for c in Category if c != Category.ESCALATION)


def extract_order_number(subject: str, body: str) -> str | None:
    """First order number found in subject then body, or None."""
    content = f"{subject or ''} {body or ''}"
    for pattern in _ORDER_PATTERNS:
        match = pattern.search(content)
        if match:
            return match.group(1)
    return None


def extract_new_address(body: str) -> str | None:
    match = _ADDRESS_RE.search(body or "")
    if not match:
        return None
    address = match.group(1).strip().rstrip(".")
    return address or None


def adjust_confidence(base: int, sentiment: SentimentAssessment | None) -> int:
    """Lower confidence for upset customers, raise it slightly for happy ones."""
    adjustment = 0
    if sentiment is not None:
        if sentiment.label == "NEGATIVE":
            if sentiment.negative > 75 and sentiment.confidence > 90:
                adjustment = -25
            elif sentiment.negative > 60 and sentiment.confidence > 80:
                adjustment = -15
            elif sentiment.negative > 45 and sentiment.confidence > 70:
                adjustment = -8
        elif sentiment.label == "POSITIVE" and sentiment.confidence > 80:
            adjustment = 5
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, base + adjustment))


def customer_emotion(sentiment: SentimentAssessment | None, urgent: bool = False) -> str:
    if sentiment is None or sentiment.label != "NEGATIVE":
        return "desperate" if urgent else "calm"
    if urgent:
        return "desperate"
    if sentiment.negative > 75:
        return "angry"
    if sentiment.negative > 60:
        return "frustrated"
    if sentiment.negative > 45:
        return "disappointed"
    return "calm"


def format_money(amount: Decimal) -> str:
    return f"${amount.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)}"


def compute_refund(rule: AutomationRule, order_total: Decimal | None) -> Decimal | None:
    """Refund amount from the rule, rounded to cents.

    Percentage rules store a fraction (0.2 for 20%) and need the order total;
    returns None when it is unknown.
    """
    if rule.refund_type == "fixed_amount":
        if rule.refund_value is None:
            raise HandlerFailure(f"Rule {rule.name!r} has no refund amount")
        amount = Decimal(str(rule.refund_value))
    elif rule.refund_type == "percentage":
        if rule.refund_value is None:
            raise HandlerFailure(f"Rule {rule.name!r} has no refund percentage")
        if order_total is None:
            return None
        amount = order_total * Decimal(str(rule.refund_value))
        if rule.refund_cap is not None:
            amount = min(amount, Decimal(str(rule.refund_cap)))
    else:
        raise HandlerFailure(f"Rule {rule.name!r} has no refund type")
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


@dataclass
class ReplyContext:
    """Everything a handler may read to draft a reply."""

    message: Message
    classification: ClassificationResult
    settings: AccountSettings
    rule: AutomationRule | None = None
    grounding: GroundingResult | None = None
    sentiment: SentimentAssessment | None = None
    first_in_thread: bool = True
    urgent: bool = False

    @property
    def account_id(self) -> str:
        return self.message.account_id


@dataclass
class ProposedReply:
    text: str
    confidence: int
    data: dict = field(default_factory=dict)
    degraded: bool = False


class ReplyHandler(Protocol):
    def propose(self, ctx: ReplyContext) -> ProposedReply:
        ...

    def commit(self, ctx: ReplyContext, proposal: ProposedReply) -> None:
        ...


def finish_reply(body: str, settings: AccountSettings, greeting: str = "") -> str:
    """Add the optional loyal-customer greeting, the signature and the AI disclosure."""
    parts = []
    if greeting:
        parts.append(greeting)
    parts.append(body.strip())
    parts.append(f"Best regards,\n{settings.signature}")
    parts.append(AI_DISCLOSURE)
    return "\n\n".join(parts)


def fallback_reply(ctx: ReplyContext, reason: str) -> ProposedReply:
    return ProposedReply(
        text=finish_reply(FALLBACK_BODY, ctx.settings),
        confidence=FALLBACK_CONFIDENCE,
        data={"fallback_reason": reason},
        degraded=True,
    )


class BaseHandler:
    """Shared propose() flow: draft, adjust confidence, finish, or fall back."""

    name = "base"

    def __init__(self, commerce: CommerceClient | None = None):
        self.commerce = commerce

    def draft(self, ctx: ReplyContext) -> tuple[str, int, dict]:
        """Return (body, base_confidence, data). Raise HandlerFailure when unable."""
        raise NotImplementedError

    def loyal_greeting(self, ctx: ReplyContext) -> str:
        if not (ctx.settings.loyal_customer_greeting and ctx.first_in_thread and self.commerce):
            return ""
        try:
            repeat = self.commerce.is_repeat_customer(ctx.message.from_address, ctx.account_id)
        except CollaboratorError as e:
            logger.warning("Repeat-customer check failed: %s", e)
            return ""
        if not repeat:
            return ""
        return (
            f"Thank you for being a loyal {ctx.settings.company_name} customer, "
            "we appreciate your business!"
        )

    def propose(self, ctx: ReplyContext) -> ProposedReply:
        try:
            body, base_confidence, data = self.draft(ctx)
        except (HandlerFailure, CollaboratorError, ValueError) as e:
            logger.warning("%s handler fell back for message %s: %s", self.name, ctx.message.id, e)
            return fallback_reply(ctx, str(e))

        confidence = adjust_confidence(base_confidence, ctx.sentiment)
        text = finish_reply(body, ctx.settings, self.loyal_greeting(ctx))
        data = {"handler": self.name, **data}
        return ProposedReply(text=text, confidence=confidence, data=data)

    def commit(self, ctx: ReplyContext, proposal: ProposedReply) -> None:
        return None

    def _lookup(self, ctx: ReplyContext, order_number: str) -> OrderInfo:
        if self.commerce is None:
            raise HandlerFailure("No commerce platform connected")
        order = self.commerce.lookup_order(order_number, ctx.account_id)
        if order is None:
            raise HandlerFailure(f"Order {order_number} not found")
        return order


def _ask_for_order_number(what: str) -> str:
    return (
        f"Thanks for reaching out. So we can {what}, could you reply with your "
        "order number? You can find it in your order confirmation email."
    )


class OrderStatusHandler(BaseHandler):
    name = "order_status"

    def draft(self, ctx):
        order_number = extract_order_number(ctx.message.subject, ctx.message.body)
        if order_number is None:
            return _ask_for_order_number("look up your order"), ctx.classification.confidence, {}

        order = self._lookup(ctx, order_number)
        lines = [
            f"Thanks for checking in on order #{order.order_number}. Here is the latest update:",
            "",
            f"Status: {order.status}",
            f"Tracking number: {order.tracking_number or 'not available yet'}",
        ]
        if order.carrier:
            lines.append(f"Carrier: {order.carrier}")
        if order.tracking_url:
            lines.append(f"Track your package: {order.tracking_url}")
        lines.append(f"Estimated delivery: {order.estimated_delivery or 'to be confirmed'}")
        data = {
            "order_number": order.order_number,
            "order_status": order.status,
            "tracking_number": order.tracking_number,
            "tracking_url": order.tracking_url,
            "estimated_delivery": order.estimated_delivery,
        }
        return "\n".join(lines), ctx.classification.confidence, data


class OrderCancellationHandler(BaseHandler):
    """Cancels an unshipped order: hold the shipment, then cancel.

    If cancelling fails after the hold succeeded, the hold is released.
    """

    name = "order_cancellation"

    def __init__(self, commerce: CommerceClient | None, fulfillment: FulfillmentClient | None):
        super().__init__(commerce)
        self.fulfillment = fulfillment

    def draft(self, ctx):
        order_number = extract_order_number(ctx.message.subject, ctx.message.body)
        if order_number is None:
            return _ask_for_order_number("cancel your order"), ctx.classification.confidence, {}

        order = self._lookup(ctx, order_number)
        if order.shipped:
            body = (
                f"Order #{order.order_number} has already shipped, so it can no longer be "
                "cancelled. Once it arrives you can start a return and we will refund you "
                "after it is received."
            )
            return body, ctx.classification.confidence, {
                "order_number": order.order_number, "action": "none",
            }

        body = (
            f"We can cancel order #{order.order_number} before it ships. Once the "
            f"cancellation is processed, a refund of {format_money(order.total)} will go "
            "back to your original payment method."
        )
        return body, ctx.classification.confidence, {
            "order_number": order.order_number,
            "action": "cancel",
            "refund_amount": str(order.total),
        }

    def commit(self, ctx, proposal):
        if proposal.data.get("action") != "cancel":
            return
        if self.fulfillment is None:
            raise HandlerFailure("No fulfillment service connected")
        order_number = proposal.data["order_number"]
        try:
            self.fulfillment.hold_shipment(order_number, ctx.account_id)
        except CollaboratorError as e:
            raise HandlerFailure(f"Could not hold shipment for {order_number}: {e}") from e
        try:
            self.fulfillment.cancel_order(order_number, ctx.account_id)
        except CollaboratorError as e:
            self._compensate(order_number, ctx.account_id)
            raise HandlerFailure(f"Could not cancel order {order_number}: {e}") from e
        logger.info("Cancelled order %s for account %s", order_number, ctx.account_id)

    def _compensate(self, order_number: str, account_id: str) -> None:
        try:
            self.fulfillment.release_hold(order_number, account_id)
        except CollaboratorError as e:
            logger.error("Failed to release hold on %s after a failed step: %s", order_number, e)


class AddressChangeHandler(OrderCancellationHandler):
    """Updates the shipping address: hold, update, release."""

    name = "address_change"

    def draft(self, ctx):
        order_number = extract_order_number(ctx.message.subject, ctx.message.body)
        address = extract_new_address(ctx.message.body)
        if order_number is None or address is None:
            body = (
                "Thanks for letting us know. To update your shipping address, please reply "
                "with your order number and the complete new address."
            )
            return body, ctx.classification.confidence, {}

        order = self._lookup(ctx, order_number)
        if order.shipped:
            body = (
                f"Order #{order.order_number} has already shipped, so its address can no "
                "longer be changed. The carrier's tracking page may offer delivery options."
            )
            return body, ctx.classification.confidence, {
                "order_number": order.order_number, "action": "none",
            }

        body = (
            f"We can update the shipping address for order #{order.order_number} to:\n\n"
            f"{address}\n\nIf anything in that address looks wrong, just reply and let us know."
        )
        return body, ctx.classification.confidence, {
            "order_number": order.order_number,
            "action": "update_address",
            "new_address": address,
        }

    def commit(self, ctx, proposal):
        if proposal.data.get("action") != "update_address":
            return
        if self.fulfillment is None:
            raise HandlerFailure("No fulfillment service connected")
        order_number = proposal.data["order_number"]
        try:
            self.fulfillment.hold_shipment(order_number, ctx.account_id)
        except CollaboratorError as e:
            raise HandlerFailure(f"Could not hold shipment for {order_number}: {e}") from e
        try:
            self.fulfillment.update_address(order_number, ctx.account_id, proposal.data["new_address"])
        except CollaboratorError as e:
            self._compensate(order_number, ctx.account_id)
            raise HandlerFailure(f"Could not update address for {order_number}: {e}") from e
        self._compensate(order_number, ctx.account_id)
        logger.info("Updated address of order %s for account %s", order_number, ctx.account_id)


class PromoRefundHandler(BaseHandler):
    name = "promo_refund"

    def draft(self, ctx):
        rule = ctx.rule
        if rule is None or not rule.refund_type:
            raise HandlerFailure("No refund parameters configured")

        order_number = extract_order_number(ctx.message.subject, ctx.message.body)
        order = None
        if order_number and rule.refund_type == "percentage":
            order = self._lookup(ctx, order_number)

        amount = compute_refund(rule, order.total if order else None)
        if amount is None:
            percent = (Decimal(str(rule.refund_value)) * 100).quantize(Decimal("1"))
            offer = f"a {percent}% refund"
            if rule.refund_cap is not None:
                offer += f" (up to {format_money(Decimal(str(rule.refund_cap)))})"
        else:
            offer = f"a refund of {format_money(amount)}"

        target = f" for order #{order_number}" if order_number else ""
        body = (
            f"Sorry about the trouble with your promotion. We can offer you {offer}{target}, "
            "returned to your original payment method once processed."
        )
        data = {
            "refund_type": rule.refund_type,
            "refund_amount": str(amount) if amount is not None else None,
            "order_number": order_number,
        }
        return body, ctx.classification.confidence, data


class ComposedReplyHandler(BaseHandler):
    """Reply written by the reply-writing oracle from issue, actions and knowledge."""

    def __init__(self, category: Category, writer, commerce: CommerceClient | None = None):
        super().__init__(commerce)
        self.category = Category(category)
        self.name = self.category.value
        self.writer = writer

    def draft(self, ctx):
        sources = []
        if ctx.grounding is not None and ctx.grounding.has_grounded_knowledge:
            sources = ctx.grounding.sources
        emotion = customer_emotion(ctx.sentiment, ctx.urgent)
        empathy = max(1, min(5, ctx.settings.empathy_level))
        order_number = extract_order_number(ctx.message.subject, ctx.message.body)
        key = self.category.value

        response = self.writer.write(
            company_name=ctx.settings.company_name,
            customer_emotion=emotion,
            emotional_guidance=EMOTIONAL_GUIDANCE[emotion],
            empathy_level=empathy,
            empathy_guidance=EMPATHY_GUIDANCE[empathy],
            issue=ISSUE_DESCRIPTIONS.get(key, ISSUE_DESCRIPTIONS["general"]),
            actions=", ".join(AVAILABLE_ACTIONS.get(key, AVAILABLE_ACTIONS["general"])),
            order_number=order_number or "not provided",
            knowledge=format_knowledge(sources),
            greeting_instruction="Open with a short, friendly greeting.",
            subject=ctx.message.subject,
            body=ctx.message.body,
        )
        confidence = min(ctx.classification.confidence, response.confidence)
        if self.category == Category.PRODUCT_QUESTION and not sources:
            confidence = min(confidence, UNGROUNDED_PRODUCT_CONFIDENCE)
        data = {"grounded_sources": [s.source for s in sources]}
        return response.body, confidence, data


class AgentRegistry:
    """Static category-to-handler map, validated once at construction."""

    def __init__(self, handlers: dict[Category, ReplyHandler]):
        missing = DISPATCHABLE_CATEGORIES - set(handlers)
        if missing:
            names = ", ".join(sorted(c.value for c in missing))
            raise ValueError(f"No reply handler registered for: {names}")
        self._handlers = dict(handlers)

    def handler_for(self, category: Category) -> ReplyHandler:
        try:
            return self._handlers[Category(category)]
        except KeyError:
            raise HandlerFailure(f"No handler for category {category}") from None

    def categories(self) -> list[Category]:
        return sorted(self._handlers, key=lambda c: c.value)


def build_registry(
    writer,
    commerce: CommerceClient | None = None,
    fulfillment: FulfillmentClient | None = None,
) -> AgentRegistry:
    handlers: dict[Category, ReplyHandler] = {
        Category.ORDER_STATUS: OrderStatusHandler(commerce),
        Category.ORDER_CANCELLATION: OrderCancellationHandler(commerce, fulfillment),
        Category.ADDRESS_CHANGE: AddressChangeHandler(commerce, fulfillment),
        Category.PROMO_REFUND: PromoRefundHandler(commerce),
    }
    for category in (
        Category.RETURN_REQUEST,
        Category.SUBSCRIPTION_CHANGE,
        Category.SUBSCRIPTION_CANCEL,
        Category.PAYMENT_ISSUE,
        Category.PRODUCT_QUESTION,
        Category.GENERAL,
    ):
        handlers[category] = ComposedReplyHandler(category, writer, commerce)
    return AgentRegistry(handlers)
