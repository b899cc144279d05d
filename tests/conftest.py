"""Shared test fixtures."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from replygate.ai.schemas import ClassificationResponse, ModerationResponse, ReplyResponse
from replygate.commerce import OrderInfo
from replygate.database import get_db, init_db
from replygate.models import Category, IncomingEmail, Priority, SentimentAssessment
from replygate.pipeline import Pipeline
from replygate.stages.agents import build_registry
from replygate.stages.classify import Classifier
from replygate.stages.delivery import ChannelDirectory, Deliverer
from replygate.stages.safety import SafetyGate
from replygate.stages.sentiment import SentimentRiskEvaluator
from replygate.stages.threads import ThreadLinker
from replygate.store import Store


ACCOUNT = "acct-1"
CUSTOMER = "jane.doe@shopper.io"
SUPPORT = "support@acme-store.io"


@pytest.fixture
def db():
    """In-memory SQLite database with schema initialized."""
    conn = get_db(db_path=":memory:")
    init_db(conn)
    yield conn
    conn.close()


@pytest.fixture
def store(db):
    return Store(db)


@pytest.fixture
def make_email():
    """Factory for inbound emails from a regular customer to the support mailbox."""

    def _make(
        message_id: str = "msg-001",
        subject: str = "Where is my order #12345?",
        body: str = "Hi, I ordered a week ago. Where is my order #12345?",
        from_address: str = CUSTOMER,
        to_address: str = SUPPORT,
    ) -> IncomingEmail:
        return IncomingEmail(
            message_id=message_id,
            from_address=from_address,
            to_address=to_address,
            subject=subject,
            body=body,
            received_at="2024-05-01T10:00:00+00:00",
        )

    return _make


def sentiment(label: str = "NEUTRAL", negative: int = 5, confidence: int = 90, positive: int = 5):
    return SentimentAssessment(
        label=label,
        scores={"negative": negative, "positive": positive, "neutral": 100 - negative - positive},
        confidence=confidence,
    )


def sample_order(**overrides) -> OrderInfo:
    fields = dict(
        order_number="12345",
        status="Shipped",
        total=Decimal("59.90"),
        tracking_number="1Z999AA10123456784",
        tracking_url="https://track.example-carrier.net/1Z999AA10123456784",
        carrier="UPS",
        estimated_delivery="2024-05-03",
        customer_email=CUSTOMER,
        shipped=True,
    )
    fields.update(overrides)
    return OrderInfo(**fields)


class Harness:
    """A pipeline wired to MagicMock collaborators with benign defaults."""

    def __init__(self, store: Store):
        self.store = store
        self.classifier_oracle = MagicMock()
        self.sentiment_oracle = MagicMock()
        self.outgoing_sentiment_oracle = MagicMock()
        self.moderation_oracle = MagicMock()
        self.writer = MagicMock()
        self.commerce = MagicMock()
        self.fulfillment = MagicMock()
        self.channel = MagicMock()

        self.classify_as(Category.ORDER_STATUS, 88, Priority.MEDIUM)
        self.sentiment_oracle.analyze.return_value = sentiment()
        self.outgoing_sentiment_oracle.analyze.return_value = sentiment("POSITIVE", 0, 90, 70)
        self.moderation_oracle.validate.return_value = ModerationResponse(approved=True)
        self.writer.write.return_value = ReplyResponse(
            body="Thanks for your question, here is what we can do.", confidence=85,
        )
        self.commerce.lookup_order.return_value = sample_order()
        self.commerce.is_repeat_customer.return_value = False
        self.channel.send.return_value = "gmail-sent-1"

        self.pipeline = Pipeline(
            store=store,
            linker=ThreadLinker(store),
            classifier=Classifier(self.classifier_oracle),
            sentiment=SentimentRiskEvaluator(self.sentiment_oracle),
            registry=build_registry(self.writer, self.commerce, self.fulfillment),
            safety=SafetyGate(self.moderation_oracle, self.outgoing_sentiment_oracle),
            deliverer=Deliverer(ChannelDirectory(lambda account_id: self.channel)),
        )

    def classify_as(self, category, confidence, priority=Priority.MEDIUM, reasoning="test"):
        self.classifier_oracle.classify.return_value = ClassificationResponse(
            category=Category(category).value,
            confidence=confidence,
            priority=Priority(priority).value,
            reasoning=reasoning,
        )

    def feel(self, label, negative, confidence, positive=0):
        self.sentiment_oracle.analyze.return_value = sentiment(label, negative, confidence, positive)

    def automate(self, category=Category.ORDER_STATUS, **rule_kwargs) -> int:
        """Add an active rule and switch approval off for the account."""
        settings = self.store.get_settings(ACCOUNT)
        settings.approval_required = False
        self.store.save_settings(settings)
        return self.store.add_rule(ACCOUNT, f"{Category(category).value} rule", category, **rule_kwargs)


@pytest.fixture
def harness(store):
    return Harness(store)


@pytest.fixture
def make_sentiment():
    return sentiment


@pytest.fixture
def make_order():
    return sample_order


@pytest.fixture
def make_harness():
    return Harness
