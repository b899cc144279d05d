"""Tests for sentiment-based escalation risk."""

from unittest.mock import MagicMock, patch

import httpx
import pytest

from replygate.ai import OllamaProvider
from replygate.ai.oracles import LLMSentimentOracle
from replygate.config import SentimentConfig
from replygate.errors import CollaboratorError
from replygate.models import Priority
from replygate.stages.sentiment import RiskContext, SentimentRiskEvaluator

CALM = RiskContext(sender="jane.doe@shopper.io")


@pytest.fixture
def oracle(make_sentiment):
    mock = MagicMock()
    mock.analyze.return_value = make_sentiment()
    return mock


@pytest.fixture
def evaluator(oracle):
    return SentimentRiskEvaluator(oracle)


@pytest.mark.parametrize("context,body,expected", [
    (CALM, "Hello there", 75),
    (RiskContext("a@shop.io", high_value=True), "Hello there", 60),
    (RiskContext("a@shop.io", thread_size=4), "Hello there", 65),
    (RiskContext("a@shop.io", thread_size=3), "Hello there", 75),
    (CALM, "I was charged twice", 65),
    (RiskContext("a@shop.io", thread_size=5, high_value=True), "refund my payment", 40),
])
def test_effective_threshold(evaluator, context, body, expected):
    assert evaluator.effective_threshold(body, context) == expected


def test_threshold_never_below_floor(oracle):
    config = SentimentConfig(high_risk_threshold=40)
    evaluator = SentimentRiskEvaluator(oracle, config)
    context = RiskContext("a@shop.io", thread_size=10, high_value=True)
    assert evaluator.effective_threshold("billing problem", context) == 30


def test_keywords_match_whole_words(evaluator):
    assert evaluator.has_urgency_keywords("This is URGENT, please")
    assert not evaluator.has_urgency_keywords("No urgency here")


def test_very_negative_confident_escalates_urgent(evaluator, oracle, make_sentiment):
    oracle.analyze.return_value = make_sentiment("NEGATIVE", 92, 95)

    risk = evaluator.evaluate("This is ridiculous", CALM)

    assert risk.escalate
    assert risk.priority == Priority.URGENT
    assert risk.reason == "negative sentiment: score 92, confidence 95, threshold 75"


def test_negative_with_lower_confidence_escalates_high(evaluator, oracle, make_sentiment):
    oracle.analyze.return_value = make_sentiment("NEGATIVE", 90, 85)

    risk = evaluator.evaluate("Not happy", CALM)

    assert risk.escalate
    assert risk.priority == Priority.HIGH


def test_negative_below_margin_does_not_escalate(evaluator, oracle, make_sentiment):
    oracle.analyze.return_value = make_sentiment("NEGATIVE", 80, 85)
    assert not evaluator.evaluate("Not happy", CALM).escalate


def test_score_equal_to_threshold_does_not_escalate(evaluator, oracle, make_sentiment):
    oracle.analyze.return_value = make_sentiment("NEGATIVE", 75, 99)
    assert not evaluator.evaluate("Not happy", CALM).escalate


def test_high_value_customer_escalates_sooner(evaluator, oracle, make_sentiment):
    oracle.analyze.return_value = make_sentiment("NEGATIVE", 65, 95)

    assert not evaluator.evaluate("Not happy", CALM).escalate
    risk = evaluator.evaluate("Not happy", RiskContext("vip@shopper.io", high_value=True))
    assert risk.escalate
    assert risk.threshold == 60


def test_only_negative_label_escalates(evaluator, oracle, make_sentiment):
    oracle.analyze.return_value = make_sentiment("MIXED", 95, 99)
    assert not evaluator.evaluate("Mixed feelings", CALM).escalate


def test_urgency_keywords_force_urgent_priority(evaluator, oracle, make_sentiment):
    oracle.analyze.return_value = make_sentiment("NEGATIVE", 90, 85)
    risk = evaluator.evaluate("I need this fixed immediately", CALM)
    assert risk.escalate
    assert risk.priority == Priority.URGENT


def test_urgency_keywords_without_negativity_only_raise_priority(evaluator):
    risk = evaluator.evaluate("Please ship asap", CALM)
    assert not risk.escalate
    assert risk.priority == Priority.URGENT
    assert risk.urgent_keywords


def test_oracle_failure_skips_sentiment(evaluator, oracle):
    oracle.analyze.side_effect = CollaboratorError("timeout")

    risk = evaluator.evaluate("This is an emergency", CALM)

    assert not risk.available
    assert not risk.escalate
    assert risk.priority == Priority.URGENT
    assert risk.threshold == 75


@patch("replygate.ai.ollama.httpx.Client")
def test_protocol_error_skips_sentiment(mock_client):
    mock_client.return_value.__enter__.return_value.post.side_effect = httpx.RemoteProtocolError(
        "server disconnected"
    )
    evaluator = SentimentRiskEvaluator(LLMSentimentOracle(OllamaProvider(max_retries=1), "m"))

    risk = evaluator.evaluate("Where is my refund?", CALM)

    assert risk.assessment is None
    assert not risk.escalate
