"""LLM-backed oracles: classification, sentiment, moderation and reply writing.

Each oracle wraps an ``AIProvider`` and validates the raw JSON with the
schemas in ``replygate.ai.schemas``. Provider errors and validation errors
propagate; the calling stage decides how to degrade.
"""

from __future__ import annotations

from replygate.ai.base import AIProvider
from replygate.ai.prompts import (
    CLASSIFICATION_PROMPT,
    GROUNDED_CLASSIFICATION_PROMPT,
    MODERATION_PROMPT,
    REPLY_PROMPT,
    SENTIMENT_PROMPT,
)
from replygate.ai.schemas import (
    ClassificationResponse,
    ModerationResponse,
    ReplyResponse,
    SentimentResponse,
)
from replygate.models import SentimentAssessment


def format_knowledge(sources: list) -> str:
    """Render grounded sources as a numbered list for prompts."""
    if not sources:
        return "(none)"
    lines = []
    for i, source in enumerate(sources, 1):
        lines.append(f"{i}. [{source.source}] (similarity {source.similarity:.2f}) {source.chunk}")
    return "\n".join(lines)


class LLMClassificationOracle:
    """classify(text, context) -> ClassificationResponse."""

    def __init__(self, provider: AIProvider, model: str, max_body_chars: int = 4000):
        self.provider = provider
        self.model = model
        self.max_body_chars = max_body_chars

    def classify(self, text: str, context: dict | None = None) -> ClassificationResponse:
        context = context or {}
        knowledge = context.get("knowledge") or []
        body = text[: self.max_body_chars]
        if knowledge:
            prompt = GROUNDED_CLASSIFICATION_PROMPT.format(
                subject=context.get("subject", ""),
                body=body,
                knowledge=format_knowledge(knowledge),
            )
        else:
            prompt = CLASSIFICATION_PROMPT.format(subject=context.get("subject", ""), body=body)

        result = self.provider.complete(
            prompt=prompt,
            model=self.model,
            system="You are a customer-support triage analyst. Respond with JSON only.",
            response_format="json",
        )
        return ClassificationResponse.model_validate(result)


class LLMSentimentOracle:
    """analyze(text) -> SentimentAssessment."""

    def __init__(self, provider: AIProvider, model: str, max_chars: int = 4000):
        self.provider = provider
        self.model = model
        self.max_chars = max_chars

    def analyze(self, text: str) -> SentimentAssessment:
        result = self.provider.complete(
            prompt=SENTIMENT_PROMPT.format(text=text[: self.max_chars]),
            model=self.model,
            system="You are a sentiment analysis engine. Respond with JSON only.",
            response_format="json",
        )
        parsed = SentimentResponse.model_validate(result)
        return SentimentAssessment(
            label=parsed.label, scores=parsed.scores, confidence=parsed.confidence,
        )


class LLMModerationOracle:
    """validate(text, account_id, context) -> ModerationResponse."""

    def __init__(self, provider: AIProvider, model: str):
        self.provider = provider
        self.model = model

    def validate(self, text: str, account_id: str, context: dict | None = None) -> ModerationResponse:
        context = context or {}
        result = self.provider.complete(
            prompt=MODERATION_PROMPT.format(
                guidelines=context.get("guidelines") or "(none configured)",
                context=context.get("summary") or "(none)",
                text=text,
            ),
            model=self.model,
            system=f"You are the content safety reviewer for account {account_id}. Respond with JSON only.",
            response_format="json",
        )
        return ModerationResponse.model_validate(result)


class LLMReplyWriter:
    """write(**fields) -> ReplyResponse; fields fill REPLY_PROMPT."""

    def __init__(self, provider: AIProvider, model: str):
        self.provider = provider
        self.model = model

    def write(self, **fields) -> ReplyResponse:
        result = self.provider.complete(
            prompt=REPLY_PROMPT.format(**fields),
            model=self.model,
            system=(
                "You are an expert customer service writer with strong emotional "
                "intelligence. Respond with JSON only."
            ),
            response_format="json",
        )
        return ReplyResponse.model_validate(result)
