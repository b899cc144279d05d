"""Pydantic schemas validating oracle responses."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from replygate.models import Category, Priority


def _clamp_percent(value) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    return int(round(max(0.0, min(100.0, number))))


class ClassificationResponse(BaseModel):
    """Structured output of the classification oracle."""

    category: Category
    confidence: int = Field(ge=0, le=100)
    reasoning: str = ""
    priority: Priority = Priority.MEDIUM

    @field_validator("category", mode="before")
    @classmethod
    def _parse_category(cls, value):
        return Category.parse(str(value))

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value):
        return _clamp_percent(value)

    @field_validator("priority", mode="before")
    @classmethod
    def _default_priority(cls, value):
        try:
            return Priority(str(value).strip().lower())
        except ValueError:
            return Priority.MEDIUM


class SentimentResponse(BaseModel):
    """Structured output of the sentiment oracle."""

    label: str
    scores: dict[str, int] = Field(default_factory=dict)
    confidence: int = Field(ge=0, le=100)

    @field_validator("label", mode="before")
    @classmethod
    def _upper_label(cls, value):
        label = str(value).strip().upper()
        if label not in {"POSITIVE", "NEGATIVE", "NEUTRAL", "MIXED"}:
            raise ValueError(f"unknown sentiment label {value!r}")
        return label

    @field_validator("scores", mode="before")
    @classmethod
    def _clamp_scores(cls, value):
        if not isinstance(value, dict):
            raise ValueError("scores must be an object")
        return {str(k).lower(): _clamp_percent(v) for k, v in value.items()}

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value):
        return _clamp_percent(value)


class ModerationResponse(BaseModel):
    """Structured output of the content moderation oracle."""

    approved: bool
    reason: str = ""


class ReplyResponse(BaseModel):
    """Structured output of the reply-writing oracle."""

    body: str = Field(min_length=1)
    confidence: int = Field(default=70, ge=0, le=100)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value):
        return _clamp_percent(value)
