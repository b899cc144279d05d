"""AI provider protocols and shared response parsing."""

from __future__ import annotations

import json
import re
from typing import Protocol, runtime_checkable


@runtime_checkable
class AIProvider(Protocol):
    """Protocol for AI model providers."""

    def complete(
        self,
        prompt: str,
        model: str,
        system: str = "",
        response_format: str | None = None,
    ) -> dict:
        """Send a prompt and get a structured response.

        Args:
            prompt: the user prompt
            model: model name/identifier
            system: optional system prompt
            response_format: if "json", request JSON output

        Returns:
            Parsed dict from JSON response, or {"text": raw_text} if not JSON.
        """
        ...


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Protocol for providers that turn text into a fixed-length vector."""

    def embed(self, text: str, model: str) -> list[float]:
        ...


_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def parse_json_text(response_text: str) -> dict:
    """Parse a model response as JSON, tolerating markdown code fences.

    Anything that is not a JSON object comes back as ``{"text": response_text}``
    so callers can validate it like any other payload.
    """
    candidates = [response_text] + [m.strip() for m in _FENCE_RE.findall(response_text)]
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return {"text": response_text}
