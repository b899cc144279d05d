"""Anthropic AI provider: Claude API client."""

from __future__ import annotations

from replygate.ai.base import parse_json_text
from replygate.errors import CollaboratorError


class AnthropicProvider:
    """Anthropic API client for Claude models."""

    def __init__(self, timeout: float = 30.0, max_retries: int = 2):
        self.timeout = timeout
        self.max_retries = max_retries
        self._client = None

    def _get_client(self):
        if self._client is None:
            import anthropic
            self._client = anthropic.Anthropic(
                timeout=self.timeout, max_retries=self.max_retries,
            )
        return self._client

    def complete(
        self,
        prompt: str,
        model: str,
        system: str = "",
        response_format: str | None = None,
    ) -> dict:
        """Send a prompt to Claude and return parsed response."""
        import anthropic

        client = self._get_client()

        messages = [{"role": "user", "content": prompt}]

        kwargs: dict = {
            "model": model,
            "max_tokens": 2048,
            "messages": messages,
        }
        if system:
            kwargs["system"] = system

        try:
            response = client.messages.create(**kwargs)
        except anthropic.APIError as e:
            raise CollaboratorError(f"Anthropic request failed: {e}") from e

        response_text = ""
        for block in response.content:
            if hasattr(block, "text"):
                response_text += block.text

        return parse_json_text(response_text)
