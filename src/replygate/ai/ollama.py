"""Ollama AI provider: HTTP client for local LLM inference and embeddings."""

from __future__ import annotations

import time

import httpx

from replygate.ai.base import parse_json_text
from replygate.errors import CollaboratorError


class OllamaProvider:
    """Ollama HTTP API client for local or cloud inference."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        api_key: str = "",
        timeout: float = 30.0,
        max_retries: int = 3,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max(1, max_retries)

    def _headers(self) -> dict:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _post(self, path: str, payload: dict) -> dict:
        """POST with bounded timeout.

        Generation and embedding are read-only, so any transport error is
        retried with backoff.
        """
        for attempt in range(self.max_retries):
            try:
                with httpx.Client(timeout=self.timeout) as client:
                    resp = client.post(
                        f"{self.base_url}{path}",
                        json=payload,
                        headers=self._headers(),
                    )
                    resp.raise_for_status()
                return resp.json()

            except httpx.TransportError as e:
                if attempt < self.max_retries - 1:
                    time.sleep(2 ** attempt)
                    continue
                raise CollaboratorError(
                    f"Failed to reach Ollama at {self.base_url}: {e}"
                ) from e
            except httpx.HTTPStatusError as e:
                raise CollaboratorError(
                    f"Ollama returned {e.response.status_code} for {path}"
                ) from e
            except httpx.HTTPError as e:
                raise CollaboratorError(f"Ollama request to {path} failed: {e}") from e
        raise CollaboratorError(f"Ollama request to {path} was not attempted")

    def complete(
        self,
        prompt: str,
        model: str,
        system: str = "",
        response_format: str | None = None,
    ) -> dict:
        """Send a prompt to Ollama and return parsed response."""
        payload: dict = {
            "model": model,
            "prompt": prompt,
            "stream": False,
        }

        if system:
            payload["system"] = system

        if response_format == "json":
            payload["format"] = "json"

        data = self._post("/api/generate", payload)
        return parse_json_text(data.get("response", ""))

    def embed(self, text: str, model: str) -> list[float]:
        """Return the embedding vector for ``text``."""
        data = self._post("/api/embed", {"model": model, "input": text})
        embeddings = data.get("embeddings") or []
        if not embeddings or not embeddings[0]:
            raise CollaboratorError(f"Ollama returned no embedding for model {model!r}")
        return [float(v) for v in embeddings[0]]
