"""AI provider factory."""

from __future__ import annotations

from replygate.ai.base import AIProvider, EmbeddingProvider
from replygate.ai.ollama import OllamaProvider
from replygate.ai.anthropic_provider import AnthropicProvider


def get_provider(model_spec: str, config: dict | None = None) -> tuple[AIProvider, str]:
    """Parse 'provider:model_name' and return (provider_instance, model_name).

    If no colon is present, assumes ollama as the provider.
    """
    if ":" in model_spec:
        provider_name, model_name = model_spec.split(":", 1)
    else:
        provider_name = "ollama"
        model_name = model_spec

    config = config or {}
    timeout = config.get("timeout_seconds", 30.0)
    max_retries = config.get("max_retries", 3)

    if provider_name == "ollama":
        base_url = config.get("ollama_base_url", "http://localhost:11434")
        api_key = config.get("ollama_api_key", "")
        provider = OllamaProvider(
            base_url=base_url, api_key=api_key, timeout=timeout, max_retries=max_retries,
        )
        return provider, model_name
    elif provider_name == "anthropic":
        return AnthropicProvider(timeout=timeout, max_retries=max_retries), model_name
    else:
        raise ValueError(f"Unknown AI provider: {provider_name!r}. Use 'ollama' or 'anthropic'.")


def get_embedding_provider(config: dict | None = None) -> EmbeddingProvider:
    """Return the embedding provider. Only Ollama serves embeddings."""
    config = config or {}
    return OllamaProvider(
        base_url=config.get("ollama_base_url", "http://localhost:11434"),
        api_key=config.get("ollama_api_key", ""),
        timeout=config.get("timeout_seconds", 30.0),
        max_retries=config.get("max_retries", 3),
    )


__all__ = [
    "AIProvider",
    "AnthropicProvider",
    "EmbeddingProvider",
    "OllamaProvider",
    "get_embedding_provider",
    "get_provider",
]
