"""Configuration loading and validation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass
class StorageConfig:
    backend: str = "sqlite"
    sqlite_path: str = "replygate.db"


@dataclass
class AIConfig:
    provider: str = "ollama"
    model: str = "mistral-nemo"
    embedding_model: str = "nomic-embed-text"
    ollama_base_url: str = "http://localhost:11434"
    ollama_api_key: str = ""
    timeout_seconds: float = 30.0
    max_retries: int = 3
    max_body_chars: int = 4000

    def to_provider_dict(self) -> dict:
        """Return a dict suitable for passing to get_provider()."""
        return {
            "ollama_base_url": self.ollama_base_url,
            "ollama_api_key": self.ollama_api_key,
            "timeout_seconds": self.timeout_seconds,
            "max_retries": self.max_retries,
        }


@dataclass
class GroundingConfig:
    quality: str = "balanced"  # high | balanced | exploratory
    chunk_size: int = 512
    chunk_overlap: int = 50
    chunk_min_document_chars: int = 1000
    min_chunk_chars: int = 50
    top_k: int = 5


@dataclass
class SentimentConfig:
    high_risk_threshold: int = 75
    high_value_relaxation: int = 15
    long_thread_relaxation: int = 10
    long_thread_messages: int = 3
    billing_relaxation: int = 10
    threshold_floor: int = 30
    urgency_keywords: list[str] = field(default_factory=lambda: [
        "emergency", "urgent", "asap", "immediately", "critical", "lawsuit", "lawyer",
    ])
    billing_keywords: list[str] = field(default_factory=lambda: [
        "charge", "charged", "billing", "refund", "invoice", "payment", "credit card",
        "overcharged", "double charged", "chargeback",
    ])


@dataclass
class RoutingConfig:
    min_confidence: int = 60
    generic_rule_max_confidence: int = 70


@dataclass
class CommerceConfig:
    base_url: str = "http://localhost:8080/api"
    api_key: str = ""
    timeout_seconds: float = 10.0
    max_retries: int = 3


@dataclass
class GmailConfig:
    credentials_file: str = "credentials.json"
    token_dir: str = "tokens"
    catch_up_query: str = "is:unread newer_than:2d"
    timeout_seconds: float = 30.0


@dataclass
class IngestConfig:
    max_workers: int = 4


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class Config:
    storage: StorageConfig = field(default_factory=StorageConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    grounding: GroundingConfig = field(default_factory=GroundingConfig)
    sentiment: SentimentConfig = field(default_factory=SentimentConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    commerce: CommerceConfig = field(default_factory=CommerceConfig)
    gmail: GmailConfig = field(default_factory=GmailConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _dict_to_config(data: dict) -> Config:
    """Convert a raw dict to a Config dataclass, handling nested structures."""
    from dacite import from_dict

    return from_dict(data_class=Config, data=data)


def _find_config_file() -> Path | None:
    """Search for config file in standard locations."""
    env_path = os.environ.get("REPLYGATE_CONFIG")
    if env_path:
        p = Path(env_path)
        if p.exists():
            return p

    local = Path("config.yaml")
    if local.exists():
        return local

    xdg = Path.home() / ".config" / "replygate" / "config.yaml"
    if xdg.exists():
        return xdg

    return None


def _load_dotenv() -> None:
    """Load .env file from current directory if it exists."""
    env_path = Path(".env")
    if not env_path.exists():
        return
    for line in env_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip()
        # Don't overwrite already-set env vars
        if key not in os.environ:
            os.environ[key] = value


def _apply_env_overrides(config: Config) -> Config:
    """Override config values from environment variables.

    Supports:
        ollama_host       -> config.ai.ollama_base_url
        ollama_api_key    -> config.ai.ollama_api_key
        model_name        -> config.ai.model
        embedding_model   -> config.ai.embedding_model
        commerce_api_key  -> config.commerce.api_key
    """
    if os.environ.get("ollama_host"):
        config.ai.ollama_base_url = os.environ["ollama_host"]
    if os.environ.get("ollama_api_key"):
        config.ai.ollama_api_key = os.environ["ollama_api_key"]
    if os.environ.get("model_name"):
        config.ai.model = os.environ["model_name"]
    if os.environ.get("embedding_model"):
        config.ai.embedding_model = os.environ["embedding_model"]
    if os.environ.get("commerce_api_key"):
        config.commerce.api_key = os.environ["commerce_api_key"]
    return config


def load_config(path: str | Path | None = None) -> Config:
    """Load configuration from YAML file, merging with defaults.

    Also loads .env file and applies environment variable overrides.
    """
    _load_dotenv()

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        config_path = _find_config_file()

    if config_path is None:
        config = Config()
    else:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        config = _dict_to_config(raw)

    return _apply_env_overrides(config)
