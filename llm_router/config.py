"""
Router configuration: provider endpoints, timeouts and fallback precedence
"""

import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)


class ProviderId(str, Enum):
    """Every provider the router knows how to talk to"""
    OLLAMA = "ollama"
    LMSTUDIO = "lmstudio"
    OPENROUTER = "openrouter"
    GEMINI = "gemini"
    OPENAI = "openai"

    @property
    def is_local(self) -> bool:
        return self in LOCAL_PROVIDERS

    @classmethod
    def parse(cls, value: str) -> "ProviderId":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ConfigError(f"Unknown provider: {value!r}", provider=value) from None


LOCAL_PROVIDERS = frozenset({ProviderId.OLLAMA, ProviderId.LMSTUDIO})

# Preferred local runtime, other local runtime, then cloud vendors
DEFAULT_PROVIDER_PRECEDENCE: Tuple[ProviderId, ...] = (
    ProviderId.OLLAMA,
    ProviderId.LMSTUDIO,
    ProviderId.OPENROUTER,
    ProviderId.GEMINI,
    ProviderId.OPENAI,
)

DEFAULT_BASE_URLS: Dict[ProviderId, str] = {
    ProviderId.OLLAMA: "http://localhost:11434",
    ProviderId.LMSTUDIO: "http://localhost:1234/v1",
    ProviderId.OPENROUTER: "https://openrouter.ai/api/v1",
    ProviderId.GEMINI: "https://generativelanguage.googleapis.com/v1beta",
    ProviderId.OPENAI: "https://api.openai.com/v1",
}

DEFAULT_CLOUD_MODELS: Dict[ProviderId, str] = {
    ProviderId.OPENROUTER: "openai/gpt-4o-mini",
    ProviderId.GEMINI: "gemini-2.0-flash",
    ProviderId.OPENAI: "gpt-4o-mini",
}

DEFAULT_STATE_DIR = Path.home() / ".llm-router"
MAX_BENCHMARK_BATCH = 4


@dataclass(frozen=True)
class RouterConfig:
    """Immutable settings shared by every service in a session"""
    base_urls: Dict[ProviderId, str] = field(default_factory=lambda: dict(DEFAULT_BASE_URLS))
    precedence: Tuple[ProviderId, ...] = DEFAULT_PROVIDER_PRECEDENCE
    cloud_models: Dict[ProviderId, str] = field(default_factory=lambda: dict(DEFAULT_CLOUD_MODELS))
    probe_timeout: float = 5.0
    request_timeout: float = 30.0
    benchmark_timeout: float = 60.0
    pull_timeout: float = 3600.0
    benchmark_batch_size: int = 1
    temperature: float = 0.91
    max_tokens: int = 2048
    state_dir: Path = DEFAULT_STATE_DIR

    def __post_init__(self):
        if not self.precedence:
            raise ConfigError("Provider precedence must not be empty")
        if len(set(self.precedence)) != len(self.precedence):
            raise ConfigError("Provider precedence contains duplicates")
        for name in ("probe_timeout", "request_timeout", "benchmark_timeout", "pull_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if not 1 <= self.benchmark_batch_size <= MAX_BENCHMARK_BATCH:
            raise ConfigError(f"benchmark_batch_size must be between 1 and {MAX_BENCHMARK_BATCH}")

    def base_url(self, provider: ProviderId) -> str:
        return self.base_urls.get(provider, DEFAULT_BASE_URLS[provider]).rstrip("/")

    def with_overrides(self, **changes: Any) -> "RouterConfig":
        return replace(self, **changes)


def load_yaml(filepath: Path) -> Dict[str, Any]:
    """Load a YAML mapping, returning {} when the file is absent"""
    if not filepath.exists():
        logger.debug(f"Config file not found: {filepath}")
        return {}

    try:
        with open(filepath, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {filepath}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {filepath} must contain a mapping")
    logger.debug(f"Config loaded from {filepath}")
    return data


def _parse_precedence(value: Any) -> Tuple[ProviderId, ...]:
    if isinstance(value, str):
        value = [item for item in value.split(",") if item.strip()]
    if not isinstance(value, (list, tuple)):
        raise ConfigError("precedence must be a list of provider names")
    return tuple(ProviderId.parse(str(item)) for item in value)


def _parse_provider_map(value: Any, name: str) -> Dict[ProviderId, str]:
    if not isinstance(value, dict):
        raise ConfigError(f"{name} must be a mapping of provider -> value")
    return {ProviderId.parse(str(key)): str(item) for key, item in value.items()}


def load_config(path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> RouterConfig:
    """
    Build a RouterConfig from the YAML file (if any) plus environment overrides.

    Environment wins over the file: OLLAMA_HOST, LMSTUDIO_URL,
    LLM_ROUTER_PRECEDENCE (comma separated).
    """
    environ = os.environ if environ is None else environ
    path = path or DEFAULT_STATE_DIR / "config.yaml"
    data = load_yaml(Path(path))

    kwargs: Dict[str, Any] = {}
    base_urls = dict(DEFAULT_BASE_URLS)
    if "base_urls" in data:
        base_urls.update(_parse_provider_map(data["base_urls"], "base_urls"))
    if "precedence" in data:
        kwargs["precedence"] = _parse_precedence(data["precedence"])
    if "cloud_models" in data:
        cloud_models = dict(DEFAULT_CLOUD_MODELS)
        cloud_models.update(_parse_provider_map(data["cloud_models"], "cloud_models"))
        kwargs["cloud_models"] = cloud_models

    for key in (
        "probe_timeout", "request_timeout", "benchmark_timeout", "pull_timeout", "temperature",
    ):
        if key in data:
            kwargs[key] = float(data[key])
    for key in ("benchmark_batch_size", "max_tokens"):
        if key in data:
            kwargs[key] = int(data[key])
    if "state_dir" in data:
        kwargs["state_dir"] = Path(data["state_dir"]).expanduser()

    ollama_host = environ.get("OLLAMA_HOST")
    if ollama_host:
        if not ollama_host.startswith(("http://", "https://")):
            ollama_host = f"http://{ollama_host}"
        base_urls[ProviderId.OLLAMA] = ollama_host
    if environ.get("LMSTUDIO_URL"):
        base_urls[ProviderId.LMSTUDIO] = environ["LMSTUDIO_URL"]
    if environ.get("LLM_ROUTER_PRECEDENCE"):
        kwargs["precedence"] = _parse_precedence(environ["LLM_ROUTER_PRECEDENCE"])

    return RouterConfig(base_urls=base_urls, **kwargs)
