"""
Typed failures raised by the routing core
"""

from typing import List, Optional, Tuple


class LLMRouterError(Exception):
    """Base class for every failure surfaced by llm_router"""

    kind = "error"

    def __init__(self, message: str, provider: Optional[str] = None, model_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.model_id = model_id

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": self.message,
            "provider": self.provider,
            "model_id": self.model_id,
        }


class ConfigError(LLMRouterError):
    """Invalid configuration value"""

    kind = "config"


class ProviderError(LLMRouterError):
    """Transient provider failure; drives fallback"""

    kind = "provider_error"


class ProviderUnreachable(ProviderError):
    """Connection refused, timeout or provider offline at last probe"""

    kind = "provider_unreachable"


class ProviderResponseError(ProviderError):
    """Provider answered with a non-2xx status or an unusable body"""

    kind = "provider_response"

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        model_id: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, provider, model_id)
        self.status_code = status_code


class ProviderNotConfigured(LLMRouterError):
    """Cloud provider has no usable credential"""

    kind = "provider_not_configured"


class UnknownModelError(LLMRouterError):
    """Model id is neither in the catalog nor reported by any provider"""

    kind = "unknown_model"


class ModelPullFailed(LLMRouterError):
    """Download/pull of a model failed"""

    kind = "model_pull_failed"


class PullInProgress(ModelPullFailed):
    """A pull for the same model is already running"""

    kind = "pull_in_progress"


class BenchmarkFailed(LLMRouterError):
    """A single model failed during a benchmark run"""

    kind = "benchmark_failed"


class BenchmarkInProgress(LLMRouterError):
    """A benchmark run is already active in this session"""

    kind = "benchmark_in_progress"


class AllProvidersExhausted(LLMRouterError):
    """Every candidate in the fallback chain failed for one generation call"""

    kind = "all_providers_exhausted"

    def __init__(self, message: str, attempts: List[Tuple[str, str, LLMRouterError]]):
        super().__init__(message)
        # (provider, model_id, error) in the order they were tried
        self.attempts = attempts

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["attempts"] = [
            {"provider": provider, "model_id": model_id, "error": error.to_dict()}
            for provider, model_id, error in self.attempts
        ]
        return data
