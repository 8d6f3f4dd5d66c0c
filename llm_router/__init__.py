"""
LLM Router
Discovers local and cloud LLM providers, recommends models for the host
hardware, benchmarks them and routes generation with provider fallback
"""

from .benchmark import BenchmarkOrchestrator, BenchmarkResult, BenchmarkStatus
from .catalog import ModelCatalog, ModelCatalogEntry
from .config import DEFAULT_PROVIDER_PRECEDENCE, ProviderId, RouterConfig, load_config
from .errors import (
    AllProvidersExhausted,
    BenchmarkFailed,
    LLMRouterError,
    ModelPullFailed,
    ProviderNotConfigured,
    ProviderUnreachable,
)
from .hardware import HardwareProfile, HardwareProfiler
from .recommend import HardwarePolicy, Recommendation, RecommendationEngine
from .registry import ProviderRegistry, ProviderSnapshot
from .router import ActiveModel, FallbackRouter, RouterState
from .session import RoutingSession
from .usecases import Priority, UseCase

__version__ = "1.0.0"
__all__ = [
    "ActiveModel",
    "AllProvidersExhausted",
    "BenchmarkFailed",
    "BenchmarkOrchestrator",
    "BenchmarkResult",
    "BenchmarkStatus",
    "DEFAULT_PROVIDER_PRECEDENCE",
    "FallbackRouter",
    "HardwarePolicy",
    "HardwareProfile",
    "HardwareProfiler",
    "LLMRouterError",
    "ModelCatalog",
    "ModelCatalogEntry",
    "ModelPullFailed",
    "Priority",
    "ProviderId",
    "ProviderNotConfigured",
    "ProviderRegistry",
    "ProviderSnapshot",
    "ProviderUnreachable",
    "Recommendation",
    "RecommendationEngine",
    "RouterConfig",
    "RouterState",
    "RoutingSession",
    "UseCase",
    "load_config",
]
