"""
Benchmark runner: latency, throughput and a keyword quality signal per model
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from .adapters import GenerationRequest
from .catalog import ModelCatalog
from .config import MAX_BENCHMARK_BATCH, ProviderId
from .errors import BenchmarkFailed, BenchmarkInProgress, LLMRouterError
from .registry import ProviderRegistry

logger = logging.getLogger(__name__)

DEFAULT_BENCHMARK_PROMPT = (
    'Respond with a short confirmation message that says "Benchmark OK". '
    "This is a latency measurement request."
)
DEFAULT_EXPECTED_KEYWORDS: Tuple[str, ...] = ("benchmark", "ok")
BENCHMARK_MAX_TOKENS = 64

# (model_id, fraction complete in 0..1)
ProgressCallback = Callable[[str, float], None]


class BenchmarkStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class BenchmarkMeasurement:
    run: int
    latency_ms: float
    tokens_per_second: Optional[float] = None
    quality: Optional[float] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class BenchmarkResult:
    model_id: str
    model_name: str
    provider: Optional[ProviderId]
    status: BenchmarkStatus
    measurements: Tuple[BenchmarkMeasurement, ...] = ()
    average_latency_ms: Optional[float] = None
    tokens_per_second: Optional[float] = None
    quality: Optional[float] = None
    error: Optional[BenchmarkFailed] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def succeeded(self) -> bool:
        return self.status in (BenchmarkStatus.SUCCESS, BenchmarkStatus.PARTIAL)

    def to_dict(self) -> dict:
        return {
            "model_id": self.model_id,
            "model_name": self.model_name,
            "provider": self.provider.value if self.provider else None,
            "status": self.status.value,
            "average_latency_ms": self.average_latency_ms,
            "tokens_per_second": self.tokens_per_second,
            "quality": self.quality,
            "runs": len(self.measurements),
            "error": self.error.message if self.error else None,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
        }


def keyword_quality(response: str, expected_keywords: Sequence[str]) -> float:
    """Fraction of expected keywords present in the response, 0..1"""
    if not expected_keywords:
        return 1.0 if response.strip() else 0.0
    response_lower = response.lower()
    found = [k for k in expected_keywords if k.lower() in response_lower]
    return round(len(found) / len(expected_keywords), 3)


def _average(values: List[float]) -> Optional[float]:
    if not values:
        return None
    return round(sum(values) / len(values), 2)


class BenchmarkOrchestrator:
    """
    Sends a fixed prompt to each requested model through the registry.

    Models are processed in request order, in batches of at most
    MAX_BENCHMARK_BATCH so local runtimes are never flooded. A failing model
    yields an error result and the run moves on. cancel() takes effect at
    the next batch boundary; models not yet started are reported as
    cancelled.
    """

    def __init__(self, registry: ProviderRegistry, catalog: ModelCatalog):
        self.registry = registry
        self.catalog = catalog
        self.config = registry.config
        self._cancel_requested = False
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def cancel(self) -> None:
        if self._running:
            logger.info("Benchmark cancellation requested")
            self._cancel_requested = True

    async def run(
        self,
        model_ids: Sequence[str],
        prompt: Optional[str] = None,
        runs: int = 1,
        batch_size: Optional[int] = None,
        expected_keywords: Sequence[str] = DEFAULT_EXPECTED_KEYWORDS,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[BenchmarkResult]:
        if self._running:
            raise BenchmarkInProgress("A benchmark run is already in progress")

        prompt = prompt or DEFAULT_BENCHMARK_PROMPT
        runs = max(1, runs)
        batch_size = min(max(1, batch_size or self.config.benchmark_batch_size), MAX_BENCHMARK_BATCH)
        total = len(model_ids)
        results: List[BenchmarkResult] = []
        done = 0

        def report(model_id: str) -> None:
            if on_progress is None:
                return
            try:
                on_progress(model_id, done / total if total else 1.0)
            except Exception:
                logger.exception("Benchmark progress callback failed")

        self._running = True
        self._cancel_requested = False
        logger.info(f"Benchmarking {total} model(s), {runs} run(s) each, batch size {batch_size}")
        try:
            report(model_ids[0] if model_ids else "")
            for start in range(0, total, batch_size):
                batch = list(model_ids[start:start + batch_size])
                if self._cancel_requested:
                    for model_id in model_ids[start:]:
                        results.append(self._cancelled_result(model_id))
                        done += 1
                        report(model_id)
                    break

                batch_results = await asyncio.gather(
                    *(self._benchmark_model(model_id, prompt, runs, expected_keywords) for model_id in batch)
                )
                for model_id, result in zip(batch, batch_results):
                    results.append(result)
                    done += 1
                    report(model_id)
        finally:
            self._running = False
            self._cancel_requested = False

        failed = sum(1 for r in results if r.status == BenchmarkStatus.ERROR)
        logger.info(f"Benchmark finished: {len(results) - failed} ok, {failed} failed")
        return results

    def _cancelled_result(self, model_id: str) -> BenchmarkResult:
        entry = self.catalog.get(model_id)
        return BenchmarkResult(
            model_id=model_id,
            model_name=entry.display_name if entry else model_id,
            provider=entry.provider if entry else None,
            status=BenchmarkStatus.CANCELLED,
        )

    def _error_result(
        self, model_id: str, model_name: str, provider: Optional[ProviderId], message: str, started_at: datetime
    ) -> BenchmarkResult:
        logger.warning(f"Benchmark of {model_id} failed: {message}")
        return BenchmarkResult(
            model_id=model_id,
            model_name=model_name,
            provider=provider,
            status=BenchmarkStatus.ERROR,
            error=BenchmarkFailed(message, provider=provider.value if provider else None, model_id=model_id),
            started_at=started_at,
        )

    def _pick_provider(self, model_id: str, owner: Optional[ProviderId]) -> Optional[ProviderId]:
        snapshot = self.registry.snapshot
        serving = snapshot.serving(model_id)
        if serving:
            return serving[0].id
        if owner is not None and snapshot.is_reachable(owner):
            return owner
        return None

    async def _benchmark_model(
        self, model_id: str, prompt: str, runs: int, expected_keywords: Sequence[str]
    ) -> BenchmarkResult:
        started_at = datetime.now(timezone.utc)
        entry = self.catalog.get(model_id)
        model_name = entry.display_name if entry else model_id
        owner = entry.provider if entry else None

        provider = self._pick_provider(model_id, owner)
        if provider is None:
            if entry is None:
                message = "Model not found in catalog or on any provider"
            else:
                message = f"Provider {owner.value} is offline"
            return self._error_result(model_id, model_name, owner, message, started_at)

        request = GenerationRequest(
            prompt=prompt,
            model=self.registry.resolve_model(model_id, provider),
            temperature=self.config.temperature,
            max_tokens=BENCHMARK_MAX_TOKENS,
        )

        measurements: List[BenchmarkMeasurement] = []
        last_error: Optional[str] = None
        for run in range(1, runs + 1):
            started = time.perf_counter()
            try:
                generation = await self.registry.generate(
                    provider, request, timeout=self.config.benchmark_timeout
                )
            except LLMRouterError as e:
                latency_ms = (time.perf_counter() - started) * 1000
                last_error = e.message
                measurements.append(BenchmarkMeasurement(run=run, latency_ms=round(latency_ms, 1), error=e.message))
                logger.debug(f"{model_id} run {run} failed: {e.message}")
                continue

            latency_ms = (time.perf_counter() - started) * 1000
            tokens = generation.completion_tokens or generation.total_tokens
            throughput = None
            if tokens and latency_ms > 0:
                throughput = round(tokens / (latency_ms / 1000), 2)
            measurements.append(
                BenchmarkMeasurement(
                    run=run,
                    latency_ms=round(latency_ms, 1),
                    tokens_per_second=throughput,
                    quality=keyword_quality(generation.text, expected_keywords),
                )
            )

        successful = [m for m in measurements if m.error is None]
        if not successful:
            status = BenchmarkStatus.ERROR
        elif last_error is not None:
            status = BenchmarkStatus.PARTIAL
        else:
            status = BenchmarkStatus.SUCCESS

        error = None
        if last_error is not None:
            error = BenchmarkFailed(last_error, provider=provider.value, model_id=model_id)
            logger.warning(f"Benchmark of {model_id} via {provider.value}: {status.value} ({last_error})")

        return BenchmarkResult(
            model_id=model_id,
            model_name=model_name,
            provider=provider,
            status=status,
            measurements=tuple(measurements),
            average_latency_ms=_average([m.latency_ms for m in successful]),
            tokens_per_second=_average([m.tokens_per_second for m in successful if m.tokens_per_second is not None]),
            quality=_average([m.quality for m in successful if m.quality is not None]),
            error=error,
            started_at=started_at,
        )
