"""
Session wiring: one instance of every service, plus the read-only snapshots
and imperative triggers that front-ends use
"""

import asyncio
import csv
import io
import json
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple, Union

import httpx
import yaml

from .adapters import Generation, PullProgressCallback, StreamChunk
from .benchmark import BenchmarkOrchestrator, BenchmarkResult, ProgressCallback
from .catalog import ModelCatalog, ModelCatalogEntry
from .config import ProviderId, RouterConfig
from .errors import ConfigError, UnknownModelError
from .hardware import HardwareProfile, HardwareProfiler
from .keys import EnvKeyStore, KeyStore
from .recommend import HardwarePolicy, RecommendationEngine, RecommendationSet
from .registry import ProviderRegistry, ProviderSnapshot, PullResult
from .router import ActiveModel, FallbackRouter, RouterState
from .store import StateStore
from .usecases import Priority, UseCase

logger = logging.getLogger(__name__)

DEFAULT_TOP_N = 6
EXPORT_FORMATS = ("json", "csv", "yaml")

# (event name, new snapshot value)
SessionListener = Callable[[str, Any], None]


def export_records(records: List[Dict[str, Any]], format: str = "json") -> str:
    """Serialize flat-ish dict records as JSON, CSV or YAML"""
    if format == "json":
        return json.dumps(records, indent=2, default=str)
    elif format == "csv":
        return _export_csv(records)
    elif format == "yaml":
        return yaml.safe_dump(json.loads(json.dumps(records, default=str)), default_flow_style=False, sort_keys=False)
    else:
        raise ConfigError(f"Unsupported export format: {format}")


def _export_csv(records: List[Dict[str, Any]]) -> str:
    if not records:
        return ""

    rows = []
    fieldnames: List[str] = []
    for record in records:
        # Flatten nested dictionaries and join lists
        flat_row: Dict[str, Any] = {}
        for key, value in record.items():
            if isinstance(value, dict):
                for sub_key, sub_value in value.items():
                    flat_row[f"{key}_{sub_key}"] = sub_value
            elif isinstance(value, (list, tuple)):
                flat_row[key] = "; ".join(str(item) for item in value)
            else:
                flat_row[key] = value
        for key in flat_row:
            if key not in fieldnames:
                fieldnames.append(key)
        rows.append(flat_row)

    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=fieldnames)
    writer.writeheader()
    writer.writerows(rows)
    return output.getvalue()


class AutoRefresh:
    """Stop handle for a periodic discovery loop"""

    def __init__(self, task: "asyncio.Task[None]"):
        self._task = task

    @property
    def running(self) -> bool:
        return not self._task.done()

    async def stop(self) -> None:
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class RoutingSession:
    """
    Constructed once per process or UI session and passed to consumers.

    Every snapshot property returns an immutable value. Triggers replace
    snapshots wholesale and notify subscribers with (event, value).
    """

    def __init__(
        self,
        config: Optional[RouterConfig] = None,
        keys: Optional[KeyStore] = None,
        store: Optional[StateStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        profiler: Optional[HardwareProfiler] = None,
        catalog_file: Optional[Path] = None,
        policy: HardwarePolicy = HardwarePolicy.EXCLUDE,
        top_n: Optional[int] = DEFAULT_TOP_N,
    ):
        self.config = config or RouterConfig()
        self.store = store or StateStore(self.config.state_dir)
        self.profiler = profiler or HardwareProfiler()
        self.registry = ProviderRegistry(self.config, keys=keys or EnvKeyStore(), transport=transport)
        self.catalog = ModelCatalog(lambda: self.registry.snapshot, self.store, catalog_file)
        self.engine = RecommendationEngine(policy)
        self.benchmarker = BenchmarkOrchestrator(self.registry, self.catalog)
        self.router = FallbackRouter(self.registry, self.catalog)
        self.top_n = top_n

        self._use_case = self._load_choice("use_case", UseCase.parse, UseCase.CODING)
        self._priority = self._load_choice("priority", Priority.parse, Priority.BALANCED)
        self._recommendations = RecommendationSet()
        self._benchmarks: Tuple[BenchmarkResult, ...] = ()
        self._listeners: List[SessionListener] = []

        self.registry.subscribe(self._on_providers)
        self.router.subscribe(self._on_router)

    def _load_choice(self, key: str, parse: Callable[[str], Any], default: Any) -> Any:
        value = self.store.get(key)
        if value is None:
            return default
        try:
            return parse(value)
        except ConfigError:
            logger.warning(f"Ignoring saved {key} {value!r}")
            return default

    async def __aenter__(self) -> "RoutingSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self.router.close()
        await self.registry.aclose()

    # Snapshots

    @property
    def hardware(self) -> Optional[HardwareProfile]:
        return self.profiler.latest

    @property
    def providers(self) -> ProviderSnapshot:
        return self.registry.snapshot

    @property
    def model_catalog(self) -> Tuple[ModelCatalogEntry, ...]:
        return self.catalog.entries()

    @property
    def recommendations(self) -> RecommendationSet:
        return self._recommendations

    @property
    def benchmarks(self) -> Tuple[BenchmarkResult, ...]:
        return self._benchmarks

    @property
    def active(self) -> Optional[ActiveModel]:
        return self.router.active

    @property
    def router_state(self) -> RouterState:
        return self.router.state

    @property
    def use_case(self) -> UseCase:
        return self._use_case

    @property
    def priority(self) -> Priority:
        return self._priority

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event: str, value: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, value)
            except Exception:
                logger.exception(f"Session listener failed on {event}")

    def _on_providers(self, snapshot: ProviderSnapshot) -> None:
        self._notify("providers", snapshot)
        if self._recommendations.is_stale(snapshot):
            logger.debug("Provider state changed; recomputing recommendations")
            self.refresh_recommendations()

    def _on_router(self, state: RouterState, active: Optional[ActiveModel]) -> None:
        if active is not None:
            self.store.set("active_model", {"provider": active.provider.value, "model_id": active.model_id})
        self._notify("active", active)

    # Triggers

    async def detect_hardware(self) -> HardwareProfile:
        profile = await self.profiler.detect()
        self._notify("hardware", profile)
        self.refresh_recommendations()
        return profile

    def set_hardware_override(self, **fields: Any) -> HardwareProfile:
        profile = self.profiler.override(**fields)
        self._notify("hardware", profile)
        self.refresh_recommendations()
        return profile

    async def clear_hardware_override(self) -> HardwareProfile:
        profile = await self.profiler.clear_override()
        self._notify("hardware", profile)
        self.refresh_recommendations()
        return profile

    async def discover_providers(self) -> ProviderSnapshot:
        snapshot = await self.registry.discover()
        if self.router.active is None:
            self._restore_active(snapshot)
        return snapshot

    def _restore_active(self, snapshot: ProviderSnapshot) -> None:
        """Honour the saved active model only if live discovery confirms it"""
        hint = self.store.get("active_model")
        if isinstance(hint, dict) and hint.get("model_id"):
            try:
                provider = ProviderId.parse(hint.get("provider", ""))
            except ConfigError:
                provider = None
            if provider is not None and snapshot.is_reachable(provider):
                target = snapshot.get(provider)
                if not target.is_local or target.has_model(hint["model_id"]):
                    self.router.switch_to_model(hint["model_id"], provider)
                    return
            logger.info(f"Saved active model {hint['model_id']} is not available; auto-selecting")
        self.router.auto_select(snapshot)

    def refresh_recommendations(self, top_n: Optional[int] = None) -> RecommendationSet:
        self._recommendations = self.engine.recommend(
            self._use_case,
            self._priority,
            self.profiler.latest,
            self.catalog.entries(),
            self.registry.snapshot,
            top_n=top_n if top_n is not None else self.top_n,
        )
        self._notify("recommendations", self._recommendations)
        return self._recommendations

    def set_use_case(self, use_case: Union[str, UseCase]) -> RecommendationSet:
        self._use_case = UseCase.parse(use_case)
        self.store.set("use_case", self._use_case.value)
        return self.refresh_recommendations()

    def set_priority(self, priority: Union[str, Priority]) -> RecommendationSet:
        self._priority = Priority.parse(priority)
        self.store.set("priority", self._priority.value)
        return self.refresh_recommendations()

    def toggle_favorite(self, model_id: str) -> bool:
        favorite = self.catalog.toggle_favorite(model_id)
        self._notify("catalog", self.catalog.entries())
        return favorite

    async def run_benchmarks(
        self,
        model_ids: Sequence[str],
        prompt: Optional[str] = None,
        runs: int = 1,
        batch_size: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[BenchmarkResult]:
        results = await self.benchmarker.run(
            model_ids, prompt=prompt, runs=runs, batch_size=batch_size, on_progress=on_progress
        )
        self._benchmarks = self._benchmarks + tuple(results)
        self._notify("benchmarks", self._benchmarks)
        return results

    def cancel_benchmarks(self) -> None:
        self.benchmarker.cancel()

    async def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        system_prompt: Optional[str] = None,
    ) -> Generation:
        return await self.router.generate(
            prompt, model=model, temperature=temperature, max_tokens=max_tokens, system_prompt=system_prompt
        )

    def generate_stream(
        self,
        prompt: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        system_prompt: Optional[str] = None,
    ) -> AsyncIterator[StreamChunk]:
        return self.router.generate_stream(
            prompt, model=model, temperature=temperature, max_tokens=max_tokens, system_prompt=system_prompt
        )

    def switch_to_model(self, model_id: str, provider: Optional[ProviderId] = None) -> ActiveModel:
        return self.router.switch_to_model(model_id, provider)

    def _pull_target(self, model_id: str, provider: Optional[ProviderId]) -> Tuple[ProviderId, Optional[str]]:
        entry = self.catalog.get(model_id)
        if entry is not None:
            if provider is None:
                provider = entry.provider
            command = entry.pull_command if provider == entry.provider else None
            return provider, command
        if provider is None:
            if "/" in model_id:
                raise UnknownModelError(
                    f"Unknown model {model_id}; pass a provider to pull it", model_id=model_id
                )
            provider = ProviderId.OLLAMA
        return provider, None

    async def pull_model(
        self,
        model_id: str,
        provider: Optional[ProviderId] = None,
        on_progress: Optional[PullProgressCallback] = None,
    ) -> PullResult:
        """Pull a model, then rediscover so installed state reflects it"""
        provider, command = self._pull_target(model_id, provider)
        result = await self.registry.pull_model(model_id, provider, command=command, on_progress=on_progress)
        if result.success:
            await self.discover_providers()
        return result

    def cancel_pull(self, model_id: str) -> bool:
        return self.registry.cancel_pull(model_id)

    def start_auto_refresh(self, interval: float = 30.0) -> AutoRefresh:
        """Rediscover providers every interval seconds until the handle is stopped"""
        if interval <= 0:
            raise ConfigError("Auto-refresh interval must be positive")

        async def loop() -> None:
            while True:
                await asyncio.sleep(interval)
                try:
                    await self.discover_providers()
                except Exception:
                    logger.exception("Periodic provider discovery failed")

        logger.debug(f"Auto-refresh every {interval}s")
        return AutoRefresh(asyncio.create_task(loop()))

    def export_recommendations(self, format: str = "json") -> str:
        return export_records([r.to_dict() for r in self._recommendations], format)

    def export_benchmarks(self, format: str = "json") -> str:
        return export_records([r.to_dict() for r in self._benchmarks], format)
