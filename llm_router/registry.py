"""
Provider discovery, generation dispatch and model pulls
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

import httpx

from .adapters import (
    Generation,
    GenerationRequest,
    Provider,
    ProviderAdapter,
    PullProgressCallback,
    StreamChunk,
    build_adapters,
    find_model,
)
from .config import ProviderId, RouterConfig
from .errors import ModelPullFailed, ProviderUnreachable, PullInProgress
from .keys import KeyStore

logger = logging.getLogger(__name__)

SnapshotListener = Callable[["ProviderSnapshot"], None]


@dataclass(frozen=True)
class ProviderSnapshot:
    """Aggregate result of one discover() call, ordered by precedence"""
    providers: Tuple[Provider, ...] = ()
    generation: int = 0
    taken_at: Optional[datetime] = None

    def get(self, provider_id: ProviderId) -> Optional[Provider]:
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        return None

    def is_reachable(self, provider_id: ProviderId) -> bool:
        provider = self.get(provider_id)
        return provider is not None and provider.reachable

    def reachable(self) -> Tuple[Provider, ...]:
        return tuple(p for p in self.providers if p.reachable)

    def serving(self, model_id: str) -> Tuple[Provider, ...]:
        """Reachable providers that currently list model_id"""
        return tuple(p for p in self.providers if p.reachable and p.has_model(model_id))


@dataclass(frozen=True)
class PullResult:
    model_id: str
    provider: ProviderId
    success: bool
    cancelled: bool = False
    error: Optional[ModelPullFailed] = None
    finished_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


class ProviderRegistry:
    """
    Probes the fixed provider set and owns the shared HTTP client.

    discover() may overlap with itself: each call is numbered when it
    starts and a result is only committed if no later-started call has
    already committed, so fresh data is never replaced by stale data.
    """

    def __init__(
        self,
        config: RouterConfig,
        keys: Optional[KeyStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self._client = httpx.AsyncClient(transport=transport, timeout=config.request_timeout)
        self.adapters: Dict[ProviderId, ProviderAdapter] = build_adapters(config, self._client, keys)
        self._snapshot = ProviderSnapshot()
        self._discoveries_started = 0
        self._pulls: Dict[str, "asyncio.Task[PullResult]"] = {}
        self._listeners: List[SnapshotListener] = []

    @property
    def snapshot(self) -> ProviderSnapshot:
        return self._snapshot

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _ordered_adapters(self) -> List[ProviderAdapter]:
        ordered = [self.adapters[pid] for pid in self.config.precedence if pid in self.adapters]
        ordered.extend(a for pid, a in self.adapters.items() if pid not in self.config.precedence)
        return ordered

    async def discover(self) -> ProviderSnapshot:
        """Probe every provider in parallel and publish the aggregate snapshot"""
        self._discoveries_started += 1
        generation = self._discoveries_started

        providers = await asyncio.gather(*(self._probe(a) for a in self._ordered_adapters()))

        if generation < self._snapshot.generation:
            logger.debug(f"Discarding discovery #{generation}; #{self._snapshot.generation} is newer")
            return self._snapshot

        snapshot = ProviderSnapshot(
            providers=tuple(providers),
            generation=generation,
            taken_at=datetime.now(timezone.utc),
        )
        self._snapshot = snapshot
        online = ", ".join(p.id.value for p in snapshot.reachable()) or "none"
        logger.info(f"Discovery #{generation}: online providers: {online}")

        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Provider snapshot listener failed")
        return snapshot

    async def _probe(self, adapter: ProviderAdapter) -> Provider:
        try:
            return await asyncio.wait_for(adapter.probe(), timeout=self.config.probe_timeout)
        except asyncio.TimeoutError:
            logger.debug(f"{adapter.display_name} probe timed out")
            return Provider(
                id=adapter.provider_id,
                reachable=False,
                error=f"probe timed out after {self.config.probe_timeout}s",
            )

    async def generate(
        self,
        provider_id: ProviderId,
        request: GenerationRequest,
        timeout: Optional[float] = None,
    ) -> Generation:
        """Send one request to one provider, bounded by timeout"""
        timeout = timeout or self.config.request_timeout
        adapter = self.adapters[provider_id]
        try:
            return await asyncio.wait_for(adapter.generate(request, timeout), timeout=timeout)
        except asyncio.TimeoutError:
            raise ProviderUnreachable(
                f"{adapter.display_name} timed out after {timeout}s",
                provider=provider_id.value,
                model_id=request.model,
            ) from None

    def stream(
        self,
        provider_id: ProviderId,
        request: GenerationRequest,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream one request from one provider; timeout bounds each read"""
        return self.adapters[provider_id].stream(request, timeout or self.config.request_timeout)

    def resolve_model(self, model_id: str, provider_id: ProviderId) -> str:
        """Provider-side spelling of model_id from the latest snapshot"""
        provider = self._snapshot.get(provider_id)
        if provider is not None:
            return find_model(provider.models, model_id) or model_id
        return model_id

    def is_pulling(self, model_id: str) -> bool:
        task = self._pulls.get(model_id)
        return task is not None and not task.done()

    def start_pull(
        self,
        model_id: str,
        provider_id: ProviderId,
        command: Optional[str] = None,
        on_progress: Optional[PullProgressCallback] = None,
    ) -> "asyncio.Task[PullResult]":
        """Schedule a pull as an independent task; one in-flight pull per model id"""
        if self.is_pulling(model_id):
            raise PullInProgress(
                f"A pull for {model_id} is already in progress",
                provider=provider_id.value,
                model_id=model_id,
            )
        adapter = self.adapters[provider_id]
        if not adapter.is_local:
            raise ModelPullFailed(
                f"{adapter.display_name} models are hosted remotely and cannot be pulled",
                provider=provider_id.value,
                model_id=model_id,
            )

        task = asyncio.create_task(self._run_pull(adapter, model_id, command, on_progress))
        self._pulls[model_id] = task

        def forget(done: "asyncio.Task[PullResult]") -> None:
            if self._pulls.get(model_id) is done:
                del self._pulls[model_id]

        task.add_done_callback(forget)
        return task

    async def pull_model(
        self,
        model_id: str,
        provider_id: ProviderId,
        command: Optional[str] = None,
        on_progress: Optional[PullProgressCallback] = None,
    ) -> PullResult:
        task = self.start_pull(model_id, provider_id, command, on_progress)
        await asyncio.wait({task})
        if task.cancelled():
            return PullResult(model_id=model_id, provider=provider_id, success=False, cancelled=True)
        return task.result()

    def cancel_pull(self, model_id: str) -> bool:
        task = self._pulls.get(model_id)
        if task is None or task.done():
            return False
        logger.info(f"Cancelling pull of {model_id}")
        return task.cancel()

    async def _run_pull(
        self,
        adapter: ProviderAdapter,
        model_id: str,
        command: Optional[str],
        on_progress: Optional[PullProgressCallback],
    ) -> PullResult:
        provider_id = adapter.provider_id
        logger.info(f"Pulling {model_id} via {adapter.display_name}")
        try:
            await asyncio.wait_for(
                adapter.pull(model_id, command, on_progress), timeout=self.config.pull_timeout
            )
        except asyncio.TimeoutError:
            error = ModelPullFailed(
                f"Pull of {model_id} timed out after {self.config.pull_timeout}s",
                provider=provider_id.value,
                model_id=model_id,
            )
            logger.warning(error.message)
            return PullResult(model_id=model_id, provider=provider_id, success=False, error=error)
        except ModelPullFailed as e:
            logger.warning(f"Failed to pull model {model_id}: {e.message}")
            return PullResult(model_id=model_id, provider=provider_id, success=False, error=e)

        logger.info(f"Successfully pulled model: {model_id}")
        return PullResult(model_id=model_id, provider=provider_id, success=True)

    async def aclose(self) -> None:
        for task in list(self._pulls.values()):
            task.cancel()
        if self._pulls:
            await asyncio.gather(*self._pulls.values(), return_exceptions=True)
        await self._client.aclose()
