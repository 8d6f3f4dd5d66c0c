"""
Active model selection and generation with fallback across providers
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import AsyncIterator, Callable, List, Optional

from .adapters import Generation, GenerationRequest, StreamChunk
from .catalog import ModelCatalog
from .config import ProviderId
from .errors import (
    AllProvidersExhausted,
    LLMRouterError,
    ProviderError,
    ProviderNotConfigured,
    ProviderUnreachable,
    UnknownModelError,
)
from .registry import ProviderRegistry, ProviderSnapshot

logger = logging.getLogger(__name__)


class RouterState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass(frozen=True)
class ActiveModel:
    provider: ProviderId
    model_id: str

    def __str__(self) -> str:
        return f"{self.provider.value}:{self.model_id}"


RouterListener = Callable[[RouterState, Optional[ActiveModel]], None]


class FallbackRouter:
    """
    Owns the session's single active model and serves every generation call.

    State machine:
        IDLE -> ACTIVE        auto_select() or switch_to_model()
        ACTIVE -> DEGRADED    the active provider failed a call
        DEGRADED -> ACTIVE    the next candidate in precedence order answered
                              and becomes the active model
        DEGRADED -> FAILED    every candidate failed; AllProvidersExhausted is
                              raised and the previous active model is kept

    Candidates are tried strictly one after another, never in parallel. The
    router listens to registry snapshots: when the active provider drops
    offline it re-resolves instead of sending requests to a dead provider.
    """

    def __init__(self, registry: ProviderRegistry, catalog: ModelCatalog):
        self.registry = registry
        self.catalog = catalog
        self.config = registry.config
        self._state = RouterState.IDLE
        self._active: Optional[ActiveModel] = None
        self._listeners: List[RouterListener] = []
        self._unsubscribe = registry.subscribe(self._on_snapshot)

    @property
    def state(self) -> RouterState:
        return self._state

    @property
    def active(self) -> Optional[ActiveModel]:
        return self._active

    def subscribe(self, listener: RouterListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def close(self) -> None:
        self._unsubscribe()

    def _transition(self, state: RouterState, active: Optional[ActiveModel]) -> None:
        changed = state != self._state or active != self._active
        if active != self._active:
            logger.info(f"Active model: {self._active or 'none'} -> {active or 'none'}")
        self._state = state
        self._active = active
        if not changed:
            return
        for listener in list(self._listeners):
            try:
                listener(state, active)
            except Exception:
                logger.exception("Router listener failed")

    def _on_snapshot(self, snapshot: ProviderSnapshot) -> None:
        active = self._active
        if active is None:
            return
        provider = snapshot.get(active.provider)
        if provider is not None and provider.reachable and (not provider.is_local or provider.has_model(active.model_id)):
            return

        logger.warning(f"Active provider {active.provider.value} is no longer serving {active.model_id}")
        # Same model elsewhere first, then the precedence chain
        serving = snapshot.serving(active.model_id)
        if serving:
            self._transition(RouterState.ACTIVE, ActiveModel(serving[0].id, active.model_id))
            return
        self.auto_select(snapshot)

    def _default_model(self, snapshot: ProviderSnapshot, provider_id: ProviderId) -> Optional[str]:
        provider = snapshot.get(provider_id)
        if provider is None or not provider.reachable:
            return None
        if provider.is_local:
            return provider.models[0] if provider.models else None
        return self.config.cloud_models.get(provider_id) or (provider.models[0] if provider.models else None)

    def _chain(self, snapshot: ProviderSnapshot) -> List[ActiveModel]:
        chain = []
        for provider_id in self.config.precedence:
            model_id = self._default_model(snapshot, provider_id)
            if model_id is not None:
                chain.append(ActiveModel(provider_id, model_id))
        return chain

    def auto_select(self, snapshot: Optional[ProviderSnapshot] = None) -> Optional[ActiveModel]:
        """Pick the first available model by provider precedence"""
        snapshot = snapshot or self.registry.snapshot
        chain = self._chain(snapshot)
        if not chain:
            logger.warning("No reachable provider has a usable model")
            self._transition(RouterState.IDLE, None)
            return None
        self._transition(RouterState.ACTIVE, chain[0])
        return chain[0]

    def switch_to_model(self, model_id: str, provider: Optional[ProviderId] = None) -> ActiveModel:
        """Make model_id active now, bypassing precedence; the provider must be reachable"""
        snapshot = self.registry.snapshot

        if provider is None:
            serving = snapshot.serving(model_id)
            if serving:
                provider = serving[0].id
            else:
                entry = self.catalog.get(model_id)
                if entry is None:
                    raise UnknownModelError(f"Unknown model: {model_id}", model_id=model_id)
                provider = entry.provider

        target = snapshot.get(provider)
        if target is None or not target.reachable:
            raise ProviderUnreachable(
                f"Provider {provider.value} is unavailable", provider=provider.value, model_id=model_id
            )
        if target.is_local and not target.has_model(model_id):
            raise UnknownModelError(
                f"{model_id} is not installed on {provider.value}", provider=provider.value, model_id=model_id
            )

        resolved = self.registry.resolve_model(model_id, provider)
        active = ActiveModel(provider, resolved)
        self._transition(RouterState.ACTIVE, active)
        return active

    def _candidates(self, model: Optional[str]) -> List[ActiveModel]:
        snapshot = self.registry.snapshot
        candidates: List[ActiveModel] = []

        if model is not None:
            for provider in snapshot.serving(model):
                candidates.append(ActiveModel(provider.id, self.registry.resolve_model(model, provider.id)))
            entry = self.catalog.get(model)
            if entry is None and not candidates:
                raise UnknownModelError(f"Unknown model: {model}", model_id=model)
            if (
                entry is not None
                and entry.is_cloud
                and snapshot.is_reachable(entry.provider)
                and all(c.provider != entry.provider for c in candidates)
            ):
                candidates.append(ActiveModel(entry.provider, entry.id))
        elif self._active is not None and snapshot.is_reachable(self._active.provider):
            candidates.append(self._active)

        for candidate in self._chain(snapshot):
            if all(c.provider != candidate.provider for c in candidates):
                candidates.append(candidate)
        return candidates

    def _request(
        self,
        candidate: ActiveModel,
        prompt: str,
        temperature: Optional[float],
        max_tokens: Optional[int],
        system_prompt: Optional[str],
    ) -> GenerationRequest:
        return GenerationRequest(
            prompt=prompt,
            model=candidate.model_id,
            temperature=self.config.temperature if temperature is None else temperature,
            max_tokens=max_tokens or self.config.max_tokens,
            system_prompt=system_prompt,
        )

    def _record_failure(self, index: int, candidate: ActiveModel, error: LLMRouterError, attempts: List) -> None:
        """
        Note a failed candidate, or re-raise when the failure must not fall through.

        Transient provider errors always fall through. A rejected credential
        only falls through for a fallback candidate; on the first target the
        caller has to fix its configuration.
        """
        if not isinstance(error, ProviderError) and not (
            isinstance(error, ProviderNotConfigured) and index > 0
        ):
            raise error
        logger.warning(f"{candidate} failed: {error.message}")
        attempts.append((candidate.provider.value, candidate.model_id, error))
        if self._active is not None:
            self._transition(RouterState.DEGRADED, self._active)

    def _succeeded(self, index: int, candidate: ActiveModel, attempts: List) -> None:
        if index > 0:
            logger.info(f"Fell back to {candidate} after {len(attempts)} failed attempt(s)")
        if index > 0 or self._active is None:
            self._transition(RouterState.ACTIVE, candidate)
        else:
            self._transition(RouterState.ACTIVE, self._active)

    def _exhausted(self, candidates: List[ActiveModel], attempts: List) -> AllProvidersExhausted:
        if not candidates:
            return AllProvidersExhausted(
                "No LLM providers available. Start Ollama or LM Studio, or configure a cloud API key.", attempts
            )
        self._transition(RouterState.FAILED, self._active)
        tried = ", ".join(f"{p}:{m}" for p, m, _ in attempts)
        return AllProvidersExhausted(f"All providers exhausted (tried {tried})", attempts)

    async def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        system_prompt: Optional[str] = None,
    ) -> Generation:
        candidates = self._candidates(model)
        attempts: List = []

        for index, candidate in enumerate(candidates):
            request = self._request(candidate, prompt, temperature, max_tokens, system_prompt)
            try:
                generation = await self.registry.generate(candidate.provider, request)
            except LLMRouterError as e:
                self._record_failure(index, candidate, e, attempts)
                continue
            self._succeeded(index, candidate, attempts)
            return generation

        raise self._exhausted(candidates, attempts)

    async def generate_stream(
        self,
        prompt: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        system_prompt: Optional[str] = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream a reply, falling back to the next candidate when a provider fails.

        A provider may fail after it already produced text. The next
        candidate then starts over, and its first chunk carries
        restarted=True so the consumer can discard the partial reply.
        """
        candidates = self._candidates(model)
        attempts: List = []
        emitted = False

        for index, candidate in enumerate(candidates):
            request = self._request(candidate, prompt, temperature, max_tokens, system_prompt)
            first = True
            try:
                async for chunk in self.registry.stream(candidate.provider, request):
                    if first and emitted:
                        chunk = replace(chunk, restarted=True)
                    first = False
                    emitted = emitted or bool(chunk.text)
                    yield chunk
            except LLMRouterError as e:
                self._record_failure(index, candidate, e, attempts)
                continue
            self._succeeded(index, candidate, attempts)
            return

        raise self._exhausted(candidates, attempts)
