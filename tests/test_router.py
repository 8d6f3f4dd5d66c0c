"""
Tests for the fallback router
"""

from unittest.mock import AsyncMock

import httpx
import pytest

from llm_router.catalog import ModelCatalog
from llm_router.config import ProviderId
from llm_router.errors import (
    AllProvidersExhausted,
    ProviderNotConfigured,
    ProviderResponseError,
    ProviderUnreachable,
    UnknownModelError,
)
from llm_router.registry import ProviderRegistry
from llm_router.router import ActiveModel, FallbackRouter, RouterState

LLAMA = "llama3.2:3b-instruct-q4_K_M"
GEMMA = "google/gemma-3-12b"
CLOUD = "openai/gpt-4o-mini"


@pytest.fixture
def registry(config, backend, keys):
    backend.models[ProviderId.LMSTUDIO] = [GEMMA]
    backend.models[ProviderId.OPENROUTER] = [CLOUD]
    chain = (ProviderId.OLLAMA, ProviderId.LMSTUDIO, ProviderId.OPENROUTER)
    return ProviderRegistry(config.with_overrides(precedence=chain), keys, transport=backend.transport())


@pytest.fixture
def router(registry):
    return FallbackRouter(registry, ModelCatalog(lambda: registry.snapshot))


@pytest.fixture
def transitions(router):
    seen = []
    router.subscribe(lambda state, active: seen.append((state, active)))
    return seen


class TestAutoSelect:
    """Test implicit model selection"""

    @pytest.mark.asyncio
    async def test_prefers_local_runtime(self, registry, router):
        """Test the first provider in precedence wins"""
        try:
            await registry.discover()
            active = router.auto_select()
        finally:
            await registry.aclose()

        assert active == ActiveModel(ProviderId.OLLAMA, LLAMA)
        assert router.state == RouterState.ACTIVE
        assert str(active) == f"ollama:{LLAMA}"

    @pytest.mark.asyncio
    async def test_cloud_default_model(self, registry, router, backend):
        """Test a cloud provider uses its configured default model"""
        backend.models[ProviderId.OLLAMA] = None
        backend.models[ProviderId.LMSTUDIO] = None
        try:
            await registry.discover()
            active = router.auto_select()
        finally:
            await registry.aclose()

        assert active == ActiveModel(ProviderId.OPENROUTER, CLOUD)

    @pytest.mark.asyncio
    async def test_nothing_available(self, registry, router, backend):
        """Test auto_select stays idle without providers"""
        backend.models[ProviderId.OLLAMA] = None
        backend.models[ProviderId.LMSTUDIO] = None
        backend.models[ProviderId.OPENROUTER] = None
        try:
            await registry.discover()
            assert router.auto_select() is None
            with pytest.raises(AllProvidersExhausted) as exc_info:
                await router.generate("hello")
        finally:
            await registry.aclose()

        assert router.state == RouterState.IDLE
        assert exc_info.value.attempts == []


class TestFallback:
    """Test generation with fallback"""

    @pytest.mark.asyncio
    async def test_success_keeps_active(self, registry, router, backend, transitions):
        """Test a successful call leaves the active model unchanged"""
        try:
            await registry.discover()
            router.auto_select()
            generation = await router.generate("hello")
        finally:
            await registry.aclose()

        assert generation.provider == ProviderId.OLLAMA
        assert router.active == ActiveModel(ProviderId.OLLAMA, LLAMA)
        assert transitions == [(RouterState.ACTIVE, ActiveModel(ProviderId.OLLAMA, LLAMA))]

    @pytest.mark.asyncio
    async def test_third_provider_answers(self, registry, router, backend, transitions):
        """Test the first two failing providers fall through to the third"""
        backend.fail_generate[ProviderId.OLLAMA] = 500
        backend.fail_generate[ProviderId.LMSTUDIO] = 503
        try:
            await registry.discover()
            router.auto_select()
            generation = await router.generate("hello")
        finally:
            await registry.aclose()

        assert generation.provider == ProviderId.OPENROUTER
        assert router.active == ActiveModel(ProviderId.OPENROUTER, CLOUD)
        assert router.state == RouterState.ACTIVE
        assert (RouterState.DEGRADED, ActiveModel(ProviderId.OLLAMA, LLAMA)) in transitions
        assert transitions[-1] == (RouterState.ACTIVE, ActiveModel(ProviderId.OPENROUTER, CLOUD))

        posts = [p for p, method, path in backend.requests if method == "POST"]
        assert posts == [ProviderId.OLLAMA, ProviderId.LMSTUDIO, ProviderId.OPENROUTER]

    @pytest.mark.asyncio
    async def test_all_providers_exhausted(self, registry, router, backend):
        """Test exhaustion raises and keeps the previous active model"""
        backend.fail_generate[ProviderId.OLLAMA] = 500
        backend.fail_generate[ProviderId.LMSTUDIO] = 500
        backend.fail_generate[ProviderId.OPENROUTER] = 502
        try:
            await registry.discover()
            router.auto_select()
            with pytest.raises(AllProvidersExhausted) as exc_info:
                await router.generate("hello")
        finally:
            await registry.aclose()

        error = exc_info.value
        assert [provider for provider, _, _ in error.attempts] == ["ollama", "lmstudio", "openrouter"]
        assert all(isinstance(e, ProviderResponseError) for _, _, e in error.attempts)
        assert error.to_dict()["kind"] == "all_providers_exhausted"
        assert router.active == ActiveModel(ProviderId.OLLAMA, LLAMA)
        assert router.state == RouterState.FAILED

    @pytest.mark.asyncio
    async def test_timeout_falls_back(self, registry, router, backend):
        """Test a timed out provider is treated like any other failure"""
        backend.fail_generate[ProviderId.OLLAMA] = httpx.ReadTimeout
        try:
            await registry.discover()
            router.auto_select()
            generation = await router.generate("hello")
        finally:
            await registry.aclose()

        assert generation.provider == ProviderId.LMSTUDIO
        assert router.active == ActiveModel(ProviderId.LMSTUDIO, GEMMA)

    @pytest.mark.asyncio
    async def test_not_configured_is_not_retried(self, registry, router):
        """Test credential errors surface immediately without fallback"""
        try:
            await registry.discover()
            router.auto_select()
            registry.generate = AsyncMock(side_effect=ProviderNotConfigured("OpenRouter API key not configured"))
            with pytest.raises(ProviderNotConfigured):
                await router.generate("hello")
        finally:
            await registry.aclose()

        assert registry.generate.await_count == 1
        assert router.state == RouterState.ACTIVE

    @pytest.mark.asyncio
    async def test_malformed_reply_falls_back(self, registry, router, backend):
        """Test a reply body of the wrong shape moves on to the next provider"""
        backend.bodies[(ProviderId.OLLAMA, "/api/generate")] = []
        try:
            await registry.discover()
            router.auto_select()
            generation = await router.generate("hello")
        finally:
            await registry.aclose()

        assert generation.provider == ProviderId.LMSTUDIO
        assert router.active == ActiveModel(ProviderId.LMSTUDIO, GEMMA)
        assert router.state == RouterState.ACTIVE

    @pytest.mark.asyncio
    async def test_rejected_key_on_fallback_continues(self, config, backend, keys):
        """Test a fallback provider rejecting its key does not end the chain"""
        backend.models[ProviderId.OPENROUTER] = [CLOUD]
        backend.models[ProviderId.GEMINI] = ["gemini-2.0-flash"]
        backend.fail_generate[ProviderId.OLLAMA] = 500
        backend.fail_generate[ProviderId.OPENROUTER] = 401
        chain = (ProviderId.OLLAMA, ProviderId.OPENROUTER, ProviderId.GEMINI)
        registry = ProviderRegistry(config.with_overrides(precedence=chain), keys, transport=backend.transport())
        router = FallbackRouter(registry, ModelCatalog(lambda: registry.snapshot))
        try:
            await registry.discover()
            router.auto_select()
            generation = await router.generate("hello")
        finally:
            await registry.aclose()

        assert generation.provider == ProviderId.GEMINI
        assert router.active == ActiveModel(ProviderId.GEMINI, "gemini-2.0-flash")
        assert router.state == RouterState.ACTIVE

    @pytest.mark.asyncio
    async def test_rejected_key_last_is_exhaustion(self, registry, router, backend):
        """Test a rejected key on the last candidate ends in FAILED, not ACTIVE"""
        backend.fail_generate[ProviderId.OLLAMA] = 500
        backend.fail_generate[ProviderId.LMSTUDIO] = 500
        backend.fail_generate[ProviderId.OPENROUTER] = 401
        try:
            await registry.discover()
            router.auto_select()
            with pytest.raises(AllProvidersExhausted) as exc_info:
                await router.generate("hello")
        finally:
            await registry.aclose()

        assert isinstance(exc_info.value.attempts[-1][2], ProviderNotConfigured)
        assert router.state == RouterState.FAILED

    @pytest.mark.asyncio
    async def test_explicit_model(self, registry, router):
        """Test an explicit model is tried on its serving provider first"""
        try:
            await registry.discover()
            router.auto_select()
            generation = await router.generate("hello", model=GEMMA, max_tokens=32)
        finally:
            await registry.aclose()

        assert generation.provider == ProviderId.LMSTUDIO
        assert generation.model == GEMMA

    @pytest.mark.asyncio
    async def test_unknown_model(self, registry, router):
        """Test an unknown explicit model fails without any request"""
        try:
            await registry.discover()
            with pytest.raises(UnknownModelError):
                await router.generate("hello", model="does-not-exist:1b")
        finally:
            await registry.aclose()


class TestSwitchAndReresolve:
    """Test explicit switches and reaction to discovery"""

    @pytest.mark.asyncio
    async def test_switch_to_model(self, registry, router):
        """Test an explicit switch bypasses precedence"""
        try:
            await registry.discover()
            router.auto_select()
            active = router.switch_to_model(GEMMA)
        finally:
            await registry.aclose()

        assert active == ActiveModel(ProviderId.LMSTUDIO, GEMMA)
        assert router.active == active

    @pytest.mark.asyncio
    async def test_switch_to_offline_provider(self, registry, router, backend):
        """Test switching to an unreachable provider fails and keeps the active model"""
        backend.models[ProviderId.LMSTUDIO] = None
        try:
            await registry.discover()
            router.auto_select()
            with pytest.raises(ProviderUnreachable, match="Provider lmstudio is unavailable"):
                router.switch_to_model(GEMMA)
        finally:
            await registry.aclose()

        assert router.active == ActiveModel(ProviderId.OLLAMA, LLAMA)

    @pytest.mark.asyncio
    async def test_switch_to_missing_local_model(self, registry, router):
        """Test a local model that is not installed cannot be activated"""
        try:
            await registry.discover()
            with pytest.raises(UnknownModelError):
                router.switch_to_model("mistral:7b-instruct-v0.3-q4_K_M")
        finally:
            await registry.aclose()

        assert router.active is None

    @pytest.mark.asyncio
    async def test_provider_drops_offline(self, registry, router, backend):
        """Test the router moves off a provider that went offline"""
        try:
            await registry.discover()
            router.auto_select()
            backend.models[ProviderId.OLLAMA] = None
            await registry.discover()
        finally:
            await registry.aclose()

        assert router.active == ActiveModel(ProviderId.LMSTUDIO, GEMMA)

    @pytest.mark.asyncio
    async def test_same_model_elsewhere_preferred(self, registry, router, backend):
        """Test the same model on another provider beats the precedence chain"""
        try:
            await registry.discover()
            router.auto_select()
            backend.models[ProviderId.OLLAMA] = None
            backend.models[ProviderId.OPENROUTER] = [CLOUD, LLAMA]
            await registry.discover()
        finally:
            await registry.aclose()

        assert router.active == ActiveModel(ProviderId.OPENROUTER, LLAMA)

    @pytest.mark.asyncio
    async def test_close_stops_listening(self, registry, router, backend):
        """Test a closed router ignores later snapshots"""
        try:
            await registry.discover()
            router.auto_select()
            router.close()
            backend.models[ProviderId.OLLAMA] = None
            await registry.discover()
        finally:
            await registry.aclose()

        assert router.active == ActiveModel(ProviderId.OLLAMA, LLAMA)


class TestStreaming:
    """Test streamed generation with fallback"""

    @pytest.mark.asyncio
    async def test_stream_from_active(self, registry, router, transitions):
        """Test chunks come from the active model"""
        try:
            await registry.discover()
            router.auto_select()
            chunks = [chunk async for chunk in router.generate_stream("hello")]
        finally:
            await registry.aclose()

        assert "".join(c.text for c in chunks) == "Benchmark OK"
        assert all(c.provider == ProviderId.OLLAMA for c in chunks)
        assert not any(c.restarted for c in chunks)
        assert router.state == RouterState.ACTIVE

    @pytest.mark.asyncio
    async def test_failure_before_output(self, registry, router, backend):
        """Test a provider failing before any text hands over without a restart"""
        backend.fail_generate[ProviderId.OLLAMA] = 500
        try:
            await registry.discover()
            router.auto_select()
            chunks = [chunk async for chunk in router.generate_stream("hello")]
        finally:
            await registry.aclose()

        assert all(c.provider == ProviderId.LMSTUDIO for c in chunks)
        assert not chunks[0].restarted
        assert router.active == ActiveModel(ProviderId.LMSTUDIO, GEMMA)

    @pytest.mark.asyncio
    async def test_failure_mid_reply_restarts(self, registry, router, backend):
        """Test the next provider's first chunk is flagged when partial text was sent"""
        backend.stream_break[ProviderId.OLLAMA] = 1
        try:
            await registry.discover()
            router.auto_select()
            chunks = [chunk async for chunk in router.generate_stream("hello")]
        finally:
            await registry.aclose()

        assert chunks[0].provider == ProviderId.OLLAMA
        assert chunks[0].text == "Benchmark"
        restarted = [c for c in chunks if c.restarted]
        assert len(restarted) == 1
        assert restarted[0] is chunks[1]
        assert restarted[0].provider == ProviderId.LMSTUDIO
        assert "".join(c.text for c in chunks[1:]) == "Benchmark OK"
        assert chunks[-1].done

    @pytest.mark.asyncio
    async def test_stream_exhausted(self, registry, router, backend):
        """Test every provider failing raises after all were tried"""
        backend.fail_generate[ProviderId.OLLAMA] = 500
        backend.stream_break[ProviderId.LMSTUDIO] = 0
        backend.fail_generate[ProviderId.OPENROUTER] = 502
        try:
            await registry.discover()
            router.auto_select()
            with pytest.raises(AllProvidersExhausted) as exc_info:
                async for _ in router.generate_stream("hello"):
                    pass
        finally:
            await registry.aclose()

        assert [provider for provider, _, _ in exc_info.value.attempts] == ["ollama", "lmstudio", "openrouter"]
        assert router.state == RouterState.FAILED
