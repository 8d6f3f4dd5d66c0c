"""
HTTP adapters for each known provider.

Every adapter converts its vendor's response shape into the common
Provider / Generation types at this boundary, and every transport failure
into a typed error from llm_router.errors.
"""

import asyncio
import json
import logging
import shlex
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

import httpx

from .config import ProviderId, RouterConfig
from .errors import (
    LLMRouterError,
    ModelPullFailed,
    ProviderNotConfigured,
    ProviderResponseError,
    ProviderUnreachable,
)
from .keys import KeyStore

logger = logging.getLogger(__name__)

PullProgressCallback = Callable[[str, Optional[int], Optional[int]], None]


@dataclass(frozen=True)
class Provider:
    """Result of one reachability probe. Rebuilt on every discovery, never persisted."""
    id: ProviderId
    reachable: bool
    models: Tuple[str, ...] = ()
    latency_ms: Optional[float] = None
    configured: bool = True
    error: Optional[str] = None
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_local(self) -> bool:
        return self.id.is_local

    def has_model(self, model_id: str) -> bool:
        return find_model(self.models, model_id) is not None


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    model: str
    temperature: float = 0.91
    max_tokens: int = 2048
    system_prompt: Optional[str] = None


@dataclass(frozen=True)
class Generation:
    text: str
    provider: ProviderId
    model: str
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    finish_reason: Optional[str] = None
    # Generation time reported by the provider itself, if any
    duration_s: Optional[float] = None


@dataclass(frozen=True)
class StreamChunk:
    text: str
    provider: ProviderId
    model: str
    done: bool = False
    # Set on the first chunk of a fallback provider once earlier output was discarded
    restarted: bool = False


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def normalize_model_id(model_id: str) -> str:
    name = model_id.strip().lower()
    if name.startswith("models/"):
        name = name[len("models/"):]
    if name.endswith(":latest"):
        name = name[: -len(":latest")]
    return name


def find_model(models: Tuple[str, ...], model_id: str) -> Optional[str]:
    """Return the provider's own spelling of model_id, if it serves it"""
    wanted = normalize_model_id(model_id)
    for name in models:
        if normalize_model_id(name) == wanted:
            return name
    return None


class ProviderAdapter:
    """Base adapter: one instance per ProviderId, sharing the registry's HTTP client"""

    provider_id: ProviderId
    display_name = "Provider"
    requires_key = False

    def __init__(self, config: RouterConfig, client: httpx.AsyncClient, keys: Optional[KeyStore] = None):
        self.config = config
        self.base_url = config.base_url(self.provider_id)
        self._client = client
        self._keys = keys

    @property
    def is_local(self) -> bool:
        return self.provider_id.is_local

    def _api_key(self) -> Optional[str]:
        if self._keys is None:
            return None
        return self._keys.get_key(self.provider_id)

    def _require_key(self, model_id: Optional[str] = None) -> str:
        key = self._api_key()
        if not key:
            raise ProviderNotConfigured(
                f"{self.display_name} API key not configured",
                provider=self.provider_id.value,
                model_id=model_id,
            )
        return key

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _request(
        self,
        method: str,
        path: str,
        timeout: float,
        model_id: Optional[str] = None,
        **kwargs: Any,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(
                method, url, headers=self._headers(), timeout=timeout, **kwargs
            )
        except httpx.TimeoutException as e:
            raise ProviderUnreachable(
                f"{self.display_name} timed out after {timeout}s",
                provider=self.provider_id.value,
                model_id=model_id,
            ) from e
        except httpx.TransportError as e:
            raise ProviderUnreachable(
                f"{self.display_name} unreachable: {e}",
                provider=self.provider_id.value,
                model_id=model_id,
            ) from e

        self._check_status(response, model_id)
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderResponseError(
                f"{self.display_name} returned invalid JSON",
                provider=self.provider_id.value,
                model_id=model_id,
                status_code=response.status_code,
            ) from e
        return self._as_dict(data, model_id)

    def _malformed(self, what: str, model_id: Optional[str]) -> ProviderResponseError:
        return ProviderResponseError(
            f"{self.display_name} returned a malformed {what}",
            provider=self.provider_id.value,
            model_id=model_id,
        )

    def _as_dict(self, data: Any, model_id: Optional[str] = None, what: str = "response body") -> Dict[str, Any]:
        if not isinstance(data, dict):
            raise self._malformed(what, model_id)
        return data

    def _records(self, data: Dict[str, Any], key: str, model_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """data[key] as a list of objects; a missing key is an empty list"""
        items = data.get(key)
        if items is None:
            return []
        if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
            raise self._malformed(f"'{key}' list", model_id)
        return items

    async def _stream_lines(
        self,
        method: str,
        path: str,
        timeout: float,
        model_id: Optional[str] = None,
        **kwargs: Any,
    ) -> AsyncIterator[str]:
        """Non-empty response lines; timeout bounds each read, not the whole stream"""
        url = f"{self.base_url}{path}"
        try:
            async with self._client.stream(
                method,
                url,
                headers=self._headers(),
                timeout=httpx.Timeout(timeout, connect=self.config.probe_timeout),
                **kwargs,
            ) as response:
                if not response.is_success:
                    await response.aread()
                    self._check_status(response, model_id)
                async for line in response.aiter_lines():
                    if line.strip():
                        yield line.strip()
        except httpx.TimeoutException as e:
            raise ProviderUnreachable(
                f"{self.display_name} stream timed out after {timeout}s",
                provider=self.provider_id.value,
                model_id=model_id,
            ) from e
        except httpx.HTTPError as e:
            raise ProviderUnreachable(
                f"{self.display_name} stream failed: {e}",
                provider=self.provider_id.value,
                model_id=model_id,
            ) from e

    async def _sse_events(
        self,
        method: str,
        path: str,
        timeout: float,
        model_id: Optional[str] = None,
        **kwargs: Any,
    ) -> AsyncIterator[Dict[str, Any]]:
        """JSON payloads of server-sent 'data:' lines up to [DONE]"""
        async for line in self._stream_lines(method, path, timeout, model_id, **kwargs):
            if not line.startswith("data:"):
                continue
            payload = line[len("data:"):].strip()
            if payload == "[DONE]":
                return
            try:
                event = json.loads(payload)
            except ValueError as e:
                raise self._malformed("stream event", model_id) from e
            event = self._as_dict(event, model_id, "stream event")
            error = event.get("error")
            if error:
                message = error.get("message") if isinstance(error, dict) else error
                raise ProviderResponseError(
                    f"{self.display_name} stream error: {message}",
                    provider=self.provider_id.value,
                    model_id=model_id,
                )
            yield event

    def _check_status(self, response: httpx.Response, model_id: Optional[str]) -> None:
        if response.is_success:
            return
        if self.requires_key and response.status_code in (401, 403):
            raise ProviderNotConfigured(
                f"{self.display_name} rejected the configured credential ({response.status_code})",
                provider=self.provider_id.value,
                model_id=model_id,
            )
        raise ProviderResponseError(
            f"{self.display_name} API error: {response.status_code} - {response.text[:200]}",
            provider=self.provider_id.value,
            model_id=model_id,
            status_code=response.status_code,
        )

    async def probe(self) -> Provider:
        """List models within the probe timeout. Never raises."""
        started = time.perf_counter()
        try:
            models = await self.list_models()
        except ProviderNotConfigured as e:
            return Provider(id=self.provider_id, reachable=False, configured=False, error=e.message)
        except LLMRouterError as e:
            logger.debug(f"{self.display_name} probe failed: {e}")
            return Provider(id=self.provider_id, reachable=False, error=e.message)

        latency_ms = round((time.perf_counter() - started) * 1000, 1)
        return Provider(
            id=self.provider_id,
            reachable=True,
            models=tuple(models),
            latency_ms=latency_ms,
        )

    async def list_models(self) -> List[str]:
        raise NotImplementedError

    async def generate(self, request: GenerationRequest, timeout: float) -> Generation:
        raise NotImplementedError

    def stream(self, request: GenerationRequest, timeout: float) -> AsyncIterator[StreamChunk]:
        """Text chunks as the provider produces them, ending with a done chunk"""
        raise NotImplementedError

    async def pull(
        self,
        model_id: str,
        command: Optional[str] = None,
        on_progress: Optional[PullProgressCallback] = None,
    ) -> None:
        raise ModelPullFailed(
            f"{self.display_name} does not support pulling models",
            provider=self.provider_id.value,
            model_id=model_id,
        )


class OllamaAdapter(ProviderAdapter):
    provider_id = ProviderId.OLLAMA
    display_name = "Ollama"

    async def list_models(self) -> List[str]:
        data = await self._request("GET", "/api/tags", self.config.probe_timeout)
        names = [_text(m.get("name")) or _text(m.get("model")) for m in self._records(data, "models")]
        return [name for name in names if name]

    def _payload(self, request: GenerationRequest, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model,
            "prompt": request.prompt,
            "stream": stream,
            "options": {
                "temperature": request.temperature,
                "num_predict": request.max_tokens,
            },
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        return payload

    async def generate(self, request: GenerationRequest, timeout: float) -> Generation:
        payload = self._payload(request, stream=False)
        data = await self._request("POST", "/api/generate", timeout, request.model, json=payload)
        prompt_tokens = _number(data.get("prompt_eval_count"))
        completion_tokens = _number(data.get("eval_count"))
        total = None
        if prompt_tokens is not None or completion_tokens is not None:
            total = (prompt_tokens or 0) + (completion_tokens or 0)
        eval_duration = _number(data.get("eval_duration"))
        return Generation(
            text=_text(data.get("response")),
            provider=self.provider_id,
            model=_text(data.get("model")) or request.model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total,
            finish_reason=_text(data.get("done_reason")) or None,
            duration_s=eval_duration / 1e9 if eval_duration else None,
        )

    async def stream(self, request: GenerationRequest, timeout: float) -> AsyncIterator[StreamChunk]:
        payload = self._payload(request, stream=True)
        async for line in self._stream_lines("POST", "/api/generate", timeout, request.model, json=payload):
            try:
                data = json.loads(line)
            except ValueError as e:
                raise self._malformed("stream line", request.model) from e
            data = self._as_dict(data, request.model, "stream line")
            if data.get("error"):
                raise ProviderResponseError(
                    f"Ollama stream error: {data['error']}",
                    provider=self.provider_id.value,
                    model_id=request.model,
                )
            text = _text(data.get("response"))
            if text:
                yield StreamChunk(text=text, provider=self.provider_id, model=request.model)
            if data.get("done"):
                yield StreamChunk(text="", provider=self.provider_id, model=request.model, done=True)
                return
        raise ProviderResponseError(
            "Ollama stream ended before completion", provider=self.provider_id.value, model_id=request.model
        )

    async def pull(
        self,
        model_id: str,
        command: Optional[str] = None,
        on_progress: Optional[PullProgressCallback] = None,
    ) -> None:
        name = _pull_target(command, model_id)
        url = f"{self.base_url}/api/pull"
        timeout = httpx.Timeout(self.config.request_timeout, connect=self.config.probe_timeout)
        try:
            async with self._client.stream(
                "POST", url, json={"name": name}, headers=self._headers(), timeout=timeout
            ) as response:
                if not response.is_success:
                    await response.aread()
                    raise ModelPullFailed(
                        f"Ollama pull failed: {response.status_code} - {response.text[:200]}",
                        provider=self.provider_id.value,
                        model_id=model_id,
                    )
                status = None
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        progress = json.loads(line)
                    except ValueError:
                        continue
                    if not isinstance(progress, dict):
                        continue
                    if progress.get("error"):
                        raise ModelPullFailed(
                            f"Ollama pull failed: {progress['error']}",
                            provider=self.provider_id.value,
                            model_id=model_id,
                        )
                    status = progress.get("status", "pulling")
                    if on_progress:
                        on_progress(status, progress.get("completed"), progress.get("total"))
        except httpx.HTTPError as e:
            raise ModelPullFailed(
                f"Ollama pull failed: {e}", provider=self.provider_id.value, model_id=model_id
            ) from e

        if status != "success":
            raise ModelPullFailed(
                f"Ollama pull ended without success (last status: {status})",
                provider=self.provider_id.value,
                model_id=model_id,
            )


class OpenAICompatibleAdapter(ProviderAdapter):
    """Shared shape for /models + /chat/completions vendors"""

    default_max_models = 0

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        if self.requires_key:
            headers["Authorization"] = f"Bearer {self._require_key()}"
        return headers

    def _keep_model(self, model_id: str) -> bool:
        return True

    async def list_models(self) -> List[str]:
        if self.requires_key:
            self._require_key()
        data = await self._request("GET", "/models", self.config.probe_timeout)
        ids = [_text(m.get("id")) for m in self._records(data, "data")]
        models = [model_id for model_id in ids if model_id and self._keep_model(model_id)]
        if self.default_max_models:
            models = models[: self.default_max_models]
        return models

    def _payload(self, request: GenerationRequest, stream: bool) -> Dict[str, Any]:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})
        return {
            "model": request.model,
            "messages": messages,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "stream": stream,
        }

    async def generate(self, request: GenerationRequest, timeout: float) -> Generation:
        if self.requires_key:
            self._require_key(request.model)
        payload = self._payload(request, stream=False)
        data = await self._request("POST", "/chat/completions", timeout, request.model, json=payload)
        choices = self._records(data, "choices", request.model)
        if not choices:
            raise ProviderResponseError(
                f"{self.display_name} returned no choices",
                provider=self.provider_id.value,
                model_id=request.model,
            )
        message = self._as_dict(choices[0].get("message") or {}, request.model, "message")
        usage = self._as_dict(data.get("usage") or {}, request.model, "usage block")
        return Generation(
            text=_text(message.get("content")),
            provider=self.provider_id,
            model=_text(data.get("model")) or request.model,
            prompt_tokens=_number(usage.get("prompt_tokens")),
            completion_tokens=_number(usage.get("completion_tokens")),
            total_tokens=_number(usage.get("total_tokens")),
            finish_reason=_text(choices[0].get("finish_reason")) or None,
        )

    async def stream(self, request: GenerationRequest, timeout: float) -> AsyncIterator[StreamChunk]:
        if self.requires_key:
            self._require_key(request.model)
        payload = self._payload(request, stream=True)
        events = self._sse_events("POST", "/chat/completions", timeout, request.model, json=payload)
        async for event in events:
            for choice in self._records(event, "choices", request.model):
                delta = self._as_dict(choice.get("delta") or {}, request.model, "delta")
                text = _text(delta.get("content"))
                if text:
                    yield StreamChunk(text=text, provider=self.provider_id, model=request.model)
        yield StreamChunk(text="", provider=self.provider_id, model=request.model, done=True)


class LMStudioAdapter(OpenAICompatibleAdapter):
    provider_id = ProviderId.LMSTUDIO
    display_name = "LM Studio"

    async def pull(
        self,
        model_id: str,
        command: Optional[str] = None,
        on_progress: Optional[PullProgressCallback] = None,
    ) -> None:
        """LM Studio has no HTTP pull endpoint; run its CLI instead"""
        argv = shlex.split(command) if command else ["lms", "get", model_id, "--yes"]
        if on_progress:
            on_progress("starting", None, None)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ModelPullFailed(
                f"Could not run {argv[0]!r}: {e}", provider=self.provider_id.value, model_id=model_id
            ) from e

        try:
            _, stderr = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            await proc.wait()
            raise

        if proc.returncode != 0:
            raise ModelPullFailed(
                f"{' '.join(argv)} exited with {proc.returncode}: {stderr.decode(errors='replace')[-200:]}",
                provider=self.provider_id.value,
                model_id=model_id,
            )
        if on_progress:
            on_progress("success", None, None)


class OpenRouterAdapter(OpenAICompatibleAdapter):
    provider_id = ProviderId.OPENROUTER
    display_name = "OpenRouter"
    requires_key = True
    default_max_models = 20

    CURATED_FAMILIES = ("gpt-4", "claude", "llama", "mistral", "qwen")

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["X-Title"] = "llm-router"
        return headers

    def _keep_model(self, model_id: str) -> bool:
        return any(family in model_id for family in self.CURATED_FAMILIES)


class OpenAIAdapter(OpenAICompatibleAdapter):
    provider_id = ProviderId.OPENAI
    display_name = "OpenAI"
    requires_key = True

    def _keep_model(self, model_id: str) -> bool:
        return model_id.startswith(("gpt-", "o1", "o3", "o4"))


class GeminiAdapter(ProviderAdapter):
    provider_id = ProviderId.GEMINI
    display_name = "Gemini"
    requires_key = True

    @staticmethod
    def _model_name(model_id: str) -> str:
        return model_id[len("models/"):] if model_id.startswith("models/") else model_id

    async def list_models(self) -> List[str]:
        key = self._require_key()
        data = await self._request("GET", "/models", self.config.probe_timeout, params={"key": key})
        models = []
        for m in self._records(data, "models"):
            name = _text(m.get("name"))
            methods = m.get("supportedGenerationMethods")
            if name and isinstance(methods, list) and "generateContent" in methods:
                models.append(self._model_name(name))
        return models

    def _payload(self, request: GenerationRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
            "generationConfig": {
                "temperature": request.temperature,
                "maxOutputTokens": request.max_tokens,
            },
        }
        if request.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}
        return payload

    def _candidate_text(self, candidate: Dict[str, Any], model_id: str) -> str:
        content = self._as_dict(candidate.get("content") or {}, model_id, "candidate")
        parts = self._records(content, "parts", model_id)
        return "".join(_text(part.get("text")) for part in parts)

    async def generate(self, request: GenerationRequest, timeout: float) -> Generation:
        key = self._require_key(request.model)
        model = self._model_name(request.model)
        data = await self._request(
            "POST", f"/models/{model}:generateContent", timeout, request.model,
            params={"key": key}, json=self._payload(request),
        )
        candidates = self._records(data, "candidates", request.model)
        if not candidates:
            raise ProviderResponseError(
                "Gemini returned no candidates", provider=self.provider_id.value, model_id=request.model
            )
        usage = self._as_dict(data.get("usageMetadata") or {}, request.model, "usage block")
        return Generation(
            text=self._candidate_text(candidates[0], request.model),
            provider=self.provider_id,
            model=model,
            prompt_tokens=_number(usage.get("promptTokenCount")),
            completion_tokens=_number(usage.get("candidatesTokenCount")),
            total_tokens=_number(usage.get("totalTokenCount")),
            finish_reason=_text(candidates[0].get("finishReason")) or None,
        )

    async def stream(self, request: GenerationRequest, timeout: float) -> AsyncIterator[StreamChunk]:
        key = self._require_key(request.model)
        model = self._model_name(request.model)
        events = self._sse_events(
            "POST", f"/models/{model}:streamGenerateContent", timeout, request.model,
            params={"key": key, "alt": "sse"}, json=self._payload(request),
        )
        async for event in events:
            for candidate in self._records(event, "candidates", request.model)[:1]:
                text = self._candidate_text(candidate, request.model)
                if text:
                    yield StreamChunk(text=text, provider=self.provider_id, model=model)
        yield StreamChunk(text="", provider=self.provider_id, model=model, done=True)


ADAPTER_TYPES: Dict[ProviderId, type] = {
    ProviderId.OLLAMA: OllamaAdapter,
    ProviderId.LMSTUDIO: LMStudioAdapter,
    ProviderId.OPENROUTER: OpenRouterAdapter,
    ProviderId.GEMINI: GeminiAdapter,
    ProviderId.OPENAI: OpenAIAdapter,
}


def build_adapters(
    config: RouterConfig, client: httpx.AsyncClient, keys: Optional[KeyStore] = None
) -> Dict[ProviderId, ProviderAdapter]:
    return {pid: adapter_type(config, client, keys) for pid, adapter_type in ADAPTER_TYPES.items()}


def _pull_target(command: Optional[str], model_id: str) -> str:
    """'ollama pull name:tag' -> 'name:tag'"""
    if command:
        parts = shlex.split(command)
        if len(parts) >= 3 and parts[1] == "pull":
            return parts[2]
    return model_id
