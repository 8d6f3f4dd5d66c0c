"""
Pytest configuration and fixtures
"""

import json
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

from llm_router.adapters import Provider
from llm_router.config import ProviderId, RouterConfig
from llm_router.hardware import CPUInfo, GPUInfo, HardwareProfile
from llm_router.keys import StaticKeyStore
from llm_router.registry import ProviderSnapshot

HOSTS = {
    "localhost:11434": ProviderId.OLLAMA,
    "localhost:1234": ProviderId.LMSTUDIO,
    "openrouter.ai": ProviderId.OPENROUTER,
    "generativelanguage.googleapis.com": ProviderId.GEMINI,
    "api.openai.com": ProviderId.OPENAI,
}


class FakeBackend:
    """
    In-memory stand-in for every provider's HTTP API.

    models[provider] = None means the provider refuses connections.
    fail_generate[provider] is an HTTP status or an exception type.
    bodies[(provider, path)] replaces the JSON body served for that path.
    stream_break[provider] = n ends a stream with an error after n chunks.
    """

    def __init__(self):
        self.models: Dict[ProviderId, Optional[List[str]]] = {
            ProviderId.OLLAMA: ["llama3.2:3b-instruct-q4_K_M"],
            ProviderId.LMSTUDIO: None,
            ProviderId.OPENROUTER: None,
            ProviderId.GEMINI: None,
            ProviderId.OPENAI: None,
        }
        self.fail_generate: Dict[ProviderId, object] = {}
        self.bodies: Dict[Tuple[ProviderId, str], Any] = {}
        self.stream_break: Dict[ProviderId, int] = {}
        self.reply = "Benchmark OK"
        self.stream_chunks = ["Benchmark", " OK"]
        self.pull_lines: List[dict] = [
            {"status": "pulling manifest"},
            {"status": "downloading", "completed": 50, "total": 100},
            {"status": "success"},
        ]
        self.requests: List[tuple] = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host if request.url.port is None else f"{request.url.host}:{request.url.port}"
        provider = HOSTS[host]
        path = request.url.path
        self.requests.append((provider, request.method, path))

        if self.models[provider] is None:
            raise httpx.ConnectError("Connection refused", request=request)

        if provider in (ProviderId.OPENROUTER, ProviderId.OPENAI):
            if not request.headers.get("Authorization", "").startswith("Bearer "):
                return httpx.Response(401, json={"error": "unauthorized"})

        if request.method == "POST" and not path.endswith("/pull"):
            failure = self.fail_generate.get(provider)
            if isinstance(failure, int):
                return httpx.Response(failure, text="upstream exploded")
            if failure is not None:
                raise failure("simulated failure", request=request)

        if (provider, path) in self.bodies:
            return httpx.Response(200, json=self.bodies[(provider, path)])

        if provider == ProviderId.OLLAMA:
            return self._ollama(request, path)
        if provider == ProviderId.GEMINI:
            return self._gemini(request, path)
        return self._openai_compatible(provider, request, path)

    def _pieces(self, provider: ProviderId) -> Tuple[List[str], bool]:
        """Chunks to stream, and whether the stream breaks after them"""
        if provider in self.stream_break:
            return self.stream_chunks[: self.stream_break[provider]], True
        return list(self.stream_chunks), False

    @staticmethod
    def _sse(events: List[Any], done: bool) -> httpx.Response:
        lines = [f"data: {json.dumps(event)}\n\n" for event in events]
        if done:
            lines.append("data: [DONE]\n\n")
        return httpx.Response(200, content="".join(lines).encode(), headers={"Content-Type": "text/event-stream"})

    def _ollama(self, request: httpx.Request, path: str) -> httpx.Response:
        if path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": m} for m in self.models[ProviderId.OLLAMA]]})
        if path == "/api/generate":
            body = json.loads(request.content)
            if body.get("stream"):
                pieces, broken = self._pieces(ProviderId.OLLAMA)
                lines = [{"model": body["model"], "response": piece, "done": False} for piece in pieces]
                if broken:
                    lines.append({"error": "model runner crashed"})
                else:
                    lines.append({"model": body["model"], "response": "", "done": True, "done_reason": "stop"})
                content = "\n".join(json.dumps(line) for line in lines) + "\n"
                return httpx.Response(200, content=content.encode())
            return httpx.Response(200, json={
                "model": body["model"],
                "response": self.reply,
                "prompt_eval_count": 12,
                "eval_count": 8,
                "eval_duration": 400_000_000,
                "done_reason": "stop",
            })
        if path == "/api/pull":
            content = "\n".join(json.dumps(line) for line in self.pull_lines) + "\n"
            return httpx.Response(200, content=content.encode())
        return httpx.Response(404)

    def _openai_compatible(self, provider: ProviderId, request: httpx.Request, path: str) -> httpx.Response:
        if path.endswith("/models"):
            return httpx.Response(200, json={"data": [{"id": m} for m in self.models[provider]]})
        if path.endswith("/chat/completions"):
            body = json.loads(request.content)
            if body.get("stream"):
                pieces, broken = self._pieces(provider)
                events: List[Any] = [{"choices": [{"delta": {"content": piece}}]} for piece in pieces]
                if broken:
                    events.append({"error": {"message": "stream interrupted"}})
                return self._sse(events, done=not broken)
            return httpx.Response(200, json={
                "model": body["model"],
                "choices": [{"message": {"role": "assistant", "content": self.reply}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 8, "total_tokens": 20},
            })
        return httpx.Response(404)

    def _gemini(self, request: httpx.Request, path: str) -> httpx.Response:
        if request.url.params.get("key") is None:
            return httpx.Response(403, json={"error": "missing key"})
        if path.endswith("/models"):
            return httpx.Response(200, json={"models": [
                {"name": f"models/{m}", "supportedGenerationMethods": ["generateContent"]}
                for m in self.models[ProviderId.GEMINI]
            ]})
        if path.endswith(":generateContent"):
            return httpx.Response(200, json={
                "candidates": [{"content": {"parts": [{"text": self.reply}]}, "finishReason": "STOP"}],
                "usageMetadata": {"promptTokenCount": 12, "candidatesTokenCount": 8, "totalTokenCount": 20},
            })
        if path.endswith(":streamGenerateContent"):
            pieces, broken = self._pieces(ProviderId.GEMINI)
            events: List[Any] = [{"candidates": [{"content": {"parts": [{"text": piece}]}}]} for piece in pieces]
            if broken:
                events.append({"error": {"message": "stream interrupted"}})
            return self._sse(events, done=False)
        return httpx.Response(404)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests"""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def config(temp_dir):
    return RouterConfig(state_dir=temp_dir, probe_timeout=1.0, request_timeout=2.0, benchmark_timeout=2.0)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def keys():
    return StaticKeyStore({
        ProviderId.OPENROUTER: "sk-or-test",
        ProviderId.GEMINI: "gemini-test",
        ProviderId.OPENAI: "sk-test",
    })


@pytest.fixture
def profile_16gb():
    return HardwareProfile(
        os="Linux",
        arch="x86_64",
        cpu=CPUInfo(name="Test CPU", cores=8, threads=16, arch="x86_64"),
        total_ram_gb=16.0,
        gpus=(GPUInfo(name="NVIDIA GeForce RTX 3080", vram=10.0, vendor="NVIDIA"),),
    )


def make_snapshot(generation: int = 1, **providers) -> ProviderSnapshot:
    """make_snapshot(ollama=["m1"], lmstudio=None) -> None means offline"""
    items = []
    for name, models in providers.items():
        provider_id = ProviderId(name)
        if models is None:
            items.append(Provider(id=provider_id, reachable=False, error="offline"))
        else:
            items.append(Provider(id=provider_id, reachable=True, models=tuple(models), latency_ms=1.0))
    return ProviderSnapshot(providers=tuple(items), generation=generation)


@pytest.fixture
def snapshot_factory():
    return make_snapshot
