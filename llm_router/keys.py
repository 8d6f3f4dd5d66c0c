"""
Credential lookup for cloud providers.

The router never stores keys itself; it asks a KeyStore handed to it by the
host application.
"""

import os
from typing import Dict, Mapping, Optional, Protocol, Tuple

from .config import ProviderId

ENV_KEYS: Dict[ProviderId, Tuple[str, ...]] = {
    ProviderId.OPENROUTER: ("OPENROUTER_API_KEY",),
    ProviderId.GEMINI: ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    ProviderId.OPENAI: ("OPENAI_API_KEY",),
}


class KeyStore(Protocol):
    def get_key(self, provider: ProviderId) -> Optional[str]:
        ...


class StaticKeyStore:
    """Keys supplied up front by the embedding application"""

    def __init__(self, keys: Optional[Mapping[ProviderId, str]] = None):
        self._keys = {ProviderId(k): v for k, v in (keys or {}).items() if v}

    def get_key(self, provider: ProviderId) -> Optional[str]:
        return self._keys.get(provider)


class EnvKeyStore:
    """Keys read from the process environment on every lookup"""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._environ = environ

    def get_key(self, provider: ProviderId) -> Optional[str]:
        environ = os.environ if self._environ is None else self._environ
        for name in ENV_KEYS.get(provider, ()):
            value = environ.get(name, "").strip()
            if value:
                return value
        return None
