"""
Model catalog: static seed entries merged with live provider listings
"""

import json
import logging
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

from .adapters import normalize_model_id
from .config import ProviderId
from .errors import ConfigError
from .registry import ProviderSnapshot
from .store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_FILE = Path(__file__).parent / "data" / "catalog.json"

FAVORITES_KEY = "favorites"

# Ordered so the more specific label wins ("q4_k_m" before "q4")
QUANTIZATION_PATTERN = re.compile(
    r"(?<![a-z0-9])(q[2-8]_k_[sml]|q[2-8]_k|q[2-8]_[01]|iq[1-4]_[a-z]+|f16|fp16|bf16|f32|q[2-8])(?![a-z0-9])"
)

# Name fragments that hint at what a model is good for
DERIVED_TAG_HINTS: Tuple[Tuple[str, str], ...] = (
    ("coder", "code"),
    ("code", "code"),
    ("llava", "vision"),
    ("vision", "vision"),
    ("-vl", "vision"),
    ("r1", "reasoning"),
    ("reason", "reasoning"),
    ("think", "thinking"),
    ("instruct", "chat"),
    ("chat", "chat"),
)


@dataclass(frozen=True)
class ModelCatalogEntry:
    """Static metadata for one candidate model"""
    id: str
    display_name: str
    provider: ProviderId
    family: str = ""
    size_gb: float = 0.0
    quantization: str = ""
    context_window: int = 0
    description: str = ""
    best_for: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()
    strengths: Tuple[str, ...] = ()
    limitations: Tuple[str, ...] = ()
    min_ram_gb: float = 0.0
    min_vram_gb: float = 0.0
    pull_command: Optional[str] = None
    download_url: Optional[str] = None
    license: Optional[str] = None
    # True for entries inferred from a provider listing rather than the seed file
    derived: bool = False

    @property
    def is_cloud(self) -> bool:
        return not self.provider.is_local

    @property
    def is_quantized(self) -> bool:
        return detect_quantization(self.quantization) is not None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["provider"] = self.provider.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ModelCatalogEntry":
        return cls(
            id=data["id"],
            display_name=data.get("display_name", data["id"]),
            provider=ProviderId.parse(data["provider"]),
            family=data.get("family", ""),
            size_gb=float(data.get("size_gb", 0)),
            quantization=data.get("quantization", ""),
            context_window=int(data.get("context_window", 0)),
            description=data.get("description", ""),
            best_for=tuple(data.get("best_for", [])),
            tags=tuple(data.get("tags", [])),
            strengths=tuple(data.get("strengths", [])),
            limitations=tuple(data.get("limitations", [])),
            min_ram_gb=float(data.get("min_ram_gb", 0)),
            min_vram_gb=float(data.get("min_vram_gb", 0)),
            pull_command=data.get("pull_command"),
            download_url=data.get("download_url"),
            license=data.get("license"),
        )


def detect_quantization(model_id: str) -> Optional[str]:
    """Quantization label embedded in a model id, e.g. 'Q4_K_M'"""
    match = QUANTIZATION_PATTERN.search(model_id.lower())
    if not match:
        return None
    return match.group(1).upper()


def derive_entry(model_id: str, provider: ProviderId) -> ModelCatalogEntry:
    """Best-effort entry for a model a provider reports but the seed lacks"""
    lowered = model_id.lower()
    tags: List[str] = []
    for fragment, tag in DERIVED_TAG_HINTS:
        if fragment in lowered and tag not in tags:
            tags.append(tag)
    if not tags:
        tags.append("general")

    base = model_id.split("/")[-1]
    family = re.split(r"[:\-_]", base, maxsplit=1)[0]
    return ModelCatalogEntry(
        id=model_id,
        display_name=model_id,
        provider=provider,
        family=family,
        quantization=detect_quantization(model_id) or ("hosted" if not provider.is_local else ""),
        tags=tuple(tags),
        description=f"Reported by {provider.value}",
        derived=True,
    )


def load_seed_entries(catalog_file: Path) -> List[ModelCatalogEntry]:
    try:
        with open(catalog_file, "r") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        logger.error(f"Catalog file not found: {catalog_file}")
        raise ConfigError(f"Catalog file not found: {catalog_file}") from e
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in catalog file: {e}")
        raise ConfigError(f"Invalid JSON in catalog file {catalog_file}: {e}") from e

    entries = [ModelCatalogEntry.from_dict(item) for item in data.get("models", [])]
    logger.debug(f"Loaded {len(entries)} catalog entries from {catalog_file}")
    return entries


class ModelCatalog:
    """
    Display-ordered list of known models.

    Seed data is loaded once; availability is never cached here. Every read
    asks snapshot_source() for the latest ProviderSnapshot, so results track
    the most recent discovery without any synchronization.
    """

    def __init__(
        self,
        snapshot_source: Callable[[], ProviderSnapshot],
        store: Optional[StateStore] = None,
        catalog_file: Optional[Path] = None,
    ):
        self._snapshot_source = snapshot_source
        self._store = store
        self.catalog_file = catalog_file or DEFAULT_CATALOG_FILE
        self._seed: Tuple[ModelCatalogEntry, ...] = tuple(load_seed_entries(self.catalog_file))
        self._favorites: Set[str] = set(store.get(FAVORITES_KEY, []) if store else [])

    @property
    def seed(self) -> Tuple[ModelCatalogEntry, ...]:
        return self._seed

    def entries(self) -> Tuple[ModelCatalogEntry, ...]:
        """Seed entries first, then models only known from live listings"""
        snapshot = self._snapshot_source()
        known = {normalize_model_id(e.id) for e in self._seed}
        derived: List[ModelCatalogEntry] = []
        for provider in snapshot.reachable():
            for model_id in provider.models:
                key = normalize_model_id(model_id)
                if key in known:
                    continue
                known.add(key)
                derived.append(derive_entry(model_id, provider.id))
        return self._seed + tuple(derived)

    def get(self, model_id: str) -> Optional[ModelCatalogEntry]:
        wanted = normalize_model_id(model_id)
        for entry in self.entries():
            if normalize_model_id(entry.id) == wanted:
                return entry
        return None

    def installed_on(self, model_id: str) -> Tuple[ProviderId, ...]:
        """Reachable providers currently listing model_id, in precedence order"""
        return tuple(p.id for p in self._snapshot_source().serving(model_id))

    def is_installed(self, model_id: str) -> bool:
        return bool(self.installed_on(model_id))

    def is_favorite(self, model_id: str) -> bool:
        return model_id in self._favorites

    def toggle_favorite(self, model_id: str) -> bool:
        """Flip the favorite flag and return the new value"""
        if model_id in self._favorites:
            self._favorites.discard(model_id)
            favorite = False
        else:
            self._favorites.add(model_id)
            favorite = True
        if self._store is not None:
            self._store.set(FAVORITES_KEY, sorted(self._favorites))
        return favorite

    def favorites(self) -> Tuple[ModelCatalogEntry, ...]:
        return tuple(e for e in self.entries() if e.id in self._favorites)

    def filter(
        self,
        installed: Optional[bool] = None,
        favorites_only: bool = False,
        provider: Optional[ProviderId] = None,
        tag: Optional[str] = None,
    ) -> Tuple[ModelCatalogEntry, ...]:
        snapshot = self._snapshot_source()
        result = []
        for entry in self.entries():
            if provider is not None and entry.provider != provider:
                continue
            if favorites_only and entry.id not in self._favorites:
                continue
            if tag is not None and tag not in entry.tags and tag not in entry.best_for:
                continue
            if installed is not None and bool(snapshot.serving(entry.id)) != installed:
                continue
            result.append(entry)
        return tuple(result)

    def summary(self) -> Dict[str, int]:
        entries = self.entries()
        return {
            "total": len(entries),
            "installed": sum(1 for e in entries if self.is_installed(e.id)),
            "favorites": sum(1 for e in entries if e.id in self._favorites),
            "derived": sum(1 for e in entries if e.derived),
        }
