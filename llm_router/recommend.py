"""
Recommendation scoring
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, List, Optional, Tuple, Union

from .catalog import ModelCatalogEntry
from .config import ProviderId
from .errors import ConfigError
from .hardware import HardwareProfile
from .registry import ProviderSnapshot
from .usecases import USE_CASE_TAGS, Priority, UseCase

logger = logging.getLogger(__name__)

TAG_MATCH_POINTS = 10
BEST_FOR_POINTS = 15
RAM_FIT_POINTS = 5
VRAM_FIT_POINTS = 5
HARDWARE_PENALTY = 1000
ONLINE_BONUS = 25
PULLABLE_BONUS = 10
MAX_RATIONALE = 3

SMALL_MODEL_GB = 6.0
MEDIUM_MODEL_GB = 7.0
LARGE_MODEL_GB = 15.0

FULL_PRECISION = frozenset({"F16", "FP16", "BF16", "F32"})


class HardwarePolicy(str, Enum):
    """What to do with a model whose minimum hardware exceeds the profile"""
    EXCLUDE = "exclude"
    PENALIZE = "penalize"


@dataclass(frozen=True)
class ModelAvailability:
    """Where a model can be served from, as of one provider snapshot"""
    provider: Optional[ProviderId]
    is_online: bool
    installed: bool
    reason: str


@dataclass(frozen=True)
class Recommendation:
    model_id: str
    entry: ModelCatalogEntry
    availability: ModelAvailability
    score: float
    rationale: Tuple[str, ...]
    hardware_fit: bool
    priority_multiplier: float

    def to_dict(self) -> dict:
        return {
            "model_id": self.model_id,
            "name": self.entry.display_name,
            "provider": self.entry.provider.value,
            "score": self.score,
            "size_gb": self.entry.size_gb,
            "quantization": self.entry.quantization,
            "context_window": self.entry.context_window,
            "memory_requirements": {"ram": self.entry.min_ram_gb, "vram": self.entry.min_vram_gb},
            "available_via": self.availability.provider.value if self.availability.provider else None,
            "online": self.availability.is_online,
            "installed": self.availability.installed,
            "hardware_fit": self.hardware_fit,
            "rationale": list(self.rationale),
            "pull_command": self.entry.pull_command,
        }


@dataclass(frozen=True)
class RecommendationSet:
    """One ranked list plus the inputs it was computed from. Replaced, never patched."""
    items: Tuple[Recommendation, ...] = ()
    use_case: Optional[UseCase] = None
    priority: Optional[Priority] = None
    provider_generation: int = 0
    computed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_stale(self, snapshot: ProviderSnapshot) -> bool:
        return snapshot.generation != self.provider_generation

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)


def resolve_availability(entry: ModelCatalogEntry, snapshot: ProviderSnapshot) -> ModelAvailability:
    """Any reachable provider listing the model counts, not just the owner"""
    serving = snapshot.serving(entry.id)
    if serving:
        provider = serving[0]
        return ModelAvailability(
            provider=provider.id,
            is_online=True,
            installed=provider.is_local,
            reason=f"Online via {provider.id.value}",
        )
    if snapshot.is_reachable(entry.provider):
        if entry.is_cloud:
            return ModelAvailability(
                provider=entry.provider,
                is_online=True,
                installed=False,
                reason=f"Hosted on {entry.provider.value}",
            )
        return ModelAvailability(
            provider=entry.provider,
            is_online=False,
            installed=False,
            reason=f"{entry.provider.value} is running; pull to install",
        )
    return ModelAvailability(
        provider=None,
        is_online=False,
        installed=False,
        reason=f"{entry.provider.value} is offline",
    )


class RecommendationEngine:
    """
    Ranks catalog entries for a use case and priority.

    recommend() has no hidden state: the same inputs always produce the same
    ranking. Scores are built in this order:

    1. use case fit: 10 points per matching tag, 15 if listed in best_for
    2. hardware gate: exclude (or penalize) models needing more RAM/VRAM
       than the profile has; fitting local models earn small fit bonuses
    3. priority multiplier (speed favors small/quantized, quality favors
       large/full-precision/hosted, balanced is neutral)
    4. availability bonus: 25 when servable now, 10 when the owning local
       runtime is up but the model still has to be pulled
    5. stable sort by score, descending, so ties keep catalog order
    """

    def __init__(self, policy: HardwarePolicy = HardwarePolicy.EXCLUDE):
        self.policy = policy

    def recommend(
        self,
        use_case: Union[str, UseCase],
        priority: Union[str, Priority],
        hardware: Optional[HardwareProfile],
        catalog: Iterable[ModelCatalogEntry],
        providers: ProviderSnapshot,
        top_n: Optional[int] = None,
        policy: Optional[HardwarePolicy] = None,
    ) -> RecommendationSet:
        use_case = UseCase.parse(use_case)
        priority = Priority.parse(priority)
        policy = policy or self.policy
        if top_n is not None and top_n < 1:
            raise ConfigError(f"top_n must be at least 1, got {top_n}")

        scored: List[Recommendation] = []
        for entry in catalog:
            recommendation = self._score(entry, use_case, priority, hardware, providers, policy)
            if recommendation is not None:
                scored.append(recommendation)

        # sorted() is stable: equal scores keep catalog display order
        ranked = sorted(scored, key=lambda r: -r.score)
        if top_n is not None:
            ranked = ranked[:top_n]

        logger.debug(
            f"Ranked {len(scored)} models for {use_case.value}/{priority.value} "
            f"against provider snapshot #{providers.generation}"
        )
        return RecommendationSet(
            items=tuple(ranked),
            use_case=use_case,
            priority=priority,
            provider_generation=providers.generation,
        )

    def _score(
        self,
        entry: ModelCatalogEntry,
        use_case: UseCase,
        priority: Priority,
        hardware: Optional[HardwareProfile],
        providers: ProviderSnapshot,
        policy: HardwarePolicy,
    ) -> Optional[Recommendation]:
        factors: List[Tuple[float, str]] = []

        matched = [tag for tag in USE_CASE_TAGS[use_case] if tag in entry.tags]
        score = float(TAG_MATCH_POINTS * len(matched))
        if use_case.value in entry.best_for:
            score += BEST_FOR_POINTS
        if score:
            detail = ", ".join(matched) if matched else use_case.value
            factors.append((score, f"Matches {use_case.value} use case ({detail})"))

        shortfalls = hardware_shortfalls(entry, hardware)
        if shortfalls:
            if policy == HardwarePolicy.EXCLUDE:
                return None
            score -= HARDWARE_PENALTY
            factors.append((HARDWARE_PENALTY, "Exceeds hardware: " + "; ".join(shortfalls)))
        else:
            fit_points, fit_reason = hardware_fit_bonus(entry, hardware)
            if fit_points:
                score += fit_points
                factors.append((fit_points, fit_reason))

        multiplier, priority_reason = priority_multiplier(entry, priority)
        if multiplier != 1.0 and score > 0:
            boost = score * (multiplier - 1.0)
            score *= multiplier
            factors.append((boost, priority_reason))

        availability = resolve_availability(entry, providers)
        if availability.is_online:
            score += ONLINE_BONUS
            factors.append((ONLINE_BONUS, availability.reason))
        elif availability.provider is not None:
            score += PULLABLE_BONUS
            factors.append((PULLABLE_BONUS, availability.reason))
        else:
            factors.append((0.0, availability.reason))

        ranked_factors = sorted(factors, key=lambda f: -f[0])
        return Recommendation(
            model_id=entry.id,
            entry=entry,
            availability=availability,
            score=round(score, 2),
            rationale=tuple(reason for _, reason in ranked_factors[:MAX_RATIONALE]),
            hardware_fit=not shortfalls,
            priority_multiplier=multiplier,
        )


def hardware_shortfalls(entry: ModelCatalogEntry, hardware: Optional[HardwareProfile]) -> List[str]:
    """Requirements the profile cannot meet. Unknown capacity never excludes."""
    if hardware is None:
        return []
    shortfalls = []
    if hardware.total_ram_gb is not None and entry.min_ram_gb > hardware.total_ram_gb:
        shortfalls.append(f"needs {entry.min_ram_gb:g} GB RAM, have {hardware.total_ram_gb:g} GB")
    vram = hardware.vram_gb
    if vram is not None and entry.min_vram_gb > vram:
        have = f"have {vram:g} GB" if vram else "no GPU detected"
        shortfalls.append(f"needs {entry.min_vram_gb:g} GB VRAM, {have}")
    return shortfalls


def hardware_fit_bonus(entry: ModelCatalogEntry, hardware: Optional[HardwareProfile]) -> Tuple[float, str]:
    if hardware is None or entry.is_cloud:
        return 0.0, ""
    points = 0.0
    parts = []
    if hardware.total_ram_gb is not None and entry.min_ram_gb:
        points += RAM_FIT_POINTS
        parts.append(f"{entry.min_ram_gb:g} GB RAM")
    if hardware.vram_gb is not None and entry.min_vram_gb:
        points += VRAM_FIT_POINTS
        parts.append(f"{entry.min_vram_gb:g} GB VRAM")
    if not points:
        return 0.0, ""
    return points, "Fits your hardware (" + ", ".join(parts) + ")"


def priority_multiplier(entry: ModelCatalogEntry, priority: Priority) -> Tuple[float, str]:
    if priority == Priority.SPEED:
        if not entry.is_cloud and 0 < entry.size_gb <= SMALL_MODEL_GB:
            return 1.3, f"Small model ({entry.size_gb:g} GB) favored for speed"
        if entry.is_quantized:
            return 1.1, f"Quantized ({entry.quantization}) for faster inference"
        return 1.0, ""
    if priority == Priority.QUALITY:
        if entry.is_cloud:
            return 1.3, "Hosted model favored for quality"
        if entry.size_gb >= LARGE_MODEL_GB or entry.quantization.upper() in FULL_PRECISION:
            return 1.3, "Large or full-precision model favored for quality"
        if entry.size_gb >= MEDIUM_MODEL_GB:
            return 1.15, f"Mid-size model ({entry.size_gb:g} GB) favored for quality"
        return 1.0, ""
    return 1.0, ""

