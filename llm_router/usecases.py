"""
Use cases and optimization priorities understood by the recommender
"""

from enum import Enum
from typing import Dict, List, Tuple, Union

from .errors import ConfigError


class UseCase(str, Enum):
    CODING = "coding"
    CHAT = "chat"
    ANALYSIS = "analysis"
    SUMMARIZATION = "summarization"
    CREATIVE = "creative"
    FINE_TUNING = "fine-tuning"
    MULTIMODAL = "multimodal"
    REASONING = "reasoning"

    @classmethod
    def parse(cls, value: Union[str, "UseCase"]) -> "UseCase":
        if isinstance(value, UseCase):
            return value
        key = value.strip().lower()
        key = USE_CASE_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ConfigError(f"Unknown use case: {value!r}") from None


class Priority(str, Enum):
    SPEED = "speed"
    QUALITY = "quality"
    BALANCED = "balanced"

    @classmethod
    def parse(cls, value: Union[str, "Priority"]) -> "Priority":
        if isinstance(value, Priority):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ConfigError(f"Unknown priority: {value!r}") from None


USE_CASE_ALIASES: Dict[str, str] = {
    "code": "coding",
    "code-generation": "coding",
    "chat-assistant": "chat",
    "creative-writing": "creative",
    "finetuning": "fine-tuning",
}

# Catalog tags that signal fit for each use case
USE_CASE_TAGS: Dict[UseCase, Tuple[str, ...]] = {
    UseCase.CODING: ("code", "reasoning"),
    UseCase.CHAT: ("chat", "general"),
    UseCase.ANALYSIS: ("analysis", "reasoning", "long-context"),
    UseCase.SUMMARIZATION: ("summarization", "analysis", "long-context"),
    UseCase.CREATIVE: ("creative", "chat"),
    UseCase.FINE_TUNING: ("code", "balanced"),
    UseCase.MULTIMODAL: ("multimodal", "vision", "long-context"),
    UseCase.REASONING: ("reasoning", "thinking"),
}

USE_CASE_OPTIONS: List[Dict[str, str]] = [
    {
        "id": UseCase.CODING.value,
        "label": "Code Generation",
        "description": "Multi-file context, refactoring, test generation, and live code assist",
    },
    {
        "id": UseCase.CHAT.value,
        "label": "Assistant / Pair Programmer",
        "description": "Conversational partner for debugging, brainstorming, and lightweight coding",
    },
    {
        "id": UseCase.ANALYSIS.value,
        "label": "Analysis & Audit",
        "description": "Deep project analysis, security review, and dependency mapping",
    },
    {
        "id": UseCase.SUMMARIZATION.value,
        "label": "Summarization & Docs",
        "description": "Project briefs, changelog drafting, and knowledge distillation",
    },
    {
        "id": UseCase.CREATIVE.value,
        "label": "Creative & UX Copy",
        "description": "Marketing copy, UX microcopy, naming, and mood-based content",
    },
    {
        "id": UseCase.FINE_TUNING.value,
        "label": "Fine-tuning Base",
        "description": "Model bases best suited for further instruction tuning and RAG",
    },
    {
        "id": UseCase.MULTIMODAL.value,
        "label": "Multimodal & Design",
        "description": "Image understanding, asset audits, and design-to-code guidance",
    },
    {
        "id": UseCase.REASONING.value,
        "label": "Reasoning",
        "description": "Step-by-step problem solving and planning",
    },
]
