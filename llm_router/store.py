"""
Small JSON key-value file for user hints (favorites, last selections)
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class StateStore:
    """Persists hints between sessions. Never holds online/installed status."""

    FILENAME = "state.json"

    def __init__(self, state_dir: Path):
        self.path = Path(state_dir) / self.FILENAME
        self._data: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            if isinstance(data, dict):
                return data
            logger.warning(f"Ignoring malformed state file {self.path}")
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load state file {self.path}: {e}")
        return {}

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._save()

    def delete(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._save()

    def _save(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                json.dump(self._data, f, indent=2)
        except OSError as e:
            logger.warning(f"Failed to save state file {self.path}: {e}")
