"""Abstract key-value store used for checkpoints, exported ids and sync bookkeeping."""

import copy
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable


class KeyValueStore(ABC):
    """Minimal JSON-valued key-value contract."""

    @abstractmethod
    def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Return the stored values for the keys that exist."""

    @abstractmethod
    def set(self, mapping: Dict[str, Any]) -> None:
        """Store every key of ``mapping``, replacing existing values."""

    @abstractmethod
    def remove(self, keys: Iterable[str]) -> None:
        """Delete the given keys; missing keys are ignored."""

    def get_one(self, key: str, default: Any = None) -> Any:
        return self.get([key]).get(key, default)


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store. Values are deep-copied so callers never share state."""

    def __init__(self):
        self._data: Dict[str, Any] = {}

    def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        return {k: copy.deepcopy(self._data[k]) for k in keys if k in self._data}

    def set(self, mapping: Dict[str, Any]) -> None:
        for key, value in mapping.items():
            self._data[key] = copy.deepcopy(value)

    def remove(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._data.pop(key, None)
