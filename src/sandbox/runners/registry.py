from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import structlog
import yaml

from ..core.errors import ConfigError, UnsupportedLanguage
from .base import Adapter
from .builtin import BUILTIN_ADAPTERS

log = structlog.get_logger(__name__)


class AdapterRegistry:
    """Language id / alias -> Adapter lookup table."""

    def __init__(self, adapters: Iterable[Adapter] = ()):
        self._adapters: Dict[str, Adapter] = {}
        self._index: Dict[str, str] = {}
        self._lock = threading.Lock()
        for adapter in adapters:
            self.register(adapter)

    @staticmethod
    def _key(language: str) -> str:
        return (language or "").strip().lower()

    def register(self, adapter: Adapter, *, replace: bool = False) -> None:
        names = [self._key(adapter.name), *(self._key(a) for a in adapter.aliases)]
        with self._lock:
            for n in names:
                owner = self._index.get(n)
                if owner is not None and owner != adapter.name and not replace:
                    raise ConfigError(f"language id '{n}' already registered by '{owner}'")
            old = self._adapters.get(adapter.name)
            if old is not None:
                for alias in (self._key(old.name), *(self._key(a) for a in old.aliases)):
                    self._index.pop(alias, None)
            self._adapters[adapter.name] = adapter
            for n in names:
                self._index[n] = adapter.name

    def resolve(self, language: str) -> Adapter:
        with self._lock:
            name = self._index.get(self._key(language))
            if name is None:
                raise UnsupportedLanguage(language)
            return self._adapters[name]

    def __contains__(self, language: str) -> bool:
        with self._lock:
            return self._key(language) in self._index

    def languages(self) -> List[Adapter]:
        with self._lock:
            return sorted(self._adapters.values(), key=lambda a: a.name)

    def load_file(self, path: Path) -> int:
        """Register extra adapters from a YAML file (``adapters: [...]``)."""
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        entries = data.get("adapters", []) if isinstance(data, dict) else data
        if not isinstance(entries, list):
            raise ConfigError(f"{path}: expected a list of adapters")
        count = 0
        for entry in entries:
            try:
                adapter = Adapter.from_dict(entry)
            except TypeError as e:
                raise ConfigError(f"{path}: bad adapter entry {entry!r}: {e}") from e
            self.register(adapter, replace=True)
            count += 1
        log.info("adapters_loaded", path=str(path), count=count)
        return count


def default_registry(adapters_file: Optional[Path] = None) -> AdapterRegistry:
    reg = AdapterRegistry(BUILTIN_ADAPTERS)
    if adapters_file is not None:
        reg.load_file(adapters_file)
    return reg
