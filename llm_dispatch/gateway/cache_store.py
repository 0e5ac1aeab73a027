"""Durable ``cache_key -> remote handle`` map, stored as a flat JSON object."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from llm_dispatch.gateway.errors import ConfigurationError

logger = logging.getLogger(__name__)


class CacheHandleStore:
    """Persisted view of the context-cache map.

    Read once at startup with ``load()``; every mutation is followed by
    ``save()`` from the owning cache manager.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._handles: dict[str, str] = {}
        self._loaded = False

    def load(self) -> dict[str, str]:
        """Read the map from disk. A missing or empty file yields an empty map.

        Raises:
            ConfigurationError: if the file exists but is not a JSON object of strings.
        """
        if self._loaded:
            return dict(self._handles)

        if self.path.exists():
            raw = self.path.read_text(encoding="utf-8").strip()
            if raw:
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError as e:
                    raise ConfigurationError(f"Unreadable cache map {self.path}: {e}") from e
                if not isinstance(data, dict) or not all(
                    isinstance(k, str) and isinstance(v, str) for k, v in data.items()
                ):
                    raise ConfigurationError(f"Cache map {self.path} must be a JSON object of strings")
                self._handles = data

        self._loaded = True
        logger.info("Loaded %d persisted cache handles from %s", len(self._handles), self.path)
        return dict(self._handles)

    def get(self, key: str) -> str | None:
        return self._handles.get(key)

    def set(self, key: str, handle: str) -> None:
        self._handles[key] = handle

    def delete(self, key: str) -> bool:
        return self._handles.pop(key, None) is not None

    def keys(self) -> list[str]:
        return list(self._handles)

    def save(self) -> None:
        """Flush the map to disk through a temp file and an atomic rename."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".cache_map-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._handles, f, indent=2, sort_keys=True)
                f.write("\n")
            os.replace(tmp_name, self.path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug("Saved %d cache handles to %s", len(self._handles), self.path)
