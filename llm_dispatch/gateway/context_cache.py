"""Context Cache Manager: reusable remote context per (task type, model).

A cached context holds the static part of a request (system instruction and
few-shot history) so it is uploaded once instead of with every call.

Creation is single-flight: at most one retrieval/creation is in progress
per cache key, and concurrent callers await that same task. Caching is an
optimization, so ``get_or_create`` returns ``None`` instead of raising.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from typing import Any

from llm_dispatch.core.metrics import CONTEXT_CACHE_EVENTS
from llm_dispatch.gateway.cache_store import CacheHandleStore
from llm_dispatch.gateway.provider import GeminiClient
from llm_dispatch.gateway.types import CacheEntry, FewShotExample, GenerationParameters, cache_key

logger = logging.getLogger(__name__)


def build_history(few_shot_examples: Sequence[FewShotExample]) -> list[dict[str, Any]]:
    """Interleave few-shot pairs as alternating user / model turns.

    A pair with an empty side is logged and skipped so the history never
    contains a dangling turn.
    """
    contents: list[dict[str, Any]] = []
    for i, example in enumerate(few_shot_examples):
        if not example.input or not example.output:
            logger.warning("Skipping unpaired few-shot example #%d", i + 1)
            continue
        contents.append({"role": "user", "parts": [{"text": example.input}]})
        contents.append({"role": "model", "parts": [{"text": example.output}]})
    return contents


class ContextCacheManager:
    """Owns the in-memory and persisted views of the context-cache map."""

    def __init__(self, client: GeminiClient, store: CacheHandleStore):
        self.client = client
        self.store = store
        self._entries: dict[str, CacheEntry] = {}
        self._in_flight: dict[str, asyncio.Task] = {}

    async def get_or_create(
        self,
        task_type: str,
        model_name: str,
        system_instruction_text: str = "",
        few_shot_examples: Sequence[FewShotExample] = (),
        generation_parameters: GenerationParameters | None = None,
    ) -> CacheEntry | None:
        """Return a usable cache entry for the key, or None to proceed uncached."""
        key = cache_key(task_type, model_name)

        entry = self._entries.get(key)
        if entry and entry.remote_handle:
            CONTEXT_CACHE_EVENTS.labels(event="hit").inc()
            return entry

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(
                self._retrieve_or_create(
                    key,
                    task_type,
                    model_name,
                    system_instruction_text,
                    few_shot_examples,
                    generation_parameters,
                )
            )
            self._in_flight[key] = task
            task.add_done_callback(lambda t, k=key: self._clear_in_flight(k, t))
        else:
            logger.debug("Joining in-flight cache operation for %s", key)

        # Cancelling one waiter leaves the shared task running
        return await asyncio.shield(task)

    def _clear_in_flight(self, key: str, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _retrieve_or_create(
        self,
        key: str,
        task_type: str,
        model_name: str,
        system_instruction_text: str,
        few_shot_examples: Sequence[FewShotExample],
        generation_parameters: GenerationParameters | None,
    ) -> CacheEntry | None:
        try:
            entry = await self._restore_persisted(key, model_name)
            if entry:
                return entry

            entry = self._entries.get(key)
            if entry and entry.remote_handle:
                return entry

            return await self._create(
                key,
                task_type,
                model_name,
                system_instruction_text,
                few_shot_examples,
                generation_parameters,
            )
        except Exception as e:
            logger.error("Cache operation for %s failed, continuing without cache: %s", key, e)
            CONTEXT_CACHE_EVENTS.labels(event="create_failed").inc()
            return None

    async def _restore_persisted(self, key: str, model_name: str) -> CacheEntry | None:
        handle = self.store.get(key)
        if not handle:
            return None

        try:
            remote = await self.client.get_cached_content(handle)
        except Exception as e:
            logger.warning("Could not retrieve persisted cache %s for %s: %s", handle, key, e)
            remote = None

        if remote:
            entry = CacheEntry(cache_key=key, remote_handle=handle, model_name=model_name)
            self._entries[key] = entry
            CONTEXT_CACHE_EVENTS.labels(event="restored").inc()
            logger.info("Restored persisted cache %s for %s", handle, key)
            return entry

        logger.info("Persisted cache %s for %s is gone, purging", handle, key)
        self._entries.pop(key, None)
        self.store.delete(key)
        self.store.save()
        CONTEXT_CACHE_EVENTS.labels(event="stale_purged").inc()
        return None

    async def _create(
        self,
        key: str,
        task_type: str,
        model_name: str,
        system_instruction_text: str,
        few_shot_examples: Sequence[FewShotExample],
        generation_parameters: GenerationParameters | None,
    ) -> CacheEntry | None:
        contents = build_history(few_shot_examples)
        if not contents and not system_instruction_text:
            logger.info("Nothing to cache for %s", key)
            return None

        display_name = f"cache-{task_type}-{model_name}-{int(time.time() * 1000)}"
        resource = await self.client.create_cached_content(
            model_name,
            contents,
            display_name,
            system_instruction=system_instruction_text or None,
            generation_parameters=generation_parameters,
        )
        handle = resource.get("name", "")
        if not handle:
            logger.error("Cache creation for %s returned no handle", key)
            CONTEXT_CACHE_EVENTS.labels(event="create_failed").inc()
            return None

        entry = CacheEntry(cache_key=key, remote_handle=handle, model_name=model_name)
        self._entries[key] = entry
        self.store.set(key, handle)
        try:
            self.store.save()
        except OSError as e:
            logger.error("Failed to persist cache map after creating %s: %s", handle, e)

        CONTEXT_CACHE_EVENTS.labels(event="created").inc()
        logger.info("Created cache %s for %s (%d history turns)", handle, key, len(contents))
        return entry

    def invalidate(
        self,
        task_type: str,
        model_name: str,
        persistently: bool = False,
        expected_handle: str | None = None,
    ) -> bool:
        """Drop the entry from memory and, when ``persistently``, from the durable map.

        With ``expected_handle``, nothing is dropped if the key already holds a
        different handle, so a cache recreated by another request survives.
        Returns True when the entry was invalidated.
        """
        key = cache_key(task_type, model_name)
        if expected_handle is not None:
            entry = self._entries.get(key)
            current = {entry.remote_handle if entry else None, self.store.get(key)} - {None, ""}
            if current - {expected_handle}:
                logger.info("Cache for %s already replaced, keeping %s", key, ", ".join(sorted(current)))
                return False

        self._entries.pop(key, None)
        if persistently and self.store.delete(key):
            self.store.save()
        CONTEXT_CACHE_EVENTS.labels(event="invalidated").inc()
        logger.info("Invalidated cache for %s (persistently=%s)", key, persistently)
        return True

    def get_entry(self, task_type: str, model_name: str) -> CacheEntry | None:
        return self._entries.get(cache_key(task_type, model_name))

    def get_stats(self) -> dict:
        return {
            "cached_keys": sorted(self._entries),
            "persisted_keys": sorted(self.store.keys()),
            "in_flight": sorted(self._in_flight),
        }
