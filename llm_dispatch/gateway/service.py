"""Extraction service: the entry point used by pipeline stages.

Usage:
    service = ExtractionService()
    service.init()
    result = await service.run("extract", prompt, ModelTreatment.TUNED, batch_index=3)
    if result.success:
        data = json.loads(result.response_text)
"""

from __future__ import annotations

import logging

from llm_dispatch.core.config import Settings, settings as default_settings, validate_settings
from llm_dispatch.gateway.cache_store import CacheHandleStore
from llm_dispatch.gateway.context_cache import ContextCacheManager
from llm_dispatch.gateway.errors import ConfigurationError
from llm_dispatch.gateway.orchestrator import DispatchOrchestrator, log_context
from llm_dispatch.gateway.profiles import TaskProfile, load_task_profiles
from llm_dispatch.gateway.provider import GeminiClient
from llm_dispatch.gateway.rate_limiter import RateLimiterRegistry, RateLimitPolicy
from llm_dispatch.gateway.response_validator import clean_json_response
from llm_dispatch.gateway.retry import RetryEngine
from llm_dispatch.gateway.types import ExtractionResult, ModelTreatment, TaskRequest

logger = logging.getLogger(__name__)


class ExtractionService:
    """Owns the shared registries and runs requests through the orchestrator.

    The rate limiter registry and cache manager live here, one set per
    service instance, and are passed to every component that needs them.
    """

    def __init__(
        self,
        config: Settings | None = None,
        profiles: dict[str, TaskProfile] | None = None,
        client: GeminiClient | None = None,
        orchestrator: DispatchOrchestrator | None = None,
    ):
        """
        Args:
            config: Settings override (defaults to the module-level settings)
            profiles: Task profiles; loaded from ``task_profiles_path`` when omitted
            client: Provider client override
            orchestrator: Fully built orchestrator override
        """
        self.config = config or default_settings
        self._profiles = profiles
        self.client = client or GeminiClient(
            api_key=self.config.gemini_api_key,
            base_url=self.config.gemini_base_url,
            timeout=self.config.request_timeout_seconds,
            cache_ttl_seconds=self.config.cache_ttl_seconds,
        )

        self.rate_limiters = RateLimiterRegistry(
            RateLimitPolicy(
                points=self.config.rate_limit_points,
                window_seconds=self.config.rate_limit_window_seconds,
                block_seconds=self.config.rate_limit_block_seconds,
            )
        )
        self.cache_store = CacheHandleStore(self.config.cache_map_path)
        self.cache_manager = ContextCacheManager(self.client, self.cache_store)
        self.orchestrator = orchestrator or DispatchOrchestrator(
            client=self.client,
            rate_limiters=self.rate_limiters,
            cache_manager=self.cache_manager,
            retry_engine=RetryEngine(self.config.initial_delay_ms, self.config.max_delay_ms),
            fallback_max_attempts=self.config.max_retries,
            request_timeout=self.config.request_timeout_seconds,
            rate_limit_per_stream=self.config.rate_limit_per_stream,
        )

        self._model_indices: dict[str, int] = {}
        self._initialized = False

    def init(self) -> None:
        """Validate settings, load task profiles and the persisted cache map. Safe to call twice."""
        if self._initialized:
            return
        validate_settings(self.config)
        if self._profiles is None:
            self._profiles = load_task_profiles(self.config.task_profiles_path)
        self.cache_store.load()
        self._initialized = True
        logger.info("Extraction service ready with task types: %s", ", ".join(sorted(self._profiles)))

    @property
    def profiles(self) -> dict[str, TaskProfile]:
        if self._profiles is None:
            raise ConfigurationError("Extraction service used before init()")
        return self._profiles

    def select_model(self, task_type: str, treatment: ModelTreatment) -> tuple[str, str | None]:
        """Pick the primary model by round-robin, plus the treatment's fallback.

        Raises:
            ConfigurationError: unknown task type or empty model list.
        """
        profile = self.profiles.get(task_type)
        if profile is None:
            raise ConfigurationError(f"Unknown task type: {task_type}")

        models = profile.models_for(treatment)
        if not models:
            raise ConfigurationError(f"No {treatment.value} models configured for {task_type}")

        index_key = f"{task_type}:{treatment.value}"
        index = self._model_indices.get(index_key, 0) % len(models)
        self._model_indices[index_key] = (index + 1) % len(models)
        return models[index], profile.fallback_for(treatment)

    def build_request(
        self,
        task_type: str,
        prompt: str,
        treatment: ModelTreatment,
        batch_index: int,
    ) -> TaskRequest:
        profile = self.profiles.get(task_type)
        if profile is None:
            raise ConfigurationError(f"Unknown task type: {task_type}")
        model_name, fallback_model_name = self.select_model(task_type, treatment)
        logger.debug(
            "Selected %s (fallback %s) for %s batch %d",
            model_name,
            fallback_model_name or "N/A",
            task_type,
            batch_index,
            extra={"task_type": task_type, "model": model_name, "batch_index": batch_index},
        )
        return TaskRequest(
            task_type=task_type,
            model_name=model_name,
            prompt=prompt,
            fallback_model_name=fallback_model_name,
            system_instruction_text=profile.system_instruction,
            few_shot_examples=profile.few_shot_examples(),
            generation_parameters=profile.generation.to_parameters(),
            use_cache=profile.allow_cache_for_non_tuned,
            treatment=treatment,
            tuned_prompt_prefix=profile.tuned_prompt_prefix,
            batch_index=batch_index,
        )

    async def run(
        self,
        task_type: str,
        prompt: str,
        treatment: ModelTreatment = ModelTreatment.NON_TUNED,
        batch_index: int = 0,
    ) -> ExtractionResult:
        """Orchestrate one extraction and clean the JSON before returning it.

        Raises:
            ConfigurationError: unknown task type, empty model list or an
                invalid rate limit policy.
        """
        self.init()
        request = self.build_request(task_type, prompt, treatment, batch_index)
        outcome = await self.orchestrator.orchestrate(request)

        if not outcome.success:
            logger.error(
                "%s batch %d failed on %s: %s %s",
                task_type,
                batch_index,
                outcome.model_actually_used or "no model",
                outcome.failure_reason.value if outcome.failure_reason else "unknown",
                outcome.error_detail,
                extra=log_context(request, outcome.model_actually_used),
            )
            return ExtractionResult(
                success=False,
                model_actually_used=outcome.model_actually_used,
                used_fallback=outcome.used_fallback,
                effective_model_treatment=outcome.effective_model_treatment,
                failure_reason=outcome.failure_reason.value if outcome.failure_reason else None,
            )

        cleaned = clean_json_response(outcome.response_text)
        if not cleaned and outcome.response_text:
            logger.warning(
                "JSON cleaning emptied a non-empty response for %s from %s",
                task_type,
                outcome.model_actually_used,
                extra=log_context(request, outcome.model_actually_used),
            )

        return ExtractionResult(
            success=True,
            response_text=cleaned,
            usage_metadata=outcome.usage_metadata,
            model_actually_used=outcome.model_actually_used,
            used_fallback=outcome.used_fallback,
            effective_model_treatment=outcome.effective_model_treatment,
        )

    def get_status(self) -> dict:
        """Introspection snapshot of limiters and cache state."""
        return {
            "initialized": self._initialized,
            "task_types": sorted(self._profiles or {}),
            "rate_limiters": self.rate_limiters.get_all_stats(),
            "context_cache": self.cache_manager.get_stats(),
        }
