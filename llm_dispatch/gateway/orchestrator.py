"""Dispatch Orchestrator: primary single-shot attempt, then fallback with full retries.

Phase 0: the primary model gets exactly one attempt (no backoff).
Phase 1: on any primary failure, the fallback model runs with the full
retry budget. A tuned primary hands over to a non-tuned fallback.

Phases are strictly sequential. The orchestrator only sees classified
``RetryOutcome`` values, never raw provider exceptions.
"""

from __future__ import annotations

import logging
import time

from llm_dispatch.core.metrics import LLM_ATTEMPT_DURATION, LLM_ATTEMPTS, ORCHESTRATIONS
from llm_dispatch.gateway.context_cache import ContextCacheManager
from llm_dispatch.gateway.errors import PreparationError, classify_error
from llm_dispatch.gateway.model_preparer import ModelPreparer, resolve_parameters
from llm_dispatch.gateway.provider import GeminiClient
from llm_dispatch.gateway.rate_limiter import RateLimiterRegistry
from llm_dispatch.gateway.response_validator import process_response
from llm_dispatch.gateway.retry import AttemptFn, RetryEngine
from llm_dispatch.gateway.types import (
    AttemptResult,
    ErrorClass,
    FailureReason,
    ModelTreatment,
    OrchestrationOutcome,
    PreparedCall,
    RetryOutcome,
    TaskRequest,
)

logger = logging.getLogger(__name__)


def log_context(request: TaskRequest, model_name: str | None) -> dict:
    """``extra`` fields picked up by the JSON log formatter."""
    return {"task_type": request.task_type, "model": model_name, "batch_index": request.batch_index}


class DispatchOrchestrator:
    """Runs one ``TaskRequest`` through the primary / fallback protocol.

    Integrates:
      - RateLimiterRegistry: per-model pacing, consumed once per attempt
      - ModelPreparer: effective parameters and request body per model
      - ContextCacheManager: stale-cache invalidation between retries
      - RetryEngine: attempt budget, classification and backoff
    """

    def __init__(
        self,
        client: GeminiClient,
        rate_limiters: RateLimiterRegistry,
        cache_manager: ContextCacheManager,
        retry_engine: RetryEngine | None = None,
        preparer: ModelPreparer | None = None,
        fallback_max_attempts: int = 5,
        request_timeout: float = 180.0,
        rate_limit_per_stream: bool = True,
    ):
        """
        Args:
            fallback_max_attempts: Retry budget for the fallback phase
            request_timeout: Bound on each provider call, in seconds
            rate_limit_per_stream: Key buckets by task type and batch index
                instead of sharing one bucket per model
        """
        self.client = client
        self.rate_limiters = rate_limiters
        self.cache_manager = cache_manager
        self.retry_engine = retry_engine or RetryEngine()
        self.preparer = preparer or ModelPreparer(cache_manager)
        self.fallback_max_attempts = fallback_max_attempts
        self.request_timeout = request_timeout
        self.rate_limit_per_stream = rate_limit_per_stream

    def rate_limit_key(self, request: TaskRequest, model_name: str) -> str:
        if self.rate_limit_per_stream:
            return f"{request.task_type}:{request.batch_index}"
        return model_name

    async def orchestrate(self, request: TaskRequest) -> OrchestrationOutcome:
        """Execute the two-phase protocol and return a terminal outcome.

        Raises:
            ConfigurationError: if a model's rate limiter cannot be created.
        """
        primary_treatment = request.treatment
        primary_failure: FailureReason = FailureReason.NO_PRIMARY_MODEL
        primary_error: ErrorClass | None = None
        primary_detail = ""

        # --- Phase 0: primary, single strict attempt ---
        if request.model_name:
            prepared = await self._prepare(request, request.model_name, primary_treatment)
            if prepared is None:
                primary_failure = FailureReason.PRIMARY_PREP_FAILED
                primary_detail = f"Could not prepare primary model {request.model_name}"
            else:
                outcome = await self._run(request, prepared, max_attempts=1)
                if outcome.succeeded:
                    return self._finish(outcome, request.model_name, primary_treatment, used_fallback=False)

                if outcome.error_class == ErrorClass.SAFETY_BLOCKED:
                    logger.warning(
                        "Primary %s blocked by safety filters for %s, not trying fallback",
                        request.model_name,
                        request.task_type,
                        extra=log_context(request, request.model_name),
                    )
                    return self._fail(
                        FailureReason.SAFETY_BLOCKED,
                        request.model_name,
                        primary_treatment,
                        used_fallback=False,
                        error_class=outcome.error_class,
                        detail=outcome.error_detail,
                    )

                primary_failure = outcome.failure_reason or FailureReason.FAILED_FIRST_ATTEMPT
                primary_error = outcome.error_class
                primary_detail = outcome.error_detail
                logger.info(
                    "Primary %s failed for %s (%s), handing over to fallback",
                    request.model_name,
                    request.task_type,
                    primary_failure.value,
                    extra=log_context(request, request.model_name),
                )

        # --- Phase 1: fallback, full retry budget ---
        if not request.fallback_model_name:
            logger.error(
                "No fallback model for %s, failing with %s",
                request.task_type,
                primary_failure.value,
                extra=log_context(request, request.model_name),
            )
            return self._fail(
                primary_failure,
                request.model_name,
                primary_treatment,
                used_fallback=False,
                error_class=primary_error,
                detail=primary_detail,
            )

        fallback_model = request.fallback_model_name
        fallback_treatment = (
            ModelTreatment.NON_TUNED if primary_treatment == ModelTreatment.TUNED else primary_treatment
        )

        prepared = await self._prepare(request, fallback_model, fallback_treatment)
        if prepared is None:
            return self._fail(
                FailureReason.FALLBACK_PREP_FAILED,
                fallback_model,
                fallback_treatment,
                used_fallback=True,
                detail=f"Could not prepare fallback model {fallback_model}",
            )

        outcome = await self._run(request, prepared, max_attempts=self.fallback_max_attempts)
        if outcome.succeeded:
            return self._finish(outcome, fallback_model, fallback_treatment, used_fallback=True)

        return self._fail(
            outcome.failure_reason
            if outcome.error_class != ErrorClass.SAFETY_BLOCKED
            else FailureReason.SAFETY_BLOCKED,
            fallback_model,
            fallback_treatment,
            used_fallback=True,
            error_class=outcome.error_class,
            detail=outcome.error_detail,
        )

    async def _prepare(
        self,
        request: TaskRequest,
        model_name: str,
        treatment: ModelTreatment,
    ) -> PreparedCall | None:
        params = resolve_parameters(request, treatment, model_name)
        try:
            return await self.preparer.prepare(request.task_type, params)
        except PreparationError as e:
            logger.error(
                "Preparation failed for %s on %s: %s",
                request.task_type,
                model_name,
                e,
                extra=log_context(request, model_name),
            )
            return None

    async def _run(self, request: TaskRequest, prepared: PreparedCall, max_attempts: int) -> RetryOutcome:
        async def invalidate_cache() -> None:
            self.cache_manager.invalidate(
                prepared.task_type,
                prepared.model_name,
                persistently=True,
                expected_handle=prepared.cache_name,
            )

        return await self.retry_engine.execute(
            self.make_attempt_fn(request),
            prepared,
            max_attempts,
            on_stale_cache=invalidate_cache if prepared.using_cache else None,
        )

    def make_attempt_fn(self, request: TaskRequest) -> AttemptFn:
        """Attempt function: limiter gate, provider call, validation. Never raises on call errors."""

        async def attempt(prepared: PreparedCall) -> AttemptResult:
            limiter = self.rate_limiters.acquire(prepared.model_name)
            wait_ms = limiter.consume(self.rate_limit_key(request, prepared.model_name))
            if wait_ms:
                LLM_ATTEMPTS.labels(model=prepared.model_name, outcome=ErrorClass.INTERNAL_RATE_LIMIT.value).inc()
                return AttemptResult.failure(
                    ErrorClass.INTERNAL_RATE_LIMIT,
                    f"Rate limited for {wait_ms}ms",
                    retry_after_ms=wait_ms,
                )

            start = time.monotonic()
            try:
                data = await self.client.generate_content(
                    prepared.model_name, prepared.body, timeout=self.request_timeout
                )
                processed = process_response(data)
            except Exception as e:
                error_class = classify_error(e, used_cache=prepared.using_cache)
                logger.debug(
                    "Attempt on %s failed (%s): %s",
                    prepared.model_name,
                    error_class.value,
                    e,
                    extra=log_context(request, prepared.model_name),
                )
                LLM_ATTEMPTS.labels(model=prepared.model_name, outcome=error_class.value).inc()
                return AttemptResult.failure(error_class, f"{type(e).__name__}: {e}")
            finally:
                LLM_ATTEMPT_DURATION.labels(model=prepared.model_name).observe(time.monotonic() - start)

            LLM_ATTEMPTS.labels(model=prepared.model_name, outcome="success").inc()
            return AttemptResult.success(processed.text, processed.usage_metadata)

        return attempt

    @staticmethod
    def _finish(
        outcome: RetryOutcome,
        model_name: str,
        treatment: ModelTreatment,
        used_fallback: bool,
    ) -> OrchestrationOutcome:
        ORCHESTRATIONS.labels(outcome="success", used_fallback=str(used_fallback).lower()).inc()
        return OrchestrationOutcome(
            response_text=outcome.response_text,
            usage_metadata=outcome.usage_metadata,
            success=True,
            used_fallback=used_fallback,
            model_actually_used=model_name,
            effective_model_treatment=treatment,
        )

    @staticmethod
    def _fail(
        reason: FailureReason | None,
        model_name: str,
        treatment: ModelTreatment,
        used_fallback: bool,
        error_class: ErrorClass | None = None,
        detail: str = "",
    ) -> OrchestrationOutcome:
        reason = reason or FailureReason.EXHAUSTED_RETRIES
        ORCHESTRATIONS.labels(outcome=reason.value, used_fallback=str(used_fallback).lower()).inc()
        return OrchestrationOutcome(
            success=False,
            used_fallback=used_fallback,
            model_actually_used=model_name,
            effective_model_treatment=treatment,
            failure_reason=reason,
            error_class=error_class,
            error_detail=detail,
        )
