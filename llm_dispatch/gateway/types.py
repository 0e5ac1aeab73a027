"""Core types and DTOs for the extraction dispatch gateway."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ModelTreatment(str, Enum):
    """How a model call is configured."""

    TUNED = "tuned"  # plain text output, no system instruction / few-shot / cache
    NON_TUNED = "non-tuned"


class ErrorClass(str, Enum):
    """Classified failure of a single attempt."""

    INTERNAL_RATE_LIMIT = "internal_rate_limit"  # our own limiter, not a real failure
    TRANSIENT_SERVER_ERROR = "transient_server_error"  # 5xx, unavailable, timeouts
    STALE_CACHE = "stale_cache"  # cached content not found / permission denied
    QUOTA_EXCEEDED = "quota_exceeded"  # 429, RESOURCE_EXHAUSTED
    SAFETY_BLOCKED = "safety_blocked"  # terminal
    MALFORMED_RESPONSE = "malformed_response"  # bad JSON, worth another try
    UNCLASSIFIED = "unclassified"

    @property
    def retryable(self) -> bool:
        return self is not ErrorClass.SAFETY_BLOCKED


class FailureReason(str, Enum):
    """Terminal failure reasons reported to callers."""

    FAILED_FIRST_ATTEMPT = "failed_first_attempt"
    EXHAUSTED_RETRIES = "exhausted_retries"
    NON_RETRYABLE_ERROR = "non_retryable_error"
    SAFETY_BLOCKED = "safety_blocked"
    NO_PRIMARY_MODEL = "no_primary_model"
    PRIMARY_PREP_FAILED = "primary_prep_failed"
    FALLBACK_PREP_FAILED = "fallback_prep_failed"


# ---------------------------------------------------------------------------
# Task Request
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FewShotExample:
    """One (input, output) demonstration pair."""

    input: str
    output: str


@dataclass(frozen=True)
class GenerationParameters:
    """Sampling and output-format parameters sent with every call."""

    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    max_output_tokens: int | None = None
    response_format: str | None = None  # MIME type, e.g. "application/json"
    response_schema: dict[str, Any] | None = None

    def to_api(self) -> dict[str, Any]:
        """Serialize to the provider's generationConfig object (camelCase, no nulls)."""
        config: dict[str, Any] = {}
        if self.temperature is not None:
            config["temperature"] = self.temperature
        if self.top_p is not None:
            config["topP"] = self.top_p
        if self.top_k is not None:
            config["topK"] = self.top_k
        if self.max_output_tokens is not None:
            config["maxOutputTokens"] = self.max_output_tokens
        if self.response_format:
            config["responseMimeType"] = self.response_format
        if self.response_schema:
            config["responseSchema"] = self.response_schema
        return config


@dataclass(frozen=True)
class TaskRequest:
    """A single logical extraction request.

    Constructed once per request by the caller and consumed by the
    orchestrator; never mutated.
    """

    task_type: str
    model_name: str
    prompt: str
    fallback_model_name: str | None = None
    system_instruction_text: str = ""
    few_shot_examples: tuple[FewShotExample, ...] = ()
    generation_parameters: GenerationParameters = field(default_factory=GenerationParameters)
    use_cache: bool = False

    treatment: ModelTreatment = ModelTreatment.NON_TUNED
    tuned_prompt_prefix: str = ""
    batch_index: int = 0


# ---------------------------------------------------------------------------
# Cache Entry
# ---------------------------------------------------------------------------


def cache_key(task_type: str, model_name: str) -> str:
    """Logical cache key for a (task type, model) pair."""
    return f"{task_type}-{model_name}"


@dataclass
class CacheEntry:
    """A remote cached-context handle owned by the cache manager."""

    cache_key: str
    remote_handle: str  # e.g. "cachedContents/abc123"
    model_name: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Usage metadata
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UsageMetadata:
    """Token counts reported by the provider."""

    prompt_token_count: int = 0
    candidates_token_count: int = 0
    cached_content_token_count: int = 0
    total_token_count: int = 0

    @classmethod
    def from_api(cls, data: dict[str, Any] | None) -> UsageMetadata | None:
        if not data:
            return None
        return cls(
            prompt_token_count=int(data.get("promptTokenCount", 0) or 0),
            candidates_token_count=int(data.get("candidatesTokenCount", 0) or 0),
            cached_content_token_count=int(data.get("cachedContentTokenCount", 0) or 0),
            total_token_count=int(data.get("totalTokenCount", 0) or 0),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_token_count": self.prompt_token_count,
            "candidates_token_count": self.candidates_token_count,
            "cached_content_token_count": self.cached_content_token_count,
            "total_token_count": self.total_token_count,
        }


# ---------------------------------------------------------------------------
# Preparation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EffectiveParameters:
    """Parameters resolved for one attempt budget under a given treatment."""

    model_name: str
    treatment: ModelTreatment
    prompt: str
    system_instruction_text: str
    few_shot_examples: tuple[FewShotExample, ...]
    generation_parameters: GenerationParameters
    use_cache: bool


@dataclass(frozen=True)
class PreparedCall:
    """The exact request for one model, fixed for its whole attempt budget."""

    task_type: str
    model_name: str
    treatment: ModelTreatment
    body: dict[str, Any]
    using_cache: bool = False
    cache_name: str | None = None

    @property
    def cache_key(self) -> str:
        return cache_key(self.task_type, self.model_name)


# ---------------------------------------------------------------------------
# Attempt / retry / orchestration results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AttemptResult:
    """Outcome of one provider call. Produced fresh for every attempt."""

    response_text: str = ""
    usage_metadata: UsageMetadata | None = None
    succeeded: bool = False
    error_class: ErrorClass | None = None
    error_detail: str = ""
    retry_after_ms: int = 0  # only meaningful for INTERNAL_RATE_LIMIT

    @classmethod
    def success(cls, text: str, usage: UsageMetadata | None) -> AttemptResult:
        return cls(response_text=text, usage_metadata=usage, succeeded=bool(text) or usage is not None)

    @classmethod
    def failure(cls, error_class: ErrorClass, detail: str = "", retry_after_ms: int = 0) -> AttemptResult:
        return cls(error_class=error_class, error_detail=detail, retry_after_ms=retry_after_ms)


@dataclass(frozen=True)
class RetryOutcome:
    """Terminal result of the retry engine for one prepared call."""

    response_text: str = ""
    usage_metadata: UsageMetadata | None = None
    succeeded: bool = False
    first_attempt_failed: bool = False
    attempts: int = 0
    failure_reason: FailureReason | None = None
    error_class: ErrorClass | None = None
    error_detail: str = ""


@dataclass(frozen=True)
class OrchestrationOutcome:
    """Terminal value of one orchestrated request."""

    response_text: str = ""
    usage_metadata: UsageMetadata | None = None
    success: bool = False
    used_fallback: bool = False
    model_actually_used: str = ""
    effective_model_treatment: ModelTreatment = ModelTreatment.NON_TUNED
    failure_reason: FailureReason | None = None
    error_class: ErrorClass | None = None
    error_detail: str = ""


@dataclass(frozen=True)
class ExtractionResult:
    """Outbound result handed back to the calling pipeline stage."""

    success: bool
    response_text: str = ""
    usage_metadata: UsageMetadata | None = None
    model_actually_used: str = ""
    used_fallback: bool = False
    effective_model_treatment: ModelTreatment = ModelTreatment.NON_TUNED
    failure_reason: str | None = None

    def to_dict(self) -> dict:
        """Serialize to JSON-compatible dict."""
        return {
            "success": self.success,
            "response_text": self.response_text,
            "usage_metadata": self.usage_metadata.to_dict() if self.usage_metadata else None,
            "model_actually_used": self.model_actually_used,
            "used_fallback": self.used_fallback,
            "effective_model_treatment": self.effective_model_treatment.value,
            "failure_reason": self.failure_reason,
        }
