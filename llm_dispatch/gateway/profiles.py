"""Task profiles: static configuration per task type.

A profile holds everything a caller does not send with each request: the
system instruction, few-shot examples, generation parameters, the tuned
prompt prefix and the model lists for each treatment.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from llm_dispatch.gateway.errors import ConfigurationError
from llm_dispatch.gateway.types import FewShotExample, GenerationParameters, ModelTreatment

logger = logging.getLogger(__name__)

_NUMBERED_KEY_RE = re.compile(r"(\d+)$")


# ---------------------------------------------------------------------------
# Profile schema
# ---------------------------------------------------------------------------


class GenerationConfig(BaseModel):
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    max_output_tokens: int | None = None
    response_format: str | None = "application/json"
    response_schema: dict[str, Any] | None = None

    def to_parameters(self) -> GenerationParameters:
        return GenerationParameters(**self.model_dump())


class TaskProfile(BaseModel):
    """Configuration for one task type (e.g. ``extract``, ``determine``)."""

    system_instruction: str = ""
    inputs: dict[str, str] = Field(default_factory=dict, description="Few-shot inputs keyed input1, input2, ...")
    outputs: dict[str, str] = Field(default_factory=dict, description="Few-shot outputs keyed output1, output2, ...")
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    tuned_prompt_prefix: str = ""

    allow_few_shot_for_non_tuned: bool = True
    allow_cache_for_non_tuned: bool = False

    tuned_models: list[str] = Field(default_factory=list)
    tuned_fallback_model: str | None = None
    non_tuned_models: list[str] = Field(default_factory=list)
    non_tuned_fallback_model: str | None = None

    def models_for(self, treatment: ModelTreatment) -> list[str]:
        return self.tuned_models if treatment == ModelTreatment.TUNED else self.non_tuned_models

    def fallback_for(self, treatment: ModelTreatment) -> str | None:
        if treatment == ModelTreatment.TUNED:
            return self.tuned_fallback_model
        return self.non_tuned_fallback_model

    def few_shot_examples(self) -> tuple[FewShotExample, ...]:
        """Pair ``inputN`` with ``outputN`` in numeric order.

        Unmatched keys produce a pair with an empty side, which request
        building later skips with a warning.
        """
        if not self.allow_few_shot_for_non_tuned:
            return ()
        indices = sorted(
            {_key_index(k) for k in self.inputs} | {_key_index(k) for k in self.outputs},
        )
        examples = []
        for i in indices:
            examples.append(
                FewShotExample(
                    input=self.inputs.get(f"input{i}", ""),
                    output=self.outputs.get(f"output{i}", ""),
                )
            )
        return tuple(examples)


def _key_index(key: str) -> int:
    match = _NUMBERED_KEY_RE.search(key)
    if not match:
        raise ValueError(f"few-shot key {key!r} has no numeric suffix")
    return int(match.group(1))


def load_task_profiles(path: str | Path) -> dict[str, TaskProfile]:
    """Read ``{task_type: profile}`` from a JSON file.

    Raises:
        ConfigurationError: if the file is missing, unreadable or invalid.
    """
    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigurationError(f"Task profiles file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Task profiles file {path} is not valid JSON: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Task profiles file {path} must contain a JSON object")

    profiles: dict[str, TaskProfile] = {}
    for task_type, data in raw.items():
        try:
            profile = TaskProfile.model_validate(data)
            profile.few_shot_examples()
        except (ValidationError, ValueError) as e:
            raise ConfigurationError(f"Invalid profile for task type {task_type!r}: {e}") from e
        profiles[task_type] = profile

    logger.info("Loaded %d task profiles from %s", len(profiles), path)
    return profiles
