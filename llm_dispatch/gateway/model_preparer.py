"""Model Preparer: effective parameters and the exact request body per model.

The treatment decides what a call may carry:
  - tuned: plain-text output, no schema, no system instruction, no few-shot,
    no cache; the prompt is prefixed with the tuned instruction block.
  - non-tuned: configured output format and schema, system instruction,
    few-shot history and cache as the request allows.

The resulting ``PreparedCall`` is frozen and reused for the whole attempt
budget of one model.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any

from llm_dispatch.gateway.context_cache import ContextCacheManager, build_history
from llm_dispatch.gateway.provider import model_path
from llm_dispatch.gateway.types import (
    CacheEntry,
    EffectiveParameters,
    ModelTreatment,
    PreparedCall,
    TaskRequest,
)

logger = logging.getLogger(__name__)

JSON_MIME_TYPE = "application/json"
TEXT_MIME_TYPE = "text/plain"


def resolve_parameters(
    request: TaskRequest,
    treatment: ModelTreatment,
    model_name: str,
) -> EffectiveParameters:
    """Effective parameters for ``model_name`` under ``treatment``."""
    gen = request.generation_parameters

    if treatment == ModelTreatment.TUNED:
        prompt = request.prompt
        prefix = request.tuned_prompt_prefix.strip()
        if prefix:
            prompt = f"{prefix}\n\n{request.prompt}"
        return EffectiveParameters(
            model_name=model_name,
            treatment=treatment,
            prompt=prompt,
            system_instruction_text="",
            few_shot_examples=(),
            generation_parameters=dataclasses.replace(
                gen, response_format=TEXT_MIME_TYPE, response_schema=None
            ),
            use_cache=False,
        )

    response_format = gen.response_format or JSON_MIME_TYPE
    schema = gen.response_schema if response_format == JSON_MIME_TYPE else None
    return EffectiveParameters(
        model_name=model_name,
        treatment=treatment,
        prompt=request.prompt,
        system_instruction_text=request.system_instruction_text,
        few_shot_examples=tuple(request.few_shot_examples),
        generation_parameters=dataclasses.replace(
            gen, response_format=response_format, response_schema=schema
        ),
        use_cache=request.use_cache,
    )


def _user_turn(prompt: str) -> dict[str, Any]:
    return {"role": "user", "parts": [{"text": prompt}]}


class ModelPreparer:
    """Builds cached or uncached ``generateContent`` bodies."""

    def __init__(self, cache_manager: ContextCacheManager):
        self.cache_manager = cache_manager

    async def prepare(self, task_type: str, params: EffectiveParameters) -> PreparedCall:
        """Build the request for one model.

        Raises:
            PreparationError: if the model name cannot be addressed.
        """
        model_path(params.model_name)

        if params.use_cache and params.treatment == ModelTreatment.NON_TUNED:
            entry = await self.cache_manager.get_or_create(
                task_type,
                params.model_name,
                params.system_instruction_text,
                params.few_shot_examples,
                params.generation_parameters,
            )
            if entry:
                try:
                    body = self._cached_body(entry, params)
                except ValueError as e:
                    logger.warning(
                        "Cannot use cache %s for %s: %s. Falling back to uncached request",
                        entry.remote_handle,
                        entry.cache_key,
                        e,
                    )
                    self.cache_manager.invalidate(task_type, params.model_name, persistently=True)
                else:
                    logger.debug("Prepared cached call for %s with %s", params.model_name, entry.remote_handle)
                    return PreparedCall(
                        task_type=task_type,
                        model_name=params.model_name,
                        treatment=params.treatment,
                        body=body,
                        using_cache=True,
                        cache_name=entry.remote_handle,
                    )

        logger.debug("Prepared uncached call for %s (%s)", params.model_name, params.treatment.value)
        return PreparedCall(
            task_type=task_type,
            model_name=params.model_name,
            treatment=params.treatment,
            body=self._uncached_body(params),
        )

    @staticmethod
    def _cached_body(entry: CacheEntry, params: EffectiveParameters) -> dict[str, Any]:
        if not entry.remote_handle.startswith("cachedContents/"):
            raise ValueError(f"malformed cache handle {entry.remote_handle!r}")
        if entry.model_name and entry.model_name != params.model_name:
            raise ValueError(f"cache belongs to {entry.model_name}")
        return {
            "cachedContent": entry.remote_handle,
            "contents": [_user_turn(params.prompt)],
            "generationConfig": params.generation_parameters.to_api(),
        }

    @staticmethod
    def _uncached_body(params: EffectiveParameters) -> dict[str, Any]:
        contents = build_history(params.few_shot_examples)
        contents.append(_user_turn(params.prompt))
        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": params.generation_parameters.to_api(),
        }
        if params.system_instruction_text:
            body["systemInstruction"] = {"parts": [{"text": params.system_instruction_text}]}
        return body
