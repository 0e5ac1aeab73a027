"""Extraction dispatch gateway.

Provides async infrastructure for sending extraction prompts to Gemini
models with:
  - Per-model Rate Limiter (sliding window per logical stream)
  - Context Cache Manager (single-flight creation, persisted handle map)
  - Model Preparer (tuned / non-tuned treatment, cached / uncached request)
  - Retry Engine (exponential backoff with jitter, stale-cache recovery)
  - Primary / Fallback Orchestrator
  - Response Validator (fence strip, trailing-comma repair, JSON check)
"""
