"""Dispatch layer for structured-extraction LLM calls."""
