from pydantic_settings import BaseSettings, SettingsConfigDict

from llm_dispatch.gateway.errors import ConfigurationError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Gemini API
    gemini_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    request_timeout_seconds: float = 180.0

    # Rate limiting (per model, per logical stream)
    rate_limit_points: int = 50
    rate_limit_window_seconds: float = 60.0
    rate_limit_block_seconds: float = 30.0
    rate_limit_per_stream: bool = True  # False = one bucket per model

    # Retry
    max_retries: int = 5  # attempt budget for the fallback phase
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000

    # Context cache
    cache_map_path: str = "outputs/gemini_cache/gemini_cache_map.json"
    cache_ttl_seconds: int = 3600

    # Task profiles (system instructions, few-shot, model lists)
    task_profiles_path: str = "config/task_profiles.json"

    # App
    app_env: str = "development"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs


settings = Settings()


def validate_settings(config: Settings | None = None) -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    config = config or settings
    errors: list[str] = []

    if not config.gemini_api_key and config.app_env != "test":
        errors.append("GEMINI_API_KEY must be set")

    if config.rate_limit_points <= 0:
        errors.append("RATE_LIMIT_POINTS must be positive")
    if config.rate_limit_window_seconds <= 0:
        errors.append("RATE_LIMIT_WINDOW_SECONDS must be positive")
    if config.rate_limit_block_seconds < 0:
        errors.append("RATE_LIMIT_BLOCK_SECONDS must not be negative")

    if config.max_retries < 1:
        errors.append("MAX_RETRIES must be at least 1")
    if config.initial_delay_ms < 0:
        errors.append("INITIAL_DELAY_MS must not be negative")
    if config.max_delay_ms < config.initial_delay_ms:
        errors.append("MAX_DELAY_MS must be >= INITIAL_DELAY_MS")

    if config.cache_ttl_seconds <= 0:
        errors.append("CACHE_TTL_SECONDS must be positive")

    if errors:
        raise ConfigurationError("Configuration errors:\n  - " + "\n  - ".join(errors))
