import os

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # Auth: Bearer key clients must send to /v1/*
    api_key: str = "change-this-api-key"

    # CORS
    allowed_origins: str = "*"  # comma-separated, e.g. "https://app.example.com,https://admin.example.com"

    # Database (SQLite by default, any async SQLAlchemy URL works)
    database_url: str = "sqlite+aiosqlite:///./data/gateway.db"

    # Upstream generation API
    upstream_base_url: str = "https://api.openai.com"
    image_timeout: float = 180.0  # seconds
    video_timeout: float = 600.0  # seconds

    # Admission
    max_concurrent_per_credential: int = 3

    # Artifact cache
    cache_enabled: bool = False
    cache_dir: str = "./cache"
    cache_ttl_seconds: int = 3600
    cache_sweep_interval_seconds: int = 3600
    cache_base_url: str = ""  # e.g. "https://gateway.example.com"; empty keeps upstream URLs

    # Streaming
    stream_queue_size: int = 16

    # Rate limiting (slowapi syntax)
    chat_rate_limit: str = "60/minute"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable


settings = Settings()

_DEFAULT_API_KEY = "change-this-api-key"


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.max_concurrent_per_credential <= 0:
        errors.append("MAX_CONCURRENT_PER_CREDENTIAL must be positive")

    if settings.cache_enabled:
        if settings.cache_ttl_seconds <= 0:
            errors.append("CACHE_TTL_SECONDS must be positive")
        parent = os.path.dirname(os.path.abspath(settings.cache_dir))
        if os.path.exists(settings.cache_dir):
            if not os.access(settings.cache_dir, os.W_OK):
                errors.append(f"CACHE_DIR {settings.cache_dir} is not writable")
        elif not os.access(parent, os.W_OK):
            errors.append(f"CACHE_DIR {settings.cache_dir} cannot be created")

    if settings.app_env == "production":
        if settings.api_key in (_DEFAULT_API_KEY, ""):
            errors.append("API_KEY must be set to a secret value")
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
