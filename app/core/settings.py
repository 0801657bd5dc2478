"""Configuration and environment settings for the Statement Importer."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings for the Statement Importer."""

    # Completion providers. A provider without an API key is skipped.
    groq_api_key: str | None = None
    groq_model: str = "llama-3.3-70b-versatile"
    groq_vision_model: str = "meta-llama/llama-4-scout-17b-16e-instruct"
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    openai_vision_model: str = "gpt-4o"
    extraction_providers: list[str] = ["openai", "groq"]
    categorization_providers: list[str] = ["groq", "openai"]
    structured_temperature: float = 0.1
    default_max_tokens: int = 2048
    extraction_max_tokens: int = 16000
    completion_timeout_seconds: float = 120.0

    # Persistence
    database_url: str = "sqlite+aiosqlite:///jobs/importer.db"
    database_echo: bool = False

    # File retrieval
    S3_ENDPOINT_URL: str | None = None
    S3_ACCESS_KEY: str | None = None
    S3_SECRET_KEY: str | None = None
    S3_BUCKET: str = "statement-importer"
    download_timeout_seconds: float = 30.0

    # Job queue
    queue_workers: int = 4
    queue_max_size: int = 1000

    # Categorization
    min_confidence: float = 0.7
    history_confidence: float = 0.85
    categorization_concurrency: int = 5

    # Sign convention fallback, as a share of positive amounts
    sign_reverse_above: float = 0.8
    sign_standard_below: float = 0.2

    # Statement extraction
    preview_rows: int = 20
    pdf_low_text_threshold: int = 100
    pdf_max_chars: int = 30000
    vision_fallback_enabled: bool = False
    duplicate_date_window_days: int = 0
    default_currency: str = "USD"

    server_host: str = "127.0.0.1"
    server_port: int = 8000
    log_file: str = "jobs/importer.log"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


def get_settings() -> "Settings":
    """Return an instance of the application settings."""
    return Settings()
