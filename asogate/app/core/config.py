from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_data_dir() -> Path:
    return Path.home() / ".aso-mcp"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    Upstream credentials for App Store Connect are not part of the settings;
    they are resolved by ``asogate.app.providers.connect.load_credentials``.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Default storefront country for catalog lookups
    default_country: str = "tr"

    # Per-user data directory (cache database, connect config)
    data_dir: Path = Field(default_factory=_default_data_dir)

    # Cache settings
    cache_backend: str = "sqlite"  # sqlite | memory
    cache_db_path_override: str = Field(default="", validation_alias="ASO_CACHE_DB_PATH")
    cache_max_entries: int = 5000

    # Cache TTLs (seconds)
    cache_ttl_keyword_scores: int = 3600  # 1 hour
    cache_ttl_search_results: int = 3600
    cache_ttl_suggestions: int = 3600
    cache_ttl_app_details: int = 21600  # 6 hours
    cache_ttl_reviews: int = 86400  # 24 hours
    cache_ttl_connect_app: int = 3600
    cache_ttl_connect_metadata: int = 300  # 5 minutes, writes invalidate anyway
    cache_ttl_connect_localizations: int = 300

    # Rate limiting settings (requests per window, per upstream source)
    rate_limit_app_store_requests: int = 20
    rate_limit_app_store_window_seconds: float = 60.0
    rate_limit_scores_requests: int = 10
    rate_limit_scores_window_seconds: float = 60.0
    rate_limit_connect_requests: int = 50
    rate_limit_connect_window_seconds: float = 60.0

    # Retry settings for rate-limited upstream calls
    retry_max_retries: int = 3
    retry_base_delay: float = 1.0

    # Scoring provider (primary traffic/difficulty source)
    scoring_base_url: str = Field(default="", validation_alias="ASO_SCORING_BASE_URL")
    scoring_api_key: str = ""
    scoring_cooldown_seconds: float = 600.0  # 10 minutes
    scoring_batch_size: int = 5

    # Catalog (App Store search/lookup) endpoints
    catalog_base_url: str = "https://itunes.apple.com"
    catalog_hints_url: str = (
        "https://search.itunes.apple.com/WebObjects/MZSearchHints.woa/wa/hints"
    )

    # App Store Connect
    connect_base_url: str = "https://api.appstoreconnect.apple.com"
    connect_token_ttl_seconds: int = 1200  # 20 minutes, Apple's maximum
    connect_token_safety_margin_seconds: int = 120

    # HTTP Client connection pool settings
    httpx_timeout: float = 30.0
    httpx_connect_timeout: float = 10.0
    httpx_read_timeout: float = 30.0
    httpx_write_timeout: float = 10.0
    httpx_pool_timeout: float = 5.0
    httpx_keepalive_expiry: float = 30.0
    httpx_max_connections: int = 50
    httpx_max_keepalive_connections: int = 10

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @property
    def cache_db_path(self) -> Path:
        """Location of the durable cache database.

        Priority:
        1. cache_db_path_override (from ASO_CACHE_DB_PATH)
        2. <data_dir>/cache.db
        """
        if self.cache_db_path_override:
            return Path(self.cache_db_path_override).expanduser()
        return self.data_dir / "cache.db"

    @property
    def connect_config_path(self) -> Path:
        """Location of the saved App Store Connect credentials file."""
        return self.data_dir / "connect-config.json"

    @field_validator(
        "rate_limit_app_store_requests",
        "rate_limit_scores_requests",
        "rate_limit_connect_requests",
        "cache_max_entries",
        "scoring_batch_size",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate counts and limits are positive."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator(
        "rate_limit_app_store_window_seconds",
        "rate_limit_scores_window_seconds",
        "rate_limit_connect_window_seconds",
        "httpx_timeout",
        "httpx_connect_timeout",
        "httpx_read_timeout",
    )
    @classmethod
    def validate_positive_duration(cls, v: float) -> float:
        """Validate windows and timeouts are positive."""
        if v <= 0:
            raise ValueError("duration values must be positive")
        return v

    @field_validator("retry_max_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("retry_max_retries cannot be negative")
        return v

    @field_validator("cache_backend")
    @classmethod
    def validate_cache_backend(cls, v: str) -> str:
        backend = v.strip().lower()
        if backend not in ("sqlite", "memory"):
            raise ValueError("cache_backend must be 'sqlite' or 'memory'")
        return backend

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
