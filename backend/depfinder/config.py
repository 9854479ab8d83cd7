from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, HttpUrl
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    github_token: Optional[str] = Field(default=None, alias="GITHUB_TOKEN")
    github_base_url: HttpUrl = Field(
        default="https://api.github.com", alias="GITHUB_BASE_URL"
    )
    github_proxy: Optional[str] = Field(default=None, alias="GITHUB_PROXY")
    request_timeout_seconds: float = Field(default=20.0, alias="REQUEST_TIMEOUT_SECONDS")

    # caches
    cache_ttl_seconds: int = Field(default=300, alias="CACHE_TTL_SECONDS")
    etag_cache_ttl_seconds: int = Field(default=86400, alias="ETAG_CACHE_TTL_SECONDS")
    cache_max_entries: int = Field(default=1000, alias="CACHE_MAX_ENTRIES")

    # request queue and secondary limits
    queue_interval_seconds: float = Field(default=1.0, alias="QUEUE_INTERVAL_SECONDS")
    max_concurrent_requests: int = Field(default=100, alias="MAX_CONCURRENT_REQUESTS")
    points_per_minute: int = Field(default=900, alias="POINTS_PER_MINUTE")
    max_retries: int = Field(default=3, alias="MAX_RETRIES")
    retry_base_delay_seconds: float = Field(default=1.0, alias="RETRY_BASE_DELAY_SECONDS")
    retry_max_delay_seconds: float = Field(default=30.0, alias="RETRY_MAX_DELAY_SECONDS")
    rate_limit_max_wait_seconds: float = Field(
        default=60.0, alias="RATE_LIMIT_MAX_WAIT_SECONDS"
    )  # longer provider resets fail fast instead of holding the request open
    rate_limit_status_ttl_seconds: float = Field(
        default=10.0, alias="RATE_LIMIT_STATUS_TTL_SECONDS"
    )

    # discovery
    package_dir: str = Field(default="packages", alias="PACKAGE_DIR")
    package_discovery_mode: Literal["search", "contents"] = Field(
        default="search", alias="PACKAGE_DISCOVERY_MODE"
    )
    search_page_size: int = Field(default=100, alias="SEARCH_PAGE_SIZE")
    search_max_pages: int = Field(default=10, alias="SEARCH_MAX_PAGES")
    batch_size: int = Field(default=3, alias="BATCH_SIZE")
    batch_delay_seconds: float = Field(default=2.0, alias="BATCH_DELAY_SECONDS")
    default_page_size: int = Field(default=30, alias="DEFAULT_PAGE_SIZE")

    cors_origins: list[str] = Field(default=["*"], alias="CORS_ORIGINS")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"  # ignore unrelated env vars to avoid validation errors
        populate_by_name = True


@lru_cache
def get_settings() -> Settings:
    return Settings()
