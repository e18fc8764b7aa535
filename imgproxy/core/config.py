import os
from functools import lru_cache
from typing import FrozenSet, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

HARD_MAX_REDIRECTS = 5
OUTPUT_FORMATS = ("jpeg", "png", "webp", "avif")


def _split_list(raw: str) -> FrozenSet[str]:
    return frozenset(item.strip().lower() for item in (raw or "").split(",") if item.strip())


class Settings(BaseSettings):
    # Load env from .env file; instances never change after startup
    model_config = {"env_file": ".env", "frozen": True, "extra": "ignore"}

    # Image limits
    MAX_WIDTH: int = 16383
    MAX_HEIGHT: int = 16383
    DEFAULT_QUALITY: int = 80
    DEFAULT_FORMAT: str = "webp"

    # Fetching
    FETCH_TIMEOUT: float = 10.0
    MAX_FILE_SIZE: int = 50 * 1024 * 1024  # 50MB
    MAX_REDIRECTS: int = HARD_MAX_REDIRECTS
    USER_AGENT: str = "imgproxy/1.0"

    # Domain lists, comma separated
    ALLOWED_DOMAINS: str = ""
    BLOCKED_DOMAINS: str = ""

    # Processing
    ENCODE_STRATEGY: str = "buffered"  # buffered | streaming
    PROCESSING_CONCURRENCY: Optional[int] = None

    # Runtime
    ENVIRONMENT: str = "production"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "*"

    @field_validator("DEFAULT_FORMAT")
    @classmethod
    def _check_default_format(cls, value: str) -> str:
        value = value.strip().lower()
        if value == "jpg":
            value = "jpeg"
        if value not in OUTPUT_FORMATS:
            raise ValueError(f"DEFAULT_FORMAT must be one of {', '.join(OUTPUT_FORMATS)}")
        return value

    @field_validator("DEFAULT_QUALITY")
    @classmethod
    def _check_default_quality(cls, value: int) -> int:
        if not 1 <= value <= 100:
            raise ValueError("DEFAULT_QUALITY must be between 1 and 100")
        return value

    @field_validator("MAX_WIDTH", "MAX_HEIGHT", "MAX_FILE_SIZE")
    @classmethod
    def _check_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("limits must be positive")
        return value

    @property
    def allowed_domains(self) -> FrozenSet[str]:
        return _split_list(self.ALLOWED_DOMAINS)

    @property
    def blocked_domains(self) -> FrozenSet[str]:
        return _split_list(self.BLOCKED_DOMAINS)

    @property
    def max_redirects(self) -> int:
        return max(0, min(self.MAX_REDIRECTS, HARD_MAX_REDIRECTS))

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.strip().lower() in {"development", "dev"}

    @property
    def streaming(self) -> bool:
        return self.ENCODE_STRATEGY.strip().lower() == "streaming"

    @property
    def cors_origins(self) -> list[str]:
        origins = [item.strip() for item in self.CORS_ORIGINS.split(",") if item.strip()]
        return origins or ["*"]

    @property
    def processing_concurrency(self) -> int:
        """Worker bound for codec calls: cores minus one, between 1 and 4."""
        if self.PROCESSING_CONCURRENCY:
            return max(1, self.PROCESSING_CONCURRENCY)
        return max(1, min(4, (os.cpu_count() or 1) - 1))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build the process-wide settings once."""
    return Settings()
