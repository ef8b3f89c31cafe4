from functools import lru_cache
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BASE_URL = "https://integrate.api.nvidia.com/v1"
DEFAULT_MODEL = "deepseek-ai/deepseek-r1"


class Settings(BaseSettings):
    # upstream
    upstream_api_key: str = ""
    upstream_base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_MODEL
    max_retries: int = 2
    timeout: float = 300.0

    # rate limiting
    rate_limit: int = 40
    rate_window: int = 60

    # inline reasoning extraction
    reasoning_tag_name: str = "think"
    reasoning_separator: str = "\n"

    # logging
    log_file: str = "server.log"
    log_level: str = "DEBUG"

    @field_validator("reasoning_tag_name")
    @classmethod
    def validate_tag_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("reasoning_tag_name must not be empty")
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
