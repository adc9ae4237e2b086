from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "AuditLens"
    debug: bool = False
    log_level: str = "INFO"

    openai_api_key: Optional[str] = None
    openai_api_base: str = "https://api.openai.com/v1"
    default_model: str = "gpt-4.1"
    mini_model: str = "gpt-4.1-mini"

    hasdata_api_key: Optional[str] = None
    hasdata_api_base: str = "https://api.hasdata.com"

    dataforseo_login: Optional[str] = None
    dataforseo_password: Optional[str] = None
    dataforseo_api_base: str = "https://api.dataforseo.com/v3"

    retry_max_retries: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_backoff_multiplier: float = 2.0
    retry_status_codes: List[int] = [429, 500]

    llm_concurrency: int = 100
    search_concurrency: int = 29

    completion_max_retries: int = 3

    sample_size: int = 400
    checkpoint_path: Optional[str] = None


settings = Settings()
