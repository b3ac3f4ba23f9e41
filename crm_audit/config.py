"""Application configuration using pydantic-settings."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # HighLevel CRM
    highlevel_api_key: str = ""
    highlevel_location_id: str = ""
    highlevel_base_url: str = "https://services.leadconnectorhq.com"
    highlevel_api_version: str = "2021-07-28"
    crm_timeout_seconds: float = 30.0
    crm_max_retries: int = 0

    # Call recordings
    recording_timeout_seconds: float = 90.0
    recording_max_bytes: int = 25 * 1024 * 1024

    # Conversation fetching
    conversation_limit: int = 50
    message_page_size: int = 100
    max_message_pages: int = 20
    conversation_fetch_concurrency: int = 5
    transcription_concurrency: int = 3

    # Opportunities
    opportunity_page_size: int = 100
    opportunity_max_pages: int = 50
    enrichment_batch_size: int = 5

    # LLM
    anthropic_api_key: str = ""
    llm_model: str = "claude-sonnet-4-20250514"
    llm_max_tokens: int = 4096
    llm_max_tool_rounds: int = 5
    llm_timeout_seconds: float = 120.0

    # Speech-to-text
    openai_api_key: str = ""
    transcription_model: str = "whisper-1"
    transcription_max_retries: int = 1
    transcription_timeout_seconds: float = 120.0
    default_language: str = "es"

    # Database
    database_url: str = "sqlite:///crm_audit.db"

    # Rendering
    display_timezone: str = "UTC"

    # HTTP
    cors_origins: list[str] = ["*"]

    # Arize Observability
    arize_space_id: str = ""
    arize_api_key: str = ""
    arize_project_name: str = "crm-audit"

    # App settings
    debug: bool = False

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
