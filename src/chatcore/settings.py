from typing import Dict, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8080
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    cors_origins: str = "*"

    default_system_prompt: str = "You are a helpful assistant."

    openrouter_api_key: str | None = None
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_model: str = "openai/gpt-4o-mini"
    openrouter_max_tokens: int | None = None

    ollama_base_url: str | None = None
    ollama_model: str = "gemma3:1b"
    ollama_tools_enabled: bool = False
    ollama_compaction_enabled: bool = False

    gigachat_auth_key: str | None = None
    gigachat_base_url: str = "https://gigachat.devices.sberbank.ru/api/v1"
    gigachat_auth_url: str = "https://ngw.devices.sberbank.ru:9443/api/v2/oauth"
    gigachat_scope: str = "GIGACHAT_API_PERS"
    gigachat_model: str = "GigaChat"
    gigachat_max_tokens: int = 1024
    gigachat_verify_ssl: bool = True

    compaction_threshold: int = 10
    summary_temperature: float = 0.3
    max_tool_iterations: int = 5
    backend_timeout_seconds: float = 60.0
    tool_timeout_seconds: float = 30.0

    # name -> stdio command line, e.g. {"notes": "python -m notes_server"}
    mcp_servers: Dict[str, str] = {}

    rag_url: str | None = None
    rag_limit: int = 5
    rag_timeout_seconds: float = 10.0

    redis_url: str | None = None
    context_ttl_seconds: int = 86400  # 24 hours

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="allow",
    )


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
