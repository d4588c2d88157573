from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_settings() -> Settings:
    return Settings()


class Settings(BaseSettings):
    provider: str = "anthropic"
    model: str = "claude-3-7-sonnet-latest"
    max_tokens: int = 4000
    system_prompt: str | None = None

    anthropic_api_key: str | None = Field(None, validation_alias="ANTHROPIC_API_KEY")
    openai_api_key: str | None = Field(None, validation_alias="OPENAI_API_KEY")
    openai_base_url: str | None = None
    openrouter_api_key: str | None = Field(None, validation_alias="OPENROUTER_API_KEY")
    vllm_host: str = "localhost"
    vllm_port: int = 8000

    use_backend: bool = True
    backend_command: str = "claude"
    backend_args: list[str] = ["mcp", "serve"]
    root_directory: str | None = None
    intercept_workspace_tools: bool = False

    auto_approve: bool = False

    log_file: str | None = "conduit.log"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="conduit_", case_sensitive=False, frozen=True, populate_by_name=True
    )
