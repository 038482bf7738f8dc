"""Engine settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Memory engine configuration. All values come from environment variables."""

    # Database
    database_path: Path = Field(default=Path("data/memory.db"))

    # Turso (hosted libSQL) — when set, overrides local database_path
    turso_database_url: str = Field(default="")
    turso_auth_token: str = Field(default="")

    # Anthropic (cloud summarization)
    anthropic_api_key: str = Field(default="")
    summary_model: str = Field(default="haiku")

    # Ollama (local summarization)
    ollama_base_url: str = Field(default="http://localhost:11434")
    local_model_prefixes: str = Field(default="ollama/,phi3,qwen,llama,gemma")
    generation_timeout_seconds: float = Field(default=60.0)

    # Context assembly
    context_token_budget: int = Field(default=3000)
    recent_turn_limit: int = Field(default=8)
    pin_limit: int = Field(default=5)
    summary_limit: int = Field(default=3)
    min_recent_turns: int = Field(default=3)

    # Summarization
    summary_threshold: int = Field(default=15)
    summarization_enabled: bool = Field(default=True)

    # Read-through cache
    cache_ttl_seconds: float = Field(default=5.0)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    def get_local_model_prefixes(self) -> list[str]:
        """Parse LOCAL_MODEL_PREFIXES into a list of lower-cased prefixes."""
        if not self.local_model_prefixes.strip():
            return []
        return [p.strip().lower() for p in self.local_model_prefixes.split(",") if p.strip()]


settings = Settings()
