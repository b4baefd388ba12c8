from __future__ import annotations

import shutil
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    anthropic_api_key: str | None = None
    anthropic_base_url: str = "https://api.anthropic.com"
    anthropic_version: str = "2023-06-01"
    claude_cli_path: str = "claude"
    working_directory: str | None = None
    invocation_timeout_seconds: float = 60.0
    backend_connect_timeout_seconds: float = 5.0
    default_max_turns: int = 5
    default_max_tokens: int = 2048
    default_temperature: float = 0.7
    model_map_path: str | None = None
    include_tool_trace: bool = False
    ingress_auth_required: bool = False
    ingress_api_keys: str = ""
    audit_log_enabled: bool = True
    audit_log_path: str = "logs/invocations.jsonl"
    observability_metrics_enabled: bool = True

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def has_api_credentials(self) -> bool:
        return bool(self.anthropic_api_key and self.anthropic_api_key.strip())

    @property
    def cli_available(self) -> bool:
        path = self.claude_cli_path.strip()
        if not path:
            return False
        return shutil.which(path) is not None or Path(path).is_file()

    @property
    def resolved_working_directory(self) -> str:
        if self.working_directory and self.working_directory.strip():
            return self.working_directory.strip()
        return str(Path.cwd())

    @property
    def ingress_api_keys_list(self) -> list[str]:
        return _split_csv(self.ingress_api_keys)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
