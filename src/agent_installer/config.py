"""Application configuration contract."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field(alias="APP_ENV", default="dev")
    log_level: str = Field(alias="LOG_LEVEL", default="INFO")

    agent_base_dir: str = Field(
        alias="AGENT_BASE_DIR", default="~/.local/share/agent-installer"
    )
    uv_path: str = Field(alias="UV_PATH", default="")
    git_binary: str = Field(alias="GIT_BINARY", default="git")
    git_timeout_seconds: int = Field(alias="GIT_TIMEOUT_SECONDS", default=300)
    provision_timeout_seconds: int = Field(alias="PROVISION_TIMEOUT_SECONDS", default=900)
    archive_max_bytes: int = Field(alias="ARCHIVE_MAX_BYTES", default=1024 * 1024 * 1024)
    keep_failed_builds: int = Field(alias="KEEP_FAILED_BUILDS", default=0)

    @property
    def base_dir(self) -> Path:
        return Path(self.agent_base_dir).expanduser()


def validate_settings_for_env(settings: Settings) -> None:
    problems: list[str] = []
    if settings.git_timeout_seconds <= 0:
        problems.append("GIT_TIMEOUT_SECONDS(must be > 0)")
    if settings.provision_timeout_seconds <= 0:
        problems.append("PROVISION_TIMEOUT_SECONDS(must be > 0)")
    if settings.archive_max_bytes <= 0:
        problems.append("ARCHIVE_MAX_BYTES(must be > 0)")

    if settings.app_env == "prod":
        if not settings.agent_base_dir.strip():
            problems.append("AGENT_BASE_DIR")
        elif not settings.base_dir.is_absolute():
            problems.append("AGENT_BASE_DIR(absolute path required)")

    if problems:
        keys = ", ".join(sorted(set(problems)))
        raise ValueError(f"invalid configuration: {keys}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
