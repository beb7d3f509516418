"""Application settings."""

from __future__ import annotations

from datetime import time
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class HealthCheckTrigger(BaseModel):
    """Daily wall-clock time at which `revision` gets a health-check run."""

    at: time
    revision: str = Field(min_length=1)


def _default_health_checks() -> list[HealthCheckTrigger]:
    return [
        HealthCheckTrigger(at=time(3, 0), revision="dev"),
        HealthCheckTrigger(at=time(15, 0), revision="5.11"),
    ]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "gerrit-watcher"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)
    # Public base URL of this service, used to link logs from review comments.
    public_url: str = ""

    gerrit_host: str = "codereview.qt-project.org"
    gerrit_port: int = Field(default=29418, ge=1, le=65535)
    gerrit_user: str = ""
    project: str = "qt/qtwayland"
    enable_event_feed: bool = True
    reconnect_delay_s: float = Field(default=0.0, ge=0.0)

    ledger_path: Path = PROJECT_ROOT / "data" / "ledger.json"
    logs_dir: Path = PROJECT_ROOT / "logs"

    docker_image: str = "qtbuilder-stretch"
    docker_remove_container: bool = True
    under_test_env: str = "QT_DOCKERTEST_QTWAYLAND_REV"
    baseline_env: str = "QT_DOCKERTEST_QT5_REV"

    log_tail_lines: int = Field(default=30, ge=1)
    review_label: str = "code-review"
    failure_score: int = -1

    enable_scheduler: bool = True
    health_checks: list[HealthCheckTrigger] = Field(default_factory=_default_health_checks)
    startup_check_revision: str = ""

    model_config = SettingsConfigDict(
        env_prefix="GERRIT_WATCHER_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def ssh_destination(self) -> str:
        if self.gerrit_user:
            return f"{self.gerrit_user}@{self.gerrit_host}"
        return self.gerrit_host


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
