"""Daemon configuration loaded from environment variables and an optional TOML file."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

CONFIG_FILE_ENV = "ANKI_BACKUP_CONFIG_FILE"


class Settings(BaseSettings):
    """Anki backup daemon settings.

    Values come from (highest priority first) constructor arguments,
    ``ANKI_BACKUP_*`` environment variables, ``.env``, and the TOML file named
    by ``ANKI_BACKUP_CONFIG_FILE``.
    """

    model_config = SettingsConfigDict(
        env_prefix="ANKI_BACKUP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False
    expose_docs: bool = False

    # Data root: backups/, state/metadata.db, state/current-pointer.json, state/run.lock
    root: Path = Path("./data")

    # Metadata store; empty means SQLite under <root>/state/metadata.db
    database_url: str = ""

    # Source collection
    collection_path: Path | None = None
    media_dir: Path | None = None
    sync_command: str | None = None
    sync_timeout_seconds: float = Field(default=600.0, gt=0)

    # Scheduling
    scheduler_enabled: bool = True
    schedule_interval_seconds: int = Field(default=3600, ge=60)

    # Retention
    retention_days: int = 90
    retention_min_keep: int = Field(default=1, ge=0)

    # Change detection / pointer policy
    skip_empty_first_run: bool = False
    pointer_follows_latest: bool = True

    # Server
    host: str = "127.0.0.1"
    port: int = Field(default=8088, ge=1, le=65535)
    api_token: str | None = None
    # Minimum spacing between successful rollbacks; 0 disables the limit
    rollback_min_interval_seconds: int = Field(default=10, ge=0)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        sources: list[PydanticBaseSettingsSource] = [
            init_settings,
            env_settings,
            dotenv_settings,
            file_secret_settings,
        ]
        config_file = os.environ.get(CONFIG_FILE_ENV)
        if config_file:
            sources.append(TomlConfigSettingsSource(settings_cls, toml_file=Path(config_file)))
        return tuple(sources)

    @property
    def backups_dir(self) -> Path:
        return self.root / "backups"

    @property
    def state_dir(self) -> Path:
        return self.root / "state"

    @property
    def pointer_path(self) -> Path:
        return self.state_dir / "current-pointer.json"

    @property
    def lock_path(self) -> Path:
        return self.state_dir / "run.lock"

    def resolved_database_url(self) -> str:
        """Return the metadata store URL, defaulting to SQLite inside the data root."""
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.state_dir / 'metadata.db'}"

    def validate_runtime(self) -> None:
        """Validate settings that the daemon cannot run without."""
        violations: list[str] = []
        if self.collection_path is None:
            violations.append("ANKI_BACKUP_COLLECTION_PATH must point at the collection file")
        if self.root.exists() and not self.root.is_dir():
            violations.append(f"Data root exists but is not a directory: {self.root}")
        if self.media_dir is not None and self.media_dir.exists() and not self.media_dir.is_dir():
            violations.append(f"Media path exists but is not a directory: {self.media_dir}")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Invalid daemon configuration: {joined}")
