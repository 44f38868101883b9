"""Application configuration loaded from environment variables and a YAML file."""

from __future__ import annotations

from typing import TYPE_CHECKING

from apscheduler.triggers.cron import CronTrigger
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict, YamlConfigSettingsSource

from autobackup.exceptions import ConfigurationError

if TYPE_CHECKING:
    from pathlib import Path

    from pydantic_settings import PydanticBaseSettingsSource

DEFAULT_CONFIG_FILE = "config.yaml"
DEFAULT_SECRET_KEY = "change-me-in-production"


class Settings(BaseSettings):
    """autobackup settings.

    Priority: init kwargs > environment > ``.env`` > YAML config file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        yaml_file=DEFAULT_CONFIG_FILE,
        yaml_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    secret_key: str = DEFAULT_SECRET_KEY
    debug: bool = False
    log_file: str | None = None

    # Database
    database_url: str = "sqlite:///data/autobackup.db"

    # Backup
    source_dir: str = ""
    output_dir: str = ""
    backup_password: str = ""
    force_full_backup: bool = False
    backup_cron: str = "0 0 * * *"
    run_on_start: bool = True
    part_size_limit: int = Field(default=1024 * 1024 * 1024, ge=1)
    archive_workers: int = Field(default=4, ge=1, le=32)

    # Upload (OneDrive / Microsoft Graph)
    upload_enabled: bool = False
    remote_base_path: str = "backup"
    client_id: str = ""
    client_secret: str = ""
    scope: str = "Files.ReadWrite offline_access"
    redirect_uri: str = "http://localhost:8080/token"
    upload_chunk_size: int = Field(default=25 * 320 * 1024, ge=320 * 1024)
    token_refresh_interval_seconds: int = Field(default=30 * 60, ge=60)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    def validate_runtime(self) -> None:
        """Validate settings that must hold before the service starts."""
        violations: list[str] = []
        if not self.source_dir or not self.output_dir:
            violations.append("SOURCE_DIR and OUTPUT_DIR must both be set")
        try:
            CronTrigger.from_crontab(self.backup_cron)
        except ValueError as exc:
            violations.append(f"BACKUP_CRON is not a valid crontab expression: {exc}")
        if self.upload_enabled:
            if not self.client_id or not self.client_secret or not self.redirect_uri:
                violations.append(
                    "CLIENT_ID, CLIENT_SECRET and REDIRECT_URI are required for uploads"
                )
            if self.secret_key == DEFAULT_SECRET_KEY or len(self.secret_key) < 32:
                violations.append(
                    "SECRET_KEY must be overridden with a high-entropy value (>=32 chars)"
                )

        if violations:
            joined = "; ".join(violations)
            raise ConfigurationError(f"Invalid configuration: {joined}")


def load_settings(config_path: Path | None = None) -> Settings:
    """Load settings, reading YAML from *config_path* instead of ``config.yaml``."""
    if config_path is None:
        return Settings()
    if not config_path.is_file():
        raise ConfigurationError("Config file not found", path=str(config_path))

    class _FileSettings(Settings):
        model_config = SettingsConfigDict(yaml_file=config_path)

    return _FileSettings()
