"""
AdminKit configuration management.

Provides centralized configuration with validation using Pydantic.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

DEFAULT_HOME = Path.home() / ".adminkit"


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    file_enabled: bool = True
    console_enabled: bool = True
    json_format: bool = False
    log_directory: Path = Field(default_factory=lambda: DEFAULT_HOME / "logs")
    retention_days: int = Field(default=14, ge=1)

    @field_validator("log_directory", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()


class SafetyConfig(BaseModel):
    """Configuration for safety features."""

    require_confirmation: bool = True
    confirmation_timeout_seconds: int = 300
    preflight_checks_enabled: bool = True
    dry_run_default: bool = False


class PollingConfig(BaseModel):
    """Default polling behaviour for eventually consistent directories."""

    interval_seconds: float = Field(default=10.0, gt=0)
    timeout_seconds: float = Field(default=600.0, gt=0)
    retry_attempts: int = Field(default=5, ge=1)
    retry_delay_seconds: float = Field(default=15.0, ge=0)


class ActiveDirectoryConfig(BaseModel):
    """Active Directory defaults used when creating groups."""

    domain_controller: str | None = None
    netbios_domain: str = ""
    group_ou: str = ""
    group_prefix: str = "FS_"
    modify_suffix: str = "_M"
    read_suffix: str = "_R"
    admin_principals: list[str] = Field(
        default_factory=lambda: ["BUILTIN\\Administrators", "NT AUTHORITY\\SYSTEM"]
    )

    def qualify(self, name: str) -> str:
        """Return DOMAIN\\name when a NetBIOS domain is configured."""
        if "\\" in name or not self.netbios_domain:
            return name
        return f"{self.netbios_domain}\\{name}"


class DfsConfig(BaseModel):
    """Defaults for folder-to-DFS-share provisioning."""

    dfsutil_path: str = "dfsutil.exe"
    namespace_root: str = ""
    file_server: str | None = None
    share_base_path: str = "D:\\Shares"
    access_based_enumeration: bool = True
    create_groups: bool = True


class ExchangeConfig(BaseModel):
    """Connection settings for Exchange Online."""

    user_principal_name: str | None = None
    app_id: str | None = None
    certificate_thumbprint: str | None = None
    organization: str | None = None
    command_timeout_seconds: int = Field(default=600, ge=30)

    @property
    def uses_app_auth(self) -> bool:
        return bool(self.app_id and self.certificate_thumbprint and self.organization)


class MigrationConfig(BaseModel):
    """Settings for distribution group migration."""

    state_directory: Path = Field(default_factory=lambda: DEFAULT_HOME / "migrations")
    sync_server: str | None = None
    source_action: Literal["delete", "move"] = "delete"
    unsynced_ou: str | None = None
    removal_poll_interval_seconds: float = Field(default=30.0, gt=0)
    removal_timeout_seconds: float = Field(default=3600.0, gt=0)
    verify_after_recreate: bool = True

    @field_validator("state_directory", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()


class MkvConfig(BaseModel):
    """Defaults for mkv track filtering."""

    mkvmerge_path: str = "mkvmerge"
    audio_languages: list[str] = Field(default_factory=lambda: ["eng", "und"])
    subtitle_languages: list[str] = Field(default_factory=lambda: ["eng"])
    keep_forced_subtitles: bool = True
    drop_commentary: bool = True
    drop_duplicates: bool = True
    output_suffix: str = ".filtered"
    timeout_seconds: int = Field(default=3600, ge=60)


class AdminKitConfig(BaseModel):
    """Main AdminKit configuration."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    active_directory: ActiveDirectoryConfig = Field(default_factory=ActiveDirectoryConfig)
    dfs: DfsConfig = Field(default_factory=DfsConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    migration: MigrationConfig = Field(default_factory=MigrationConfig)
    mkv: MkvConfig = Field(default_factory=MkvConfig)
    session_directory: Path = Field(default_factory=lambda: DEFAULT_HOME / "sessions")

    @field_validator("session_directory", mode="before")
    @classmethod
    def expand_session_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()

    @classmethod
    def load(cls, config_path: Path | None = None) -> AdminKitConfig:
        """Load configuration from file or create default."""
        if config_path is None:
            config_path = DEFAULT_HOME / "config.json"

        if config_path.exists():
            with open(config_path, encoding="utf-8") as f:
                data = json.load(f)
            return cls.model_validate(data)

        return cls()

    def save(self, config_path: Path | None = None) -> None:
        """Save configuration to file."""
        if config_path is None:
            config_path = DEFAULT_HOME / "config.json"

        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)

    def ensure_directories(self) -> None:
        """Create all required directories."""
        self.logging.log_directory.mkdir(parents=True, exist_ok=True)
        self.session_directory.mkdir(parents=True, exist_ok=True)
        self.migration.state_directory.mkdir(parents=True, exist_ok=True)

    def get_session_file(self) -> Path:
        """Get path for a new session report file."""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return self.session_directory / f"session_{timestamp}.json"


def load_config(config_path: Path | None = None) -> AdminKitConfig:
    """Load or create configuration."""
    config = AdminKitConfig.load(config_path)
    config.ensure_directories()
    return config
