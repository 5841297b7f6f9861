"""Configuration management using Pydantic Settings."""

import logging
from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class GeneralConfig(BaseModel):
    """General application configuration."""

    log_level: str = "INFO"
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".taskbridge")
    log_file_name: str = "taskbridge.log"
    log_file_max_bytes: int = 5 * 1024 * 1024
    log_file_backup_count: int = 3
    # Category → level, e.g. {"sync": "DEBUG"}
    log_overrides: dict[str, str] = Field(default_factory=dict)
    # Runtime metadata - not serialized to config file
    config_file: Path | None = Field(default=None, exclude=True)

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(sorted(valid_levels))}")
        return v

    @field_validator("data_dir", mode="before")
    @classmethod
    def expand_data_dir(cls, v: str | Path) -> Path:
        """Expand user home directory in data directory path."""
        return Path(v).expanduser().resolve()


class CalDAVConfig(BaseModel):
    """Connection settings for the CalDAV task calendar."""

    server_url: str | None = None
    username: str | None = None
    password: str | None = None
    # Calendar URL/path, or the calendar's display name
    calendar_path: str | None = None
    ssl_verify_cert: bool | str = True
    timeout_seconds: float = 30.0

    @field_validator("server_url", mode="before")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate CalDAV URL format."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("CalDAV URL must start with http:// or https://")
        return v

    def get_password(self) -> str | None:
        """
        Get CalDAV password from keyring or config.

        Priority:
        1. System keyring (if username is configured)
        2. Config/environment variable (fallback)

        Returns:
            Password if found, None otherwise
        """
        if self.username:
            try:
                from taskbridge.utils.credentials import CredentialStore

                password = CredentialStore().get_caldav_password(self.username)
                if password:
                    logger.debug("Using CalDAV password from system keyring")
                    return password
            except Exception as e:
                logger.warning(f"Failed to retrieve password from keyring: {e}")

        if self.password:
            logger.debug("Using CalDAV password from config/environment")
            return self.password

        return None


class SyncConfig(BaseModel):
    """Which tasks are synced, how often, and how conflicts are matched."""

    sync_interval: int = 60
    enable_auto_sync: bool = True
    excluded_folders: list[str] = Field(default_factory=list)
    excluded_tags: list[str] = Field(default_factory=list)
    # 0 or less keeps completed tasks of any age
    completed_task_age_days: int = 30
    due_date_only: bool = False
    hyperlink_sync_mode: str = "keep"
    include_vault_link: bool = True
    max_concurrency: int = 8
    # How an unmapped task is matched to an existing remote entry
    match_strategy: str = "summary"

    @field_validator("sync_interval")
    @classmethod
    def validate_interval(cls, v: int) -> int:
        """Validate sync interval."""
        if v < 10:
            raise ValueError("Sync interval must be at least 10 seconds")
        return v

    @field_validator("max_concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        """Validate concurrency limit."""
        if v < 1:
            raise ValueError("max_concurrency must be at least 1")
        return v

    @field_validator("hyperlink_sync_mode", mode="before")
    @classmethod
    def validate_hyperlink_mode(cls, v: str) -> str:
        """Validate hyperlink handling mode."""
        valid_modes = {"keep", "move", "remove"}
        v = v.lower()
        if v not in valid_modes:
            raise ValueError(f"Hyperlink sync mode must be one of: {', '.join(sorted(valid_modes))}")
        return v

    @field_validator("match_strategy", mode="before")
    @classmethod
    def validate_match_strategy(cls, v: str) -> str:
        """Validate match strategy."""
        valid = {"uid", "summary", "none"}
        v = v.lower()
        if v not in valid:
            raise ValueError(f"Match strategy must be one of: {', '.join(sorted(valid))}")
        return v


class VaultConfig(BaseModel):
    """Location of the markdown vault holding the tasks."""

    path: Path | None = None
    # Used in obsidian:// deep links; defaults to the folder name
    name: str | None = None

    @field_validator("path", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path | None) -> Path | None:
        """Expand user home directory in paths."""
        if v is None:
            return None
        return Path(v).expanduser().resolve()

    @property
    def vault_name(self) -> str | None:
        if self.name:
            return self.name
        return self.path.name if self.path else None


class AppConfig(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TASKBRIDGE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    # Sections are plain models; only TASKBRIDGE_* variables reach them
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    caldav: CalDAVConfig = Field(default_factory=CalDAVConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    vault: VaultConfig = Field(default_factory=VaultConfig)

    @classmethod
    def load_from_file(cls, config_path: Path) -> "AppConfig":
        """Load configuration from a TOML file."""
        if not config_path.exists():
            logger.warning(f"Config file not found: {config_path}, using defaults")
            return cls()

        import tomllib

        with open(config_path, "rb") as f:
            config_dict = tomllib.load(f)

        return cls(**config_dict)

    def save_to_file(self, config_path: Path) -> None:
        """Save configuration to a TOML file."""
        import tomli_w

        config_path.parent.mkdir(parents=True, exist_ok=True)

        # Convert to dict, handling Path objects and excluding None values
        config_dict = self.model_dump(mode="json", exclude_none=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(config_dict, f)

        logger.info(f"Configuration saved to {config_path}")

    def ensure_data_dir(self) -> None:
        """Ensure data directory exists."""
        self.general.data_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Data directory: {self.general.data_dir}")

    @property
    def state_db_path(self) -> Path:
        """Path to the sync state database."""
        return self.general.data_dir / "state.db"

    @property
    def default_config_path(self) -> Path:
        """Get default configuration file path."""
        return self.general.data_dir / "config.toml"


# Global configuration instance
_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig()
        _config.ensure_data_dir()
    return _config


def set_config(config: AppConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
    _config.ensure_data_dir()


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load configuration from file or create default."""
    if config_path is None:
        config = AppConfig()
        config_path = config.default_config_path

    if config_path.exists():
        config = AppConfig.load_from_file(config_path)
    else:
        config = AppConfig()

    config.general.config_file = config_path
    set_config(config)
    return config
