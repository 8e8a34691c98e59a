"""PressBox configuration with pydantic-settings.

Every value can be overridden through a ``PRESSBOX_``-prefixed environment
variable or a local ``.env`` file, e.g. ``PRESSBOX_HOME_DIR=/tmp/pressbox``.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="PRESSBOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === Storage ===
    home_dir: Path = Field(
        default_factory=lambda: Path.home() / "PressBox",
        description="Root directory holding sites and cached downloads",
    )

    # === Logging ===
    service_name: str = Field(default="pressbox", description="Service name for logging")
    log_format: Literal["json", "console"] = Field(
        default="console",
        description="Log output format",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
    )

    # === Ports ===
    port_range_start: int = Field(default=8000, ge=1024, le=65535)
    port_range_end: int = Field(default=9000, ge=1024, le=65535)
    reserved_ports: list[int] = Field(
        default_factory=lambda: [8080, 8443, 8888, 9000],
        description="Ports commonly taken by other dev tools, never handed out",
    )
    bind_host: str = Field(default="127.0.0.1", description="Interface PHP servers bind to")

    # === PHP ===
    php_binary: str = Field(default="php", description="PHP CLI executable")
    php_ready_attempts: int = Field(default=20, ge=1)
    php_ready_delay_sec: float = Field(default=0.25, gt=0)
    php_stop_timeout_sec: float = Field(default=5.0, gt=0)
    php_output_lines: int = Field(default=200, ge=1)

    # === Database engines ===
    database_search_roots: list[Path] | None = Field(
        default=None,
        description="Install roots scanned for MySQL/MariaDB (platform defaults if unset)",
    )
    mysql_port: int = 3306
    mariadb_port: int = 3307
    database_root_user: str = "root"
    database_root_password: str = ""
    db_connect_timeout_sec: int = Field(default=2, ge=1)

    # Engine startup was observed to take 3-10 seconds; these are tunable.
    db_probe_attempts: int = Field(default=8, ge=1)
    db_probe_delay_sec: float = Field(default=1.0, gt=0)
    db_probe_backoff: float = Field(default=1.5, ge=1.0)
    db_probe_max_delay_sec: float = Field(default=5.0, gt=0)

    # === WordPress ===
    default_wordpress_version: str = "latest"
    wordpress_latest_url: str = "https://wordpress.org/latest.zip"
    wordpress_download_url: str = "https://wordpress.org/wordpress-{version}.zip"
    sqlite_integration_url: str = (
        "https://downloads.wordpress.org/plugin/sqlite-database-integration.2.1.14.zip"
    )
    wordpress_latest_max_age_sec: float = Field(
        default=86400.0,
        ge=0,
        description="Age after which the cached latest archive is downloaded again",
    )
    http_timeout_sec: float = Field(default=60.0, gt=0)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v

    @model_validator(mode="after")
    def validate_port_range(self) -> "Settings":
        if self.port_range_start > self.port_range_end:
            raise ValueError("port_range_start must not exceed port_range_end")
        return self

    @property
    def sites_dir(self) -> Path:
        return self.home_dir / "sites"

    @property
    def cache_dir(self) -> Path:
        return self.home_dir / "cache"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
