"""Configuration settings for initramfs_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the INITRAMFS_IMG_
    prefix. CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="INITRAMFS_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    tmp_dir: Path | None = Field(
        default=None,
        description="Temporary directory for builds (uses system default if not set)",
    )
    package_dir: Path | None = Field(
        default=None,
        description="Working directory for resolving Go import paths "
        "(uses the current directory if not set)",
    )
    stats_output_path: Path | None = Field(
        default=None,
        description="Default file to upsert build statistics into",
    )

    # Toolchain
    go_binary: str = Field(
        default="go",
        description="Go toolchain executable",
    )
    compile_timeout: int = Field(
        default=1800,
        ge=60,
        description="Timeout for a single go build invocation (seconds)",
    )
    max_concurrent_compiles: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Maximum concurrent compiles in binary mode",
    )

    # Defaults for build options
    default_build: Literal["bb", "binary"] = Field(
        default="bb",
        description="Default build strategy",
    )
    default_format: str = Field(
        default="cpio",
        description="Default archive format",
    )
    default_init_cmd: str = Field(
        default="init",
        description="Default symlink target for /init",
    )
    default_shell: str = Field(
        default="elvish",
        description="Default symlink target for /bin/sh",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
