"""Error taxonomy for initramfs_imagegen.

Every error raised by the core derives from ImageGenError and carries a
stable ``code`` string for programmatic handling, plus the identifying
context (package, path or archive offset) of the failure.
"""

from __future__ import annotations

from pathlib import Path

# Error code constants
CONFIG_ERROR = "config_error"
UNSUPPORTED_FORMAT = "unsupported_format"
COMPILE_ERROR = "compile_failed"
COMPILE_CANCELLED = "compile_cancelled"
COMPILE_TIMEOUT = "compile_timeout"
RESOLUTION_ERROR = "resolution_error"
ARCHIVE_ERROR = "archive_error"
ENVIRONMENT_ERROR = "environment_error"


class ImageGenError(Exception):
    """Base error for all image generation failures."""

    def __init__(self, message: str, code: str = "imagegen_error") -> None:
        super().__init__(message)
        self.code = code


class ConfigError(ImageGenError):
    """Raised for invalid build configuration.

    Covers empty package lists, unknown build strategies, colliding
    command names and unresolvable symlink targets.
    """

    def __init__(self, message: str, code: str = CONFIG_ERROR) -> None:
        super().__init__(message, code=code)


class UnsupportedFormatError(ConfigError):
    """Raised when an archive format name is not registered."""

    def __init__(self, name: str, supported: list[str] | None = None) -> None:
        message = f"unsupported archive format: {name!r}"
        if supported:
            message += f" (supported: {', '.join(sorted(supported))})"
        super().__init__(message, code=UNSUPPORTED_FORMAT)
        self.name = name


class CompileError(ImageGenError):
    """Raised when the external toolchain fails to build a package."""

    def __init__(
        self,
        package: str,
        cause: str,
        log_path: Path | None = None,
        exit_code: int | None = None,
        code: str = COMPILE_ERROR,
    ) -> None:
        super().__init__(f"failed to compile {package}: {cause}", code=code)
        self.package = package
        self.cause = cause
        self.log_path = log_path
        self.exit_code = exit_code


class CompileCancelledError(CompileError):
    """Raised for a compile killed because a sibling compile failed."""

    def __init__(self, package: str) -> None:
        super().__init__(
            package, "cancelled after another compile failed", code=COMPILE_CANCELLED
        )


class ResolutionError(ImageGenError):
    """Raised when a file or one of its shared libraries cannot be found."""

    def __init__(
        self,
        message: str,
        path: str | Path | None = None,
        code: str = RESOLUTION_ERROR,
    ) -> None:
        super().__init__(message, code=code)
        self.path = str(path) if path is not None else None


class ArchiveError(ImageGenError):
    """Raised for a malformed archive or a failed archive write."""

    def __init__(
        self,
        message: str,
        offset: int | None = None,
        path: str | None = None,
        code: str = ARCHIVE_ERROR,
    ) -> None:
        if offset is not None:
            message = f"{message} (at offset {offset})"
        super().__init__(message, code=code)
        self.offset = offset
        self.path = path


class BuildEnvironmentError(ImageGenError):
    """Raised when the target platform configuration is invalid."""

    def __init__(self, message: str, code: str = ENVIRONMENT_ERROR) -> None:
        super().__init__(message, code=code)


__all__ = [
    "ARCHIVE_ERROR",
    "COMPILE_CANCELLED",
    "COMPILE_ERROR",
    "COMPILE_TIMEOUT",
    "CONFIG_ERROR",
    "ENVIRONMENT_ERROR",
    "RESOLUTION_ERROR",
    "UNSUPPORTED_FORMAT",
    "ArchiveError",
    "BuildEnvironmentError",
    "CompileCancelledError",
    "CompileError",
    "ConfigError",
    "ImageGenError",
    "ResolutionError",
    "UnsupportedFormatError",
]
