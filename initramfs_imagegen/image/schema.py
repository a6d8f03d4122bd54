"""Pydantic models for image spec validation.

An image spec file describes one build in YAML or JSON. Unlike the
command line it may declare several command groups, each built with its
own strategy.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from initramfs_imagegen.golang.env import parse_tags


class CommandGroupSchema(BaseModel):
    """Schema for one command group.

    Attributes:
        builder: Build strategy ("bb" or "binary").
        packages: Package patterns, templates or directories.
    """

    model_config = ConfigDict(extra="forbid")

    builder: str = Field(default="bb", description="Build strategy")
    packages: list[str] = Field(
        default_factory=list,
        validate_default=True,
        description="Packages, templates or directories",
    )

    @field_validator("packages")
    @classmethod
    def validate_packages(cls, v: list[str]) -> list[str]:
        """Validate a group names at least one package."""
        if not v:
            raise ValueError("command group must list at least one package")
        return v


class ImageSpecSchema(BaseModel):
    """Schema for an image spec file.

    Options left as None fall back to the application settings. An
    empty string for initcmd, uinitcmd or defaultsh disables that symlink.
    """

    model_config = ConfigDict(extra="forbid")

    # Commands
    build: str | None = Field(default=None, description="Build strategy")
    packages: list[str] = Field(
        default_factory=list, description="Packages for a single command group"
    )
    commands: list[CommandGroupSchema] = Field(
        default_factory=list, description="Command groups, built in order"
    )
    nocmd: bool = Field(default=False, description="Build no Go commands")
    templates: dict[str, list[str]] = Field(
        default_factory=dict, description="User package templates"
    )
    package_dir: str | None = Field(
        default=None, description="Directory package patterns resolve against"
    )

    # Target
    goos: str | None = Field(default=None)
    goarch: str | None = Field(default=None)
    goarm: str | None = Field(default=None)
    tags: list[str] = Field(default_factory=list, description="Go build tags")
    no_strip: bool = Field(default=False)

    # Archive
    format: str | None = Field(default=None, description="Archive format")
    output: str | None = Field(default=None, description="Output archive path")
    base: str | None = Field(default=None, description="Base archive path")
    useinit: bool = Field(default=False, description="Keep the base archive init")
    tmpdir: str | None = Field(default=None, description="Workspace directory")
    files: list[str] = Field(
        default_factory=list, description="Extra files as src[:dst]"
    )
    skip_ldd: bool = Field(default=False)
    shellbang: bool = Field(default=False)

    # Symlinks
    initcmd: str | None = Field(default=None, description="Target of /init")
    uinitcmd: str | None = Field(
        default=None, description="Target of /bin/uinit plus its arguments"
    )
    defaultsh: str | None = Field(default=None, description="Target of /bin/sh")

    @field_validator("tags", mode="before")
    @classmethod
    def validate_tags(cls, v: object) -> object:
        """Accept tags as a comma-separated string."""
        if isinstance(v, str):
            return list(parse_tags(v))
        return v

    @field_validator("templates")
    @classmethod
    def validate_templates(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        """Validate template names are non-empty."""
        for name in v:
            if not name or "/" in name:
                raise ValueError(f"invalid template name {name!r}")
        return v

    @model_validator(mode="after")
    def validate_command_sources(self) -> "ImageSpecSchema":
        """Validate command groups are declared in exactly one way."""
        if self.commands and (self.packages or self.build):
            raise ValueError("use either commands or build/packages, not both")
        if self.nocmd and (self.commands or self.packages):
            raise ValueError("nocmd cannot be combined with packages or commands")
        return self


__all__ = ["CommandGroupSchema", "ImageSpecSchema"]
