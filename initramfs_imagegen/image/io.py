"""Image spec loading.

This module loads image specs from YAML/JSON files and turns a validated
spec into the BuildOpts consumed by create_image. The command line builds
an ImageSpecSchema from its flags, so both entry points share the same
defaulting rules.
"""

import json
import shlex
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from initramfs_imagegen.config import Settings, get_settings
from initramfs_imagegen.errors import ConfigError
from initramfs_imagegen.golang.env import target_environment
from initramfs_imagegen.golang.packages import DEFAULT_PACKAGES
from initramfs_imagegen.image.models import BuildOpts, CommandGroup, default_output_path
from initramfs_imagegen.image.schema import ImageSpecSchema


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_image_spec(data: dict[str, Any]) -> ImageSpecSchema:
    """Validate image spec data.

    Raises:
        pydantic.ValidationError: If data does not match the schema.
    """
    return ImageSpecSchema.model_validate(data)


def load_image_spec(path: Path) -> ImageSpecSchema:
    """Load and validate an image spec, dispatching on the file extension.

    Args:
        path: Path to a .yaml, .yml or .json file.

    Returns:
        Validated ImageSpecSchema instance.

    Raises:
        ValueError: If the extension is unsupported or the content is not
            a mapping.
        pydantic.ValidationError: If data does not match the schema.
    """
    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        data = load_yaml(path)
    elif suffix == ".json":
        data = load_json(path)
    else:
        raise ValueError(f"Unsupported file extension: {suffix}")
    return parse_image_spec(data)


def _resolve(value: str | None, base_dir: Path | None) -> Path | None:
    if not value:
        return None
    path = Path(value).expanduser()
    if base_dir is not None and not path.is_absolute():
        path = base_dir / path
    return path


def _resolve_extra_file(entry: str, base_dir: Path | None) -> str:
    """Anchor the source of a relative ``src[:dst]`` entry at base_dir.

    A plain relative ``src`` keeps its archive path.
    """
    if base_dir is None:
        return entry
    source, sep, dest = entry.partition(":")
    if not source or Path(source).expanduser().is_absolute():
        return entry
    return f"{base_dir / source}:{dest if sep else source}"


def _command_groups(
    spec: ImageSpecSchema, settings: Settings
) -> tuple[CommandGroup, ...]:
    if spec.nocmd:
        return ()
    if spec.commands:
        return tuple(
            CommandGroup(builder=group.builder, packages=tuple(group.packages))
            for group in spec.commands
        )
    packages = spec.packages or DEFAULT_PACKAGES
    return (
        CommandGroup(
            builder=spec.build or settings.default_build, packages=tuple(packages)
        ),
    )


def build_opts_from_spec(
    spec: ImageSpecSchema,
    settings: Settings | None = None,
    base_dir: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> BuildOpts:
    """Turn a validated image spec into build options.

    Args:
        spec: Validated image spec.
        settings: Settings providing defaults (defaults to get_settings()).
        base_dir: Directory relative paths in the image spec resolve against
            (the image spec file's directory; None for the current directory).
        environ: Environment variables for the target platform.

    Returns:
        BuildOpts ready for create_image.

    Raises:
        ConfigError: If uinitcmd cannot be tokenized.
    """
    if settings is None:
        settings = get_settings()

    env = target_environment(
        goos=spec.goos,
        goarch=spec.goarch,
        goarm=spec.goarm,
        tags=tuple(spec.tags),
        environ=environ,
    )

    uinit_cmd = ""
    uinit_args: tuple[str, ...] = ()
    if spec.uinitcmd:
        try:
            tokens = shlex.split(spec.uinitcmd)
        except ValueError as e:
            raise ConfigError(f"cannot parse uinitcmd {spec.uinitcmd!r}: {e}") from e
        if tokens:
            uinit_cmd, uinit_args = tokens[0], tuple(tokens[1:])

    if spec.defaultsh is not None:
        default_shell = spec.defaultsh
    elif env.goos == "plan9":
        default_shell = ""
    else:
        default_shell = settings.default_shell

    init_cmd = settings.default_init_cmd if spec.initcmd is None else spec.initcmd
    format_name = spec.format or settings.default_format

    output_path = _resolve(spec.output, base_dir) or default_output_path(
        env, format_name
    )

    return BuildOpts(
        env=env,
        output_path=output_path,
        commands=_command_groups(spec, settings),
        format=format_name,
        temp_dir=_resolve(spec.tmpdir, base_dir),
        extra_files=tuple(_resolve_extra_file(f, base_dir) for f in spec.files),
        base_archive=_resolve(spec.base, base_dir),
        use_existing_init=spec.useinit,
        init_cmd=init_cmd,
        uinit_cmd=uinit_cmd,
        uinit_args=uinit_args,
        default_shell=default_shell,
        no_strip=spec.no_strip,
        skip_ldd=spec.skip_ldd,
        shellbang=spec.shellbang,
        package_dir=_resolve(spec.package_dir, base_dir),
        templates=MappingProxyType(
            {name: tuple(pkgs) for name, pkgs in spec.templates.items()}
        ),
    )


def load_build_opts(
    path: Path,
    settings: Settings | None = None,
    environ: Mapping[str, str] | None = None,
) -> BuildOpts:
    """Load an image spec file and return its build options.

    Relative paths in the file resolve against the file's directory.
    """
    spec = load_image_spec(path)
    return build_opts_from_spec(
        spec, settings=settings, base_dir=path.parent.absolute(), environ=environ
    )


__all__ = [
    "build_opts_from_spec",
    "load_build_opts",
    "load_image_spec",
    "load_json",
    "load_yaml",
    "parse_image_spec",
]
