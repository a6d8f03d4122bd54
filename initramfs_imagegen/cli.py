"""Thin CLI wrapper for initramfs_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import logging
from pathlib import Path
from typing import Annotated, NoReturn

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from initramfs_imagegen import __version__
from initramfs_imagegen.config import Settings, get_settings, print_settings_json
from initramfs_imagegen.errors import CompileError, ImageGenError
from initramfs_imagegen.image.models import BuildOpts

app = typer.Typer(
    name="initramfs-imagegen",
    help="Initramfs Image Generator - build initramfs archives from Go commands",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def configure_logging(level: str) -> None:
    """Send package logs to stderr through rich."""
    package_logger = logging.getLogger("initramfs_imagegen")
    package_logger.setLevel(level)
    package_logger.handlers.clear()
    handler = RichHandler(console=err_console, show_path=False)
    handler.setLevel(level)
    package_logger.addHandler(handler)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"initramfs-imagegen version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Override the configured log level"),
    ] = None,
) -> None:
    """Initramfs Image Generator - build initramfs archives from Go commands."""
    configure_logging((log_level or get_settings().log_level).upper())


def _fail(message: str) -> NoReturn:
    console.print(f"[red]{escape(message)}[/red]")
    raise typer.Exit(code=1)


def _run_build(
    opts: BuildOpts,
    settings: Settings,
    stats_output_path: Path | None,
    stats_label: str | None,
) -> None:
    """Build an image, report it and record its statistics."""
    from initramfs_imagegen.image.service import create_image
    from initramfs_imagegen.stats import BuildStats, generate_label, write_build_stats

    try:
        result = create_image(opts, settings=settings)
    except CompileError as e:
        message = f"Build failed: {e}"
        if e.log_path is not None:
            message += f" (log: {e.log_path})"
        _fail(message)
    except ImageGenError as e:
        _fail(f"Build failed: {e}")

    console.print(
        f"[green]Built {result.output_path}[/green] "
        f"({result.output_size} bytes, {result.record_count} records, "
        f"{len(result.command_names)} commands, {result.duration:.1f}s)"
    )

    stats_path = stats_output_path or settings.stats_output_path
    if stats_path is None:
        return
    if stats_label is None:
        builder = opts.commands[0].builder if opts.commands else "none"
        packages = [p for group in opts.commands for p in group.packages]
        stats_label = generate_label(builder, opts.env, packages)
    stats = BuildStats(
        label=stats_label,
        time=int(result.started_at),
        duration=result.duration,
        output_size=result.output_size,
    )
    try:
        write_build_stats(stats, stats_path)
    except ImageGenError as e:
        _fail(f"Failed to write build stats: {e}")


StatsPathOption = Annotated[
    Path | None,
    typer.Option("--stats-output-path", help="JSON file to upsert build stats into"),
]
StatsLabelOption = Annotated[
    str | None,
    typer.Option("--stats-label", help="Label of the stats entry"),
]


@app.command()
def build(
    packages: Annotated[
        list[str] | None,
        typer.Argument(help="Packages, import path globs, directories or templates"),
    ] = None,
    build_mode: Annotated[
        str | None,
        typer.Option("--build", help="Build strategy: bb or binary"),
    ] = None,
    format_name: Annotated[
        str | None,
        typer.Option("--format", help="Archive format"),
    ] = None,
    tmpdir: Annotated[
        Path | None,
        typer.Option("--tmpdir", help="Workspace directory (kept after the build)"),
    ] = None,
    base: Annotated[
        Path | None,
        typer.Option("--base", help="Base archive to add files to"),
    ] = None,
    useinit: Annotated[
        bool,
        typer.Option("--useinit", help="Keep the init of the base archive"),
    ] = False,
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Output archive path"),
    ] = None,
    initcmd: Annotated[
        str | None,
        typer.Option("--initcmd", help="Symlink target for /init (empty for none)"),
    ] = None,
    uinitcmd: Annotated[
        str | None,
        typer.Option("--uinitcmd", help="Symlink target and arguments for uinit"),
    ] = None,
    defaultsh: Annotated[
        str | None,
        typer.Option("--defaultsh", help="Symlink target for /bin/sh (empty for none)"),
    ] = None,
    nocmd: Annotated[
        bool,
        typer.Option("--nocmd", help="Build no Go commands"),
    ] = False,
    files: Annotated[
        list[str] | None,
        typer.Option("--files", help="Extra file as src[:dst] (can be repeated)"),
    ] = None,
    no_strip: Annotated[
        bool,
        typer.Option("--no-strip", help="Keep symbol and debug tables"),
    ] = False,
    shellbang: Annotated[
        bool,
        typer.Option("--shellbang", help="Install bb commands as #! stubs"),
    ] = False,
    skip_ldd: Annotated[
        bool,
        typer.Option("--skip-ldd", help="Add extra files without shared libraries"),
    ] = False,
    tags: Annotated[
        str | None,
        typer.Option("--tags", help="Comma separated Go build tags"),
    ] = None,
    stats_output_path: StatsPathOption = None,
    stats_label: StatsLabelOption = None,
) -> None:
    """Build an initramfs archive.

    With no packages, the core command set is built.
    """
    from initramfs_imagegen.image.io import build_opts_from_spec
    from initramfs_imagegen.image.schema import ImageSpecSchema

    settings = get_settings()
    data = {
        "build": build_mode,
        "packages": packages or [],
        "nocmd": nocmd,
        "format": format_name,
        "output": str(output) if output else None,
        "base": str(base) if base else None,
        "tmpdir": str(tmpdir) if tmpdir else None,
        "useinit": useinit,
        "initcmd": initcmd,
        "uinitcmd": uinitcmd,
        "defaultsh": defaultsh,
        "no_strip": no_strip,
        "skip_ldd": skip_ldd,
        "shellbang": shellbang,
        "tags": tags or [],
        "files": files or [],
    }
    try:
        spec = ImageSpecSchema.model_validate(data)
        opts = build_opts_from_spec(spec, settings=settings)
    except ValidationError as e:
        _fail(f"Invalid options: {e}")
    except ImageGenError as e:
        _fail(f"Invalid options: {e}")

    _run_build(opts, settings, stats_output_path, stats_label)


spec_app = typer.Typer(help="Build from image spec files")
app.add_typer(spec_app, name="spec")


def _load_opts(path: Path, settings: Settings) -> BuildOpts:
    from initramfs_imagegen.image.io import load_build_opts

    if not path.exists():
        _fail(f"Path not found: {path}")
    try:
        return load_build_opts(path, settings=settings)
    except ValidationError as e:
        _fail(f"Invalid image spec {path}: {e}")
    except (ImageGenError, ValueError) as e:
        _fail(f"Invalid image spec {path}: {e}")


@spec_app.command("validate")
def spec_validate(
    path: Annotated[Path, typer.Argument(help="Image spec file (.yaml/.yml/.json)")],
) -> None:
    """Validate an image spec file without building it."""
    opts = _load_opts(path, get_settings())
    console.print(f"[green]Valid image spec: {path}[/green]")
    console.print(f"  Target:   {opts.env}")
    console.print(f"  Output:   {opts.output_path}")
    console.print(f"  Format:   {opts.format}")
    for index, group in enumerate(opts.commands):
        console.print(
            f"  Group {index}:  {group.builder} ({', '.join(group.packages)})"
        )
    if not opts.commands:
        console.print("  Commands: (none)")


@spec_app.command("build")
def spec_build(
    path: Annotated[Path, typer.Argument(help="Image spec file (.yaml/.yml/.json)")],
    stats_output_path: StatsPathOption = None,
    stats_label: StatsLabelOption = None,
) -> None:
    """Build the initramfs archive described by an image spec file."""
    settings = get_settings()
    opts = _load_opts(path, settings)
    _run_build(opts, settings, stats_output_path, stats_label)


@app.command()
def templates() -> None:
    """List built-in package templates."""
    from initramfs_imagegen.golang.packages import TEMPLATES

    for name in sorted(TEMPLATES):
        console.print(f"[bold]{name}[/bold]")
        for package in TEMPLATES[name]:
            console.print(f"  {package}")


@app.command()
def formats() -> None:
    """List supported archive formats."""
    from initramfs_imagegen.archive.formats import list_formats

    for name in list_formats():
        console.print(name)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings))
        return

    def display(value: object) -> str:
        return str(value) if value else "(not set)"

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Temp directory:      {display(settings.tmp_dir)}")
    console.print(f"  Package directory:   {display(settings.package_dir)}")
    console.print(f"  Stats output:        {display(settings.stats_output_path)}")
    console.print()
    console.print("[bold]Toolchain:[/bold]")
    console.print(f"  Go binary:           {settings.go_binary}")
    console.print(f"  Compile timeout:     {settings.compile_timeout}")
    console.print(f"  Max compiles:        {settings.max_concurrent_compiles}")
    console.print()
    console.print("[bold]Defaults:[/bold]")
    console.print(f"  Build:               {settings.default_build}")
    console.print(f"  Format:              {settings.default_format}")
    console.print(f"  Init command:        {settings.default_init_cmd}")
    console.print(f"  Shell:               {settings.default_shell}")
    console.print(f"  Log level:           {settings.log_level}")


__all__ = ["app"]
