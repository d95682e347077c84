import functools
import os
import sys
from pathlib import Path

import click

import provisioning
from build_config import BuildConfig, resolve_config
from stages import ConfigError, StageError


def config_options(fn):
    """Options shared by every command that resolves a BuildConfig."""

    @click.option(
        "--commit",
        "reference",
        help="Commit, branch or tag to build [env: COMMIT; default: master].",
    )
    @click.option(
        "--prefix",
        help="Install prefix [env: PREFIX; default: ./vendor/openssl].",
    )
    @click.option(
        "--openssldir",
        help="Runtime configuration directory baked into the build"
        " [env: OPENSSLDIR; default: /usr/local/ssl].",
    )
    @click.option(
        "--jobs",
        "-j",
        type=click.IntRange(min=1),
        help="Build parallelism (default: processor count).",
    )
    @click.option(
        "--scratch-root",
        type=click.Path(file_okay=False, path_type=Path),
        help="Where to create the scratch workspace (default: current directory).",
    )
    @click.option(
        "--install-target",
        help="Make target for the install step, e.g. `install_sw` to skip docs (default: install).",
    )
    @click.option("--upstream", help="Repository URL to fetch archives from.")
    @click.option(
        "--configure-arg",
        "configure_args",
        multiple=True,
        help="Extra argument for ./Configure; may be repeated.",
    )
    @click.option(
        "--timeout",
        "download_timeout",
        type=click.FloatRange(min=0, min_open=True),
        help="Download timeout in seconds.",
    )
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        return fn(*args, **kwargs)

    return wrapper


def config_from_options(options: dict, **extra) -> BuildConfig:
    try:
        return resolve_config(
            os.environ,
            Path.cwd(),
            reference=options.pop("reference"),
            prefix=options.pop("prefix"),
            openssldir=options.pop("openssldir"),
            configure_args=options.pop("configure_args") or None,
            **options,
            **extra,
        )
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(e.exit_code)


@click.group()
def cli():
    pass


@cli.command()
@config_options
@click.option(
    "--keep-scratch", is_flag=True, help="Leave the scratch workspace on disk for inspection."
)
def build(keep_scratch, **options):
    """Download, build and install one revision of OpenSSL."""
    config = config_from_options(options, keep_scratch=keep_scratch or None)

    try:
        provisioning.run(config)
    except StageError as e:
        status = f" (exit status {e.returncode})" if e.returncode is not None else ""
        click.echo(f"Error: {e.stage} stage failed{status}: {e}", err=True)
        sys.exit(e.exit_code)


@cli.command()
@config_options
def show_config(**options):
    """Print the resolved configuration without running anything."""
    config = config_from_options(options)
    for key, value in config.describe():
        click.echo(f"{key:<10}: {value}")


@cli.command()
@click.option(
    "--scratch-root",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Directory holding leftover scratch workspaces.",
)
def clean_scratch(scratch_root: Path):
    """Remove scratch workspaces left behind by interrupted runs."""
    if not scratch_root.is_dir():
        return
    for leftover in provisioning.clean_scratch(scratch_root):
        click.echo(f"Removed {leftover}")


if __name__ == "__main__":
    cli()
