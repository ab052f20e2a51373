# ABOUTME: CLI package for calisync, built on Click.
# ABOUTME: Defines the root command group, its logging flags and shared sync settings.

import logging
from pathlib import Path

import click

from calisync.cli.commands import categories_cmd, download_cmd, metadata_cmd, tags_cmd
from calisync.cli.options import build_settings, settings_options
from calisync.logging_setup import setup_logging


@click.group()
@click.version_option(package_name="calisync")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Show debug output.")
@click.option("-q", "--quiet", is_flag=True, default=False, help="Only show warnings and errors.")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Also write a full debug log to this file.",
)
@settings_options
@click.pass_context
def cli(ctx: click.Context, verbose: bool, quiet: bool, log_file: Path | None, **settings) -> None:
    """calisync - keep a calibre library in step with Standard Ebooks."""
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    setup_logging(level, log_file)
    ctx.obj = build_settings(**settings)


cli.add_command(download_cmd.download)
cli.add_command(metadata_cmd.metadata)
cli.add_command(tags_cmd.tags)
cli.add_command(categories_cmd.categories)
