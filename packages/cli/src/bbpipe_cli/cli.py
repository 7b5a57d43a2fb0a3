"""CLI entry point for bbpipe.

Commands:
  run         — respond to the current pipeline event with Claude Code
  classify    — show how a request would be classified (diagnostics)
  mcp-server  — serve the Bitbucket/pipeline tools to Claude over stdio
"""

from __future__ import annotations

import importlib.metadata
import logging
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler

from bbpipe_cli.commands.classify import classify_cmd
from bbpipe_cli.commands.run import run_cmd
from bbpipe_cli.mcp_server import mcp_server_cmd

console = Console()

# Loggers that are chatty at DEBUG and can echo request headers.
_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")


def configure_logging(verbose: bool = False) -> None:
    """Send all log records to stderr through rich.

    stdout stays free for pipeline output and for the MCP stdio protocol.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)],
        force=True,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def build_store(storage_dir: Optional[str]):
    """Instantiate the pipeline output store.

    Store selection:
      BITBUCKET_PIPE_STORAGE_DIR set → PipeStorageStore (files shared between steps)
      (default)                     → NoOpStore (nothing persisted)

    This factory lives in cli.py so neither bbpipe_core nor bbpipe_store
    know about pipeline configuration.
    """
    from bbpipe_store.noop import NoOpStore

    if not storage_dir:
        return NoOpStore()

    from bbpipe_store.storage_dir import PipeStorageStore

    try:
        return PipeStorageStore(storage_dir)
    except OSError as e:
        console.print(f"[yellow]Cannot use pipe storage at {storage_dir} ({e}). Falling back to no store.[/yellow]")
        return NoOpStore()


@click.group()
@click.version_option(
    version=importlib.metadata.version("bbpipe"),
    prog_name="bbpipe",
)
@click.option(
    "--config",
    "config_path",
    default=".bbpipe.yml",
    show_default=True,
    help="Path to the configuration file.",
    envvar="BBPIPE_CONFIG",
)
@click.option("--verbose", "-v", is_flag=True, envvar="VERBOSE", help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, config_path: str, verbose: bool):
    """Run Claude Code from Bitbucket Pipelines."""
    ctx.ensure_object(dict)
    configure_logging(verbose)
    ctx.obj.setdefault("config_path", config_path)
    ctx.obj.setdefault("verbose", verbose)


main.add_command(run_cmd)
main.add_command(classify_cmd)
main.add_command(mcp_server_cmd)
