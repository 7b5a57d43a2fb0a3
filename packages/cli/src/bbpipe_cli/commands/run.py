"""run command — respond to the current pipeline event with Claude Code."""

from __future__ import annotations

import asyncio
import logging
import shutil
from typing import TYPE_CHECKING, Any, Optional

import click
from rich.console import Console

from bbpipe_core.bitbucket.client import BitbucketClient
from bbpipe_core.models import STATUS_ERROR, STATUS_SUCCESS
from bbpipe_core.pipe import PipeRun, report_failure, run_pipe
from bbpipe_store.models import ExecutionRecord

if TYPE_CHECKING:
    from bbpipe_core.config import PipeConfig
    from bbpipe_store.base import BaseStore

console = Console()
logger = logging.getLogger(__name__)

STATUS_SKIPPED = "skipped"


def _outcome_to_record(config: PipeConfig, outcome: PipeRun) -> ExecutionRecord:
    """Map a PipeRun onto an ExecutionRecord for the store.

    The CLI owns this mapping: bbpipe_core has no store knowledge and
    bbpipe_store has no core knowledge.
    """
    prepared, result = outcome.prepared, outcome.result
    return ExecutionRecord(
        mode=config.mode,
        status=result.status if result else STATUS_SKIPPED,
        turn_count=len(result.turns) if result else 0,
        execution_time=round(result.execution_time, 3) if result else 0.0,
        trigger_source=prepared.trigger_source,
        comment_id=prepared.comment_id,
        pr_id=outcome.pr_id,
        branch=prepared.context.branch,
        error=result.error if result else None,
    )


def mcp_servers_for(config: PipeConfig) -> dict[str, Any]:
    """The MCP server definition handed to Claude when ENABLE_MCP_SERVER is set."""
    env = {
        "BITBUCKET_WORKSPACE": config.workspace,
        "BITBUCKET_REPO_SLUG": config.repo_slug,
    }
    optional = {
        "BITBUCKET_ACCESS_TOKEN": config.bitbucket_access_token,
        "BITBUCKET_USERNAME": config.bitbucket_username,
        "BITBUCKET_APP_PASSWORD": config.bitbucket_app_password,
        "BITBUCKET_PIPE_STORAGE_DIR": config.pipe_storage_dir,
    }
    env.update({k: v for k, v in optional.items() if v})
    return {
        "bitbucket": {
            "command": shutil.which("bbpipe") or "bbpipe",
            "args": ["mcp-server"],
            "env": env,
        }
    }


def _record(store: BaseStore, record: ExecutionRecord) -> None:
    store.save(record)
    store.set_output("CLAUDE_STATUS", record.status)
    store.set_output("CLAUDE_TURNS", str(record.turn_count))
    if record.trigger_source:
        store.set_output("CLAUDE_TRIGGER_SOURCE", record.trigger_source)


async def _run(config: PipeConfig, store: BaseStore) -> str:
    async with BitbucketClient.from_config(config) as client:
        try:
            outcome = await run_pipe(config, client, mcp_servers=mcp_servers_for(config))
        except Exception as e:
            logger.exception("Fatal error in Claude Bitbucket Pipe")
            console.print(f"[red]❌ Pipe failed: {e}[/red]", highlight=False)
            await report_failure(client, config.pr_id, e)
            _record(
                store,
                ExecutionRecord(mode=config.mode, status=STATUS_ERROR, pr_id=config.pr_id, branch=config.branch, error=str(e)),
            )
            return STATUS_ERROR

    record = _outcome_to_record(config, outcome)
    _record(store, record)
    return record.status


@click.command("run")
@click.option(
    "--mode",
    type=click.Choice(["tag", "agent", "review", "experimental-review"]),
    default=None,
    help="Execution mode. Overrides MODE and the config file.",
)
@click.option("--model", default=None, help="Claude model. Overrides MODEL and the config file.")
@click.option("--pr", "pr_id", type=int, default=None, help="Pull request id. Overrides BITBUCKET_PR_ID.")
@click.option("--timeout-minutes", type=int, default=None, help="Kill Claude after this many minutes.")
@click.option("--prompt", "agent_prompt", default=None, help="Task prompt for agent mode.")
@click.pass_context
def run_cmd(
    ctx,
    mode: Optional[str],
    model: Optional[str],
    pr_id: Optional[int],
    timeout_minutes: Optional[int],
    agent_prompt: Optional[str],
):
    """Respond to the current Bitbucket Pipelines event.

    Reads the pipeline variables, decides what Claude should do, runs Claude
    Code and posts its response to the pull request.

    \b
    Required environment variables (one of):
      ANTHROPIC_API_KEY                       Anthropic API
      AWS_ACCESS_KEY_ID + AWS_SECRET_ACCESS_KEY  Amazon Bedrock
      GCP_PROJECT_ID + GCP_SERVICE_ACCOUNT_KEY   Google Vertex AI
    """
    from bbpipe_cli.cli import build_store
    from bbpipe_core.config import ConfigError, load_config

    obj = ctx.obj or {}
    overrides = {
        "mode": mode,
        "model": model,
        "pr_id": pr_id,
        "timeout_minutes": timeout_minutes,
        "agent_prompt": agent_prompt,
        "verbose": True if obj.get("verbose") else None,
    }
    try:
        config = load_config(obj.get("config_path", ".bbpipe.yml"), cli_overrides=overrides)
    except ConfigError as e:
        raise click.ClickException(str(e))

    if config.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    store = obj.get("store")
    if store is None:
        store = build_store(config.pipe_storage_dir)
        ctx.call_on_close(store.close)

    console.print(f"[bold]Claude Bitbucket Pipe[/bold] — {config.full_name} ({config.mode} mode)")
    status = asyncio.run(_run(config, store))

    if status not in (STATUS_SUCCESS, STATUS_SKIPPED):
        ctx.exit(1)
