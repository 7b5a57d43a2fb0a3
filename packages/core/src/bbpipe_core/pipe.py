"""Entry orchestration: prepare → run → summary.

This module knows nothing about where results are persisted; the CLI maps
a PipeRun onto its store. Failure reporting to the PR is best-effort.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Mapping, Optional

from rich.console import Console

from bbpipe_core.bitbucket.comment_stream import format_final
from bbpipe_core.claude.runner import ClaudeRunner
from bbpipe_core.models import STATUS_ERROR
from bbpipe_core.prepare import prepare
from bbpipe_core.utils.turns import format_turns

if TYPE_CHECKING:
    from bbpipe_core.bitbucket.client import BitbucketClient
    from bbpipe_core.config import PipeConfig
    from bbpipe_core.models import ExecutionResult, PreparedExecution

console = Console()
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipeRun:
    """What one invocation did. ``result`` is None when the mode declined to run."""

    prepared: PreparedExecution
    result: Optional[ExecutionResult] = None

    @property
    def pr_id(self) -> Optional[int]:
        pull_request = self.prepared.context.pull_request
        return pull_request.id if pull_request else None


async def run_pipe(
    config: PipeConfig,
    client: BitbucketClient,
    runner: Optional[ClaudeRunner] = None,
    mcp_servers: Optional[dict[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> PipeRun:
    env = os.environ if env is None else env
    if not client.has_credentials:
        console.print(
            "[yellow]⚠️  BITBUCKET_ACCESS_TOKEN not set - Claude cannot post responses to PRs.[/yellow]\n"
            "[dim]Set BITBUCKET_ACCESS_TOKEN in repository variables for full functionality.[/dim]"
        )

    prepared = await prepare(config, client, env)
    if not prepared.should_run:
        console.print("[yellow]No action needed for this event.[/yellow]")
        return PipeRun(prepared=prepared)

    if runner is None:
        runner = ClaudeRunner(client, mcp_servers=mcp_servers if config.enable_mcp_server else None, env=env)

    pr_id = PipeRun(prepared=prepared).pr_id
    console.print(f"[bold]Starting Claude Code[/bold] ({config.mode} mode, model: {config.model})")
    result = await runner.run(
        config,
        prepared.context,
        prepared.prompt,
        pr_id=pr_id,
        comment_id=prepared.comment_id,
        inline_context=prepared.inline_context,
        parent_comment_id=prepared.parent_comment_id,
        allowed_tools=prepared.allowed_tools,
        blocked_tools=prepared.blocked_tools,
    )
    outcome = PipeRun(prepared=prepared, result=result)
    print_summary(outcome)
    return outcome


def print_summary(outcome: PipeRun) -> None:
    result = outcome.result
    if result is None:
        return
    # Without a PR there is nowhere to comment; the log is the only output.
    if outcome.pr_id is None:
        console.print(format_turns(result.turns), markup=False, highlight=False)

    if result.succeeded:
        console.print("\n[bold green]✅ Claude Code completed successfully[/bold green]")
    else:
        console.print(f"\n[bold red]❌ Claude Code finished with status: {result.status}[/bold red]")
        if result.error:
            console.print(result.error, style="red", markup=False, highlight=False)
    console.print(f"Total turns: {len(result.turns)}")
    console.print(f"Execution time: {result.execution_time:.1f}s")
    if outcome.prepared.trigger_source:
        console.print(f"Trigger source: {outcome.prepared.trigger_source}")


async def report_failure(client: BitbucketClient, pr_id: Optional[int], error: BaseException) -> None:
    """Post an error comment for an unexpected failure. Never raises."""
    if pr_id is None or not client.has_credentials:
        return
    content = (
        "An error occurred while processing your request:\n\n"
        f"```\n{error}\n```\n\n"
        "Please check the pipeline logs for more details."
    )
    try:
        await client.create_pull_request_comment(pr_id, format_final(content, STATUS_ERROR))
    except Exception as e:
        logger.debug("Could not post the error comment: %s", e)
