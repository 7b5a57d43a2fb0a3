"""Drive the Claude Code CLI as a subprocess and stream its output to the PR.

One ClaudeRunner.run() call owns exactly one subprocess:

    scratch dir → auth env + CLI args → spawn → [stdout events → comment updates]
                                              ↘ timeout watchdog (SIGTERM, then SIGKILL)
             → exit status → final comment → ExecutionResult

The terminal status is written once. Whichever of "process exited" and
"timeout fired" settles it first wins; the other is a no-op.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import signal
import tempfile
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Optional, Sequence

from bbpipe_core.bitbucket.comment_stream import CommentStreamUpdater
from bbpipe_core.claude.stream import EventStreamParser
from bbpipe_core.models import (
    STATUS_ERROR,
    STATUS_SUCCESS,
    STATUS_TIMEOUT,
    ConversationTurn,
    ExecutionResult,
    ToolUse,
)

if TYPE_CHECKING:
    from bbpipe_core.bitbucket.client import BitbucketClient
    from bbpipe_core.config import PipeConfig
    from bbpipe_core.models import InlineAnchor, TriggerContext

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 4096
# Time between SIGTERM and SIGKILL once the run has timed out.
KILL_GRACE_SECONDS = 10.0

# Credential variables for every supported provider. Only the winning
# provider's variables are passed on to the CLI.
_AUTH_VARIABLES = (
    "ANTHROPIC_API_KEY",
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_REGION",
    "CLAUDE_CODE_USE_BEDROCK",
    "GCP_PROJECT_ID",
    "GCP_REGION",
    "GOOGLE_APPLICATION_CREDENTIALS",
    "ANTHROPIC_VERTEX_PROJECT_ID",
    "CLOUD_ML_REGION",
    "CLAUDE_CODE_USE_VERTEX",
)


def prepare_environment(config: PipeConfig, base_env: Mapping[str, Optional[str]]) -> dict[str, str]:
    """Copy the parent environment and export exactly one set of credentials."""
    env = {k: v for k, v in base_env.items() if v is not None and k not in _AUTH_VARIABLES}

    method = config.auth_method
    if method == "anthropic":
        env["ANTHROPIC_API_KEY"] = config.anthropic_api_key
        logger.info("Using Anthropic API key for authentication")
    elif method == "bedrock":
        env["AWS_ACCESS_KEY_ID"] = config.aws_access_key_id
        env["AWS_SECRET_ACCESS_KEY"] = config.aws_secret_access_key or ""
        env["AWS_REGION"] = config.aws_region or "us-east-1"
        env["CLAUDE_CODE_USE_BEDROCK"] = "1"
        logger.info("Using AWS Bedrock for authentication")
    elif method == "vertex":
        region = config.gcp_region or "us-central1"
        env["GCP_PROJECT_ID"] = config.gcp_project_id
        env["GCP_REGION"] = region
        env["ANTHROPIC_VERTEX_PROJECT_ID"] = config.gcp_project_id
        env["CLOUD_ML_REGION"] = region
        env["CLAUDE_CODE_USE_VERTEX"] = "1"
        if config.gcp_service_account_key:
            env["GOOGLE_APPLICATION_CREDENTIALS"] = config.gcp_service_account_key
        logger.info("Using Google Vertex AI for authentication")
    else:
        # The CLI fails fast on its own when it really is unauthenticated.
        logger.warning("No authentication configured - Claude may not work!")
    return env


def build_claude_args(
    config: PipeConfig,
    prompt: str,
    allowed_tools: Optional[Sequence[str]] = None,
    blocked_tools: Optional[Sequence[str]] = None,
    mcp_config_path: Optional[str] = None,
) -> list[str]:
    """CLI arguments for a non-interactive, stream-json run. The prompt goes last."""
    args = ["-p", "--verbose", "--output-format", "stream-json", "--model", config.model]
    if config.fallback_model and config.fallback_model != config.model:
        args += ["--fallback-model", config.fallback_model]
    args += ["--max-turns", str(config.max_turns)]

    allowed = allowed_tools if allowed_tools is not None else config.allowed_tools
    blocked = blocked_tools if blocked_tools is not None else config.blocked_tools
    if allowed:
        args += ["--allowed-tools", ",".join(allowed)]
    if blocked:
        args += ["--disallowed-tools", ",".join(blocked)]
    if mcp_config_path:
        args += ["--mcp-config", mcp_config_path]

    args.append(prompt)
    return args


def resolve_claude_command(config: PipeConfig, env: Mapping[str, str]) -> list[str]:
    if config.claude_bin_path:
        return [os.path.join(config.claude_bin_path, "claude")]
    found = shutil.which("claude", path=env.get("PATH"))
    if found:
        return [found]
    return [str(Path.home() / ".local" / "bin" / "claude")]


def _describe_timeout(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        return f"{int(seconds // 60)} minutes"
    return f"{seconds:g} seconds"


class _RunState:
    """Everything one run accumulates. Owned by a single run() call."""

    def __init__(self):
        self.text = ""
        self.turns: list[ConversationTurn] = []
        self.status: Optional[str] = None
        self.error: Optional[str] = None

    def settle(self, status: str, error: Optional[str] = None) -> bool:
        """Record the terminal status; later calls are ignored."""
        if self.status is not None:
            return False
        self.status = status
        self.error = error
        return True

    def handle_event(self, event: dict) -> bool:
        """Apply one stream event. Returns True when the response text changed."""
        event_type = event.get("type")

        if event_type == "assistant":
            message = event.get("message")
            content = message.get("content") if isinstance(message, dict) else None
            if isinstance(content, str):
                content = [{"type": "text", "text": content}]
            if not isinstance(content, list):
                logger.debug("Skipping assistant event without a content list")
                return False
            changed = False
            for block in content:
                if not isinstance(block, dict):
                    continue
                text = block.get("text")
                if block.get("type") == "text" and isinstance(text, str) and text:
                    self.text = f"{self.text}\n\n{text}" if self.text else text
                    changed = True
                elif block.get("type") == "tool_use":
                    name = block.get("name") or "unknown"
                    logger.info("Tool used: %s", name)
                    tool = ToolUse(name=name, input=block.get("input"), id=block.get("id"))
                    self.turns.append(ConversationTurn(role="assistant", content=f"Using tool: {name}", tools=(tool,)))
            return changed

        if event_type == "result":
            # The final text only matters when nothing was streamed incrementally.
            result = event.get("result")
            if isinstance(result, str) and result and not self.text:
                self.text = result
                return True
            return False

        logger.debug("Claude event: %s", event_type)
        return False


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    """Signal the CLI and every descendant it started (its own session)."""
    try:
        os.killpg(process.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


class _Watchdog:
    """Terminates the subprocess group once the time budget runs out."""

    def __init__(self, process: asyncio.subprocess.Process, state: _RunState, timeout: float, grace: float):
        self._process = process
        self._state = state
        self._timeout = timeout
        self._grace = grace
        self._handles: list[asyncio.TimerHandle] = []

    def arm(self) -> None:
        self._handles.append(asyncio.get_running_loop().call_later(self._timeout, self._expire))

    def disarm(self) -> None:
        for handle in self._handles:
            handle.cancel()

    def _expire(self) -> None:
        message = f"Execution timed out after {_describe_timeout(self._timeout)}"
        logger.error("Claude Code execution timed out")
        self._state.settle(STATUS_TIMEOUT, message)
        _signal_group(self._process, signal.SIGTERM)
        self._handles.append(asyncio.get_running_loop().call_later(self._grace, self._kill))

    def _kill(self) -> None:
        if self._process.returncode is None:
            logger.warning("Claude did not exit after SIGTERM; killing it")
            _signal_group(self._process, signal.SIGKILL)


async def _drain_stderr(stream: asyncio.StreamReader, sink: list[str]) -> None:
    parser_buffer = ""
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            break
        text = chunk.decode("utf-8", errors="replace")
        sink.append(text)
        parser_buffer += text
        *lines, parser_buffer = parser_buffer.split("\n")
        for line in lines:
            if line.strip():
                logger.warning("Claude stderr: %s", line)
    if parser_buffer.strip():
        logger.warning("Claude stderr: %s", parser_buffer)


class ClaudeRunner:
    """Runs the assistant CLI once per run() call.

    ``command`` replaces the resolved ``claude`` executable (used by tests and
    wrappers); ``timeout_seconds`` overrides the configured minutes.
    """

    def __init__(
        self,
        client: BitbucketClient,
        command: Optional[Sequence[str]] = None,
        workdir: Optional[str] = None,
        scratch_root: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        mcp_servers: Optional[dict[str, Any]] = None,
        env: Optional[Mapping[str, str]] = None,
        kill_grace_seconds: float = KILL_GRACE_SECONDS,
    ):
        self.client = client
        self.command = list(command) if command else None
        self.workdir = workdir
        self.scratch_root = scratch_root
        self.timeout_seconds = timeout_seconds
        self.mcp_servers = mcp_servers
        self._base_env = os.environ if env is None else env
        self.kill_grace_seconds = kill_grace_seconds

    async def run(
        self,
        config: PipeConfig,
        context: TriggerContext,
        prompt: str,
        pr_id: Optional[int] = None,
        comment_id: Optional[str] = None,
        inline_context: Optional[InlineAnchor] = None,
        parent_comment_id: Optional[str] = None,
        allowed_tools: Optional[Sequence[str]] = None,
        blocked_tools: Optional[Sequence[str]] = None,
    ) -> ExecutionResult:
        started = time.monotonic()
        state = _RunState()
        updater = CommentStreamUpdater(self.client)
        stream_partials = (
            pr_id is not None
            and config.enable_streaming_comments
            and config.comment_update_strategy != "final"
        )

        async def on_text(text: str) -> None:
            if stream_partials:
                await updater.update(
                    pr_id, text, is_partial=True, inline_context=inline_context, parent_comment_id=parent_comment_id
                )

        logger.info("Executing Claude Code with model: %s (event: %s)", config.model, context.event_type)
        if comment_id:
            logger.debug("Responding to comment %s", comment_id)

        try:
            with tempfile.TemporaryDirectory(prefix="claude-", dir=self.scratch_root) as scratch_dir:
                logger.debug("Created scratch directory: %s", scratch_dir)
                if stream_partials:
                    await on_text("")
                await self._execute(config, prompt, allowed_tools, blocked_tools, scratch_dir, state, on_text)
        except Exception as e:
            logger.error("Failed to run Claude Code: %s", e)
            state.settle(STATUS_ERROR, str(e) or type(e).__name__)

        if state.text:
            state.turns.append(ConversationTurn(role="assistant", content=state.text))
        status = state.status or STATUS_ERROR

        if pr_id is not None and config.comment_update_strategy != "stream":
            await updater.update(
                pr_id,
                _final_content(state.text, state.error),
                is_partial=False,
                status=status,
                inline_context=inline_context,
                parent_comment_id=parent_comment_id,
            )

        return ExecutionResult(
            status=status,
            turns=tuple(state.turns),
            execution_time=time.monotonic() - started,
            error=state.error,
        )

    async def _execute(
        self,
        config: PipeConfig,
        prompt: str,
        allowed_tools: Optional[Sequence[str]],
        blocked_tools: Optional[Sequence[str]],
        scratch_dir: str,
        state: _RunState,
        on_text: Callable[[str], Awaitable[None]],
    ) -> None:
        env = prepare_environment(config, self._base_env)
        mcp_config_path = self._write_mcp_config(scratch_dir) if self.mcp_servers else None
        command = self.command or resolve_claude_command(config, env)
        args = build_claude_args(config, prompt, allowed_tools, blocked_tools, mcp_config_path)
        workdir = self.workdir or config.clone_dir or os.getcwd()

        logger.debug("Command: %s <prompt: %d chars>", " ".join(command + args[:-1]), len(prompt))
        # The prompt travels as an argument, so stdin is closed from the start.
        process = await asyncio.create_subprocess_exec(
            *command,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=workdir,
            env=env,
            # Own process group, so timeouts also reach whatever the CLI spawned.
            start_new_session=True,
        )
        logger.info("Claude process started with PID %s", process.pid)

        timeout = self.timeout_seconds if self.timeout_seconds is not None else config.timeout_minutes * 60
        watchdog = _Watchdog(process, state, timeout, self.kill_grace_seconds)
        watchdog.arm()
        stderr_chunks: list[str] = []
        stderr_task = asyncio.create_task(_drain_stderr(process.stderr, stderr_chunks))
        stdout_task = asyncio.create_task(self._consume_stdout(process.stdout, state, on_text))
        exit_task = asyncio.create_task(process.wait())
        try:
            await asyncio.wait([stdout_task, exit_task], return_when=asyncio.FIRST_COMPLETED)
            if stdout_task.done():
                stdout_task.result()
            returncode = await exit_task
            # A descendant that inherited stdout can keep the pipe open after the CLI exits.
            done, _ = await asyncio.wait([stdout_task], timeout=self.kill_grace_seconds)
            if done:
                stdout_task.result()
            else:
                logger.warning("Claude output stayed open after exit; stopping its leftover processes")
                stdout_task.cancel()
        finally:
            watchdog.disarm()
            exit_task.cancel()
            if not stdout_task.done():
                stdout_task.cancel()
            # Reaps the CLI after a failed read, and any descendants left behind.
            _signal_group(process, signal.SIGKILL)
            if not stderr_task.done():
                await asyncio.wait([stderr_task], timeout=self.kill_grace_seconds)
                stderr_task.cancel()

        logger.info("Claude process exited with code: %s", returncode)
        if returncode == 0:
            if state.settle(STATUS_SUCCESS):
                logger.info("Claude Code completed successfully")
        else:
            stderr_text = "".join(stderr_chunks).strip()
            if state.settle(STATUS_ERROR, stderr_text or f"Claude exited with code {returncode}"):
                logger.error("Claude failed with exit code %s", returncode)
        if state.status == STATUS_TIMEOUT:
            logger.debug("Exit after timeout; status stays %s", STATUS_TIMEOUT)
        if not state.text and not state.turns:
            logger.warning("Claude produced no output - check authentication and prompt")

    async def _consume_stdout(
        self,
        stream: asyncio.StreamReader,
        state: _RunState,
        on_text: Callable[[str], Awaitable[None]],
    ) -> None:
        parser = EventStreamParser()
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            events = parser.feed_bytes(chunk) if chunk else parser.flush()
            for event in events:
                if state.handle_event(event):
                    await on_text(state.text)
            if not chunk:
                return

    def _write_mcp_config(self, scratch_dir: str) -> str:
        path = Path(scratch_dir) / "mcp-config.json"
        path.write_text(json.dumps({"mcpServers": self.mcp_servers}, indent=2))
        logger.debug("Wrote MCP config: %s", path)
        return str(path)


def _final_content(text: str, error: Optional[str]) -> str:
    if text:
        return text
    if error:
        return f"An error occurred while processing your request:\n\n```\n{error}\n```"
    return "_Claude did not produce a response._"
