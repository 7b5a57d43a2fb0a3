"""Data passed between the prepare stage, the runner and the comment updater.

Snapshots describe the event being answered and are read-only once built.
ConversationTurn records accumulate in the runner and become part of the
terminal ExecutionResult.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
STATUS_TIMEOUT = "timeout"

PULL_REQUEST_EVENTS = (
    "pullrequest:created",
    "pullrequest:updated",
    "pullrequest:approved",
    "pullrequest:unapproved",
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class PullRequestSnapshot:
    id: int
    title: str
    description: str
    source_branch: str
    destination_branch: str
    author: str
    state: str = "OPEN"
    created_on: str = field(default_factory=utc_now)
    updated_on: str = field(default_factory=utc_now)


@dataclass(frozen=True)
class CommitSnapshot:
    hash: str
    message: str
    author: str
    date: str = field(default_factory=utc_now)


@dataclass(frozen=True)
class RepositorySnapshot:
    name: str
    full_name: str
    default_branch: str = "main"
    is_private: bool = True
    language: str = "unknown"


@dataclass(frozen=True)
class TriggerContext:
    """The event the pipe is responding to."""

    event_type: str
    actor: str
    repository: RepositorySnapshot
    pull_request: Optional[PullRequestSnapshot] = None
    commit: Optional[CommitSnapshot] = None
    branch: Optional[str] = None


@dataclass(frozen=True)
class InlineAnchor:
    """A file path and line range an inline comment is attached to."""

    path: str
    from_line: Optional[int] = None
    to_line: Optional[int] = None

    @property
    def line_range(self) -> str:
        start = self.from_line if self.from_line is not None else self.to_line
        end = self.to_line if self.to_line is not None else start
        return f"{start}-{end}"


@dataclass(frozen=True)
class PullRequestComment:
    id: str
    author: str
    raw: str
    inline: Optional[InlineAnchor] = None


@dataclass(frozen=True)
class ToolUse:
    name: str
    input: Any = None
    output: Any = None  # None while the tool result is pending
    id: Optional[str] = None


@dataclass(frozen=True)
class ConversationTurn:
    role: str  # "user" | "assistant"
    content: str
    timestamp: str = field(default_factory=utc_now)
    tools: tuple[ToolUse, ...] = ()


@dataclass(frozen=True)
class ExecutionResult:
    status: str  # "success" | "error" | "timeout"
    turns: tuple[ConversationTurn, ...] = ()
    execution_time: float = 0.0  # seconds
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCESS


@dataclass(frozen=True)
class ModeContext:
    """What a mode strategy hands back to the prepare stage."""

    prompt: str
    allowed_tools: Optional[tuple[str, ...]] = None
    blocked_tools: Optional[tuple[str, ...]] = None
    trigger_source: Optional[str] = None  # "description" | "comment" | "commit"
    comment_id: Optional[str] = None
    inline_context: Optional[InlineAnchor] = None
    parent_comment_id: Optional[str] = None
    request_type: Optional[str] = None


@dataclass(frozen=True)
class PreparedExecution:
    """Output of the prepare stage, consumed once by the runner."""

    should_run: bool
    context: TriggerContext
    prompt: str = ""
    allowed_tools: Optional[tuple[str, ...]] = None
    blocked_tools: Optional[tuple[str, ...]] = None
    trigger_source: Optional[str] = None
    comment_id: Optional[str] = None
    inline_context: Optional[InlineAnchor] = None
    parent_comment_id: Optional[str] = None

    @property
    def comment_type(self) -> str:
        return "inline" if self.inline_context else "top-level"
