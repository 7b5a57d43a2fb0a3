"""Shared pieces of the tag, agent and review mode strategies.

A mode answers two questions for the prepare stage: should the pipe run for
this event (``should_trigger``), and what should the assistant be asked and
allowed to do (``prepare_context``). Modes never let a failed API read stop a
run; they fall back to whatever the pipeline environment provides.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Protocol

from bbpipe_core.bitbucket.client import BitbucketAPIError
from bbpipe_core.utils.request_classifier import ACTIONABLE, classify_request

if TYPE_CHECKING:
    from bbpipe_core.bitbucket.client import BitbucketClient
    from bbpipe_core.config import PipeConfig
    from bbpipe_core.models import ModeContext, PullRequestComment, TriggerContext

logger = logging.getLogger(__name__)

EDIT_TOOLS = ("Read", "Edit", "Write", "Grep", "MultiEdit", "LS", "Glob")
# Bash stays available for git operations on actionable requests.
EDIT_BLOCKED_TOOLS = ("Computer",)
READ_ONLY_TOOLS = ("Read", "Grep")
READ_ONLY_BLOCKED_TOOLS = ("Write", "Edit", "MultiEdit", "Bash", "Computer")


class Mode(Protocol):
    name: str

    def should_trigger(self, config: PipeConfig, context: TriggerContext) -> bool: ...

    async def prepare_context(self, config: PipeConfig, context: TriggerContext) -> ModeContext: ...


def extract_request(text: str, trigger_phrase: str) -> str:
    """Return the text following the first occurrence of the trigger phrase."""
    _, found, rest = text.partition(trigger_phrase)
    return rest.strip() if found else ""


def find_trigger_comment(comments: list[PullRequestComment], trigger_phrase: str) -> Optional[PullRequestComment]:
    """Return the most recent comment mentioning the trigger phrase."""
    for comment in reversed(comments):
        if trigger_phrase in comment.raw:
            return comment
    return None


async def fetch_trigger_comment(
    client: BitbucketClient, pr_id: int, trigger_phrase: str
) -> Optional[PullRequestComment]:
    """Fetch PR comments and pick the newest mention; None if unreadable."""
    try:
        comments = await client.get_pull_request_comments(pr_id)
    except BitbucketAPIError as e:
        logger.warning("Failed to fetch PR comments: %s", e)
        return None
    logger.info("Fetched %d PR comment(s)", len(comments))
    comment = find_trigger_comment(comments, trigger_phrase)
    if comment is not None:
        logger.info("Found trigger phrase in comment %s", comment.id)
        if comment.inline is not None:
            logger.info("Comment is inline on %s lines %s", comment.inline.path, comment.inline.line_range)
    return comment


async def fetch_diff(client: BitbucketClient, pr_id: int) -> str:
    try:
        return await client.get_pull_request_diff(pr_id)
    except BitbucketAPIError as e:
        logger.warning("Failed to fetch PR diff: %s", e)
        return ""


def classify(config: PipeConfig, user_request: str) -> Optional[str]:
    """Classify an extracted request when auto-detection is enabled."""
    if not user_request or not config.auto_detect_actionable:
        return None
    request_type = classify_request(user_request)
    logger.info("Request classified as: %s", request_type)
    return request_type


def select_tools(
    config: PipeConfig, request_type: Optional[str]
) -> tuple[tuple[str, ...], tuple[str, ...]]:
    """Pick (allowed, blocked) tools for a comment-driven request.

    Explicitly configured tools always win. Otherwise an actionable request
    gets the edit tool set and everything else is read-only.
    """
    if config.allowed_tools:
        return config.allowed_tools, config.blocked_tools or ()
    if request_type == ACTIONABLE:
        logger.info("Actionable request detected - enabling edit tools")
        return EDIT_TOOLS, EDIT_BLOCKED_TOOLS
    return READ_ONLY_TOOLS, READ_ONLY_BLOCKED_TOOLS


def delivery_instructions(config: PipeConfig, base_branch: str, on_pull_request: bool = False) -> str:
    """Prompt section telling the assistant how to hand back its edits.

    Empty unless AUTO_COMMIT is on. On a pull request the edits go straight
    to its source branch; elsewhere they go to a new ``branch_prefix`` branch,
    optionally followed by a pull request when AUTO_PR is on.
    """
    if not config.auto_commit:
        return ""
    lines = ["", "## Delivering Changes"]
    if on_pull_request:
        lines.append(f"Commit your changes to `{base_branch}` with a descriptive message and push them.")
    else:
        lines.append(
            f"Create a branch named `{config.branch_prefix}<short-description>` from `{base_branch}`, "
            "commit your changes there with a descriptive message and push it."
        )
        if config.auto_pr:
            how = " with the bitbucket_create_pr tool" if config.enable_mcp_server else ""
            lines.append(f"Then open a pull request from that branch into `{base_branch}`{how}.")
    return "\n".join(lines) + "\n"
