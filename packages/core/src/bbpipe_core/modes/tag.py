from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from bbpipe_core.models import ModeContext
from bbpipe_core.modes.base import (
    classify,
    delivery_instructions,
    extract_request,
    fetch_diff,
    fetch_trigger_comment,
    select_tools,
)
from bbpipe_core.utils.request_classifier import ACTIONABLE

if TYPE_CHECKING:
    from bbpipe_core.bitbucket.client import BitbucketClient
    from bbpipe_core.config import PipeConfig
    from bbpipe_core.models import CommitSnapshot, TriggerContext

logger = logging.getLogger(__name__)

DEFAULT_PR_REQUEST = "Please review this pull request and provide feedback"

_SOURCE_NOTES = {
    "comment": "The user mentioned you in a PR comment.",
    "description": "The user mentioned you in the PR description.",
}


class TagMode:
    """Respond to an explicit mention of the trigger phrase."""

    name = "tag"

    def __init__(self, client: BitbucketClient):
        self.client = client

    def should_trigger(self, config: PipeConfig, context: TriggerContext) -> bool:
        # The caller already decided this event is a mention.
        return True

    async def prepare_context(self, config: PipeConfig, context: TriggerContext) -> ModeContext:
        logger.info("Preparing tag mode context...")
        if context.pull_request is not None:
            return await self._prepare_pull_request(config, context)
        if context.commit is not None:
            return self._prepare_commit(config, context.commit, context.branch or context.repository.default_branch)
        return ModeContext(prompt=_repository_prompt(context), **_tools(config, ""))

    async def _prepare_pull_request(self, config: PipeConfig, context: TriggerContext) -> ModeContext:
        pr = context.pull_request
        phrase = config.trigger_phrase
        trigger_source = None
        user_request = ""
        comment_id = None
        inline_context = None

        if phrase in pr.description:
            logger.info("Found trigger phrase in PR description")
            trigger_source = "description"
            user_request = extract_request(pr.description, phrase) or DEFAULT_PR_REQUEST

        # A comment is more recent than the description, so it takes over.
        comment = await fetch_trigger_comment(self.client, pr.id, phrase)
        if comment is not None:
            trigger_source = "comment"
            comment_id = comment.id
            inline_context = comment.inline
            user_request = extract_request(comment.raw, phrase) or "Please help with this PR"

        explicit_request = user_request
        if not user_request:
            user_request = DEFAULT_PR_REQUEST

        lines = [
            "# Pull Request Context",
            "",
            f"**PR #{pr.id}:** {pr.title}",
            f"**Author:** {pr.author}",
            f"**Source Branch:** {pr.source_branch}",
            f"**Target Branch:** {pr.destination_branch}",
            "",
            "## PR Description",
            pr.description or "No description provided",
            "",
            "## User Request",
            user_request,
            "",
        ]
        if inline_context is not None:
            lines += [
                "## Inline Comment Context",
                f"The user commented on **{inline_context.path}** (lines {inline_context.line_range})",
                "",
            ]
        lines += [
            "## Instructions",
            f"You are reviewing a pull request in Bitbucket. {_SOURCE_NOTES.get(trigger_source, '')}".rstrip(),
            "",
            "Analyze the changes and provide helpful feedback based on the user's request. "
            "Be specific, actionable, and constructive in your response.",
        ]
        prompt = "\n".join(lines) + "\n"

        tools = _tools(config, explicit_request)
        if tools["request_type"] == ACTIONABLE:
            prompt += delivery_instructions(config, pr.source_branch, on_pull_request=True)

        diff = await fetch_diff(self.client, pr.id)
        if diff:
            prompt += f"\n## PR Diff\n```diff\n{diff}\n```\n"

        return ModeContext(
            prompt=prompt,
            trigger_source=trigger_source,
            comment_id=comment_id,
            inline_context=inline_context,
            parent_comment_id=comment_id,
            **tools,
        )

    def _prepare_commit(self, config: PipeConfig, commit: CommitSnapshot, branch: str) -> ModeContext:
        request = commit.message.replace(config.trigger_phrase, "").strip()
        prompt = f"""# Commit Context

**Hash:** {commit.hash}
**Author:** {commit.author}
**Message:** {commit.message}

## User Request
{request}

## Instructions
You are assisting with a commit in Bitbucket. Help with the requested task.
"""
        tools = _tools(config, request)
        if tools["request_type"] == ACTIONABLE:
            prompt += delivery_instructions(config, branch)
        return ModeContext(prompt=prompt, trigger_source="commit", **tools)


def _tools(config: PipeConfig, user_request: str) -> dict:
    request_type = classify(config, user_request)
    allowed, blocked = select_tools(config, request_type)
    return {"allowed_tools": allowed, "blocked_tools": blocked, "request_type": request_type}


def _repository_prompt(context: TriggerContext) -> str:
    return f"""# Repository Context

**Repository:** {context.repository.full_name}
**Branch:** {context.branch or context.repository.default_branch}
**Triggered by:** {context.actor}

## Instructions
You are assisting with a Bitbucket repository. Provide help based on the current context.
"""
