from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from bbpipe_core.models import PULL_REQUEST_EVENTS, ModeContext
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
    from bbpipe_core.models import TriggerContext

logger = logging.getLogger(__name__)

_REVIEW_GUIDELINES = """## Review Guidelines

Please provide a comprehensive code review covering:

### 1. Code Quality
- Readability and maintainability
- Adherence to coding standards
- Proper naming conventions
- Code organization and structure

### 2. Functionality
- Logic correctness
- Edge case handling
- Input validation
- Error handling

### 3. Performance
- Algorithm efficiency
- Resource usage
- Potential bottlenecks
- Optimization opportunities

### 4. Security
- Input sanitization
- Authentication/authorization checks
- Sensitive data handling
- Common vulnerability patterns

### 5. Testing
- Test coverage adequacy
- Test case quality
- Missing test scenarios

### 6. Documentation
- Code comments clarity
- API documentation
- README updates if needed
"""

_FEEDBACK_INSTRUCTIONS = """Provide specific, actionable feedback. For each issue found:
1. Specify the file and line number if possible
2. Explain the issue clearly
3. Suggest a concrete improvement
4. Rate severity: 🔴 Critical | 🟡 Important | 🟢 Minor | 💭 Suggestion"""


class ReviewMode:
    """Automatic code review on pull request lifecycle events."""

    name = "review"

    def __init__(self, client: BitbucketClient):
        self.client = client

    def should_trigger(self, config: PipeConfig, context: TriggerContext) -> bool:
        # A PR event whose id did not resolve leaves nothing to review.
        return context.event_type in PULL_REQUEST_EVENTS and context.pull_request is not None

    async def prepare_context(self, config: PipeConfig, context: TriggerContext) -> ModeContext:
        logger.info("Preparing review mode context...")
        pr = context.pull_request
        if pr is None:
            raise ValueError("Review mode requires a pull request context")

        user_request = ""
        inline_context = None
        parent_comment_id = None
        comment = await fetch_trigger_comment(self.client, pr.id, config.trigger_phrase)
        if comment is not None:
            user_request = extract_request(comment.raw, config.trigger_phrase)
            inline_context = comment.inline
            # Replies thread under the comment that asked for them.
            parent_comment_id = comment.id

        request_type = classify(config, user_request)
        allowed, blocked = select_tools(config, request_type)

        if not user_request:
            instructions = _FEEDBACK_INSTRUCTIONS
        elif request_type == ACTIONABLE:
            instructions = "The user has made an actionable request. Implement the requested changes directly."
        else:
            instructions = "The user is asking for information. Provide a detailed explanation without making changes."

        sections = [
            "# Pull Request Review",
            "",
            f"**Title:** {pr.title}",
            f"**Author:** {pr.author}",
            f"**Description:** {pr.description or 'No description provided'}",
            f"**Source:** {pr.source_branch} → {pr.destination_branch}",
            "",
        ]
        if user_request:
            sections += ["## User Request", user_request, ""]
        if inline_context is not None:
            sections += [
                "## Inline Comment Context",
                f"The user commented on **{inline_context.path}** (lines {inline_context.line_range})",
                "",
            ]
        sections += [
            _REVIEW_GUIDELINES,
            "## Instructions",
            instructions,
            "",
            "Focus on the changes in this pull request and provide constructive feedback.",
        ]
        prompt = "\n".join(sections) + "\n"
        if request_type == ACTIONABLE:
            prompt += delivery_instructions(config, pr.source_branch, on_pull_request=True)

        diff = await fetch_diff(self.client, pr.id)
        if diff:
            prompt += f"\n## PR Diff\n```diff\n{diff}\n```\n"

        if self.client.has_credentials:
            prompt += (
                "\n## PR Branch Information\n"
                f"- Source Branch: {pr.source_branch}\n"
                f"- Target Branch: {pr.destination_branch or 'main'}\n"
                f"\nNote: You are working on the source branch ({pr.source_branch}) of this PR.\n"
            )

        return ModeContext(
            prompt=prompt,
            allowed_tools=allowed,
            blocked_tools=blocked,
            trigger_source="comment" if comment is not None else None,
            inline_context=inline_context,
            parent_comment_id=parent_comment_id,
            request_type=request_type,
        )
