"""Post the assistant's partial and final output as PR comments.

Bitbucket comments are not edited in place: every accepted update is a new
comment. Partial updates are throttled so a fast token stream cannot exceed
the API's rate limits; the final update is never throttled.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from rich.console import Console

from bbpipe_core.models import STATUS_ERROR, STATUS_SUCCESS, STATUS_TIMEOUT

if TYPE_CHECKING:
    from bbpipe_core.bitbucket.client import BitbucketClient
    from bbpipe_core.models import InlineAnchor

console = Console()
logger = logging.getLogger(__name__)

UPDATE_THROTTLE_SECONDS = 1.0

_STATUS_BANNERS = {
    STATUS_SUCCESS: ("✅", "Completed"),
    STATUS_ERROR: ("❌", "Failed"),
    STATUS_TIMEOUT: ("⏱️", "Timed Out"),
}


@dataclass
class ThrottleState:
    """Last accepted update time for one invocation."""

    last_update: Optional[float] = None

    def accept(self, now: float, is_partial: bool) -> bool:
        if is_partial and self.last_update is not None and now - self.last_update < UPDATE_THROTTLE_SECONDS:
            return False
        self.last_update = now
        return True


def format_partial(content: str) -> str:
    return f"🤖 **Claude is responding...**\n\n{content}"


def format_final(content: str, status: Optional[str]) -> str:
    emoji, label = _STATUS_BANNERS.get(status or STATUS_SUCCESS, _STATUS_BANNERS[STATUS_ERROR])
    return f"## 🤖 Claude Response {emoji}\n\n{content}\n\n---\n*Status: {label}*"


class CommentStreamUpdater:
    """Throttles, formats and routes comment updates for a single run."""

    def __init__(
        self,
        client: BitbucketClient,
        throttle: Optional[ThrottleState] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.throttle = throttle if throttle is not None else ThrottleState()
        self._clock = clock

    async def update(
        self,
        pr_id: int,
        content: str,
        is_partial: bool,
        status: Optional[str] = None,
        inline_context: Optional[InlineAnchor] = None,
        parent_comment_id: Optional[str] = None,
    ) -> bool:
        """Post one update; returns whether it was accepted by the throttle.

        Never raises: a failed post is logged and the run carries on.
        """
        if not self.throttle.accept(self._clock(), is_partial):
            return False

        body = format_partial(content) if is_partial else format_final(content, status)

        if not self.client.has_credentials:
            # No write access: surface the final answer in the pipeline log only.
            if not is_partial:
                console.print("\n" + body + "\n", markup=False, highlight=False)
            return True

        try:
            comment_id = await self.client.create_pull_request_comment(
                pr_id, body, inline=inline_context, parent_id=parent_comment_id
            )
        except Exception as e:
            logger.warning("Failed to update PR comment (%s): %s", type(e).__name__, e)
            return True

        if comment_id is None:
            logger.debug("PR comment update was not posted")
        elif not is_partial:
            where = f"inline on {inline_context.path}" if inline_context else "on the PR"
            logger.info("Posted final Claude response %s (comment %s)", where, comment_id)
        return True
