from __future__ import annotations

from typing import TYPE_CHECKING

from bbpipe_core.modes.agent import AgentMode
from bbpipe_core.modes.review import ReviewMode
from bbpipe_core.modes.tag import TagMode

if TYPE_CHECKING:
    from bbpipe_core.bitbucket.client import BitbucketClient
    from bbpipe_core.modes.base import Mode


def get_mode_handler(mode: str, client: BitbucketClient) -> Mode:
    if mode == "tag":
        return TagMode(client)
    if mode == "agent":
        return AgentMode()
    if mode in ("review", "experimental-review"):
        return ReviewMode(client)
    raise ValueError(f"Unknown mode: {mode!r}. Choose 'tag', 'agent' or 'review'.")
