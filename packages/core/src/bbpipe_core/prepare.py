"""Prepare stage: pick the mode, describe the event, build the prompt."""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Mapping, Optional

from bbpipe_core.models import PreparedExecution
from bbpipe_core.modes.registry import get_mode_handler
from bbpipe_core.trigger import build_trigger_context

if TYPE_CHECKING:
    from bbpipe_core.bitbucket.client import BitbucketClient
    from bbpipe_core.config import PipeConfig

logger = logging.getLogger(__name__)


async def prepare(
    config: PipeConfig,
    client: BitbucketClient,
    env: Optional[Mapping[str, str]] = None,
) -> PreparedExecution:
    """Return a ready-to-run prompt, or ``should_run=False`` when the mode declines."""
    env = os.environ if env is None else env
    context = await build_trigger_context(config, client, env)
    mode = get_mode_handler(config.mode, client)

    if not mode.should_trigger(config, context):
        logger.info('Mode "%s" conditions not met for event "%s"', config.mode, context.event_type)
        return PreparedExecution(should_run=False, context=context)

    mode_context = await mode.prepare_context(config, context)
    logger.info("Context prepared (%s mode, %d prompt chars)", mode.name, len(mode_context.prompt))

    return PreparedExecution(
        should_run=True,
        context=context,
        prompt=mode_context.prompt,
        allowed_tools=mode_context.allowed_tools,
        blocked_tools=mode_context.blocked_tools,
        trigger_source=mode_context.trigger_source,
        comment_id=mode_context.comment_id,
        inline_context=mode_context.inline_context,
        parent_comment_id=mode_context.parent_comment_id,
    )
