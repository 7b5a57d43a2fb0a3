from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from bbpipe_core.models import ModeContext

if TYPE_CHECKING:
    from bbpipe_core.config import PipeConfig
    from bbpipe_core.models import TriggerContext

logger = logging.getLogger(__name__)

AGENT_ALLOWED_TOOLS = ("Read", "Write", "Edit")
AGENT_BLOCKED_TOOLS = ("Bash", "Computer")


class AgentMode:
    """Scheduled or manual runs that carry their task in configuration.

    There is no human-written request to classify, so the tool set is fixed.
    """

    name = "agent"

    def should_trigger(self, config: PipeConfig, context: TriggerContext) -> bool:
        return config.mode == "agent"

    async def prepare_context(self, config: PipeConfig, context: TriggerContext) -> ModeContext:
        logger.info("Preparing agent mode context...")
        prompt = config.agent_prompt or _default_prompt(context)
        return ModeContext(
            prompt=prompt,
            allowed_tools=config.allowed_tools or AGENT_ALLOWED_TOOLS,
            blocked_tools=config.blocked_tools or AGENT_BLOCKED_TOOLS,
        )


def _default_prompt(context: TriggerContext) -> str:
    branch = context.branch or context.repository.default_branch or "main"
    return f"""# Automated Agent Execution

**Repository:** {context.repository.full_name}
**Branch:** {branch}
**Triggered:** Automated/Scheduled

## Task
Perform automated code analysis and improvements:
1. Check for code quality issues
2. Identify potential bugs or security vulnerabilities
3. Suggest performance optimizations
4. Review documentation completeness
5. Check test coverage

## Instructions
You are running in agent mode as an automated assistant. Provide a comprehensive analysis of the codebase and suggest improvements.
"""
