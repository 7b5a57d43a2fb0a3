from __future__ import annotations

import json
from typing import Any, Sequence

from bbpipe_core.models import ConversationTurn

_NO_TURNS = "*No conversation turns recorded*"


def _format_payload(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    try:
        return json.dumps(payload, indent=2, default=str)
    except (TypeError, ValueError):
        return repr(payload)


def _format_time(timestamp: str) -> str:
    # ISO-8601 "2025-01-01T12:34:56.789+00:00" -> "12:34:56"
    _, sep, rest = timestamp.partition("T")
    return rest[:8] if sep else timestamp


def format_turns(turns: Sequence[ConversationTurn]) -> str:
    """Render a conversation as Markdown for the pipeline log."""
    if not turns:
        return _NO_TURNS

    sections = []
    for index, turn in enumerate(turns, start=1):
        role = "🤖 Assistant" if turn.role == "assistant" else "👤 User"
        lines = [f"### Turn {index}: {role}", f"*{_format_time(turn.timestamp)}*", "", turn.content]

        if turn.tools:
            lines += ["", "<details>", "<summary>Tools Used</summary>", ""]
            for tool in turn.tools:
                lines.append(f"**{tool.name}**")
                lines += ["```json", _format_payload(tool.input), "```"]
                if tool.output is not None:
                    lines += ["Output:", "```", _format_payload(tool.output), "```"]
                lines.append("")
            lines.append("</details>")

        sections.append("\n".join(lines))
    return "\n\n---\n\n".join(sections)
