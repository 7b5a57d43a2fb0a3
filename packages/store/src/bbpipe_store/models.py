"""Execution record data model.

Decoupled from bbpipe_core so the store layer can be used independently
and bbpipe_core has no knowledge of where pipe outputs end up.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ExecutionRecord:
    """The outcome of one pipe invocation.

    Created by the CLI layer after the runner returns an ExecutionResult.
    """

    mode: str
    status: str  # "success" | "error" | "timeout" | "skipped"
    turn_count: int = 0
    execution_time: float = 0.0  # seconds
    trigger_source: Optional[str] = None
    comment_id: Optional[str] = None
    pr_id: Optional[int] = None
    branch: Optional[str] = None
    error: Optional[str] = None
    recorded_at: str = field(default_factory=_now)

    def to_dict(self) -> dict:
        return asdict(self)
