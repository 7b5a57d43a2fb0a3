"""Classify a user request as actionable (make a change) or informational.

The label scopes the assistant's tool permissions: actionable requests get
edit-capable tools, informational ones stay read-only. When in doubt the
classifier answers "informational".
"""

from __future__ import annotations

import re

ACTIONABLE = "actionable"
INFORMATIONAL = "informational"

# Below this length there is not enough signal to grant write access.
_MIN_LENGTH = 10

ACTION_VERBS = (
    "change",
    "update",
    "fix",
    "add",
    "remove",
    "delete",
    "modify",
    "replace",
    "rename",
    "move",
    "create",
    "implement",
    "refactor",
    "optimize",
    "improve",
    "enhance",
    "correct",
    "adjust",
    "alter",
    "revise",
    "edit",
    "write",
    "make",
    "set",
    "turn",
    "switch",
    "convert",
    "transform",
    "migrate",
)
_VERBS = "|".join(ACTION_VERBS)

ACTIONABLE_PATTERNS = [
    re.compile(rf"\b({_VERBS})\b", re.IGNORECASE),
    # Polite requests
    re.compile(
        rf"\b(could you|can you|please|would you|will you|help me|i need you to|i want you to)\s+\w*\s*({_VERBS})",
        re.IGNORECASE,
    ),
    # Imperative opener
    re.compile(rf"^({_VERBS})\s+", re.IGNORECASE),
    # Style tweaks, common in UI work
    re.compile(
        r"\b(darker|lighter|bigger|smaller|larger|wider|narrower|thicker|thinner)\s+"
        r"(shade|color|size|width|height|margin|padding)",
        re.IGNORECASE,
    ),
    re.compile(r"\bto\s+(a\s+)?(darker|lighter|different|another|new)\s+(shade|color|style|theme)", re.IGNORECASE),
    # Bug report with intent to fix
    re.compile(
        r"\b(bug|issue|problem|error|broken|wrong|incorrect|failing|not working|doesn't work|isn't working)\b"
        r".*\b(fix|solve|resolve|correct)",
        re.IGNORECASE,
    ),
    # Feature requests
    re.compile(
        r"\b(add|implement|create)\s+(a\s+)?(new\s+)?"
        r"(feature|functionality|capability|option|setting|button|component|page|endpoint|api|method|function)",
        re.IGNORECASE,
    ),
]

INFORMATIONAL_PATTERNS = [
    # Question opener not followed by an action verb
    re.compile(
        r"^(what|where|when|why|how|which|who|whose)\s+"
        r"(?!.*(change|update|fix|add|remove|delete|modify|replace|create|implement))",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(explain|describe|tell me about|what does|how does|show me how|walk me through|guide me|teach me)\b",
        re.IGNORECASE,
    ),
    # Analysis without a follow-up change
    re.compile(
        r"\b(analyze|review|check|inspect|look at|examine|evaluate|assess)\b(?!.*(and\s+(fix|change|update|modify)))",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(document|documentation|docs|readme|comments?|explanation)\b(?!.*(update|add|write|create))",
        re.IGNORECASE,
    ),
    re.compile(r"\b(understand|clarify|meaning of|purpose of|reason for)\b", re.IGNORECASE),
]


def _matches_any(patterns: list[re.Pattern], text: str) -> bool:
    return any(p.search(text) for p in patterns)


def classify_request(text: str) -> str:
    """Return ``"actionable"`` or ``"informational"`` for a free-text request.

    An informational match only wins when no actionable pattern matches the
    same text; with no match at all the request is treated as informational.
    """
    normalized = text.strip()
    if len(normalized) < _MIN_LENGTH:
        return INFORMATIONAL

    actionable = _matches_any(ACTIONABLE_PATTERNS, normalized)
    if _matches_any(INFORMATIONAL_PATTERNS, normalized) and not actionable:
        return INFORMATIONAL
    if actionable:
        return ACTIONABLE
    return INFORMATIONAL


def extract_action(text: str) -> str | None:
    """Return the first action verb (in vocabulary order) found in the text."""
    lowered = text.lower()
    for verb in ACTION_VERBS:
        if verb in lowered:
            return verb
    return None


def get_classification_confidence(text: str) -> float:
    """Fraction of matched patterns that belong to the dominant class.

    Diagnostic only; 0.5 means no pattern matched at all.
    """
    normalized = text.strip()
    actionable = sum(1 for p in ACTIONABLE_PATTERNS if p.search(normalized))
    informational = sum(1 for p in INFORMATIONAL_PATTERNS if p.search(normalized))
    total = actionable + informational
    if total == 0:
        return 0.5
    return max(actionable, informational) / total
