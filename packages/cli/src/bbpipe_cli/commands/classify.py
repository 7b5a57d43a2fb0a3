"""classify command — show how the request classifier labels a request."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

from bbpipe_core.utils.request_classifier import (
    ACTIONABLE,
    classify_request,
    extract_action,
    get_classification_confidence,
)

console = Console()


@click.command("classify")
@click.argument("text")
@click.option("--trigger-phrase", default=None, help="Strip everything up to this phrase first, as tag mode does.")
def classify_cmd(text: str, trigger_phrase: str | None):
    """Classify TEXT as actionable or informational.

    Actionable requests get edit-capable tools; informational requests get
    read-only tools. Useful for checking a comment before pushing it.
    """
    if trigger_phrase:
        from bbpipe_core.modes.base import extract_request

        text = extract_request(text, trigger_phrase) or text

    label = classify_request(text)
    style = "green" if label == ACTIONABLE else "cyan"

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Request", max_width=60)
    table.add_column("Type", width=14)
    table.add_column("Confidence", justify="right", width=10)
    table.add_column("Action", width=12)
    table.add_row(
        text,
        f"[{style}]{label}[/{style}]",
        f"{get_classification_confidence(text):.0%}",
        extract_action(text) or "-",
    )
    console.print(table)
