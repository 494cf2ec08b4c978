"""Interactive prompting: an ordered field schema and a generic driver."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from rich.console import Console
from rich.prompt import Confirm, Prompt


class Outcome(Enum):
    """Result of a flow that may stop early without being an error."""

    DONE = "done"
    ABORTED = "aborted"  # the user declined a confirmation
    SKIPPED = "skipped"  # nothing to do (e.g. implicit docker setup, no service)


@dataclass(frozen=True)
class PromptField:
    """One interactive field: validator returns the normalized value or raises ValueError."""

    key: str
    prompt: str
    default: str | Callable[[dict[str, Any]], str | None] | None = None
    validator: Callable[[str, dict[str, Any]], Any] | None = None
    hint: str = ""


def run_prompts(fields: Sequence[PromptField], console: Console) -> dict[str, Any]:
    """Ask each field in order, re-asking until its validator accepts the answer."""
    values: dict[str, Any] = {}
    for field in fields:
        default = field.default(values) if callable(field.default) else field.default
        if field.hint:
            console.print(f"[dim]{field.hint}[/dim]")
        while True:
            answer = Prompt.ask(f"[bold]{field.prompt}[/bold]", default=default, console=console)
            answer = (answer or "").strip()
            if field.validator is None:
                values[field.key] = answer
                break
            try:
                values[field.key] = field.validator(answer, values)
                break
            except ValueError as exc:
                console.print(f"[red]{exc}[/red]")
    return values


def confirm(console: Console, message: str, default: bool = False) -> bool:
    return Confirm.ask(message, default=default, console=console)


def ask_passphrase(console: Console, message: str) -> str:
    return Prompt.ask(message, password=True, console=console)
