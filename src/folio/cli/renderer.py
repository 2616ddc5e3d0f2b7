"""Rich-based terminal output for ``folio chat``."""

from __future__ import annotations

import json
from typing import Any, Iterable

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.padding import Padding
from rich.table import Table
from rich.text import Text

from ..models import ActionOutcome, ActionStatus, ActionType, CitationEntry, ProposedAction, StreamWarning, ToolCall

console = Console(stderr=True)
# Separate console for stdout markdown rendering (not stderr)
_stdout_console = Console()

# ---------------------------------------------------------------------------
# Color palette: explicit values for readability on dark terminals.
# ---------------------------------------------------------------------------

GOLD = "#C5A059"  # accents, reasoning header
SLATE = "#94A3B8"  # labels
MUTED = "#8b8b8b"  # secondary text
CHROME = "#6b7280"  # UI chrome
ERROR_RED = "#CD6B6B"

STATUS_STYLES: dict[ActionStatus, str] = {
    ActionStatus.PENDING: GOLD,
    ActionStatus.APPLIED: "green",
    ActionStatus.REJECTED: MUTED,
    ActionStatus.UNDONE: MUTED,
    ActionStatus.ERROR: ERROR_RED,
}

# Response buffer (tokens collected silently, rendered on completion)
_streaming_buffer: list[str] = []
_reasoning_started = False


def reset() -> None:
    global _streaming_buffer, _reasoning_started
    _streaming_buffer = []
    _reasoning_started = False


def render_token(content: str) -> None:
    """Buffer token content silently (no streaming output)."""
    _streaming_buffer.append(content)


def render_reasoning(content: str) -> None:
    global _reasoning_started
    if not content:
        return
    if not _reasoning_started:
        console.print(f"[{GOLD}]Thinking...[/{GOLD}]")
        _reasoning_started = True
    console.print(Text(content, style=CHROME), end="")


def buffered_text() -> str:
    return "".join(_streaming_buffer)


def render_response_end() -> None:
    """Render the complete buffered response with Rich Markdown."""
    global _streaming_buffer, _reasoning_started
    full_text = "".join(_streaming_buffer)
    _streaming_buffer = []
    if _reasoning_started:
        console.print()
        _reasoning_started = False
    if not full_text.strip():
        return
    _stdout_console.print(Padding(Markdown(full_text), (0, 2, 0, 2)))


def _toolcall_summary(toolcall: ToolCall) -> str:
    name = toolcall.function_name or "tool"
    args = toolcall.arguments
    if isinstance(args, str):
        try:
            args = json.loads(args)
        except ValueError:
            args = None
    if isinstance(args, dict):
        for key in ("query", "title", "search", "text"):
            value = args.get(key)
            if isinstance(value, str) and value:
                short = value if len(value) <= 60 else value[:57] + "..."
                return f"{name}: {short}"
    return name


def render_toolcall(toolcall: ToolCall) -> None:
    summary = escape(_toolcall_summary(toolcall))
    status = (toolcall.status or "").lower()
    if status in ("completed", "success"):
        console.print(f"[green]  â[/green] [{MUTED}]{summary}[/{MUTED}]")
    elif status in ("error", "failed"):
        console.print(f"[red]  â[/red] {summary}")
    elif toolcall.progress:
        console.print(f"  [{CHROME}]> {summary} ({escape(toolcall.progress)})[/{CHROME}]")
    else:
        console.print(f"  [{CHROME}]> {summary}[/{CHROME}]")


def render_warning(warning: StreamWarning) -> None:
    console.print(f"[{GOLD}]Warning:[/{GOLD}] {escape(warning.message)}")
    for attachment in warning.attachments:
        label = attachment.get("name") or attachment.get("title") or attachment.get("key") or "attachment"
        console.print(f"    [{CHROME}]{escape(str(label))}[/{CHROME}]")


def render_citations(entries: Iterable[CitationEntry]) -> None:
    seen: set[int] = set()
    lines: list[str] = []
    for entry in entries:
        if entry.marker in seen:
            continue
        seen.add(entry.marker)
        label = entry.name or entry.metadata.author_year or entry.key
        lines.append(f"  [{SLATE}][{entry.marker}][/{SLATE}] {escape(label)}")
    if lines:
        console.print(f"\n[{SLATE}]Sources[/{SLATE}]")
        for line in lines:
            console.print(line)


def _action_label(action: ProposedAction) -> str:
    data = action.proposed_data
    if action.is_create_item:
        return data.item.title or data.item.source_id or "(untitled)"
    if action.action_type == ActionType.ITEM_NOTE:
        return f"note: {data.title}" if data.title else "note"
    if action.action_type == ActionType.EDIT_METADATA:
        return ", ".join(f"{e.field} → {e.new_value}" for e in data.edits)
    label = data.title or data.comment or getattr(data, "text", "")
    return f"p.{data.first_page + 1} {label}".strip()


def render_actions(actions: list[ProposedAction]) -> None:
    if not actions:
        return
    table = Table(title="Proposed actions", title_style=SLATE, show_lines=False, expand=False)
    table.add_column("id", style=CHROME, no_wrap=True)
    table.add_column("type")
    table.add_column("status")
    table.add_column("detail", overflow="fold")
    for action in actions:
        style = STATUS_STYLES.get(action.status, "")
        detail = _action_label(action)
        if action.error_message:
            detail = f"{detail} ({action.error_message})"
        table.add_row(
            action.id,
            action.action_type.value,
            Text(action.status.value, style=style),
            Text(detail[:120]),
        )
    console.print(table)


def render_outcomes(outcomes: dict[str, ActionOutcome]) -> None:
    for outcome in outcomes.values():
        if outcome.status == ActionStatus.APPLIED:
            key = (outcome.result_data or {}).get("key", "")
            console.print(f"[green]  â[/green] {escape(outcome.action_id)} [{MUTED}]{escape(str(key))}[/{MUTED}]")
        else:
            console.print(f"[red]  â[/red] {escape(outcome.action_id)}: {escape(outcome.error_message or '')}")


def render_error(message: str, kind: str | None = None) -> None:
    label = f"Error ({kind})" if kind else "Error"
    console.print(f"\n[red bold]{label}:[/red bold] {escape(message)}")


def render_info(message: str, **fields: Any) -> None:
    extra = " ".join(f"{k}={v}" for k, v in fields.items())
    console.print(f"[{CHROME}]{escape(message)}{(' ' + escape(extra)) if extra else ''}[/{CHROME}]")
