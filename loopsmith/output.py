"""Terminal rendering for Loopsmith using 'rich'.

Messages are split into static ones, printed once to scrollback, and
transient ones (running tools and their progress) that are redrawn in a
live region until their whole batch has resolved.
"""

import asyncio
import json
import sys

from rich.console import Console, Group
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.spinner import Spinner
from rich.text import Text
from rich.theme import Theme

from .messages import (
    CANCEL_MESSAGE,
    INTERRUPT_MESSAGE,
    INTERRUPT_MESSAGE_FOR_TOOL_USE,
    REJECT_MESSAGE,
    SYNTHETIC_ASSISTANT_MESSAGES,
    is_not_empty_message,
)
from .normalize import (
    get_in_progress_tool_use_ids,
    get_tool_use_id,
    get_unresolved_tool_use_ids,
    normalize_messages,
    reorder_messages,
    should_render_statically,
)
from .permissions import PermissionOutcome

COLORS = {
    "primary": "#00D4AA",
    "success": "#00C853",
    "warning": "#FFD600",
    "error": "#FF1744",
    "muted": "#78909C",
    "accent": "#E040FB",
}

loopsmith_theme = Theme(
    {
        "primary": COLORS["primary"],
        "success": COLORS["success"],
        "warning": COLORS["warning"],
        "error": COLORS["error"],
        "muted": COLORS["muted"],
        "accent": COLORS["accent"],
        "info": COLORS["primary"],
        "prompt": COLORS["primary"],
    }
)

MAX_RESULT_LINES = 6


def supports_color():
    """Check if terminal supports colors."""
    if not hasattr(sys.stdout, "isatty"):
        return False
    return sys.stdout.isatty()


console = Console(theme=loopsmith_theme, force_terminal=True if supports_color() else False)


def print_success(message):
    console.print(f"[success]✓ {message}[/success]")


def print_error(message):
    console.print(f"[error]Error: {message}[/error]")


def print_info(message):
    console.print(f"[muted]{message}[/muted]")


def print_welcome(provider, model, cwd):
    panel = Panel(
        Text.assemble(
            ("Loopsmith", "primary"),
            f"\n\nProvider: {provider}\nModel:    {model}\ncwd:      {cwd}\n\n",
            ("/clear  /fork N  /resume FILE  /cost  /exit  !command", "muted"),
        ),
        border_style="primary",
        expand=False,
        padding=(0, 2),
    )
    console.print(panel)


def print_cost(total_cost_usd, api_duration_ms):
    console.print(f"[muted]Total cost:         ${total_cost_usd:.4f}[/muted]")
    console.print(f"[muted]Total API duration: {api_duration_ms / 1000:.1f}s[/muted]")


# ---------------------------------------------------------------------------
# Message rendering
# ---------------------------------------------------------------------------


def _shorten(text, verbose):
    lines = str(text).strip().split("\n")
    if verbose or len(lines) <= MAX_RESULT_LINES:
        return "\n".join(lines)
    hidden = len(lines) - MAX_RESULT_LINES
    return "\n".join(lines[:MAX_RESULT_LINES] + [f"... (+{hidden} lines)"])


def _result_text(content):
    if isinstance(content, str):
        return content
    return "\n".join(block.get("text", "") for block in content if isinstance(block, dict))


def render_tool_result(block, verbose=False):
    content = _result_text(block.get("content", ""))
    if content == REJECT_MESSAGE:
        return Text("  ⎿  No (tell the model what to do differently)", style="error")
    if content == CANCEL_MESSAGE:
        return Text("  ⎿  Interrupted by user", style="error")
    style = "error" if block.get("is_error") else "muted"
    return Text(f"  ⎿  {_shorten(content, verbose) or '(no output)'}", style=style)


def render_tool_use(block, tools_by_name, in_progress=False):
    tool = tools_by_name.get(block.get("name"))
    tool_input = block.get("input") or {}
    try:
        detail = tool.render_tool_use(tool_input) if tool else json.dumps(tool_input)
    except (KeyError, TypeError):
        detail = json.dumps(tool_input)
    label = Text.assemble(("● ", "primary"), (block.get("name", "?"), "bold"), f"({detail})")
    if in_progress:
        return Spinner("dots", text=label, style="primary")
    return label


def render_message(message, tools_by_name, in_progress_ids=frozenset(), verbose=False):
    """Rich renderable for one normalized message, or None to skip it."""
    if message.type == "progress":
        return Text(f"  ⎿  {message.content.text}", style="muted")

    if message.type == "user":
        if not is_not_empty_message(message):
            return None
        if isinstance(message.content, str):
            return Text(f"> {message.content}", style="muted")
        block = message.content[0] if message.content else {}
        if block.get("type") == "tool_result":
            return render_tool_result(block, verbose)
        return Text(f"> {block.get('text', '')}", style="muted")

    block = message.content[0] if message.content else {}
    if block.get("type") == "tool_use":
        return render_tool_use(block, tools_by_name, block.get("id") in in_progress_ids)

    text = message.text
    if text in (INTERRUPT_MESSAGE, INTERRUPT_MESSAGE_FOR_TOOL_USE):
        return Text("  ⎿  Interrupted by user", style="error")
    if not is_not_empty_message(message):
        return None
    if message.is_api_error_message:
        return Text(text, style="error")
    if text in SYNTHETIC_ASSISTANT_MESSAGES:
        return Text(f"  ⎿  {text}", style="muted")
    return Markdown(text)


def render_key(message):
    """Identity of a normalized message that survives re-normalization."""
    if message.type == "progress":
        return f"progress:{message.tool_use_id}:{message.uuid}"
    tool_use_id = get_tool_use_id(message)
    if tool_use_id:
        return f"{message.type}:{tool_use_id}"
    if message.type == "assistant":
        block = json.dumps(message.content[0] if message.content else {}, sort_keys=True)
        return f"assistant:{message.message_id}:{block}"
    return f"user:{message.uuid}"


def split_for_render(messages):
    """Normalize, reorder and classify messages.

    Returns:
        Tuple of (static, transient, in_progress_ids)
    """
    normalized = normalize_messages(messages)
    ordered = reorder_messages(normalized)
    unresolved = get_unresolved_tool_use_ids(normalized)
    in_progress = get_in_progress_tool_use_ids(normalized)

    static = []
    transient = []
    for message in ordered:
        if should_render_statically(message, normalized, unresolved):
            if message.type != "progress":
                static.append(message)
        else:
            transient.append(message)
    return static, transient, in_progress


class TranscriptView:
    """Prints a conversation as it grows.

    Static messages are printed once. Transient ones live in a rich Live
    region that is redrawn on every update and cleared when the turn ends.
    """

    def __init__(self, tools, verbose=False):
        self.tools_by_name = {tool.name: tool for tool in tools}
        self.verbose = verbose
        self._printed = set()
        self._live = None

    def update(self, messages):
        static, transient, in_progress = split_for_render(messages)

        for message in static:
            key = render_key(message)
            if key in self._printed:
                continue
            self._printed.add(key)
            renderable = render_message(message, self.tools_by_name, verbose=self.verbose)
            if renderable is not None:
                self._print(renderable)

        renderables = [
            r
            for r in (
                render_message(m, self.tools_by_name, in_progress, self.verbose) for m in transient
            )
            if r is not None
        ]
        if renderables:
            self._live_region().update(Group(*renderables), refresh=True)
        elif self._live is not None:
            self._live.update(Group(), refresh=True)

    def mark_printed(self, messages):
        """Treat `messages` as already on screen, e.g. after a fork."""
        static, _, _ = split_for_render(messages)
        self._printed = {render_key(message) for message in static}

    def finish(self):
        if self._live is not None:
            self._live.stop()
            self._live = None

    def _live_region(self):
        if self._live is None:
            self._live = Live(console=console, transient=True, refresh_per_second=8)
            self._live.start()
        return self._live

    def _print(self, renderable):
        if self._live is not None:
            self._live.console.print(renderable)
        else:
            console.print(renderable)


# ---------------------------------------------------------------------------
# Permission prompt
# ---------------------------------------------------------------------------

PERMISSION_CHOICES = {
    "y": PermissionOutcome.ALLOW_ONCE,
    "yes": PermissionOutcome.ALLOW_ONCE,
    "a": PermissionOutcome.ALLOW_ALWAYS,
    "always": PermissionOutcome.ALLOW_ALWAYS,
    "n": PermissionOutcome.DENY,
    "no": PermissionOutcome.DENY,
}


def parse_permission_answer(answer) -> PermissionOutcome:
    """Map a typed answer to an outcome. Anything unrecognised is a denial."""
    return PERMISSION_CHOICES.get(answer.strip().lower(), PermissionOutcome.DENY)


def ask_permission(tool, tool_input, prefix) -> PermissionOutcome:
    """Blocking permission prompt."""
    always_for = tool.permission_key(tool_input, prefix)
    panel = Panel(
        Text.assemble(
            (tool.name, "bold"),
            f"({tool.render_tool_use(tool_input)})\n\n",
            ("y", "success"),
            " yes   ",
            ("a", "warning"),
            f" yes, and don't ask again for {always_for}   ",
            ("n", "error"),
            " no",
        ),
        title="Permission required",
        border_style="warning",
        expand=False,
        padding=(0, 2),
    )
    console.print(panel)
    try:
        answer = console.input("[prompt]Allow? [y/a/n]:[/prompt] ")
    except (KeyboardInterrupt, EOFError):
        return PermissionOutcome.DENY
    return parse_permission_answer(answer)


async def prompt_permission(tool, tool_input, prefix) -> PermissionOutcome:
    """ask_permission on a worker thread so the turn can still be cancelled."""
    return await asyncio.to_thread(ask_permission, tool, tool_input, prefix)
