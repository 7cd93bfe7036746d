# Loopsmith - Agent Turn Runtime
# Copyright (c) 2024-2026 Matthew Bright
# Licensed under the MIT License. See LICENSE file for details.

"""CLI entry point for Loopsmith."""

import argparse
import asyncio
import logging
import os
import signal
import sys
import time
from datetime import date
from pathlib import Path

from . import __version__
from .abort import AbortController
from .api_client import create_client, get_total_api_duration_ms, get_total_cost
from .config import ProjectConfigStore, get_messages_dir, load_config
from .errors import ConfigParseError, ShellError
from .log_config import configure_logging
from .messages import create_user_message
from .output import (
    TranscriptView,
    console,
    print_cost,
    print_error,
    print_info,
    print_success,
    print_welcome,
    prompt_permission,
)
from .permissions import PermissionGate
from .persistent_shell import PersistentShell
from .session import ConversationSession
from .tools import get_default_tools
from .transcript import load_transcript

logger = logging.getLogger(__name__)

FORCE_EXIT_WINDOW = 2.0

# Track Ctrl+C presses for emergency stop
_interrupt_count = 0
_last_interrupt = 0.0


def build_system_prompt(cwd):
    return [
        "You are an interactive coding agent working in the user's project. "
        "Use the tools to inspect and change files and to run commands. "
        "Keep answers short and to the point.",
        f"Working directory: {cwd}\nToday's date: {date.today().isoformat()}",
    ]


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="loopsmith",
        description="Loopsmith - an interactive coding agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  loopsmith                            (starts interactive mode)
  loopsmith --print "Summarise README.md"
  loopsmith --provider openai "List the failing tests"
  loopsmith --resume ~/.loopsmith/messages/<log>.json

Environment variables:
  LOOPSMITH_PROVIDER   API provider (claude, openai)
  LOOPSMITH_API_KEY    Your API key
  LOOPSMITH_MODEL      Model override
        """,
    )

    parser.add_argument(
        "prompt",
        nargs="?",
        help="Initial prompt (omit for interactive mode)",
    )

    parser.add_argument(
        "--provider",
        "-p",
        choices=["claude", "openai"],
        help="API provider (default: claude)",
    )

    parser.add_argument(
        "--model",
        "-m",
        help="Model to use (default depends on the provider)",
    )

    parser.add_argument(
        "--api-key",
        "-k",
        help="API key (or use LOOPSMITH_API_KEY env var)",
    )

    parser.add_argument(
        "--verbose",
        "-V",
        action="store_true",
        help="Show full tool output and debug logs",
    )

    parser.add_argument(
        "--dangerously-skip-permissions",
        action="store_true",
        help="Run every tool without asking",
    )

    parser.add_argument(
        "--resume",
        "-r",
        metavar="FILE",
        help="Continue the conversation saved in a transcript file",
    )

    parser.add_argument(
        "--print",
        dest="print_mode",
        action="store_true",
        help="Answer the prompt, print the response and exit",
    )

    parser.add_argument(
        "--version",
        "-v",
        action="version",
        version=f"Loopsmith {__version__}",
    )

    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Ctrl+C handling
# ---------------------------------------------------------------------------


def _handle_interrupt(cancel):
    """First Ctrl+C cancels the running turn. A second within 2 seconds exits."""
    global _interrupt_count, _last_interrupt

    current_time = time.time()
    if current_time - _last_interrupt > FORCE_EXIT_WINDOW:
        _interrupt_count = 0
    _interrupt_count += 1
    _last_interrupt = current_time

    if _interrupt_count >= 2:
        console.print("\n[error]Stopped.[/error]")
        PersistentShell.restart()
        os._exit(130)

    cancel()
    console.print("\n[warning]Cancelling... (press Ctrl+C again to exit)[/warning]")


class _CancelOnInterrupt:
    """Route SIGINT to `cancel` while the block runs."""

    def __init__(self, cancel):
        self.cancel = cancel
        self.installed = False

    def __enter__(self):
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, _handle_interrupt, self.cancel)
            self.installed = True
        except (NotImplementedError, RuntimeError):
            logger.debug("SIGINT handler not supported on this platform")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.installed:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)


# ---------------------------------------------------------------------------
# Turns and commands
# ---------------------------------------------------------------------------


async def run_turn(session, prompt, view=None):
    """Submit one prompt and render it as it streams. Returns the new messages."""
    produced = []
    with _CancelOnInterrupt(session.cancel):
        try:
            async for message in session.submit(prompt):
                produced.append(message)
                if view is not None:
                    view.update(session.messages + [m for m in produced if m.type == "progress"])
        finally:
            if view is not None:
                view.update(session.messages)
                view.finish()
    return produced


async def run_shell_command(session, shell, command):
    """`!command`: run directly in the shell and record it in the conversation."""
    controller = AbortController()
    with _CancelOnInterrupt(controller.abort):
        try:
            result = await shell.exec(command, controller.signal)
        except ShellError as e:
            print_error(str(e))
            return

    if result.stdout.strip():
        console.print(result.stdout.rstrip(), markup=False, highlight=False)
    if result.stderr.strip():
        console.print(result.stderr.rstrip(), style="error", markup=False, highlight=False)

    session.add_messages(
        [
            create_user_message(f"<bash-input>{command}</bash-input>"),
            create_user_message(
                f"<bash-stdout>{result.stdout.strip()}</bash-stdout>"
                f"<bash-stderr>{result.stderr.strip()}</bash-stderr>"
            ),
        ]
    )


def resume_transcript(session, path):
    """Continue a saved transcript in a new fork. Returns False if nothing was loaded."""
    path = Path(path).expanduser()
    if not path.is_file():
        print_error(f"Transcript not found: {path}")
        return False
    try:
        messages = load_transcript(path)
    except ValueError as e:
        print_error(f"Cannot resume {path}: {e}")
        return False
    if not messages:
        print_error(f"No messages to resume in {path}")
        return False

    session.fork(messages)
    print_success(
        f"Resumed {len(messages)} messages from {path}. Transcript: {session.transcript_path}"
    )
    return True


def handle_command(session, view, line):
    """Run a slash command. Returns False when the REPL should exit."""
    parts = line.split()
    name = parts[0].lower()

    if name in ("/exit", "/quit"):
        return False

    if name == "/clear":
        session.fork([])
        view.mark_printed(session.messages)
        print_success(f"Conversation cleared. Transcript: {session.transcript_path}")
    elif name == "/fork":
        try:
            keep = int(parts[1]) if len(parts) > 1 else len(session.messages)
        except ValueError:
            print_error("Usage: /fork N  (keep the first N messages)")
            return True
        keep = max(0, min(keep, len(session.messages)))
        session.fork(session.messages[:keep])
        view.mark_printed(session.messages)
        print_success(f"Forked at message {keep}. Transcript: {session.transcript_path}")
    elif name == "/resume":
        if len(parts) < 2:
            print_error("Usage: /resume FILE  (continue a saved transcript)")
            return True
        if resume_transcript(session, parts[1]):
            view.update(session.messages)
            view.finish()
    elif name == "/cost":
        print_cost(get_total_cost(), get_total_api_duration_ms())
    else:
        print_error(f"Unknown command: {name}")
    return True


async def run_interactive(session, shell, view, initial_prompt=None):
    if initial_prompt:
        await run_turn(session, initial_prompt, view)

    while True:
        try:
            line = console.input("[prompt]▶[/prompt] ").strip()
        except EOFError:
            break
        if not line:
            continue

        if line.startswith("/"):
            if not handle_command(session, view, line):
                break
        elif line.startswith("!"):
            await run_shell_command(session, shell, line[1:].strip())
        else:
            await run_turn(session, line, view)


async def run_print(session, prompt):
    """Single-shot mode: print the final assistant text. Returns an exit code."""
    produced = await run_turn(session, prompt)
    last = next((m for m in reversed(produced) if m.type == "assistant"), None)
    if last is None:
        return 1
    print(last.text)
    return 1 if last.is_api_error_message else 0


def build_session(config, shell, view_holder=None):
    """Wire the client, tools, permission gate and session together."""
    cwd = shell.cwd

    async def ask(tool, tool_input, prefix):
        if view_holder is not None:
            view_holder.finish()
        return await prompt_permission(tool, tool_input, prefix)

    gate = PermissionGate(
        project_store=ProjectConfigStore(cwd),
        prompt=ask if view_holder is not None else None,
        cwd_provider=shell.pwd,
    )
    return ConversationSession(
        model_client=create_client(config.provider, config.api_key, config.model),
        tools=get_default_tools(shell),
        permission_gate=gate,
        system_prompt=build_system_prompt(cwd),
        model=config.model,
        verbose=config.verbose,
        dangerously_skip_permissions=config.dangerously_skip_permissions,
        max_tool_concurrency=config.max_tool_concurrency,
        messages_dir=get_messages_dir(cwd),
    )


async def _run(args, config):
    shell = PersistentShell.get_instance(
        cwd=os.getcwd(), default_timeout_ms=config.shell_timeout_ms
    )
    try:
        if args.print_mode:
            if not args.prompt:
                print_error("--print needs a prompt")
                return 2
            session = build_session(config, shell)
            if args.resume and not resume_transcript(session, args.resume):
                return 1
            return await run_print(session, args.prompt)

        view = TranscriptView([], verbose=config.verbose)
        session = build_session(config, shell, view)
        view.tools_by_name = {tool.name: tool for tool in session.tools}
        print_welcome(config.provider, config.model, shell.cwd)
        if args.resume:
            if not resume_transcript(session, args.resume):
                return 1
            view.update(session.messages)
            view.finish()
        await run_interactive(session, shell, view, args.prompt)
        print_info(f"Transcript saved to {session.transcript_path}")
        return 0
    finally:
        PersistentShell.restart()


def main(argv=None):
    """Main entry point."""
    args = parse_arguments(argv)
    configure_logging(verbose=args.verbose)

    try:
        config = load_config(
            provider_override=args.provider,
            api_key_override=args.api_key,
            model_override=args.model,
            verbose=args.verbose,
            dangerously_skip_permissions=args.dangerously_skip_permissions,
        )
    except ConfigParseError as error:
        print_error(f"{error} ({error.file_path})")
        sys.exit(1)
    except ValueError as error:
        print_error(str(error))
        sys.exit(1)

    try:
        exit_code = asyncio.run(_run(args, config))
    except KeyboardInterrupt:
        print("\nGoodbye!")
        sys.exit(130)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
