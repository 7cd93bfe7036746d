# Loopsmith - Agent Turn Runtime
# Copyright (c) 2024-2026 Matthew Bright
# Licensed under the MIT License. See LICENSE file for details.

"""Persistent shell session.

Loopsmith Principle: Explicit Over Implicit
One login shell lives for the whole program. Shells have no request/response
framing, so each command's output, exit code and final working directory
come back through scratch files. The status file is written last, so once it
is non-empty everything else is valid to read.

Commands go through a FIFO queue with a single worker; callers never
interleave writes to the scratch files.
"""

import asyncio
import logging
import os
import shlex
import signal
import tempfile
import time
import uuid
from dataclasses import dataclass
from pathlib import Path

from .errors import ShellError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30 * 60 * 1000
SIGTERM_CODE = 143
SYNTAX_ERROR_CODE = 128
SYNTAX_CHECK_TIMEOUT = 1.0
POLL_INTERVAL = 0.01
# How long to wait for the shell to report after its children were killed
KILL_GRACE_SECONDS = 2.0
TIMEOUT_MESSAGE = "Command execution timed out"

SHELL_CONFIGS = {
    "/bin/bash": ".bashrc",
    "/bin/zsh": ".zshrc",
}


@dataclass(frozen=True)
class ExecResult:
    stdout: str
    stderr: str
    code: int
    interrupted: bool


@dataclass
class _QueuedCommand:
    command: str
    abort: object
    timeout_ms: int | None
    future: asyncio.Future


async def list_child_pids(parent_pid: int) -> list[int]:
    """Direct children of a process, via pgrep or, failing that, ps."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "pgrep",
            "-P",
            str(parent_pid),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        out, _ = await proc.communicate()
        # pgrep exits 1 when nothing matched
        return [int(pid) for pid in out.decode().split() if pid.isdigit()]
    except FileNotFoundError:
        pass

    proc = await asyncio.create_subprocess_exec(
        "ps",
        "-eo",
        "pid=,ppid=",
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    out, _ = await proc.communicate()
    children = []
    for line in out.decode().splitlines():
        parts = line.split()
        if len(parts) != 2:
            continue
        try:
            pid, ppid = int(parts[0]), int(parts[1])
        except ValueError:
            continue
        if ppid == parent_pid:
            children.append(pid)
    return children


class PersistentShell:
    """A long-lived shell that runs commands one at a time.

    The process is spawned on first use. Use `get_instance()` only at the
    composition root; everything else should receive a session explicitly.
    """

    _instance = None

    def __init__(self, cwd=None, shell=None, default_timeout_ms=DEFAULT_TIMEOUT_MS):
        self.cwd = str(Path(cwd or os.getcwd()).resolve())
        self.bin_shell = shell or os.environ.get("SHELL") or "/bin/bash"
        self.default_timeout_ms = default_timeout_ms

        scratch_id = uuid.uuid4().hex[:8]
        prefix = Path(tempfile.gettempdir()) / f"loopsmith-{scratch_id}"
        self.status_file = Path(f"{prefix}-status")
        self.stdout_file = Path(f"{prefix}-stdout")
        self.stderr_file = Path(f"{prefix}-stderr")
        self.cwd_file = Path(f"{prefix}-cwd")

        self._process = None
        self._queue = None
        self._worker = None
        self._watcher = None
        self._interrupt = None
        self._started = False
        self._closed = False
        self.is_alive = True

    # ------------------------------------------------------------------
    # Composition-root singleton
    # ------------------------------------------------------------------

    @classmethod
    def get_instance(cls, cwd=None, **kwargs):
        """Return the shared session, creating a new one after `restart()`."""
        if cls._instance is None or cls._instance._closed:
            cls._instance = cls(cwd or os.getcwd(), **kwargs)
        return cls._instance

    @classmethod
    def restart(cls):
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Spawn the shell and the queue worker. Idempotent."""
        if self._started:
            return
        self._started = True
        self._queue = asyncio.Queue()
        self._interrupt = asyncio.Event()

        for path in (self.status_file, self.stdout_file, self.stderr_file):
            path.write_text("")
        self.cwd_file.write_text(self.cwd)

        await self._spawn()
        self._worker = asyncio.create_task(self._process_queue())

    async def _spawn(self):
        env = dict(os.environ)
        env["GIT_EDITOR"] = "true"
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.bin_shell,
                "-l",
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                cwd=self.cwd,
                env=env,
            )
        except OSError as e:
            self.is_alive = False
            raise ShellError(f"Could not start shell {self.bin_shell}: {e}") from e

        self.is_alive = True
        self._watcher = asyncio.create_task(self._watch(self._process))
        logger.debug(f"Started shell {self.bin_shell} (pid {self._process.pid}) in {self.cwd}")

        config_file = SHELL_CONFIGS.get(self.bin_shell)
        if config_file:
            config_path = Path.home() / config_file
            if config_path.exists():
                await self._send_to_shell(f"source {shlex.quote(str(config_path))}")

    async def _watch(self, process):
        code = await process.wait()
        if process is not self._process:
            return
        if code:
            logger.error(f"Shell exited with code {code}")
        self.is_alive = False
        self._remove_scratch_files()

    def _remove_scratch_files(self):
        for path in (self.status_file, self.stdout_file, self.stderr_file, self.cwd_file):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.debug(f"Could not remove {path}: {e}")

    def close(self):
        """Stop the shell and the worker. Queued commands fail with ShellError."""
        if self._closed:
            return
        self._closed = True
        self.is_alive = False
        if self._process is not None and self._process.returncode is None:
            if self._process.stdin is not None:
                self._process.stdin.close()
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
        if self._worker is not None:
            self._worker.cancel()
        if self._queue is not None:
            while not self._queue.empty():
                item = self._queue.get_nowait()
                if not item.future.done():
                    item.future.set_exception(ShellError("Shell session was closed"))
        self._remove_scratch_files()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def exec(self, command, abort=None, timeout_ms=None) -> ExecResult:
        """Queue a command and wait for its result.

        Args:
            command: Shell command line, evaluated in the persistent shell
            abort: Optional AbortSignal; firing it kills the command's children
            timeout_ms: Per-command timeout (default 30 minutes)

        A shell that has exited is restarted before the command runs, in the
        last known working directory.

        Raises:
            ShellError: If the session was closed or a new shell cannot start
        """
        if self._closed:
            raise ShellError("Shell session was closed")
        await self.start()

        future = asyncio.get_running_loop().create_future()
        await self._queue.put(_QueuedCommand(command, abort, timeout_ms, future))
        return await future

    def pwd(self) -> str:
        """The shell's working directory after the last command."""
        try:
            new_cwd = self.cwd_file.read_text().strip()
            if new_cwd:
                self.cwd = new_cwd
        except OSError as e:
            logger.debug(f"Shell pwd error: {e}")
        return self.cwd

    async def set_cwd(self, path):
        resolved = Path(path)
        if not resolved.is_absolute():
            resolved = Path(self.pwd()) / resolved
        resolved = resolved.resolve()
        if not resolved.exists():
            raise ShellError(f'Path "{resolved}" does not exist')
        await self.exec(f"cd {shlex.quote(str(resolved))}")

    async def kill_children(self):
        """SIGTERM the shell's direct children. The shell itself is left alone."""
        if self._process is None or self._process.returncode is not None:
            return
        child_pids = await list_child_pids(self._process.pid)
        if child_pids:
            logger.info(f"Interrupting {len(child_pids)} shell child process(es)")
        for pid in child_pids:
            try:
                os.kill(pid, signal.SIGTERM)
            except ProcessLookupError:
                pass
            except OSError as e:
                logger.error(f"Failed to kill process {pid}: {e}")

    # ------------------------------------------------------------------
    # Queue worker
    # ------------------------------------------------------------------

    async def _process_queue(self):
        while True:
            item = await self._queue.get()
            if item.future.done():
                continue

            abort_signal = item.abort
            listener = self._interrupt.set
            if abort_signal is not None:
                abort_signal.add_listener(listener)
            try:
                if abort_signal is not None and abort_signal.aborted:
                    result = ExecResult("", "", SIGTERM_CODE, True)
                else:
                    if not self.is_alive or self._process.returncode is not None:
                        await self._respawn("Shell has exited, starting a new one")
                    result = await self._exec_now(item.command, item.timeout_ms)
                if not item.future.done():
                    item.future.set_result(result)
            except asyncio.CancelledError:
                if not item.future.done():
                    item.future.set_exception(ShellError("Shell session was closed"))
                raise
            except Exception as e:
                logger.error(f"Shell command failed: {e}")
                if not item.future.done():
                    item.future.set_exception(e)
            finally:
                if abort_signal is not None:
                    abort_signal.remove_listener(listener)
                self._interrupt.clear()

    async def _check_syntax(self, command):
        """Run `shell -n -c`. Returns stderr text on failure, None when valid."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self.bin_shell,
                "-n",
                "-c",
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return str(e)
        try:
            _, err = await asyncio.wait_for(proc.communicate(), timeout=SYNTAX_CHECK_TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return "Syntax check timed out"
        if proc.returncode != 0:
            return err.decode(errors="replace")
        return None

    async def _exec_now(self, command, timeout_ms):
        syntax_error = await self._check_syntax(command)
        if syntax_error is not None:
            logger.info(f"Shell syntax error: {syntax_error.strip()[:200]}")
            return ExecResult("", syntax_error, SYNTAX_ERROR_CODE, False)

        timeout = (timeout_ms or self.default_timeout_ms) / 1000

        for path in (self.stdout_file, self.stderr_file, self.status_file):
            path.write_text("")

        quoted = shlex.quote(command)
        wrapper = "\n".join(
            [
                f"eval {quoted} < /dev/null > {shlex.quote(str(self.stdout_file))} "
                f"2> {shlex.quote(str(self.stderr_file))}",
                "EXEC_EXIT_CODE=$?",
                f"pwd > {shlex.quote(str(self.cwd_file))}",
                f"echo $EXEC_EXIT_CODE > {shlex.quote(str(self.status_file))}",
            ]
        )
        await self._send_to_shell(wrapper)

        start = time.monotonic()
        timed_out = False
        while not self._status_written():
            if self._interrupt.is_set():
                break
            if time.monotonic() - start > timeout:
                timed_out = True
                break
            if not self.is_alive:
                return self._exited_result(command)
            await asyncio.sleep(POLL_INTERVAL)

        interrupted = self._interrupt.is_set() or timed_out
        if interrupted:
            await self.kill_children()
            await self._wait_for_status()

        stdout = self._read(self.stdout_file)
        stderr = self._read(self.stderr_file)

        if timed_out:
            code = SIGTERM_CODE
            stderr += ("\n" if stderr else "") + TIMEOUT_MESSAGE
            logger.warning(f"Shell command timed out after {timeout:.0f}s: {command[:80]}")
        elif self._status_written():
            code = self._read_status()
        else:
            code = SIGTERM_CODE

        if interrupted:
            logger.info(f"Shell command interrupted: {command[:80]}")
            if not self._status_written():
                await self._respawn("Shell did not recover after interrupt, restarting it")

        self.pwd()
        return ExecResult(stdout, stderr, code, interrupted)

    async def _wait_for_status(self):
        deadline = time.monotonic() + KILL_GRACE_SECONDS
        while not self._status_written() and time.monotonic() < deadline:
            await asyncio.sleep(POLL_INTERVAL)

    def _exited_result(self, command) -> ExecResult:
        code = self._process.returncode if self._process is not None else None
        code = 1 if code is None else code
        logger.warning(f"Shell exited with code {code} while running: {command[:80]}")
        return ExecResult(
            "",
            f"Shell exited with code {code}. The next command starts a new shell session.",
            code,
            False,
        )

    async def _respawn(self, reason):
        """Replace the shell process, keeping the working directory."""
        logger.warning(reason)
        self.pwd()
        old = self._process
        if old is not None and old.returncode is None:
            # a killed shell would orphan whatever it started after the first kill
            await self.kill_children()
            try:
                old.kill()
            except ProcessLookupError:
                pass
        await self._spawn()
        logger.warning(
            f"Shell session restarted in {self.cwd}; exported variables and functions were reset"
        )
        if old is not None:
            await old.wait()
        for path in (self.status_file, self.stdout_file, self.stderr_file):
            path.write_text("")
        self.cwd_file.write_text(self.cwd)

    def _status_written(self) -> bool:
        try:
            return self.status_file.stat().st_size > 0
        except OSError:
            return False

    def _read_status(self) -> int:
        text = self._read(self.status_file).strip()
        try:
            return int(text)
        except ValueError:
            logger.error(f"Unreadable shell status: {text!r}")
            return 1

    @staticmethod
    def _read(path) -> str:
        try:
            return path.read_text(errors="replace")
        except OSError:
            return ""

    async def _send_to_shell(self, text):
        process = self._process
        if process is None or process.stdin is None or process.returncode is not None:
            raise ShellError("Shell is not running")
        try:
            process.stdin.write((text + "\n").encode())
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.error(f"Error writing to shell: {e}")
            self.is_alive = False
            raise ShellError(f"Error writing to shell: {e}") from e
