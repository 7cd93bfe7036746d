"""Tests for the persistent shell session. These run a real bash."""

import asyncio
import shutil

import pytest
import pytest_asyncio

from loopsmith.abort import AbortController
from loopsmith.errors import ShellError
from loopsmith.persistent_shell import (
    SIGTERM_CODE,
    SYNTAX_ERROR_CODE,
    TIMEOUT_MESSAGE,
    PersistentShell,
)

BASH = shutil.which("bash")

pytestmark = pytest.mark.skipif(BASH is None, reason="bash is not available")


@pytest_asyncio.fixture
async def shell(tmp_path):
    session = PersistentShell(cwd=tmp_path, shell=BASH)
    yield session
    session.close()
    await asyncio.sleep(0.05)


class TestExec:
    """One command at a time, state kept between commands."""

    @pytest.mark.asyncio
    async def test_echo(self, shell):
        result = await shell.exec("echo hello")
        assert result.stdout == "hello\n"
        assert result.code == 0
        assert result.interrupted is False

    @pytest.mark.asyncio
    async def test_stderr_is_separate(self, shell):
        result = await shell.exec("echo oops >&2")
        assert result.stdout == ""
        assert result.stderr == "oops\n"

    @pytest.mark.asyncio
    async def test_environment_persists(self, shell):
        await shell.exec("export LOOPSMITH_TEST_VAR=42")
        result = await shell.exec("echo $LOOPSMITH_TEST_VAR")
        assert result.stdout.strip() == "42"

    @pytest.mark.asyncio
    async def test_cd_and_failing_command_in_one_call(self, shell, tmp_path):
        """The exit code and the new cwd both come from the same command."""
        (tmp_path / "sub").mkdir()
        result = await shell.exec("cd sub && false")
        assert result.code == 1
        assert shell.pwd() == str((tmp_path / "sub").resolve())

    @pytest.mark.asyncio
    async def test_commands_run_in_submission_order(self, shell, tmp_path):
        log = tmp_path / "order.log"
        results = await asyncio.gather(
            *(shell.exec(f"sleep 0.0{i % 3}; echo {i} >> {log}; echo {i}") for i in range(5))
        )
        assert [r.stdout.strip() for r in results] == ["0", "1", "2", "3", "4"]
        assert log.read_text().split() == ["0", "1", "2", "3", "4"]


class TestFailures:
    @pytest.mark.asyncio
    async def test_syntax_error_is_not_executed(self, shell, tmp_path):
        marker = tmp_path / "ran"
        result = await shell.exec(f"touch {marker}; echo 'unterminated")
        assert result.code == SYNTAX_ERROR_CODE
        assert result.interrupted is False
        assert result.stderr
        assert not marker.exists()

    @pytest.mark.asyncio
    async def test_timeout(self, shell):
        result = await shell.exec("sleep 5", timeout_ms=300)
        assert result.code == SIGTERM_CODE
        assert result.interrupted is True
        assert TIMEOUT_MESSAGE in result.stderr

    @pytest.mark.asyncio
    async def test_shell_usable_after_timeout(self, shell):
        await shell.exec("sleep 5", timeout_ms=300)
        result = await shell.exec("echo still here")
        assert result.stdout.strip() == "still here"

    @pytest.mark.asyncio
    async def test_closed_session_raises(self, shell):
        await shell.exec("true")
        shell.close()
        with pytest.raises(ShellError):
            await shell.exec("echo no")

    @pytest.mark.asyncio
    async def test_exit_ends_only_that_command(self, shell, tmp_path):
        (tmp_path / "work").mkdir()
        await shell.exec("cd work")

        result = await shell.exec("exit 3")
        assert result.code == 3
        assert result.interrupted is False
        assert "new shell session" in result.stderr

        after = await shell.exec("echo back; pwd")
        assert after.code == 0
        assert after.stdout.split() == ["back", str((tmp_path / "work").resolve())]
        assert shell.is_alive is True

    @pytest.mark.asyncio
    async def test_killed_shell_is_replaced(self, shell):
        await shell.exec("true")
        shell._process.kill()
        await shell._process.wait()

        result = await shell.exec("echo fresh")
        assert result.stdout == "fresh\n"
        assert result.code == 0

    @pytest.mark.asyncio
    async def test_set_cwd_to_missing_path_raises(self, shell, tmp_path):
        with pytest.raises(ShellError):
            await shell.set_cwd(tmp_path / "nope")


class TestInterrupt:
    """Cancel a long command, then keep using the same session."""

    @pytest.mark.asyncio
    async def test_abort_kills_long_sleep_and_session_survives(self, shell, tmp_path):
        (tmp_path / "work").mkdir()
        await shell.exec("cd work && export KEPT=yes")

        controller = AbortController()
        asyncio.get_running_loop().call_later(0.3, controller.abort)
        loop = asyncio.get_running_loop()
        start = loop.time()
        result = await shell.exec("sleep 30", controller.signal)

        assert result.interrupted is True
        assert loop.time() - start < 10

        after = await shell.exec("echo $KEPT; pwd")
        assert after.stdout.split() == ["yes", str((tmp_path / "work").resolve())]
        assert after.code == 0

    @pytest.mark.asyncio
    async def test_already_aborted_command_does_not_run(self, shell, tmp_path):
        controller = AbortController()
        controller.abort()
        marker = tmp_path / "ran"
        result = await shell.exec(f"touch {marker}", controller.signal)
        assert result.code == SIGTERM_CODE
        assert result.interrupted is True
        assert not marker.exists()

    @pytest.mark.asyncio
    async def test_set_cwd(self, shell, tmp_path):
        (tmp_path / "other").mkdir()
        await shell.set_cwd(tmp_path / "other")
        assert shell.pwd() == str((tmp_path / "other").resolve())

    @pytest.mark.asyncio
    async def test_unrecovered_shell_is_replaced_without_orphans(
        self, shell, tmp_path, monkeypatch
    ):
        await shell.exec("export GONE=yes")
        kill_calls = []
        kill_children = shell.kill_children

        async def counting_kill_children():
            kill_calls.append(1)
            await kill_children()

        monkeypatch.setattr(shell, "kill_children", counting_kill_children)

        controller = AbortController()
        asyncio.get_running_loop().call_later(0.3, controller.abort)
        result = await shell.exec("sleep 30; sleep 30", controller.signal)

        assert result.interrupted is True
        assert result.code == SIGTERM_CODE
        assert len(kill_calls) == 2

        after = await shell.exec("echo ${GONE:-reset}; pwd")
        assert after.stdout.split() == ["reset", str(tmp_path.resolve())]
