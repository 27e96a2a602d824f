"""Step executor tests"""

import asyncio
import os
import time
from pathlib import Path

import pytest

from shipyard.core.exceptions import ExecutionError, TimeoutExceeded
from shipyard.executor.step import StepExecutor, StepOutput


def process_gone(pid: int) -> bool:
    """True once *pid* has exited (a zombie awaiting reaping counts as exited)"""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except FileNotFoundError:
        return True
    return stat.split(")")[-1].split()[0] == "Z"


async def wait_until_gone(pid: int, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if process_gone(pid):
            return True
        await asyncio.sleep(0.02)
    return process_gone(pid)


class TestStepOutput:
    def test_ok_and_tail(self):
        output = StepOutput(
            command="build",
            exit_code=0,
            stdout="\n".join(f"line {i}" for i in range(30)),
            stderr="warning",
            duration=1.5,
        )
        assert output.ok
        tail = output.tail(lines=3).splitlines()
        assert tail == ["line 28", "line 29", "warning"]

    def test_to_dict_rounds_duration(self):
        output = StepOutput("ls", 1, "", "boom", 0.123456)
        data = output.to_dict()
        assert data["exit_code"] == 1
        assert data["duration"] == 0.123
        assert data["stderr_tail"] == "boom"


class TestStepExecutor:
    def setup_method(self):
        self.executor = StepExecutor(default_timeout=10)

    @pytest.mark.asyncio
    async def test_shell_command_captures_stdout(self):
        output = await self.executor.execute("echo hello")
        assert output.ok
        assert output.stdout.strip() == "hello"
        assert output.duration >= 0

    @pytest.mark.asyncio
    async def test_argv_command(self):
        output = await self.executor.execute(["printf", "%s", "a b"])
        assert output.stdout == "a b"
        assert output.command == "printf %s 'a b'"

    @pytest.mark.asyncio
    async def test_env_is_passed(self):
        output = await self.executor.execute("echo $SHIPYARD_TEST_VALUE", env={"SHIPYARD_TEST_VALUE": "42"})
        assert output.stdout.strip() == "42"

    @pytest.mark.asyncio
    async def test_cwd(self, tmp_path):
        (tmp_path / "marker.txt").write_text("x")
        output = await self.executor.execute("ls", cwd=str(tmp_path))
        assert "marker.txt" in output.stdout

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises_execution_error(self):
        with pytest.raises(ExecutionError) as exc_info:
            await self.executor.execute("echo broken >&2; exit 3")
        assert exc_info.value.exit_code == 3
        assert "broken" in exc_info.value.stderr
        assert exc_info.value.to_dict()["kind"] == "ExecutionError"

    @pytest.mark.asyncio
    async def test_nonzero_exit_without_check(self):
        output = await self.executor.execute("exit 2", check=False)
        assert output.exit_code == 2
        assert not output.ok

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self):
        start = time.monotonic()
        with pytest.raises(TimeoutExceeded):
            await self.executor.execute("sleep 5", timeout=0.2)
        assert time.monotonic() - start < 3

    @pytest.mark.asyncio
    async def test_timeout_kills_compound_shell_command(self):
        start = time.monotonic()
        with pytest.raises(TimeoutExceeded):
            await self.executor.execute("sleep 0.01; sleep 4", timeout=0.3)
        assert time.monotonic() - start < 2

    @pytest.mark.asyncio
    async def test_timeout_kills_background_children(self, tmp_path):
        pidfile = tmp_path / "child.pid"
        with pytest.raises(TimeoutExceeded):
            await self.executor.execute(f"sleep 6 & echo $! > {pidfile}; wait", timeout=0.3)

        assert await wait_until_gone(int(pidfile.read_text()))

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        task = asyncio.create_task(self.executor.execute("sleep 5"))
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_cancellation_kills_shell_children(self, tmp_path):
        pidfile = tmp_path / "child.pid"
        task = asyncio.create_task(self.executor.execute(f"sleep 6 & echo $! > {pidfile}; wait"))
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await wait_until_gone(int(pidfile.read_text()))

    @pytest.mark.asyncio
    async def test_call_runs_blocking_function(self):
        result = await self.executor.call(lambda a, b: a + b, 2, 3)
        assert result == 5

    @pytest.mark.asyncio
    async def test_call_timeout(self):
        with pytest.raises(TimeoutExceeded) as exc_info:
            await self.executor.call(time.sleep, 1, timeout=0.05, description="slow api")
        assert "slow api" in exc_info.value.message
