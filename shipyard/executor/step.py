"""Step executor: runs one shell command or blocking API call with a timeout."""

import asyncio
import os
import shlex
import signal
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence, TypeVar, Union

from shipyard.core.exceptions import ExecutionError, TimeoutExceeded
from shipyard.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Command = Union[str, Sequence[str]]


@dataclass
class StepOutput:
    """Captured result of one external process."""
    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration: float

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def tail(self, lines: int = 20) -> str:
        """Last *lines* of combined output, used in failure reports."""
        combined = (self.stdout + ("\n" if self.stdout and self.stderr else "") + self.stderr).splitlines()
        return "\n".join(combined[-lines:])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
            "stdout_tail": "\n".join(self.stdout.splitlines()[-20:]),
            "stderr_tail": "\n".join(self.stderr.splitlines()[-20:]),
        }


class StepExecutor:
    """Execute external steps with captured output.

    No retries happen here; retry policy belongs to the stage.
    """

    def __init__(
        self,
        default_timeout: Optional[float] = None,
        cwd: Optional[str] = None,
        inherit_env: bool = True,
    ):
        self.default_timeout = default_timeout
        self.cwd = cwd
        self.inherit_env = inherit_env

    def _build_env(self, env: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
        if env is None and self.inherit_env:
            return None
        base = dict(os.environ) if self.inherit_env else {}
        base.update({k: str(v) for k, v in (env or {}).items()})
        return base

    async def execute(
        self,
        command: Command,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        check: bool = True,
    ) -> StepOutput:
        """Run *command* and wait for it to finish.

        A string runs through the shell; a sequence is executed directly.

        Raises:
            TimeoutExceeded: the process did not finish within *timeout* (it is killed)
            ExecutionError: non-zero exit status and *check* is set
        """
        timeout = timeout if timeout is not None else self.default_timeout
        display = command if isinstance(command, str) else shlex.join(command)
        workdir = cwd or self.cwd
        proc_env = self._build_env(env)

        logger.debug(f"Executing: {display} (timeout={timeout}, cwd={workdir})")
        start = time.monotonic()

        if isinstance(command, str):
            proc = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=proc_env,
                cwd=workdir,
                start_new_session=True,
            )
        else:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=proc_env,
                cwd=workdir,
                start_new_session=True,
            )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(proc)
            raise TimeoutExceeded(f"Command '{display}'", timeout)
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        output = StepOutput(
            command=display,
            exit_code=proc.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration=time.monotonic() - start,
        )
        logger.info(f"Command finished with exit code {output.exit_code} in {output.duration:.2f}s: {display}")

        if check and not output.ok:
            raise ExecutionError(display, output.exit_code, output.tail())
        return output

    async def call(
        self,
        func: Callable[..., T],
        *args,
        timeout: Optional[float] = None,
        description: Optional[str] = None,
        **kwargs,
    ) -> T:
        """Run a blocking SDK call in a worker thread under the same timeout contract."""
        timeout = timeout if timeout is not None else self.default_timeout
        what = description or getattr(func, "__name__", "call")
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=timeout)
        except asyncio.TimeoutError:
            raise TimeoutExceeded(f"API call '{what}'", timeout)

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        """Kill the whole process group, so a shell's children die with it."""
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        if proc.returncode is None:
            await proc.wait()
