"""Subprocess-based executor for shell command lines."""

from __future__ import annotations

import asyncio
import os
import time

from agentcore.terminal.result import ShellResult


class SubprocessTerminalExecutor:
    """Execute shell command lines using asyncio subprocess.

    The command runs through the platform shell, so pipes and redirects work.
    Cancelling the awaiting task kills the process.
    """

    def __init__(self, default_cwd: str = ".") -> None:
        """Initialize the subprocess executor.

        Args:
            default_cwd: Default working directory for commands.
        """
        self._default_cwd = default_cwd

    async def execute(
        self,
        command: str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = 120.0,
    ) -> ShellResult:
        """Run ``command`` and capture merged stdout/stderr.

        Args:
            command: Shell command line.
            cwd: Working directory. Uses default_cwd if None.
            env: Additional environment variables.
            timeout: Timeout in seconds. None for no timeout.
        """
        start_time = time.perf_counter()

        process_env = os.environ.copy()
        if env:
            process_env.update(env)

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,  # Merge stderr into stdout
                cwd=cwd or self._default_cwd,
                env=process_env,
            )
        except OSError as e:
            return ShellResult(
                command=command,
                exit_code=1,
                output=f"OS error: {e}",
                status="error",
                duration_ms=(time.perf_counter() - start_time) * 1000,
            )

        try:
            if timeout is not None:
                stdout_data, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
            else:
                stdout_data, _ = await process.communicate()
        except asyncio.TimeoutError:
            await self._kill(process)
            return ShellResult(
                command=command,
                exit_code=None,
                output=f"Command timed out after {timeout}s",
                status="timeout",
                duration_ms=(time.perf_counter() - start_time) * 1000,
            )
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        exit_code = process.returncode
        return ShellResult(
            command=command,
            exit_code=exit_code,
            output=stdout_data.decode("utf-8", errors="replace"),
            status="ok" if exit_code == 0 else "error",
            duration_ms=(time.perf_counter() - start_time) * 1000,
        )

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        try:
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass  # Process already gone
