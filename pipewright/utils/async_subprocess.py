"""Async subprocess utilities.

Provides non-blocking subprocess execution for use in async contexts. Git
operations during workspace provisioning and external agent processes both
go through :func:`run_command`.

Key Features:
    - Non-blocking execution compatible with asyncio
    - Configurable timeout with automatic process cleanup
    - Optional stdin payload (used to hand JSON to agent processes)
    - Optional check mode that raises on non-zero exit codes

Example:
    >>> from pipewright.utils.async_subprocess import run_command
    >>> stdout, stderr, code = await run_command("git", "status", cwd="/repo")
    >>> if code == 0:
    ...     print(stdout)
"""

import asyncio
import subprocess
from collections.abc import Mapping
from pathlib import Path


async def run_command(
    *args: str,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
    input_data: str | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[str, str, int]:
    """Run a command asynchronously without shell interpolation.

    Args:
        *args: Command and arguments as separate strings.
        cwd: Working directory for command execution.
        check: If True (default), raise CalledProcessError when the command
            returns a non-zero exit code.
        timeout: Maximum seconds to wait for command completion. If exceeded,
            the process is killed and TimeoutError is raised.
        input_data: Text written to the process's stdin before it is closed.
        env: Full environment for the child process. None inherits ours.

    Returns:
        Tuple of (stdout, stderr, return_code) where stdout and stderr are
        decoded UTF-8 strings (with replacement for invalid bytes).

    Raises:
        subprocess.CalledProcessError: If check=True and command returns
            non-zero.
        TimeoutError: If timeout is exceeded. The process is killed
            before this exception is raised.
        FileNotFoundError: If the command executable is not found.
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        stdin=asyncio.subprocess.PIPE if input_data is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=dict(env) if env is not None else None,
    )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(input_data.encode("utf-8") if input_data is not None else None),
            timeout=timeout,
        )
    except (TimeoutError, asyncio.CancelledError):
        process.kill()
        await process.wait()
        raise

    stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
    stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")

    if check and process.returncode != 0:
        raise subprocess.CalledProcessError(
            process.returncode,
            args,
            stdout,
            stderr,
        )

    return stdout, stderr, process.returncode or 0
