"""
External MySQL client tool invocation.

mysqldump, mysql and mysqlbinlog are run as opaque subprocesses with
argument vectors (never through a shell). File redirection is done by
passing open file objects as stdin/stdout. The password is handed over
through the MYSQL_PWD environment variable so it never appears in the
process list or in logged command lines.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

logger = logging.getLogger(__name__)

# mysqldump and mysql use exit code 2 for warnings that still produce output
WARNING_EXIT_CODE = 2


class BackupError(Exception):
    """A full backup or restore step failed."""

    pass


class DumpCommandError(BackupError):
    """An external client tool exited unsuccessfully.

    Attributes:
        command: Executable name
        target: Database (or "all databases") the command worked on
        exit_code: Process exit code, None if it could not be started
        output: Captured stderr/stdout text
    """

    def __init__(
        self, command: str, target: str, exit_code: int | None, output: str = ""
    ) -> None:
        self.command = command
        self.target = target
        self.exit_code = exit_code
        self.output = output
        super().__init__(
            f"{command} failed for {target} (exit code {exit_code}): {output.strip()[:500]}"
        )


@dataclass
class CommandResult:
    """Outcome of one external command."""

    exit_code: int
    stdout: bytes = b""
    stderr: bytes = b""
    argv: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def warning(self) -> bool:
        return self.exit_code == WARNING_EXIT_CODE

    @property
    def output(self) -> str:
        return (self.stderr + self.stdout).decode("utf-8", errors="replace")


CommandRunner = Callable[..., Awaitable[CommandResult]]


async def run_command(
    argv: Sequence[str],
    env: dict[str, str] | None = None,
    stdin_path: str | Path | None = None,
    stdout_path: str | Path | None = None,
) -> CommandResult:
    """Run an external command and collect its exit code and output.

    Args:
        argv: Executable and arguments
        env: Extra environment variables (merged over the current environment)
        stdin_path: File fed to the command's stdin
        stdout_path: File the command's stdout is written to; stdout is
            captured in memory when omitted

    Raises:
        DumpCommandError: If the executable cannot be started
    """
    full_env = {**os.environ, **(env or {})}
    stdin = open(stdin_path, "rb") if stdin_path is not None else asyncio.subprocess.DEVNULL
    stdout = open(stdout_path, "wb") if stdout_path is not None else asyncio.subprocess.PIPE

    try:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                env=full_env,
                stdin=stdin,
                stdout=stdout,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise DumpCommandError(argv[0], "-", None, f"{argv[0]} command not found") from None

        out, err = await process.communicate()
    finally:
        for handle in (stdin, stdout):
            if hasattr(handle, "close"):
                handle.close()

    return CommandResult(
        exit_code=process.returncode,
        stdout=out or b"",
        stderr=err or b"",
        argv=list(argv),
    )


def connection_args(mysql_config: Any) -> list[str]:
    """Host, port and user arguments shared by mysql and mysqldump."""
    return [
        f"--host={mysql_config.host}",
        f"--port={mysql_config.port}",
        f"--user={mysql_config.user}",
    ]


def password_env(mysql_config: Any) -> dict[str, str]:
    return {"MYSQL_PWD": mysql_config.password} if mysql_config.password else {}


def check_result(result: CommandResult, command: str, target: str, action: str) -> None:
    """Log a command outcome and raise on failure.

    Exit code 2 is reported as a warning and treated as success.

    Raises:
        DumpCommandError: On any other non-zero exit code
    """
    if result.ok:
        return

    if result.warning:
        logger.warning(
            f"{target} {action} completed with warning",
            extra={"command": command, "exit_code": result.exit_code, "output": result.output},
        )
        return

    logger.error(
        f"{target} {action} failed",
        extra={"command": command, "exit_code": result.exit_code, "output": result.output},
    )
    raise DumpCommandError(command, target, result.exit_code, result.output)
