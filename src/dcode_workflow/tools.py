from __future__ import annotations

import asyncio
import json
import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from langchain_core.tools import BaseTool, tool

logger = logging.getLogger(__name__)

_OUTPUT_LIMIT = 20_000


@dataclass(frozen=True)
class CommandResult:
    argv: list[str]
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def render(self) -> str:
        status = "timed out" if self.timed_out else f"exit code {self.exit_code}"
        lines = [f"$ {shlex.join(self.argv)}", f"[{status}]"]
        if self.stdout.strip():
            lines.extend(["stdout:", _clip(self.stdout)])
        if self.stderr.strip():
            lines.extend(["stderr:", _clip(self.stderr)])
        return "\n".join(lines)


def _clip(text: str) -> str:
    if len(text) <= _OUTPUT_LIMIT:
        return text.rstrip()
    return text[-_OUTPUT_LIMIT:].rstrip() + f"\n... [clipped to last {_OUTPUT_LIMIT} chars]"


async def run_command(argv: list[str], *, cwd: Path, timeout_seconds: int | None = None) -> CommandResult:
    """Run ``argv`` inside ``cwd`` without a shell.

    A non-zero exit or a timeout is reported in the result, not raised. Only a
    failure to start the process (missing binary, bad cwd) raises.

    Raises:
        FileNotFoundError: If the executable or ``cwd`` does not exist.
    """
    if not argv:
        raise ValueError("argv must be non-empty")
    logger.debug("run_command argv=%s cwd=%s", argv, cwd)
    proc = await asyncio.create_subprocess_exec(
        *argv,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        proc.kill()
        stdout, stderr = await proc.communicate()
        logger.warning("Command %s timed out after %ss", argv, timeout_seconds)
        return CommandResult(
            argv=list(argv),
            exit_code=-1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            timed_out=True,
        )
    return CommandResult(
        argv=list(argv),
        exit_code=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


def build_sandbox_command_tool(sandbox_root: Path, *, timeout_seconds: int = 600) -> BaseTool:
    """Build a LangChain tool that runs commands inside one sandbox.

    The tool is created per work order because each run has its own sandbox.
    """

    @tool("run_sandbox_command")
    def run_sandbox_command(command: str) -> str:
        """Run a command (for example a test suite) in the project sandbox and return its output.

        The command is split shell-style but executed without a shell, so pipes and
        redirections are not available.

        Args:
            command: The command line to run, e.g. ``pytest -q tests/test_api.py``.

        Returns:
            JSON string with ``exit_code``, ``timed_out`` and ``output``.
        """
        argv = shlex.split(command)
        if not argv:
            return json.dumps({"exit_code": -1, "timed_out": False, "output": "empty command"})
        try:
            completed = subprocess.run(
                argv,
                cwd=str(sandbox_root),
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            result = CommandResult(
                argv=argv,
                exit_code=-1,
                stdout=_as_text(exc.stdout),
                stderr=_as_text(exc.stderr),
                timed_out=True,
            )
        except FileNotFoundError as exc:
            return json.dumps({"exit_code": 127, "timed_out": False, "output": str(exc)})
        else:
            result = CommandResult(
                argv=argv,
                exit_code=completed.returncode,
                stdout=completed.stdout,
                stderr=completed.stderr,
            )
        logger.debug("run_sandbox_command %r -> %s", command, result.exit_code)
        return json.dumps(
            {"exit_code": result.exit_code, "timed_out": result.timed_out, "output": result.render()},
            indent=2,
        )

    return run_sandbox_command


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)
