"""Async git process runner.

Git is always started with an argument list (never through a shell), with
credential helpers disabled and terminal prompts turned off so a bad token
fails instead of hanging.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from collections import deque
from typing import Callable

from gitferry.config import Settings, get_settings
from gitferry.errors import IntegrationError
from gitferry.schemas import CommandResult
from gitferry.tools.sanitize import redact_token


logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]
StartCallback = Callable[[asyncio.subprocess.Process], None]

# git rewrites progress lines in place with \r
_LINE_SPLIT = re.compile(r"[\r\n]")


class GitRunner:
    """Runs git commands with a timeout and captures their output."""

    def __init__(
        self,
        executable: str = "git",
        command_timeout: float = 120.0,
        ssl_verify: bool = True,
        extra_env: dict[str, str] | None = None,
    ):
        self.executable = executable
        self.command_timeout = command_timeout
        self.ssl_verify = ssl_verify
        self.extra_env = extra_env or {}

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "GitRunner":
        settings = settings or get_settings()
        return cls(
            executable=settings.git_executable,
            command_timeout=settings.git_command_timeout_seconds,
            ssl_verify=settings.git_ssl_verify,
        )

    def _command(self, args: list[str]) -> list[str]:
        command = [self.executable, "-c", "credential.helper="]
        if not self.ssl_verify:
            command += ["-c", "http.sslVerify=false"]
        return command + list(args)

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        # Rejection detection matches git's English messages
        env["LC_ALL"] = "C"
        env.update(self.extra_env)
        return env

    @staticmethod
    def _redacted(args: list[str]) -> list[str]:
        return [redact_token(arg) for arg in args]

    async def _spawn(self, args: list[str], cwd: str | None) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *self._command(args),
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env(),
            )
        except (FileNotFoundError, NotADirectoryError) as e:
            raise IntegrationError(
                f"Could not start git in {cwd or os.getcwd()}: {e}",
                service="git",
            ) from e

    async def run(
        self,
        args: list[str],
        cwd: str | None = None,
        timeout: float | None = None,
        check: bool = False,
    ) -> CommandResult:
        """Run ``git <args>`` and wait for it.

        Args:
            args: Git arguments, without the executable
            cwd: Working directory
            timeout: Seconds before the process is killed (default: command timeout)
            check: Raise IntegrationError when the command does not succeed

        Returns:
            CommandResult with redacted args and decoded output
        """
        timeout = timeout or self.command_timeout
        start = time.perf_counter()
        process = await self._spawn(args, cwd)

        timed_out = False
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            process.kill()
            stdout, stderr = await process.communicate()

        result = CommandResult(
            args=self._redacted(args),
            exit_code=process.returncode,
            stdout=redact_token(stdout.decode("utf-8", errors="replace")),
            stderr=redact_token(stderr.decode("utf-8", errors="replace")),
            latency_ms=int((time.perf_counter() - start) * 1000),
            timed_out=timed_out,
        )
        logger.debug(f"git {' '.join(result.args)} -> {result.exit_code} ({result.latency_ms}ms)")

        if check and not result.ok:
            raise command_error(result)
        return result

    async def stream(
        self,
        args: list[str],
        cwd: str | None = None,
        on_line: LineCallback | None = None,
        on_start: StartCallback | None = None,
    ) -> CommandResult:
        """Run a long git command, passing each stderr line to ``on_line``.

        There is no timeout here; callers bound the process through
        ``on_start`` and terminate it themselves.
        """
        start = time.perf_counter()
        process = await self._spawn(args, cwd)
        if on_start is not None:
            on_start(process)

        # progress output can be long; keep the tail for error messages
        stderr_lines: deque[str] = deque(maxlen=200)

        async def read_stderr() -> None:
            assert process.stderr is not None
            buffer = ""
            while True:
                chunk = await process.stderr.read(1024)
                if not chunk:
                    break
                buffer += chunk.decode("utf-8", errors="replace")
                *lines, buffer = _LINE_SPLIT.split(buffer)
                for line in lines:
                    _emit(line)
            _emit(buffer)

        def _emit(line: str) -> None:
            line = redact_token(line.strip())
            if not line:
                return
            stderr_lines.append(line)
            if on_line is not None:
                on_line(line)

        assert process.stdout is not None
        stdout, _ = await asyncio.gather(process.stdout.read(), read_stderr())
        await process.wait()

        return CommandResult(
            args=self._redacted(args),
            exit_code=process.returncode,
            stdout=redact_token(stdout.decode("utf-8", errors="replace")),
            stderr="\n".join(stderr_lines),
            latency_ms=int((time.perf_counter() - start) * 1000),
        )


def command_error(result: CommandResult) -> IntegrationError:
    """Build the error for a failed git command."""
    action = result.args[0] if result.args else "command"
    if result.timed_out:
        message = f"git {action} timed out"
    else:
        message = f"git {action} failed: {result.output or f'exit code {result.exit_code}'}"
    return IntegrationError(message, service="git", raw=result.output)
