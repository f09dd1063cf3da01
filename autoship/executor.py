"""Infrastructure executor.

The single seam through which autoship shells out to git, ssh and docker.
Deployment, troubleshooting, rollback and worktree code all receive an
``InfrastructureExecutor`` so they can be exercised against a fake in tests.
"""

from __future__ import annotations

import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from autoship.errors import ExecutorError
from autoship.utils import run_command

SSH_OPTS: list[str] = ["-o", "StrictHostKeyChecking=accept-new", "-o", "BatchMode=yes"]

_LOOPBACK_HOSTS = {"", "localhost", "127.0.0.1"}
_LOCAL_HOSTS = _LOOPBACK_HOSTS | {"host.docker.internal"}


def is_loopback_host(host: str | None) -> bool:
    """Commands for this host run in-process rather than over ssh."""
    return (host or "") in _LOOPBACK_HOSTS


def is_local_host(host: str | None) -> bool:
    """The host shares a filesystem with this process (directly or via a mount)."""
    return (host or "") in _LOCAL_HOSTS


@dataclass
class CommandResult:
    """Outcome of one executed command."""

    command: str
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return self.stdout or self.stderr

    def check(self) -> "CommandResult":
        """Return self, or raise ``ExecutorError`` if the command failed."""
        if not self.ok:
            raise ExecutorError(
                f"Command failed (exit {self.returncode}): {self.command}\n{self.stderr}",
                command=self.command,
                returncode=self.returncode,
                stderr=self.stderr,
            )
        return self

    def summary(self) -> str:
        status = "[green]OK[/green]" if self.ok else f"[red]EXIT {self.returncode}[/red]"
        return f"{status} {self.command}"


class InfrastructureExecutor(ABC):
    """Runs shell commands locally or on a remote host."""

    @abstractmethod
    async def run_local(
        self, command: str, cwd: str | Path | None = None, timeout: float = 120.0
    ) -> CommandResult:
        ...

    @abstractmethod
    async def run_remote(
        self,
        host: str,
        user: str,
        command: str,
        cwd: str | None = None,
        timeout: float = 600.0,
    ) -> CommandResult:
        ...

    async def run_on(
        self,
        host: str,
        user: str,
        command: str,
        cwd: str | None = None,
        timeout: float = 600.0,
    ) -> CommandResult:
        """Run locally for loopback hosts, otherwise over ssh."""
        if is_loopback_host(host):
            return await self.run_local(command, cwd=cwd, timeout=timeout)
        return await self.run_remote(host, user, command, cwd=cwd, timeout=timeout)

    async def git(self, *args: str, cwd: str | Path | None = None, timeout: float = 60.0) -> CommandResult:
        return await self.run_local(shlex.join(["git", *args]), cwd=cwd, timeout=timeout)

    async def path_exists(self, host: str, user: str, path: str, kind: str = "e") -> bool:
        """``test -<kind> path`` on the host (``d`` for directories, ``f`` for files)."""
        result = await self.run_on(host, user, f"test -{kind} {shlex.quote(path)}", timeout=30.0)
        return result.ok

    async def read_text(self, host: str, user: str, path: str) -> str | None:
        """Return a file's contents from the host, or ``None`` if it cannot be read."""
        result = await self.run_on(host, user, f"cat {shlex.quote(path)}", timeout=30.0)
        return result.stdout if result.ok else None


class ShellExecutor(InfrastructureExecutor):
    """Executes commands with asyncio subprocesses and the system ssh client."""

    async def run_local(
        self, command: str, cwd: str | Path | None = None, timeout: float = 120.0
    ) -> CommandResult:
        rc, stdout, stderr = await run_command(command, cwd=cwd, timeout=timeout)
        return CommandResult(command=command, returncode=rc, stdout=stdout, stderr=stderr)

    async def run_remote(
        self,
        host: str,
        user: str,
        command: str,
        cwd: str | None = None,
        timeout: float = 600.0,
    ) -> CommandResult:
        remote = f"cd {shlex.quote(cwd)} && {command}" if cwd else command
        target = f"{user}@{host}" if user else host
        argv = ["ssh", *SSH_OPTS, target, remote]
        rc, stdout, stderr = await run_command(argv, timeout=timeout)
        return CommandResult(command=remote, returncode=rc, stdout=stdout, stderr=stderr)
