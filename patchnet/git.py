"""
Git subprocess wrapper — every version-control call goes through here.

Commands run with asyncio subprocesses scoped to the project directory.
stdout/stderr are treated as opaque text and carried on GitError so the
caller can show them to the user. A missing git binary is ToolUnavailable.

RepoLocks hands out one asyncio.Lock per project: publication and patch
application both mutate the working tree and must never interleave.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from patchnet import GIT_BINARY

log = logging.getLogger(__name__)


class GitError(Exception):
    """A git command failed."""

    def __init__(
        self,
        message: str,
        *,
        args: tuple[str, ...] = (),
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = args
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def output(self) -> str:
        return "\n".join(s for s in (self.stdout.strip(), self.stderr.strip()) if s)


class ToolUnavailable(GitError):
    """The git binary is not installed or not executable."""


@dataclass(frozen=True)
class GitResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return "\n".join(s for s in (self.stdout.strip(), self.stderr.strip()) if s)


def identity_env(name: str, email: str) -> dict[str, str]:
    """Environment that sets both author and committer identity."""
    env = {}
    if name:
        env["GIT_AUTHOR_NAME"] = name
        env["GIT_COMMITTER_NAME"] = name
    if email:
        env["GIT_AUTHOR_EMAIL"] = email
        env["GIT_COMMITTER_EMAIL"] = email
    return env


class Git:
    """Runs git in one working directory.

    Usage:
        git = Git("/path/to/project")
        if not git.is_repo():
            await git.run("init")
        result = await git.run("status", "--porcelain")
    """

    def __init__(
        self,
        cwd: str | Path,
        binary: str = GIT_BINARY,
        env: dict[str, str] | None = None,
    ) -> None:
        self.cwd = Path(cwd)
        self.binary = binary
        self._env = dict(env or {})

    def is_repo(self) -> bool:
        return (self.cwd / ".git").exists()

    def _build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self._env)
        # Stable, non-interactive output
        env["LC_ALL"] = "C"
        env["GIT_TERMINAL_PROMPT"] = "0"
        return env

    async def run(self, *args: str, check: bool = True) -> GitResult:
        """Run ``git <args>``. Raises GitError on non-zero exit when check=True."""
        if not self.cwd.is_dir():
            raise GitError(f"Project directory not found: {self.cwd}", args=args)

        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary, *args,
                cwd=str(self.cwd),
                env=self._build_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ToolUnavailable(
                f"{self.binary} is not installed and is required to use this program",
                args=args,
                stderr=str(e),
            ) from e

        out, err = await proc.communicate()
        result = GitResult(
            args=args,
            returncode=proc.returncode,
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
        )
        log.debug("git %s -> %d", " ".join(args), result.returncode)

        if check and not result.ok:
            raise GitError(
                f"git {' '.join(args)} failed with exit status {result.returncode}",
                args=args,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    async def rev_parse_head(self) -> str | None:
        """Current revision hash, or None for a repository with no commits."""
        result = await self.run("rev-parse", "--verify", "--quiet", "HEAD", check=False)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    async def status(self) -> str:
        result = await self.run("status", "--porcelain")
        return result.stdout

    async def has_staged_changes(self) -> bool:
        """True when the index differs from HEAD (or the empty tree before a first commit)."""
        result = await self.run("diff", "--cached", "--quiet", check=False)
        if result.returncode not in (0, 1):
            raise GitError(
                f"git diff --cached failed with exit status {result.returncode}",
                args=result.args,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result.returncode == 1


class RepoLocks:
    """One asyncio.Lock per project, created on first use."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def for_project(self, bundle_id: str) -> asyncio.Lock:
        lock = self._locks.get(bundle_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[bundle_id] = lock
        return lock

    def is_busy(self, bundle_id: str) -> bool:
        lock = self._locks.get(bundle_id)
        return lock is not None and lock.locked()
