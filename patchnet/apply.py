"""
Patch application engine — apply stored patches with ``git am``.

    scratch file <- patch src        (named from the patch id)
    git am <scratch>
      failure -> git am --abort (best effort) -> ApplyConflict
    scratch file removed on every exit path

Received ``clone`` bundles are materialised here too, into a project
directory that has no repository yet. Both run under the project's lock,
shared with publication.
"""

from __future__ import annotations

import logging
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

from patchnet import GIT_BINARY
from patchnet.git import Git, GitError, RepoLocks
from patchnet.patch import Patch
from patchnet.projects import Project

log = logging.getLogger(__name__)

SCRATCH_PREFIX = ".patchnet-"

_PATCH_FAILED_RE = re.compile(r"^error: patch failed: (?P<path>.+?)(?::\d+)?$", re.M)
_DOES_NOT_APPLY_RE = re.compile(r"^error: (?P<path>.+?): patch does not apply$", re.M)


class ApplyConflict(GitError):
    """``git am`` rejected the patch; the working tree has been restored."""

    @property
    def paths(self) -> list[str]:
        """Files git reported as failing, in report order."""
        found: list[str] = []
        for regex in (_PATCH_FAILED_RE, _DOES_NOT_APPLY_RE):
            for match in regex.finditer(self.output):
                path = match.group("path")
                if path not in found:
                    found.append(path)
        return found


@dataclass(frozen=True)
class ApplyResult:
    patch_id: str
    output: str
    revision: str = ""


def scratch_name(patch: Patch) -> str:
    ident = patch.patch_id or patch.headers.parent
    if not ident:
        raise ValueError("Patch has neither an id nor a parent revision")
    return f"{SCRATCH_PREFIX}{ident[:16]}.patch"


class ApplyEngine:
    """Apply patches and clone bundles into project directories.

    Usage:
        engine = ApplyEngine(locks)
        result = await engine.apply(project, patch)
    """

    def __init__(
        self,
        locks: RepoLocks | None = None,
        git_binary: str = GIT_BINARY,
        env: dict[str, str] | None = None,
    ) -> None:
        self.locks = locks or RepoLocks()
        self.git_binary = git_binary
        self.env = dict(env or {})

    def _git(self, path: str | Path) -> Git:
        return Git(path, binary=self.git_binary, env=self.env)

    async def apply(self, project: Project, patch: Patch) -> ApplyResult:
        """Apply one patch. Raises ApplyConflict if it does not apply."""
        async with self.locks.for_project(project.bundle_id):
            return await self._apply(project, patch)

    async def _apply(self, project: Project, patch: Patch) -> ApplyResult:
        if not Path(project.path).is_dir():
            raise GitError(f"Project directory not found: {project.path}")
        git = self._git(project.path)
        scratch = Path(project.path) / scratch_name(patch)
        try:
            scratch.write_text(patch.src, encoding="utf-8")
            result = await git.run("am", str(scratch), check=False)
            if not result.ok:
                await self._abort(git)
                log.error(
                    "Patch %s does not apply to %s", patch.patch_id[:12], project.bundle_id
                )
                raise ApplyConflict(
                    f"Patch {patch.patch_id[:12]} does not apply to {project.bundle_id}",
                    args=result.args,
                    returncode=result.returncode,
                    stdout=result.stdout,
                    stderr=result.stderr,
                )
        finally:
            scratch.unlink(missing_ok=True)

        revision = await git.rev_parse_head() or ""
        log.info(
            "Applied patch %s to %s (now at %s)",
            patch.patch_id[:12], project.bundle_id, revision[:12],
        )
        return ApplyResult(patch_id=patch.patch_id, output=result.output, revision=revision)

    async def _abort(self, git: Git) -> None:
        try:
            result = await git.run("am", "--abort", check=False)
        except GitError as e:
            log.warning("git am --abort could not run: %s", e)
            return
        if not result.ok:
            log.warning("git am --abort failed: %s", result.output)

    async def clone_bundle(self, project: Project, data: bytes) -> ApplyResult | None:
        """Materialise a received bundle into the project directory.

        Returns None, without touching anything, when the directory already
        holds a repository or other files.
        """
        async with self.locks.for_project(project.bundle_id):
            target = Path(project.path)
            if (target / ".git").exists():
                log.info("%s already has a repository, clone skipped", project.bundle_id)
                return None
            if target.exists() and any(target.iterdir()):
                log.warning(
                    "%s is not empty, clone of %s skipped", target, project.bundle_id
                )
                return None

            target.mkdir(parents=True, exist_ok=True)
            git = self._git(target)
            with tempfile.TemporaryDirectory(prefix="patchnet-") as tmpdir:
                bundle = Path(tmpdir) / "repo.bundle"
                bundle.write_bytes(data)
                result = await git.run("clone", "--quiet", str(bundle), ".")

            revision = await git.rev_parse_head() or ""
            log.info("Cloned %s into %s at %s", project.bundle_id, target, revision[:12])
            return ApplyResult(patch_id="", output=result.output, revision=revision)

    async def status(self, project: Project) -> str:
        """``git status --porcelain`` of the project."""
        return await self._git(project.path).status()
