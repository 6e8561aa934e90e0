"""
Publication pipeline — commit local changes and broadcast them.

    init (if needed) -> add -> nothing staged? stop
      -> commit "<HEAD or null revision> share"
      -> first publication: bundle of all history, broadcast as ``clone``
         otherwise:         format-patch of HEAD,  broadcast as ``patch``
      -> mark published

Every git step must succeed before anything is broadcast. The project is
marked published only once a relay has accepted the broadcast. The whole
sequence runs under the project's lock, shared with patch application.
"""

from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path

from patchnet import GIT_BINARY, NULL_REVISION
from patchnet.git import Git, RepoLocks
from patchnet.p2p.protocol import CloneEvent, PacketEvent, PatchEvent
from patchnet.projects import Project, ProjectRegistry

log = logging.getLogger(__name__)

PUBLISHED = "published"
NOTHING_TO_PUBLISH = "nothing-to-publish"


@dataclass(frozen=True)
class PublishResult:
    status: str
    event: str = ""
    event_id: str = ""
    revision: str = ""
    size: int = 0

    @property
    def published(self) -> bool:
        return self.status == PUBLISHED


class Publisher:
    """Runs the publication sequence for one project at a time.

    Usage:
        publisher = Publisher(registry, session, locks)
        result = await publisher.publish(project)
    """

    def __init__(
        self,
        registry: ProjectRegistry,
        session,
        locks: RepoLocks | None = None,
        git_binary: str = GIT_BINARY,
        env: dict[str, str] | None = None,
    ) -> None:
        self.registry = registry
        self.session = session
        self.locks = locks or RepoLocks()
        self.git_binary = git_binary
        self.env = dict(env or {})

    def _git(self, project: Project) -> Git:
        return Git(project.path, binary=self.git_binary, env=self.env)

    async def publish(self, project: Project) -> PublishResult:
        """Publish the project's pending changes. Raises GitError on failure."""
        async with self.locks.for_project(project.bundle_id):
            return await self._publish(project)

    async def _publish(self, project: Project) -> PublishResult:
        git = self._git(project)

        if not git.is_repo():
            await git.run("init")
            log.info("Initialised git repository in %s", project.path)

        await git.run("add", ".", "--ignore-errors")
        staged = await git.has_staged_changes()
        head = await git.rev_parse_head()

        if staged:
            message = f"{head or NULL_REVISION} share"
            await git.run("commit", "--quiet", "-m", message)
            head = await git.rev_parse_head()
        elif project.published or head is None:
            log.info("Nothing to publish for %s", project.bundle_id)
            return PublishResult(status=NOTHING_TO_PUBLISH, revision=head or "")

        if project.published:
            payload: PacketEvent = PatchEvent(await self._export_patch(git))
        else:
            payload = CloneEvent(await self._export_bundle(git))

        event_id = await self.session.broadcast(project, payload)

        if not project.published:
            self.registry.mark_published(project.bundle_id)
            project.published = True

        log.info(
            "Published %s %s for %s (%d bytes)",
            payload.name, (head or "")[:12], project.bundle_id, len(payload.data),
        )
        return PublishResult(
            status=PUBLISHED,
            event=payload.name,
            event_id=event_id,
            revision=head or "",
            size=len(payload.data),
        )

    async def _export_patch(self, git: Git) -> bytes:
        result = await git.run("format-patch", "-1", "HEAD", "--stdout")
        return result.stdout.encode("utf-8")

    async def _export_bundle(self, git: Git) -> bytes:
        with tempfile.TemporaryDirectory(prefix="patchnet-") as tmpdir:
            bundle = Path(tmpdir) / "repo.bundle"
            await git.run("bundle", "create", str(bundle), "--all")
            return bundle.read_bytes()
