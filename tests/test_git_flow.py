"""
End-to-end tests against a real git binary — publication (clone then
patch), bundle cloning on the subscriber, ingestion, application, and
conflict recovery.

The network is replaced by a recording session; everything else is real.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path

import pytest

from patchnet import P2P_ROOT_INDEX
from patchnet.apply import SCRATCH_PREFIX, ApplyConflict, ApplyEngine
from patchnet.git import Git, GitError, RepoLocks, ToolUnavailable, identity_env
from patchnet.ingest import IngestionPipeline, PatchInbox
from patchnet.p2p.protocol import CloneEvent, Packet, PatchEvent
from patchnet.p2p.session import BroadcastFailed
from patchnet.projects import ProjectRegistry
from patchnet.publish import NOTHING_TO_PUBLISH, PUBLISHED, Publisher
from patchnet.store import KVStore

requires_git = pytest.mark.skipif(
    shutil.which("git") is None, reason="git is not installed"
)

AUTHOR_KEY = b"\x42" * 32


class RecordingSession:
    """Captures broadcasts instead of sending them."""

    def __init__(self, fail: bool = False) -> None:
        self.sent = []
        self.fail = fail

    async def broadcast(self, project, payload):
        if self.fail:
            raise BroadcastFailed("no relay")
        self.sent.append((project.bundle_id, payload))
        return f"{len(self.sent):064x}"


@pytest.fixture
def env():
    env = identity_env("Ada Lovelace", "ada@example.com")
    # Isolate from the developer's git config (signing, hooks, templates)
    env["GIT_CONFIG_GLOBAL"] = os.devnull
    env["GIT_CONFIG_NOSYSTEM"] = "1"
    return env


@pytest.fixture
def session():
    return RecordingSession()


@pytest.fixture
def author(tmp_path):
    registry = ProjectRegistry(KVStore(tmp_path / "author-store"))
    path = tmp_path / "author"
    path.mkdir()
    (path / "README.md").write_text("hello\n")
    return registry, registry.create(path, bundle_id="com.example.app")


@pytest.fixture
def subscriber_store(tmp_path):
    return KVStore(tmp_path / "sub-store")


def packet_for(project, payload, packet_id="e1" * 32):
    return Packet(
        packet_id=packet_id,
        subcluster_id=project.subcluster_hex,
        index=P2P_ROOT_INDEX,
        verified=True,
        public_key=AUTHOR_KEY,
        payload=payload,
    )


def scratch_files(path):
    return [p.name for p in Path(path).iterdir() if p.name.startswith(SCRATCH_PREFIX)]


# ---------------------------------------------------------------------------
# TestPublish
# ---------------------------------------------------------------------------

@requires_git
class TestPublish:

    @pytest.mark.asyncio
    async def test_first_publish_sends_clone(self, author, session, env):
        registry, project = author
        result = await Publisher(registry, session, env=env).publish(project)

        assert result.status == PUBLISHED
        assert result.event == "clone"
        assert len(result.revision) == 40
        ((bundle_id, payload),) = session.sent
        assert bundle_id == project.bundle_id
        assert isinstance(payload, CloneEvent)
        assert payload.data.startswith(b"# v2 git bundle") or payload.data.startswith(b"# v3 git bundle")
        assert registry.get(project.bundle_id).published is True

    @pytest.mark.asyncio
    async def test_commit_message_names_parent(self, author, session, env):
        registry, project = author
        publisher = Publisher(registry, session, env=env)
        first = await publisher.publish(project)
        (Path(project.path) / "README.md").write_text("hello\nworld\n")
        await publisher.publish(project)

        log = await Git(project.path, env=env).run("log", "--format=%s")
        assert log.stdout.split("\n")[:2] == [f"{first.revision} share", f"{'0' * 40} share"]

    @pytest.mark.asyncio
    async def test_later_publish_sends_patch(self, author, session, env):
        registry, project = author
        publisher = Publisher(registry, session, env=env)
        first = await publisher.publish(project)
        (Path(project.path) / "README.md").write_text("hello\nworld\n")

        result = await publisher.publish(project)

        assert result.event == "patch"
        payload = session.sent[-1][1]
        assert isinstance(payload, PatchEvent)
        text = payload.data.decode()
        assert f"{first.revision} share" in text
        assert "+world" in text

    @pytest.mark.asyncio
    async def test_nothing_to_publish(self, author, session, env):
        registry, project = author
        publisher = Publisher(registry, session, env=env)
        await publisher.publish(project)

        result = await publisher.publish(project)

        assert result.status == NOTHING_TO_PUBLISH
        assert not result.published
        assert len(session.sent) == 1

    @pytest.mark.asyncio
    async def test_unstageable_change_is_nothing_to_publish(self, author, session, env):
        registry, project = author
        vendor = Path(project.path) / "vendor"
        vendor.mkdir()
        (vendor / "lib.txt").write_text("v1\n")
        inner = Git(vendor, env=env)
        await inner.run("init", "--quiet")
        await inner.run("add", ".")
        await inner.run("commit", "--quiet", "-m", "vendor")

        publisher = Publisher(registry, session, env=env)
        await publisher.publish(project)
        # Dirty content inside an embedded repository shows in status but never stages
        (vendor / "lib.txt").write_text("v2\n")
        assert (await Git(project.path, env=env).status()).strip()

        result = await publisher.publish(project)

        assert result.status == NOTHING_TO_PUBLISH
        assert len(session.sent) == 1

    @pytest.mark.asyncio
    async def test_empty_directory(self, tmp_path, session, env):
        registry = ProjectRegistry(KVStore(tmp_path / "store"))
        path = tmp_path / "empty"
        path.mkdir()
        project = registry.create(path, bundle_id="empty")

        result = await Publisher(registry, session, env=env).publish(project)

        assert result.status == NOTHING_TO_PUBLISH
        assert (path / ".git").is_dir()
        assert session.sent == []

    @pytest.mark.asyncio
    async def test_failed_broadcast_retries_clone(self, author, env):
        registry, project = author
        with pytest.raises(BroadcastFailed):
            await Publisher(registry, RecordingSession(fail=True), env=env).publish(project)
        assert registry.get(project.bundle_id).published is False

        session = RecordingSession()
        result = await Publisher(registry, session, env=env).publish(project)
        assert result.event == "clone"

    @pytest.mark.asyncio
    async def test_missing_directory(self, tmp_path, session, env):
        registry = ProjectRegistry(KVStore(tmp_path / "store"))
        project = registry.create(tmp_path / "gone", bundle_id="gone")
        with pytest.raises(GitError):
            await Publisher(registry, session, env=env).publish(project)
        assert session.sent == []


# ---------------------------------------------------------------------------
# TestShareAndApply
# ---------------------------------------------------------------------------

@requires_git
class TestShareAndApply:

    @pytest.mark.asyncio
    async def test_clone_patch_apply(self, author, session, subscriber_store, tmp_path, env):
        registry, project = author
        publisher = Publisher(registry, session, env=env)
        first = await publisher.publish(project)

        sub_project = ProjectRegistry(subscriber_store).subscribe(project.link, tmp_path / "sub")
        engine = ApplyEngine(env=env)
        ingest = IngestionPipeline(subscriber_store, on_clone=engine.clone_bundle)

        clone = session.sent[0][1]
        await ingest.accept(sub_project, packet_for(sub_project, clone, packet_id="c" * 64))
        assert (tmp_path / "sub" / "README.md").read_text() == "hello\n"
        assert await Git(tmp_path / "sub", env=env).rev_parse_head() == first.revision

        (Path(project.path) / "README.md").write_text("hello\nworld\n")
        await publisher.publish(project)
        stored = await ingest.accept(sub_project, packet_for(sub_project, session.sent[-1][1]))

        assert stored.headers.parent == first.revision
        assert stored.headers.author == "Ada Lovelace <ada@example.com>"
        assert stored.files == ["README.md"]
        assert PatchInbox(subscriber_store).count(sub_project.bundle_id) == 1

        result = await engine.apply(sub_project, stored)

        assert (tmp_path / "sub" / "README.md").read_text() == "hello\nworld\n"
        assert result.revision and result.revision != first.revision
        assert scratch_files(tmp_path / "sub") == []
        assert await engine.status(sub_project) == ""

    @pytest.mark.asyncio
    async def test_conflict_restores_tree(self, author, session, subscriber_store, tmp_path, env):
        registry, project = author
        publisher = Publisher(registry, session, env=env)
        await publisher.publish(project)
        (Path(project.path) / "README.md").write_text("hello\nworld\n")
        await publisher.publish(project)

        sub_project = ProjectRegistry(subscriber_store).subscribe(project.link, tmp_path / "sub")
        engine = ApplyEngine(env=env)
        await engine.clone_bundle(sub_project, session.sent[0][1].data)
        patch = await IngestionPipeline(subscriber_store).accept(
            sub_project, packet_for(sub_project, session.sent[1][1])
        )
        await engine.apply(sub_project, patch)
        head = await Git(sub_project.path, env=env).rev_parse_head()

        with pytest.raises(ApplyConflict) as exc_info:
            await engine.apply(sub_project, patch)

        assert "README.md" in exc_info.value.paths
        assert exc_info.value.returncode != 0
        assert await engine.status(sub_project) == ""
        assert await Git(sub_project.path, env=env).rev_parse_head() == head
        assert scratch_files(sub_project.path) == []
        assert not (Path(sub_project.path) / ".git" / "rebase-apply").exists()

    @pytest.mark.asyncio
    async def test_clone_skipped_for_existing_repo(self, author, session, env):
        registry, project = author
        await Publisher(registry, session, env=env).publish(project)
        engine = ApplyEngine(env=env)
        assert await engine.clone_bundle(project, session.sent[0][1].data) is None

    @pytest.mark.asyncio
    async def test_clone_skipped_for_non_empty_dir(self, author, session, tmp_path, env):
        registry, project = author
        await Publisher(registry, session, env=env).publish(project)

        target = tmp_path / "busy"
        target.mkdir()
        (target / "notes.txt").write_text("mine\n")
        other = ProjectRegistry(KVStore(tmp_path / "s2")).subscribe(project.link, target)

        assert await ApplyEngine(env=env).clone_bundle(other, session.sent[0][1].data) is None
        assert not (target / ".git").exists()

    @pytest.mark.asyncio
    async def test_apply_to_missing_directory(self, author, sample_patch_src, tmp_path, env):
        from patchnet.patch import parse_patch

        registry, project = author
        other = ProjectRegistry(KVStore(tmp_path / "s3")).subscribe(project.link, tmp_path / "nope")
        with pytest.raises(GitError):
            await ApplyEngine(env=env).apply(other, parse_patch(sample_patch_src))


# ---------------------------------------------------------------------------
# TestGitWrapper
# ---------------------------------------------------------------------------

class TestGitWrapper:

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path):
        git = Git(tmp_path, binary="patchnet-no-such-git")
        with pytest.raises(ToolUnavailable):
            await git.run("status")

    @pytest.mark.asyncio
    async def test_missing_cwd(self, tmp_path):
        with pytest.raises(GitError):
            await Git(tmp_path / "nope").run("status")

    @requires_git
    @pytest.mark.asyncio
    async def test_failure_carries_output(self, tmp_path, env):
        git = Git(tmp_path, env=env)
        with pytest.raises(GitError) as exc_info:
            await git.run("rev-parse", "HEAD")
        assert exc_info.value.returncode != 0
        assert exc_info.value.command == ("rev-parse", "HEAD")
        assert exc_info.value.output

    @requires_git
    @pytest.mark.asyncio
    async def test_unchecked_failure(self, tmp_path, env):
        result = await Git(tmp_path, env=env).run("rev-parse", "HEAD", check=False)
        assert not result.ok

    @requires_git
    @pytest.mark.asyncio
    async def test_no_head(self, tmp_path, env):
        git = Git(tmp_path, env=env)
        await git.run("init")
        assert git.is_repo()
        assert await git.rev_parse_head() is None

    @requires_git
    @pytest.mark.asyncio
    async def test_has_staged_changes(self, tmp_path, env):
        git = Git(tmp_path, env=env)
        await git.run("init", "--quiet")
        assert await git.has_staged_changes() is False

        (tmp_path / "a.txt").write_text("a\n")
        assert await git.has_staged_changes() is False
        await git.run("add", ".")
        assert await git.has_staged_changes() is True

        await git.run("commit", "--quiet", "-m", "a")
        assert await git.has_staged_changes() is False

    def test_identity_env(self):
        env = identity_env("Ada", "")
        assert env == {"GIT_AUTHOR_NAME": "Ada", "GIT_COMMITTER_NAME": "Ada"}


class TestRepoLocks:

    @pytest.mark.asyncio
    async def test_one_lock_per_project(self):
        locks = RepoLocks()
        assert locks.for_project("a") is locks.for_project("a")
        assert locks.for_project("a") is not locks.for_project("b")

    @pytest.mark.asyncio
    async def test_is_busy(self):
        locks = RepoLocks()
        assert not locks.is_busy("a")
        async with locks.for_project("a"):
            assert locks.is_busy("a")
            assert not locks.is_busy("b")
        assert not locks.is_busy("a")
