"""
Ingestion pipeline — turn inbound packets into stored patches.

Per packet:
    unverified            -> rejected (logged, dropped)
    index != root         -> ignored  (relayed copy)
    clone                 -> handed to on_clone, never stored as a patch
    patch/tag, duplicate  -> ignored
    patch/tag, novel      -> parsed, author key embedded, stored

Patches live in the ``patches`` namespace under ``bundleId \\xff patchId``
so one project's patches form a contiguous key range. Storage is
at-most-once: the insert is an atomic put-if-absent, made under the
project's lock.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from patchnet import KEY_SEPARATOR, NS_PATCHES
from patchnet.git import GitError, RepoLocks
from patchnet.p2p.protocol import CloneEvent, Packet, PatchEvent, TagEvent
from patchnet.patch import MalformedPatch, Patch, parse_patch
from patchnet.store import KVStore, NotFound, StorageError, prefix_range

if TYPE_CHECKING:
    from patchnet.projects import Project

log = logging.getLogger(__name__)

CloneHandler = Callable[["Project", bytes], Any]


def patch_key(bundle_id: str, patch_id: str) -> str:
    return f"{bundle_id}{KEY_SEPARATOR}{patch_id}"


class PatchInbox:
    """Read side of the ``patches`` namespace, scoped per project."""

    def __init__(self, store: KVStore) -> None:
        self._patches = store.namespace(NS_PATCHES)

    def list(self, bundle_id: str) -> list[Patch]:
        return [
            Patch.from_dict(v)
            for _k, v in self._patches.read_range(**prefix_range(bundle_id))
        ]

    def count(self, bundle_id: str) -> int:
        return sum(1 for _ in self._patches.read_range(**prefix_range(bundle_id)))

    def has(self, bundle_id: str, patch_id: str) -> bool:
        return self._patches.has(patch_key(bundle_id, patch_id))

    def get(self, bundle_id: str, patch_id: str) -> Patch:
        """Raises NotFound if the patch is not stored."""
        return Patch.from_dict(self._patches.get(patch_key(bundle_id, patch_id)))

    def resolve(self, bundle_id: str, prefix: str) -> Patch:
        """Look a patch up by a unique id prefix.

        Raises NotFound when nothing matches and ValueError when the prefix
        is ambiguous.
        """
        if not prefix:
            raise NotFound(prefix)
        start = patch_key(bundle_id, prefix)
        bounds = prefix_range(bundle_id)
        matches = [
            v for k, v in self._patches.read_range(gte=start, lt=bounds["lt"], limit=2)
            if k.startswith(start)
        ]
        if not matches:
            raise NotFound(prefix)
        if len(matches) > 1:
            raise ValueError(f"Patch id prefix {prefix!r} is ambiguous")
        return Patch.from_dict(matches[0])

    def discard(self, bundle_id: str, patch_id: str) -> bool:
        """Remove a stored patch. Returns False if it was not stored."""
        key = patch_key(bundle_id, patch_id)
        if not self._patches.has(key):
            return False
        self._patches.delete(key)
        log.info("Discarded patch %s from %s", patch_id[:12], bundle_id)
        return True


class IngestionPipeline:
    """Accept inbound packets for joined projects.

    Usage:
        pipeline = IngestionPipeline(store, locks, on_clone=engine.clone_bundle)
        task = asyncio.create_task(pipeline.consume(project, channel))
    """

    def __init__(
        self,
        store: KVStore,
        locks: RepoLocks | None = None,
        on_clone: CloneHandler | None = None,
    ) -> None:
        self._patches = store.namespace(NS_PATCHES)
        self.locks = locks or RepoLocks()
        self.on_clone = on_clone

    async def accept(self, project: Project, packet: Packet) -> Patch | None:
        """Process one packet. Returns the stored patch, or None.

        Network-level rejects are logged and return None. Storage errors
        propagate.
        """
        if not packet.verified:
            log.debug("Rejected unverified packet %.12s", packet.packet_id)
            return None

        if not packet.is_root:
            log.debug(
                "Ignored relayed packet %.12s (index %s)", packet.packet_id, packet.index
            )
            return None

        if packet.subcluster_id != project.subcluster_hex:
            log.debug(
                "Ignored packet %.12s for another subcluster", packet.packet_id
            )
            return None

        payload = packet.payload
        if isinstance(payload, CloneEvent):
            await self._handle_clone(project, packet, payload)
            return None
        if isinstance(payload, (PatchEvent, TagEvent)):
            return await self._store_patch(project, packet, payload.data)

        log.debug("Ignored packet %.12s with no payload", packet.packet_id)
        return None

    async def _handle_clone(self, project: Project, packet: Packet, payload: CloneEvent) -> None:
        if self.on_clone is None:
            log.debug("No clone handler, ignored %.12s", packet.packet_id)
            return
        log.info(
            "Received clone %.12s for %s (%d bytes)",
            packet.packet_id, project.bundle_id, len(payload.data),
        )
        result = self.on_clone(project, payload.data)
        if inspect.isawaitable(result):
            await result

    async def _store_patch(self, project: Project, packet: Packet, data: bytes) -> Patch | None:
        try:
            patch = parse_patch(data)
        except MalformedPatch as e:
            log.warning(
                "Malformed %s in packet %.12s for %s: %s",
                packet.event_name, packet.packet_id, project.bundle_id, e,
            )
            return None

        patch = patch.with_public_key(packet.public_key)
        key = patch_key(project.bundle_id, patch.patch_id)
        record = patch.to_dict()
        record["received_at"] = datetime.now(timezone.utc).isoformat()
        record["packet_id"] = packet.packet_id

        async with self.locks.for_project(project.bundle_id):
            if not self._patches.put_if_absent(key, record):
                log.debug("Ignored duplicate patch %s", patch.patch_id[:12])
                return None

        log.info(
            "Stored patch %s for %s from %s",
            patch.patch_id[:12], project.bundle_id, packet.public_key.hex()[:12],
        )
        return patch

    async def consume(
        self,
        project: Project,
        channel: asyncio.Queue,
        on_patch: Callable[[Patch], Awaitable[None] | None] | None = None,
    ) -> None:
        """Drain a topic channel in arrival order until cancelled.

        A packet that fails is logged and dropped; the loop keeps going.
        """
        while True:
            packet = await channel.get()
            try:
                patch = await self.accept(project, packet)
                if patch is not None and on_patch is not None:
                    result = on_patch(patch)
                    if inspect.isawaitable(result):
                        await result
            except StorageError as e:
                log.error(
                    "Failed to store packet %.12s for %s: %s",
                    packet.packet_id, project.bundle_id, e,
                )
            except GitError as e:
                log.error("Failed to materialise clone for %s: %s", project.bundle_id, e)
            except Exception:
                log.exception(
                    "Failed to handle %s packet %.12s for %s",
                    packet.event_name, packet.packet_id, project.bundle_id,
                )
            finally:
                channel.task_done()
