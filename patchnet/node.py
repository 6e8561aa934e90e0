"""
patchnet node — foreground process that joins every project's subcluster
and ingests patches as they arrive.

Start with: ``patchnet node start``
"""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Any

from patchnet import (
    DEFAULT_CLUSTER_LABEL,
    GIT_BINARY,
    P2P_DEDUP_WINDOW,
    P2P_DEFAULT_RELAYS,
    P2P_QUEUE_SIZE,
)
from patchnet.apply import ApplyEngine
from patchnet.git import RepoLocks, identity_env
from patchnet.identity import ensure_identity, get_user
from patchnet.ingest import IngestionPipeline
from patchnet.p2p.session import Session
from patchnet.patch import Patch
from patchnet.projects import Project, ProjectRegistry
from patchnet.publish import Publisher
from patchnet.store import KVStore
from patchnet.trust import TrustEngine

log = logging.getLogger(__name__)

CONFIG_PATH = Path.home() / ".patchnet" / "config.toml"

# Default config
DEFAULT_CONFIG: dict[str, Any] = {
    "relays": P2P_DEFAULT_RELAYS,
    "cluster_label": DEFAULT_CLUSTER_LABEL,
    "store_root": "",  # empty = ~/.patchnet/store
    "queue_size": P2P_QUEUE_SIZE,
    "dedup_window": P2P_DEDUP_WINDOW,
    "git_binary": GIT_BINARY,
    "user_name": "",
    "user_email": "",
}


def _load_config(config_path: Path | None = None) -> dict[str, Any]:
    """Load node config from a TOML file, falling back to defaults."""
    config = dict(DEFAULT_CONFIG)

    path = config_path or CONFIG_PATH
    if path.is_file():
        try:
            import tomllib
        except ImportError:
            import tomli as tomllib

        try:
            with open(path, "rb") as f:
                file_config = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            log.warning("Failed to load config from %s: %s", path, e)
            return config

        unknown = set(file_config) - set(DEFAULT_CONFIG)
        if unknown:
            log.warning("Ignoring unknown config keys: %s", ", ".join(sorted(unknown)))
        config.update({k: v for k, v in file_config.items() if k in DEFAULT_CONFIG})

    return config


def git_env(store: KVStore, config: dict[str, Any]) -> dict[str, str]:
    """Author identity for git: saved user first, then config."""
    user = get_user(store)
    return identity_env(
        user.get("name") or config["user_name"],
        user.get("email") or config["user_email"],
    )


class PatchNode:
    """Application root: owns the store, the session, and every pipeline.

    Usage:
        node = PatchNode()
        await node.start()  # runs until SIGINT/SIGTERM
    """

    def __init__(
        self,
        store: KVStore | None = None,
        relays: list[str] | None = None,
        config_path: Path | None = None,
        session: Session | None = None,
    ) -> None:
        self._config = _load_config(config_path)
        self.store = store or KVStore(self._config["store_root"] or None)
        self.relays = relays or list(self._config["relays"])

        self.identity = ensure_identity(self.store)
        self.session = session or Session(
            self.identity,
            relays=self.relays,
            queue_size=int(self._config["queue_size"]),
            dedup_window=float(self._config["dedup_window"]),
        )

        self.locks = RepoLocks()
        env = self.git_env()
        self.registry = ProjectRegistry(self.store)
        self.trust = TrustEngine(self.store)
        self.applier = ApplyEngine(self.locks, self._config["git_binary"], env)
        self.ingest = IngestionPipeline(
            self.store, self.locks, on_clone=self.applier.clone_bundle
        )
        self.publisher = Publisher(
            self.registry, self.session, self.locks, self._config["git_binary"], env
        )

        self._consumers: dict[str, asyncio.Task] = {}
        self._shutdown_event = asyncio.Event()

    def git_env(self) -> dict[str, str]:
        return git_env(self.store, self._config)

    async def start(self) -> None:
        """Connect, join every project, and ingest until shutdown."""
        log.info("Starting patchnet node %s", self.identity.pubkey[:12])

        loop = asyncio.get_running_loop()
        for sig_name in ("SIGINT", "SIGTERM"):
            sig = getattr(signal, sig_name, None)
            if sig:
                try:
                    loop.add_signal_handler(sig, self._signal_shutdown)
                except NotImplementedError:
                    # Not available on Windows event loops
                    pass

        connected = await self.session.connect()
        projects = self.registry.list()
        for project in projects:
            await self.watch(project)

        print("patchnet node started")
        print(f"  pubkey:   {self.identity.pubkey}")
        print(f"  projects: {len(projects)}")
        print(f"  relays:   {connected}/{len(self.relays)}")
        print()

        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def watch(self, project: Project) -> None:
        """Join a project's subcluster and start its consumer. Idempotent."""
        if project.bundle_id in self._consumers:
            return
        channel = await self.session.join(project)
        self._consumers[project.bundle_id] = asyncio.create_task(
            self.ingest.consume(project, channel, on_patch=self._announce_patch)
        )

    def _announce_patch(self, patch: Patch) -> None:
        classification = self.trust.classify(patch)
        print(
            f"New patch {patch.patch_id[:12]} from {patch.headers.author or '?'} "
            f"[{classification.value}]: {patch.headers.subject}"
        )

    async def stop(self) -> None:
        """Stop consumers, then close the session."""
        log.info("Shutting down patchnet node...")

        tasks = list(self._consumers.items())
        for _bundle_id, task in tasks:
            task.cancel()
        results = await asyncio.gather(*(t for _b, t in tasks), return_exceptions=True)
        for (bundle_id, _task), result in zip(tasks, results):
            if isinstance(result, Exception):
                log.error("Consumer for %s failed: %s", bundle_id, result)
        self._consumers.clear()

        await self.session.close()
        log.info("patchnet node stopped")
        print("\npatchnet node stopped.")

    def _signal_shutdown(self) -> None:
        log.info("Received shutdown signal")
        self._shutdown_event.set()


def run_node(
    relays: list[str] | None = None,
    config_path: Path | None = None,
    store_root: str | None = None,
    verbose: bool = False,
) -> None:
    """Entry point for ``patchnet node start``. Runs the node in foreground."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    async def _main() -> None:
        store = KVStore(store_root) if store_root else None
        node = PatchNode(store=store, relays=relays, config_path=config_path)
        await node.start()

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        print("\nShutting down...")
