"""
Project registry — locally managed repositories scoped for sharing.

A project is keyed by its bundle id in the ``projects`` namespace. Its
topic material is re-derived from the shared secret on load and checked
against the stored copy, so a corrupted record is caught early.
"""

from __future__ import annotations

import configparser
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from patchnet import DEFAULT_CLUSTER_LABEL, NS_PATCHES, NS_PROJECTS
from patchnet.identity import (
    LinkInvalid,
    create_shared_secret,
    derive_cluster_id,
    derive_project_topic,
    format_link,
    parse_link,
)
from patchnet.store import KVStore, StorageError, prefix_range

log = logging.getLogger(__name__)

# Project config file and the key holding the bundle id
PROJECT_CONFIG_FILE = "socket.ini"
_BUNDLE_SECTION = "meta"
_BUNDLE_KEY = "bundle_identifier"

_BUNDLE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,254}$")


class ProjectError(Exception):
    """Invalid project operation."""


def validate_bundle_id(bundle_id: str) -> None:
    if not isinstance(bundle_id, str) or not _BUNDLE_ID_RE.match(bundle_id):
        raise ProjectError(f"Invalid bundle id: {bundle_id!r}")


def read_bundle_id(path: str | Path) -> str:
    """Read the bundle id from the project's config file.

    Returns "" when the file or key is missing.
    """
    config_path = Path(path) / PROJECT_CONFIG_FILE
    if not config_path.is_file():
        return ""
    parser = configparser.ConfigParser(interpolation=None, strict=False)
    try:
        parser.read(config_path, encoding="utf-8")
    except (configparser.Error, OSError) as e:
        log.warning("Cannot read %s: %s", config_path, e)
        return ""
    return parser.get(_BUNDLE_SECTION, _BUNDLE_KEY, fallback="").strip()


@dataclass
class Project:
    """One locally managed repository scoped for sharing."""

    bundle_id: str
    path: str
    shared_secret: str
    cluster_label: str = DEFAULT_CLUSTER_LABEL
    cluster_id: bytes = b""
    subcluster_id: bytes = b""
    shared_key: bytes = field(default=b"", repr=False)
    published: bool = False
    created_at: str = ""

    @classmethod
    def derive(
        cls,
        bundle_id: str,
        path: str | Path,
        shared_secret: str,
        cluster_label: str = DEFAULT_CLUSTER_LABEL,
        published: bool = False,
        created_at: str = "",
    ) -> Project:
        """Build a project, deriving all topic material from the secret."""
        topic = derive_project_topic(shared_secret)
        return cls(
            bundle_id=bundle_id,
            path=str(Path(path).expanduser().resolve()),
            shared_secret=shared_secret,
            cluster_label=cluster_label,
            cluster_id=derive_cluster_id(cluster_label),
            subcluster_id=topic.subcluster_id,
            shared_key=topic.shared_key,
            published=published,
            created_at=created_at or datetime.now(timezone.utc).isoformat(),
        )

    @property
    def subcluster_hex(self) -> str:
        return self.subcluster_id.hex()

    @property
    def link(self) -> str:
        return format_link(self.shared_secret, self.bundle_id, self.cluster_label)

    def to_dict(self) -> dict:
        return {
            "bundle_id": self.bundle_id,
            "path": self.path,
            "shared_secret": self.shared_secret,
            "cluster_label": self.cluster_label,
            "cluster_id": self.cluster_id.hex(),
            "subcluster_id": self.subcluster_id.hex(),
            "shared_key": self.shared_key.hex(),
            "published": self.published,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Project:
        project = cls.derive(
            bundle_id=d["bundle_id"],
            path=d["path"],
            shared_secret=d["shared_secret"],
            cluster_label=d.get("cluster_label", DEFAULT_CLUSTER_LABEL),
            published=bool(d.get("published", False)),
            created_at=d.get("created_at", ""),
        )
        stored = d.get("subcluster_id")
        if stored and stored != project.subcluster_hex:
            raise StorageError(
                f"Project {project.bundle_id} record does not match its shared secret"
            )
        return project


class ProjectRegistry:
    """CRUD over the ``projects`` namespace.

    Usage:
        registry = ProjectRegistry(store)
        project = registry.create("~/src/app", bundle_id="com.example.app")
        print(project.link)
        registry.subscribe(link, "~/src/their-app")
    """

    def __init__(self, store: KVStore) -> None:
        self.store = store
        self._projects = store.namespace(NS_PROJECTS)

    def create(
        self,
        path: str | Path,
        bundle_id: str | None = None,
        cluster_label: str | None = None,
        shared_secret: str | None = None,
    ) -> Project:
        """Initialise a local project for sharing.

        The bundle id falls back to the project's config file. Raises
        ProjectError if none can be found or the id is already registered.
        """
        bundle_id = bundle_id or read_bundle_id(path)
        if not bundle_id:
            raise ProjectError(
                f"No bundle id given and none found in {Path(path) / PROJECT_CONFIG_FILE}"
            )
        validate_bundle_id(bundle_id)

        project = Project.derive(
            bundle_id=bundle_id,
            path=path,
            shared_secret=shared_secret or create_shared_secret(),
            cluster_label=cluster_label or DEFAULT_CLUSTER_LABEL,
        )
        if not self._projects.put_if_absent(bundle_id, project.to_dict()):
            raise ProjectError(f"Project already exists: {bundle_id}")
        log.info("Created project %s (subcluster %s)", bundle_id, project.subcluster_hex[:12])
        return project

    def subscribe(self, link: str, path: str | Path) -> Project:
        """Register a remote project from its link.

        Raises LinkInvalid (and stores nothing) on a malformed link.
        """
        parsed = parse_link(link)
        try:
            validate_bundle_id(parsed.bundle_id)
        except ProjectError as e:
            raise LinkInvalid(str(e)) from e

        project = Project.derive(
            bundle_id=parsed.bundle_id,
            path=path,
            shared_secret=parsed.shared_secret,
            cluster_label=parsed.cluster_label,
        )
        # A subscriber never publishes the first clone; the author already did
        project.published = True
        if not self._projects.put_if_absent(project.bundle_id, project.to_dict()):
            raise ProjectError(f"Project already exists: {project.bundle_id}")
        log.info(
            "Subscribed to %s (subcluster %s)",
            project.bundle_id, project.subcluster_hex[:12],
        )
        return project

    def get(self, bundle_id: str) -> Project:
        """Raises NotFound if the project is unknown."""
        return Project.from_dict(self._projects.get(bundle_id))

    def link_for(self, bundle_id: str) -> str:
        return self.get(bundle_id).link

    def has(self, bundle_id: str) -> bool:
        return self._projects.has(bundle_id)

    def list(self) -> list[Project]:
        return [Project.from_dict(v) for _k, v in self._projects.read_range()]

    def find_by_subcluster(self, subcluster_hex: str) -> Project | None:
        for project in self.list():
            if project.subcluster_hex == subcluster_hex:
                return project
        return None

    def mark_published(self, bundle_id: str) -> None:
        record = self._projects.get(bundle_id)
        if record.get("published"):
            return
        record["published"] = True
        self._projects.put(bundle_id, record)

    def delete(self, bundle_id: str) -> int:
        """Delete a project and every patch stored for it.

        Returns the number of patches removed. Unknown ids are a no-op.
        """
        patches = self.store.namespace(NS_PATCHES)
        ops = [
            {"type": "del", "key": key}
            for key, _v in patches.read_range(**prefix_range(bundle_id))
        ]
        if ops:
            patches.batch(ops)
        self._projects.delete(bundle_id)
        log.info("Deleted project %s (%d patches)", bundle_id, len(ops))
        return len(ops)

