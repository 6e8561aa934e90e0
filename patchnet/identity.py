"""
Identity & subcluster derivation.

- Peer identity: a secp256k1 signing keypair created once and persisted in
  the ``state`` namespace under ``peer`` (requires patchnet[p2p] to create).
- Cluster id: SHA-256 of a public label (the coarse, non-secret namespace).
- Project topic: ``shared_key = PBKDF2-HMAC-SHA256(shared_secret)`` with a
  fixed salt, and ``subcluster_id`` = the Ed25519 public key seeded by
  ``shared_key``. Both are pure functions of the secret, so two peers that
  hold the same secret meet on the same topic without any signaling.
- Project links carry the secret out of band:
  ``patchnet://<sharedSecret>?bundleId=<id>&clusterId=<label>``
"""

from __future__ import annotations

import functools
import hashlib
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from urllib.parse import parse_qs, quote, unquote, urlencode, urlsplit

from patchnet import (
    DEFAULT_CLUSTER_LABEL,
    LINK_SCHEME,
    NS_STATE,
    SHARED_KEY_ITERATIONS,
    SHARED_KEY_SALT,
    SHARED_KEY_SIZE,
    SHARED_SECRET_SIZE,
)
from patchnet.store import KVStore, NotFound

log = logging.getLogger(__name__)

PEER_STATE_KEY = "peer"


class LinkInvalid(ValueError):
    """A project link is malformed or incomplete."""


def _import_ed25519():
    """Lazily import the Ed25519 primitives from the cryptography package."""
    try:
        from cryptography.hazmat.primitives import serialization
        from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

        return Ed25519PrivateKey, serialization
    except ImportError:
        raise ImportError(
            "cryptography is required for subcluster derivation. "
            "Install with: pip install patchnet"
        )


@dataclass(frozen=True)
class PeerIdentity:
    """The local signing identity. Never leaves this process."""

    privkey: bytes
    pubkey: str  # x-only secp256k1 public key, hex
    peer_id: str

    def to_dict(self) -> dict:
        return {
            "privkey": self.privkey.hex(),
            "pubkey": self.pubkey,
            "peer_id": self.peer_id,
        }

    @classmethod
    def from_dict(cls, d: dict) -> PeerIdentity:
        return cls(
            privkey=bytes.fromhex(d["privkey"]),
            pubkey=d["pubkey"],
            peer_id=d["peer_id"],
        )


@dataclass(frozen=True)
class ProjectTopic:
    """Key material derived from a shared secret."""

    shared_key: bytes
    subcluster_id: bytes


@dataclass(frozen=True)
class ProjectLink:
    """A parsed project link."""

    shared_secret: str
    bundle_id: str
    cluster_label: str


def ensure_identity(store: KVStore) -> PeerIdentity:
    """Load the persisted peer identity, or create and persist one.

    Idempotent: concurrent or repeated calls converge on the first
    identity that was written.
    """
    state = store.namespace(NS_STATE)
    try:
        return PeerIdentity.from_dict(state.get(PEER_STATE_KEY))
    except NotFound:
        pass

    from patchnet.p2p.nostr import generate_privkey, privkey_to_pubkey

    privkey = generate_privkey()
    identity = PeerIdentity(
        privkey=privkey,
        pubkey=privkey_to_pubkey(privkey).hex(),
        peer_id=os.urandom(32).hex(),
    )
    record = identity.to_dict()
    record["created_at"] = datetime.now(timezone.utc).isoformat()
    if not state.put_if_absent(PEER_STATE_KEY, record):
        return PeerIdentity.from_dict(state.get(PEER_STATE_KEY))

    log.info("Created peer identity %s", identity.pubkey[:12])
    return identity


def derive_cluster_id(label: str) -> bytes:
    """One-way hash of a human label."""
    return hashlib.sha256(label.encode("utf-8")).digest()


def derive_shared_key(shared_secret: str) -> bytes:
    """Deterministic KDF from the shared secret (fixed salt, fixed cost)."""
    if not shared_secret:
        raise ValueError("Shared secret cannot be empty")
    return hashlib.pbkdf2_hmac(
        "sha256",
        shared_secret.encode("utf-8"),
        SHARED_KEY_SALT,
        SHARED_KEY_ITERATIONS,
        dklen=SHARED_KEY_SIZE,
    )


@functools.lru_cache(maxsize=256)
def derive_project_topic(shared_secret: str) -> ProjectTopic:
    """Derive ``shared_key`` and ``subcluster_id`` from a shared secret.

    Cached per secret, since loading a project record re-derives its topic.
    """
    Ed25519PrivateKey, serialization = _import_ed25519()

    shared_key = derive_shared_key(shared_secret)
    keypair = Ed25519PrivateKey.from_private_bytes(shared_key)
    subcluster_id = keypair.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return ProjectTopic(shared_key=shared_key, subcluster_id=subcluster_id)


def create_shared_secret() -> str:
    """Generate a fresh shared secret for a new project."""
    return os.urandom(SHARED_SECRET_SIZE).hex()


def format_link(shared_secret: str, bundle_id: str, cluster_label: str) -> str:
    """Build a shareable project link."""
    query = urlencode({"bundleId": bundle_id, "clusterId": cluster_label})
    return f"{LINK_SCHEME}://{quote(shared_secret, safe='')}?{query}"


def parse_link(uri: str) -> ProjectLink:
    """Parse a project link. Raises LinkInvalid on any defect."""
    if not isinstance(uri, str) or not uri.strip():
        raise LinkInvalid("Project link is empty")

    try:
        parts = urlsplit(uri.strip())
    except ValueError as e:
        raise LinkInvalid(f"Project link is not a valid URI: {e}") from e

    if parts.scheme != LINK_SCHEME:
        raise LinkInvalid(
            f"Project link must use the {LINK_SCHEME}:// scheme, got {parts.scheme!r}"
        )

    # netloc, not hostname: hostname is lowercased
    secret = unquote(parts.netloc)
    if not secret or any(c.isspace() for c in secret):
        raise LinkInvalid("Project link has no shared secret")

    query = parse_qs(parts.query)
    bundle_ids = query.get("bundleId", [])
    if len(bundle_ids) != 1 or not bundle_ids[0].strip():
        raise LinkInvalid("Project link is missing bundleId")

    labels = query.get("clusterId", [])
    if len(labels) > 1:
        raise LinkInvalid("Project link has more than one clusterId")
    label = labels[0].strip() if labels and labels[0].strip() else DEFAULT_CLUSTER_LABEL

    return ProjectLink(
        shared_secret=secret,
        bundle_id=bundle_ids[0].strip(),
        cluster_label=label,
    )


USER_STATE_KEY = "user"


def get_user(store: KVStore) -> dict[str, str]:
    """Return the saved git author identity, ``{}`` if none is set."""
    try:
        record = store.namespace(NS_STATE).get(USER_STATE_KEY)
    except NotFound:
        return {}
    return {k: record[k] for k in ("name", "email") if record.get(k)}


def set_user(store: KVStore, name: str, email: str) -> None:
    """Save the git author identity used for published commits."""
    if not name or not email:
        raise ValueError("Both name and email are required")
    store.namespace(NS_STATE).put(USER_STATE_KEY, {"name": name, "email": email})
