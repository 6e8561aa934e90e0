"""
Wire protocol — event names, packet union, payload encryption, validation.

A packet travels as a signed relay event:

    kind     P2P_EVENT_KIND
    pubkey   author's x-only secp256k1 key (hex)
    tags     ["c", <cluster id hex>]
             ["s", <subcluster id hex>]     (relay-filterable as "#s")
             ["t", <event name>]            clone | patch | tag
             ["i", <replication index>]     "-1" for the original packet
             ["v", <protocol version>]
    content  base64(nonce(12) + AES-256-GCM ciphertext)

The payload key is the project's shared key; it never goes on the wire.
The subcluster id and event name are bound into the ciphertext as
associated data, so a payload cannot be replayed under another topic or
event name.
"""

from __future__ import annotations

import base64
import binascii
import os
import time
from dataclasses import dataclass
from typing import Union

from patchnet import (
    P2P_EVENT_KIND,
    P2P_MAX_PAYLOAD,
    P2P_NONCE_SIZE,
    P2P_PROTOCOL_VERSION,
    P2P_ROOT_INDEX,
)

# Event names
CLONE = "clone"
PATCH = "patch"
TAG = "tag"

VALID_EVENTS = frozenset({CLONE, PATCH, TAG})

# Tag names
TAG_CLUSTER = "c"
TAG_SUBCLUSTER = "s"
TAG_EVENT = "t"
TAG_INDEX = "i"
TAG_VERSION = "v"

_GCM_TAG_SIZE = 16


class ProtocolError(Exception):
    """Invalid event or payload."""


class VerificationFailed(ProtocolError):
    """Payload failed authenticated decryption."""


def _import_cryptography():
    """Lazily import AES-GCM from the cryptography package."""
    try:
        from cryptography.exceptions import InvalidTag
        from cryptography.hazmat.primitives.ciphers.aead import AESGCM

        return AESGCM, InvalidTag
    except ImportError:
        raise ImportError(
            "cryptography is required for payload encryption. "
            "Install with: pip install patchnet"
        )


# ---------------------------------------------------------------------------
# Packet payloads (tagged union, dispatched by event name)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CloneEvent:
    """A full repository bundle."""

    data: bytes
    name = CLONE


@dataclass(frozen=True)
class PatchEvent:
    """A single-commit patch in mbox form."""

    data: bytes
    name = PATCH


@dataclass(frozen=True)
class TagEvent:
    data: bytes
    name = TAG


PacketEvent = Union[CloneEvent, PatchEvent, TagEvent]

_EVENT_TYPES = {CLONE: CloneEvent, PATCH: PatchEvent, TAG: TagEvent}


def make_payload(event_name: str, data: bytes) -> PacketEvent:
    """Wrap raw bytes in the union member for ``event_name``."""
    try:
        return _EVENT_TYPES[event_name](data)
    except KeyError:
        raise ProtocolError(f"Unknown event: {event_name!r}") from None


@dataclass(frozen=True)
class Packet:
    """An inbound packet, as seen by the ingestion boundary.

    ``payload`` is None when the packet failed verification; nothing in an
    unverified packet is decrypted.
    """

    packet_id: str
    subcluster_id: str
    index: int
    verified: bool
    public_key: bytes
    payload: PacketEvent | None

    @property
    def is_root(self) -> bool:
        return self.index == P2P_ROOT_INDEX

    @property
    def event_name(self) -> str | None:
        return self.payload.name if self.payload is not None else None


# ---------------------------------------------------------------------------
# Payload encryption
# ---------------------------------------------------------------------------

def _associated_data(subcluster_hex: str, event_name: str) -> bytes:
    return f"{subcluster_hex}:{event_name}".encode("ascii")


def encrypt_payload(
    data: bytes, shared_key: bytes, subcluster_hex: str, event_name: str
) -> str:
    """Encrypt ``data`` for a topic. Returns base64 text for event content."""
    AESGCM, _InvalidTag = _import_cryptography()
    if len(data) > P2P_MAX_PAYLOAD:
        raise ProtocolError(
            f"Payload too large: {len(data)} bytes (max {P2P_MAX_PAYLOAD})"
        )
    nonce = os.urandom(P2P_NONCE_SIZE)
    ciphertext = AESGCM(shared_key).encrypt(
        nonce, data, _associated_data(subcluster_hex, event_name)
    )
    return base64.b64encode(nonce + ciphertext).decode("ascii")


def decrypt_payload(
    content: str, shared_key: bytes, subcluster_hex: str, event_name: str
) -> bytes:
    """Inverse of encrypt_payload. Raises VerificationFailed on a bad tag."""
    AESGCM, InvalidTag = _import_cryptography()
    try:
        raw = base64.b64decode(content, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ProtocolError(f"Event content is not base64: {e}") from e
    if len(raw) < P2P_NONCE_SIZE + _GCM_TAG_SIZE:
        raise ProtocolError("Encrypted payload too short")

    nonce, ciphertext = raw[:P2P_NONCE_SIZE], raw[P2P_NONCE_SIZE:]
    try:
        return AESGCM(shared_key).decrypt(
            nonce, ciphertext, _associated_data(subcluster_hex, event_name)
        )
    except InvalidTag:
        raise VerificationFailed("Payload authentication failed") from None


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

def get_tag(event: dict, name: str) -> str | None:
    """First value of tag ``name``, or None."""
    for tag in event.get("tags", []):
        if isinstance(tag, list) and len(tag) >= 2 and tag[0] == name:
            return tag[1]
    return None


def make_event(
    privkey: bytes,
    pubkey_hex: str,
    cluster_hex: str,
    subcluster_hex: str,
    shared_key: bytes,
    payload: PacketEvent,
    index: int = P2P_ROOT_INDEX,
    created_at: int | None = None,
) -> dict:
    """Build and sign a relay event carrying an encrypted payload.

    Requires patchnet[p2p] for Schnorr signing.
    """
    from patchnet.p2p.nostr import compute_event_id, sign_hash

    if payload.name not in VALID_EVENTS:
        raise ProtocolError(f"Unknown event: {payload.name!r}")

    created_at = created_at if created_at is not None else int(time.time())
    tags = [
        [TAG_CLUSTER, cluster_hex],
        [TAG_SUBCLUSTER, subcluster_hex],
        [TAG_EVENT, payload.name],
        [TAG_INDEX, str(index)],
        [TAG_VERSION, P2P_PROTOCOL_VERSION],
    ]
    content = encrypt_payload(payload.data, shared_key, subcluster_hex, payload.name)
    event_id = compute_event_id(pubkey_hex, created_at, P2P_EVENT_KIND, tags, content)
    return {
        "id": event_id,
        "pubkey": pubkey_hex,
        "created_at": created_at,
        "kind": P2P_EVENT_KIND,
        "tags": tags,
        "content": content,
        "sig": sign_hash(bytes.fromhex(event_id), privkey),
    }


def validate_event(event: dict) -> None:
    """Structural checks. Raises ProtocolError on failure."""
    if not isinstance(event, dict):
        raise ProtocolError("Event must be a JSON object")

    for field in ("id", "pubkey", "created_at", "kind", "tags", "content", "sig"):
        if field not in event:
            raise ProtocolError(f"Missing required field: {field!r}")

    if event["kind"] != P2P_EVENT_KIND:
        raise ProtocolError(f"Unexpected event kind: {event['kind']!r}")
    if not isinstance(event["tags"], list):
        raise ProtocolError("tags must be a list")
    if not isinstance(event["content"], str):
        raise ProtocolError("content must be a string")

    if not get_tag(event, TAG_SUBCLUSTER):
        raise ProtocolError("Event has no subcluster tag")
    name = get_tag(event, TAG_EVENT)
    if name not in VALID_EVENTS:
        raise ProtocolError(f"Unknown event: {name!r}")

    index = get_tag(event, TAG_INDEX)
    try:
        int(index if index is not None else P2P_ROOT_INDEX)
    except ValueError:
        raise ProtocolError(f"Bad replication index: {index!r}") from None

    try:
        pubkey = bytes.fromhex(event["pubkey"])
    except (TypeError, ValueError):
        raise ProtocolError("pubkey must be hex") from None
    if len(pubkey) != 32:
        raise ProtocolError("pubkey must be a 32-byte x-only key")


def parse_event(event: dict, shared_key: bytes) -> Packet:
    """Turn a relay event into a Packet.

    The signature is checked first; an unverified packet is returned with
    ``verified=False`` and no payload. A verified packet whose ciphertext
    does not authenticate under ``shared_key`` raises VerificationFailed.
    """
    from patchnet.p2p.nostr import verify_event_signature

    validate_event(event)

    subcluster_hex = get_tag(event, TAG_SUBCLUSTER)
    name = get_tag(event, TAG_EVENT)
    index_tag = get_tag(event, TAG_INDEX)
    index = int(index_tag) if index_tag is not None else P2P_ROOT_INDEX
    public_key = bytes.fromhex(event["pubkey"])

    if not verify_event_signature(event):
        return Packet(
            packet_id=event["id"],
            subcluster_id=subcluster_hex,
            index=index,
            verified=False,
            public_key=public_key,
            payload=None,
        )

    data = decrypt_payload(event["content"], shared_key, subcluster_hex, name)
    return Packet(
        packet_id=event["id"],
        subcluster_id=subcluster_hex,
        index=index,
        verified=True,
        public_key=public_key,
        payload=make_payload(name, data),
    )
