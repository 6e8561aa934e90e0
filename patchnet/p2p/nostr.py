"""
Nostr-style signing and relay communication.

A peer is its x-only secp256k1 public key (hex). Every broadcast packet is
an event whose id is the SHA-256 of its canonical serialization, and the
BIP-340 signature covers that id.

Signing needs the secp256k1 C bindings and relays need websockets; both
come with patchnet[p2p] and are imported on first use.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Secp256k1 helpers. No fallback: secp256k1 is required.
# ---------------------------------------------------------------------------

def _import_secp256k1():
    try:
        import secp256k1
        return secp256k1
    except ImportError:
        raise ImportError(
            "secp256k1 is required for peer identity and packet signing. "
            "Install with: pip install patchnet[p2p]"
        )


def generate_privkey() -> bytes:
    """Fresh 32-byte secp256k1 secret."""
    return os.urandom(32)


def privkey_to_pubkey(privkey: bytes) -> bytes:
    """The 32-byte x-only public key for ``privkey``."""
    secp = _import_secp256k1()
    compressed = secp.PrivateKey(privkey).pubkey.serialize(compressed=True)
    # Drop the parity byte
    return compressed[1:]


def sign_hash(msg_hash: bytes, privkey: bytes) -> str:
    """BIP-340 signature over a 32-byte digest, hex encoded."""
    secp = _import_secp256k1()
    signature = secp.PrivateKey(privkey).schnorr_sign(msg_hash, bip340tag=None, raw=True)
    return signature.hex()


def verify_schnorr(pubkey_bytes: bytes, msg_hash: bytes, sig_bytes: bytes) -> bool:
    secp = _import_secp256k1()
    try:
        key = secp.PublicKey(b"\x02" + pubkey_bytes, raw=True)
        return key.schnorr_verify(msg_hash, sig_bytes, bip340tag=None, raw=True)
    except Exception:
        return False


def compute_event_id(
    pubkey_hex: str,
    created_at: int,
    kind: int,
    tags: list,
    content: str,
) -> str:
    """SHA-256 hex of the canonical ``[0, pubkey, created_at, kind, tags, content]``."""
    canonical = json.dumps(
        [0, pubkey_hex, created_at, kind, tags, content],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def verify_event_signature(event: dict) -> bool:
    """True if the event id matches its fields and the signature covers it.

    Malformed events are False; only a missing secp256k1 raises.
    """
    try:
        signature = bytes.fromhex(event["sig"])
        pubkey = bytes.fromhex(event["pubkey"])
        if len(signature) != 64 or len(pubkey) != 32:
            return False

        event_id = compute_event_id(
            event["pubkey"],
            event["created_at"],
            event["kind"],
            event["tags"],
            event["content"],
        )
        if event_id != event["id"]:
            return False
        return verify_schnorr(pubkey, bytes.fromhex(event_id), signature)
    except ImportError:
        raise
    except (KeyError, TypeError, ValueError):
        return False


# ---------------------------------------------------------------------------
# Relays
# ---------------------------------------------------------------------------

class RelayClient:
    """One websocket connection to a relay.

    Frames are JSON arrays: ``EVENT`` and ``REQ``/``CLOSE`` go out,
    ``EVENT``/``EOSE``/``OK``/``NOTICE`` come back. Reconnection is the
    session's job; a dropped socket surfaces as an exception from
    ``receive``.
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self._ws = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self) -> None:
        try:
            import websockets
        except ImportError:
            raise ImportError(
                "websockets is required for relay communication. "
                "Install with: pip install patchnet[p2p]"
            )
        # Clone bundles can exceed the default frame limit
        self._ws = await websockets.connect(self.url, max_size=None)
        log.info("Connected to relay %s", self.url)

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    async def _send(self, *frame) -> None:
        if self._ws is None:
            raise ConnectionError(f"Relay {self.url} is not connected")
        await self._ws.send(json.dumps(list(frame)))

    async def publish(self, event: dict) -> None:
        await self._send("EVENT", event)
        log.debug("Sent event %s to %s", event.get("id", "")[:12], self.url)

    async def subscribe(self, sub_id: str, filters: dict) -> None:
        """Open (or replace) subscription ``sub_id`` with one filter."""
        await self._send("REQ", sub_id, filters)
        log.debug("Opened subscription %s on %s", sub_id, self.url)

    async def unsubscribe(self, sub_id: str) -> None:
        await self._send("CLOSE", sub_id)
        log.debug("Closed subscription %s on %s", sub_id, self.url)

    async def receive(self) -> list:
        """Next frame from the relay. Frames that are not JSON come back as []."""
        if self._ws is None:
            raise ConnectionError(f"Relay {self.url} is not connected")
        raw = await self._ws.recv()
        try:
            return json.loads(raw)
        except ValueError:
            log.debug("Ignored non-JSON frame from %s", self.url)
            return []
