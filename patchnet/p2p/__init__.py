"""
patchnet P2P — subcluster topics over Nostr relays.

Optional layer: signing and transport require ``pip install patchnet[p2p]``
for websockets + secp256k1. Payload encryption uses the core
``cryptography`` dependency.

Modules:
    protocol        — Event names, packet union, payload encryption, event build/parse
    nostr           — Schnorr signing, event ids, relay client
    session         — Joined topics, bounded per-topic channels, broadcast
"""

from patchnet import P2P_EVENT_KIND, P2P_PROTOCOL_VERSION

__all__ = [
    "P2P_EVENT_KIND",
    "P2P_PROTOCOL_VERSION",
]
