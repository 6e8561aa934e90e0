"""
Trust engine — trust-on-first-use for patch authors.

The ``keys`` namespace maps an author identity (the patch ``From:`` header)
to the public key the user accepted for it. Classification is computed on
demand and never stored:

    untrusted  no record for the author
    trusted    record exists and equals the patch's embedded key
    tampered   record exists and differs (or the patch carries no key)

Nothing here trusts automatically. Every transition is an explicit call
made on behalf of the user. No other module reads or writes ``keys``.
"""

from __future__ import annotations

import enum
import hmac
import logging

from patchnet import NS_KEYS
from patchnet.patch import Patch
from patchnet.store import KVStore, NotFound

log = logging.getLogger(__name__)


class Classification(str, enum.Enum):
    UNTRUSTED = "untrusted"
    TRUSTED = "trusted"
    TAMPERED = "tampered"


_DESCRIPTIONS = {
    Classification.UNTRUSTED: (
        "This patch is not associated with a trusted public key."
    ),
    Classification.TRUSTED: (
        "This patch is associated with a trusted public key."
    ),
    Classification.TAMPERED: (
        "This patch may have been tampered with: its key does not match "
        "the key trusted for this author."
    ),
}


def describe(classification: Classification) -> str:
    return _DESCRIPTIONS[classification]


class TrustEngine:
    """TOFU key store keyed by author identity.

    Usage:
        trust = TrustEngine(store)
        if trust.classify(patch) is Classification.UNTRUSTED:
            trust.trust(patch.headers.author, patch.public_key)
    """

    def __init__(self, store: KVStore) -> None:
        self._keys = store.namespace(NS_KEYS)

    def trusted_key(self, author: str) -> bytes | None:
        """Return the trusted key for an author, or None."""
        if not author:
            return None
        try:
            return bytes.fromhex(self._keys.get(author))
        except NotFound:
            return None

    def classify(self, patch: Patch) -> Classification:
        """Compare the patch's key with its author's trusted key.

        A patch with no key from an author who has a record is tampered.
        """
        saved = self.trusted_key(patch.headers.author)
        if saved is None:
            return Classification.UNTRUSTED
        if patch.public_key and hmac.compare_digest(saved, patch.public_key):
            return Classification.TRUSTED
        return Classification.TAMPERED

    def trust(self, author: str, public_key: bytes) -> None:
        """Trust ``public_key`` for ``author``, replacing any earlier key."""
        if not author:
            raise ValueError("Cannot trust an empty author identity")
        if not public_key:
            raise ValueError(f"No public key to trust for {author!r}")
        previous = self.trusted_key(author)
        self._keys.put(author, public_key.hex())
        if previous is not None and previous != public_key:
            log.warning(
                "Replaced trusted key for %s: %s -> %s",
                author, previous.hex()[:12], public_key.hex()[:12],
            )
        else:
            log.info("Trusted %s with key %s", author, public_key.hex()[:12])

    def untrust(self, author: str) -> None:
        """Forget the trusted key for ``author``. Unknown authors are a no-op."""
        if not author:
            return
        self._keys.delete(author)
        log.info("Untrusted %s", author)

    def toggle(self, patch: Patch) -> Classification:
        """Trust the patch's key if its author has no record, else untrust.

        Returns the classification of the patch afterwards.
        """
        author = patch.headers.author
        if self.trusted_key(author) is None:
            if patch.public_key is None:
                raise ValueError(f"Patch {patch.patch_id[:12]} carries no public key")
            self.trust(author, patch.public_key)
        else:
            self.untrust(author)
        return self.classify(patch)

    def list(self) -> list[tuple[str, str]]:
        """Return ``(author, key_hex)`` pairs in author order."""
        return list(self._keys.read_range())
