"""
Tests for identity and subcluster derivation — shared key KDF, subcluster
ids, cluster ids, project links, and the persisted peer identity.
"""

from __future__ import annotations

import hashlib

import pytest

from patchnet import DEFAULT_CLUSTER_LABEL, NS_STATE, SHARED_KEY_SIZE
from patchnet.identity import (
    LinkInvalid,
    PeerIdentity,
    create_shared_secret,
    derive_cluster_id,
    derive_project_topic,
    derive_shared_key,
    ensure_identity,
    format_link,
    get_user,
    parse_link,
    set_user,
)
from patchnet.store import KVStore

try:
    import secp256k1  # noqa: F401
    HAS_SECP256K1 = True
except ImportError:
    HAS_SECP256K1 = False

requires_secp256k1 = pytest.mark.skipif(
    not HAS_SECP256K1,
    reason="secp256k1 C bindings not installed (pip install secp256k1)",
)


@pytest.fixture
def store(tmp_path):
    return KVStore(root=tmp_path / "store")


class TestTopicDerivation:

    def test_deterministic(self):
        a = derive_project_topic("correct horse battery staple")
        derive_project_topic.cache_clear()
        b = derive_project_topic("correct horse battery staple")
        assert a == b

    def test_different_secrets_differ(self):
        a = derive_project_topic("secret-one")
        b = derive_project_topic("secret-two")
        assert a.shared_key != b.shared_key
        assert a.subcluster_id != b.subcluster_id

    def test_sizes(self):
        topic = derive_project_topic("s3cret")
        assert len(topic.shared_key) == SHARED_KEY_SIZE
        assert len(topic.subcluster_id) == 32

    def test_subcluster_is_not_the_key(self):
        topic = derive_project_topic("s3cret")
        assert topic.subcluster_id != topic.shared_key

    def test_shared_key_matches_topic(self):
        assert derive_shared_key("abc") == derive_project_topic("abc").shared_key

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            derive_shared_key("")

    def test_cluster_id_is_sha256(self):
        assert derive_cluster_id("patchnet") == hashlib.sha256(b"patchnet").digest()

    def test_create_shared_secret_unique(self):
        a, b = create_shared_secret(), create_shared_secret()
        assert a != b
        assert len(bytes.fromhex(a)) == 32


class TestLinks:

    def test_round_trip(self):
        link = format_link("abc123", "com.example.app", "team")
        parsed = parse_link(link)
        assert parsed.shared_secret == "abc123"
        assert parsed.bundle_id == "com.example.app"
        assert parsed.cluster_label == "team"

    def test_format(self):
        link = format_link("abc123", "com.example.app", "team")
        assert link == "patchnet://abc123?bundleId=com.example.app&clusterId=team"

    def test_secret_case_preserved(self):
        parsed = parse_link("patchnet://AbCdEf?bundleId=app")
        assert parsed.shared_secret == "AbCdEf"

    def test_cluster_defaults(self):
        parsed = parse_link("patchnet://abc?bundleId=app")
        assert parsed.cluster_label == DEFAULT_CLUSTER_LABEL

    @pytest.mark.parametrize("link", [
        "",
        "   ",
        "patchnet://abc",
        "patchnet://abc?clusterId=x",
        "patchnet://abc?bundleId=",
        "patchnet://abc?bundleId=a&bundleId=b",
        "patchnet://abc?bundleId=a&clusterId=x&clusterId=y",
        "patchnet://?bundleId=app",
        "https://abc?bundleId=app",
    ])
    def test_invalid(self, link):
        with pytest.raises(LinkInvalid):
            parse_link(link)

    def test_link_invalid_is_value_error(self):
        with pytest.raises(ValueError):
            parse_link("nope")


class TestUser:

    def test_unset(self, store):
        assert get_user(store) == {}

    def test_set_get(self, store):
        set_user(store, "Ada", "ada@example.com")
        assert get_user(store) == {"name": "Ada", "email": "ada@example.com"}

    def test_requires_both(self, store):
        with pytest.raises(ValueError):
            set_user(store, "Ada", "")


class TestPeerIdentity:

    def test_dict_round_trip(self):
        ident = PeerIdentity(privkey=b"\x01" * 32, pubkey="ab" * 32, peer_id="cd" * 32)
        assert PeerIdentity.from_dict(ident.to_dict()) == ident

    def test_loads_existing(self, store):
        ident = PeerIdentity(privkey=b"\x02" * 32, pubkey="ef" * 32, peer_id="01" * 32)
        store.namespace(NS_STATE).put("peer", ident.to_dict())
        assert ensure_identity(store) == ident

    @requires_secp256k1
    def test_created_once(self, store):
        first = ensure_identity(store)
        second = ensure_identity(store)
        assert first == second
        assert len(bytes.fromhex(first.pubkey)) == 32

    @requires_secp256k1
    def test_persisted(self, tmp_path):
        first = ensure_identity(KVStore(tmp_path))
        assert ensure_identity(KVStore(tmp_path)) == first
