"""
patchnet — peer-to-peer patch distribution and trust for local git projects.

Architecture:
    Topic:     shared secret -> PBKDF2 -> shared key -> Ed25519 public key = subcluster id
    Wire:      Schnorr-signed relay events, AES-256-GCM payload under the shared key
    Local:     ~/.patchnet/store/<namespace>.json (projects, patches, keys, state)
    Bridge:    patchnet publish / patchnet apply CLI commands (git subprocesses)
"""

__version__ = "0.1.0"

# Link scheme for shareable project links: patchnet://<secret>?bundleId=..&clusterId=..
LINK_SCHEME = "patchnet"

# Store namespaces
NS_PROJECTS = "projects"
NS_PATCHES = "patches"
NS_KEYS = "keys"
NS_STATE = "state"
NAMESPACES = (NS_PROJECTS, NS_PATCHES, NS_KEYS, NS_STATE)

# Separator between project id and patch id in patch keys. Sorts above every
# character a bundle id or hex patch id can contain.
KEY_SEPARATOR = "\xff"

# Default cluster (non-secret broadcast namespace)
DEFAULT_CLUSTER_LABEL = "patchnet"

# Topic derivation
SHARED_KEY_SALT = b"patchnet/subcluster/v1"
SHARED_KEY_ITERATIONS = 100_000
SHARED_KEY_SIZE = 32  # Ed25519 seed / AES-256 key
SHARED_SECRET_SIZE = 32

# P2P network constants
P2P_PROTOCOL_VERSION = "1.0"
P2P_EVENT_KIND = 4078  # regular (stored) event kind
P2P_MAX_PAYLOAD = 16 * 1024 * 1024  # 16MB, bundles can be large
P2P_NONCE_SIZE = 12  # AES-GCM standard nonce
P2P_ROOT_INDEX = -1  # replication index of an original (non-relayed) packet
P2P_QUEUE_SIZE = 256  # bounded channel per subcluster
P2P_DEDUP_WINDOW = 600  # seconds a packet id is remembered
P2P_ACK_TIMEOUT = 15.0  # seconds to wait for a relay OK after publishing
P2P_DEFAULT_RELAYS = [
    "wss://relay.damus.io",
    "wss://nos.lol",
]

# Version-control tool
GIT_BINARY = "git"
NULL_REVISION = "0" * 40
