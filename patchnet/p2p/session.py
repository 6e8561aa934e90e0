"""
Session — relay connections, joined subclusters, and per-topic channels.

One Session is built by the node and passed to the pipelines that need
the network; there is no module-level connection state.

Inbound flow per relay event:
    relay reader -> _handle_relay_message -> dedup by event id
                 -> parse_event (signature, decryption) -> topic channel

Each joined subcluster owns a bounded asyncio.Queue. A single consumer
per project drains it, so packets for one topic are handled in arrival
order while different projects ingest concurrently. When a channel is
full the packet is dropped and logged; relays keep stored events, so a
dropped packet is fetched again on the next subscription.

A broadcast counts as delivered only once some relay answers ``OK`` true
for its event id; a send that no relay acknowledges raises BroadcastFailed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from patchnet import (
    P2P_ACK_TIMEOUT,
    P2P_DEDUP_WINDOW,
    P2P_DEFAULT_RELAYS,
    P2P_EVENT_KIND,
    P2P_QUEUE_SIZE,
)
from patchnet.identity import PeerIdentity
from patchnet.p2p.nostr import RelayClient
from patchnet.p2p.protocol import (
    TAG_SUBCLUSTER,
    Packet,
    PacketEvent,
    ProtocolError,
    get_tag,
    make_event,
    parse_event,
)

if TYPE_CHECKING:
    from patchnet.projects import Project

log = logging.getLogger(__name__)

# Hard cap on remembered packet ids
DEDUP_MAX_SIZE = 10_000

RECONNECT_DELAY = 5.0


class BroadcastFailed(Exception):
    """No relay accepted a broadcast."""


@dataclass
class PendingAck:
    """Relay answers still owed for one published event."""

    future: asyncio.Future
    waiting: int
    reasons: list[str] = field(default_factory=list)

    def accept(self) -> None:
        if not self.future.done():
            self.future.set_result(True)

    def reject(self, reason: str) -> None:
        self.reasons.append(reason)
        self.waiting -= 1
        if self.waiting <= 0 and not self.future.done():
            self.future.set_result(False)


@dataclass
class Topic:
    """A joined subcluster."""

    bundle_id: str
    subcluster_hex: str
    cluster_hex: str
    shared_key: bytes = field(repr=False)
    channel: asyncio.Queue = field(repr=False)

    @property
    def sub_id(self) -> str:
        return f"patchnet-{self.subcluster_hex[:16]}"

    @property
    def filters(self) -> dict[str, Any]:
        return {"kinds": [P2P_EVENT_KIND], "#" + TAG_SUBCLUSTER: [self.subcluster_hex]}


class Session:
    """Explicit network session owned by the application root.

    Usage:
        session = Session(identity, relays)
        await session.connect()
        channel = await session.join(project)
        await session.broadcast(project, PatchEvent(src))
        await session.close()
    """

    def __init__(
        self,
        identity: PeerIdentity,
        relays: list[str] | None = None,
        queue_size: int = P2P_QUEUE_SIZE,
        dedup_window: float = P2P_DEDUP_WINDOW,
        relay_factory: Callable[[str], Any] = RelayClient,
        reconnect_delay: float = RECONNECT_DELAY,
        ack_timeout: float = P2P_ACK_TIMEOUT,
    ) -> None:
        self.identity = identity
        self.relays = list(relays if relays is not None else P2P_DEFAULT_RELAYS)
        self.queue_size = queue_size
        self.dedup_window = dedup_window
        self.reconnect_delay = reconnect_delay
        self.ack_timeout = ack_timeout
        self._relay_factory = relay_factory

        self._clients: dict[str, Any] = {}
        self._readers: dict[str, asyncio.Task] = {}
        self._topics: dict[str, Topic] = {}
        self._seen: OrderedDict[str, float] = OrderedDict()
        self._pending: dict[str, PendingAck] = {}
        self._closed = False

    # -- Topics ---------------------------------------------------------------

    @property
    def joined(self) -> list[str]:
        """Subcluster ids (hex) this session has joined."""
        return list(self._topics)

    def is_joined(self, project: Project) -> bool:
        return project.subcluster_hex in self._topics

    async def join(self, project: Project) -> asyncio.Queue:
        """Join the project's subcluster. Idempotent; returns its channel."""
        topic = self._topics.get(project.subcluster_hex)
        if topic is not None:
            return topic.channel

        topic = Topic(
            bundle_id=project.bundle_id,
            subcluster_hex=project.subcluster_hex,
            cluster_hex=project.cluster_id.hex(),
            shared_key=project.shared_key,
            channel=asyncio.Queue(maxsize=self.queue_size),
        )
        self._topics[topic.subcluster_hex] = topic
        for url, client in list(self._clients.items()):
            await self._subscribe(url, client, topic)

        log.info("Joined subcluster %s (%s)", topic.subcluster_hex[:12], project.bundle_id)
        return topic.channel

    async def leave(self, project: Project) -> None:
        """Leave the project's subcluster. Unknown topics are a no-op."""
        topic = self._topics.pop(project.subcluster_hex, None)
        if topic is None:
            return
        for url, client in list(self._clients.items()):
            try:
                await client.unsubscribe(topic.sub_id)
            except Exception as e:
                log.warning("Unsubscribe from %s failed: %s", url, e)
        log.info("Left subcluster %s (%s)", topic.subcluster_hex[:12], project.bundle_id)

    # -- Relays ---------------------------------------------------------------

    @property
    def connected_relays(self) -> list[str]:
        return [url for url, c in self._clients.items() if c.connected]

    async def connect(self) -> int:
        """Connect to every configured relay. Returns the number connected."""
        for url in self.relays:
            if url in self._clients:
                continue
            client = self._relay_factory(url)
            try:
                await client.connect()
            except ImportError:
                raise
            except Exception as e:
                log.warning("Relay %s unavailable: %s", url, e)
                continue
            self._clients[url] = client
            for topic in list(self._topics.values()):
                await self._subscribe(url, client, topic)
            self._readers[url] = asyncio.create_task(self._reader(url, client))

        if not self._clients:
            log.warning("No relays connected")
        return len(self._clients)

    async def close(self) -> None:
        """Stop readers and close every relay connection."""
        self._closed = True
        for task in self._readers.values():
            task.cancel()
        for task in self._readers.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._readers.clear()

        for url, client in self._clients.items():
            try:
                await client.close()
            except Exception as e:
                log.debug("Error closing relay %s: %s", url, e)
        self._clients.clear()
        log.info("Session closed")

    async def _subscribe(self, url: str, client: Any, topic: Topic) -> None:
        try:
            await client.subscribe(topic.sub_id, topic.filters)
        except Exception as e:
            log.warning("Subscribe %s on %s failed: %s", topic.subcluster_hex[:12], url, e)

    async def _reader(self, url: str, client: Any) -> None:
        """Read one relay until the session closes, reconnecting on failure."""
        while not self._closed:
            try:
                message = await client.receive()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning("Relay %s disconnected: %s", url, e)
                await self._reconnect(url, client)
                continue
            self._handle_relay_message(message)

    async def _reconnect(self, url: str, client: Any) -> None:
        """Reconnect with a fixed delay and re-subscribe every joined topic."""
        while not self._closed:
            await asyncio.sleep(self.reconnect_delay)
            try:
                await client.close()
                await client.connect()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.debug("Reconnect to %s failed: %s", url, e)
                continue
            for topic in list(self._topics.values()):
                await self._subscribe(url, client, topic)
            log.info("Reconnected to relay %s", url)
            return

    # -- Inbound --------------------------------------------------------------

    def _seen_recently(self, packet_id: str) -> bool:
        """Expire old ids, then report whether ``packet_id`` was seen."""
        now = time.monotonic()
        while self._seen:
            oldest_id, oldest_time = next(iter(self._seen.items()))
            if now - oldest_time > self.dedup_window:
                del self._seen[oldest_id]
            else:
                break
        return packet_id in self._seen

    def _remember(self, packet_id: str) -> None:
        self._seen[packet_id] = time.monotonic()
        while len(self._seen) > DEDUP_MAX_SIZE:
            self._seen.popitem(last=False)

    def _handle_relay_message(self, message: Any) -> Packet | None:
        """Route one relay message. Returns the packet queued, if any."""
        if not isinstance(message, list) or not message:
            return None

        kind = message[0]
        if kind != "EVENT":
            if kind == "NOTICE":
                log.info("Relay notice: %s", message[1:] if len(message) > 1 else "")
            elif kind == "OK" and len(message) >= 3:
                self._handle_ok(message)
            return None

        if len(message) < 3 or not isinstance(message[2], dict):
            return None
        event = message[2]

        topic = self._topics.get(get_tag(event, TAG_SUBCLUSTER) or "")
        if topic is None:
            return None

        packet_id = event.get("id", "")
        if self._seen_recently(packet_id):
            return None

        try:
            packet = parse_event(event, topic.shared_key)
        except ProtocolError as e:
            log.debug("Dropped event %s: %s", str(packet_id)[:12], e)
            return None

        # Only authentic ids are remembered so a forged copy cannot shadow them
        if packet.verified:
            self._remember(packet.packet_id)

        try:
            topic.channel.put_nowait(packet)
        except asyncio.QueueFull:
            log.warning(
                "Channel for %s full, dropped packet %s",
                topic.bundle_id, packet.packet_id[:12],
            )
            return None
        return packet

    def _handle_ok(self, message: list) -> None:
        """Settle a pending broadcast from a relay's ``["OK", id, accepted, reason]``."""
        event_id = str(message[1])
        accepted = message[2] is True
        reason = str(message[3]) if len(message) > 3 else ""
        if not accepted:
            log.warning("Relay rejected event %s: %s", event_id[:12], reason)
        ack = self._pending.get(event_id)
        if ack is None:
            return
        if accepted:
            ack.accept()
        else:
            ack.reject(reason or "rejected")

    # -- Outbound -------------------------------------------------------------

    async def broadcast(self, project: Project, payload: PacketEvent) -> str:
        """Sign and publish a payload to the project's subcluster.

        Joins the subcluster first, then waits up to ``ack_timeout`` for a
        relay to answer ``OK`` true. Returns the event id. Raises
        BroadcastFailed if every relay rejected the event, none could be
        reached, or none answered in time.
        """
        await self.join(project)
        event = make_event(
            privkey=self.identity.privkey,
            pubkey_hex=self.identity.pubkey,
            cluster_hex=project.cluster_id.hex(),
            subcluster_hex=project.subcluster_hex,
            shared_key=project.shared_key,
            payload=payload,
        )
        event_id = event["id"]
        # Our own event echoed back by a relay is not a new packet
        self._remember(event_id)

        clients = list(self._clients.items())
        if not clients:
            raise BroadcastFailed(
                f"No relay connected for {payload.name} of {project.bundle_id}"
            )

        # Answers can arrive while later relays are still being sent to
        ack = PendingAck(
            future=asyncio.get_running_loop().create_future(), waiting=len(clients)
        )
        self._pending[event_id] = ack
        try:
            for url, client in clients:
                try:
                    await client.publish(event)
                except Exception as e:
                    log.warning("Publish to %s failed: %s", url, e)
                    ack.reject(f"{url}: {e}")

            try:
                accepted = await asyncio.wait_for(ack.future, self.ack_timeout)
            except asyncio.TimeoutError:
                raise BroadcastFailed(
                    f"No relay acknowledged {payload.name} for {project.bundle_id} "
                    f"within {self.ack_timeout:g}s"
                ) from None
        finally:
            self._pending.pop(event_id, None)

        if not accepted:
            raise BroadcastFailed(
                f"No relay accepted {payload.name} for {project.bundle_id}: "
                + "; ".join(ack.reasons)
            )
        log.info(
            "Broadcast %s %s (%s)", payload.name, event_id[:12], project.bundle_id,
        )
        return event_id
