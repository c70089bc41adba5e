"""
UDP-based LAN discovery service.

Broadcasts a periodic announce beacon, listens for beacons from other
LAN Messenger instances on the same subnet, and expires peers that stop
announcing.
"""

import asyncio
import logging
import time

from pydantic import ValidationError

from config import (
    ANNOUNCE_INTERVAL,
    DEVICE_NAME,
    DISCOVERY_PORT,
    PEER_TIMEOUT,
    SWEEP_INTERVAL,
)
from discovery.models import AnnounceBeacon, GoodbyeBeacon, PeerRecord, beacon_adapter
from events import PEER_DISCOVERED, PEER_LEFT, PEER_TIMEOUT as PEER_TIMEOUT_EVENT, EventEmitter
from net import get_broadcast_address, open_udp_socket

logger = logging.getLogger(__name__)


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol for receiving discovery beacons."""

    def __init__(self, service: "DiscoveryService"):
        self.service = service

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self.service.handle_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Discovery UDP error: {exc}")


class DiscoveryService(EventEmitter):
    """Manages LAN peer discovery via UDP broadcast."""

    def __init__(
        self,
        port: int = DISCOVERY_PORT,
        announce_interval: float = ANNOUNCE_INTERVAL,
        sweep_interval: float = SWEEP_INTERVAL,
        peer_timeout: float = PEER_TIMEOUT,
    ) -> None:
        super().__init__()
        self._port = port
        self._announce_interval = announce_interval
        self._sweep_interval = sweep_interval
        self._peer_timeout = peer_timeout
        self._peers: dict[str, PeerRecord] = {}
        self._transport: asyncio.DatagramTransport | None = None
        self._announce_task: asyncio.Task | None = None
        self._sweep_task: asyncio.Task | None = None
        self._self_id = ""
        self._display_name = DEVICE_NAME

    @property
    def self_id(self) -> str:
        return self._self_id

    @property
    def display_name(self) -> str:
        return self._display_name

    def update_display_name(self, name: str) -> None:
        """Change the name carried by future announcements."""
        self._display_name = name

    async def start(self, self_id: str, display_name: str) -> None:
        """Bind the broadcast socket and start the announce and sweep loops."""
        self._self_id = self_id
        self._display_name = display_name
        logger.info(f"Starting discovery on UDP port {self._port}")

        loop = asyncio.get_running_loop()
        sock = open_udp_socket(self._port, broadcast=True)
        transport, _ = await loop.create_datagram_endpoint(
            lambda: DiscoveryProtocol(self),
            sock=sock,
        )
        self._transport = transport

        self._announce_task = asyncio.create_task(self._announce_loop())
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("Discovery service started")

    async def stop(self) -> None:
        """Announce departure and release the socket."""
        for task in (self._announce_task, self._sweep_task):
            if task:
                task.cancel()
        self._announce_task = None
        self._sweep_task = None

        if self._transport:
            self._send(GoodbyeBeacon(id=self._self_id))
            self._transport.close()
            self._transport = None

        self._peers.clear()
        logger.info("Discovery service stopped")

    def list_peers(self) -> list[PeerRecord]:
        """Return a snapshot of currently known peers."""
        return list(self._peers.values())

    def get_peer(self, peer_id: str) -> PeerRecord | None:
        return self._peers.get(peer_id)

    def announce(self) -> None:
        """Broadcast one announce beacon."""
        self._send(AnnounceBeacon(id=self._self_id, username=self._display_name))

    def handle_datagram(self, data: bytes, addr: tuple[str, int], now: float | None = None) -> None:
        """Apply one received beacon to the peer table."""
        try:
            beacon = beacon_adapter.validate_json(data)
        except ValidationError as e:
            logger.debug(f"Ignoring invalid discovery packet from {addr}: {e}")
            return

        # Ignore our own beacons
        if beacon.id == self._self_id:
            return

        if isinstance(beacon, GoodbyeBeacon):
            peer = self._peers.pop(beacon.id, None)
            if peer:
                logger.info(f"Peer left: {peer.display_name} ({peer.address})")
                self._emit(PEER_LEFT, peer)
            return

        seen_at = time.time() if now is None else now
        peer = self._peers.get(beacon.id)
        if peer is None:
            peer = PeerRecord(
                peer_id=beacon.id,
                address=addr[0],
                display_name=beacon.username,
                last_seen_at=seen_at,
            )
            self._peers[beacon.id] = peer
            logger.info(f"Discovered peer: {peer.display_name} ({peer.address})")
            self._emit(PEER_DISCOVERED, peer)
        else:
            peer.last_seen_at = seen_at
            peer.display_name = beacon.username
            peer.address = addr[0]

    def sweep(self, now: float | None = None) -> list[PeerRecord]:
        """Remove peers that have not announced within the timeout."""
        now = time.time() if now is None else now
        stale = [
            peer for peer in self._peers.values()
            if now - peer.last_seen_at > self._peer_timeout
        ]
        for peer in stale:
            del self._peers[peer.peer_id]
            logger.info(f"Peer timed out: {peer.display_name} ({peer.address})")
            self._emit(PEER_TIMEOUT_EVENT, peer)
        return stale

    def _send(self, beacon: AnnounceBeacon | GoodbyeBeacon) -> None:
        if not self._transport:
            return
        data = beacon.model_dump_json().encode("utf-8")
        try:
            self._transport.sendto(data, (get_broadcast_address(), self._port))
        except OSError as e:
            logger.warning(f"Could not send {beacon.type} beacon: {e}")

    async def _announce_loop(self) -> None:
        """Periodically send an announce beacon."""
        while True:
            self.announce()
            await asyncio.sleep(self._announce_interval)

    async def _sweep_loop(self) -> None:
        """Periodically remove stale peers."""
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()
