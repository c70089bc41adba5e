"""
Messenger node — composes the networking components of one LAN peer.

Owns one Discovery service, Signaling relay, Connection manager, Message
protocol and File transfer engine, wires them by reference, and applies
the application policy the components leave open: auto-accepting
connection requests from discovered peers and saving received files.
"""

import asyncio
import logging
import os
import uuid
from pathlib import Path

from pydantic import BaseModel

from config import CHUNK_PACING, DEFAULT_SAVE_DIR, DEVICE_NAME
from connection.channel import ChannelFactory
from connection.manager import ConnectionManager
from connection.models import ConnectionRequest
from connection.tcp_channel import SecureTcpChannel
from discovery.models import PeerRecord
from discovery.service import DiscoveryService
from events import (
    CONNECTION_REQUEST,
    FILE_RECEIVED,
    FILE_SAVED,
    TEXT_MESSAGE,
    UNRECOGNIZED_DATA,
    EventEmitter,
)
from messaging.protocol import MessageProtocol
from signaling.service import SignalingRelay
from transfer.engine import FileTransferEngine
from transfer.models import FileReceived

logger = logging.getLogger(__name__)


class FileSaved(BaseModel):
    transfer_id: str
    file_name: str
    path: str
    peer_id: str


def unique_path(directory: str, file_name: str) -> Path:
    """Return a path in ``directory`` for ``file_name`` that does not exist yet."""
    safe_name = os.path.basename(file_name.replace("\\", "/")) or "received-file"
    if safe_name in (".", ".."):
        safe_name = "received-file"
    candidate = Path(directory) / safe_name
    stem, suffix = candidate.stem, candidate.suffix
    counter = 1
    while candidate.exists():
        candidate = Path(directory) / f"{stem} ({counter}){suffix}"
        counter += 1
    return candidate


class MessengerNode(EventEmitter):
    """One LAN Messenger peer: discovery, connections, chat and file transfer."""

    def __init__(
        self,
        device_name: str = DEVICE_NAME,
        save_dir: str = DEFAULT_SAVE_DIR,
        channel_factory: ChannelFactory | None = None,
        discovery: DiscoveryService | None = None,
        signaling: SignalingRelay | None = None,
        pacing: float = CHUNK_PACING,
    ) -> None:
        super().__init__()
        self.peer_id = str(uuid.uuid4())
        self._display_name = device_name
        self._save_dir = save_dir

        self.discovery = discovery or DiscoveryService()
        self.signaling = signaling or SignalingRelay()
        self.connections = ConnectionManager(
            self.signaling,
            channel_factory or SecureTcpChannel,
            self_id=self.peer_id,
        )
        self.messages = MessageProtocol(self.connections)
        self.transfers = FileTransferEngine(self.messages, pacing=pacing)

        self.connections.on(CONNECTION_REQUEST, self._on_connection_request)
        self.transfers.on(FILE_RECEIVED, self._on_file_received)

        # Forward everything to catch-all subscribers. File envelopes are
        # re-published by the transfer engine, so only chat and
        # unrecognized data are taken from the message protocol.
        for component in (self.discovery, self.connections, self.transfers):
            component.on_any(self._emit)
        for event in (TEXT_MESSAGE, UNRECOGNIZED_DATA):
            self.messages.on(event, lambda payload, event=event: self._emit(event, payload))

    @property
    def display_name(self) -> str:
        return self._display_name

    @display_name.setter
    def display_name(self, name: str) -> None:
        self._display_name = name
        self.discovery.update_display_name(name)

    @property
    def save_dir(self) -> str:
        return self._save_dir

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self._save_dir = path

    async def start(self) -> None:
        """Start discovery and signaling."""
        logger.info(f"Starting node {self.peer_id} as '{self._display_name}'")
        await self.discovery.start(self.peer_id, self._display_name)
        await self.signaling.start()

    async def stop(self) -> None:
        """Say goodbye, release sockets and close every channel."""
        logger.info("Stopping node...")
        await self.discovery.stop()
        await self.signaling.stop()
        self.transfers.cancel_all()
        self.connections.disconnect_all()

    # --- Operations used by the control API ---

    def list_peers(self) -> list[PeerRecord]:
        return self.discovery.list_peers()

    def connect_peer(self, peer_id: str) -> bool:
        """Start a connection to a discovered peer. Returns False if unknown."""
        peer = self.discovery.get_peer(peer_id)
        if peer is None:
            return False
        self.connections.connect(peer.peer_id, peer.address, peer.display_name, initiator=True)
        return True

    def send_text(self, peer_id: str, text: str) -> bool:
        return self.messages.send_text(peer_id, text, self._display_name)

    async def send_file(self, peer_id: str, file_path: str) -> str:
        return await self.transfers.send_file(peer_id, file_path, self._display_name)

    # --- Policy ---

    def _on_connection_request(self, request: ConnectionRequest) -> None:
        peer = self.discovery.get_peer(request.peer_id)
        if peer is None:
            logger.info(f"Ignoring connection request from undiscovered peer {request.peer_id}")
            return
        self.connections.accept_connection(
            request.peer_id, request.address, peer.display_name, request.signal
        )

    async def _on_file_received(self, received: FileReceived) -> None:
        try:
            path = await asyncio.to_thread(self._write_file, received)
        except OSError as e:
            logger.error(f"Could not save '{received.file_name}': {e}")
            return
        logger.info(f"Saved '{received.file_name}' to {path}")
        self._emit(
            FILE_SAVED,
            FileSaved(
                transfer_id=received.transfer_id,
                file_name=received.file_name,
                path=str(path),
                peer_id=received.peer_id,
            ),
        )

    def _write_file(self, received: FileReceived) -> Path:
        os.makedirs(self._save_dir, exist_ok=True)
        path = unique_path(self._save_dir, received.file_name)
        path.write_bytes(received.data)
        return path
