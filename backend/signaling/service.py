"""
UDP signaling relay.

Forwards opaque connection-establishment payloads between peers on a
dedicated port, separate from discovery broadcasts. Delivery is
fire-and-forget: no acknowledgement, no retry.
"""

import asyncio
import logging

from pydantic import ValidationError

from config import SIGNALING_PORT
from events import SIGNAL, EventEmitter
from net import open_udp_socket
from signaling.models import InboundSignal, SignalMessage

logger = logging.getLogger(__name__)


class SignalingProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol for receiving signal messages."""

    def __init__(self, relay: "SignalingRelay"):
        self.relay = relay

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self.relay.handle_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Signaling UDP error: {exc}")


class SignalingRelay(EventEmitter):
    """Unreliable point-to-point relay for Channel negotiation payloads."""

    def __init__(self, port: int = SIGNALING_PORT) -> None:
        super().__init__()
        self._port = port
        self._transport: asyncio.DatagramTransport | None = None

    @property
    def is_running(self) -> bool:
        return self._transport is not None

    async def start(self) -> None:
        """Bind the signaling socket and begin listening."""
        loop = asyncio.get_running_loop()
        sock = open_udp_socket(self._port)
        transport, _ = await loop.create_datagram_endpoint(
            lambda: SignalingProtocol(self),
            sock=sock,
        )
        self._transport = transport
        logger.info(f"Signaling listening on UDP port {self._port}")

    async def stop(self) -> None:
        """Release the socket. Later sends become no-ops."""
        if self._transport:
            try:
                self._transport.close()
            except Exception as e:
                logger.debug(f"Could not close signaling socket: {e}")
            self._transport = None
        logger.info("Signaling relay stopped")

    def send(self, address: str, message: SignalMessage) -> None:
        """Serialize and forward a message to ``address``, fire-and-forget."""
        if not self._transport:
            return
        data = message.model_dump_json(by_alias=True).encode("utf-8")
        try:
            self._transport.sendto(data, (address, self._port))
        except OSError as e:
            logger.error(f"Signaling send error to {address}: {e}")

    def handle_datagram(self, data: bytes, addr: tuple[str, int]) -> None:
        try:
            message = SignalMessage.model_validate_json(data)
        except ValidationError as e:
            logger.debug(f"Ignoring invalid signaling packet from {addr}: {e}")
            return
        self.deliver(message, addr[0])

    def deliver(self, message: SignalMessage, address: str) -> None:
        """Publish a received message to ``signal`` subscribers."""
        self._emit(SIGNAL, InboundSignal(message=message, address=address))
