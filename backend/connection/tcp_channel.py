"""
Encrypted TCP implementation of the Channel interface.

Negotiation runs over the signaling relay:

1. The initiator sends ``{"kind": "offer", "publicKey": ...}``.
2. The responder derives the channel key, listens on a random TCP port and
   answers with ``{"kind": "answer", "publicKey": ..., "port": ...}``.
3. The initiator derives the same key, dials the responder and proves it
   holds the key with an encrypted HELLO frame.

After that both sides exchange type-length framed, AES-256-GCM encrypted
messages until either side sends CLOSE or the socket drops.
"""

import asyncio
import logging
import random
import struct
from typing import Annotated, Any, Literal, Union

from cryptography.exceptions import InvalidTag
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from config import (
    CHANNEL_BIND_HOST,
    CHANNEL_PORT_MAX,
    CHANNEL_PORT_MIN,
    MAX_FRAME_SIZE,
)
from connection.channel import Channel
from security.crypto import ChannelKeyPair, open_frame, seal_frame, sealed_size

logger = logging.getLogger(__name__)

# --- Wire protocol helpers ---

HEADER_FORMAT = "!BI"  # 1-byte type + 4-byte length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
HELLO_MARKER = b"lan-messenger-hello"
BIND_ATTEMPTS = 10


class FrameType:
    HELLO = 0x01
    DATA = 0x02
    CLOSE = 0x03


def pack_frame(frame_type: int, payload: bytes = b"") -> bytes:
    """Build a type-length-payload frame."""
    return struct.pack(HEADER_FORMAT, frame_type, len(payload)) + payload


async def read_frame(
    reader: asyncio.StreamReader, max_size: int = MAX_FRAME_SIZE
) -> tuple[int, bytes]:
    """Receive a type-length-payload frame. Returns (type, payload)."""
    header = await reader.readexactly(HEADER_SIZE)
    frame_type, length = struct.unpack(HEADER_FORMAT, header)
    if length > max_size:
        raise ConnectionError(f"Frame of {length} bytes exceeds limit of {max_size}")
    payload = b""
    if length > 0:
        payload = await reader.readexactly(length)
    return frame_type, payload


# --- Signal payloads ---

class _SignalModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChannelOffer(_SignalModel):
    kind: Literal["offer"] = "offer"
    public_key: str


class ChannelAnswer(_SignalModel):
    kind: Literal["answer"] = "answer"
    public_key: str
    port: int


ChannelSignal = Annotated[Union[ChannelOffer, ChannelAnswer], Field(discriminator="kind")]
channel_signal_adapter: TypeAdapter[ChannelSignal] = TypeAdapter(ChannelSignal)


class SecureTcpChannel(Channel):
    """Channel carried over one TCP connection with per-channel ECDH keys."""

    def __init__(
        self,
        initiator: bool,
        peer_address: str,
        bind_host: str = CHANNEL_BIND_HOST,
        port_range: tuple[int, int] = (CHANNEL_PORT_MIN, CHANNEL_PORT_MAX),
        max_frame_size: int = MAX_FRAME_SIZE,
    ) -> None:
        super().__init__(initiator)
        self._peer_address = peer_address
        self._bind_host = bind_host
        self._port_range = port_range
        self._max_frame_size = max_frame_size
        self._keys: ChannelKeyPair | None = None
        self._applied: ChannelOffer | ChannelAnswer | None = None
        self._session_key: bytes | None = None
        self._server: asyncio.Server | None = None
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._tasks: set[asyncio.Task] = set()
        self._connected = False
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._connected and not self._closed

    def initiate(self) -> None:
        if not self.initiator:
            # Responders wait for the remote offer.
            return
        self._keys = ChannelKeyPair()
        self._fire_signal(ChannelOffer(public_key=self._keys.public_hex).model_dump(by_alias=True))

    def signal(self, payload: Any) -> None:
        """
        Apply an offer (responder) or answer (initiator).

        A repeat of the payload already applied is ignored, since the relay
        may deliver a datagram twice. Raises ValueError (pydantic.ValidationError
        included) for payloads that are malformed or arrive in the wrong role
        or order.
        """
        if self._closed:
            raise ValueError("Channel is closed")
        message = channel_signal_adapter.validate_python(payload)
        if self._applied is not None and message == self._applied:
            logger.debug(f"Ignoring repeated {message.kind} from {self._peer_address}")
            return

        if isinstance(message, ChannelOffer):
            if self.initiator or self._keys is not None:
                raise ValueError("Unexpected offer")
            keys = ChannelKeyPair()
            self._session_key = keys.derive(message.public_key)
            self._keys = keys
            self._applied = message
            self._spawn(self._listen(keys.public_hex))
        else:
            if not self.initiator or self._keys is None or self._session_key is not None:
                raise ValueError("Unexpected answer")
            self._session_key = self._keys.derive(message.public_key)
            self._applied = message
            self._spawn(self._dial(message.port))

    def send(self, data: str) -> bool:
        if not self.connected or self._writer is None or self._writer.is_closing():
            return False
        plaintext = data.encode("utf-8")
        size = sealed_size(len(plaintext))
        if size > self._max_frame_size:
            logger.warning(
                f"Refusing {size}-byte frame to {self._peer_address} "
                f"(limit {self._max_frame_size})"
            )
            return False
        self._writer.write(
            pack_frame(FrameType.DATA, seal_frame(self._session_key, FrameType.DATA, plaintext))
        )
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._writer is not None:
            if self._connected and not self._writer.is_closing():
                try:
                    self._writer.write(pack_frame(FrameType.CLOSE))
                except (ConnectionError, RuntimeError):
                    pass
            self._writer.close()
        if self._server is not None:
            self._server.close()

        current = asyncio.current_task() if self._tasks else None
        for task in self._tasks:
            if task is not current:
                task.cancel()

        logger.debug(f"Channel to {self._peer_address} closed")
        self._fire_close()

    # --- Internals ---

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _fail(self, exc: Exception) -> None:
        if self._closed:
            return
        logger.warning(f"Channel to {self._peer_address} failed: {exc}")
        self._fire_error(exc)
        self.close()

    async def _listen(self, public_hex: str) -> None:
        """(Responder) Open a listener on a random port and send the answer."""
        low, high = self._port_range
        for attempt in range(BIND_ATTEMPTS):
            port = random.randint(low, high)
            try:
                self._server = await asyncio.start_server(
                    self._handle_incoming, self._bind_host, port
                )
                break
            except OSError:
                continue
        else:
            self._fail(RuntimeError("Could not bind to any channel port"))
            return

        if self._closed:
            self._server.close()
            return
        logger.debug(f"Channel listening on port {port}")
        self._fire_signal(
            ChannelAnswer(public_key=public_hex, port=port).model_dump(by_alias=True)
        )

    async def _handle_incoming(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """(Responder) Accept the first connection that proves it holds the key."""
        if self._writer is not None or self._closed:
            writer.close()
            return
        try:
            frame_type, payload = await read_frame(reader, self._max_frame_size)
            if frame_type != FrameType.HELLO:
                raise ConnectionError(f"Expected HELLO, got {frame_type:#x}")
            if open_frame(self._session_key, FrameType.HELLO, payload) != HELLO_MARKER:
                raise ConnectionError("HELLO marker mismatch")
        except (asyncio.IncompleteReadError, ConnectionError, InvalidTag, ValueError) as e:
            logger.warning(f"Rejected channel connection: {e}")
            writer.close()
            return

        if self._writer is not None or self._closed:
            writer.close()
            return
        self._reader, self._writer = reader, writer
        self._server.close()
        self._connected = True
        self._fire_connect()
        await self._read_loop()

    async def _dial(self, port: int) -> None:
        """(Initiator) Connect to the responder's listener and say HELLO."""
        try:
            reader, writer = await asyncio.open_connection(self._peer_address, port)
        except OSError as e:
            self._fail(e)
            return
        if self._closed:
            writer.close()
            return

        self._reader, self._writer = reader, writer
        writer.write(
            pack_frame(FrameType.HELLO, seal_frame(self._session_key, FrameType.HELLO, HELLO_MARKER))
        )
        try:
            await writer.drain()
        except ConnectionError as e:
            self._fail(e)
            return

        self._connected = True
        self._fire_connect()
        await self._read_loop()

    async def _read_loop(self) -> None:
        try:
            while not self._closed:
                frame_type, payload = await read_frame(self._reader, self._max_frame_size)
                if frame_type == FrameType.CLOSE:
                    break
                if frame_type == FrameType.DATA:
                    plaintext = open_frame(self._session_key, FrameType.DATA, payload)
                    self._fire_data(plaintext.decode("utf-8"))
                else:
                    logger.warning(f"Unexpected frame type on channel: {frame_type:#x}")
        except asyncio.IncompleteReadError:
            pass
        except (ConnectionError, InvalidTag, ValueError) as e:
            self._fail(e)
            return
        self.close()
