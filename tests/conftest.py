"""
Shared test doubles.

FakeChannel is driven by hand from tests; MemoryChannel and LoopbackRelay
link two in-process peers so full exchanges can run without sockets.
"""

import asyncio
import json
import uuid

import pytest

from connection.channel import Channel
from signaling.models import SignalMessage
from signaling.service import SignalingRelay


class FakeChannel(Channel):
    """Channel stand-in whose notifications are fired by the test."""

    def __init__(self, initiator: bool, peer_address: str):
        super().__init__(initiator)
        self.peer_address = peer_address
        self.initiated = False
        self.signals: list = []
        self.sent: list[str] = []
        self.closed = False
        self.fail_send = False
        self.fail_close = False
        self.fail_signal = False
        self.fail_initiate = False

    def initiate(self) -> None:
        if self.fail_initiate:
            raise OSError("no route to peer")
        self.initiated = True
        if self.initiator:
            self._fire_signal({"kind": "offer"})

    def signal(self, payload) -> None:
        if self.fail_signal:
            raise ValueError("bad payload")
        self.signals.append(payload)

    def send(self, data: str) -> bool:
        if self.fail_send:
            raise ConnectionError("channel broken")
        self.sent.append(data)
        return True

    def close(self) -> None:
        if self.fail_close:
            raise RuntimeError("close failed")
        if self.closed:
            return
        self.closed = True
        self._fire_close()

    # --- Test drivers ---

    def open(self) -> None:
        self._fire_connect()

    def receive(self, data) -> None:
        self._fire_data(data if isinstance(data, str) else json.dumps(data))

    def fail(self, exc: Exception) -> None:
        self._fire_error(exc)

    def sent_json(self) -> list[dict]:
        return [json.loads(s) for s in self.sent]


class ChannelRecorder:
    """ChannelFactory that keeps every FakeChannel it creates."""

    def __init__(self):
        self.channels: list[FakeChannel] = []

    def __call__(self, initiator: bool, peer_address: str) -> FakeChannel:
        channel = FakeChannel(initiator, peer_address)
        self.channels.append(channel)
        return channel


class RecordingRelay(SignalingRelay):
    """Relay that records outbound messages instead of using a socket."""

    def __init__(self):
        super().__init__(port=0)
        self.outbox: list[tuple[str, SignalMessage]] = []

    def send(self, address: str, message: SignalMessage) -> None:
        self.outbox.append((address, message))


# --- In-process network ---

class MemoryNetwork:
    def __init__(self):
        self.relays: dict[str, "LoopbackRelay"] = {}
        self.waiting: dict[str, "MemoryChannel"] = {}


class LoopbackRelay(SignalingRelay):
    """Relay that delivers to another LoopbackRelay on the same MemoryNetwork."""

    def __init__(self, network: MemoryNetwork, address: str):
        super().__init__(port=0)
        self.network = network
        self.address = address
        network.relays[address] = self

    def send(self, address: str, message: SignalMessage) -> None:
        target = self.network.relays.get(address)
        if target is not None:
            asyncio.get_running_loop().call_soon(target.deliver, message, self.address)


class MemoryChannel(Channel):
    """Channel whose two ends are paired through a token in the signal payload."""

    def __init__(self, network: MemoryNetwork, initiator: bool):
        super().__init__(initiator)
        self.network = network
        self.remote: "MemoryChannel | None" = None
        self.closed = False

    def initiate(self) -> None:
        if self.initiator:
            token = uuid.uuid4().hex
            self.network.waiting[token] = self
            self._fire_signal({"token": token})

    def signal(self, payload) -> None:
        other = self.network.waiting.pop(payload["token"])
        self.remote, other.remote = other, self
        loop = asyncio.get_running_loop()
        loop.call_soon(self._fire_connect)
        loop.call_soon(other._fire_connect)

    def send(self, data: str) -> bool:
        if self.closed or self.remote is None:
            return False
        asyncio.get_running_loop().call_soon(self.remote._fire_data, data)
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._fire_close()
        if self.remote is not None:
            asyncio.get_running_loop().call_soon(self.remote.close)


@pytest.fixture
def recorder():
    return ChannelRecorder()


@pytest.fixture
def relay():
    return RecordingRelay()


@pytest.fixture
def memory_network():
    return MemoryNetwork()


def announce(peer_id: str, username: str) -> bytes:
    return json.dumps({"type": "announce", "id": peer_id, "username": username}).encode()
