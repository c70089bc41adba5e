"""Signaling relay tests."""

import json
from unittest.mock import Mock

import pytest

from events import SIGNAL
from signaling.models import SignalMessage
from signaling.service import SignalingRelay


class TestSignalingRelay:

    def setup_method(self):
        self.relay = SignalingRelay(port=41235)
        self.received = []
        self.relay.on(SIGNAL, self.received.append)

    def test_inbound_signal_is_published_with_sender_address(self):
        data = json.dumps({
            "type": "webrtc-signal",
            "from": "alice",
            "to": "bob",
            "signal": {"kind": "offer", "publicKey": "ab"},
        }).encode()

        self.relay.handle_datagram(data, ("10.0.0.5", 41235))

        assert len(self.received) == 1
        inbound = self.received[0]
        assert inbound.address == "10.0.0.5"
        assert inbound.message.sender_id == "alice"
        assert inbound.message.receiver_id == "bob"
        assert inbound.message.signal == {"kind": "offer", "publicKey": "ab"}

    @pytest.mark.parametrize("data", [
        b"not json",
        b'{"type": "announce", "id": "x", "username": "y"}',
        b'{"type": "webrtc-signal", "from": "a"}',
    ])
    def test_non_signal_datagrams_are_dropped(self, data):
        self.relay.handle_datagram(data, ("10.0.0.5", 41235))
        assert self.received == []

    def test_send_before_start_is_noop(self):
        # No transport bound yet: nothing to assert but that it does not raise.
        self.relay.send("10.0.0.9", SignalMessage(sender_id="a", receiver_id="b", signal=None))
        assert not self.relay.is_running

    def test_send_serializes_wire_field_names(self):
        self.relay._transport = Mock()

        self.relay.send("10.0.0.9", SignalMessage(sender_id="a", receiver_id="b", signal={"x": 1}))

        data, target = self.relay._transport.sendto.call_args.args
        assert target == ("10.0.0.9", 41235)
        assert json.loads(data) == {
            "type": "webrtc-signal",
            "from": "a",
            "to": "b",
            "signal": {"x": 1},
        }

    def test_send_error_is_not_raised(self):
        self.relay._transport = Mock()
        self.relay._transport.sendto.side_effect = OSError("no route")

        self.relay.send("10.0.0.9", SignalMessage(sender_id="a", receiver_id="b", signal=1))

    @pytest.mark.asyncio
    async def test_send_after_stop_is_noop(self):
        transport = Mock()
        self.relay._transport = transport

        await self.relay.stop()
        self.relay.send("10.0.0.9", SignalMessage(sender_id="a", receiver_id="b", signal=1))

        transport.close.assert_called_once()
        transport.sendto.assert_not_called()
