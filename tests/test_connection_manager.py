"""
Connection manager tests.

Channels are FakeChannels created through a recording factory; the relay
records outbound signal messages instead of touching a socket.
"""

import pytest

from connection.manager import ConnectionManager
from events import CONNECTION_REQUEST, PEER_CONNECTED, PEER_DISCONNECTED, PEER_ERROR
from signaling.models import SignalMessage


def inbound(relay, sender, payload, address="10.0.0.2", receiver="me"):
    relay.deliver(SignalMessage(sender_id=sender, receiver_id=receiver, signal=payload), address)


class TestConnect:
    """Pending/active bookkeeping."""

    @pytest.fixture(autouse=True)
    def _manager(self, relay, recorder):
        self.relay = relay
        self.recorder = recorder
        self.manager = ConnectionManager(relay, recorder, self_id="me")
        self.events = []
        for name in (PEER_CONNECTED, PEER_DISCONNECTED, PEER_ERROR, CONNECTION_REQUEST):
            self.manager.on(name, lambda payload, name=name: self.events.append((name, payload)))

    def test_connect_twice_creates_one_channel(self):
        first = self.manager.connect("bob", "10.0.0.2", "Bob")
        second = self.manager.connect("bob", "10.0.0.2", "Bob")

        assert first is not None
        assert second is None
        assert len(self.recorder.channels) == 1
        assert [p.peer_id for p in self.manager.pending_peers()] == ["bob"]

    def test_local_signal_is_forwarded_to_peer_address(self):
        self.manager.connect("bob", "10.0.0.2", "Bob")

        assert len(self.relay.outbox) == 1
        address, message = self.relay.outbox[0]
        assert address == "10.0.0.2"
        assert message.sender_id == "me"
        assert message.receiver_id == "bob"
        assert message.signal == {"kind": "offer"}

    def test_connect_promotes_pending_to_active(self):
        channel = self.manager.connect("bob", "10.0.0.2", "Bob")
        channel.open()

        assert self.manager.is_connected("bob")
        assert not self.manager.is_pending("bob")
        name, payload = self.events[-1]
        assert name == PEER_CONNECTED
        assert payload.peer_id == "bob"
        assert payload.display_name == "Bob"

    def test_connect_is_noop_while_active(self):
        self.manager.connect("bob", "10.0.0.2", "Bob").open()
        assert self.manager.connect("bob", "10.0.0.2", "Bob") is None
        assert len(self.recorder.channels) == 1

    def test_error_drops_pending_and_emits(self):
        channel = self.manager.connect("bob", "10.0.0.2", "Bob")
        channel.fail(RuntimeError("ice failed"))

        assert not self.manager.is_pending("bob")
        name, payload = self.events[-1]
        assert name == PEER_ERROR
        assert payload.error == "ice failed"
        # A fresh attempt is allowed afterwards.
        assert self.manager.connect("bob", "10.0.0.2", "Bob") is not None

    def test_initiate_failure_closes_channel_and_emits_error(self):
        def failing_factory(initiator, address):
            channel = self.recorder(initiator, address)
            channel.fail_initiate = True
            return channel

        manager = ConnectionManager(self.relay, failing_factory, self_id="me")
        errors = []
        disconnects = []
        manager.on(PEER_ERROR, errors.append)
        manager.on(PEER_DISCONNECTED, disconnects.append)

        assert manager.connect("bob", "10.0.0.2", "Bob") is None

        assert self.recorder.channels[0].closed
        assert not manager.is_pending("bob")
        assert [e.error for e in errors] == ["no route to peer"]
        assert disconnects == []

    def test_close_drops_active_and_emits_once(self):
        channel = self.manager.connect("bob", "10.0.0.2", "Bob")
        channel.open()
        channel.close()

        assert not self.manager.is_connected("bob")
        disconnects = [p for n, p in self.events if n == PEER_DISCONNECTED]
        assert [p.peer_id for p in disconnects] == ["bob"]

    def test_stale_channel_close_does_not_touch_new_connection(self):
        old = self.manager.connect("bob", "10.0.0.2", "Bob")
        old.fail(RuntimeError("first attempt failed"))
        new = self.manager.connect("bob", "10.0.0.2", "Bob")

        old.close()

        assert self.manager.is_pending("bob")
        assert self.manager.pending_peers()[0].channel is new

    def test_inbound_data_reaches_ingestion_path(self):
        received = []
        self.manager.on_data(lambda peer_id, raw: received.append((peer_id, raw)))
        channel = self.manager.connect("bob", "10.0.0.2", "Bob")
        channel.open()

        channel.receive('{"type": "text"}')

        assert received == [("bob", '{"type": "text"}')]


class TestSignalRouting:
    """Inbound signal dispatch."""

    @pytest.fixture(autouse=True)
    def _manager(self, relay, recorder):
        self.relay = relay
        self.recorder = recorder
        self.manager = ConnectionManager(relay, recorder, self_id="me")
        self.requests = []
        self.errors = []
        self.manager.on(CONNECTION_REQUEST, self.requests.append)
        self.manager.on(PEER_ERROR, self.errors.append)

    def test_signal_for_pending_peer_feeds_its_channel(self):
        channel = self.manager.connect("bob", "10.0.0.2", "Bob")

        inbound(self.relay, "bob", {"kind": "answer"})

        assert channel.signals == [{"kind": "answer"}]
        assert self.requests == []

    def test_unsolicited_signal_becomes_connection_request(self):
        inbound(self.relay, "carol", {"kind": "offer"}, address="10.0.0.3")

        assert len(self.requests) == 1
        request = self.requests[0]
        assert request.peer_id == "carol"
        assert request.address == "10.0.0.3"
        assert request.signal == {"kind": "offer"}
        assert self.recorder.channels == []

    def test_signal_addressed_to_someone_else_is_ignored(self):
        inbound(self.relay, "carol", {"kind": "offer"}, receiver="dave")
        assert self.requests == []

    def test_signal_for_active_peer_is_ignored(self):
        channel = self.manager.connect("bob", "10.0.0.2", "Bob")
        channel.open()

        inbound(self.relay, "bob", {"kind": "late"})

        assert channel.signals == []
        assert self.requests == []

    def test_accept_connection_feeds_initial_payload(self):
        channel = self.manager.accept_connection("carol", "10.0.0.3", "Carol", {"kind": "offer"})

        assert channel is not None
        assert channel.initiator is False
        assert channel.signals == [{"kind": "offer"}]
        assert self.manager.is_pending("carol")
        # Responders stay quiet until their channel produces an answer.
        assert self.relay.outbox == []

    def test_bad_signal_surfaces_as_peer_error(self):
        channel = self.manager.connect("bob", "10.0.0.2", "Bob")
        channel.fail_signal = True

        inbound(self.relay, "bob", {"kind": "garbage"})

        assert [e.peer_id for e in self.errors] == ["bob"]


class TestSendAndDisconnect:

    @pytest.fixture(autouse=True)
    def _manager(self, relay, recorder):
        self.recorder = recorder
        self.manager = ConnectionManager(relay, recorder, self_id="me")
        self.disconnects = []
        self.manager.on(PEER_DISCONNECTED, self.disconnects.append)

    def _active(self, peer_id):
        channel = self.manager.connect(peer_id, "10.0.0.9", peer_id.title())
        channel.open()
        return channel

    def test_send_requires_active_connection(self):
        self.manager.connect("bob", "10.0.0.2", "Bob")
        assert self.manager.send("bob", "hello") is False
        assert self.manager.send("nobody", "hello") is False

    def test_send_serializes_dicts(self):
        channel = self._active("bob")

        assert self.manager.send("bob", {"type": "text", "text": "hi"}) is True
        assert self.manager.send("bob", "raw") is True

        assert channel.sent == ['{"type":"text","text":"hi"}', "raw"]

    def test_channel_send_failure_becomes_false(self):
        channel = self._active("bob")
        channel.fail_send = True

        assert self.manager.send("bob", "hello") is False

    def test_disconnect_closes_and_emits_once(self):
        channel = self._active("bob")

        self.manager.disconnect("bob")

        assert channel.closed
        assert not self.manager.is_connected("bob")
        assert [d.peer_id for d in self.disconnects] == ["bob"]

    def test_disconnect_survives_close_failure(self):
        channel = self._active("bob")
        channel.fail_close = True

        self.manager.disconnect("bob")

        assert not self.manager.is_connected("bob")

    def test_disconnect_all_clears_tables_despite_close_failures(self):
        a = self._active("alice")
        b = self._active("bob")
        pending = self.manager.connect("carol", "10.0.0.3", "Carol")
        a.fail_close = True
        pending.fail_close = True

        self.manager.disconnect_all()

        assert self.manager.list_connections() == []
        assert self.manager.pending_peers() == []
        assert b.closed
