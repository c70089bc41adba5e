"""Channel key agreement and frame sealing tests."""

import pytest
from cryptography.exceptions import InvalidTag

from connection.tcp_channel import FrameType
from security.crypto import ChannelKeyPair, open_frame, seal_frame, sealed_size


class TestChannelKeyPair:

    def test_both_sides_derive_the_same_key(self):
        alice, bob = ChannelKeyPair(), ChannelKeyPair()

        key = alice.derive(bob.public_hex)

        assert key == bob.derive(alice.public_hex)
        assert len(key) == 32

    @pytest.mark.parametrize("public_hex", ["zz" * 32, "00" * 16, ""])
    def test_malformed_public_key_raises_value_error(self, public_hex):
        with pytest.raises(ValueError):
            ChannelKeyPair().derive(public_hex)


class TestFrameSealing:

    def setup_method(self):
        alice, bob = ChannelKeyPair(), ChannelKeyPair()
        self.key = alice.derive(bob.public_hex)

    def test_sealed_size_matches_output(self):
        sealed = seal_frame(self.key, FrameType.DATA, b"hello")
        assert len(sealed) == sealed_size(5)
        assert open_frame(self.key, FrameType.DATA, sealed) == b"hello"

    def test_frame_type_is_authenticated(self):
        sealed = seal_frame(self.key, FrameType.DATA, b"payload")
        with pytest.raises(InvalidTag):
            open_frame(self.key, FrameType.HELLO, sealed)

    def test_wrong_key_is_rejected(self):
        other = ChannelKeyPair().derive(ChannelKeyPair().public_hex)
        sealed = seal_frame(self.key, FrameType.DATA, b"payload")
        with pytest.raises(InvalidTag):
            open_frame(other, FrameType.DATA, sealed)

    def test_truncated_frame_raises_value_error(self):
        with pytest.raises(ValueError):
            open_frame(self.key, FrameType.DATA, b"\x00" * 10)
