"""
Channel encryption: X25519 key agreement + AES-256-GCM frames.

Keys are ephemeral (one pair per channel) and travel hex-encoded inside
signal payloads. Every sealed frame binds its frame type as associated
data, so a payload sealed as DATA cannot be replayed as HELLO or CLOSE.
"""

import os
import logging

from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
)

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32
PUBLIC_KEY_SIZE = 32
CHANNEL_KEY_INFO = b"lan-messenger-channel-key"


class ChannelKeyPair:
    """One side's ephemeral X25519 key for a single channel negotiation."""

    def __init__(self) -> None:
        self._private_key = X25519PrivateKey.generate()
        self.public_hex = self._private_key.public_key().public_bytes(
            encoding=Encoding.Raw,
            format=PublicFormat.Raw,
        ).hex()

    def derive(self, peer_public_hex: str) -> bytes:
        """
        Derive the 32-byte AES-256 channel key shared with the peer.

        Raises ValueError if ``peer_public_hex`` is not a hex-encoded
        X25519 public key.
        """
        peer_bytes = bytes.fromhex(peer_public_hex)
        if len(peer_bytes) != PUBLIC_KEY_SIZE:
            raise ValueError(f"Expected {PUBLIC_KEY_SIZE}-byte public key, got {len(peer_bytes)}")
        shared_secret = self._private_key.exchange(X25519PublicKey.from_public_bytes(peer_bytes))
        return HKDF(
            algorithm=SHA256(),
            length=KEY_SIZE,
            salt=None,
            info=CHANNEL_KEY_INFO,
        ).derive(shared_secret)


def sealed_size(plaintext_len: int) -> int:
    """Size of a sealed frame payload for ``plaintext_len`` bytes of input."""
    return NONCE_SIZE + plaintext_len + TAG_SIZE


def seal_frame(key: bytes, frame_type: int, plaintext: bytes) -> bytes:
    """Returns nonce || ciphertext || tag, authenticated for ``frame_type``."""
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, bytes([frame_type]))


def open_frame(key: bytes, frame_type: int, sealed: bytes) -> bytes:
    """
    Reverse ``seal_frame``.

    Raises ValueError for payloads too short to hold a nonce and tag, and
    cryptography.exceptions.InvalidTag on tampering, a key mismatch or a
    payload sealed for another frame type.
    """
    if len(sealed) < NONCE_SIZE + TAG_SIZE:
        raise ValueError(f"Sealed frame of {len(sealed)} bytes is too short")
    return AESGCM(key).decrypt(sealed[:NONCE_SIZE], sealed[NONCE_SIZE:], bytes([frame_type]))
