"""Application-wide configuration constants."""

import platform
from pathlib import Path

# --- Identity ---
APP_NAME = "lan-messenger"
DEVICE_NAME = platform.node() or "Anonymous"  # default display name, user can override

# --- Control API ---
API_HOST = "127.0.0.1"
API_PORT = 8765

# --- Discovery ---
DISCOVERY_PORT = 41234  # UDP
ANNOUNCE_INTERVAL = 3  # seconds
SWEEP_INTERVAL = 2  # seconds
PEER_TIMEOUT = 10  # seconds before a peer is considered offline

# --- Signaling ---
SIGNALING_PORT = 41235  # UDP

# --- Channel (encrypted TCP) ---
CHANNEL_BIND_HOST = "0.0.0.0"
CHANNEL_PORT_MIN = 50000
CHANNEL_PORT_MAX = 65000
MAX_FRAME_SIZE = 4 * 1024 * 1024

# --- Transfer ---
CHUNK_SIZE = 16384  # 16 KiB
CHUNK_PACING = 0.01  # seconds between chunk sends

# --- Storage ---
DEFAULT_SAVE_DIR = str(Path.home() / "Downloads" / "LAN Messenger")
