"""Socket helpers shared by the discovery and signaling services."""

import logging
import socket

logger = logging.getLogger(__name__)

FALLBACK_BROADCAST = "255.255.255.255"


def open_udp_socket(port: int, host: str = "0.0.0.0", broadcast: bool = False) -> socket.socket:
    """
    Create a non-blocking UDP socket bound to ``host:port``.

    SO_REUSEADDR is set BEFORE binding so multiple instances on one
    machine can share the same port.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if broadcast:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.setblocking(False)
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    return sock


def get_local_ip() -> str | None:
    """Return the IPv4 address of the interface that routes off-host, if any."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # No packet is sent; connect() only selects the outgoing interface.
        sock.connect(("10.255.255.255", 1))
        ip = sock.getsockname()[0]
    except OSError as e:
        logger.debug(f"Could not resolve local IP: {e}")
        return None
    finally:
        sock.close()
    if not ip or ip.startswith("127.") or ip == "0.0.0.0":
        return None
    return ip


def get_broadcast_address() -> str:
    """
    Derive the subnet broadcast address from the current local IPv4 address.

    Resolved on every call so interface changes are picked up without a
    restart. Assumes a /24 subnet, falling back to the limited broadcast
    address when no interface is up.
    """
    ip = get_local_ip()
    if ip is None:
        return FALLBACK_BROADCAST
    parts = ip.split(".")
    if len(parts) != 4:
        return FALLBACK_BROADCAST
    parts[3] = "255"
    return ".".join(parts)
