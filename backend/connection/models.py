"""Pydantic models for connection bookkeeping and connection events."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from connection.channel import Channel


class ConnectionRole(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class PendingConnection(BaseModel):
    """A Channel that is still negotiating."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    peer_id: str
    channel: Channel = Field(exclude=True)
    role: ConnectionRole
    address: str
    display_name: str


class ActiveConnection(BaseModel):
    """An established Channel to a peer."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    peer_id: str
    channel: Channel = Field(exclude=True)
    address: str
    display_name: str


# --- Event payloads ---

class PeerConnected(BaseModel):
    peer_id: str
    display_name: str
    address: str


class PeerDisconnected(BaseModel):
    peer_id: str


class PeerError(BaseModel):
    peer_id: str
    error: str


class ConnectionRequest(BaseModel):
    """An unsolicited negotiation payload from a peer with no Channel yet."""
    peer_id: str
    address: str
    signal: Any
