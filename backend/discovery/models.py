"""Pydantic models for peer discovery."""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class PeerRecord(BaseModel):
    """Represents a discovered device on the LAN."""
    peer_id: str
    address: str
    display_name: str
    last_seen_at: float  # Unix timestamp


class AnnounceBeacon(BaseModel):
    """Periodic presence broadcast."""
    type: Literal["announce"] = "announce"
    id: str
    username: str = ""


class GoodbyeBeacon(BaseModel):
    """Best-effort departure notice sent on shutdown."""
    type: Literal["goodbye"] = "goodbye"
    id: str


Beacon = Annotated[Union[AnnounceBeacon, GoodbyeBeacon], Field(discriminator="type")]
beacon_adapter: TypeAdapter[Beacon] = TypeAdapter(Beacon)
