"""Pydantic models for the signaling relay."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class SignalMessage(BaseModel):
    """Point-to-point datagram carrying an opaque Channel negotiation payload."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["webrtc-signal"] = "webrtc-signal"
    sender_id: str = Field(alias="from")
    receiver_id: str = Field(alias="to")
    signal: Any


class InboundSignal(BaseModel):
    """A signal message together with the address it came from."""
    message: SignalMessage
    address: str
