"""Application envelopes exchanged over an established Channel."""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class _Envelope(BaseModel):
    """camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TextEnvelope(_Envelope):
    type: Literal["text"] = "text"
    text: str
    timestamp: int  # epoch milliseconds
    username: str = ""


class FileOfferEnvelope(_Envelope):
    type: Literal["file-offer"] = "file-offer"
    file_id: str
    file_name: str
    file_size: int = Field(ge=0)
    username: str = ""


class FileAcceptEnvelope(_Envelope):
    type: Literal["file-accept"] = "file-accept"
    file_id: str


class FileRejectEnvelope(_Envelope):
    type: Literal["file-reject"] = "file-reject"
    file_id: str


class FileChunkEnvelope(_Envelope):
    type: Literal["file-chunk"] = "file-chunk"
    file_id: str
    chunk_index: int
    data: str  # base64
    is_last: bool = False


Envelope = Annotated[
    Union[
        TextEnvelope,
        FileOfferEnvelope,
        FileAcceptEnvelope,
        FileRejectEnvelope,
        FileChunkEnvelope,
    ],
    Field(discriminator="type"),
]
envelope_adapter: TypeAdapter[Envelope] = TypeAdapter(Envelope)


# --- Inbound events: the envelope plus the peer it came from ---

class TextMessage(TextEnvelope):
    peer_id: str


class FileOffer(FileOfferEnvelope):
    peer_id: str


class FileAccept(FileAcceptEnvelope):
    peer_id: str


class FileReject(FileRejectEnvelope):
    peer_id: str


class FileChunk(FileChunkEnvelope):
    peer_id: str


class UnrecognizedData(BaseModel):
    peer_id: str
    data: str
    reason: str
