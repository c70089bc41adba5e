"""Pydantic models for file transfer."""

from enum import Enum

from pydantic import BaseModel, Field


class TransferState(str, Enum):
    """All possible states for a file transfer."""
    OFFERED = "offered"
    SENDING = "sending"
    OFFER_RECEIVED = "offer_received"
    RECEIVING = "receiving"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = (
    TransferState.COMPLETED,
    TransferState.REJECTED,
    TransferState.FAILED,
    TransferState.CANCELLED,
)


class TransferDirection(str, Enum):
    SENDING = "sending"
    RECEIVING = "receiving"


class TransferInfo(BaseModel):
    """Snapshot of a single file transfer, exposed to the control API."""
    transfer_id: str
    file_name: str
    file_size: int
    direction: TransferDirection
    peer_id: str
    state: TransferState
    transferred_bytes: int = 0
    progress_percent: float = 0.0
    error_message: str | None = None


class OutgoingTransfer(BaseModel):
    transfer_id: str
    peer_id: str
    file_name: str
    total_size: int
    chunks: list[bytes]
    next_chunk_index: int = 0
    started: bool = False

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)


class IncomingTransfer(BaseModel):
    transfer_id: str
    peer_id: str
    file_name: str
    total_size: int
    total_chunks: int
    chunk_slots: list[bytes | None]
    received_indices: set[int] = Field(default_factory=set)

    @property
    def received_count(self) -> int:
        return len(self.received_indices)

    @property
    def is_complete(self) -> bool:
        return self.received_count == self.total_chunks

    def assemble(self) -> bytes:
        return b"".join(chunk for chunk in self.chunk_slots if chunk is not None)


# --- Event payloads ---

class TransferInitiated(BaseModel):
    transfer_id: str
    file_name: str
    file_size: int
    peer_id: str


class TransferProgress(BaseModel):
    transfer_id: str
    file_name: str
    progress: float  # 0.0 .. 1.0
    sent: int
    total: int


class TransferComplete(BaseModel):
    transfer_id: str
    file_name: str
    peer_id: str


class TransferRejected(BaseModel):
    transfer_id: str
    peer_id: str


class TransferFailed(BaseModel):
    transfer_id: str
    peer_id: str
    error: str


class ReceiveProgress(BaseModel):
    transfer_id: str
    file_name: str
    progress: float  # 0.0 .. 1.0
    received: int
    total: int


class FileReceived(BaseModel):
    transfer_id: str
    file_name: str
    file_size: int
    peer_id: str
    data: bytes = Field(exclude=True)
