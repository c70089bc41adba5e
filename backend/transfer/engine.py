"""
File Transfer Engine — offer, accept/reject, chunked send, reassembly.

Sender:   offered -> (accepted => sending -> complete) | rejected | cancelled | failed
Receiver: offer-received -> accepted-awaiting-chunks -> complete | cancelled | failed

Chunks travel base64-encoded inside ``file-chunk`` envelopes. Each
outgoing transfer is pumped by its own task, one chunk per pacing step,
so a transfer never has more than one chunk send in flight.

A peer disconnecting fails every transfer in flight with it and drops its
unanswered offers.
"""

import asyncio
import base64
import binascii
import logging
import math
import os
import uuid

from config import CHUNK_PACING, CHUNK_SIZE
from events import (
    FILE_ACCEPT,
    FILE_CHUNK,
    FILE_OFFER,
    FILE_RECEIVED,
    FILE_REJECT,
    PEER_DISCONNECTED,
    RECEIVE_PROGRESS,
    TRANSFER_COMPLETE,
    TRANSFER_FAILED,
    TRANSFER_INITIATED,
    TRANSFER_PROGRESS,
    TRANSFER_REJECTED,
    EventEmitter,
)
from connection.models import PeerDisconnected
from messaging.models import FileAccept, FileChunk, FileOffer, FileReject
from messaging.protocol import MessageProtocol
from transfer.models import (
    FileReceived,
    IncomingTransfer,
    OutgoingTransfer,
    ReceiveProgress,
    TERMINAL_STATES,
    TransferComplete,
    TransferDirection,
    TransferFailed,
    TransferInfo,
    TransferInitiated,
    TransferProgress,
    TransferRejected,
    TransferState,
)

logger = logging.getLogger(__name__)


def split_chunks(data: bytes, chunk_size: int = CHUNK_SIZE) -> list[bytes]:
    """Split ``data`` into ceil(len / chunk_size) chunks."""
    return [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)]


def chunk_count(file_size: int, chunk_size: int = CHUNK_SIZE) -> int:
    return math.ceil(file_size / chunk_size)


def new_transfer_id() -> str:
    return uuid.uuid4().hex


def _read_file(file_path: str) -> bytes:
    with open(file_path, "rb") as f:
        return f.read()


class FileTransferEngine(EventEmitter):
    """Tracks one state machine per transfer in each direction."""

    def __init__(
        self,
        messages: MessageProtocol,
        chunk_size: int = CHUNK_SIZE,
        pacing: float = CHUNK_PACING,
    ) -> None:
        super().__init__()
        self._messages = messages
        self._chunk_size = chunk_size
        self._pacing = pacing
        self._outgoing: dict[str, OutgoingTransfer] = {}
        self._incoming: dict[str, IncomingTransfer] = {}
        self._offers: dict[str, FileOffer] = {}
        self._pumps: dict[str, asyncio.Task] = {}
        self._history: dict[str, TransferInfo] = {}

        self._messages.on(FILE_OFFER, self._on_offer)
        self._messages.on(FILE_ACCEPT, self._on_accept)
        self._messages.on(FILE_REJECT, self._on_reject)
        self._messages.on(FILE_CHUNK, self._on_chunk)
        self._messages.connections.on(PEER_DISCONNECTED, self._on_peer_disconnected)

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    def get_transfers(self) -> list[TransferInfo]:
        """Return all transfers (active + finished)."""
        return list(self._history.values())

    def get_offer(self, transfer_id: str) -> FileOffer | None:
        """Return an inbound offer that has not been answered yet."""
        return self._offers.get(transfer_id)

    def has_outgoing(self, transfer_id: str) -> bool:
        return transfer_id in self._outgoing

    def has_incoming(self, transfer_id: str) -> bool:
        return transfer_id in self._incoming

    # --- Sender side ---

    async def send_file(self, peer_id: str, file_path: str, display_name: str) -> str:
        """
        Read ``file_path``, register an outgoing transfer and offer it to ``peer_id``.

        Chunks are only sent once the peer accepts. Returns the transfer id.

        Raises:
            OSError: the file could not be read.
            ConnectionError: the offer could not be handed to the peer's channel.
        """
        data = await asyncio.to_thread(_read_file, file_path)
        transfer = OutgoingTransfer(
            transfer_id=new_transfer_id(),
            peer_id=peer_id,
            file_name=os.path.basename(file_path),
            total_size=len(data),
            chunks=split_chunks(data, self._chunk_size),
        )
        self._outgoing[transfer.transfer_id] = transfer

        sent = self._messages.send_file_offer(
            peer_id, transfer.transfer_id, transfer.file_name, transfer.total_size, display_name
        )
        if not sent:
            del self._outgoing[transfer.transfer_id]
            raise ConnectionError(f"Peer {peer_id} is not connected")

        logger.info(
            f"Offered '{transfer.file_name}' ({transfer.total_size} bytes, "
            f"{transfer.total_chunks} chunks) to {peer_id}"
        )
        self._record(
            TransferInfo(
                transfer_id=transfer.transfer_id,
                file_name=transfer.file_name,
                file_size=transfer.total_size,
                direction=TransferDirection.SENDING,
                peer_id=peer_id,
                state=TransferState.OFFERED,
            )
        )
        self._emit(
            TRANSFER_INITIATED,
            TransferInitiated(
                transfer_id=transfer.transfer_id,
                file_name=transfer.file_name,
                file_size=transfer.total_size,
                peer_id=peer_id,
            ),
        )
        return transfer.transfer_id

    def _on_accept(self, event: FileAccept) -> None:
        transfer = self._outgoing.get(event.file_id)
        if transfer is None or transfer.peer_id != event.peer_id:
            logger.debug(f"Ignoring accept for unknown transfer {event.file_id}")
            return
        if transfer.started:
            return

        transfer.started = True
        self._update(transfer.transfer_id, state=TransferState.SENDING)
        self._pumps[transfer.transfer_id] = asyncio.ensure_future(self._pump(transfer))

    def _on_reject(self, event: FileReject) -> None:
        transfer = self._outgoing.get(event.file_id)
        if transfer is None or transfer.peer_id != event.peer_id:
            logger.debug(f"Ignoring reject for unknown transfer {event.file_id}")
            return

        del self._outgoing[event.file_id]
        logger.info(f"Transfer of '{transfer.file_name}' was rejected by {event.peer_id}")
        self._update(event.file_id, state=TransferState.REJECTED)
        self._emit(TRANSFER_REJECTED, TransferRejected(transfer_id=event.file_id, peer_id=event.peer_id))

    async def _pump(self, transfer: OutgoingTransfer) -> None:
        """Send the chunks of ``transfer`` one pacing step at a time."""
        transfer_id = transfer.transfer_id
        try:
            while transfer.next_chunk_index < transfer.total_chunks:
                if self._outgoing.get(transfer_id) is not transfer:
                    return  # cancelled

                index = transfer.next_chunk_index
                encoded = base64.b64encode(transfer.chunks[index]).decode("ascii")
                is_last = index == transfer.total_chunks - 1
                if not self._messages.send_file_chunk(
                    transfer.peer_id, transfer_id, index, encoded, is_last
                ):
                    self._fail(transfer, f"Could not send chunk {index}")
                    return

                transfer.next_chunk_index += 1
                sent = min(transfer.next_chunk_index * self._chunk_size, transfer.total_size)
                self._update(
                    transfer_id,
                    transferred_bytes=sent,
                    progress_percent=transfer.next_chunk_index / transfer.total_chunks * 100,
                )
                self._emit(
                    TRANSFER_PROGRESS,
                    TransferProgress(
                        transfer_id=transfer_id,
                        file_name=transfer.file_name,
                        progress=transfer.next_chunk_index / transfer.total_chunks,
                        sent=sent,
                        total=transfer.total_size,
                    ),
                )
                await asyncio.sleep(self._pacing)

            if self._outgoing.pop(transfer_id, None) is None:
                return
            logger.info(f"Sent '{transfer.file_name}' to {transfer.peer_id}")
            self._update(transfer_id, state=TransferState.COMPLETED, progress_percent=100.0)
            self._emit(
                TRANSFER_COMPLETE,
                TransferComplete(
                    transfer_id=transfer_id,
                    file_name=transfer.file_name,
                    peer_id=transfer.peer_id,
                ),
            )
        finally:
            self._pumps.pop(transfer_id, None)

    def _fail(self, transfer: OutgoingTransfer, reason: str) -> None:
        self._outgoing.pop(transfer.transfer_id, None)
        logger.error(f"Transfer of '{transfer.file_name}' to {transfer.peer_id} failed: {reason}")
        self._update(transfer.transfer_id, state=TransferState.FAILED, error_message=reason)
        self._emit(
            TRANSFER_FAILED,
            TransferFailed(transfer_id=transfer.transfer_id, peer_id=transfer.peer_id, error=reason),
        )

    # --- Receiver side ---

    def _on_offer(self, event: FileOffer) -> None:
        self._offers[event.file_id] = event
        self._record(
            TransferInfo(
                transfer_id=event.file_id,
                file_name=event.file_name,
                file_size=event.file_size,
                direction=TransferDirection.RECEIVING,
                peer_id=event.peer_id,
                state=TransferState.OFFER_RECEIVED,
            )
        )
        self._emit(FILE_OFFER, event)

    def accept_file(self, peer_id: str, transfer_id: str, file_name: str, file_size: int) -> bool:
        """
        Prepare receive slots for an offered file and tell the sender to start.

        Returns False if the accept could not be handed to the peer's channel;
        the offer is then kept so it can be answered again.
        """
        offer = self._offers.pop(transfer_id, None)
        previous = self._history.get(transfer_id)
        total_chunks = chunk_count(file_size, self._chunk_size)
        transfer = IncomingTransfer(
            transfer_id=transfer_id,
            peer_id=peer_id,
            file_name=file_name,
            total_size=file_size,
            total_chunks=total_chunks,
            chunk_slots=[None] * total_chunks,
        )
        self._incoming[transfer_id] = transfer
        self._record(
            TransferInfo(
                transfer_id=transfer_id,
                file_name=file_name,
                file_size=file_size,
                direction=TransferDirection.RECEIVING,
                peer_id=peer_id,
                state=TransferState.RECEIVING,
            )
        )

        if not self._messages.send_file_accept(peer_id, transfer_id):
            logger.warning(f"Could not accept '{file_name}': {peer_id} is unreachable")
            self._incoming.pop(transfer_id, None)
            if previous is not None:
                self._history[transfer_id] = previous
            else:
                self._history.pop(transfer_id, None)
            if offer is not None:
                self._offers[transfer_id] = offer
            return False

        if total_chunks == 0:
            # Nothing will arrive for an empty file.
            self._finish_incoming(transfer)
        return True

    def reject_file(self, peer_id: str, transfer_id: str) -> bool:
        """
        Decline an offered file. No receive state is created.

        Returns False if the reject could not be handed to the peer's channel;
        the offer is then kept.
        """
        if not self._messages.send_file_reject(peer_id, transfer_id):
            logger.warning(f"Could not reject {transfer_id}: {peer_id} is unreachable")
            return False
        if self._offers.pop(transfer_id, None) is not None:
            self._update(transfer_id, state=TransferState.REJECTED)
        return True

    def _on_chunk(self, event: FileChunk) -> None:
        transfer = self._incoming.get(event.file_id)
        if transfer is None:
            # Stray chunk after completion or cancellation.
            logger.debug(f"Ignoring chunk for unknown transfer {event.file_id}")
            return
        if transfer.peer_id != event.peer_id:
            logger.warning(f"Ignoring chunk for {event.file_id} from unexpected peer {event.peer_id}")
            return
        if not 0 <= event.chunk_index < transfer.total_chunks:
            logger.warning(
                f"Ignoring out-of-range chunk {event.chunk_index} for {event.file_id} "
                f"({transfer.total_chunks} chunks)"
            )
            return
        try:
            data = base64.b64decode(event.data, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.warning(f"Ignoring undecodable chunk {event.chunk_index} for {event.file_id}: {e}")
            return

        transfer.chunk_slots[event.chunk_index] = data
        transfer.received_indices.add(event.chunk_index)

        received = min(transfer.received_count * self._chunk_size, transfer.total_size)
        self._update(
            transfer.transfer_id,
            transferred_bytes=received,
            progress_percent=transfer.received_count / transfer.total_chunks * 100,
        )
        self._emit(
            RECEIVE_PROGRESS,
            ReceiveProgress(
                transfer_id=transfer.transfer_id,
                file_name=transfer.file_name,
                progress=transfer.received_count / transfer.total_chunks,
                received=received,
                total=transfer.total_size,
            ),
        )

        if transfer.is_complete:
            self._finish_incoming(transfer)
        elif event.is_last:
            logger.warning(
                f"Last chunk of {transfer.transfer_id} arrived with "
                f"{transfer.received_count}/{transfer.total_chunks} chunks present"
            )

    def _finish_incoming(self, transfer: IncomingTransfer) -> None:
        self._incoming.pop(transfer.transfer_id, None)
        data = transfer.assemble()
        if len(data) != transfer.total_size:
            logger.warning(
                f"Received {len(data)} bytes for '{transfer.file_name}', "
                f"offer announced {transfer.total_size}"
            )
        logger.info(f"Received '{transfer.file_name}' from {transfer.peer_id}")
        self._update(transfer.transfer_id, state=TransferState.COMPLETED, progress_percent=100.0)
        self._emit(
            FILE_RECEIVED,
            FileReceived(
                transfer_id=transfer.transfer_id,
                file_name=transfer.file_name,
                file_size=transfer.total_size,
                peer_id=transfer.peer_id,
                data=data,
            ),
        )

    # --- Both sides ---

    def cancel_transfer(self, transfer_id: str) -> bool:
        """Drop local state for a transfer. The peer is not notified."""
        outgoing = self._outgoing.pop(transfer_id, None)
        incoming = self._incoming.pop(transfer_id, None)
        offer = self._offers.pop(transfer_id, None)
        pump = self._pumps.pop(transfer_id, None)
        if pump is not None:
            pump.cancel()

        found = outgoing is not None or incoming is not None or offer is not None
        if found:
            logger.info(f"Cancelled transfer {transfer_id}")
            self._update(transfer_id, state=TransferState.CANCELLED)
        return found

    def _on_peer_disconnected(self, event: PeerDisconnected) -> None:
        """Nothing more can arrive from or be sent to a peer that went away."""
        peer_id = event.peer_id
        reason = "Peer disconnected"
        for transfer in [t for t in self._outgoing.values() if t.peer_id == peer_id]:
            pump = self._pumps.pop(transfer.transfer_id, None)
            if pump is not None:
                pump.cancel()
            self._fail(transfer, reason)

        for transfer in [t for t in self._incoming.values() if t.peer_id == peer_id]:
            del self._incoming[transfer.transfer_id]
            logger.warning(f"Receive of '{transfer.file_name}' from {peer_id} interrupted")
            self._update(transfer.transfer_id, state=TransferState.FAILED, error_message=reason)
            self._emit(
                TRANSFER_FAILED,
                TransferFailed(transfer_id=transfer.transfer_id, peer_id=peer_id, error=reason),
            )

        for offer in [o for o in self._offers.values() if o.peer_id == peer_id]:
            del self._offers[offer.file_id]
            self._update(offer.file_id, state=TransferState.CANCELLED)

    def cancel_all(self) -> None:
        for transfer_id in list(self._outgoing) + list(self._incoming):
            self.cancel_transfer(transfer_id)

    # --- History ---

    def _record(self, info: TransferInfo) -> None:
        self._history[info.transfer_id] = info

    def _update(self, transfer_id: str, **changes) -> None:
        info = self._history.get(transfer_id)
        if info is None or info.state in TERMINAL_STATES:
            return
        for field, value in changes.items():
            setattr(info, field, value)
