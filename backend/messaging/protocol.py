"""
Message protocol — typed envelopes over the connection manager.

Outbound: typed senders build an envelope and hand it to
``ConnectionManager.send``. Inbound: raw Channel data is parsed and
re-published as one typed event per envelope ``type``. Data that does not
parse is reported as ``unrecognized-data``; the connection stays up.
"""

import logging
import time

from pydantic import ValidationError

from connection.manager import ConnectionManager
from events import (
    FILE_ACCEPT,
    FILE_CHUNK,
    FILE_OFFER,
    FILE_REJECT,
    TEXT_MESSAGE,
    UNRECOGNIZED_DATA,
    EventEmitter,
)
from messaging.models import (
    FileAccept,
    FileAcceptEnvelope,
    FileChunk,
    FileChunkEnvelope,
    FileOffer,
    FileOfferEnvelope,
    FileReject,
    FileRejectEnvelope,
    TextEnvelope,
    TextMessage,
    UnrecognizedData,
    envelope_adapter,
)

logger = logging.getLogger(__name__)

# envelope type -> (event name, event model)
_DISPATCH = {
    "text": (TEXT_MESSAGE, TextMessage),
    "file-offer": (FILE_OFFER, FileOffer),
    "file-accept": (FILE_ACCEPT, FileAccept),
    "file-reject": (FILE_REJECT, FileReject),
    "file-chunk": (FILE_CHUNK, FileChunk),
}

_PREVIEW_LEN = 200


class MessageProtocol(EventEmitter):
    """Serializes typed sends and dispatches inbound envelopes."""

    def __init__(self, connections: ConnectionManager) -> None:
        super().__init__()
        self._connections = connections
        self._connections.on_data(self.ingest)

    @property
    def connections(self) -> ConnectionManager:
        return self._connections

    def ingest(self, peer_id: str, raw: str) -> None:
        """Parse one inbound message from ``peer_id`` and dispatch it."""
        try:
            envelope = envelope_adapter.validate_json(raw)
        except ValidationError as e:
            logger.debug(f"Unrecognized data from {peer_id}: {e.error_count()} error(s)")
            self._emit(
                UNRECOGNIZED_DATA,
                UnrecognizedData(
                    peer_id=peer_id,
                    data=raw[:_PREVIEW_LEN],
                    reason=e.errors(include_url=False)[0]["msg"],
                ),
            )
            return

        event, model = _DISPATCH[envelope.type]
        self._emit(event, model(peer_id=peer_id, **envelope.model_dump()))

    # --- Typed senders ---

    def send_text(self, peer_id: str, text: str, username: str) -> bool:
        return self._connections.send(
            peer_id,
            TextEnvelope(text=text, timestamp=int(time.time() * 1000), username=username),
        )

    def send_file_offer(
        self, peer_id: str, file_id: str, file_name: str, file_size: int, username: str
    ) -> bool:
        return self._connections.send(
            peer_id,
            FileOfferEnvelope(
                file_id=file_id,
                file_name=file_name,
                file_size=file_size,
                username=username,
            ),
        )

    def send_file_accept(self, peer_id: str, file_id: str) -> bool:
        return self._connections.send(peer_id, FileAcceptEnvelope(file_id=file_id))

    def send_file_reject(self, peer_id: str, file_id: str) -> bool:
        return self._connections.send(peer_id, FileRejectEnvelope(file_id=file_id))

    def send_file_chunk(
        self, peer_id: str, file_id: str, chunk_index: int, data: str, is_last: bool
    ) -> bool:
        return self._connections.send(
            peer_id,
            FileChunkEnvelope(
                file_id=file_id,
                chunk_index=chunk_index,
                data=data,
                is_last=is_last,
            ),
        )
