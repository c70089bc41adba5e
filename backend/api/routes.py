"""REST API routes for LAN Messenger."""

import logging
import os

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# Injected by main.py at startup
_node = None


def init_routes(node) -> None:
    """Inject the node into the routes module."""
    global _node
    _node = node


# --- Peers & connections ---

@router.get("/peers")
async def list_peers():
    """Return list of discovered peers."""
    return {"peers": [p.model_dump() for p in _node.list_peers()]}


@router.get("/connections")
async def list_connections():
    """Return active and pending connections."""
    return {
        "active": [c.model_dump() for c in _node.connections.list_connections()],
        "pending": [p.model_dump(mode="json") for p in _node.connections.pending_peers()],
    }


@router.post("/peers/{peer_id}/connect")
async def connect_peer(peer_id: str):
    if not _node.connect_peer(peer_id):
        raise HTTPException(status_code=404, detail="Peer not found")
    return {"status": "connecting"}


@router.post("/peers/{peer_id}/disconnect")
async def disconnect_peer(peer_id: str):
    _node.connections.disconnect(peer_id)
    return {"status": "disconnected"}


# --- Chat ---

class MessageBody(BaseModel):
    peer_id: str
    text: str


@router.post("/messages")
async def send_message(body: MessageBody):
    if not _node.send_text(body.peer_id, body.text):
        raise HTTPException(status_code=409, detail="Peer is not connected")
    return {"status": "sent"}


# --- Transfers ---

class CreateTransferBody(BaseModel):
    peer_id: str
    file_path: str


@router.get("/transfers")
async def list_transfers():
    """Return all transfers (active + finished)."""
    return {"transfers": [t.model_dump() for t in _node.transfers.get_transfers()]}


@router.post("/transfers")
async def create_transfer(body: CreateTransferBody):
    """Offer a file to a connected peer.

    No file upload is required; the backend reads the file directly from disk.
    """
    if not os.path.isfile(body.file_path):
        raise HTTPException(status_code=400, detail="No such file")
    try:
        transfer_id = await _node.send_file(body.peer_id, body.file_path)
    except ConnectionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except OSError as e:
        raise HTTPException(status_code=400, detail=f"Could not read file: {e}")
    return {"transfer_id": transfer_id, "status": "offered"}


@router.post("/transfers/{transfer_id}/accept")
async def accept_transfer(transfer_id: str):
    offer = _node.transfers.get_offer(transfer_id)
    if offer is None:
        raise HTTPException(status_code=404, detail="No pending offer")
    if not _node.transfers.accept_file(offer.peer_id, offer.file_id, offer.file_name, offer.file_size):
        raise HTTPException(status_code=409, detail="Peer is not connected")
    return {"status": "accepted"}


@router.post("/transfers/{transfer_id}/reject")
async def reject_transfer(transfer_id: str):
    offer = _node.transfers.get_offer(transfer_id)
    if offer is None:
        raise HTTPException(status_code=404, detail="No pending offer")
    if not _node.transfers.reject_file(offer.peer_id, offer.file_id):
        raise HTTPException(status_code=409, detail="Peer is not connected")
    return {"status": "rejected"}


@router.post("/transfers/{transfer_id}/cancel")
async def cancel_transfer(transfer_id: str):
    if not _node.transfers.cancel_transfer(transfer_id):
        raise HTTPException(status_code=404, detail="Transfer not found")
    return {"status": "cancelled"}


# --- Settings ---

class SettingsBody(BaseModel):
    display_name: str | None = None
    save_dir: str | None = None


@router.get("/settings")
async def get_settings():
    return {
        "peer_id": _node.peer_id,
        "display_name": _node.display_name,
        "save_dir": _node.save_dir,
    }


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.display_name is not None:
        _node.display_name = body.display_name
    if body.save_dir is not None:
        try:
            _node.save_dir = body.save_dir
        except OSError as e:
            raise HTTPException(status_code=400, detail=f"Invalid directory: {e}")
    return {"status": "updated"}
