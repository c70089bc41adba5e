"""
LAN Messenger — FastAPI application entry point.

Starts the messenger node on startup, serves the local control API and
streams node events over a WebSocket endpoint.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import WebSocketHub
from config import API_HOST, API_PORT, DEVICE_NAME
from node import MessengerNode

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Service singletons ---
node = MessengerNode(device_name=DEVICE_NAME)
ws_hub = WebSocketHub()
node.on_any(ws_hub.handle_event)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop the node."""
    logger.info("Starting LAN Messenger services...")

    try:
        await node.start()
        logger.info(f"LAN Messenger ready — API: {API_HOST}:{API_PORT}, peer id: {node.peer_id}")
        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        logger.info("Shutting down LAN Messenger services...")
        await node.stop()


# --- FastAPI app ---
app = FastAPI(
    title="LAN Messenger",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173", "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Inject the node into routes
init_routes(node)
app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await ws_hub.connect(websocket)
    try:
        while True:
            # Keep the connection alive; we don't expect client messages
            await websocket.receive_text()
    except WebSocketDisconnect:
        await ws_hub.disconnect(websocket)
    except Exception:
        await ws_hub.disconnect(websocket)


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
