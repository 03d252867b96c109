from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from routers.rooms import rooms_router
from hub import Hub
from errors import ConnectionClosed, HubError
from schemas.rooms import HubStatsResponse
from constants import LOG_LEVEL, LOG_FILE
import json
from logging_config import get_logger, setup_logging

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # the hub is created inside the serving event loop; its locks and drain tasks belong to it
    app.state.hub = Hub()
    yield
    await app.state.hub.shutdown()


app = FastAPI(lifespan=lifespan)

# Configure CORS to allow all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins
    allow_credentials=True,
    allow_methods=["*"],  # Allow all HTTP methods
    allow_headers=["*"],  # Allow all headers
)

app.include_router(rooms_router)

logger.info("FastAPI application initialized")


class WebSocketTransport:
    """Adapts a FastAPI WebSocket to the hub's Transport interface."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def send(self, frame: dict):
        await self.websocket.send_text(json.dumps(frame))

    async def close(self, code: int = 1000, reason: str = ""):
        await self.websocket.close(code=code, reason=reason)


@app.get("/health", response_model=HubStatsResponse)
async def health(request: Request):
    return HubStatsResponse(status="ok", **request.app.state.hub.stats())


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for the broadcast hub.

    Clients send JSON frames: ``join``, ``message``, ``typing`` and ``leave``.
    Closing the socket is the disconnect event.
    """
    hub: Hub = websocket.app.state.hub
    await websocket.accept()
    connection_id = await hub.connect(WebSocketTransport(websocket))
    logger.info(f"WebSocket connection accepted: {connection_id}")
    hub.greet(connection_id)

    try:
        message_count = 0
        while True:
            try:
                data = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info(f"WebSocket disconnected normally for connection {connection_id}")
                break
            message_count += 1
            logger.debug(f"Received frame #{message_count} from connection {connection_id}")

            try:
                await hub.dispatch(connection_id, data)
            except ConnectionClosed:
                # the hub closed this connection (slow consumer, shutdown); stop reading
                break
            except HubError as e:
                logger.info(f"Rejected frame from connection {connection_id}: {e}")
                hub.report(connection_id, e)
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
    finally:
        await hub.disconnect(connection_id)
