"""FastAPI application exposing the chat engine over WebSockets."""

import argparse
import logging
from contextlib import asynccontextmanager

import anyio
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from roomcast.connections import Connection
from roomcast.engine import ChatEngine
from roomcast.marshaling import encode
from roomcast.router import RoomEventRouter
from roomcast.stores import InMemoryRoomDirectory

logger = logging.getLogger(__name__)

DEFAULT_ROOMS = ("general",)


def create_app(engine: ChatEngine | None = None) -> FastAPI:
    """Build the app. The engine starts and stops with the app's lifespan."""
    engine = engine or ChatEngine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with engine:
            yield

    app = FastAPI(title="roomcast", lifespan=lifespan)
    app.state.engine = engine

    @app.get("/health")
    async def health():
        """Liveness check."""
        return {"status": "ok", "connections": len(engine.registry.connections())}

    @app.websocket("/ws")
    async def chat_socket(websocket: WebSocket):
        """One chat connection: JSON envelopes in, JSON envelopes out."""
        await websocket.accept()
        connection = engine.registry.register()
        logger.info("Socket connected: %s", connection.id)
        try:
            await _serve(websocket, connection, engine.router)
        finally:
            with anyio.CancelScope(shield=True):
                await engine.router.disconnect(connection.id)
                if websocket.client_state == WebSocketState.CONNECTED:
                    await websocket.close()

    return app


async def _serve(
    websocket: WebSocket,
    connection: Connection,
    router: RoomEventRouter,
) -> None:
    async with anyio.create_task_group() as tg:

        async def pump_outbox() -> None:
            try:
                async for event in connection.outbox:
                    await websocket.send_json(encode(event))
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                logger.debug("Socket %s stopped accepting events: %s", connection.id, e)
            # Outbox closed by the engine or the socket is gone.
            tg.cancel_scope.cancel()

        tg.start_soon(pump_outbox)
        try:
            while True:
                frame = await websocket.receive_text()
                await router.dispatch_frame(connection.id, frame)
        except WebSocketDisconnect:
            logger.info("Socket disconnected: %s", connection.id)
        tg.cancel_scope.cancel()


def main() -> None:
    import uvicorn

    parser = argparse.ArgumentParser(description="Run the roomcast chat server.")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument(
        "--room",
        action="append",
        dest="rooms",
        help="Room to create at startup (repeatable)",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)

    rooms = InMemoryRoomDirectory()
    for name in args.rooms or DEFAULT_ROOMS:
        rooms.create(name, room_id=name)

    uvicorn.run(create_app(ChatEngine(rooms=rooms)), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
