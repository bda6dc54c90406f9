from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional
import random
import uvicorn
import logging

import config
config.setup_logging()

from game_server import GameServer

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Drawry backend on %s:%d", config.HOST, config.PORT)
    yield
    for room in list(app.state.game_server.rooms.rooms.values()):
        room.timer.cancel()
    logger.info("Shutting down Drawry backend")


def create_app(rng: Optional[random.Random] = None) -> FastAPI:
    app = FastAPI(title="Drawry Backend", lifespan=lifespan)
    game_server = GameServer(rng=rng)
    app.state.game_server = game_server

    origins = [o.strip() for o in config.ALLOWED_ORIGINS.split(",") if o.strip()]
    game_server.allowed_origins = origins
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=False,
            allow_methods=["GET"],
            allow_headers=["Content-Type"],
        )

    @app.get("/")
    async def root():
        return {"message": "Drawry API is running"}

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "rooms": len(game_server.rooms.rooms),
            "connections": len(game_server.sessions.sessions),
        }

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await game_server.connect(websocket)

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("main:app", host=config.HOST, port=config.PORT)
