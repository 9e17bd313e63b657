from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

import models  # noqa: F401  註冊所有 table
from database import Base, engine, settings
from api import rooms, game, websocket
from services.notify_service import RoomEventHub

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: 在應用啟動時建立資料庫表
    Base.metadata.create_all(bind=engine)
    yield
    # Shutdown: 釋放連線池
    engine.dispose()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Survival Vote API",
        description="Backend API for the multiplayer survival vote game",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.event_hub = RoomEventHub()

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure this properly in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(rooms.router)
    app.include_router(game.router)
    app.include_router(websocket.router)

    @app.get("/")
    def root():
        return {"message": "Survival Vote API", "status": "ok"}

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
