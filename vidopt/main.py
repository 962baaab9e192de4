"""FastAPI application entry point for vidopt."""

import json
import sys
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from vidopt import __version__
from vidopt.api.routes import get_orchestrator
from vidopt.api.routes import router as api_router
from vidopt.api.websocket import manager as ws_manager
from vidopt.api.websocket import tray_manager
from vidopt.config import settings
from vidopt.core.logging import setup_logging
from vidopt.database import init_db
from vidopt.services.orchestrator import Orchestrator, orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    # Startup
    setup_logging()
    logger.info("Starting vidopt...")

    await init_db()
    logger.info("Database initialized")

    await orchestrator.start()

    yield

    # Shutdown
    logger.info("Shutting down vidopt...")
    await orchestrator.stop()
    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="vidopt API",
    description="Video conversion queue with FFmpeg and TMDB naming",
    version=__version__,
    lifespan=lifespan,
)

# Add CORS middleware for frontend communication
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],  # Vite dev server
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for main window updates."""
    await ws_manager.connect(websocket)
    try:
        while True:
            # Keep connection alive; the main window only listens
            data = await websocket.receive_text()
            logger.debug(f"Received WebSocket message: {data}")
    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        await ws_manager.disconnect(websocket)


@app.websocket("/ws/tray")
async def tray_websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for the tray window (converting jobs only)."""
    await tray_manager.connect(websocket)
    # Fresh clients get the current state without waiting for the next tick
    await orchestrator.state_broadcaster.handle_sync_request(websocket)
    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                logger.debug(f"Ignoring non-JSON tray message: {data!r}")
                continue
            if isinstance(message, dict):
                await orchestrator.handle_tray_message(websocket, message)
    except WebSocketDisconnect:
        await tray_manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"Tray WebSocket error: {e}")
        await tray_manager.disconnect(websocket)


@app.get("/health")
async def health_check(orch: Orchestrator = Depends(get_orchestrator)):
    """Health check endpoint."""
    return {
        "status": "healthy",
        "jobs": len(orch.store),
        "active_job_id": orch.scheduler.active_job_id,
        "dropped_progress_events": orch.progress_router.dropped_events,
    }


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    try:
        uvicorn.run(
            app,
            host=settings.host,
            port=settings.port,
            reload=False,  # reload is incompatible with passing app object directly
        )
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
