"""
Strategy Arena Web API

FastAPI transport over the session runtime. Every call returns the current
session snapshot.
"""

import sys
from pathlib import Path
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from typing import Optional
import logging

# Add parent directory to path for importing root modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from backend.config import settings
from backend.runtime import get_runtime, init_runtime, shutdown_runtime
from config_loader import config as yaml_config

logging.basicConfig(level=logging.DEBUG if settings.DEBUG else logging.INFO)
logger = logging.getLogger(__name__)

RUNTIME_PATH = yaml_config.get("api.path", "/api/runtime")


# ============== Request Models ==============

class RuntimeCommand(BaseModel):
    action: Optional[str] = Field(None, max_length=32)
    stageId: Optional[str] = Field(None, max_length=64)
    speed: Optional[float] = Field(None, gt=0)


def _dispatch(runtime, command: RuntimeCommand):
    """Run the named command. Unknown or missing actions do nothing."""
    action = command.action
    if action == "start":
        runtime.start(stage_id=command.stageId, speed=command.speed)
    elif action == "pause":
        runtime.pause()
    elif action == "resume":
        runtime.resume()
    elif action == "stop":
        runtime.stop()
    elif action == "reset":
        runtime.reset()
    elif action == "options":
        runtime.update_options(stage_id=command.stageId, speed=command.speed)
    elif action == "regenerate":
        runtime.regenerate_stages()
    elif action:
        logger.info(f"Ignoring unknown runtime action: {action}")


# ============== Lifespan ==============

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load or build the session on startup, persist it on shutdown"""
    logger.info("Starting Strategy Arena API...")
    init_runtime()

    yield

    shutdown_runtime()
    logger.info("Shutting down...")


# ============== App Setup ==============

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============== Health Check ==============

@app.get("/health")
def health_check():
    """Health check endpoint"""
    snapshot = get_runtime().snapshot()
    return {
        "status": "healthy",
        "version": settings.VERSION,
        "session_status": snapshot["status"],
    }


# ============== Runtime ==============

@app.get(RUNTIME_PATH)
def get_runtime_snapshot():
    return get_runtime().snapshot()


@app.post(RUNTIME_PATH)
def post_runtime_command(command: Optional[RuntimeCommand] = None):
    """Apply a session command (start, pause, resume, stop, reset, options, regenerate)"""
    runtime = get_runtime()
    _dispatch(runtime, command or RuntimeCommand())
    return runtime.snapshot()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
