"""
Configuration for Strategy Arena Web App
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
ENV_PATH = Path(__file__).parent.parent / ".env"
load_dotenv(ENV_PATH)


class Settings:
    # App settings
    APP_NAME = "Strategy Arena"
    VERSION = "1.0.0"
    DEBUG = os.getenv("DEBUG", "false").lower() == "true"

    # CORS settings
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

    # Single-slot session store
    STORE_PATH = os.getenv(
        "ARENA_STORE_PATH",
        str(Path(__file__).parent.parent / ".runtime" / "runtime-state.json")
    )

    # Skip the periodic tick driver (useful for scripted/manual ticking)
    DISABLE_DRIVER = os.getenv("ARENA_DISABLE_DRIVER", "false").lower() == "true"

    # Never touch the network for history; synthesize it instead
    HISTORY_OFFLINE = os.getenv("ARENA_HISTORY_OFFLINE", "false").lower() == "true"


settings = Settings()
