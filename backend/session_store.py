"""
Session Store

Single-slot JSON persistence for the arena session. Writes go to a temp file
in the same directory and are swapped in with os.replace, so a crash mid-write
leaves the previous record intact. Failures are logged and swallowed: the
in-memory session keeps running, only crash recovery is affected.
"""

import json
import logging
import os
import time
from typing import Optional

logger = logging.getLogger(__name__)

STORE_VERSION = 1


class SessionStore:
    """File-backed store holding one `{saved_at, version, data}` record."""

    def __init__(self, path: str):
        self.path = path

    def load(self) -> Optional[dict]:
        """
        Read the stored record.

        Returns:
            The wrapper dict, or None when the file is missing, unreadable or
            not a record this version understands.
        """
        if not os.path.exists(self.path):
            return None

        try:
            with open(self.path, "r") as f:
                wrapper = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable session store {self.path}: {e}")
            return None

        if not isinstance(wrapper, dict) or not isinstance(wrapper.get("data"), dict):
            logger.warning(f"Ignoring malformed session store {self.path}")
            return None
        if wrapper.get("version") != STORE_VERSION:
            logger.warning(f"Ignoring session store version {wrapper.get('version')} (expected {STORE_VERSION})")
            return None

        return wrapper

    def save(self, payload: dict, saved_at: float = None) -> bool:
        """Persist `payload` atomically. Returns False (and logs) on failure."""
        wrapper = {
            "saved_at": saved_at if saved_at is not None else time.time(),
            "version": STORE_VERSION,
            "data": payload,
        }
        tmp_path = f"{self.path}.tmp"
        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with open(tmp_path, "w") as f:
                json.dump(wrapper, f)
            os.replace(tmp_path, self.path)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Failed to persist session to {self.path}: {e}")
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            return False

    def clear(self):
        if os.path.exists(self.path):
            os.remove(self.path)
            logger.info(f"Cleared session store {self.path}")
