"""Centralized configuration: every env var in one place."""
import os
import logging
from dotenv import load_dotenv

load_dotenv()

# --- Server ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "80"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")

# --- WebSocket Security ---
WS_RATE_LIMIT_PER_SEC = 10  # max messages per second per client
MAX_WS_MESSAGE_SIZE = 4 * 1024 * 1024  # bytes, drawn pages are sent inline
WS_POLICY_VIOLATION = 1008

# --- Identity ---
MAX_ID_LENGTH = 10
MAX_KEY_LENGTH = 20
MAX_NAME_LENGTH = 32
MAX_ROOM_CODE_LENGTH = 12

# --- Rooms ---
MAX_ROOM_SIZE = 10
MIN_PLAYERS = 2

# --- Pages ---
MAX_TITLE_LENGTH = 40
MAX_PAGE_TEXT_LENGTH = 140
EMPTY_PAGE_TEXT = "..."
IMAGE_DATA_PREFIX = "data:image/png;base64,"
IMAGE_WIDTH = 800
IMAGE_HEIGHT = 600
IMAGE_WIDTH_TOLERANCE = 8  # exclusive
IMAGE_HEIGHT_TOLERANCE = 6  # exclusive

# --- Round timer ---
TIMER_MINUTE_SECONDS = 60
TIMER_LATENCY_SECONDS = float(os.getenv("TIMER_LATENCY_SECONDS", "2"))
SUBMIT_GRACE_SECONDS = float(os.getenv("SUBMIT_GRACE_SECONDS", "5"))

# --- Settings ---
WRITE = "Write"
DRAW = "Draw"

SETTINGS_CONSTRAINTS = {
    "firstPage": ("enum", (WRITE, DRAW)),
    "pageCount": ("int", (2, 20)),
    "pageOrder": ("enum", ("Normal", "Random")),
    "palette": ("enum", ("No palette", "Blues", "Rainbow", "PICO-8")),
    "timeWrite": ("int", (0, 15)),
    "timeDraw": ("int", (0, 15)),
}

SETTINGS_DEFAULT = {
    "firstPage": WRITE,
    "pageCount": "8",
    "pageOrder": "Normal",
    "palette": "No palette",
    "timeWrite": "0",
    "timeDraw": "0",
}

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")  # empty = stdout only


def setup_logging():
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
