"""Centralized configuration — all env vars in one place."""
import os
import logging
from dotenv import load_dotenv

load_dotenv()

# --- Server ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")

# --- Moderator ---
MODERATOR_TOKEN = os.getenv("MODERATOR_TOKEN", "")  # empty = no auth (local party play)

# --- Question bank ---
QUESTIONS_FILE = os.getenv("QUESTIONS_FILE", "")  # empty = built-in catalog
MAX_CATEGORY_LENGTH = 50
MAX_QUESTION_TEXT_LENGTH = 500
MAX_ANSWER_LENGTH = 200
MAX_IMPORT_QUESTIONS = 500

# --- Round timer ---
ROUND_TIME_BASE = int(os.getenv("ROUND_TIME_BASE", "20"))  # seconds in round 1
ROUND_TIME_MIN = int(os.getenv("ROUND_TIME_MIN", "10"))
ROUND_TIME_STEP = 2  # seconds shaved off per elapsed round

# --- Banking ladder ---
CHAIN_VALUES = [1, 2, 5, 10, 20, 50, 100]

# --- Finale ---
FINAL_INTRO_DELAY = float(os.getenv("FINAL_INTRO_DELAY", "4"))  # seconds
PENALTY_REGULAR_SHOTS = 5

# --- WebSocket Security ---
WS_RATE_LIMIT_PER_SEC = 10  # max messages per second per client
MAX_WS_MESSAGE_SIZE = 4096  # bytes
MAX_NICKNAME_LENGTH = 20

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")  # empty = stdout only


def round_duration(round_number: int) -> int:
    """Countdown length for a round; shrinks each round down to the floor."""
    return max(ROUND_TIME_MIN, ROUND_TIME_BASE - (round_number - 1) * ROUND_TIME_STEP)


def setup_logging():
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
