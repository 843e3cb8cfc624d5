"""Runtime settings for the dispensing core.

Every knob is a module-level constant read once from the environment (a
local ``.env`` file is honoured through python-dotenv).  Services import the
constants directly; tests patch them on the module when needed.
"""
import logging
import os

from dotenv import load_dotenv

load_dotenv()

# ---------------------------------------------------------------------------
# Text-completion collaborator (Gemini)
# ---------------------------------------------------------------------------
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "20"))

# ---------------------------------------------------------------------------
# Instruction parse cache
# ---------------------------------------------------------------------------
# Empty REDIS_URL keeps the cache in process memory.
REDIS_URL = os.getenv("REDIS_URL", "")
SIG_PARSE_CACHE_TTL = int(os.getenv("SIG_PARSE_CACHE_TTL", str(30 * 24 * 60 * 60)))
CACHE_MAX_ENTRIES = int(os.getenv("CACHE_MAX_ENTRIES", "1000"))

# ---------------------------------------------------------------------------
# Package selection
# ---------------------------------------------------------------------------
MAX_PACKAGE_COUNT = int(os.getenv("MAX_PACKAGE_COUNT", "10"))
DEFAULT_MAX_RESULTS = int(os.getenv("DEFAULT_MAX_RESULTS", "5"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def configure_logging(level: str | None = None) -> None:
    """Install a root handler for scripts and local runs."""
    logging.basicConfig(
        level=level or LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
