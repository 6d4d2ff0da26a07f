import os
import sys
import logging
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ==================== REQUIRED ====================

DATABASE_URL = os.getenv("DATABASE_URL")
JWT_SECRET = os.getenv("JWT_SECRET")

REQUIRED_SETTINGS = ("DATABASE_URL", "JWT_SECRET")

# ==================== APP ====================

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]

# ==================== AUTH ====================

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "1440"))  # 1 day

# ==================== SCHEDULING ====================

DEFAULT_CONSULTATION_MINUTES = 15
DEFAULT_QUEUE_CAPACITY = 20
CANCELLATION_WINDOW_HOURS = 24
CHECK_IN_WINDOW_MINUTES = 30  # either side of the start time
DEFAULT_SEARCH_RADIUS_METERS = 10000

# ==================== CHAT PROXY ====================

LLM_API_KEY = os.getenv("LLM_API_KEY")
LLM_API_URL = os.getenv("LLM_API_URL", "https://api.openai.com/v1/chat/completions")
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))


def check_required_settings() -> None:
    """Exit the process when a required environment variable is missing"""
    missing = [name for name in REQUIRED_SETTINGS if not os.getenv(name)]
    if missing:
        for name in missing:
            logger.error("%s is not defined in environment variables", name)
        sys.exit(1)
