import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

APP_ENV = os.getenv("APP_ENV", "local")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./teleclinic.db")

# JWT Configuration - CRITICAL: No default secrets in production
JWT_ALGORITHM = "HS256"
JWT_ACCESS_SECRET = os.getenv("JWT_ACCESS_SECRET")
JWT_REFRESH_SECRET = os.getenv("JWT_REFRESH_SECRET")
if not JWT_ACCESS_SECRET or not JWT_REFRESH_SECRET:
    import warnings

    warnings.warn(
        "JWT secrets not set! Using insecure defaults - DO NOT USE IN PRODUCTION",
        RuntimeWarning,
        stacklevel=2,
    )
    JWT_ACCESS_SECRET = JWT_ACCESS_SECRET or "INSECURE-DEV-ACCESS-SECRET"  # noqa: S105
    JWT_REFRESH_SECRET = JWT_REFRESH_SECRET or "INSECURE-DEV-REFRESH-SECRET"  # noqa: S105

JWT_ACCESS_TTL_SECONDS = int(os.getenv("JWT_ACCESS_TTL_SECONDS", "900"))
JWT_REFRESH_TTL_SECONDS = int(os.getenv("JWT_REFRESH_TTL_SECONDS", "1209600"))  # 14 days

# Chat daily limits roll over at midnight in this timezone
CHAT_TIMEZONE = os.getenv("CHAT_TIMEZONE", "America/Argentina/Buenos_Aires")

# Default policy for newly created chat threads
CHAT_DEFAULT_DAILY_LIMIT = int(os.getenv("CHAT_DEFAULT_DAILY_LIMIT", "10"))
CHAT_DEFAULT_BURST_LIMIT = int(os.getenv("CHAT_DEFAULT_BURST_LIMIT", "3"))
CHAT_DEFAULT_BURST_WINDOW_SECONDS = int(os.getenv("CHAT_DEFAULT_BURST_WINDOW_SECONDS", "30"))
CHAT_DEFAULT_RECENT_CONSULTATION_HOURS = int(
    os.getenv("CHAT_DEFAULT_RECENT_CONSULTATION_HOURS", "72")
)

# Auth endpoint rate limits (per IP)
AUTH_RATE_LIMIT = int(os.getenv("AUTH_RATE_LIMIT", "20"))
AUTH_RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("AUTH_RATE_LIMIT_WINDOW_SECONDS", "60"))

# Frontend base URL
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")
