import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./sparks.db")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "1440"))

# Public base URL of the web app (used for PayHere return/notify URLs and fallback meeting links)
APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")

# PayHere Configuration
PAYHERE_MERCHANT_ID = os.getenv("PAYHERE_MERCHANT_ID", "")
PAYHERE_MERCHANT_SECRET = os.getenv("PAYHERE_MERCHANT_SECRET", "")
# "sandbox" or "live" - default to sandbox for safety
PAYHERE_MODE = os.getenv("PAYHERE_MODE", "sandbox")
PAYHERE_CURRENCY = os.getenv("PAYHERE_CURRENCY", "LKR")

# Google Calendar / Meet OAuth Configuration
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
CALENDAR_TIMEZONE = os.getenv("CALENDAR_TIMEZONE", "Asia/Colombo")

# Session defaults
SESSION_DURATION_MINUTES = int(os.getenv("SESSION_DURATION_MINUTES", "45"))

# CORS
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
