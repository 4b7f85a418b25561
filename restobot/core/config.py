import os
from dotenv import load_dotenv

# Load .env from the project root
load_dotenv()

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUE_VALUES


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./restobot.db")
ENV = os.getenv("ENV", "dev")
ENV_NORMALIZED = ENV.lower()
IS_DEV = ENV_NORMALIZED in {"dev", "development", "local"}
IS_TEST = ENV_NORMALIZED == "test"
IS_PROD = ENV_NORMALIZED in {"prod", "production"}

RESTAURANT_NAME = os.getenv("RESTAURANT_NAME", "Our Restaurant").strip() or "Our Restaurant"
SUPPORT_EMAIL = os.getenv("SUPPORT_EMAIL", "support@restaurant.com").strip()
BACKEND_URL = os.getenv("BACKEND_URL", "http://localhost:8000").strip().rstrip("/")

# Customer-facing times (IST by default)
DISPLAY_UTC_OFFSET_MINUTES = int(os.getenv("DISPLAY_UTC_OFFSET_MINUTES", "330"))

META_WA_ACCESS_TOKEN = os.getenv("META_WA_ACCESS_TOKEN", "")
META_WA_PHONE_NUMBER_ID = os.getenv("META_WA_PHONE_NUMBER_ID", "")
META_WA_VERIFY_TOKEN = os.getenv("META_WA_VERIFY_TOKEN", "")
META_API_VERSION = os.getenv("META_API_VERSION", "v19.0")

# Razorpay
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", "").strip()
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "").strip()
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET", "").strip()
RAZORPAY_API_BASE = os.getenv("RAZORPAY_API_BASE", "https://api.razorpay.com/v1").strip().rstrip("/")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "INR").strip().upper() or "INR"
MIN_PAYMENT_AMOUNT_CENTS = int(os.getenv("MIN_PAYMENT_AMOUNT_CENTS", "100"))
PAYMENT_CALLBACK_URL = f"{BACKEND_URL}/payment-success"
# Trust a bare provider redirect as proof of payment when nothing else confirms it
PAYMENT_REDIRECT_TRUST_FALLBACK = _env_flag("PAYMENT_REDIRECT_TRUST_FALLBACK", "1")

# Scheduled tasks
AUTO_CONFIRM_DELAY_SECONDS = float(os.getenv("AUTO_CONFIRM_DELAY_SECONDS", "3"))
SCHEDULER_POLL_SECONDS = float(os.getenv("SCHEDULER_POLL_SECONDS", "1"))
SCHEDULER_ENABLED = _env_flag("SCHEDULER_ENABLED", "1")

# CORS
_cors_env = os.getenv("CORS_ORIGINS", "")
CORS_ORIGINS = [origin.strip() for origin in _cors_env.split(",") if origin.strip() and origin.strip() != "*"]

if not CORS_ORIGINS and IS_DEV:
    CORS_ORIGINS = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
    ]
