import os

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
SQL_ECHO = _get_bool(os.getenv("SQL_ECHO"), default=False)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./booking.db")

CORS_ORIGINS = _get_list(os.getenv("CORS_ORIGINS"), ["http://localhost:5173"])

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))

# auto | routine | conditional
RESERVATION_STRATEGY = os.getenv("RESERVATION_STRATEGY", "auto").strip().lower()

LLM_API_KEY = os.getenv("LLM_API_KEY", os.getenv("OPENAI_API_KEY", ""))
LLM_BASE_URL = os.getenv("LLM_BASE_URL", "https://api.openai.com/v1").rstrip("/")
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "12"))
LLM_SYSTEM_PROMPT = os.getenv(
    "LLM_SYSTEM_PROMPT",
    "You are a warm, concise assistant for a therapy practice. "
    "Listen first, never diagnose, and suggest booking a session when it would help.",
)

DEFAULT_PROVIDER_CODE = os.getenv("DEFAULT_PROVIDER_CODE", "")
CHAT_SLOT_LOOKAHEAD_HOURS = int(os.getenv("CHAT_SLOT_LOOKAHEAD_HOURS", "72"))
CHAT_SLOT_LIMIT = int(os.getenv("CHAT_SLOT_LIMIT", "8"))
# 0 disables the policy.
BOOKING_REPROMPT_SUPPRESS_MINUTES = int(os.getenv("BOOKING_REPROMPT_SUPPRESS_MINUTES", "120"))

VALID_RESERVATION_STRATEGIES = {"auto", "routine", "conditional"}


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if RESERVATION_STRATEGY not in VALID_RESERVATION_STRATEGIES:
        raise RuntimeError(
            f"RESERVATION_STRATEGY must be one of {sorted(VALID_RESERVATION_STRATEGIES)}."
        )
