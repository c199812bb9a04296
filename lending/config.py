import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


SQLALCHEMY_DATABASE_URL = os.getenv("SQLALCHEMY_DATABASE_URL", "sqlite:///./lending.db")

# Messaging is only started when a broker is configured
RABBIT_MQ_CONN_STR = os.getenv("RABBIT_MQ_CONN_STR")
BORROWING_QUEUE = os.getenv("BORROWING_QUEUE", "borrowing_requests")

MAX_ACTIVE_BORROWINGS = int(os.getenv("MAX_ACTIVE_BORROWINGS", "5"))
DEFAULT_BORROWING_DAYS = int(os.getenv("DEFAULT_BORROWING_DAYS", "14"))
MAX_RENEWALS = int(os.getenv("MAX_RENEWALS", "1"))
ENFORCE_RENEWAL_LIMIT = _env_bool("ENFORCE_RENEWAL_LIMIT")

AUTH_MAX_ATTEMPTS = int(os.getenv("AUTH_MAX_ATTEMPTS", "5"))
AUTH_LOCK_MINUTES = int(os.getenv("AUTH_LOCK_MINUTES", "15"))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
