import os
from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv

from donation_service.errors import ConfigurationError

# .env next to pyproject.toml; real environment variables take precedence
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

PAYMONGO_API_BASE = "https://api.paymongo.com/v1"


def _flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    jwt_secret: str | None
    paymongo_secret_key: str | None
    paymongo_webhook_secret: str | None
    paymongo_api_base: str
    paymongo_timeout: float
    api_base_url: str | None
    frontend_url: str | None
    capture_on_webhook: bool

    def require(self, *fields: str) -> None:
        """Raise ConfigurationError naming every unset field."""
        missing = [f.upper() for f in fields if not getattr(self, f)]
        if missing:
            raise ConfigurationError(
                f"Payment service is not configured: missing {', '.join(missing)}"
            )


def get_settings() -> Settings:
    # Read on every call so tests can patch os.environ
    return Settings(
        jwt_secret=os.getenv("JWT_SECRET"),
        paymongo_secret_key=os.getenv("PAYMONGO_SECRET_KEY"),
        paymongo_webhook_secret=os.getenv("PAYMONGO_WEBHOOK_SECRET"),
        paymongo_api_base=os.getenv("PAYMONGO_API_BASE", PAYMONGO_API_BASE),
        paymongo_timeout=float(os.getenv("PAYMONGO_TIMEOUT", "15")),
        api_base_url=(os.getenv("API_BASE_URL") or "").rstrip("/") or None,
        frontend_url=(os.getenv("FRONTEND_URL") or "").rstrip("/") or None,
        capture_on_webhook=_flag("PAYMONGO_CAPTURE_ON_WEBHOOK", True),
    )
