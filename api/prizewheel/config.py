import os
from pathlib import Path
from pydantic import BaseModel
from dotenv import load_dotenv

ENV_PATH = Path(__file__).resolve().parents[1] / ".env"


def _load_env(path: Path) -> None:
    if not path.exists():
        return
    # file values win over empty or inherited ones
    load_dotenv(path, override=True)
    # editors on Windows save a BOM, which glues itself to the first key
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.startswith("\ufeff"):
            continue
        key, sep, value = line.lstrip("\ufeff").partition("=")
        if sep and not os.getenv(key.strip()):
            os.environ[key.strip()] = value.strip()
        break


_load_env(ENV_PATH)


def async_database_url(url: str) -> str:
    """Point plain postgres URLs at the async psycopg driver."""
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: str = async_database_url(
        os.getenv("DATABASE_URL", "") or "sqlite+aiosqlite:///./prizewheel.db"
    )
    create_tables: bool = _flag("CREATE_TABLES", "true")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    jwt_secret: str = os.getenv("JWT_SECRET", "dev_change_me")
    allowed_origins: list[str] = [
        o.strip() for o in os.getenv("ALLOWED_ORIGINS", "").split(",") if o.strip()
    ]
    allowed_origin_regex: str | None = os.getenv("ALLOWED_ORIGIN_REGEX") or None

    admin_password: str = os.getenv("ADMIN_PASSWORD", "")
    admin_token_hours: int = int(os.getenv("ADMIN_TOKEN_HOURS", "24"))
    admin_password_hash: str = os.getenv("ADMIN_PASSWORD_HASH", "")  # bcrypt hash
    # second secret for POST /api/admin/reset; reset is disabled while empty
    admin_reset_password: str = os.getenv("ADMIN_RESET_PASSWORD", "")

    # failed-attempt guard for code entry, spins and admin login
    rate_limit_max_attempts: int = int(os.getenv("RATE_LIMIT_MAX_ATTEMPTS", "5"))
    rate_limit_window_minutes: float = float(os.getenv("RATE_LIMIT_WINDOW_MINUTES", "15"))

    spin_timeout_seconds: float = float(os.getenv("SPIN_TIMEOUT_SECONDS", "10"))
    spin_max_retries: int = int(os.getenv("SPIN_MAX_RETRIES", "1"))

    # Resend (https://resend.com) HTTP API
    resend_api_key: str | None = os.getenv("RESEND_API_KEY") or None
    resend_api_url: str = os.getenv("RESEND_API_URL", "https://api.resend.com/emails")
    email_from: str = os.getenv("EMAIL_FROM", "Prize Wheel <noreply@example.com>")
    admin_email: str | None = os.getenv("ADMIN_EMAIL") or None
    email_send_interval_seconds: float = float(os.getenv("EMAIL_SEND_INTERVAL_SECONDS", "0.6"))
    email_timeout_seconds: float = float(os.getenv("EMAIL_TIMEOUT_SECONDS", "15"))

    app_url: str = os.getenv("APP_URL", "http://localhost:3000")
    app_name: str = os.getenv("APP_NAME", "Prize Wheel")

    cache_ttl_seconds: float = float(os.getenv("CACHE_TTL_SECONDS", "300"))

settings = Settings()
