from __future__ import annotations

import os


def _load_dotenv_if_present() -> None:
    """
    Load environment variables from a local `.env` file (dev convenience).

    Production deployments should set real environment variables instead.
    """
    try:
        from dotenv import load_dotenv

        # Do not override existing environment variables.
        load_dotenv(override=False)
    except ImportError:
        return


_load_dotenv_if_present()


_DEFAULT_SESSION_SECRET = "dev-session-secret-change-me"


def database_url() -> str:
    url = os.environ.get("DATABASE_URL") or "sqlite:///./local.db"
    # Some managed providers still supply `postgres://...` which SQLAlchemy treats as invalid.
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


def is_local_dev() -> bool:
    return not (os.environ.get("DATABASE_URL") or "").strip()


def app_env() -> str:
    """
    Application environment marker: local | staging | prod.
    """
    raw = (os.environ.get("APP_ENV") or "").strip().lower()
    if raw:
        return raw
    return "local" if is_local_dev() else "prod"


def is_production() -> bool:
    return app_env() in {"prod", "production"}


def session_secret() -> str:
    return os.environ.get("SESSION_SECRET") or _DEFAULT_SESSION_SECRET


def enforce_secure_secrets() -> None:
    """
    Fail-fast in production if dangerous defaults are still in use.
    """
    if is_production() and session_secret() == _DEFAULT_SESSION_SECRET:
        raise RuntimeError("SESSION_SECRET must be set in production (default dev secret detected)")


def session_cookie_name() -> str:
    return (os.environ.get("SESSION_COOKIE_NAME") or "lotty_sid").strip()


def session_max_age_days() -> int:
    return 30


def cookie_secure() -> bool:
    return is_production()


def log_level() -> str:
    return (os.environ.get("LOG_LEVEL") or "INFO").strip().upper()


def allowed_hosts() -> list[str]:
    """
    Comma-separated list for the TrustedHost middleware, e.g. ALLOWED_HOSTS=api.lotty.py
    """
    raw = (os.environ.get("ALLOWED_HOSTS") or "").strip()
    hosts = [h.strip() for h in raw.split(",") if h.strip()]
    return hosts or ["*"]


def cors_origins() -> list[str]:
    """
    Comma-separated list, e.g. CORS_ORIGINS=https://lotty.py,https://www.lotty.py
    """
    raw = (os.environ.get("CORS_ORIGINS") or "").strip()
    if raw:
        return [o.strip() for o in raw.split(",") if o.strip()]
    return [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:5000",
        "http://127.0.0.1:5000",
    ]


# -----------------------
# Uploads
# -----------------------
def uploads_dir() -> str:
    return os.environ.get("UPLOADS_DIR") or os.path.join(os.getcwd(), "uploads")


def uploads_url_prefix() -> str:
    return "/uploads"


def max_upload_image_bytes() -> int:
    return 5 * 1024 * 1024


def allowed_image_types() -> frozenset[str]:
    return frozenset({"image/jpeg", "image/png", "image/webp"})


# -----------------------
# Background sweep
# -----------------------
def sweep_interval_seconds() -> int:
    raw = (os.environ.get("SWEEP_INTERVAL_SECONDS") or "").strip()
    try:
        v = int(raw or "600")
    except ValueError:
        v = 600
    return max(v, 5)


def sweeper_enabled() -> bool:
    v = (os.environ.get("SWEEPER_ENABLED") or "1").strip().lower()
    return v not in {"0", "false", "no", "off"}


def seed_demo_data() -> bool:
    raw = (os.environ.get("SEED_DEMO_DATA") or "").strip().lower()
    if raw:
        return raw in {"1", "true", "yes", "on"}
    return is_local_dev()


# -----------------------
# Login throttling
# -----------------------
def login_attempt_limit() -> int:
    return 10


def login_attempt_window_seconds() -> int:
    return 300
