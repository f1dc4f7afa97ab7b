from __future__ import annotations

import datetime as dt
import hashlib
import hmac
import secrets

import bcrypt

from lotty.config import session_max_age_days, session_secret


def hash_password(password: str) -> str:
    # bcrypt stores algorithm + cost + salt in the resulting hash string.
    password_bytes = password.encode("utf-8")
    salt = bcrypt.gensalt(rounds=12)
    return bcrypt.hashpw(password_bytes, salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(
            password.encode("utf-8"),
            password_hash.encode("utf-8"),
        )
    except ValueError:
        # Invalid hash format.
        return False


def new_session_token() -> str:
    return secrets.token_urlsafe(48)


def session_token_digest(token: str) -> str:
    """
    HMAC-SHA256 of a session token keyed by SESSION_SECRET. `user_sessions`
    stores this, never the raw token.
    """
    return hmac.new(session_secret().encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()


def session_expiry(now: dt.datetime | None = None) -> dt.datetime:
    now = now or dt.datetime.now(dt.timezone.utc)
    return now + dt.timedelta(days=session_max_age_days())


def session_max_age_seconds() -> int:
    return session_max_age_days() * 24 * 60 * 60
