"""Password hashing and access-token helpers."""
from __future__ import annotations
from datetime import datetime, timedelta, timezone
import bcrypt
from jose import jwt
from chartsense.config import get_settings


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()

def create_access_token(
    user_id: str,
    expires_delta: timedelta | None = None,
    token_type: str = "user",
) -> str:
    """Sign a session token in the format ``api.dependencies`` accepts."""
    settings = get_settings()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.jwt_expire_minutes)
    )
    payload = {"sub": user_id, "exp": expire, "type": token_type}
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)
