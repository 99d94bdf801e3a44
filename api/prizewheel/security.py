import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from fastapi import Header, HTTPException, status
from jose import jwt, JWTError

from .config import settings

ALGO = "HS256"
ADMIN_ROLE = "admin"


def verify_admin_password(candidate: str) -> bool:
    """Check a login attempt against ADMIN_PASSWORD_HASH, or ADMIN_PASSWORD when no hash is set."""
    stored_hash = settings.admin_password_hash
    if stored_hash:
        try:
            return bcrypt.checkpw(candidate.encode("utf-8"), stored_hash.encode("utf-8"))
        except ValueError:
            # malformed hash in the environment
            return False
    if not settings.admin_password:
        return False
    return secrets.compare_digest(candidate, settings.admin_password)


def make_admin_token() -> str:
    issued = datetime.now(timezone.utc)
    claims = {
        "sub": ADMIN_ROLE,
        "role": ADMIN_ROLE,
        "iat": issued,
        "exp": issued + timedelta(hours=settings.admin_token_hours),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=ALGO)


def require_admin(authorization: str | None = Header(default=None, alias="Authorization")):
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[ALGO])
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if claims.get("role") != ADMIN_ROLE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin only")
    return True
