"""Password hashing, login and bearer token issue / verification.

Tokens are HS256 JWTs carrying ``sub`` (user id), ``username`` and ``role``.
Verification is stateless; the caller loads the user afterwards and rejects
the token when its role no longer matches the stored one.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from deptflow.config import settings
from deptflow.errors import Unauthenticated, ValidationFailed
from deptflow.models.directory import User

logger = logging.getLogger(__name__)

MAX_PASSWORD_BYTES = 72


@dataclass(frozen=True)
class Identity:
    user_id: uuid.UUID
    role: str


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


def hash_password(plain_password: str) -> str:
    """Hash a plain-text password with bcrypt.

    bcrypt only looks at the first 72 bytes, so longer input is rejected
    rather than silently truncated.
    """
    encoded = plain_password.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise ValidationFailed(
            f"Password must be at most {MAX_PASSWORD_BYTES} bytes",
            details={"field": "password"},
        )
    salt = bcrypt.gensalt(rounds=settings.bcrypt_rounds)
    return bcrypt.hashpw(encoded, salt).decode("utf-8")


def verify_password(plain_password: str, password_hash: str | None) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(
            plain_password.encode("utf-8"), password_hash.encode("utf-8")
        )
    except ValueError as exc:
        logger.warning("Password check failed: %s", exc)
        return False


def authenticate(db: Session, username: str, password: str) -> User:
    user = db.scalar(select(User).where(User.username == username))
    if user is None or not user.is_active:
        raise Unauthenticated("Invalid username or password")
    if not verify_password(password, user.password_hash):
        logger.info("Failed login for user %s", user.id)
        raise Unauthenticated("Invalid username or password")
    logger.info("User %s logged in", user.id)
    return user


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


def _secret() -> str:
    if not settings.jwt_secret:
        raise ValueError("JWT_SECRET environment variable is not set")
    return settings.jwt_secret


def create_access_token(
    user_id: uuid.UUID | str,
    username: str,
    role: str,
    expires_in: timedelta | None = None,
) -> str:
    now = datetime.now(timezone.utc)
    expiry = expires_in or timedelta(minutes=settings.jwt_expiry_minutes)
    payload = {
        "sub": str(user_id),
        "username": username,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + expiry).timestamp()),
    }
    return jwt.encode(payload, _secret(), algorithm=settings.jwt_algorithm)


def verify_token(token: str | None) -> Identity:
    if not token:
        raise Unauthenticated("Missing bearer token")
    try:
        payload = jwt.decode(token, _secret(), algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Token has expired")
    except jwt.InvalidTokenError as exc:
        logger.debug("Rejected bearer token: %s", exc)
        raise Unauthenticated("Invalid token")

    subject = payload.get("sub")
    role = payload.get("role")
    if not subject or not role:
        raise Unauthenticated("Invalid token claims")
    try:
        user_id = uuid.UUID(subject)
    except ValueError:
        raise Unauthenticated("Invalid token claims")
    return Identity(user_id=user_id, role=role)
