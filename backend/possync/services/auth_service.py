# Overview: Service-layer operations for auth; accounts, bcrypt passwords and JWT bearer tokens.

"""
Authentication Service

WHY: Sync is scoped per user. A signed-up shop gets a bearer token whose
subject is its user id; devices that registered fully offline are identified
by the X-User-Id header instead (see decorators.flexible_auth).

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor 12)
- Minimum 8 characters, at least one letter and one digit
- Tokens are HS256 JWTs carrying sub (user id) and company_code
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt
from flask import current_app

from ..company import derive_company_code
from ..extensions import db
from ..models import User
from ..time_utils import utcnow


class AuthError(Exception):
    """Raised for authentication failures (401)."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def validate_password_strength(password: str) -> None:
    if not password or len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")
    if not re.search(r"[A-Za-z]", password):
        raise PasswordValidationError("Password must contain at least one letter")
    if not re.search(r"\d", password):
        raise PasswordValidationError("Password must contain at least one digit")


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt with cost factor 12.

    Password is validated for strength before hashing.
    """
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
    return hashed.decode("utf-8")  # Store as string in database


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash in the database
        return False


def create_user(
    name: str,
    email: str,
    password: str,
    company: str | None = None,
    location: str | None = None,
    company_code: str | None = None,
) -> User:
    """
    Create a shop account.

    COMPANY CODE: derived once from the shop name (company) unless given
    explicitly; it is never recomputed when the shop is renamed.
    """
    name = (name or "").strip()
    email = (email or "").strip().lower()
    if not name:
        raise ValueError("name is required")
    if not _EMAIL_RE.match(email):
        raise ValueError("A valid email is required")

    if db.session.query(User).filter_by(email=email).first():
        raise ValueError("Email already registered")

    default_code = current_app.config.get("DEFAULT_COMPANY_CODE", "GUR")
    user = User(
        name=name,
        email=email,
        password_hash=hash_password(password),
        company=company,
        location=location,
        company_code=derive_company_code(company_code or company, default=default_code),
    )
    db.session.add(user)
    db.session.commit()
    return user


def authenticate(email: str, password: str) -> User | None:
    """Return the active user for valid credentials, else None."""
    email = (email or "").strip().lower()
    user = db.session.query(User).filter_by(email=email).first()
    if not user or not user.is_active:
        return None
    if not verify_password(password or "", user.password_hash):
        return None

    user.last_login_at = utcnow()
    db.session.commit()
    return user


def create_access_token(user: User, expires_delta: timedelta | None = None) -> str:
    now = datetime.now(timezone.utc)
    if expires_delta is None:
        expires_delta = timedelta(hours=int(current_app.config.get("JWT_EXPIRES_HOURS", 168)))
    payload = {
        "sub": user.id,
        "email": user.email,
        "company_code": user.company_code,
        "iat": now,
        "exp": now + expires_delta,
    }
    return jwt.encode(
        payload,
        current_app.config["JWT_SECRET"],
        algorithm=current_app.config.get("JWT_ALGORITHM", "HS256"),
    )


def decode_access_token(token: str) -> dict:
    """Verified claims of a bearer token. Raises AuthError when invalid or expired."""
    try:
        claims = jwt.decode(
            token,
            current_app.config["JWT_SECRET"],
            algorithms=[current_app.config.get("JWT_ALGORITHM", "HS256")],
        )
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")

    if not claims.get("sub"):
        raise AuthError("Invalid token: missing subject")
    return claims


def get_user(user_id: str) -> User | None:
    if not user_id:
        return None
    return db.session.get(User, user_id)
