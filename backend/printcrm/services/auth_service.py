"""
Authentication Service

WHY: Every deal transition, stock posting and payment must be attributable
to a user. Passwords are hashed with bcrypt; login hands out an opaque bearer
token (see session_service.py).

SECURITY NOTES:
- bcrypt cost factor comes from BCRYPT_LOG_ROUNDS (12 in production, 4 in tests)
- Minimum 8 characters; no further strength policy
- Deactivated users cannot authenticate
"""

import bcrypt
from flask import current_app

from ..extensions import db
from ..models import User
from ..models.users import VALID_ROLES
from ..validation import ConflictError, ValidationError
from printcrm.time_utils import utcnow


MIN_PASSWORD_LENGTH = 8


class PasswordValidationError(ValidationError):
    """Raised when password doesn't meet the minimum requirements."""
    pass


def validate_password_strength(password: str) -> None:
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise PasswordValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
        )


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt.

    Password is validated before hashing.
    """
    validate_password_strength(password)
    rounds = current_app.config.get("BCRYPT_LOG_ROUNDS", 12)
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    WHY timing-safe: bcrypt.checkpw() prevents timing attacks automatically.
    """
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        # Malformed hash in the database
        return False


def create_user(
    username: str,
    password: str,
    role: str,
    full_name: str | None = None,
    email: str | None = None,
) -> User:
    """
    Create a user. Caller commits.

    Raises:
        ValidationError: unknown role or weak password
        ConflictError: username already taken
    """
    username = (username or "").strip()
    if not username:
        raise ValidationError("username is required")
    if role not in VALID_ROLES:
        raise ValidationError(f"Invalid role '{role}'. Must be one of: {', '.join(VALID_ROLES)}")

    existing = db.session.query(User).filter_by(username=username).first()
    if existing:
        raise ConflictError(f"Username '{username}' already exists")

    user = User(
        username=username,
        full_name=(full_name or username).strip(),
        email=email,
        password_hash=hash_password(password),
        role=role,
        is_active=True,
    )
    db.session.add(user)
    db.session.flush()
    return user


def authenticate(username: str, password: str) -> User | None:
    """
    Authenticate user with username and password.

    Returns User if credentials valid, None otherwise.
    Updates last_login_at on success (caller commits).
    """
    if not username or not password:
        return None

    user = db.session.query(User).filter(
        User.username == username.strip(),
        User.is_active.is_(True),
    ).first()
    if not user:
        return None

    if not verify_password(password, user.password_hash):
        return None

    user.last_login_at = utcnow()
    return user
