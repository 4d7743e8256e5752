# Overview: Service-layer operations for auth; encapsulates business logic and database work.

"""
Staff Authentication Service

Staff accounts, bcrypt password hashing, and password strength checks.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor from BCRYPT_ROUNDS, default 12)
- Minimum 8 characters with upper, lower, digit, and special characters
- Session tokens managed separately (see session_service.py)
"""

import re

import bcrypt
from flask import current_app

from ..errors import ValidationFailed
from ..extensions import db
from ..models import Staff, ROLES
from .branch_service import require_branch
from rentaldesk.time_utils import utcnow


class PasswordValidationError(ValidationFailed):
    """Raised when password doesn't meet strength requirements."""

    def __init__(self, message: str):
        super().__init__(message, field="password")


def validate_password_strength(password: str) -> None:
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def hash_password(password: str) -> str:
    """Validate strength, then hash with bcrypt."""
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=current_app.config.get("BCRYPT_ROUNDS", 12))
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')  # Store as string in database


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        # Malformed hash
        return False


def create_staff(
    username: str,
    full_name: str,
    password: str,
    role: str = "staff",
    branch_id: int | None = None,
    phone: str | None = None,
) -> Staff:
    """
    Create a staff account with a bcrypt password hash.

    super_admin accounts have no branch; every other role requires one.

    Raises:
        ValidationFailed: unknown role, missing branch, duplicate username
        PasswordValidationError: weak password
    """
    if role not in ROLES:
        raise ValidationFailed(f"role must be one of: {', '.join(ROLES)}", field="role")

    if role == "super_admin":
        branch_id = None
    elif branch_id is None:
        raise ValidationFailed("branch_id is required for branch staff", field="branch_id")
    else:
        require_branch(branch_id)

    if db.session.query(Staff).filter_by(username=username).first():
        raise ValidationFailed("Username already exists", field="username")

    staff = Staff(
        username=username,
        full_name=full_name,
        phone=phone,
        role=role,
        branch_id=branch_id,
        password_hash=hash_password(password),
    )
    db.session.add(staff)
    db.session.commit()
    return staff


def authenticate(username: str, password: str) -> Staff | None:
    """
    Check credentials. Returns the Staff on success, None otherwise.
    Updates last_login_at on success.
    """
    staff = db.session.query(Staff).filter(
        Staff.username == username,
        Staff.is_active.is_(True),
    ).first()

    if not staff or not verify_password(password, staff.password_hash):
        return None

    staff.last_login_at = utcnow()
    db.session.commit()
    return staff
