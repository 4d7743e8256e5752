# Overview: Service-layer operations for session; encapsulates business logic and database work.

"""
Session Token Management Service

Session tokens with absolute and idle timeouts plus revocation.
Tokens are random, stored only as hashes, and time-limited.

Sessions capture branch_id at creation time. This establishes the branch
scope for every authenticated request without repeated lookups.

SECURITY FEATURES:
- Cryptographically secure random tokens (32 bytes)
- Tokens hashed with SHA-256 before storage (fast, one-way)
- Absolute timeout (SESSION_ABSOLUTE_HOURS, default 24)
- Idle timeout (SESSION_IDLE_HOURS, default 2)
- Revocable on logout
"""

import secrets
import hashlib
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import SessionToken, Staff
from rentaldesk.time_utils import utcnow


@dataclass
class SessionContext:
    """Session context returned by validate_session."""
    staff: Staff
    session: SessionToken
    branch_id: int | None  # None for super admins


def _absolute_timeout() -> timedelta:
    return timedelta(hours=current_app.config.get("SESSION_ABSOLUTE_HOURS", 24))


def _idle_timeout() -> timedelta:
    return timedelta(hours=current_app.config.get("SESSION_IDLE_HOURS", 2))


def generate_token() -> str:
    """Return a 64-character hex token (32 bytes of entropy); never stored."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """
    Hash token for database storage using SHA-256.

    Tokens are high-entropy, so a plain SHA-256 digest is stored.
    """
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def create_session(
    staff_id: int,
    user_agent: str | None = None,
    ip_address: str | None = None
) -> tuple[SessionToken, str]:
    """
    Create new session token for a staff member.

    Returns (session_record, plaintext_token).
    Raises ValueError if the staff member is unknown or inactive.
    """
    staff = db.session.get(Staff, staff_id)
    if not staff or not staff.is_active:
        raise ValueError("Staff member not found or inactive")
    if not staff.is_super_admin and not staff.branch_id:
        raise ValueError("Staff member must belong to a branch")

    plaintext_token = generate_token()
    now = utcnow()

    session = SessionToken(
        staff_id=staff_id,
        branch_id=None if staff.is_super_admin else staff.branch_id,
        token_hash=hash_token(plaintext_token),
        created_at=now,
        last_used_at=now,
        expires_at=now + _absolute_timeout(),
        user_agent=user_agent,
        ip_address=ip_address,
        is_revoked=False
    )

    db.session.add(session)
    db.session.commit()

    return session, plaintext_token


def _revoke(session: SessionToken, reason: str) -> None:
    session.is_revoked = True
    session.revoked_at = utcnow()
    session.revoked_reason = reason
    db.session.commit()


def validate_session(token: str) -> SessionContext | None:
    """
    Validate session token and return SessionContext if valid.

    Returns None if the token is invalid, expired, idle too long, revoked,
    or its staff member was deactivated. Updates last_used_at on success.
    """
    now = utcnow()

    session = db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False
    ).first()

    if not session:
        return None

    if session.expires_at < now:
        return None

    if now - session.last_used_at > _idle_timeout():
        _revoke(session, "Idle timeout")
        return None

    staff = session.staff
    if not staff or not staff.is_active:
        _revoke(session, "Staff account deactivated")
        return None

    session.last_used_at = now
    db.session.commit()

    return SessionContext(staff=staff, session=session, branch_id=session.branch_id)


def revoke_session(token: str, reason: str = "User logout") -> bool:
    """Revoke session token. Returns True if a live session was revoked."""
    session = db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False
    ).first()

    if not session:
        return False

    _revoke(session, reason)
    return True
