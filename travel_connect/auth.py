"""
Identity provider for Travel Connect.

Resolves request credentials (a session token sent as a Bearer header or the
`user_session` cookie) to the authenticated User. Account registration and
password handling live outside this service; the helpers that create users
and sessions exist for provisioning and tests.
"""

import logging
import secrets
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import HTTPException, Request

from travel_connect.db import TripStore, utc_now_iso
from travel_connect.errors import DependencyError
from travel_connect.models import User, UserRole

logger = logging.getLogger("travel_connect.auth")

SESSION_COOKIE = "user_session"
SESSION_DAYS = 30


def generate_session_token() -> str:
    """Generate a secure session token."""
    return secrets.token_urlsafe(32)


def _row_to_user(row: sqlite3.Row) -> User:
    try:
        role = UserRole(row["role"])
    except ValueError:
        role = UserRole.USER
    return User(
        id=row["id"],
        username=row["username"],
        name=row["name"],
        role=role,
        created_at=row["created_at"],
    )


def extract_credentials(request: Request) -> Optional[str]:
    auth_header = request.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    return request.cookies.get(SESSION_COOKIE) or None


class IdentityProvider:
    def __init__(self, store: TripStore):
        self.store = store

    # ─────────────────────────── USERS ───────────────────────────

    def create_user(self, username: str, name: str, role: UserRole = UserRole.USER) -> User:
        now = utc_now_iso()
        user_id = str(uuid.uuid4())
        with self.store.transaction() as conn:
            conn.execute("""
                INSERT INTO users (id, username, name, role, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (user_id, username.strip().lower(), name, role.value, now, now))
        logger.info(f"User created: {username} ({user_id})")
        return self.get_user_by_id(user_id)

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        with self.store.read() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self.store.read() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE username = ?", ((username or "").strip().lower(),)
            ).fetchone()
        return _row_to_user(row) if row else None

    # ─────────────────────────── SESSIONS ───────────────────────────

    def create_user_session(self, user_id: str, device_info: str = None) -> str:
        """Create a new session for a user and return its token."""
        token = generate_session_token()
        now = utc_now_iso()
        expires = (datetime.now(timezone.utc) + timedelta(days=SESSION_DAYS)).replace(tzinfo=None).isoformat(timespec="microseconds") + "Z"
        with self.store.transaction() as conn:
            conn.execute("""
                INSERT INTO user_sessions (id, user_id, token, device_info, created_at, expires_at, last_active)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (str(uuid.uuid4()), user_id, token, device_info, now, expires, now))
        return token

    def get_user_by_session(self, token: str) -> Optional[User]:
        now = utc_now_iso()
        with self.store.transaction() as conn:
            row = conn.execute("""
                SELECT u.* FROM users u
                JOIN user_sessions s ON u.id = s.user_id
                WHERE s.token = ? AND s.expires_at > ?
            """, (token, now)).fetchone()
            if row:
                conn.execute("UPDATE user_sessions SET last_active = ? WHERE token = ?", (now, token))
        return _row_to_user(row) if row else None

    def authenticate(self, request: Request) -> Optional[User]:
        """Return the user behind the request credentials, or None for anonymous callers."""
        token = extract_credentials(request)
        if not token:
            return None
        try:
            return self.get_user_by_session(token)
        except sqlite3.Error as e:
            logger.error(f"Session lookup failed: {e}")
            raise DependencyError("Identity provider unavailable") from e


# ─────────────────────────── FASTAPI DEPENDENCIES ───────────────────────────

async def get_current_user(request: Request) -> Optional[User]:
    """Get the current user, or None if the request is anonymous."""
    return request.app.state.ctx.identity.authenticate(request)


async def require_user(request: Request) -> User:
    """Require an authenticated user."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user
