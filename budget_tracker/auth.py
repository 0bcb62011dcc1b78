from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import re
from typing import Optional
from uuid import uuid4

import bcrypt
from sqlalchemy import delete, insert, select
from sqlalchemy.engine import Connection

from budget_tracker.database import sessions, users

SESSION_TTL_DAYS = 7
MIN_PASSWORD_LENGTH = 8
# bcrypt only accepts this many bytes of input.
MAX_PASSWORD_BYTES = 72
_SPECIAL_CHARS = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")


@dataclass(frozen=True)
class PasswordValidation:
    min_length: bool
    max_length: bool
    has_uppercase: bool
    has_lowercase: bool
    has_number: bool
    has_special_char: bool
    score: int
    strength: str

    @property
    def is_valid(self) -> bool:
        return (
            self.min_length
            and self.max_length
            and self.has_uppercase
            and self.has_lowercase
            and self.has_number
            and self.has_special_char
        )

    def missing_rules(self) -> list[str]:
        rules = {
            f"at least {MIN_PASSWORD_LENGTH} characters": self.min_length,
            f"at most {MAX_PASSWORD_BYTES} bytes": self.max_length,
            "an uppercase letter": self.has_uppercase,
            "a lowercase letter": self.has_lowercase,
            "a number": self.has_number,
            "a special character": self.has_special_char,
        }
        return [rule for rule, passed in rules.items() if not passed]


@dataclass(frozen=True)
class Session:
    token: str
    user_id: str
    expires_at: datetime


def validate_password(password: str) -> PasswordValidation:
    min_length = len(password) >= MIN_PASSWORD_LENGTH
    max_length = len(_password_bytes(password)) <= MAX_PASSWORD_BYTES
    has_uppercase = re.search(r"[A-Z]", password) is not None
    has_lowercase = re.search(r"[a-z]", password) is not None
    has_number = re.search(r"[0-9]", password) is not None
    has_special_char = _SPECIAL_CHARS.search(password) is not None

    score = sum(
        (
            min_length,
            has_uppercase and has_lowercase,
            has_number,
            has_special_char,
        )
    )
    strength = {4: "strong", 3: "good", 2: "fair"}.get(score, "weak")
    return PasswordValidation(
        min_length=min_length,
        max_length=max_length,
        has_uppercase=has_uppercase,
        has_lowercase=has_lowercase,
        has_number=has_number,
        has_special_char=has_special_char,
        score=score,
        strength=strength,
    )


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    encoded = _password_bytes(password)
    if len(encoded) > MAX_PASSWORD_BYTES:
        return False
    return bcrypt.checkpw(encoded, hashed_password.encode("utf-8"))


def create_session(
    conn: Connection,
    user_id: str,
    ttl_days: int = SESSION_TTL_DAYS,
    now: Optional[datetime] = None,
) -> Session:
    issued_at = now or _utc_now()
    session = Session(
        token=uuid4().hex,
        user_id=user_id,
        expires_at=issued_at + timedelta(days=ttl_days),
    )
    conn.execute(
        insert(sessions).values(
            token=session.token,
            user_id=session.user_id,
            expires_at=session.expires_at,
        )
    )
    return session


def resolve_session(
    conn: Connection, token: str, now: Optional[datetime] = None
) -> Optional[str]:
    """User id behind a live session token; expired tokens are purged."""
    row = conn.execute(
        select(sessions.c.user_id, sessions.c.expires_at)
        .select_from(sessions.join(users, users.c.id == sessions.c.user_id))
        .where(sessions.c.token == token)
    ).mappings().first()
    if not row:
        return None
    if row["expires_at"] <= (now or _utc_now()):
        conn.execute(delete(sessions).where(sessions.c.token == token))
        return None
    return row["user_id"]


def revoke_session(conn: Connection, token: str) -> None:
    conn.execute(delete(sessions).where(sessions.c.token == token))


def _utc_now() -> datetime:
    # Stored naive, in UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _password_bytes(password: str) -> bytes:
    return password.encode("utf-8")
