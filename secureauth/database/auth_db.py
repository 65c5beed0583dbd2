"""
Identity provider for SecureAuth.

Owns the account tables and everything that decides who is signed in:
- Accounts and their bcrypt password hashes
- Bearer sessions (issued when a verification flow completes)
- Failed password attempts, used for account lockout
- Schema creation for every authentication table

Two-factor secrets and passkeys live in the same database but are accessed
through CredentialStore (credential_store.py).

SECURITY NOTE: TOTP secrets are stored as plain base32 text. Encryption at
rest is left to the database deployment.
"""
import os
import uuid
import secrets
import logging
from typing import Optional
from datetime import datetime, timedelta, timezone
from contextlib import contextmanager

import bcrypt
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from .models import Account, AccountSession
from ..utils.secrets import get_secret

logger = logging.getLogger(__name__)

PASSWORD_ROUNDS = 12
# bcrypt only reads this many bytes; newer releases reject longer input
PASSWORD_MAX_BYTES = 72

# Statements run in order by AuthDB.init_schema(); all are idempotent.
SCHEMA = [
    # Accounts (identity provider)
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id VARCHAR(36) PRIMARY KEY,
        email VARCHAR(255) UNIQUE NOT NULL,
        password_hash VARCHAR(255) NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_login TIMESTAMP WITH TIME ZONE,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL,
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_sessions (
        token VARCHAR(64) PRIMARY KEY,
        user_id VARCHAR(36) NOT NULL REFERENCES users(user_id) ON DELETE CASCADE,
        issued_at TIMESTAMP WITH TIME ZONE NOT NULL,
        expires_at TIMESTAMP WITH TIME ZONE NOT NULL,
        revoked_at TIMESTAMP WITH TIME ZONE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS login_failures (
        id VARCHAR(36) PRIMARY KEY,
        email VARCHAR(255) NOT NULL,
        failed_at TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    # Profiles and credentials
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id VARCHAR(36) PRIMARY KEY REFERENCES users(user_id) ON DELETE CASCADE,
        email TEXT NOT NULL,
        full_name TEXT,
        created_at TIMESTAMP WITH TIME ZONE,
        updated_at TIMESTAMP WITH TIME ZONE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_2fa (
        id VARCHAR(36) PRIMARY KEY,
        user_id VARCHAR(36) NOT NULL UNIQUE REFERENCES profiles(id) ON DELETE CASCADE,
        secret TEXT NOT NULL,
        enabled BOOLEAN DEFAULT TRUE,
        backup_codes TEXT,
        created_at TIMESTAMP WITH TIME ZONE,
        updated_at TIMESTAMP WITH TIME ZONE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_passkeys (
        id VARCHAR(36) PRIMARY KEY,
        user_id VARCHAR(36) NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
        credential_id TEXT NOT NULL UNIQUE,
        public_key TEXT NOT NULL,
        counter BIGINT DEFAULT 0,
        device_name TEXT,
        created_at TIMESTAMP WITH TIME ZONE,
        last_used_at TIMESTAMP WITH TIME ZONE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_account_sessions_user ON account_sessions(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_login_failures_email ON login_failures(email, failed_at)",
    "CREATE INDEX IF NOT EXISTS idx_user_passkeys_user ON user_passkeys(user_id)",
]


def utcnow() -> str:
    """
    Current UTC time as ISO-8601 text.

    Timestamps are bound as text so SQLite and PostgreSQL both store values
    that compare correctly.
    """
    return _iso(datetime.now(timezone.utc))


def _iso(moment: datetime) -> str:
    return moment.isoformat(timespec="microseconds")


def _normalize_email(email: str) -> str:
    return email.lower().strip()


def default_connection_string() -> str:
    """Build the connection string from DATABASE_URL or POSTGRES_* variables."""
    url = os.getenv("DATABASE_URL")
    if url:
        return url

    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    db = os.getenv("POSTGRES_DB", "secureauth")
    user = os.getenv("POSTGRES_USER", "secureauth_user")
    password = get_secret("POSTGRES_PASSWORD", "")
    return f"postgresql://{user}:{password}@{host}:{port}/{db}"


def create_db_engine(connection_string: str) -> Engine:
    """
    Create a SQLAlchemy engine.

    SQLite (local runs and tests) shares a single connection so in-memory
    databases survive across sessions; everything else gets a QueuePool.
    """
    if connection_string.startswith("sqlite"):
        return create_engine(
            connection_string,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return create_engine(
        connection_string,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_pre_ping=True,
        pool_recycle=300,
    )


class AuthDB:
    """
    Connection manager for accounts, sessions and credential tables.

    Example usage:
        auth_db = AuthDB("sqlite:///auth.db")
        auth_db.init_schema()

        user_id = auth_db.create_user("user@example.com", hash_password("pw"))
        token = auth_db.create_session(user_id)
        session = auth_db.validate_session(token)
    """

    def __init__(self, connection_string: Optional[str] = None):
        """
        Args:
            connection_string: SQLAlchemy URL. Built from DATABASE_URL or
                             POSTGRES_* variables if not provided.
        """
        self.engine = create_db_engine(connection_string or default_connection_string())
        self.Session = sessionmaker(bind=self.engine)

    @contextmanager
    def get_session(self):
        """
        Transactional session: committed on success, rolled back on error.

        Usage:
            with auth_db.get_session() as session:
                session.execute(text("SELECT 1"))
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_schema(self) -> None:
        """Create all tables and indexes that do not exist yet."""
        with self.get_session() as session:
            for statement in SCHEMA:
                session.execute(text(statement))
        logger.info(f"Database schema ready ({len(SCHEMA)} statements)")

    # ==========================================
    # Accounts
    # ==========================================

    def create_user(
        self,
        email: str,
        password_hash: str,
        full_name: Optional[str] = None,
    ) -> str:
        """
        Create an account together with its profile row.

        Args:
            email: Sign-in email, stored lowercased.
            password_hash: Output of hash_password().
            full_name: Optional display name for the profile.

        Returns:
            The new account id.

        Raises:
            ValueError: The email is already registered.
        """
        email = _normalize_email(email)
        user_id = str(uuid.uuid4())
        now = utcnow()

        with self.get_session() as session:
            taken = session.execute(
                text("SELECT 1 FROM users WHERE email = :email"),
                {"email": email}
            ).fetchone()
            if taken:
                raise ValueError(f"An account with email '{email}' already exists")

            session.execute(
                text("""
                    INSERT INTO users (user_id, email, password_hash, is_active, created_at, updated_at)
                    VALUES (:user_id, :email, :password_hash, TRUE, :now, :now)
                """),
                {"user_id": user_id, "email": email, "password_hash": password_hash, "now": now}
            )
            session.execute(
                text("""
                    INSERT INTO profiles (id, email, full_name, created_at, updated_at)
                    VALUES (:id, :email, :full_name, :now, :now)
                """),
                {"id": user_id, "email": email, "full_name": full_name, "now": now}
            )

        logger.info(f"Account created: {email} ({user_id})")
        return user_id

    def get_user_by_email(self, email: str) -> Optional[Account]:
        """Look up an account by sign-in email, case-insensitively."""
        with self.get_session() as session:
            row = session.execute(
                text("""
                    SELECT user_id, email, password_hash, is_active, last_login, created_at
                    FROM users
                    WHERE email = :email
                """),
                {"email": _normalize_email(email)}
            ).fetchone()

        if row is None:
            return None
        return Account(
            user_id=str(row[0]),
            email=row[1],
            password_hash=row[2],
            is_active=bool(row[3]),
            last_login=row[4],
            created_at=row[5],
        )

    def update_last_login(self, user_id: str) -> None:
        with self.get_session() as session:
            session.execute(
                text("UPDATE users SET last_login = :now, updated_at = :now WHERE user_id = :user_id"),
                {"user_id": user_id, "now": utcnow()}
            )

    # ==========================================
    # Account Sessions
    # ==========================================

    def create_session(self, user_id: str, expires_hours: int = 24) -> str:
        """
        Issue a bearer session for an account.

        Returns:
            Opaque session token (64 hex characters).
        """
        token = secrets.token_hex(32)
        issued_at = datetime.now(timezone.utc)
        expires_at = issued_at + timedelta(hours=expires_hours)

        with self.get_session() as session:
            session.execute(
                text("""
                    INSERT INTO account_sessions (token, user_id, issued_at, expires_at, revoked_at)
                    VALUES (:token, :user_id, :issued_at, :expires_at, NULL)
                """),
                {
                    "token": token,
                    "user_id": user_id,
                    "issued_at": _iso(issued_at),
                    "expires_at": _iso(expires_at),
                }
            )

        logger.debug(f"Session issued for user {user_id} until {expires_at:%Y-%m-%d %H:%M}")
        return token

    def validate_session(self, token: str) -> Optional[AccountSession]:
        """
        Resolve a bearer token.

        Returns:
            AccountSession, or None when the token is unknown, expired,
            revoked or belongs to a disabled account.
        """
        with self.get_session() as session:
            row = session.execute(
                text("""
                    SELECT u.user_id, u.email, s.expires_at
                    FROM account_sessions s
                    JOIN users u ON u.user_id = s.user_id
                    WHERE s.token = :token
                      AND s.revoked_at IS NULL
                      AND s.expires_at > :now
                      AND u.is_active = TRUE
                """),
                {"token": token, "now": utcnow()}
            ).fetchone()

        if row is None:
            return None
        return AccountSession(
            account_id=str(row[0]),
            email=row[1],
            token=token,
            expires_at=row[2],
        )

    def revoke_session(self, token: str) -> None:
        """Sign out one session."""
        with self.get_session() as session:
            session.execute(
                text("""
                    UPDATE account_sessions SET revoked_at = :now
                    WHERE token = :token AND revoked_at IS NULL
                """),
                {"token": token, "now": utcnow()}
            )

    def revoke_all_sessions(self, user_id: str) -> int:
        """
        Sign out every session of an account.

        Returns:
            How many sessions were still open.
        """
        with self.get_session() as session:
            result = session.execute(
                text("""
                    UPDATE account_sessions SET revoked_at = :now
                    WHERE user_id = :user_id AND revoked_at IS NULL
                """),
                {"user_id": user_id, "now": utcnow()}
            )
            revoked = result.rowcount

        logger.info(f"Revoked {revoked} sessions for user {user_id}")
        return revoked

    # ==========================================
    # Lockout
    # ==========================================

    def record_failed_login(self, email: str) -> int:
        """
        Remember a wrong password for an email.

        Returns:
            Failures for the email inside the default lockout window.
        """
        with self.get_session() as session:
            session.execute(
                text("INSERT INTO login_failures (id, email, failed_at) VALUES (:id, :email, :now)"),
                {"id": str(uuid.uuid4()), "email": _normalize_email(email), "now": utcnow()}
            )
        return self.get_failed_login_count(email)

    def get_failed_login_count(self, email: str, window_minutes: int = 15) -> int:
        """Failures for the email in the last `window_minutes`."""
        since = datetime.now(timezone.utc) - timedelta(minutes=window_minutes)

        with self.get_session() as session:
            count = session.execute(
                text("""
                    SELECT COUNT(*) FROM login_failures
                    WHERE email = :email AND failed_at > :since
                """),
                {"email": _normalize_email(email), "since": _iso(since)}
            ).scalar()

        return count or 0

    def clear_failed_logins(self, email: str) -> None:
        """Forget failures once the password is right."""
        with self.get_session() as session:
            session.execute(
                text("DELETE FROM login_failures WHERE email = :email"),
                {"email": _normalize_email(email)}
            )


# ==========================================
# Passwords
# ==========================================

def hash_password(password: str) -> str:
    """Bcrypt hash for storage in users.password_hash."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=PASSWORD_ROUNDS))
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Check a password against its stored hash; a malformed hash never matches."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is malformed")
        return False


_auth_db: Optional[AuthDB] = None


def get_auth_db() -> AuthDB:
    """Process-wide AuthDB built from the environment."""
    global _auth_db
    if _auth_db is None:
        _auth_db = AuthDB()
    return _auth_db
