"""
Relational database manager for the step-up authentication service.

This module provides connection management and the account/session reads
the two-factor flows depend on:
- Session validation (Bearer token -> user identity)
- User lookup
- Schema creation for the two-factor tables

PostgreSQL in production; SQLite is supported for local development and tests.
Timestamps are written as ISO-8601 strings and parsed back with
`parse_db_timestamp`, so both dialects round-trip the same values.
"""
import os
import uuid
import secrets
import logging
from typing import Optional, Dict, Any
from datetime import datetime, timedelta, timezone
from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool

from ..utils.secrets import get_secret

logger = logging.getLogger(__name__)


# ==========================================
# Timestamp Helpers
# ==========================================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for storage (UTC, ISO-8601)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_db_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp read from either dialect.

    Postgres returns datetime objects, SQLite returns strings.
    Unparseable values are returned as None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Ignoring unparseable timestamp: {value!r}")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_db_bool(value: Any) -> bool:
    """Accept True/1/'t'/'true'/'1' as true; everything else is false."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value == 1
    return str(value or "").strip().lower() in ("t", "true", "1")


def default_connection_string() -> str:
    """DATABASE_URL if set, otherwise built from POSTGRES_* variables."""
    url = os.getenv("DATABASE_URL")
    if url:
        return url

    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    db = os.getenv("POSTGRES_DB", "stepguard")
    user = os.getenv("POSTGRES_USER", "stepguard_user")
    password = get_secret("POSTGRES_PASSWORD", default="")
    return f"postgresql://{user}:{password}@{host}:{port}/{db}"


class AuthDB:
    """
    Connection manager for accounts, sessions and two-factor state.

    Example usage:
        auth_db = AuthDB("sqlite:///./stepguard.db")
        auth_db.init_schema()

        user = auth_db.validate_session(token)
    """

    def __init__(self, connection_string: Optional[str] = None):
        """
        Initialize database connection.

        Args:
            connection_string: SQLAlchemy URL.
                             Uses environment variables if not provided.
        """
        if connection_string is None:
            connection_string = default_connection_string()

        if connection_string.startswith("sqlite"):
            # TestClient and uvicorn workers use the engine from other threads
            self.engine = create_engine(
                connection_string,
                connect_args={"check_same_thread": False},
            )
        else:
            self.engine = create_engine(
                connection_string,
                poolclass=QueuePool,
                pool_size=10,
                max_overflow=20,
                pool_timeout=30,
                pool_pre_ping=True,  # Test connections before use (detect stale)
                pool_recycle=300,    # Recycle connections every 5 minutes
            )
        self.Session = sessionmaker(bind=self.engine)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @contextmanager
    def get_session(self):
        """
        Get a database session with automatic cleanup.

        Usage:
            with auth_db.get_session() as session:
                result = session.execute(query)
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

    # ==========================================
    # User Management
    # ==========================================

    def create_user(self, email: str, user_id: Optional[str] = None) -> str:
        """
        Insert an account row. Account registration itself lives elsewhere;
        this is used by provisioning scripts and tests.

        Returns:
            Id of the created user.
        """
        user_id = user_id or str(uuid.uuid4())
        now = to_db_timestamp(utc_now())

        with self.get_session() as session:
            session.execute(
                text("""
                    INSERT INTO users (user_id, email, is_active, created_at, updated_at)
                    VALUES (:user_id, :email, TRUE, :now, :now)
                """),
                {"user_id": user_id, "email": email.lower().strip(), "now": now}
            )

        logger.info(f"Created user id={user_id}")
        return user_id

    # ==========================================
    # Session Management
    # ==========================================

    def create_session(self, user_id: str, expires_hours: int = 24) -> str:
        """
        Create a session for a user.

        Returns:
            Session token (secure random 64-char hex string).
        """
        session_token = secrets.token_hex(32)
        now = utc_now()

        with self.get_session() as session:
            session.execute(
                text("""
                    INSERT INTO sessions (session_token, user_id, is_active, created_at, expires_at)
                    VALUES (:session_token, :user_id, TRUE, :created_at, :expires_at)
                """),
                {
                    "session_token": session_token,
                    "user_id": user_id,
                    "created_at": to_db_timestamp(now),
                    "expires_at": to_db_timestamp(now + timedelta(hours=expires_hours)),
                }
            )

        logger.debug(f"Created session for user {user_id}")
        return session_token

    def validate_session(self, session_token: str) -> Optional[Dict]:
        """
        Validate a session token.

        Args:
            session_token: The session token to validate.

        Returns:
            Dict with user_id and email if valid, None if invalid/expired.
        """
        with self.get_session() as session:
            result = session.execute(
                text("""
                    SELECT u.user_id, u.email, u.is_active, s.is_active, s.expires_at
                    FROM sessions s
                    JOIN users u ON s.user_id = u.user_id
                    WHERE s.session_token = :token
                """),
                {"token": session_token}
            ).fetchone()

        if not result:
            return None
        if not parse_db_bool(result[2]) or not parse_db_bool(result[3]):
            return None

        expires_at = parse_db_timestamp(result[4])
        if expires_at is None or expires_at <= utc_now():
            return None

        return {
            "user_id": str(result[0]),
            "email": result[1],
            "session_expires_at": expires_at,
        }

    def invalidate_session(self, session_token: str) -> None:
        """Invalidate (logout) a session."""
        with self.get_session() as session:
            session.execute(
                text("UPDATE sessions SET is_active = FALSE WHERE session_token = :token"),
                {"token": session_token}
            )
        logger.debug("Invalidated session")

    # ==========================================
    # Schema Initialization
    # ==========================================

    def _ddl_types(self) -> Dict[str, str]:
        if self.dialect == "sqlite":
            return {"serial": "INTEGER PRIMARY KEY AUTOINCREMENT", "ts": "TEXT"}
        return {"serial": "BIGSERIAL PRIMARY KEY", "ts": "TIMESTAMP WITH TIME ZONE"}

    def init_schema(self, include_legacy_columns: bool = True) -> None:
        """
        Initialize database schema (create tables if not exist).

        Args:
            include_legacy_columns: Create the mfa_* columns on `users` that
                older deployments used for two-factor state.
        """
        t = self._ddl_types()
        legacy_columns = f"""
                    mfa_enabled BOOLEAN DEFAULT FALSE,
                    totp_secret VARCHAR(64),
                    mfa_enabled_at {t['ts']},
                    mfa_disabled_at {t['ts']},""" if include_legacy_columns else ""

        statements = [
            f"""
                CREATE TABLE IF NOT EXISTS users (
                    user_id VARCHAR(64) PRIMARY KEY,
                    email VARCHAR(255) UNIQUE NOT NULL,
                    is_active BOOLEAN DEFAULT TRUE,{legacy_columns}
                    created_at {t['ts']} NOT NULL,
                    updated_at {t['ts']} NOT NULL
                )
            """,
            f"""
                CREATE TABLE IF NOT EXISTS sessions (
                    session_token VARCHAR(64) PRIMARY KEY,
                    user_id VARCHAR(64) NOT NULL REFERENCES users(user_id) ON DELETE CASCADE,
                    is_active BOOLEAN DEFAULT TRUE,
                    created_at {t['ts']} NOT NULL,
                    expires_at {t['ts']} NOT NULL
                )
            """,
            f"""
                CREATE TABLE IF NOT EXISTS two_factor_auth (
                    user_id VARCHAR(64) PRIMARY KEY,
                    enabled BOOLEAN NOT NULL DEFAULT FALSE,
                    secret VARCHAR(64),
                    enabled_at {t['ts']},
                    disabled_at {t['ts']},
                    updated_at {t['ts']} NOT NULL
                )
            """,
            f"""
                CREATE TABLE IF NOT EXISTS auth_challenges (
                    id {t['serial']},
                    email VARCHAR(255) NOT NULL,
                    channel VARCHAR(16) NOT NULL DEFAULT 'email',
                    code_hash VARCHAR(64) NOT NULL,
                    salt VARCHAR(64) NOT NULL,
                    expires_at {t['ts']} NOT NULL,
                    attempts_left INTEGER NOT NULL,
                    consumed BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at {t['ts']} NOT NULL
                )
            """,
            f"""
                CREATE TABLE IF NOT EXISTS two_factor_recovery_codes (
                    id {t['serial']},
                    user_id VARCHAR(64) NOT NULL,
                    code_hash VARCHAR(128) NOT NULL,
                    created_at {t['ts']} NOT NULL
                )
            """,
            f"""
                CREATE TABLE IF NOT EXISTS passkeys (
                    credential_id VARCHAR(255) PRIMARY KEY,
                    user_id VARCHAR(64) NOT NULL,
                    public_key TEXT,
                    sign_count INTEGER NOT NULL DEFAULT 0,
                    created_at {t['ts']} NOT NULL
                )
            """,
            "CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id)",
            "CREATE INDEX IF NOT EXISTS idx_challenges_email ON auth_challenges(email, channel, consumed)",
            "CREATE INDEX IF NOT EXISTS idx_recovery_codes_user ON two_factor_recovery_codes(user_id)",
            "CREATE INDEX IF NOT EXISTS idx_passkeys_user ON passkeys(user_id)",
        ]

        with self.get_session() as session:
            for statement in statements:
                session.execute(text(statement))

        logger.info("Database schema initialized")

    def health_check(self) -> bool:
        """Run a trivial query; raises if the database is unreachable."""
        with self.get_session() as session:
            session.execute(text("SELECT 1"))
        return True


# Singleton instance
_auth_db_instance: Optional[AuthDB] = None


def get_auth_db() -> AuthDB:
    """
    Get singleton AuthDB instance.

    Returns:
        AuthDB instance.
    """
    global _auth_db_instance
    if _auth_db_instance is None:
        _auth_db_instance = AuthDB()
    return _auth_db_instance
