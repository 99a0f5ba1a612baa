"""
Two-factor state store.

State lives in the `two_factor_auth` table. Older deployments kept it in
`mfa_*` columns on `users`; those columns are still read when the table has
no row for a user (and the row is then copied over), and every successful
write is mirrored back to them so older readers stay consistent.

If the table has not been migrated yet the legacy columns become
authoritative. Only when neither location exists does a write fail.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .auth_db import AuthDB, parse_db_bool, parse_db_timestamp, to_db_timestamp, utc_now
from .schema_probe import SchemaProbe, is_schema_error, probe_for
from ..auth.base32 import normalize_secret
from ..auth.errors import StepGuardError

logger = logging.getLogger(__name__)

PRIMARY_TABLE = "two_factor_auth"
PRIMARY_COLUMNS = ("user_id", "enabled", "secret", "enabled_at", "disabled_at")
LEGACY_TABLE = "users"
LEGACY_COLUMNS = ("mfa_enabled", "totp_secret", "mfa_enabled_at", "mfa_disabled_at")

# Progressively smaller selections, for deployments that only have some legacy columns
LEGACY_COLUMN_TIERS = (
    LEGACY_COLUMNS,
    ("mfa_enabled", "totp_secret", "mfa_enabled_at"),
    ("mfa_enabled", "totp_secret"),
)

SOURCE_PRIMARY = "primary"
SOURCE_LEGACY = "legacy"
SOURCE_NONE = "none"

STORAGE_HINT = (
    "Two-factor storage is not configured. Create the two_factor_auth table "
    "(scripts/migrate_db.py) or the mfa_* columns on users."
)


class TwoFactorStorageUnavailable(StepGuardError):
    """Neither the two_factor_auth table nor the legacy columns exist."""

    def __init__(self, message: str = STORAGE_HINT):
        super().__init__(message)


class AccountNotFoundError(StepGuardError):
    """No users row to write legacy two-factor state to."""


@dataclass(frozen=True)
class TwoFactorRecord:
    enabled: bool
    secret: Optional[str]
    enabled_at: Optional[datetime]
    disabled_at: Optional[datetime]
    source: str = SOURCE_NONE

    @classmethod
    def from_raw(
        cls,
        enabled: Any,
        secret: Any,
        enabled_at: Any,
        disabled_at: Any,
        source: str,
    ) -> "TwoFactorRecord":
        """Normalize raw column values. Enabled without a usable secret counts as disabled."""
        clean_secret = normalize_secret(secret)
        is_enabled = parse_db_bool(enabled) and clean_secret is not None
        return cls(
            enabled=is_enabled,
            secret=clean_secret,
            enabled_at=parse_db_timestamp(enabled_at),
            disabled_at=None if is_enabled else parse_db_timestamp(disabled_at),
            source=source,
        )

    @classmethod
    def disabled(cls, source: str = SOURCE_NONE, disabled_at: Optional[datetime] = None) -> "TwoFactorRecord":
        return cls(enabled=False, secret=None, enabled_at=None, disabled_at=disabled_at, source=source)


class TwoFactorStateStore:
    """
    Reads and writes two-factor state across the primary table and legacy columns.

    Example usage:
        store = TwoFactorStateStore(auth_db)
        record = store.read(user_id)
        if not record.enabled:
            store.enable(user_id, secret)
    """

    def __init__(
        self,
        db: AuthDB,
        probe: Optional[SchemaProbe] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.probe = probe or probe_for(db.engine)
        self.clock = clock or utc_now

    # ==========================================
    # Schema classification
    # ==========================================

    def _is_primary_schema_error(self, error: BaseException) -> bool:
        return is_schema_error(self.probe, error, PRIMARY_TABLE, PRIMARY_COLUMNS, check_conflict_target=True)

    def _is_legacy_schema_error(self, error: BaseException, columns=LEGACY_COLUMNS) -> bool:
        return is_schema_error(self.probe, error, LEGACY_TABLE, columns)

    # ==========================================
    # Primary table
    # ==========================================

    def _read_primary(self, user_id: str) -> Tuple[bool, Optional[TwoFactorRecord]]:
        """Returns (schema_available, record or None when there is no row)."""
        try:
            with self.db.get_session() as session:
                row = session.execute(
                    text("""
                        SELECT enabled, secret, enabled_at, disabled_at
                        FROM two_factor_auth
                        WHERE user_id = :user_id
                    """),
                    {"user_id": user_id}
                ).fetchone()
        except SQLAlchemyError as e:
            if self._is_primary_schema_error(e):
                logger.warning(f"two_factor_auth unavailable, falling back to legacy columns: {e.__class__.__name__}")
                return False, None
            raise

        if not row:
            return True, None
        return True, TwoFactorRecord.from_raw(row[0], row[1], row[2], row[3], SOURCE_PRIMARY)

    def _write_primary(self, user_id: str, record: TwoFactorRecord) -> bool:
        """Upsert the primary row. Returns False when the table is not available."""
        try:
            with self.db.get_session() as session:
                session.execute(
                    text("""
                        INSERT INTO two_factor_auth (
                            user_id, enabled, secret, enabled_at, disabled_at, updated_at
                        ) VALUES (
                            :user_id, :enabled, :secret, :enabled_at, :disabled_at, :updated_at
                        )
                        ON CONFLICT (user_id) DO UPDATE SET
                            enabled = excluded.enabled,
                            secret = excluded.secret,
                            enabled_at = excluded.enabled_at,
                            disabled_at = excluded.disabled_at,
                            updated_at = excluded.updated_at
                    """),
                    {
                        "user_id": user_id,
                        "enabled": record.enabled,
                        "secret": record.secret,
                        "enabled_at": to_db_timestamp(record.enabled_at),
                        "disabled_at": to_db_timestamp(record.disabled_at),
                        "updated_at": to_db_timestamp(self.clock()),
                    }
                )
        except SQLAlchemyError as e:
            if self._is_primary_schema_error(e):
                logger.warning(f"two_factor_auth unavailable for write: {e.__class__.__name__}")
                return False
            raise
        return True

    # ==========================================
    # Legacy columns
    # ==========================================

    def _read_legacy(self, user_id: str) -> Optional[TwoFactorRecord]:
        """Legacy state, or None when the legacy columns do not exist."""
        for columns in LEGACY_COLUMN_TIERS:
            try:
                with self.db.get_session() as session:
                    row = session.execute(
                        text(f"SELECT {', '.join(columns)} FROM users WHERE user_id = :user_id"),
                        {"user_id": user_id}
                    ).fetchone()
            except SQLAlchemyError as e:
                if self._is_legacy_schema_error(e, columns):
                    continue
                raise

            if not row:
                return TwoFactorRecord.disabled(SOURCE_LEGACY)
            values = dict(zip(columns, row))
            return TwoFactorRecord.from_raw(
                values.get("mfa_enabled"),
                values.get("totp_secret"),
                values.get("mfa_enabled_at"),
                values.get("mfa_disabled_at"),
                SOURCE_LEGACY,
            )

        logger.debug("Legacy two-factor columns not present on users")
        return None

    def _write_legacy(self, user_id: str, record: TwoFactorRecord) -> bool:
        """
        Update the legacy columns.

        Returns:
            False when the legacy columns do not exist.

        Raises:
            AccountNotFoundError: If there is no users row for user_id.
        """
        try:
            with self.db.get_session() as session:
                result = session.execute(
                    text("""
                        UPDATE users
                        SET mfa_enabled = :enabled,
                            totp_secret = :secret,
                            mfa_enabled_at = :enabled_at,
                            mfa_disabled_at = :disabled_at
                        WHERE user_id = :user_id
                    """),
                    {
                        "user_id": user_id,
                        "enabled": record.enabled,
                        "secret": record.secret,
                        "enabled_at": to_db_timestamp(record.enabled_at),
                        "disabled_at": to_db_timestamp(record.disabled_at),
                    }
                )
                updated = result.rowcount
        except SQLAlchemyError as e:
            if self._is_legacy_schema_error(e):
                return False
            raise

        if updated == 0:
            raise AccountNotFoundError("User not found to update two-factor state.")
        return True

    def _mirror_legacy(self, user_id: str, record: TwoFactorRecord) -> None:
        """Best-effort copy of the primary state into the legacy columns."""
        try:
            self._write_legacy(user_id, record)
        except (SQLAlchemyError, AccountNotFoundError) as e:
            logger.warning(f"Legacy two-factor mirror failed for user {user_id}: {e}")

    def _resync_legacy(self, user_id: str, record: TwoFactorRecord) -> None:
        """Mirror the primary row again if the legacy columns have drifted. Never raises."""
        try:
            legacy = self._read_legacy(user_id)
        except SQLAlchemyError as e:
            logger.warning(f"Legacy two-factor resync skipped for user {user_id}: {e.__class__.__name__}")
            return
        if legacy is not None and (legacy.enabled, legacy.secret) != (record.enabled, record.secret):
            self._mirror_legacy(user_id, record)

    # ==========================================
    # Public API
    # ==========================================

    def read(self, user_id: str) -> TwoFactorRecord:
        """
        Current two-factor state for a user.

        Raises:
            SQLAlchemyError: For storage failures other than a missing schema.
        """
        user_id = str(user_id or "").strip()
        primary_available, record = self._read_primary(user_id)

        if not primary_available:
            legacy = self._read_legacy(user_id)
            return legacy if legacy is not None else TwoFactorRecord.disabled(SOURCE_NONE)

        if record is not None:
            self._resync_legacy(user_id, record)
            return record

        legacy = self._read_legacy(user_id)
        if legacy is not None and legacy.enabled and legacy.secret:
            healed = TwoFactorRecord(
                enabled=True,
                secret=legacy.secret,
                enabled_at=legacy.enabled_at,
                disabled_at=None,
                source=SOURCE_PRIMARY,
            )
            self._write_primary(user_id, healed)
            logger.info(f"Copied legacy two-factor state into two_factor_auth for user {user_id}")
            return healed

        return TwoFactorRecord.disabled(SOURCE_PRIMARY, legacy.disabled_at if legacy else None)

    def write(
        self,
        user_id: str,
        enabled: bool,
        secret: Optional[str],
        enabled_at: Optional[datetime],
        disabled_at: Optional[datetime],
    ) -> TwoFactorRecord:
        """
        Persist state: primary first, then mirror; legacy only when primary is missing.

        Raises:
            TwoFactorStorageUnavailable: If neither storage location exists.
            AccountNotFoundError: If only legacy storage exists and the user has no row.
        """
        user_id = str(user_id or "").strip()
        record = TwoFactorRecord.from_raw(enabled, secret, enabled_at, disabled_at, SOURCE_PRIMARY)

        if self._write_primary(user_id, record):
            self._mirror_legacy(user_id, record)
            return record

        if self._write_legacy(user_id, record):
            return TwoFactorRecord(
                enabled=record.enabled,
                secret=record.secret,
                enabled_at=record.enabled_at,
                disabled_at=record.disabled_at,
                source=SOURCE_LEGACY,
            )

        logger.error("No two-factor storage available: two_factor_auth and legacy columns are both missing")
        raise TwoFactorStorageUnavailable()

    def enable(self, user_id: str, secret: str) -> TwoFactorRecord:
        if not normalize_secret(secret):
            raise ValueError("Two-factor secret is empty")
        return self.write(user_id, True, secret, self.clock(), None)

    def disable(self, user_id: str) -> TwoFactorRecord:
        return self.write(user_id, False, None, None, self.clock())
