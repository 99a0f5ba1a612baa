"""
Recovery code vault.

Recovery codes are single-use numeric codes shown once when two-factor
authentication is enabled. Only bcrypt hashes are stored. A code is spent by
deleting its row; the delete is keyed on the row id and must affect exactly
one row, so two requests racing on the same code cannot both succeed.
"""
import logging
import secrets
from datetime import datetime
from typing import Callable, List, Optional

import bcrypt
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .auth_db import AuthDB, to_db_timestamp, utc_now
from .schema_probe import SchemaProbe, is_schema_error, probe_for
from ..auth.codes import only_digits
from ..auth.errors import StepGuardError

logger = logging.getLogger(__name__)

RECOVERY_TABLE = "two_factor_recovery_codes"
RECOVERY_COLUMNS = ("user_id", "code_hash")
DEFAULT_RECOVERY_CODE_COUNT = 9
DEFAULT_RECOVERY_CODE_DIGITS = 6

RECOVERY_SCHEMA_HINT = (
    "Recovery code storage is missing. Create the two_factor_recovery_codes table "
    "(scripts/migrate_db.py)."
)


class RecoverySchemaMissing(StepGuardError):
    """The two_factor_recovery_codes table does not exist."""

    def __init__(self, message: str = RECOVERY_SCHEMA_HINT):
        super().__init__(message)


def generate_codes(count: int = DEFAULT_RECOVERY_CODE_COUNT, digits: int = DEFAULT_RECOVERY_CODE_DIGITS) -> List[str]:
    """
    Generate distinct random numeric recovery codes.

    Args:
        count: Number of codes (clamped to 1..20).
        digits: Code length (clamped to 4..12).

    Returns:
        List of zero-padded plaintext codes.
    """
    digits = max(4, min(12, int(digits)))
    count = max(1, min(20, int(count)))
    codes: List[str] = []
    seen = set()

    while len(codes) < count:
        code = str(secrets.randbelow(10 ** digits)).zfill(digits)
        if code not in seen:
            seen.add(code)
            codes.append(code)

    return codes


class RecoveryCodeVault:
    """
    Stores, checks and spends recovery codes.

    Example usage:
        vault = RecoveryCodeVault(auth_db)
        codes = generate_codes()
        vault.replace_all(user_id, codes)      # show `codes` to the user once
        vault.consume_if_valid(user_id, "123456")
    """

    def __init__(
        self,
        db: AuthDB,
        probe: Optional[SchemaProbe] = None,
        bcrypt_rounds: int = 10,
        digits: int = DEFAULT_RECOVERY_CODE_DIGITS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.probe = probe or probe_for(db.engine)
        self.bcrypt_rounds = bcrypt_rounds
        self.digits = digits
        self.clock = clock or utc_now

    def _raise_if_schema_missing(self, error: SQLAlchemyError) -> None:
        if is_schema_error(self.probe, error, RECOVERY_TABLE, RECOVERY_COLUMNS):
            logger.warning(f"{RECOVERY_TABLE} is missing: {error.__class__.__name__}")
            raise RecoverySchemaMissing() from error

    def _normalize(self, code) -> str:
        return only_digits(code)[:self.digits]

    def replace_all(self, user_id: str, codes: List[str]) -> None:
        """
        Replace every stored code for the user in one transaction.

        Raises:
            RecoverySchemaMissing: If the table does not exist.
        """
        normalized = list(dict.fromkeys(c for c in (self._normalize(code) for code in codes) if c))
        now = to_db_timestamp(self.clock())
        rows = [
            {
                "user_id": user_id,
                "code_hash": bcrypt.hashpw(code.encode("utf-8"), bcrypt.gensalt(rounds=self.bcrypt_rounds)).decode("utf-8"),
                "created_at": now,
            }
            for code in normalized
        ]

        try:
            with self.db.get_session() as session:
                session.execute(
                    text("DELETE FROM two_factor_recovery_codes WHERE user_id = :user_id"),
                    {"user_id": user_id}
                )
                if rows:
                    session.execute(
                        text("""
                            INSERT INTO two_factor_recovery_codes (user_id, code_hash, created_at)
                            VALUES (:user_id, :code_hash, :created_at)
                        """),
                        rows
                    )
        except SQLAlchemyError as e:
            self._raise_if_schema_missing(e)
            raise

        logger.info(f"Stored {len(rows)} recovery codes for user {user_id}")

    def consume_if_valid(self, user_id: str, code: str) -> bool:
        """
        Spend a recovery code if it matches one of the user's stored codes.

        Returns:
            True if a code matched and this call deleted it.

        Raises:
            RecoverySchemaMissing: If the table does not exist.
        """
        normalized = self._normalize(code)
        if len(normalized) != self.digits:
            return False

        try:
            with self.db.get_session() as session:
                rows = session.execute(
                    text("""
                        SELECT id, code_hash
                        FROM two_factor_recovery_codes
                        WHERE user_id = :user_id
                        ORDER BY created_at ASC, id ASC
                    """),
                    {"user_id": user_id}
                ).fetchall()

                matched_id = None
                for row_id, code_hash in rows:
                    try:
                        if bcrypt.checkpw(normalized.encode("utf-8"), str(code_hash).encode("utf-8")):
                            matched_id = row_id
                            break
                    except ValueError:
                        logger.warning(f"Skipping malformed recovery code hash id={row_id}")

                if matched_id is None:
                    return False

                deleted = session.execute(
                    text("DELETE FROM two_factor_recovery_codes WHERE id = :id"),
                    {"id": matched_id}
                ).rowcount
        except SQLAlchemyError as e:
            self._raise_if_schema_missing(e)
            raise

        if deleted != 1:
            logger.info(f"Recovery code for user {user_id} was already spent by a concurrent request")
            return False

        logger.info(f"Recovery code used for user {user_id}")
        return True

    def clear_all(self, user_id: str) -> int:
        """
        Delete every stored code for the user.

        Returns:
            Number of codes deleted.
        """
        try:
            with self.db.get_session() as session:
                deleted = session.execute(
                    text("DELETE FROM two_factor_recovery_codes WHERE user_id = :user_id"),
                    {"user_id": user_id}
                ).rowcount
        except SQLAlchemyError as e:
            self._raise_if_schema_missing(e)
            raise
        return deleted

    def count_remaining(self, user_id: str) -> int:
        try:
            with self.db.get_session() as session:
                count = session.execute(
                    text("SELECT COUNT(*) FROM two_factor_recovery_codes WHERE user_id = :user_id"),
                    {"user_id": user_id}
                ).scalar()
        except SQLAlchemyError as e:
            self._raise_if_schema_missing(e)
            raise
        return int(count or 0)
