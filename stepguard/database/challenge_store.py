"""
Email challenge store.

Holds the salted hash of each 7-digit code sent by email, its expiry and the
remaining attempt budget. Issuing a new code invalidates any earlier code for
the same address, so only the most recent email is ever valid.
"""
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from sqlalchemy import text

from .auth_db import AuthDB, parse_db_bool, parse_db_timestamp, to_db_timestamp, utc_now
from ..auth.codes import EMAIL_CODE_DIGITS, gen_email_code, hash_code, new_salt, only_digits
from ..auth.tickets import normalize_email

logger = logging.getLogger(__name__)

EMAIL_CHANNEL = "email"
CHALLENGE_TTL = timedelta(minutes=10)
MAX_ATTEMPTS = 7


class ChallengeOutcome(str, Enum):
    OK = "ok"
    EXPIRED = "expired"
    RATE_LIMITED = "rate_limited"
    INVALID = "invalid"


@dataclass(frozen=True)
class ChallengeResult:
    outcome: ChallengeOutcome
    attempts_left: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome is ChallengeOutcome.OK


class ChallengeStore:
    """
    Issue and verify email challenge codes.

    Example usage:
        store = ChallengeStore(auth_db)
        code = store.issue("user@example.com")   # send this by email
        result = store.verify("user@example.com", submitted)
    """

    def __init__(
        self,
        db: AuthDB,
        clock: Optional[Callable[[], datetime]] = None,
        ttl: timedelta = CHALLENGE_TTL,
        max_attempts: int = MAX_ATTEMPTS,
    ):
        self.db = db
        self.clock = clock or utc_now
        self.ttl = ttl
        self.max_attempts = max_attempts

    def issue(self, email: str) -> str:
        """
        Create a new challenge and invalidate the previous ones.

        Returns:
            Plaintext code. It is never stored.
        """
        email = normalize_email(email)
        code = gen_email_code()
        salt = new_salt()
        now = self.clock()

        with self.db.get_session() as session:
            session.execute(
                text("""
                    UPDATE auth_challenges
                    SET consumed = TRUE
                    WHERE email = :email AND channel = :channel AND consumed = FALSE
                """),
                {"email": email, "channel": EMAIL_CHANNEL}
            )
            session.execute(
                text("""
                    INSERT INTO auth_challenges (
                        email, channel, code_hash, salt, expires_at,
                        attempts_left, consumed, created_at
                    ) VALUES (
                        :email, :channel, :code_hash, :salt, :expires_at,
                        :attempts_left, FALSE, :created_at
                    )
                """),
                {
                    "email": email,
                    "channel": EMAIL_CHANNEL,
                    "code_hash": hash_code(code, salt),
                    "salt": salt,
                    "expires_at": to_db_timestamp(now + self.ttl),
                    "attempts_left": self.max_attempts,
                    "created_at": to_db_timestamp(now),
                }
            )

        logger.debug("Issued email challenge")
        return code

    def verify(self, email: str, code: str) -> ChallengeResult:
        """
        Check a submitted code against the latest challenge for the address.

        Only the newest row is ever considered, consumed or not, so an older
        row left open by two overlapping issues can never be verified.
        A missing or consumed challenge is reported as EXPIRED so the client
        offers a resend.
        """
        email = normalize_email(email)
        code = only_digits(code)[:EMAIL_CODE_DIGITS]

        with self.db.get_session() as session:
            row = session.execute(
                text("""
                    SELECT id, code_hash, salt, expires_at, attempts_left, consumed
                    FROM auth_challenges
                    WHERE email = :email AND channel = :channel
                    ORDER BY created_at DESC, id DESC
                    LIMIT 1
                """),
                {"email": email, "channel": EMAIL_CHANNEL}
            ).fetchone()

            if not row:
                return ChallengeResult(ChallengeOutcome.EXPIRED)

            challenge_id, code_hash, salt, expires_at, attempts_left, consumed = row
            if parse_db_bool(consumed):
                return ChallengeResult(ChallengeOutcome.EXPIRED)
            attempts_left = int(attempts_left or 0)

            expires = parse_db_timestamp(expires_at)
            if expires is None or expires < self.clock():
                self._consume(session, challenge_id)
                return ChallengeResult(ChallengeOutcome.EXPIRED)

            if attempts_left <= 0:
                return ChallengeResult(ChallengeOutcome.RATE_LIMITED)

            if not hmac.compare_digest(hash_code(code, salt), str(code_hash)):
                remaining = max(0, attempts_left - 1)
                updated = session.execute(
                    text("""
                        UPDATE auth_challenges
                        SET attempts_left = attempts_left - 1,
                            consumed = CASE WHEN attempts_left - 1 <= 0 THEN TRUE ELSE consumed END
                        WHERE id = :id AND consumed = FALSE AND attempts_left > 0
                    """),
                    {"id": challenge_id}
                ).rowcount
                if updated != 1:
                    return ChallengeResult(ChallengeOutcome.EXPIRED)
                if remaining <= 0:
                    logger.info("Email challenge exhausted its attempts")
                    return ChallengeResult(ChallengeOutcome.RATE_LIMITED)
                return ChallengeResult(ChallengeOutcome.INVALID, attempts_left=remaining)

            if not self._consume(session, challenge_id):
                # Consumed by a concurrent request
                return ChallengeResult(ChallengeOutcome.EXPIRED)

        return ChallengeResult(ChallengeOutcome.OK)

    @staticmethod
    def _consume(session, challenge_id) -> bool:
        result = session.execute(
            text("UPDATE auth_challenges SET consumed = TRUE WHERE id = :id AND consumed = FALSE"),
            {"id": challenge_id}
        )
        return result.rowcount == 1
