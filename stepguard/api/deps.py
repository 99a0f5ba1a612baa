"""
FastAPI Dependencies for the StepGuard API.

Provides:
- Session authentication (Bearer token -> SessionIdentity)
- Two-factor rate limiting (Redis-backed with in-memory fallback)
- Database, Redis and flow wiring
"""
import os
import time
import logging
from typing import Optional, Dict

import redis
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..auth.passkey_proof import PasskeyProofVerifier
from ..auth.tickets import EnvKeyProvider, KeyProvider, TicketSigner
from ..database.auth_db import AuthDB, get_auth_db
from ..database.challenge_store import ChallengeStore
from ..database.passkey_registry import PasskeyRegistry
from ..database.recovery_vault import RecoveryCodeVault
from ..database.two_factor_store import TwoFactorStateStore
from ..notifications.mailer import get_mailer
from ..services.two_factor_flow import DEFAULT_ISSUER, SessionIdentity, TwoFactorFlow

logger = logging.getLogger(__name__)

# In-memory limiter keys are swept once this many users are tracked
MEMORY_SWEEP_THRESHOLD = 1024


# ============================================
# Redis Client
# ============================================

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """
    Get Redis client singleton.

    Returns None if Redis is not configured or unavailable.
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    host = os.getenv("REDIS_HOST", "localhost")
    port = int(os.getenv("REDIS_PORT", "6379"))
    password = os.getenv("REDIS_PASSWORD", "") or None
    db = int(os.getenv("REDIS_DB", "0"))

    try:
        client = redis.Redis(
            host=host,
            port=port,
            password=password,
            db=db,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        client.ping()
        logger.info(f"Redis connected: {host}:{port}")
        _redis_client = client
        return _redis_client
    except redis.RedisError as e:
        logger.warning(f"Redis connection failed: {e}. Rate limiting will use in-memory fallback.")
        _redis_client = None
        return None


# Security scheme
security = HTTPBearer(auto_error=False)


# ============================================
# Database Dependencies
# ============================================

def get_db() -> AuthDB:
    """Get database connection."""
    return get_auth_db()


# ============================================
# Authentication Dependencies
# ============================================

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AuthDB = Depends(get_db),
) -> SessionIdentity:
    """
    Validate bearer token and return the session identity.

    Raises:
        HTTPException: If token is missing, invalid, or expired.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = db.validate_session(credentials.credentials)

    if user is None or not user.get("user_id") or not user.get("email"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return SessionIdentity(
        user_id=str(user["user_id"]).strip(),
        email=str(user["email"]).strip().lower(),
    )


# ============================================
# Two-Factor Rate Limiting (per user)
# ============================================

class TwoFactorRateLimiter:
    """
    Per-user limits for the two-factor endpoints.

    - email: email codes sent (disable start, resend)
    - code: codes submitted (email codes, authenticator codes, recovery codes)

    Uses Redis INCR with TTL; falls back to in-memory timestamps if Redis is unavailable.
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None):
        self.redis = redis_client
        self.window_seconds = 900  # 15 minutes
        self.limits = {
            "email": int(os.getenv("TWO_FACTOR_EMAIL_LIMIT", "5")),
            "code": int(os.getenv("TWO_FACTOR_CODE_LIMIT", "20")),
        }
        # In-memory fallback storage
        self._memory_store: Dict[str, list] = {}

    def _memory_prune(self, key: str) -> list:
        """Drop timestamps outside the window; keys with none left are removed."""
        now = time.time()
        entries = [ts for ts in self._memory_store.get(key, []) if now - ts < self.window_seconds]
        if entries:
            self._memory_store[key] = entries
        else:
            self._memory_store.pop(key, None)
        return entries

    def _memory_sweep(self) -> None:
        for key in list(self._memory_store):
            self._memory_prune(key)

    def _get_count(self, key: str) -> int:
        if self.redis is not None:
            try:
                count = self.redis.get(f"stepguard:2fa_ratelimit:{key}")
                return int(count) if count else 0
            except redis.RedisError as e:
                logger.warning(f"Redis error in two-factor rate limit check: {e}")

        return len(self._memory_prune(key))

    def _increment(self, key: str) -> int:
        if self.redis is not None:
            try:
                pipe = self.redis.pipeline()
                pipe.incr(f"stepguard:2fa_ratelimit:{key}")
                pipe.expire(f"stepguard:2fa_ratelimit:{key}", self.window_seconds)
                results = pipe.execute()
                return results[0]
            except redis.RedisError as e:
                logger.warning(f"Redis error in two-factor rate limit increment: {e}")

        if len(self._memory_store) >= MEMORY_SWEEP_THRESHOLD:
            self._memory_sweep()
        entries = self._memory_prune(key)
        entries.append(time.time())
        self._memory_store[key] = entries
        return len(entries)

    def hit(self, kind: str, user_id: str) -> tuple[bool, int]:
        """
        Check the limit and record the attempt if allowed.

        Returns:
            Tuple of (allowed, remaining_requests)
        """
        key = f"{kind}:{user_id}"
        remaining = self.limits[kind] - self._get_count(key)
        if remaining <= 0:
            return False, 0
        self._increment(key)
        return True, remaining - 1


_two_factor_rate_limiter: Optional[TwoFactorRateLimiter] = None


def get_two_factor_rate_limiter() -> TwoFactorRateLimiter:
    """Get singleton two-factor rate limiter (Redis-backed if available)."""
    global _two_factor_rate_limiter
    if _two_factor_rate_limiter is None:
        _two_factor_rate_limiter = TwoFactorRateLimiter(get_redis_client())
    return _two_factor_rate_limiter


def _enforce(kind: str, detail: str, user: SessionIdentity, limiter: TwoFactorRateLimiter) -> None:
    if os.getenv("TWO_FACTOR_RATE_LIMIT_ENABLED", "true").lower() != "true":
        return

    allowed, remaining = limiter.hit(kind, user.user_id)
    if not allowed:
        logger.warning(f"Two-factor {kind} rate limit hit for user {user.user_id}")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=detail,
            headers={
                "Retry-After": str(limiter.window_seconds),
                "X-RateLimit-Remaining": "0",
                "Cache-Control": "no-store",
            },
        )


async def check_email_send_limit(
    user: SessionIdentity = Depends(get_current_user),
    limiter: TwoFactorRateLimiter = Depends(get_two_factor_rate_limiter),
) -> None:
    """Raises HTTPException 429 if too many email codes were requested."""
    _enforce("email", "Too many verification emails requested. Try again later.", user, limiter)


async def check_code_submit_limit(
    user: SessionIdentity = Depends(get_current_user),
    limiter: TwoFactorRateLimiter = Depends(get_two_factor_rate_limiter),
) -> None:
    """Raises HTTPException 429 if too many codes were submitted."""
    _enforce("code", "Too many verification attempts. Try again later.", user, limiter)


# ============================================
# Two-Factor Flow Wiring
# ============================================

_key_provider: Optional[KeyProvider] = None


def get_key_provider() -> KeyProvider:
    """Ticket signing keys (TICKET_SIGNING_KEY / SESSION_SECRET)."""
    global _key_provider
    if _key_provider is None:
        _key_provider = EnvKeyProvider()
    return _key_provider


def get_two_factor_flow(
    db: AuthDB = Depends(get_db),
    key_provider: KeyProvider = Depends(get_key_provider),
) -> TwoFactorFlow:
    """Build the flow over the configured database, keys and mailer."""
    return TwoFactorFlow(
        state_store=TwoFactorStateStore(db),
        challenges=ChallengeStore(db),
        recovery=RecoveryCodeVault(db),
        tickets=TicketSigner(key_provider),
        mailer=get_mailer(),
        passkeys=PasskeyRegistry(db),
        passkey_proofs=PasskeyProofVerifier(key_provider),
        issuer=os.getenv("TOTP_ISSUER", DEFAULT_ISSUER),
    )
