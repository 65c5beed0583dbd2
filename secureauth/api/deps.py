"""
FastAPI Dependencies for SecureAuth API.

Provides:
- Database, credential store and flow controller dependencies
- Account session dependencies (bearer token)
- Rate limiting for signup, login and second-factor checks (Redis-backed)
- Ephemeral storage for sign-in flows and passkey registrations
- Redis client
"""
import os
import json
import time
import logging
from contextlib import contextmanager
from typing import Any, Dict, List, NamedTuple, Optional

import redis
from fastapi import Depends, Header, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..auth.errors import FlowExpired
from ..auth.flow import VerificationFlow, VerificationSession
from ..auth.mfa import DEFAULT_ISSUER
from ..auth.passkeys import PasskeyCeremony
from ..database.auth_db import AuthDB, get_auth_db
from ..database.credential_store import CredentialStore
from ..database.models import AccountSession
from ..utils.secrets import get_secret, mask_secret

logger = logging.getLogger(__name__)

SESSION_HOURS = int(os.getenv("SESSION_HOURS", "24"))
LOGIN_PATH = "/auth/login"


# ============================================
# Redis Client
# ============================================

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """
    Shared Redis connection, or None when Redis cannot be reached.

    Configured from REDIS_HOST, REDIS_PORT, REDIS_DB and REDIS_PASSWORD
    (which may also come from a secrets file).
    """
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    client = redis.Redis(
        host=os.getenv("REDIS_HOST", "localhost"),
        port=int(os.getenv("REDIS_PORT", "6379")),
        db=int(os.getenv("REDIS_DB", "0")),
        password=get_secret("REDIS_PASSWORD") or None,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )
    try:
        client.ping()
    except redis.ConnectionError as e:
        logger.warning(f"Redis unavailable ({e}); flow state and rate limits stay in memory")
        return None

    logger.info("Redis connected")
    _redis_client = client
    return _redis_client


# Security scheme
security = HTTPBearer(auto_error=False)


# ============================================
# Database Dependencies
# ============================================

def get_db() -> AuthDB:
    """Get database connection."""
    return get_auth_db()


def get_credential_store(db: AuthDB = Depends(get_db)) -> CredentialStore:
    return CredentialStore(db)


def get_passkey_ceremony(
    store: CredentialStore = Depends(get_credential_store),
) -> PasskeyCeremony:
    return PasskeyCeremony.from_env(store)


def get_flow(
    db: AuthDB = Depends(get_db),
    store: CredentialStore = Depends(get_credential_store),
    passkeys: PasskeyCeremony = Depends(get_passkey_ceremony),
) -> VerificationFlow:
    """Verification flow controller wired to this request's database."""
    return VerificationFlow(
        db,
        store,
        passkeys,
        issuer=os.getenv("TOTP_ISSUER", DEFAULT_ISSUER),
        session_hours=SESSION_HOURS,
    )


# ============================================
# Authentication Dependencies
# ============================================

def _resolve_session(
    credentials: Optional[HTTPAuthorizationCredentials],
    db: AuthDB,
) -> Optional[AccountSession]:
    if credentials is None:
        return None
    return db.validate_session(credentials.credentials)


async def get_current_session(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AuthDB = Depends(get_db),
) -> AccountSession:
    """
    Account session for API callers.

    Raises:
        HTTPException: 401 if the bearer token is missing, unknown, expired
            or revoked.
    """
    session = _resolve_session(credentials, db)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required" if credentials is None else "Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return session


async def require_dashboard_session(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AuthDB = Depends(get_db),
) -> AccountSession:
    """Account session for protected pages; visitors without one go to the login page."""
    session = _resolve_session(credentials, db)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_303_SEE_OTHER,
            detail="Authentication required",
            headers={"Location": LOGIN_PATH},
        )
    return session


# ============================================
# Auth Rate Limiting (IP-based for unauthenticated endpoints)
# ============================================

class RateLimit(NamedTuple):
    attempts: int
    window_seconds: int
    message: str


AUTH_RATE_LIMITS: Dict[str, RateLimit] = {
    "signup": RateLimit(5, 3600, "Too many signup attempts. Try again later."),
    "login": RateLimit(10, 900, "Too many login attempts from this IP. Try again later."),
    "verify": RateLimit(20, 900, "Too many verification attempts from this IP. Try again later."),
}


class AuthRateLimiter:
    """
    Fixed-window attempt counters per endpoint bucket and client IP.

    Counters live in Redis when it is reachable and in process memory
    otherwise.
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None, limits: Optional[Dict[str, RateLimit]] = None):
        self.redis = redis_client
        self.limits = limits or AUTH_RATE_LIMITS
        self._attempts: Dict[str, List[float]] = {}

    @staticmethod
    def _key(bucket: str, ip: str) -> str:
        return f"secureauth:auth_ratelimit:{bucket}:{ip}"

    def _recent(self, key: str, window_seconds: int) -> List[float]:
        cutoff = time.time() - window_seconds
        recent = [ts for ts in self._attempts.get(key, []) if ts > cutoff]
        self._attempts[key] = recent
        return recent

    def remaining(self, bucket: str, ip: str) -> int:
        """Attempts left for this IP in the current window."""
        limit = self.limits[bucket]
        key = self._key(bucket, ip)

        if self.redis is not None:
            try:
                used = int(self.redis.get(key) or 0)
                return max(0, limit.attempts - used)
            except redis.RedisError as e:
                logger.warning(f"Redis error reading {bucket} rate limit: {e}")

        return max(0, limit.attempts - len(self._recent(key, limit.window_seconds)))

    def record(self, bucket: str, ip: str) -> None:
        limit = self.limits[bucket]
        key = self._key(bucket, ip)

        if self.redis is not None:
            try:
                pipe = self.redis.pipeline()
                pipe.incr(key)
                pipe.expire(key, limit.window_seconds)
                pipe.execute()
                return
            except redis.RedisError as e:
                logger.warning(f"Redis error recording {bucket} attempt: {e}")

        self._recent(key, limit.window_seconds).append(time.time())


_auth_rate_limiter: Optional[AuthRateLimiter] = None


def get_auth_rate_limiter() -> AuthRateLimiter:
    global _auth_rate_limiter
    if _auth_rate_limiter is None:
        _auth_rate_limiter = AuthRateLimiter(get_redis_client())
    return _auth_rate_limiter


def _enforce_rate_limit(bucket: str, request: Request) -> None:
    ip = request.client.host if request.client else "unknown"
    limiter = get_auth_rate_limiter()

    if limiter.remaining(bucket, ip) == 0:
        limit = limiter.limits[bucket]
        logger.warning(f"{bucket} rate limit hit for {ip}")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=limit.message,
            headers={
                "Retry-After": str(limit.window_seconds),
                "X-RateLimit-Remaining": "0",
            },
        )

    limiter.record(bucket, ip)


async def check_signup_rate_limit(request: Request) -> None:
    """Raise 429 once an IP has used up its signup attempts."""
    _enforce_rate_limit("signup", request)


async def check_login_rate_limit(request: Request) -> None:
    """Raise 429 once an IP has used up its login attempts."""
    _enforce_rate_limit("login", request)


async def check_verify_rate_limit(request: Request) -> None:
    """Raise 429 once an IP has used up its code and passkey attempts."""
    _enforce_rate_limit("verify", request)


# ============================================
# Ephemeral Storage (Redis-backed)
# ============================================

# Sign-in flows expire after 10 minutes of inactivity
FLOW_TTL = 600
# Passkey registration challenges expire after 5 minutes
PASSKEY_REGISTRATION_TTL = 300

# In-memory fallback: key -> (value, expires_at)
_ephemeral_memory: Dict[str, tuple[str, float]] = {}


def _sweep_ephemeral(now: float) -> None:
    """Drop expired in-memory entries, including flows nobody came back to."""
    expired = [key for key, (_, expires_at) in _ephemeral_memory.items() if expires_at <= now]
    for key in expired:
        del _ephemeral_memory[key]


def _store_ephemeral(key: str, value: str, ttl: int) -> None:
    redis_client = get_redis_client()

    if redis_client is not None:
        try:
            redis_client.setex(f"secureauth:{key}", ttl, value)
            return
        except redis.RedisError as e:
            logger.warning(f"Redis error storing {key.split(':')[0]}: {e}")

    now = time.time()
    _sweep_ephemeral(now)
    _ephemeral_memory[key] = (value, now + ttl)


def _get_ephemeral(key: str, consume: bool = False) -> Optional[str]:
    redis_client = get_redis_client()

    if redis_client is not None:
        try:
            full_key = f"secureauth:{key}"
            value = redis_client.get(full_key)
            if value and consume:
                redis_client.delete(full_key)
            return value
        except redis.RedisError as e:
            logger.warning(f"Redis error retrieving {key.split(':')[0]}: {e}")

    entry = _ephemeral_memory.get(key)
    if entry is None:
        return None
    value, expires_at = entry
    if consume or time.time() >= expires_at:
        del _ephemeral_memory[key]
    if time.time() < expires_at:
        return value
    return None


def _delete_ephemeral(key: str) -> None:
    redis_client = get_redis_client()

    if redis_client is not None:
        try:
            redis_client.delete(f"secureauth:{key}")
        except redis.RedisError as e:
            logger.warning(f"Redis error clearing {key.split(':')[0]}: {e}")

    _ephemeral_memory.pop(key, None)


def save_flow(session: VerificationSession) -> str:
    """
    Persist a verification session between requests.

    Returns:
        The flow token the client sends back in X-Flow-Token.
    """
    _store_ephemeral(f"flow:{session.flow_id}", json.dumps(session.to_dict()), FLOW_TTL)
    return session.flow_id


def discard_flow(flow_token: str) -> None:
    _delete_ephemeral(f"flow:{flow_token}")
    logger.debug(f"Discarded flow {mask_secret(flow_token)}")


async def get_flow_session(
    x_flow_token: Optional[str] = Header(None),
) -> VerificationSession:
    """
    Load the verification session named by the X-Flow-Token header.

    Raises:
        FlowExpired: No token, or the flow expired or already completed.
    """
    if not x_flow_token:
        raise FlowExpired()

    data = _get_ephemeral(f"flow:{x_flow_token}")
    if data is None:
        raise FlowExpired()
    return VerificationSession.from_dict(json.loads(data))


@contextmanager
def flow_step(session: VerificationSession):
    """
    Save the session after a step, whether it succeeded or raised.

    Rejected steps can still move the flow (a failed passkey assertion
    falls back to method choice, wrong codes are counted), so the state is
    stored either way. A step that expires the flow discards it instead.
    """
    try:
        yield session
    except FlowExpired:
        discard_flow(session.flow_id)
        raise
    except Exception:
        save_flow(session)
        raise
    save_flow(session)


def store_pending_registration(account_id: str, challenge: str, device_name: str) -> None:
    """
    Remember a passkey registration challenge until the browser answers.

    Args:
        account_id: Account registering the passkey.
        challenge: Base64 challenge sent in the creation options.
        device_name: Label the user chose for the new passkey.
    """
    payload = json.dumps({"challenge": challenge, "device_name": device_name})
    _store_ephemeral(f"passkey_registration:{account_id}", payload, PASSKEY_REGISTRATION_TTL)


def pop_pending_registration(account_id: str) -> Optional[Dict[str, Any]]:
    """
    Retrieve and delete a pending passkey registration.

    Returns:
        Dict with challenge and device_name, or None if not found/expired.
    """
    data = _get_ephemeral(f"passkey_registration:{account_id}", consume=True)
    return json.loads(data) if data else None

