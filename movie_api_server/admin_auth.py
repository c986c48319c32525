"""
Admin authentication: a static shared secret or a 24h session token.

A request is authorized as admin when any of these hold:

- ``X-Admin-Key`` equals the admin secret
- ``Authorization: Bearer <token>`` carries the admin secret itself
- the bearer token names a stored session that has not yet expired

Sessions live in the durable store so any instance can validate them.
Expired rows are swept on every successful login.
"""
import asyncio
import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Mapping, Optional

from movie_api_server.clock import Clock, SystemClock
from movie_api_server.logging_config import get_logger, log_admin_login, log_exception
from movie_api_server.store import DurableStore, StoreError

logger = get_logger(__name__)

ADMIN_KEY_HEADER = "X-Admin-Key"
DEFAULT_SESSION_TTL = timedelta(hours=24)


class InvalidAdminCredentials(Exception):
    """Raised when admin login is attempted with a wrong or missing secret."""


@dataclass(frozen=True)
class AdminSessionGrant:
    session_token: str
    expires_at: datetime


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


def bearer_token(headers: Mapping[str, str]) -> Optional[str]:
    auth_header = _header(headers, "Authorization")
    if not auth_header:
        return None
    token = auth_header.replace("Bearer ", "", 1).strip()
    return token or None


class AdminAuthenticator:
    """Validate admin credentials and issue session tokens."""

    def __init__(
        self,
        store: DurableStore,
        admin_key: str,
        clock: Optional[Clock] = None,
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
        failure_delay: float = 1.0,
        fingerprint_salt: str = "",
    ):
        self.store = store
        self.admin_key = admin_key
        self.clock = clock or SystemClock()
        self.session_ttl = session_ttl
        self.failure_delay = failure_delay
        self.fingerprint_salt = fingerprint_salt

    @classmethod
    def from_settings(cls, store: DurableStore, settings, clock: Optional[Clock] = None) -> "AdminAuthenticator":
        return cls(
            store,
            admin_key=settings.admin_api_key,
            clock=clock,
            session_ttl=timedelta(hours=settings.admin_session_ttl_hours),
            failure_delay=settings.admin_login_failure_delay,
            fingerprint_salt=settings.key_fingerprint_salt,
        )

    def matches_admin_key(self, candidate: Optional[str]) -> bool:
        if not candidate or not self.admin_key:
            return False
        return secrets.compare_digest(candidate.encode("utf-8"), self.admin_key.encode("utf-8"))

    def fingerprint(self, admin_key: str) -> str:
        """Salted SHA-256 of the admin key, stored instead of the secret."""
        return hashlib.sha256(f"{admin_key}{self.fingerprint_salt}".encode()).hexdigest()

    async def is_session_valid(self, token: str) -> bool:
        expires_at = await self.store.find_admin_session(token)
        return expires_at is not None and expires_at > self.clock.now()

    async def is_authorized(self, headers: Mapping[str, str]) -> bool:
        """
        Check request headers for admin credentials.

        Store failures during session lookup are logged and treated as
        "no session"; the static secret still works while the store is down.
        """
        if self.matches_admin_key(_header(headers, ADMIN_KEY_HEADER)):
            return True

        token = bearer_token(headers)
        if token is None:
            return False

        try:
            if await self.is_session_valid(token):
                return True
        except StoreError as e:
            log_exception(e, context={"operation": "admin_session_lookup"})

        return self.matches_admin_key(token)

    async def login(self, admin_key: Optional[str], client_ip: Optional[str] = None) -> AdminSessionGrant:
        """
        Exchange the admin secret for a session token.

        Raises:
            InvalidAdminCredentials: Secret missing or wrong (after a delay)
            StoreError: The session could not be stored
        """
        if not self.matches_admin_key(admin_key):
            log_admin_login(success=False, client_ip=client_ip)
            if self.failure_delay:
                await asyncio.sleep(self.failure_delay)
            raise InvalidAdminCredentials("Invalid admin credentials. Please use the correct admin API key.")

        now = self.clock.now()
        grant = AdminSessionGrant(session_token=str(uuid.uuid4()), expires_at=now + self.session_ttl)
        await self.store.insert_admin_session(grant.session_token, self.fingerprint(admin_key), grant.expires_at)

        removed = None
        try:
            removed = await self.store.delete_expired_admin_sessions(now)
        except StoreError as e:
            logger.warning("admin_session_sweep_failed", error=str(e))

        log_admin_login(success=True, client_ip=client_ip, expired_sessions_removed=removed)
        return grant
