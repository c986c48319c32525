"""
Account-facing API key management and usage dashboard.

Accounts are created by the first login through the external identity
provider (email + provider uid), or registered unverified by the provider's
email-verification callback. The uid is kept only as a passlib hash and
checked on every later login. Only verified accounts may create extra keys.
"""
from collections import Counter
from datetime import timedelta
from typing import Any, Dict, Optional

from passlib.context import CryptContext

from movie_api_server.auth import APIKeyManager
from movie_api_server.clock import Clock, SystemClock, start_of_day, utc_day
from movie_api_server.gate import DEFAULT_DAILY_LIMIT, AdmissionGate
from movie_api_server.logging_config import get_logger
from movie_api_server.store import ApiKeyDetails, ApiKeyInfo, DurableStore, UserRecord

logger = get_logger(__name__)

# Identity-provider uid hashing context
uid_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

# Limits recorded on keys at issue time. Only DEFAULT_DAILY_LIMIT is enforced
# unless HONOR_KEY_DAILY_LIMIT is set.
SIGNUP_DAILY_LIMIT = DEFAULT_DAILY_LIMIT
SIGNUP_MONTHLY_LIMIT = 3000
REISSUE_DAILY_LIMIT = 1000
REISSUE_MONTHLY_LIMIT = 10000
PLAN_NAME = "free"


class AccountError(Exception):
    status_code = 400


class AccountNotFound(AccountError):
    status_code = 404


class EmailNotVerified(AccountError):
    status_code = 403


class InvalidAccountCredentials(AccountError):
    status_code = 401


class AccountService:
    """Login, key creation/revocation and usage reporting for accounts."""

    def __init__(
        self,
        store: DurableStore,
        clock: Optional[Clock] = None,
        gate: Optional[AdmissionGate] = None,
    ):
        """
        Args:
            store: Durable store holding users, keys and usage
            clock: Time source (defaults to wall-clock UTC)
            gate: Gate whose limits the dashboard reports
        """
        self.store = store
        self.clock = clock or SystemClock()
        self.gate = gate or AdmissionGate(store, self.clock)
        self.keys = APIKeyManager(store, self.clock)

    async def login(self, email: str, uid: str) -> Dict[str, Any]:
        """
        Log in (creating the account on first use) and return an active key.

        Returns:
            Dict with ``user_id``, ``api_key`` and ``created`` (new account)

        Raises:
            InvalidAccountCredentials: The uid does not match the account
        """
        email = email.strip().lower()
        user = await self.store.find_user_by_email(email)

        if user is None:
            user = await self.store.create_user(
                email=email,
                uid_hash=uid_context.hash(uid),
                is_verified=True,
                at=self.clock.now(),
            )
            key = await self.keys.issue_key(user.id, SIGNUP_DAILY_LIMIT, SIGNUP_MONTHLY_LIMIT)
            logger.info("account_created", user_id=user.id)
            return {"user_id": user.id, "api_key": key.api_key, "created": True}

        if not uid_context.verify(uid, user.uid_hash):
            raise InvalidAccountCredentials("Email and UID do not match")

        if not user.is_verified:
            await self.store.mark_user_verified(user.id)

        key = await self.keys.active_key_for(user.id)
        if key is None:
            key = await self.keys.issue_key(user.id, REISSUE_DAILY_LIMIT, REISSUE_MONTHLY_LIMIT)
        return {"user_id": user.id, "api_key": key.api_key, "created": False}

    async def verify_email(self, email: str, uid: str, email_verified: bool) -> Dict[str, Any]:
        """
        Register an account or record that its email address is now verified.

        Unknown emails create an account carrying the provider's verification
        status; no key is issued. A known account is only ever upgraded to
        verified, never downgraded.

        Raises:
            InvalidAccountCredentials: The uid does not match the account
        """
        email = email.strip().lower()
        user = await self.store.find_user_by_email(email)

        if user is None:
            user = await self.store.create_user(
                email=email,
                uid_hash=uid_context.hash(uid),
                is_verified=email_verified,
                at=self.clock.now(),
            )
            logger.info("account_registered", user_id=user.id, is_verified=email_verified)
            is_verified = user.is_verified
        else:
            if not uid_context.verify(uid, user.uid_hash):
                raise InvalidAccountCredentials("Email and UID do not match")
            is_verified = user.is_verified
            if email_verified and not is_verified:
                await self.store.mark_user_verified(user.id)
                logger.info("account_verified", user_id=user.id)
                is_verified = True

        return {
            "user_id": user.id,
            "is_verified": is_verified,
            "can_create_api_keys": is_verified,
        }

    async def _verified_user(self, user_id: int) -> UserRecord:
        user = await self.store.get_user(user_id)
        if user is None:
            raise AccountNotFound("User account does not exist")
        if not user.is_verified:
            raise EmailNotVerified(
                "Please verify your email address before creating API keys."
            )
        return user

    async def create_key(self, user_id: int) -> Dict[str, Any]:
        """Issue an additional free-plan key for a verified account."""
        await self._verified_user(user_id)
        key = await self.keys.issue_key(user_id, SIGNUP_DAILY_LIMIT)
        return {"id": key.id, "api_key": key.api_key}

    async def revoke_key(self, user_id: int, key_id: int) -> bool:
        return await self.keys.revoke_key(key_id, user_id=user_id)

    def enforced_daily_limit(self, key: Optional[ApiKeyDetails]) -> int:
        """Limit the gate applies to ``key`` (its default when there is no key)."""
        if key is None:
            return self.gate.daily_limit
        return self.gate.effective_daily_limit(
            ApiKeyInfo(id=key.id, user_id=key.user_id, daily_limit=key.daily_limit)
        )

    async def dashboard(self, user_id: int) -> Dict[str, Any]:
        """
        Usage statistics for an account's active keys.

        Cleanup bookkeeping rows never count as requests. ``daily_limit`` is
        what the gate enforces on the newest active key, the one login
        hands out.
        """
        keys = await self.store.list_api_keys(user_id=user_id, active_only=True)
        key_ids = [key.id for key in keys]

        today = utc_day(self.clock.now())
        day_start = start_of_day(today)
        month_start = start_of_day(today.replace(day=1))

        total_requests = await self.store.count_usage_logs(key_ids)
        month_requests = await self.store.count_usage_logs(key_ids, since=month_start)
        todays_traffic = await self.store.usage_log_timestamps(
            key_ids,
            since=day_start,
            until=day_start + timedelta(days=1),
        )
        per_hour = Counter(timestamp.hour for timestamp in todays_traffic)
        daily_usage = await self.store.sum_daily_usage(key_ids, today)

        return {
            "stats": {
                "total_requests": total_requests,
                "this_month_requests": month_requests,
                "api_key_count": len(keys),
                "daily_usage": daily_usage,
                "daily_limit": self.enforced_daily_limit(keys[0] if keys else None),
                "plan": PLAN_NAME,
                "chart_data": [{"hour": hour, "requests": per_hour.get(hour, 0)} for hour in range(24)],
            },
            "api_keys": [key.to_dict(reveal=True) for key in keys],
        }
