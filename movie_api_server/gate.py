"""
Admission gate for the public movie endpoints.

Every gated request goes through ``AdmissionGate.authorize``:

1. Look up the active API key (exact match)
2. Verify the HMAC signature when the caller sent one
3. Read today's usage counter (UTC day)
4. Refuse once the counter reached the daily limit
5. Atomically bump the counter and append a usage log entry
6. Give the key a chance to trigger usage-log retention
7. Report the remaining quota and the next UTC midnight

Refusals (steps 1, 2 and 4) never write usage state. Store failures in any
step up to 5 become ``ServiceUnavailable``; a failed retention sweep is only
logged. The gate keeps nothing in memory between calls.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Union

from movie_api_server.clock import Clock, SystemClock, epoch_millis, next_utc_midnight, utc_day
from movie_api_server.logging_config import (
    get_logger,
    log_admission_denied,
    log_exception,
    log_signature_rejected,
    mask_key,
)
from movie_api_server.retention import RetentionPolicy
from movie_api_server.signatures import (
    DEFAULT_MAX_SKEW_MS,
    FAILURE_MESSAGES,
    RequestContext,
    SignatureFailure,
    verify_signature,
)
from movie_api_server.store import ApiKeyInfo, DurableStore, StoreError

logger = get_logger(__name__)

# Free plan: requests per key per UTC day
DEFAULT_DAILY_LIMIT = 100


class DenialReason(str, Enum):
    INVALID_KEY = "invalid_key"
    MISSING_SIGNATURE = "missing_signature"
    TIMESTAMP_EXPIRED = "timestamp_expired"
    SIGNATURE_MISMATCH = "signature_mismatch"
    QUOTA_EXCEEDED = "quota_exceeded"


SIGNATURE_REASONS = frozenset({
    DenialReason.MISSING_SIGNATURE,
    DenialReason.TIMESTAMP_EXPIRED,
    DenialReason.SIGNATURE_MISMATCH,
})

_SIGNATURE_DENIALS = {
    SignatureFailure.MISSING_SIGNATURE: DenialReason.MISSING_SIGNATURE,
    SignatureFailure.TIMESTAMP_EXPIRED: DenialReason.TIMESTAMP_EXPIRED,
    SignatureFailure.SIGNATURE_MISMATCH: DenialReason.SIGNATURE_MISMATCH,
}


@dataclass(frozen=True)
class Allowed:
    remaining: int
    reset_at: datetime
    key_id: int
    daily_limit: int

    allowed = True
    status_code = 200


@dataclass(frozen=True)
class Denied:
    reason: DenialReason
    status: int
    error: str
    message: str
    remaining: Optional[int] = None
    reset_at: Optional[datetime] = None
    daily_limit: Optional[int] = None

    allowed = False

    @property
    def status_code(self) -> int:
        return self.status

    @property
    def is_signature_failure(self) -> bool:
        return self.reason in SIGNATURE_REASONS


@dataclass(frozen=True)
class ServiceUnavailable:
    error: str = "Authentication service temporarily unavailable"
    message: str = "Please try again in a moment."

    allowed = False
    status_code = 500


Decision = Union[Allowed, Denied, ServiceUnavailable]


class AdmissionGate:
    """Authorize API-key requests against the daily quota."""

    def __init__(
        self,
        store: DurableStore,
        clock: Optional[Clock] = None,
        daily_limit: int = DEFAULT_DAILY_LIMIT,
        honor_key_daily_limit: bool = False,
        max_skew_ms: int = DEFAULT_MAX_SKEW_MS,
        retention: Optional[RetentionPolicy] = None,
    ):
        """
        Args:
            store: Durable store holding keys, counters and logs
            clock: Time source (defaults to wall-clock UTC)
            daily_limit: Operational per-day cap applied to every key
            honor_key_daily_limit: Use each key's stored ``daily_limit``
                instead of ``daily_limit``
            max_skew_ms: Replay window for signed requests
            retention: Usage-log retention policy (built from the store
                and clock when omitted)
        """
        self.store = store
        self.clock = clock or SystemClock()
        self.daily_limit = daily_limit
        self.honor_key_daily_limit = honor_key_daily_limit
        self.max_skew_ms = max_skew_ms
        self.retention = retention or RetentionPolicy(store, self.clock)

    @classmethod
    def from_settings(cls, store: DurableStore, settings, clock: Optional[Clock] = None) -> "AdmissionGate":
        clock = clock or SystemClock()
        retention = RetentionPolicy(
            store,
            clock,
            retention_days=settings.usage_log_retention_days,
            interval=timedelta(hours=settings.cleanup_interval_hours),
        )
        return cls(
            store,
            clock=clock,
            daily_limit=settings.default_daily_limit,
            honor_key_daily_limit=settings.honor_key_daily_limit,
            max_skew_ms=settings.signature_max_skew_ms,
            retention=retention,
        )

    def effective_daily_limit(self, record: ApiKeyInfo) -> int:
        """
        Daily cap applied to ``record``.

        Keys are issued with per-key limits, but the free plan enforces the
        operational constant for everyone unless ``honor_key_daily_limit`` is on.
        """
        if self.honor_key_daily_limit:
            return record.daily_limit
        return self.daily_limit

    async def authorize(
        self,
        key: Optional[str],
        endpoint: str,
        context: Optional[RequestContext] = None,
    ) -> Decision:
        """
        Decide whether a request may proceed, recording usage if it may.

        Args:
            key: Caller-supplied API key
            endpoint: Route identifier, used only for the usage log
            context: Request details, needed only for signed requests

        Returns:
            Allowed, Denied or ServiceUnavailable
        """
        try:
            decision = await self._authorize(key, endpoint, context)
        except StoreError as e:
            log_exception(e, context={"endpoint": endpoint, "api_key": mask_key(key)})
            return ServiceUnavailable()

        if isinstance(decision, Denied):
            log_admission_denied(
                api_key=key,
                reason=decision.reason.value,
                endpoint=endpoint,
                status_code=decision.status,
            )
        return decision

    async def _authorize(self, key, endpoint, context) -> Decision:
        record = await self.store.find_active_api_key(key) if key else None
        if record is None:
            return Denied(
                reason=DenialReason.INVALID_KEY,
                status=401,
                error="Invalid API key",
                message=(
                    "The provided API key is invalid or has been deactivated. "
                    "Please check your key or contact support."
                ),
            )

        if context is not None and context.is_signed:
            failure = verify_signature(key, context, epoch_millis(self.clock.now()), self.max_skew_ms)
            if failure is not None:
                log_signature_rejected(key, failure.value, context.method, context.path)
                return Denied(
                    reason=_SIGNATURE_DENIALS[failure],
                    status=401,
                    error="HMAC verification failed",
                    message=FAILURE_MESSAGES[failure],
                )

        now = self.clock.now()
        today = utc_day(now)
        reset_at = next_utc_midnight(now)
        limit = self.effective_daily_limit(record)

        count = await self.store.get_daily_usage(record.id, today) or 0
        if count >= limit:
            return self._quota_exceeded(limit, reset_at)

        new_count = await self.store.increment_daily_usage(record.id, today, limit)
        if new_count is None:
            # A concurrent request took the last slot between read and increment
            return self._quota_exceeded(limit, reset_at)

        await self.store.append_usage_log(record.id, endpoint, 200, now)

        try:
            await self.retention.maybe_cleanup(record.id)
        except StoreError as e:
            logger.warning("usage_log_cleanup_failed", key_id=record.id, error=str(e))

        logger.debug("admission_allowed", key_id=record.id, endpoint=endpoint, count=new_count, limit=limit)
        return Allowed(
            remaining=max(limit - new_count, 0),
            reset_at=reset_at,
            key_id=record.id,
            daily_limit=limit,
        )

    @staticmethod
    def _quota_exceeded(limit: int, reset_at: datetime) -> Denied:
        return Denied(
            reason=DenialReason.QUOTA_EXCEEDED,
            status=429,
            error="Rate limit exceeded",
            message=f"Daily limit of {limit} requests exceeded. Limit resets at midnight UTC.",
            remaining=0,
            reset_at=reset_at,
            daily_limit=limit,
        )
