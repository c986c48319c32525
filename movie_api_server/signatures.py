"""
HMAC request signatures.

Callers may opt in to tamper and replay protection by sending two headers:

- ``X-Timestamp``: client time in epoch milliseconds. Only the leading integer
  is read, so "1740843000000.0" means 1740843000000; the header is signed as
  sent.
- ``X-Signature``: lowercase hex HMAC-SHA256 of
  ``timestamp + method + path + body`` keyed with the caller's API key

Verification is stateless. A signed request is accepted while its timestamp
lies within the allowed skew of server time, in either direction.
"""
import hashlib
import hmac
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional

SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Timestamp"
DEFAULT_MAX_SKEW_MS = 300_000

# Methods whose body never takes part in the signed message
BODYLESS_METHODS = frozenset({"GET", "HEAD"})

_LEADING_INTEGER = re.compile(r"\s*([+-]?\d+)", re.ASCII)


class SignatureFailure(str, Enum):
    MISSING_SIGNATURE = "missing_signature"
    TIMESTAMP_EXPIRED = "timestamp_expired"
    SIGNATURE_MISMATCH = "signature_mismatch"


FAILURE_MESSAGES = {
    SignatureFailure.MISSING_SIGNATURE: "Missing HMAC signature or timestamp",
    SignatureFailure.TIMESTAMP_EXPIRED: "Request timestamp expired",
    SignatureFailure.SIGNATURE_MISMATCH: "Invalid signature",
}


@dataclass(frozen=True)
class RequestContext:
    """The parts of an HTTP request that signature verification reads."""
    method: str = "GET"
    path: str = "/"
    body: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> Optional[str]:
        value = self.headers.get(name)
        if value is None:
            lowered = name.lower()
            for key, candidate in self.headers.items():
                if key.lower() == lowered:
                    return candidate
        return value

    @property
    def is_signed(self) -> bool:
        return bool(self.header(SIGNATURE_HEADER))


def parse_timestamp(value: str) -> Optional[int]:
    """Leading integer of a timestamp header, or None when it has none."""
    match = _LEADING_INTEGER.match(value)
    return int(match.group(1)) if match else None


def signing_payload(timestamp: str, method: str, path: str, body: str = "") -> str:
    method = method.upper()
    if method in BODYLESS_METHODS:
        body = ""
    return f"{timestamp}{method}{path}{body}"


def compute_signature(secret: str, timestamp: str, method: str, path: str, body: str = "") -> str:
    """Hex HMAC-SHA256 of the signing payload keyed by ``secret``."""
    message = signing_payload(timestamp, method, path, body)
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_request(secret: str, method: str, path: str, body: str = "", timestamp_ms: int = 0) -> dict:
    """Headers a client attaches to sign a request."""
    timestamp = str(timestamp_ms)
    return {
        TIMESTAMP_HEADER: timestamp,
        SIGNATURE_HEADER: compute_signature(secret, timestamp, method, path, body),
    }


def verify_signature(
    secret: str,
    context: RequestContext,
    now_ms: int,
    max_skew_ms: int = DEFAULT_MAX_SKEW_MS,
) -> Optional[SignatureFailure]:
    """
    Check a signed request.

    Args:
        secret: The caller's API key
        context: Method, path, body and headers of the request
        now_ms: Server time in epoch milliseconds
        max_skew_ms: Largest accepted distance between client and server time

    Returns:
        None when the signature is valid, otherwise the failure reason
    """
    signature = context.header(SIGNATURE_HEADER)
    timestamp = context.header(TIMESTAMP_HEADER)

    if not signature or not timestamp:
        return SignatureFailure.MISSING_SIGNATURE

    request_time = parse_timestamp(timestamp)
    if request_time is None:
        return SignatureFailure.TIMESTAMP_EXPIRED

    if abs(now_ms - request_time) > max_skew_ms:
        return SignatureFailure.TIMESTAMP_EXPIRED

    expected = compute_signature(secret, timestamp, context.method, context.path, context.body)
    if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8")):
        return SignatureFailure.SIGNATURE_MISMATCH

    return None
