"""
Authentication module with API key management
Provides API key generation, revocation and the FastAPI dependencies that
put the admission gate and admin auth in front of routes.
"""
import secrets
import string
from typing import Any, Dict, List, Optional

from fastapi import Depends, HTTPException, Request, Response, Security, status
from fastapi.security import APIKeyHeader

from movie_api_server.admin_auth import AdminAuthenticator
from movie_api_server.clock import Clock, SystemClock
from movie_api_server.gate import DEFAULT_DAILY_LIMIT, AdmissionGate, Allowed, Denied, DenialReason
from movie_api_server.rate_limiting import AdmissionDenied, rate_limit_headers
from movie_api_server.signatures import BODYLESS_METHODS, RequestContext
from movie_api_server.store import ApiKeyDetails, ApiKeyInfo, DurableStore

API_KEY_PREFIX = "mk_"
API_KEY_ALPHABET = string.ascii_letters + string.digits
API_KEY_LENGTH = 32

# API Key header scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def generate_api_key() -> str:
    """Generate a new raw API key: ``mk_`` followed by 32 alphanumerics."""
    return API_KEY_PREFIX + "".join(secrets.choice(API_KEY_ALPHABET) for _ in range(API_KEY_LENGTH))


class APIKeyManager:
    """Manage API key issuing, revocation and listing"""

    def __init__(self, store: DurableStore, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or SystemClock()

    async def issue_key(
        self,
        user_id: Optional[int],
        daily_limit: int = DEFAULT_DAILY_LIMIT,
        monthly_limit: Optional[int] = None,
    ) -> ApiKeyDetails:
        """
        Generate and store a new active API key

        Args:
            user_id: Owning account
            daily_limit: Per-key daily limit recorded with the key
            monthly_limit: Optional monthly limit recorded with the key

        Returns:
            The stored key, including the raw secret
        """
        raw_key = generate_api_key()
        return await self.store.create_api_key(
            user_id=user_id,
            api_key=raw_key,
            daily_limit=daily_limit,
            monthly_limit=monthly_limit,
            at=self.clock.now(),
        )

    async def revoke_key(self, key_id: int, user_id: Optional[int] = None) -> bool:
        """
        Revoke (deactivate) an API key. Keys are never physically removed.

        Returns:
            True if revoked, False if not found (or not owned by ``user_id``)
        """
        return await self.store.deactivate_api_key(key_id, user_id=user_id)

    async def active_key_for(self, user_id: int) -> Optional[ApiKeyDetails]:
        keys = await self.store.list_api_keys(user_id=user_id, active_only=True)
        return keys[0] if keys else None

    async def list_keys(self, user_id: Optional[int] = None, active_only: bool = False) -> List[Dict[str, Any]]:
        """List API keys with the secret masked"""
        keys = await self.store.list_api_keys(user_id=user_id, active_only=active_only)
        return [key.to_dict() for key in keys]


# FastAPI dependencies

def get_store(request: Request) -> DurableStore:
    return request.app.state.store


def get_clock(request: Request) -> Clock:
    return request.app.state.clock


def get_gate(request: Request) -> AdmissionGate:
    return request.app.state.gate


def get_admin_authenticator(request: Request) -> AdminAuthenticator:
    return request.app.state.admin_auth


async def request_context(request: Request) -> RequestContext:
    """Capture what signature verification needs from the incoming request."""
    body = ""
    if request.method.upper() not in BODYLESS_METHODS:
        body = (await request.body()).decode("utf-8", errors="replace")
    return RequestContext(
        method=request.method,
        path=request.url.path,
        body=body,
        headers=dict(request.headers),
    )


async def require_api_key(
    request: Request,
    response: Response,
    api_key: Optional[str] = Security(api_key_header),
    gate: AdmissionGate = Depends(get_gate),
) -> Allowed:
    """
    FastAPI dependency that admits a request through the gate.

    Usage:
        @app.get("/endpoint")
        async def endpoint(admission: Allowed = Depends(require_api_key)):
            ...

    Admitted responses get the quota headers; refusals raise AdmissionDenied.
    The decision is also kept on ``request.state.admission`` so error
    responses raised after admission can carry the same headers.
    """
    if not api_key:
        raise AdmissionDenied(Denied(
            reason=DenialReason.INVALID_KEY,
            status=status.HTTP_401_UNAUTHORIZED,
            error="API key required",
            message=(
                "Please provide a valid API key in the X-API-Key header. "
                "Visit our portal to get your API key."
            ),
        ))

    decision = await gate.authorize(api_key, request.url.path, await request_context(request))
    if not isinstance(decision, Allowed):
        raise AdmissionDenied(decision)

    request.state.admission = decision
    response.headers.update(rate_limit_headers(decision.remaining, decision.reset_at))
    return decision


async def require_key_owner(
    user_id: int,
    api_key: Optional[str] = Security(api_key_header),
    store: DurableStore = Depends(get_store),
) -> ApiKeyInfo:
    """
    FastAPI dependency for account routes: the caller must present one of
    the account's own active keys. No quota is consumed.
    """
    record = await store.find_active_api_key(api_key) if api_key else None
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key"
        )
    if record.user_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="API key does not belong to this account"
        )
    return record


async def require_admin(
    request: Request,
    admin_auth: AdminAuthenticator = Depends(get_admin_authenticator),
) -> None:
    """FastAPI dependency for admin routes."""
    if not await admin_auth.is_authorized(request.headers):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
