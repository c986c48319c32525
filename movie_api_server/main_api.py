"""
FastAPI application for the movie API: the quota-gated movie catalog, account
key management, admin login and health checks.

Run locally with:
    movie-api            (HOST, PORT and RELOAD from settings)
    uvicorn movie_api_server.main_api:app --reload
"""
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from movie_api_server.accounts import AccountError, AccountService
from movie_api_server.admin_auth import AdminAuthenticator, InvalidAdminCredentials
from movie_api_server.auth import (
    APIKeyManager,
    get_admin_authenticator,
    get_clock,
    get_store,
    require_admin,
    require_api_key,
    require_key_owner,
)
from movie_api_server.catalog import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, CatalogError, MovieCatalog
from movie_api_server.clock import Clock, SystemClock, isoformat_z
from movie_api_server.config import settings
from movie_api_server.database import create_engine_from_settings, init_models
from movie_api_server.gate import AdmissionGate, Allowed
from movie_api_server.health import router as health_router
from movie_api_server.logging_config import (
    get_logger,
    log_exception,
    log_request_end,
    log_request_start,
    setup_logging,
)
from movie_api_server.models import (
    AdminLoginRequest,
    AdminLoginResponse,
    ApiKeyCreatedResponse,
    ApiKeyListResponse,
    CatalogStatsResponse,
    EmailVerificationRequest,
    EmailVerificationResponse,
    MovieListResponse,
    MovieOut,
    QuotaStatus,
    UserLoginRequest,
    UserLoginResponse,
)
from movie_api_server.rate_limiting import (
    EXPOSED_HEADERS,
    admin_login_limit,
    admitted_headers,
    apply_rate_limits,
)
from movie_api_server.signatures import SIGNATURE_HEADER, TIMESTAMP_HEADER
from movie_api_server.store import DurableStore, SQLAlchemyStore, StoreError

setup_logging(
    log_level=settings.log_level,
    log_format=settings.log_format,
    log_file=settings.log_file,
    log_max_bytes=settings.log_file_max_size,
    log_backup_count=settings.log_file_backup_count,
)

logger = get_logger(__name__)

# Context variable for request ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def get_accounts(request: Request) -> AccountService:
    return request.app.state.accounts


def get_catalog(request: Request) -> MovieCatalog:
    return request.app.state.catalog


# Public API (quota gated)

public_router = APIRouter(prefix="/api", tags=["public"])


@public_router.get("/movies", response_model=MovieListResponse)
async def list_movies(
    page: int = 1,
    limit: int = Query(DEFAULT_PAGE_SIZE, description=f"Page size, at most {MAX_PAGE_SIZE}"),
    genre: Optional[str] = None,
    year: Optional[int] = None,
    search: Optional[str] = None,
    catalog: MovieCatalog = Depends(get_catalog),
    _admission: Allowed = Depends(require_api_key),
):
    return await catalog.list_movies(page=page, limit=limit, genre=genre, year=year, search=search)


@public_router.get("/movies/{movie_id}", response_model=MovieOut)
async def get_movie(
    movie_id: int,
    catalog: MovieCatalog = Depends(get_catalog),
    _admission: Allowed = Depends(require_api_key),
):
    return await catalog.get_movie(movie_id)


@public_router.get("/search", response_model=MovieListResponse)
async def search_movies(
    q: Optional[str] = None,
    title: Optional[str] = None,
    year: Optional[int] = None,
    genre: Optional[str] = None,
    catalog: MovieCatalog = Depends(get_catalog),
    _admission: Allowed = Depends(require_api_key),
):
    """Up to 50 matches; needs at least one of q (or title), year or genre."""
    return await catalog.search(query=q or title, year=year, genre=genre)


@public_router.get("/stats", response_model=CatalogStatsResponse)
async def catalog_stats(
    catalog: MovieCatalog = Depends(get_catalog),
    _admission: Allowed = Depends(require_api_key),
):
    return await catalog.stats()


@public_router.get("/genres")
async def list_genres(
    catalog: MovieCatalog = Depends(get_catalog),
    _admission: Allowed = Depends(require_api_key),
):
    return await catalog.genres()


@public_router.get("/years")
async def list_years(
    catalog: MovieCatalog = Depends(get_catalog),
    _admission: Allowed = Depends(require_api_key),
):
    return await catalog.years()


@public_router.get("/usage", response_model=QuotaStatus)
async def quota_status(admission: Allowed = Depends(require_api_key)):
    """Quota left for the calling key. Counts as a request."""
    return QuotaStatus(
        key_id=admission.key_id,
        daily_limit=admission.daily_limit,
        requests_remaining=admission.remaining,
        reset_time=isoformat_z(admission.reset_at),
    )


@public_router.post("/verify-email", response_model=EmailVerificationResponse, tags=["accounts"])
async def verify_email(payload: EmailVerificationRequest, accounts: AccountService = Depends(get_accounts)):
    """Identity-provider callback: register the account or mark its email verified."""
    result = await accounts.verify_email(payload.email, payload.uid, payload.email_verified)
    return EmailVerificationResponse(
        message="Email verified successfully" if payload.email_verified else "User registered, please verify email",
        **result,
    )


# Accounts

account_router = APIRouter(prefix="/api/auth", tags=["accounts"])


@account_router.post("/login", response_model=UserLoginResponse)
async def user_login(payload: UserLoginRequest, accounts: AccountService = Depends(get_accounts)):
    """Log in with the identity provider's email + uid; returns an active API key."""
    result = await accounts.login(payload.email, payload.uid)
    return UserLoginResponse(
        user_id=result["user_id"],
        api_key=result["api_key"],
        message="Account created and API key generated" if result["created"] else None,
    )


@account_router.get("/dashboard/{user_id}")
async def user_dashboard(
    user_id: int,
    accounts: AccountService = Depends(get_accounts),
    _owner=Depends(require_key_owner),
):
    return await accounts.dashboard(user_id)


@account_router.post("/api-key/{user_id}", response_model=ApiKeyCreatedResponse)
async def create_user_api_key(
    user_id: int,
    accounts: AccountService = Depends(get_accounts),
    _owner=Depends(require_key_owner),
):
    created = await accounts.create_key(user_id)
    return ApiKeyCreatedResponse(id=created["id"], api_key=created["api_key"])


@account_router.delete("/api-key/{user_id}/{key_id}")
async def delete_user_api_key(
    user_id: int,
    key_id: int,
    accounts: AccountService = Depends(get_accounts),
    _owner=Depends(require_key_owner),
):
    if not await accounts.revoke_key(user_id, key_id):
        raise HTTPException(status_code=404, detail="API key not found")
    return {"success": True, "message": "API key deleted successfully"}


# Admin

admin_router = APIRouter(prefix="/api/admin", tags=["admin"])


@admin_router.post("/auth", response_model=AdminLoginResponse)
@admin_login_limit()
async def admin_login(
    request: Request,
    payload: AdminLoginRequest,
    admin_auth: AdminAuthenticator = Depends(get_admin_authenticator),
):
    """Exchange the admin secret for a 24h session token."""
    if not payload.admin_key:
        return JSONResponse(status_code=400, content={"success": False, "message": "Admin key required"})

    client_ip = request.client.host if request.client else None
    grant = await admin_auth.login(payload.admin_key, client_ip=client_ip)
    return AdminLoginResponse(
        uid=settings.admin_uid,
        email=settings.admin_email,
        session_token=grant.session_token,
        expires_at=isoformat_z(grant.expires_at),
    )


@admin_router.get("/keys", response_model=ApiKeyListResponse, dependencies=[Depends(require_admin)])
async def admin_list_keys(
    user_id: Optional[int] = None,
    active_only: bool = False,
    store: DurableStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
):
    keys = await APIKeyManager(store, clock).list_keys(user_id=user_id, active_only=active_only)
    return {"keys": keys, "total": len(keys)}


@admin_router.post("/keys/{key_id}/revoke", dependencies=[Depends(require_admin)])
async def admin_revoke_key(
    key_id: int,
    store: DurableStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
):
    if not await APIKeyManager(store, clock).revoke_key(key_id):
        raise HTTPException(status_code=404, detail="API key not found")
    return {"success": True, "message": "API key revoked"}


def wire_services(app: FastAPI, store: DurableStore) -> None:
    """Attach the store and everything built on it to ``app.state``."""
    clock = app.state.clock
    app.state.store = store
    app.state.gate = AdmissionGate.from_settings(store, settings, clock=clock)
    app.state.admin_auth = AdminAuthenticator.from_settings(store, settings, clock=clock)
    app.state.accounts = AccountService(store, clock, gate=app.state.gate)
    app.state.catalog = MovieCatalog(store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = None
    if app.state.store is None:
        engine = create_engine_from_settings(settings)
        if engine.dialect.name == "sqlite":
            # Local development without migrations
            await init_models(engine)
        wire_services(app, SQLAlchemyStore(engine))
        logger.info("store_connected", dialect=engine.dialect.name)
    yield
    if engine is not None:
        await engine.dispose()


def create_app(store: Optional[DurableStore] = None, clock: Optional[Clock] = None) -> FastAPI:
    """
    Build the application.

    Args:
        store: Durable store; when omitted one is created from DATABASE_URL
            at startup
        clock: Time source shared by the gate, admin auth and accounts
    """
    app = FastAPI(
        title="Movie Database API",
        description="Movie metadata API with per-key daily quotas.",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.clock = clock or SystemClock()
    app.state.store = None
    if store is not None:
        wire_services(app, store)

    if settings.cors_enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=False,
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=[
                "Content-Type",
                "X-API-Key",
                "X-Admin-Key",
                "Authorization",
                SIGNATURE_HEADER,
                TIMESTAMP_HEADER,
            ],
            expose_headers=EXPOSED_HEADERS,
        )

    @app.middleware("http")
    async def security_headers_middleware(request: Request, call_next):
        """Add security headers to all responses"""
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Log all incoming requests and responses with timing"""
        request_id = str(uuid.uuid4())
        request_id_var.set(request_id)
        client_ip = request.client.host if request.client else "unknown"

        start_time = time.time()
        log_request_start(
            method=request.method,
            path=request.url.path,
            request_id=request_id,
            client_ip=client_ip,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            log_exception(
                e,
                context={
                    "method": request.method,
                    "path": request.url.path,
                    "request_id": request_id,
                    "duration_ms": (time.time() - start_time) * 1000,
                }
            )
            raise

        log_request_end(
            method=request.method,
            path=request.url.path,
            request_id=request_id,
            status_code=response.status_code,
            duration_ms=(time.time() - start_time) * 1000,
        )
        response.headers["X-Request-ID"] = request_id
        return response

    apply_rate_limits(app)

    @app.exception_handler(AccountError)
    async def account_error_handler(request: Request, exc: AccountError):
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})

    @app.exception_handler(CatalogError)
    async def catalog_error_handler(request: Request, exc: CatalogError):
        # The request was already admitted and counted
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc)},
            headers=admitted_headers(request),
        )

    @app.exception_handler(InvalidAdminCredentials)
    async def admin_credentials_handler(request: Request, exc: InvalidAdminCredentials):
        return JSONResponse(status_code=401, content={"success": False, "message": str(exc)})

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        """Backend failures outside the gate: never an auth decision."""
        log_exception(exc, context={"path": request.url.path, "request_id": request_id_var.get("")})
        return JSONResponse(
            status_code=500,
            content={
                "error": "Service temporarily unavailable",
                "message": "Please try again in a moment.",
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle all unhandled exceptions"""
        request_id = request_id_var.get("")
        log_exception(
            exc,
            context={
                "method": request.method,
                "path": request.url.path,
                "request_id": request_id,
            }
        )
        return JSONResponse(
            status_code=500,
            content={"error": "Internal Server Error", "request_id": request_id},
            headers={"X-Request-ID": request_id},
        )

    @app.get("/")
    async def read_root(store: DurableStore = Depends(get_store)):
        return {
            "message": "Movie Database API",
            "version": settings.app_version,
            "movie_count": await store.count_movies(),
            "endpoints": {
                "movies": "/api/movies",
                "search": "/api/search",
                "stats": "/api/stats",
                "genres": "/api/genres",
                "years": "/api/years",
                "usage": "/api/usage",
                "verify_email": "/api/verify-email",
                "login": "/api/auth/login",
                "admin_auth": "/api/admin/auth",
                "health": "/api/v1/health",
            },
        }

    app.include_router(health_router)
    app.include_router(public_router)
    app.include_router(account_router)
    app.include_router(admin_router)
    return app


app = create_app()


def run() -> None:
    """Serve ``app`` with uvicorn on the configured HOST and PORT."""
    uvicorn.run(
        "movie_api_server.main_api:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
