"""Shared test fixtures"""
import itertools
from datetime import date, datetime, timezone
from typing import List, Optional, Sequence, Tuple

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from movie_api_server.clock import FrozenClock, as_utc, start_of_day
from movie_api_server.db_models import CLEANUP_SENTINEL
from movie_api_server.store import (
    ApiKeyDetails,
    ApiKeyInfo,
    CatalogStats,
    DurableStore,
    MovieRecord,
    StoreError,
    UserRecord,
)

ADMIN_KEY = "test-admin-key-0123456789abcdefghijklmnop"

# Store operations that change state
WRITE_OPERATIONS = frozenset({
    "increment_daily_usage",
    "append_usage_log",
    "record_cleanup_marker",
    "delete_usage_logs_before",
    "insert_admin_session",
    "delete_expired_admin_sessions",
})


class InMemoryStore(DurableStore):
    """
    DurableStore fake for unit tests.

    Every call is recorded in ``calls``. Operations named via ``fail()``
    raise StoreError until ``recover()``; ``fail("*")`` breaks everything.
    """

    def __init__(self):
        self.users = {}
        self.keys = {}
        self.daily_usage = {}
        self.usage_logs = []
        self.admin_sessions = {}
        self.cleanup_markers = {}
        self.movies = {}
        self.calls = []
        self.failing = set()
        self._ids = itertools.count(1)

    # -- test helpers -----------------------------------------------------

    def fail(self, *operations: str) -> None:
        self.failing.update(operations)

    def recover(self) -> None:
        self.failing.clear()

    def writes(self) -> List[str]:
        return [call for call in self.calls if call in WRITE_OPERATIONS]

    def add_key(
        self,
        api_key: str,
        user_id: Optional[int] = None,
        daily_limit: int = 100,
        is_active: bool = True,
        created_at: Optional[datetime] = None,
    ) -> int:
        key_id = next(self._ids)
        self.keys[key_id] = {
            "id": key_id,
            "user_id": user_id,
            "api_key": api_key,
            "is_active": is_active,
            "daily_limit": daily_limit,
            "monthly_limit": None,
            "created_at": created_at or datetime(2025, 1, 1, tzinfo=timezone.utc),
        }
        return key_id

    def add_user(self, email: str, uid_hash: str = "", is_verified: bool = True) -> int:
        user_id = next(self._ids)
        self.users[user_id] = UserRecord(id=user_id, email=email, uid_hash=uid_hash, is_verified=is_verified)
        return user_id

    def add_log(self, key_id: int, endpoint: str, at: datetime, status_code: int = 200) -> None:
        self.usage_logs.append({
            "api_key_id": key_id,
            "endpoint": endpoint,
            "status_code": status_code,
            "timestamp": as_utc(at),
        })

    def add_movie(self, title: str, year: Optional[int] = None, genres=(), cast=(), **fields) -> int:
        """Add a movie; ``cast`` is a sequence of (name, role) pairs."""
        movie_id = next(self._ids)
        self.movies[movie_id] = MovieRecord(
            id=movie_id,
            title=title,
            year=year,
            genres=list(genres),
            cast=[{"name": name, "role": role} for name, role in cast],
            **fields,
        )
        return movie_id

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.failing or "*" in self.failing:
            raise StoreError(f"{operation} failed")

    def _details(self, row: dict) -> ApiKeyDetails:
        return ApiKeyDetails(
            id=row["id"],
            user_id=row["user_id"],
            api_key=row["api_key"],
            is_active=row["is_active"],
            daily_limit=row["daily_limit"],
            created_at=row["created_at"],
        )

    def _traffic(self, key_ids, since=None, until=None):
        for log in self.usage_logs:
            if log["api_key_id"] not in key_ids or log["endpoint"] == CLEANUP_SENTINEL:
                continue
            if since is not None and log["timestamp"] < since:
                continue
            if until is not None and log["timestamp"] >= until:
                continue
            yield log

    # -- admission gate ---------------------------------------------------

    async def find_active_api_key(self, key: str) -> Optional[ApiKeyInfo]:
        self._enter("find_active_api_key")
        for row in self.keys.values():
            if row["api_key"] == key and row["is_active"]:
                return ApiKeyInfo(id=row["id"], user_id=row["user_id"], daily_limit=row["daily_limit"])
        return None

    async def get_daily_usage(self, key_id: int, day: date) -> Optional[int]:
        self._enter("get_daily_usage")
        return self.daily_usage.get((key_id, day))

    async def increment_daily_usage(self, key_id: int, day: date, limit: int) -> Optional[int]:
        self._enter("increment_daily_usage")
        current = self.daily_usage.get((key_id, day), 0)
        if current >= limit:
            return None
        self.daily_usage[(key_id, day)] = current + 1
        return current + 1

    async def append_usage_log(self, key_id: int, endpoint: str, status_code: int, at: datetime) -> None:
        self._enter("append_usage_log")
        self.add_log(key_id, endpoint, at, status_code)

    async def last_cleanup_marker(self, key_id: int) -> Optional[datetime]:
        self._enter("last_cleanup_marker")
        return self.cleanup_markers.get(key_id)

    async def record_cleanup_marker(self, key_id: int, at: datetime) -> None:
        self._enter("record_cleanup_marker")
        self.cleanup_markers[key_id] = at

    async def delete_usage_logs_before(self, cutoff: date) -> int:
        self._enter("delete_usage_logs_before")
        threshold = start_of_day(cutoff)
        kept = [log for log in self.usage_logs if log["timestamp"] >= threshold]
        deleted = len(self.usage_logs) - len(kept)
        self.usage_logs = kept
        return deleted

    # -- admin sessions ---------------------------------------------------

    async def find_admin_session(self, token: str) -> Optional[datetime]:
        self._enter("find_admin_session")
        session = self.admin_sessions.get(token)
        return session["expires_at"] if session else None

    async def insert_admin_session(self, token: str, admin_key_fingerprint: str, expires_at: datetime) -> None:
        self._enter("insert_admin_session")
        self.admin_sessions[token] = {"fingerprint": admin_key_fingerprint, "expires_at": expires_at}

    async def delete_expired_admin_sessions(self, now: datetime) -> int:
        self._enter("delete_expired_admin_sessions")
        expired = [token for token, s in self.admin_sessions.items() if s["expires_at"] < now]
        for token in expired:
            del self.admin_sessions[token]
        return len(expired)

    # -- accounts and keys ------------------------------------------------

    async def ping(self) -> None:
        self._enter("ping")

    async def find_user_by_email(self, email: str) -> Optional[UserRecord]:
        self._enter("find_user_by_email")
        for user in self.users.values():
            if user.email == email:
                return user
        return None

    async def get_user(self, user_id: int) -> Optional[UserRecord]:
        self._enter("get_user")
        return self.users.get(user_id)

    async def create_user(self, email: str, uid_hash: str, is_verified: bool, at: datetime) -> UserRecord:
        self._enter("create_user")
        user_id = self.add_user(email, uid_hash, is_verified)
        return self.users[user_id]

    async def mark_user_verified(self, user_id: int) -> None:
        self._enter("mark_user_verified")
        user = self.users[user_id]
        self.users[user_id] = UserRecord(id=user.id, email=user.email, uid_hash=user.uid_hash, is_verified=True)

    async def create_api_key(
        self,
        user_id: Optional[int],
        api_key: str,
        daily_limit: int,
        monthly_limit: Optional[int],
        at: datetime,
    ) -> ApiKeyDetails:
        self._enter("create_api_key")
        key_id = self.add_key(api_key, user_id=user_id, daily_limit=daily_limit, created_at=at)
        self.keys[key_id]["monthly_limit"] = monthly_limit
        return self._details(self.keys[key_id])

    async def deactivate_api_key(self, key_id: int, user_id: Optional[int] = None) -> bool:
        self._enter("deactivate_api_key")
        row = self.keys.get(key_id)
        if row is None or not row["is_active"]:
            return False
        if user_id is not None and row["user_id"] != user_id:
            return False
        row["is_active"] = False
        return True

    async def list_api_keys(self, user_id: Optional[int] = None, active_only: bool = False) -> List[ApiKeyDetails]:
        self._enter("list_api_keys")
        rows = [
            row for row in self.keys.values()
            if (user_id is None or row["user_id"] == user_id) and (row["is_active"] or not active_only)
        ]
        rows.sort(key=lambda row: (row["created_at"], row["id"]), reverse=True)
        return [self._details(row) for row in rows]

    async def usage_log_timestamps(
        self,
        key_ids: Sequence[int],
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[datetime]:
        self._enter("usage_log_timestamps")
        return [log["timestamp"] for log in self._traffic(key_ids, since, until)]

    async def count_usage_logs(self, key_ids: Sequence[int], since: Optional[datetime] = None) -> int:
        self._enter("count_usage_logs")
        return sum(1 for _ in self._traffic(key_ids, since))

    async def sum_daily_usage(self, key_ids: Sequence[int], day: date) -> int:
        self._enter("sum_daily_usage")
        return sum(self.daily_usage.get((key_id, day), 0) for key_id in key_ids)

    # -- movie catalog ----------------------------------------------------

    async def count_movies(self) -> int:
        self._enter("count_movies")
        return len(self.movies)

    async def find_movies(
        self,
        genre: Optional[str] = None,
        year: Optional[int] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[int, List[MovieRecord]]:
        self._enter("find_movies")
        needle = search.lower() if search else None

        def matches(movie: MovieRecord) -> bool:
            if genre and genre not in movie.genres:
                return False
            if year is not None and movie.year != year:
                return False
            if needle is not None:
                fields = (movie.title, movie.director or "", movie.plot or "")
                return any(needle in value.lower() for value in fields)
            return True

        found = [movie for movie in self.movies.values() if matches(movie)]
        found.sort(key=lambda movie: (movie.title, movie.id))
        found.sort(key=lambda movie: movie.year or 0, reverse=True)
        return len(found), found[offset:offset + limit]

    async def get_movie(self, movie_id: int) -> Optional[MovieRecord]:
        self._enter("get_movie")
        return self.movies.get(movie_id)

    async def catalog_stats(self) -> CatalogStats:
        self._enter("catalog_stats")
        years = [movie.year for movie in self.movies.values() if movie.year is not None]
        return CatalogStats(
            movies_total=len(self.movies),
            genres_total=sum(len(movie.genres) for movie in self.movies.values()),
            cast_total=sum(len(movie.cast) for movie in self.movies.values()),
            year_min=min(years) if years else None,
            year_max=max(years) if years else None,
        )

    async def list_genres(self) -> List[str]:
        self._enter("list_genres")
        return sorted({genre for movie in self.movies.values() for genre in movie.genres})

    async def list_years(self) -> List[int]:
        self._enter("list_years")
        return sorted({movie.year for movie in self.movies.values() if movie.year is not None}, reverse=True)


@pytest.fixture
def frozen_clock() -> FrozenClock:
    """Clock fixed at 2025-03-01T15:30:00Z"""
    return FrozenClock(datetime(2025, 3, 1, 15, 30, tzinfo=timezone.utc))


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def admin_key() -> str:
    return ADMIN_KEY


@pytest_asyncio.fixture
async def sqlite_store(tmp_path):
    """SQLAlchemyStore over a throwaway SQLite file"""
    from movie_api_server.config import settings
    from movie_api_server.database import create_engine_from_settings, init_models
    from movie_api_server.store import SQLAlchemyStore

    engine = create_engine_from_settings(settings, url=f"sqlite+aiosqlite:///{tmp_path / 'movies.db'}")
    await init_models(engine)
    yield SQLAlchemyStore(engine)
    await engine.dispose()


@pytest.fixture
def app(store, frozen_clock):
    from movie_api_server.main_api import create_app
    from movie_api_server.rate_limiting import limiter

    limiter.reset()
    return create_app(store=store, clock=frozen_clock)


@pytest.fixture
def client(app) -> TestClient:
    """Create test client."""
    return TestClient(app)
