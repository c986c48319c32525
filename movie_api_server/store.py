"""
Durable store used by the admission gate, the account endpoints and the
movie catalog.

``DurableStore`` is the whole contract the gate relies on. ``SQLAlchemyStore``
implements it over SQLAlchemy async sessions:

- Every method is one independent round trip with its own commit.
- Counters are bumped with INSERT ... ON CONFLICT DO UPDATE ... RETURNING,
  so concurrent admitted requests never lose an increment and never push a
  counter past its limit.
- Driver errors of any kind surface as ``StoreError`` so callers can tell a
  backend failure apart from a business decision.
"""
import abc
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, or_, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from movie_api_server.clock import as_utc, start_of_day
from movie_api_server.database import create_session_factory
from movie_api_server.db_models import (
    CLEANUP_SENTINEL,
    AdminSession,
    APIKey,
    DailyUsage,
    Movie,
    MovieCast,
    MovieGenre,
    UsageLog,
    User,
)


class StoreError(Exception):
    """The backing store could not complete an operation."""


@dataclass(frozen=True)
class ApiKeyInfo:
    """What the gate needs to know about an active key."""
    id: int
    user_id: Optional[int]
    daily_limit: int


@dataclass(frozen=True)
class ApiKeyDetails:
    id: int
    user_id: Optional[int]
    api_key: str
    is_active: bool
    daily_limit: int
    created_at: datetime

    def to_dict(self, reveal: bool = False) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "api_key": self.api_key if reveal else f"{self.api_key[:8]}...",
            "is_active": self.is_active,
            "daily_limit": self.daily_limit,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class UserRecord:
    id: int
    email: str
    uid_hash: str
    is_verified: bool


@dataclass(frozen=True)
class MovieRecord:
    """A catalog entry with its genres and credited cast."""
    id: int
    title: str
    year: Optional[int] = None
    runtime: Optional[int] = None
    rating: Optional[float] = None
    director: Optional[str] = None
    plot: Optional[str] = None
    poster_url: Optional[str] = None
    genres: List[str] = field(default_factory=list)
    cast: List[Dict[str, Optional[str]]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CatalogStats:
    movies_total: int
    genres_total: int
    cast_total: int
    year_min: Optional[int]
    year_max: Optional[int]


class DurableStore(abc.ABC):
    """Persistence operations consumed by the gate, admin auth, accounts and the catalog."""

    # -- admission gate ---------------------------------------------------

    @abc.abstractmethod
    async def find_active_api_key(self, key: str) -> Optional[ApiKeyInfo]:
        """Exact-match lookup of an active key; None when absent or revoked."""

    @abc.abstractmethod
    async def get_daily_usage(self, key_id: int, day: date) -> Optional[int]:
        """Request count for (key, day), or None when no row exists yet."""

    @abc.abstractmethod
    async def increment_daily_usage(self, key_id: int, day: date, limit: int) -> Optional[int]:
        """
        Atomically add one to the (key, day) counter, creating it at 1.

        The increment only applies while the stored count is below ``limit``.
        Returns the post-increment count, or None when the counter had
        already reached ``limit`` (nothing is written in that case).
        """

    @abc.abstractmethod
    async def append_usage_log(self, key_id: int, endpoint: str, status_code: int, at: datetime) -> None:
        ...

    @abc.abstractmethod
    async def last_cleanup_marker(self, key_id: int) -> Optional[datetime]:
        ...

    @abc.abstractmethod
    async def record_cleanup_marker(self, key_id: int, at: datetime) -> None:
        ...

    @abc.abstractmethod
    async def delete_usage_logs_before(self, cutoff: date) -> int:
        """Delete usage logs of every key dated before ``cutoff``. Returns rows removed."""

    # -- admin sessions ---------------------------------------------------

    @abc.abstractmethod
    async def find_admin_session(self, token: str) -> Optional[datetime]:
        """Expiry of the session named by ``token``, or None."""

    @abc.abstractmethod
    async def insert_admin_session(self, token: str, admin_key_fingerprint: str, expires_at: datetime) -> None:
        ...

    @abc.abstractmethod
    async def delete_expired_admin_sessions(self, now: datetime) -> int:
        ...

    # -- accounts and keys ------------------------------------------------

    @abc.abstractmethod
    async def ping(self) -> None:
        ...

    @abc.abstractmethod
    async def find_user_by_email(self, email: str) -> Optional[UserRecord]:
        ...

    @abc.abstractmethod
    async def get_user(self, user_id: int) -> Optional[UserRecord]:
        ...

    @abc.abstractmethod
    async def create_user(self, email: str, uid_hash: str, is_verified: bool, at: datetime) -> UserRecord:
        ...

    @abc.abstractmethod
    async def mark_user_verified(self, user_id: int) -> None:
        ...

    @abc.abstractmethod
    async def create_api_key(
        self,
        user_id: Optional[int],
        api_key: str,
        daily_limit: int,
        monthly_limit: Optional[int],
        at: datetime,
    ) -> ApiKeyDetails:
        ...

    @abc.abstractmethod
    async def deactivate_api_key(self, key_id: int, user_id: Optional[int] = None) -> bool:
        """Soft-delete a key, optionally only if owned by ``user_id``."""

    @abc.abstractmethod
    async def list_api_keys(self, user_id: Optional[int] = None, active_only: bool = False) -> List[ApiKeyDetails]:
        """Keys newest first."""

    @abc.abstractmethod
    async def usage_log_timestamps(
        self,
        key_ids: Sequence[int],
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[datetime]:
        """Timestamps of real traffic (cleanup sentinel rows excluded)."""

    @abc.abstractmethod
    async def count_usage_logs(self, key_ids: Sequence[int], since: Optional[datetime] = None) -> int:
        """Count real traffic rows (cleanup sentinel rows excluded)."""

    @abc.abstractmethod
    async def sum_daily_usage(self, key_ids: Sequence[int], day: date) -> int:
        ...

    # -- movie catalog (read only) ----------------------------------------

    @abc.abstractmethod
    async def count_movies(self) -> int:
        ...

    @abc.abstractmethod
    async def find_movies(
        self,
        genre: Optional[str] = None,
        year: Optional[int] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[int, List[MovieRecord]]:
        """
        One page of movies matching every given filter.

        ``search`` is a case-insensitive substring of title, director or plot.
        Pages are ordered newest year first, then by title. Returns the total
        number of matches and the page.
        """

    @abc.abstractmethod
    async def get_movie(self, movie_id: int) -> Optional[MovieRecord]:
        ...

    @abc.abstractmethod
    async def catalog_stats(self) -> CatalogStats:
        ...

    @abc.abstractmethod
    async def list_genres(self) -> List[str]:
        """Distinct genres, alphabetical."""

    @abc.abstractmethod
    async def list_years(self) -> List[int]:
        """Distinct release years, newest first."""


def _key_details(row: APIKey) -> ApiKeyDetails:
    return ApiKeyDetails(
        id=row.id,
        user_id=row.user_id,
        api_key=row.api_key,
        is_active=row.is_active,
        daily_limit=row.daily_limit,
        created_at=as_utc(row.created_at),
    )


def _user_record(row: User) -> UserRecord:
    return UserRecord(id=row.id, email=row.email, uid_hash=row.uid_hash, is_verified=row.is_verified)


class SQLAlchemyStore(DurableStore):
    """DurableStore backed by PostgreSQL (asyncpg) or SQLite (aiosqlite)."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._session_factory = create_session_factory(engine)
        self._dialect = engine.dialect.name

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            raise StoreError(f"{type(e).__name__}: {e}") from e

    def _insert(self, model):
        if self._dialect == "postgresql":
            return pg_insert(model)
        if self._dialect == "sqlite":
            return sqlite_insert(model)
        raise StoreError(f"Unsupported database dialect: {self._dialect}")

    # -- admission gate ---------------------------------------------------

    async def find_active_api_key(self, key: str) -> Optional[ApiKeyInfo]:
        stmt = select(APIKey.id, APIKey.user_id, APIKey.daily_limit).where(
            APIKey.api_key == key,
            APIKey.is_active.is_(True),
        )
        async with self._session() as session:
            row = (await session.execute(stmt)).first()
        if row is None:
            return None
        return ApiKeyInfo(id=row.id, user_id=row.user_id, daily_limit=row.daily_limit)

    async def get_daily_usage(self, key_id: int, day: date) -> Optional[int]:
        stmt = select(DailyUsage.request_count).where(
            DailyUsage.api_key_id == key_id,
            DailyUsage.date == day,
        )
        async with self._session() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def increment_daily_usage(self, key_id: int, day: date, limit: int) -> Optional[int]:
        if limit <= 0:
            return None
        stmt = (
            self._insert(DailyUsage)
            .values(api_key_id=key_id, date=day, request_count=1)
            .on_conflict_do_update(
                index_elements=["api_key_id", "date"],
                set_={"request_count": DailyUsage.request_count + 1},
                where=DailyUsage.request_count < limit,
            )
            .returning(DailyUsage.request_count)
        )
        async with self._session() as session:
            count = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
        return count

    async def append_usage_log(self, key_id: int, endpoint: str, status_code: int, at: datetime) -> None:
        async with self._session() as session:
            session.add(UsageLog(api_key_id=key_id, endpoint=endpoint, status_code=status_code, timestamp=at))
            await session.commit()

    async def last_cleanup_marker(self, key_id: int) -> Optional[datetime]:
        stmt = select(APIKey.last_cleanup_at).where(APIKey.id == key_id)
        async with self._session() as session:
            value = (await session.execute(stmt)).scalar_one_or_none()
        return as_utc(value) if value is not None else None

    async def record_cleanup_marker(self, key_id: int, at: datetime) -> None:
        stmt = update(APIKey).where(APIKey.id == key_id).values(last_cleanup_at=at)
        async with self._session() as session:
            await session.execute(stmt)
            await session.commit()

    async def delete_usage_logs_before(self, cutoff: date) -> int:
        stmt = delete(UsageLog).where(UsageLog.timestamp < start_of_day(cutoff))
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount or 0

    # -- admin sessions ---------------------------------------------------

    async def find_admin_session(self, token: str) -> Optional[datetime]:
        stmt = select(AdminSession.expires_at).where(AdminSession.session_token == token)
        async with self._session() as session:
            value = (await session.execute(stmt)).scalar_one_or_none()
        return as_utc(value) if value is not None else None

    async def insert_admin_session(self, token: str, admin_key_fingerprint: str, expires_at: datetime) -> None:
        async with self._session() as session:
            session.add(AdminSession(
                session_token=token,
                admin_key_fingerprint=admin_key_fingerprint,
                expires_at=expires_at,
            ))
            await session.commit()

    async def delete_expired_admin_sessions(self, now: datetime) -> int:
        stmt = delete(AdminSession).where(AdminSession.expires_at < now)
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount or 0

    # -- accounts and keys ------------------------------------------------

    async def ping(self) -> None:
        async with self._session() as session:
            await session.execute(text("SELECT 1"))

    async def find_user_by_email(self, email: str) -> Optional[UserRecord]:
        async with self._session() as session:
            row = (await session.execute(select(User).where(User.email == email))).scalar_one_or_none()
        return _user_record(row) if row is not None else None

    async def get_user(self, user_id: int) -> Optional[UserRecord]:
        async with self._session() as session:
            row = await session.get(User, user_id)
        return _user_record(row) if row is not None else None

    async def create_user(self, email: str, uid_hash: str, is_verified: bool, at: datetime) -> UserRecord:
        async with self._session() as session:
            user = User(email=email, uid_hash=uid_hash, is_verified=is_verified, created_at=at)
            session.add(user)
            await session.commit()
            return _user_record(user)

    async def mark_user_verified(self, user_id: int) -> None:
        async with self._session() as session:
            await session.execute(update(User).where(User.id == user_id).values(is_verified=True))
            await session.commit()

    async def create_api_key(
        self,
        user_id: Optional[int],
        api_key: str,
        daily_limit: int,
        monthly_limit: Optional[int],
        at: datetime,
    ) -> ApiKeyDetails:
        async with self._session() as session:
            row = APIKey(
                user_id=user_id,
                api_key=api_key,
                is_active=True,
                daily_limit=daily_limit,
                monthly_limit=monthly_limit,
                created_at=at,
            )
            session.add(row)
            await session.commit()
            return _key_details(row)

    async def deactivate_api_key(self, key_id: int, user_id: Optional[int] = None) -> bool:
        stmt = update(APIKey).where(APIKey.id == key_id, APIKey.is_active.is_(True))
        if user_id is not None:
            stmt = stmt.where(APIKey.user_id == user_id)
        async with self._session() as session:
            result = await session.execute(stmt.values(is_active=False))
            await session.commit()
        return (result.rowcount or 0) > 0

    async def list_api_keys(self, user_id: Optional[int] = None, active_only: bool = False) -> List[ApiKeyDetails]:
        stmt = select(APIKey).order_by(APIKey.created_at.desc(), APIKey.id.desc())
        if user_id is not None:
            stmt = stmt.where(APIKey.user_id == user_id)
        if active_only:
            stmt = stmt.where(APIKey.is_active.is_(True))
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_key_details(row) for row in rows]

    def _traffic_filter(self, stmt, key_ids: Sequence[int], since: Optional[datetime], until: Optional[datetime] = None):
        stmt = stmt.where(UsageLog.api_key_id.in_(list(key_ids)), UsageLog.endpoint != CLEANUP_SENTINEL)
        if since is not None:
            stmt = stmt.where(UsageLog.timestamp >= since)
        if until is not None:
            stmt = stmt.where(UsageLog.timestamp < until)
        return stmt

    async def usage_log_timestamps(
        self,
        key_ids: Sequence[int],
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[datetime]:
        if not key_ids:
            return []
        stmt = self._traffic_filter(select(UsageLog.timestamp), key_ids, since, until).order_by(UsageLog.timestamp)
        async with self._session() as session:
            values = (await session.execute(stmt)).scalars().all()
        return [as_utc(value) for value in values]

    async def count_usage_logs(self, key_ids: Sequence[int], since: Optional[datetime] = None) -> int:
        if not key_ids:
            return 0
        stmt = self._traffic_filter(select(func.count(UsageLog.id)), key_ids, since)
        async with self._session() as session:
            return (await session.execute(stmt)).scalar_one()

    async def sum_daily_usage(self, key_ids: Sequence[int], day: date) -> int:
        if not key_ids:
            return 0
        stmt = select(func.coalesce(func.sum(DailyUsage.request_count), 0)).where(
            DailyUsage.api_key_id.in_(list(key_ids)),
            DailyUsage.date == day,
        )
        async with self._session() as session:
            return int((await session.execute(stmt)).scalar_one())

    # -- movie catalog (read only) ----------------------------------------

    @staticmethod
    def _movie_filter(stmt, genre: Optional[str], year: Optional[int], search: Optional[str]):
        if genre:
            stmt = stmt.where(Movie.id.in_(select(MovieGenre.movie_id).where(MovieGenre.genre == genre)))
        if year is not None:
            stmt = stmt.where(Movie.year == year)
        if search:
            stmt = stmt.where(or_(
                Movie.title.icontains(search, autoescape=True),
                Movie.director.icontains(search, autoescape=True),
                Movie.plot.icontains(search, autoescape=True),
            ))
        return stmt

    @staticmethod
    async def _with_credits(session: AsyncSession, rows: Sequence[Movie]) -> List[MovieRecord]:
        ids = [row.id for row in rows]
        genres = defaultdict(list)
        cast = defaultdict(list)
        if ids:
            genre_rows = await session.execute(
                select(MovieGenre.movie_id, MovieGenre.genre)
                .where(MovieGenre.movie_id.in_(ids))
                .order_by(MovieGenre.id)
            )
            for movie_id, genre in genre_rows:
                genres[movie_id].append(genre)
            cast_rows = await session.execute(
                select(MovieCast.movie_id, MovieCast.actor_name, MovieCast.role)
                .where(MovieCast.movie_id.in_(ids))
                .order_by(MovieCast.id)
            )
            for movie_id, name, role in cast_rows:
                cast[movie_id].append({"name": name, "role": role})

        return [
            MovieRecord(
                id=row.id,
                title=row.title,
                year=row.year,
                runtime=row.runtime,
                rating=row.rating,
                director=row.director,
                plot=row.plot,
                poster_url=row.poster_url,
                genres=genres[row.id],
                cast=cast[row.id],
            )
            for row in rows
        ]

    async def count_movies(self) -> int:
        async with self._session() as session:
            return (await session.execute(select(func.count(Movie.id)))).scalar_one()

    async def find_movies(
        self,
        genre: Optional[str] = None,
        year: Optional[int] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[int, List[MovieRecord]]:
        count_stmt = self._movie_filter(select(func.count(Movie.id)), genre, year, search)
        page_stmt = (
            self._movie_filter(select(Movie), genre, year, search)
            .order_by(Movie.year.desc(), Movie.title.asc(), Movie.id.asc())
            .limit(limit)
            .offset(offset)
        )
        async with self._session() as session:
            total = (await session.execute(count_stmt)).scalar_one()
            rows = (await session.execute(page_stmt)).scalars().all()
            return total, await self._with_credits(session, rows)

    async def get_movie(self, movie_id: int) -> Optional[MovieRecord]:
        async with self._session() as session:
            row = await session.get(Movie, movie_id)
            if row is None:
                return None
            return (await self._with_credits(session, [row]))[0]

    async def catalog_stats(self) -> CatalogStats:
        async with self._session() as session:
            movies_total = (await session.execute(select(func.count(Movie.id)))).scalar_one()
            genres_total = (await session.execute(select(func.count(MovieGenre.id)))).scalar_one()
            cast_total = (await session.execute(select(func.count(MovieCast.id)))).scalar_one()
            year_min, year_max = (await session.execute(select(func.min(Movie.year), func.max(Movie.year)))).one()
        return CatalogStats(
            movies_total=movies_total,
            genres_total=genres_total,
            cast_total=cast_total,
            year_min=year_min,
            year_max=year_max,
        )

    async def list_genres(self) -> List[str]:
        stmt = select(MovieGenre.genre).distinct().order_by(MovieGenre.genre)
        async with self._session() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def list_years(self) -> List[int]:
        stmt = select(Movie.year).where(Movie.year.is_not(None)).distinct().order_by(Movie.year.desc())
        async with self._session() as session:
            return list((await session.execute(stmt)).scalars().all())
