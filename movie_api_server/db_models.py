"""
SQLAlchemy database models for persistent storage.
"""
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Endpoint value older deployments wrote into usage_logs to mark a retention
# sweep. Never counted as traffic.
CLEANUP_SENTINEL = "__cleanup__"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """Account that owns API keys."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String(320), unique=True, nullable=False)
    uid_hash = Column(String(255), nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class APIKey(Base):
    """API key management table."""
    __tablename__ = "api_keys"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    api_key = Column(String(64), unique=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    daily_limit = Column(Integer, default=100, nullable=False)
    monthly_limit = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    last_cleanup_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_api_key_active", "api_key", "is_active"),
    )


class DailyUsage(Base):
    """One request counter per key per UTC calendar day."""
    __tablename__ = "daily_usage"

    id = Column(Integer, primary_key=True)
    api_key_id = Column(Integer, ForeignKey("api_keys.id"), nullable=False)
    date = Column(Date, nullable=False)
    request_count = Column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("api_key_id", "date", name="uq_daily_usage_key_date"),
    )


class UsageLog(Base):
    """Append-only audit trail of admitted requests."""
    __tablename__ = "usage_logs"

    id = Column(Integer, primary_key=True)
    api_key_id = Column(Integer, ForeignKey("api_keys.id"), nullable=False)
    endpoint = Column(String(200), nullable=False)
    status_code = Column(Integer, nullable=False)
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("idx_usage_logs_key_time", "api_key_id", "timestamp"),
    )


class AdminSession(Base):
    """Bearer session issued by admin login."""
    __tablename__ = "admin_sessions"

    id = Column(Integer, primary_key=True)
    session_token = Column(String(64), unique=True, nullable=False)
    admin_key_fingerprint = Column(String(64), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Movie(Base):
    """Movie metadata served by the public catalog routes."""
    __tablename__ = "movies"

    id = Column(Integer, primary_key=True)
    title = Column(String(300), nullable=False, index=True)
    year = Column(Integer, nullable=True, index=True)
    runtime = Column(Integer, nullable=True)
    rating = Column(Float, nullable=True)
    director = Column(String(200), nullable=True)
    plot = Column(Text, nullable=True)
    poster_url = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class MovieGenre(Base):
    __tablename__ = "movie_genres"

    id = Column(Integer, primary_key=True)
    movie_id = Column(Integer, ForeignKey("movies.id", ondelete="CASCADE"), nullable=False, index=True)
    genre = Column(String(100), nullable=False)

    __table_args__ = (
        UniqueConstraint("movie_id", "genre", name="uq_movie_genres_movie_genre"),
        Index("idx_movie_genres_genre", "genre"),
    )


class MovieCast(Base):
    __tablename__ = "movie_cast"

    id = Column(Integer, primary_key=True)
    movie_id = Column(Integer, ForeignKey("movies.id", ondelete="CASCADE"), nullable=False, index=True)
    actor_name = Column(String(200), nullable=False)
    role = Column(String(200), nullable=True)
