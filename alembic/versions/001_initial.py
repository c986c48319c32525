"""Initial schema: accounts, keys, usage, admin sessions and the movie catalog

Revision ID: 001_initial
Revises:
Create Date: 2025-03-01 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create users table
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=False),
        sa.Column('uid_hash', sa.String(length=255), nullable=False),
        sa.Column('is_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email', name='uq_users_email')
    )

    # Create api_keys table
    op.create_table(
        'api_keys',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('api_key', sa.String(length=64), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('daily_limit', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('monthly_limit', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('last_cleanup_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('api_key', name='uq_api_keys_api_key')
    )
    op.create_index('ix_api_keys_user_id', 'api_keys', ['user_id'])
    op.create_index('idx_api_key_active', 'api_keys', ['api_key', 'is_active'])

    # Create daily_usage table (one counter per key per UTC day)
    op.create_table(
        'daily_usage',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('api_key_id', sa.Integer(), sa.ForeignKey('api_keys.id'), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('request_count', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('api_key_id', 'date', name='uq_daily_usage_key_date')
    )

    # Create usage_logs table
    op.create_table(
        'usage_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('api_key_id', sa.Integer(), sa.ForeignKey('api_keys.id'), nullable=False),
        sa.Column('endpoint', sa.String(length=200), nullable=False),
        sa.Column('status_code', sa.Integer(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_usage_logs_timestamp', 'usage_logs', ['timestamp'])
    op.create_index('idx_usage_logs_key_time', 'usage_logs', ['api_key_id', 'timestamp'])

    # Create admin_sessions table
    op.create_table(
        'admin_sessions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('session_token', sa.String(length=64), nullable=False),
        sa.Column('admin_key_fingerprint', sa.String(length=64), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('session_token', name='uq_admin_sessions_session_token')
    )
    op.create_index('ix_admin_sessions_expires_at', 'admin_sessions', ['expires_at'])

    # Create movie catalog tables
    op.create_table(
        'movies',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=300), nullable=False),
        sa.Column('year', sa.Integer(), nullable=True),
        sa.Column('runtime', sa.Integer(), nullable=True),
        sa.Column('rating', sa.Float(), nullable=True),
        sa.Column('director', sa.String(length=200), nullable=True),
        sa.Column('plot', sa.Text(), nullable=True),
        sa.Column('poster_url', sa.String(length=500), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_movies_title', 'movies', ['title'])
    op.create_index('ix_movies_year', 'movies', ['year'])

    op.create_table(
        'movie_genres',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('movie_id', sa.Integer(), sa.ForeignKey('movies.id', ondelete='CASCADE'), nullable=False),
        sa.Column('genre', sa.String(length=100), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('movie_id', 'genre', name='uq_movie_genres_movie_genre')
    )
    op.create_index('ix_movie_genres_movie_id', 'movie_genres', ['movie_id'])
    op.create_index('idx_movie_genres_genre', 'movie_genres', ['genre'])

    op.create_table(
        'movie_cast',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('movie_id', sa.Integer(), sa.ForeignKey('movies.id', ondelete='CASCADE'), nullable=False),
        sa.Column('actor_name', sa.String(length=200), nullable=False),
        sa.Column('role', sa.String(length=200), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_movie_cast_movie_id', 'movie_cast', ['movie_id'])


def downgrade() -> None:
    op.drop_index('ix_movie_cast_movie_id', table_name='movie_cast')
    op.drop_table('movie_cast')

    op.drop_index('idx_movie_genres_genre', table_name='movie_genres')
    op.drop_index('ix_movie_genres_movie_id', table_name='movie_genres')
    op.drop_table('movie_genres')

    op.drop_index('ix_movies_year', table_name='movies')
    op.drop_index('ix_movies_title', table_name='movies')
    op.drop_table('movies')

    op.drop_index('ix_admin_sessions_expires_at', table_name='admin_sessions')
    op.drop_table('admin_sessions')

    op.drop_index('idx_usage_logs_key_time', table_name='usage_logs')
    op.drop_index('ix_usage_logs_timestamp', table_name='usage_logs')
    op.drop_table('usage_logs')

    op.drop_table('daily_usage')

    op.drop_index('idx_api_key_active', table_name='api_keys')
    op.drop_index('ix_api_keys_user_id', table_name='api_keys')
    op.drop_table('api_keys')

    op.drop_table('users')
