"""
Read-only movie catalog behind the quota-gated public routes.

Listing is paginated (20 per page by default, at most 50). Search returns a
single page of up to 50 matches and needs at least one of query, year or
genre.
"""
import math
from typing import Any, Dict, Optional

from movie_api_server.store import DurableStore

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 50
SEARCH_LIMIT = 50


class CatalogError(Exception):
    status_code = 400


class MovieNotFound(CatalogError):
    status_code = 404


class MovieCatalog:
    """Movie listing, lookup, search and catalog summaries."""

    def __init__(self, store: DurableStore):
        self.store = store

    async def list_movies(
        self,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        genre: Optional[str] = None,
        year: Optional[int] = None,
        search: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        One page of movies plus pagination info.

        Args:
            page: 1-based page number
            limit: Page size, capped at MAX_PAGE_SIZE
            genre: Exact genre name
            year: Release year
            search: Substring of title, director or plot
        """
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        total, movies = await self.store.find_movies(
            genre=genre or None,
            year=year,
            search=search or None,
            limit=limit,
            offset=(page - 1) * limit,
        )
        return {
            "movies": [movie.to_dict() for movie in movies],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit),
                "has_next": page * limit < total,
                "has_prev": page > 1,
            },
        }

    async def get_movie(self, movie_id: int) -> Dict[str, Any]:
        movie = await self.store.get_movie(movie_id)
        if movie is None:
            raise MovieNotFound("Movie not found")
        return movie.to_dict()

    async def search(
        self,
        query: Optional[str] = None,
        year: Optional[int] = None,
        genre: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not query and year is None and not genre:
            raise CatalogError("At least one search parameter required")
        return await self.list_movies(page=1, limit=SEARCH_LIMIT, genre=genre, year=year, search=query)

    async def stats(self) -> Dict[str, Any]:
        stats = await self.store.catalog_stats()
        return {
            "movies_total": stats.movies_total,
            "genres_total": stats.genres_total,
            "cast_total": stats.cast_total,
            "year_range": {"min": stats.year_min, "max": stats.year_max},
        }

    async def genres(self) -> Dict[str, Any]:
        return {"genres": await self.store.list_genres()}

    async def years(self) -> Dict[str, Any]:
        return {"years": await self.store.list_years()}
