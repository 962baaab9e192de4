# tmdb_client.py
import time
from collections.abc import Callable
from functools import wraps
from typing import Any, TypeVar

import requests
from loguru import logger

from vidopt.config import settings
from vidopt.core.errors import MetadataError
from vidopt.models.job import MetadataCandidate

F = TypeVar("F", bound=Callable[..., Any])

TMDB_SEARCH_MOVIE_URL = "https://api.themoviedb.org/3/search/movie"
BASE_IMAGE_URL = "https://image.tmdb.org/t/p/w500"
MAX_RESULTS = 10


def retry_network_operation(max_retries: int = 3, base_delay: float = 1.0) -> Callable[[F], F]:
    """Decorator for retrying network operations."""

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            last_exception = None
            delay = base_delay

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except (requests.ConnectionError, requests.Timeout, ConnectionError, TimeoutError) as e:
                    last_exception = e
                    if attempt == max_retries:
                        logger.error(
                            f"Max retries ({max_retries}) exceeded for {func.__name__}: {e}"
                        )
                        raise e

                    logger.warning(
                        f"Network retry {attempt + 1}/{max_retries + 1} for {func.__name__}: {e}"
                    )
                    time.sleep(delay)
                    delay = min(delay * 2, 30)  # Cap at 30 seconds

            raise last_exception

        return wrapper  # type: ignore

    return decorator


def _build_auth(api_key: str) -> tuple[dict, dict]:
    """Build headers and base params for TMDB auth.

    Returns:
        (headers, params) tuple
    """
    headers = {}
    params = {}
    if len(api_key) > 40:  # v4 JWT token
        headers["Authorization"] = f"Bearer {api_key}"
    else:
        params["api_key"] = api_key
    return headers, params


def _release_year(result: dict) -> str | None:
    release_date = result.get("release_date") or ""
    year = release_date.split("-")[0]
    return year or None


def _to_candidate(result: dict) -> MetadataCandidate:
    poster_path = result.get("poster_path")
    return MetadataCandidate(
        external_id=result["id"],
        title=result.get("title") or result.get("original_title") or "",
        year=_release_year(result),
        overview=result.get("overview") or None,
        poster_ref=f"{BASE_IMAGE_URL}{poster_path}" if poster_path else None,
        popularity=result.get("popularity"),
    )


class TmdbClient:
    """Movie search against TMDB, in provider order (relevance)."""

    def __init__(self, timeout: float | None = None, session: requests.Session | None = None):
        self.timeout = timeout or settings.tmdb_timeout
        self._session = session or requests.Session()

    @retry_network_operation(max_retries=2, base_delay=1.0)
    def _get(self, url: str, headers: dict, params: dict) -> requests.Response:
        return self._session.get(url, headers=headers, params=params, timeout=self.timeout)

    def search(
        self,
        query: str,
        api_key: str,
        year: str | None = None,
        language: str = "en-US",
    ) -> list[MetadataCandidate]:
        """Search movies by title.

        Args:
            query: Title to search for
            api_key: TMDB v3 key or v4 read token
            year: Optional release year filter
            language: Result language

        Returns:
            Up to MAX_RESULTS candidates in TMDB's order

        Raises:
            MetadataError: missing key, HTTP error, network failure or bad payload
        """
        api_key = (api_key or "").strip()
        if not api_key:
            raise MetadataError("TMDB API key not configured")
        if not query or not query.strip():
            return []

        headers, params = _build_auth(api_key)
        params.update({"query": query.strip(), "language": language})
        if year:
            params["year"] = year

        logger.debug(
            f"Searching TMDB for '{query}' ({year or 'any year'}) using API key ending in "
            f"...{api_key[-4:] if len(api_key) > 4 else '****'}"
        )

        try:
            response = self._get(TMDB_SEARCH_MOVIE_URL, headers, params)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as e:
            raise MetadataError(f"TMDB search failed for '{query}': {e}") from e
        except ValueError as e:
            raise MetadataError(f"TMDB returned invalid JSON for '{query}'") from e

        results = payload.get("results", []) if isinstance(payload, dict) else []
        candidates = []
        for result in results[:MAX_RESULTS]:
            if "id" not in result:
                continue
            candidates.append(_to_candidate(result))

        logger.info(f"TMDB search for '{query}': {len(candidates)} result(s)")
        return candidates
