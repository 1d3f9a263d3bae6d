"""Async HTTP client for the TMDB metadata API.

The client issues exactly one HTTP request per call. Retries and pacing are
owned by the shared rate limiter, which classifies failures by the messages
raised here, so transient errors carry one of the recognised signatures
("rate limit", "timeout", "temporary failure", "connection reset").
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

import httpx

from mediasync.core.types import TmdbMovie
from mediasync.logging import get_logger

logger = get_logger(__name__)

EXTERNAL_SOURCES = frozenset({"imdb_id", "tvdb_id"})


class TmdbClientError(RuntimeError):
    """Base exception raised for TMDB client failures."""

    def __init__(
        self, message: str, *, retryable: bool = False, status_code: int | None = None
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class TmdbTimeoutError(TmdbClientError):
    def __init__(self, message: str = "TMDB request timeout") -> None:
        super().__init__(message, retryable=True)


class TmdbRateLimitedError(TmdbClientError):
    """Raised when TMDB answered with HTTP 429."""

    def __init__(self, *, retry_after_ms: int | None = None) -> None:
        super().__init__("TMDB rate limit exceeded", retryable=True, status_code=429)
        self.retry_after_ms = retry_after_ms


class TmdbInvalidResponseError(TmdbClientError):
    """Raised when the upstream payload cannot be decoded."""


@dataclass(slots=True)
class TmdbClient:
    """HTTPX based client for the handful of TMDB endpoints the engine needs."""

    api_key: str | None
    base_url: str = "https://api.themoviedb.org/3"
    image_base_url: str = "https://image.tmdb.org/t/p/w500"
    transport: httpx.AsyncBaseTransport | None = None
    timeout_ms: int = 10_000

    async def search_movies(self, query: str, *, year: int | None = None) -> list[TmdbMovie]:
        params: dict[str, Any] = {"query": query}
        if year:
            params["year"] = int(year)
        payload = await self._get_json("/search/movie", params=params)
        return _parse_results(payload.get("results"))

    async def get_movie(self, tmdb_id: int) -> TmdbMovie | None:
        """Return the movie details or ``None`` when TMDB does not know the id."""

        try:
            payload = await self._get_json(f"/movie/{int(tmdb_id)}")
        except TmdbClientError as exc:
            if exc.status_code == httpx.codes.NOT_FOUND:
                return None
            raise
        return TmdbMovie.from_payload(payload)

    async def find_by_external_id(self, external_id: str, source: str) -> list[TmdbMovie]:
        if source not in EXTERNAL_SOURCES:
            raise ValueError(f"Unsupported external source: {source}")
        payload = await self._get_json(
            f"/find/{external_id}", params={"external_source": source}
        )
        return _parse_results(payload.get("movie_results"))

    async def _get_json(
        self, path: str, *, params: Mapping[str, Any] | None = None
    ) -> Mapping[str, Any]:
        response = await self._request(path, params=params)
        try:
            payload = response.json()
        except ValueError as exc:
            raise TmdbInvalidResponseError("TMDB returned invalid JSON") from exc
        if not isinstance(payload, Mapping):
            raise TmdbInvalidResponseError("TMDB returned unexpected payload")
        return payload

    async def _request(
        self, path: str, *, params: Mapping[str, Any] | None = None
    ) -> httpx.Response:
        if not self.api_key:
            raise TmdbClientError("TMDB API key is not configured")

        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self._build_timeout(self.timeout_ms),
                headers=headers,
                transport=self.transport,
            ) as client:
                response = await client.get(path, params=dict(params or {}))
        except httpx.TimeoutException as exc:
            raise TmdbTimeoutError() from exc
        except httpx.HTTPError as exc:
            raise TmdbClientError(
                f"TMDB temporary failure: {exc}", retryable=True
            ) from exc

        if response.status_code == httpx.codes.OK:
            return response
        if response.status_code == httpx.codes.TOO_MANY_REQUESTS:
            raise TmdbRateLimitedError(
                retry_after_ms=_parse_retry_after_ms(response.headers)
            )
        body_preview = response.text[:200]
        if 500 <= response.status_code < 600:
            raise TmdbClientError(
                f"TMDB temporary failure (status {response.status_code}): {body_preview}",
                retryable=True,
                status_code=response.status_code,
            )
        raise TmdbClientError(
            f"TMDB rejected the request (status {response.status_code}): {body_preview}",
            status_code=response.status_code,
        )

    @staticmethod
    def _build_timeout(timeout_ms: int) -> httpx.Timeout:
        timeout_seconds = max(timeout_ms, 100) / 1000
        return httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 5.0))


def _parse_results(results: Any) -> list[TmdbMovie]:
    movies: list[TmdbMovie] = []
    for entry in results or []:
        if not isinstance(entry, Mapping) or entry.get("id") is None:
            continue
        try:
            movies.append(TmdbMovie.from_payload(entry))
        except (TypeError, ValueError):
            logger.debug("Skipping malformed TMDB result: %r", entry)
    return movies


def _parse_retry_after_ms(headers: Mapping[str, Any]) -> int | None:
    value = headers.get("Retry-After")
    if value is None:
        return None
    try:
        numeric = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return max(0, numeric * 1000)


__all__ = [
    "TmdbClient",
    "TmdbClientError",
    "TmdbInvalidResponseError",
    "TmdbRateLimitedError",
    "TmdbTimeoutError",
]
