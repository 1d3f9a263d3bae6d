"""Async Plex client covering account discovery and paged library reads."""

from __future__ import annotations

import asyncio
import random
from http import HTTPStatus
from typing import Any, Dict, List

import aiohttp

from mediasync.config import PlexConfig
from mediasync.core.types import ItemPage, PlexItem, PlexLibrary, PlexServer
from mediasync.logging import get_logger

logger = get_logger(__name__)


class PlexClientError(RuntimeError):
    """Base class for Plex client failures."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status


class PlexClientAuthError(PlexClientError):
    """Raised when Plex reports an authentication error."""


class PlexClientNotFoundError(PlexClientError):
    """Raised when a requested resource does not exist on the Plex server."""


class PlexClientRateLimitedError(PlexClientError):
    """Raised when Plex responds with a rate limit status code."""


class PlexClient:
    """Minimal asynchronous Plex API wrapper.

    Every call takes the owner's account token explicitly; a single client
    instance is shared between all sync jobs.
    """

    _RETRY_ATTEMPTS = 3
    _RETRY_BASE_DELAY = 0.35

    def __init__(self, config: PlexConfig) -> None:
        self._resources_url = config.resources_url
        self._client_identifier = config.client_identifier
        self._product = config.product
        self._version = config.version
        self._timeout = aiohttp.ClientTimeout(total=config.timeout_s)
        self._session: aiohttp.ClientSession | None = None
        self._session_lock = asyncio.Lock()

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        async with self._session_lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=self._timeout)
        assert self._session is not None
        return self._session

    def _build_headers(self, token: str) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "X-Plex-Product": self._product,
            "X-Plex-Version": self._version,
            "X-Plex-Client-Identifier": self._client_identifier,
            "X-Plex-Token": token,
        }

    async def _request(
        self,
        method: str,
        url: str,
        *,
        token: str,
        params: Dict[str, Any] | None = None,
    ) -> Any:
        attempt = 1
        while attempt <= self._RETRY_ATTEMPTS:
            session = await self._ensure_session()
            try:
                async with session.request(
                    method,
                    url,
                    headers=self._build_headers(token),
                    params=params,
                ) as response:
                    if response.status >= 400:
                        text = await response.text()
                        self._raise_for_status(method, url, response.status, text)
                    return await response.json(content_type=None)
            except PlexClientError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                if attempt >= self._RETRY_ATTEMPTS:
                    raise PlexClientError(
                        f"Plex request {method} {url} failed after retries: {exc}",
                    ) from exc
                delay = self._retry_delay(attempt)
                logger.debug(
                    "Retrying Plex request %s %s in %.2fs due to %s",
                    method,
                    url,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
                attempt += 1
        raise PlexClientError(f"Plex request {method} {url} exhausted retries")

    def _retry_delay(self, attempt: int) -> float:
        jitter = random.uniform(0.85, 1.15)
        return self._RETRY_BASE_DELAY * attempt * jitter

    def _raise_for_status(self, method: str, url: str, status: int, body: str) -> None:
        message = f"Plex {method} {url} failed with status {status}: {body.strip()[:256]}"
        if status in {HTTPStatus.UNAUTHORIZED, HTTPStatus.FORBIDDEN}:
            raise PlexClientAuthError(message, status=status)
        if status == HTTPStatus.NOT_FOUND:
            raise PlexClientNotFoundError(message, status=status)
        if status == HTTPStatus.TOO_MANY_REQUESTS:
            raise PlexClientRateLimitedError(message, status=status)
        raise PlexClientError(message, status=status)

    async def _get(
        self, url: str, *, token: str, params: Dict[str, Any] | None = None
    ) -> Any:
        return await self._request("GET", url, token=token, params=params)

    async def get_servers(self, token: str) -> List[PlexServer]:
        """Return the media servers visible to the account behind ``token``."""

        payload = await self._get(
            self._resources_url,
            token=token,
            params={"includeHttps": "1", "includeRelay": "1"},
        )
        if not isinstance(payload, list):
            raise PlexClientError("Plex resources response was not a list")
        servers: List[PlexServer] = []
        for entry in payload:
            if not isinstance(entry, dict):
                continue
            provides = str(entry.get("provides") or "")
            if "server" not in {part.strip() for part in provides.split(",")}:
                continue
            server = PlexServer.from_payload(entry)
            if server.machine_id:
                servers.append(server)
        return servers

    async def get_libraries(self, token: str, server_url: str) -> List[PlexLibrary]:
        payload = await self._get(f"{server_url.rstrip('/')}/library/sections", token=token)
        container = _media_container(payload)
        directories = container.get("Directory") or []
        return [
            PlexLibrary.from_payload(entry)
            for entry in directories
            if isinstance(entry, dict) and entry.get("key")
        ]

    async def get_library_items(
        self,
        token: str,
        server_url: str,
        section_key: str,
        *,
        start: int = 0,
        size: int = 100,
    ) -> ItemPage:
        """Fetch one page of items from a library section."""

        payload = await self._get(
            f"{server_url.rstrip('/')}/library/sections/{section_key}/all",
            token=token,
            params={
                "X-Plex-Container-Start": str(max(0, start)),
                "X-Plex-Container-Size": str(max(1, size)),
            },
        )
        container = _media_container(payload)
        items = tuple(
            PlexItem.from_payload(entry)
            for entry in container.get("Metadata") or []
            if isinstance(entry, dict) and entry.get("ratingKey")
        )
        total = container.get("totalSize")
        return ItemPage(
            items=items,
            offset=max(0, start),
            total=int(total) if isinstance(total, int) else None,
        )


def _media_container(payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise PlexClientError("Plex returned an unexpected payload")
    container = payload.get("MediaContainer")
    if not isinstance(container, dict):
        raise PlexClientError("Plex response is missing MediaContainer")
    return container


__all__ = [
    "PlexClient",
    "PlexClientAuthError",
    "PlexClientError",
    "PlexClientNotFoundError",
    "PlexClientRateLimitedError",
]
