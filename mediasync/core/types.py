"""Typed payloads returned by the external media and metadata clients."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


def _coerce_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return False


@dataclass(slots=True, frozen=True)
class PlexConnection:
    uri: str | None
    protocol: str | None
    address: str | None
    port: int | None
    local: bool = False
    relay: bool = False

    @property
    def url(self) -> str | None:
        """Return the base URL for this connection."""

        if self.uri:
            return self.uri.rstrip("/")
        if self.address and self.port:
            protocol = self.protocol or "https"
            return f"{protocol}://{self.address}:{self.port}"
        return None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PlexConnection":
        return cls(
            uri=payload.get("uri") or None,
            protocol=payload.get("protocol") or None,
            address=payload.get("address") or None,
            port=_coerce_int(payload.get("port")),
            local=_coerce_bool(payload.get("local")),
            relay=_coerce_bool(payload.get("relay")),
        )


@dataclass(slots=True, frozen=True)
class PlexServer:
    name: str
    machine_id: str
    platform: str | None = None
    version: str | None = None
    access_token: str | None = None
    owned: bool = False
    connections: tuple[PlexConnection, ...] = ()

    def best_connection(self) -> PlexConnection | None:
        """Prefer remote direct connections, then local ones, then anything."""

        for connection in self.connections:
            if not connection.local and not connection.relay and connection.url:
                return connection
        for connection in self.connections:
            if connection.local and connection.url:
                return connection
        for connection in self.connections:
            if connection.url:
                return connection
        return None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PlexServer":
        raw_connections = payload.get("connections") or []
        connections = tuple(
            PlexConnection.from_payload(entry)
            for entry in raw_connections
            if isinstance(entry, Mapping)
        )
        return cls(
            name=str(payload.get("name") or ""),
            machine_id=str(payload.get("clientIdentifier") or payload.get("machineIdentifier") or ""),
            platform=payload.get("platform") or None,
            version=payload.get("productVersion") or payload.get("version") or None,
            access_token=payload.get("accessToken") or None,
            owned=_coerce_bool(payload.get("owned")),
            connections=connections,
        )


@dataclass(slots=True, frozen=True)
class PlexLibrary:
    key: str
    title: str
    type: str
    agent: str | None = None
    scanner: str | None = None
    language: str | None = None
    uuid: str | None = None

    @property
    def is_movie_library(self) -> bool:
        return self.type == "movie"

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PlexLibrary":
        return cls(
            key=str(payload.get("key") or ""),
            title=str(payload.get("title") or ""),
            type=str(payload.get("type") or ""),
            agent=payload.get("agent") or None,
            scanner=payload.get("scanner") or None,
            language=payload.get("language") or None,
            uuid=payload.get("uuid") or None,
        )


@dataclass(slots=True, frozen=True)
class PlexItem:
    rating_key: str
    title: str
    guid: str | None = None
    year: int | None = None
    type: str = "movie"
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PlexItem":
        metadata: dict[str, Any] = {}
        for key in ("summary", "thumb", "addedAt", "updatedAt", "viewCount"):
            if payload.get(key) is not None:
                metadata[key] = payload[key]
        guids = [
            str(entry.get("id"))
            for entry in payload.get("Guid") or []
            if isinstance(entry, Mapping) and entry.get("id")
        ]
        if guids:
            metadata["guids"] = guids
        return cls(
            rating_key=str(payload.get("ratingKey") or ""),
            title=str(payload.get("title") or ""),
            guid=payload.get("guid") or None,
            year=_coerce_int(payload.get("year")),
            type=str(payload.get("type") or "movie"),
            metadata=metadata,
        )


@dataclass(slots=True, frozen=True)
class ItemPage:
    items: tuple[PlexItem, ...]
    offset: int
    total: int | None = None


@dataclass(slots=True, frozen=True)
class TmdbMovie:
    id: int
    title: str
    release_date: str | None = None
    overview: str | None = None
    poster_path: str | None = None
    runtime: int | None = None
    genres: tuple[str, ...] = ()

    @property
    def year(self) -> int | None:
        if not self.release_date or len(self.release_date) < 4:
            return None
        return _coerce_int(self.release_date[:4])

    def poster_url(self, image_base_url: str) -> str | None:
        if not self.poster_path:
            return None
        return f"{image_base_url.rstrip('/')}{self.poster_path}"

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "TmdbMovie":
        genres = tuple(
            str(entry.get("name"))
            for entry in payload.get("genres") or []
            if isinstance(entry, Mapping) and entry.get("name")
        )
        return cls(
            id=int(payload["id"]),
            title=str(payload.get("title") or payload.get("original_title") or ""),
            release_date=payload.get("release_date") or None,
            overview=payload.get("overview") or None,
            poster_path=payload.get("poster_path") or None,
            runtime=_coerce_int(payload.get("runtime")),
            genres=genres,
        )


__all__ = [
    "ItemPage",
    "PlexConnection",
    "PlexItem",
    "PlexLibrary",
    "PlexServer",
    "TmdbMovie",
]
