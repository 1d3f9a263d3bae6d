"""mediasync core domain exports."""

from .errors import JobCancelledError, MissingCredentialsError
from .types import ItemPage, PlexConnection, PlexItem, PlexLibrary, PlexServer, TmdbMovie

__all__ = [
    "ItemPage",
    "JobCancelledError",
    "MissingCredentialsError",
    "PlexConnection",
    "PlexItem",
    "PlexLibrary",
    "PlexServer",
    "TmdbMovie",
]
