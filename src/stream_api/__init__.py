"""Client for the remote record collection API."""

from .client import StreamApiClient, StreamApiError

__all__ = [
    "StreamApiClient",
    "StreamApiError",
]
