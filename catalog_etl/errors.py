"""Exception hierarchy shared by the catalog sync components."""
from __future__ import annotations

from typing import Optional


class CatalogSyncError(Exception):
    """Base class for every error raised by the sync engine."""


class SessionAcquisitionError(CatalogSyncError):
    """Browsing context could not be bootstrapped (navigation failure or timeout)."""


class FetchError(CatalogSyncError):
    """Listing or detail request did not yield usable data."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class BlockedResponse(FetchError):
    """Response body did not conform to the expected JSON schema (WAF page)."""


class TransportError(FetchError):
    """Network-level failure or non-2xx status with a conforming body."""


class PersistenceError(CatalogSyncError):
    """Record store rejected or could not accept a write."""

    def __init__(self, external_id: Optional[str], message: str) -> None:
        super().__init__(f"{external_id}: {message}" if external_id else message)
        self.external_id = external_id


class EnrichmentError(CatalogSyncError):
    """Detail payload could not be turned into resources."""
