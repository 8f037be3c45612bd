"""
Error types shared by the Kaspi and amoCRM sync components
"""
from typing import Optional


class SyncError(Exception):
    """Base error for the sync service"""
    pass


class TransientExternalError(SyncError):
    """Network, timeout or HTTP failure from an external API; retried on the next tick"""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AuthenticationError(TransientExternalError):
    """OAuth token missing or refresh failed"""
    pass


class AmoApiError(TransientExternalError):
    """amoCRM answered with an error status or a malformed body"""
    pass


class ReservationError(TransientExternalError):
    """Database failure while claiming or releasing an order"""
    pass


class ValidationFailure(SyncError):
    """Malformed upstream record; skipped and never retried"""
    pass


class ConfigurationError(SyncError):
    """Required configuration is missing or invalid"""
    pass
