"""Errors raised outside the provider adapters."""


class CalsyncError(Exception):
    """Base exception for the sync engine."""
    pass


class ValidationError(CalsyncError):
    """Rejected input: unknown provider, duplicate connection, out-of-range settings."""
    pass


class ConnectionNotFoundError(CalsyncError):
    """No connection with the given ID belongs to the given user."""

    def __init__(self, connection_id: str):
        super().__init__(f"Calendar connection {connection_id} not found")
        self.connection_id = connection_id


class CredentialExpiredError(CalsyncError):
    """The connection's access token expired; the refresh pass owns recovery."""

    def __init__(self, connection_id: str, expired_at=None):
        message = f"Credentials for connection {connection_id} expired"
        if expired_at is not None:
            message += f" at {expired_at.isoformat()}"
        super().__init__(message)
        self.connection_id = connection_id
        self.expired_at = expired_at
