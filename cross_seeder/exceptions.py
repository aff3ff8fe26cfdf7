"""
Custom exception hierarchy for Cross-Seeder.
Provides specific exception types for better error handling and debugging.
"""


class CrossSeedError(Exception):
    """Base exception for all Cross-Seeder errors."""

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


# Configuration errors
class ConfigurationError(CrossSeedError):
    """Raised when there's a configuration problem."""

    pass


class NotConfiguredError(ConfigurationError):
    """Raised when an instance has no cross-seed configuration."""

    def __init__(self, instance_id: int, message: str | None = None):
        super().__init__(message or "Cross-seed not configured for this instance")
        self.instance_id = instance_id


class InstanceNotFoundError(ConfigurationError):
    """Raised when a client instance is missing or not owned by the caller."""

    def __init__(self, instance_id: int, message: str | None = None):
        super().__init__(message or "Instance not found or access denied")
        self.instance_id = instance_id


class IntegrationNotFoundError(ConfigurationError):
    """Raised when an indexer integration is missing or not owned by the caller."""

    def __init__(self, integration_id: int | None, message: str | None = None):
        if message is None:
            if integration_id is None:
                message = "No indexer integration configured"
            else:
                message = "Indexer integration not found or access denied"
        super().__init__(message)
        self.integration_id = integration_id


# Torrent client errors
class TorrentClientError(CrossSeedError):
    """Base exception for torrent client API errors."""

    pass


class ClientConnectionError(TorrentClientError):
    """Raised when connection to the torrent client fails."""

    pass


class ClientAuthenticationError(TorrentClientError):
    """Raised when authentication to the torrent client fails."""

    pass


class TorrentAddError(TorrentClientError):
    """Raised when adding a torrent fails."""

    pass


# Indexer errors
class IndexerError(CrossSeedError):
    """Base exception for indexer API errors."""

    pass


class IndexerSearchError(IndexerError):
    """Raised when an indexer search request fails."""

    pass


class IndexerDownloadError(IndexerError):
    """Raised when a candidate torrent cannot be downloaded."""

    pass


# Codec errors
class DecodeError(CrossSeedError):
    """Raised when bencoded data is malformed or truncated."""

    def __init__(self, message: str, offset: int):
        super().__init__(f"{message} at offset {offset}")
        self.offset = offset


# Validation errors
class ValidationError(CrossSeedError):
    """Raised when input validation fails."""

    pass


class InvalidHashError(ValidationError):
    """Raised when a torrent info-hash is invalid."""

    def __init__(self, torrent_hash: str, message: str | None = None):
        super().__init__(message or f"Invalid torrent hash: {torrent_hash}")
        self.torrent_hash = torrent_hash


class InvalidIntervalError(ValidationError):
    """Raised when a scan interval is below the one hour minimum."""

    def __init__(self, interval_hours, message: str | None = None):
        super().__init__(
            message or f"Invalid scan interval: {interval_hours} (minimum is 1 hour)"
        )
        self.interval_hours = interval_hours


# Scheduling errors
class ScanInProgressError(CrossSeedError):
    """Raised when a scan is requested while one is already running."""

    def __init__(self, instance_id: int, message: str | None = None):
        super().__init__(message or "Scan already in progress")
        self.instance_id = instance_id


# Persistence errors
class PersistenceError(CrossSeedError):
    """Base exception for persistence/database errors."""

    pass


class DatabaseConnectionError(PersistenceError):
    """Raised when database connection fails."""

    pass
