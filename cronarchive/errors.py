"""Exceptions raised by the archiver."""


class CronArchiveError(Exception):
    """Base class for archiver errors."""


class StorageError(CronArchiveError):
    """Raised when the invalidation queue or archive store is unavailable."""


class ConfigurationError(CronArchiveError):
    """Raised when the run cannot start (invalid settings, no reachable backend)."""


class SiteNotFoundError(CronArchiveError, LookupError):
    """Raised when a site id does not exist in the catalog."""


class TooManyErrorsError(CronArchiveError):
    """Raised when the consecutive error ceiling is reached."""
