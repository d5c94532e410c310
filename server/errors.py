"""Exception taxonomy for the location core.

API handlers translate these into HTTP status codes; batch jobs log and skip
them per driver.
"""


class LocationCoreError(Exception):
    """Base class for errors raised by the location core."""


class ValidationError(LocationCoreError):
    """Malformed sample, coordinate, or configuration value."""


class NotFoundError(LocationCoreError):
    """An explicitly requested home, hotspot, stop, or driver does not exist."""


class TransientStorageError(LocationCoreError):
    """The database rejected or failed a write; retrying may succeed."""


class LiveConnectionError(LocationCoreError):
    """A live viewer connection failed to send or receive."""
