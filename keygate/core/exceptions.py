"""
KeyGate Exceptions

Business outcomes (not found, already used, expired, not owned) are returned
as typed results. Only faults and invalid input are raised.
"""


class KeyGateError(Exception):
    """Base exception for key service failures."""
    pass


class KeyValidationError(KeyGateError):
    """Request input is missing or malformed. Nothing was changed."""
    pass


class DuplicateIdentifierError(KeyGateError):
    """Generated identifier collides with one issued before."""
    pass


class StorageError(KeyGateError):
    """Durable store unavailable. The outcome is unknown; callers may retry."""
    pass


class StorageTimeoutError(StorageError):
    """Store operation exceeded its deadline."""
    pass
