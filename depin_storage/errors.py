"""
Custom exceptions for the DePIN storage client.
"""

from typing import Any, Optional


class StorageError(Exception):
    """Base exception for all storage-marketplace errors.

    Orchestrated operations attach the name of the failing step and the
    progress made so far, so callers can tell exactly which step to re-run.
    """

    def __init__(self, message: str = "", step: Optional[str] = None):
        super().__init__(message)
        self.step = step
        self.progress: Any = None

    def __str__(self) -> str:
        message = super().__str__()
        if self.step:
            return f"[{self.step}] {message}"
        return message


class ConfigurationError(StorageError):
    """Raised when a credential, endpoint or contract setting is missing."""

    pass


class KeystoreError(StorageError):
    """Raised when the local credential file cannot be read or written."""

    pass


class InsufficientBalanceError(StorageError):
    """Raised when the token balance cannot cover a purchase."""

    pass


class InsufficientCapacityError(StorageError):
    """Raised when requested storage exceeds what is available."""

    pass


class NotFoundError(StorageError):
    """Raised when a content address or provider is unknown."""

    pass


class PermissionDeniedError(StorageError):
    """Raised when the caller does not own the requested file."""

    pass


class ProviderMismatchError(StorageError):
    """Raised when the ledger has no provider recorded for a file."""

    pass


class DecryptionError(StorageError):
    """Raised when ciphertext is malformed or the key is wrong."""

    pass


class DuplicateKeyError(StorageError):
    """Raised when a content address is already registered in the index."""

    pass


class NoProvidersAvailableError(StorageError):
    """Raised when discovery finds no usable provider after all retries."""

    pass


# Network errors
class NetworkError(StorageError):
    """Base exception for unreachable or timed out external systems."""

    pass


class LedgerConnectionError(NetworkError):
    """Raised when the ledger node cannot be reached."""

    pass


class IndexConnectionError(NetworkError):
    """Raised when the metadata index cannot be reached."""

    pass


class ContentStoreConnectionError(NetworkError):
    """Raised when the content store node cannot be reached."""

    pass


# System-specific failures
class LedgerTransactionError(StorageError):
    """Raised when a contract call is rejected or its extrinsic fails."""

    def __init__(self, message: str = "", step: Optional[str] = None, reason: Optional[str] = None):
        super().__init__(message, step=step)
        self.reason = reason


class MetadataIndexError(StorageError):
    """Raised when the metadata index rejects a request."""

    pass


class ContentStoreError(StorageError):
    """Raised when the content store rejects a request."""

    pass


class StepFailedError(StorageError):
    """Raised when a step fails with an error outside the taxonomy."""

    def __init__(self, step: str, cause: BaseException):
        super().__init__(f"{type(cause).__name__}: {cause}", step=step)
        self.cause = cause
