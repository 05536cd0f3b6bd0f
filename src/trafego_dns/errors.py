"""Exception taxonomy shared by every trafego-dns component."""

from __future__ import annotations

from typing import Optional


class TrafegoError(Exception):
    """Base class for all trafego-dns errors."""


# =============================================================================
# Provider Errors
# =============================================================================


class ProviderError(TrafegoError):
    """A DNS provider API call failed."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Network failure, timeout, rate limiting or 5xx. Retried next cycle."""


class PermanentProviderError(ProviderError):
    """The provider rejected the request (validation, auth, malformed record)."""


# =============================================================================
# Store / Transaction Errors
# =============================================================================


class ValidationError(TrafegoError):
    """A value was rejected by a durable store schema validator."""

    def __init__(self, schema: str, message: str):
        super().__init__(f"{schema}: {message}")
        self.schema = schema


class FileLockError(TrafegoError):
    """A live advisory lock is held on the file by someone else."""

    def __init__(self, path: str, message: str = ""):
        super().__init__(message or f"File is locked: {path}")
        self.path = path


class TransactionIntegrityError(TrafegoError):
    """Rollback could not find an expected backup artifact."""

    def __init__(self, transaction_id: str, missing: list):
        super().__init__(
            f"Transaction {transaction_id} missing backup artifacts for: {', '.join(missing)}"
        )
        self.transaction_id = transaction_id
        self.missing = list(missing)


class TransactionStateError(RuntimeError):
    """commit()/rollback() called on a finished transaction. Always a caller bug."""


# =============================================================================
# Runtime Errors
# =============================================================================


class DiscoveryError(TrafegoError):
    """A discovery source could not produce a complete desired-state snapshot."""


class ModeSwitchError(TrafegoError):
    """The mode switcher could not leave the system with any running monitor."""
