"""
Exception hierarchy for feeledger.

Typed exceptions let the poll loop tell transient upstream trouble (retry and
report to the circuit breaker) apart from configuration mistakes (fatal at
construction time) and storage failures.

Ambiguous evidence and chain-integrity findings are deliberately absent: the
former is resolved by the distribution fallback and the latter is returned as
a ChainValidationResult.
"""

from __future__ import annotations
from typing import Optional, Any, Dict


class FeeLedgerError(Exception):
    """Base exception for all feeledger errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
        recoverable: Whether the operation can be retried
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable


# ==================== Upstream Errors ====================


class TransientUpstreamError(FeeLedgerError):
    """Raised when an external read fails for a reason that may go away.

    Network failures and timeouts land here. They are retried with backoff and
    then counted by the circuit breaker; they never stop the process.
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ) -> None:
        super().__init__(message, details, recoverable)


class UpstreamTimeoutError(TransientUpstreamError):
    """Raised when an external read does not finish before its deadline."""
    pass


class CircuitOpenError(TransientUpstreamError):
    """Raised when a call is rejected because the circuit breaker is open.

    Attributes:
        retry_after: Seconds until the breaker allows the next trial call
    """

    def __init__(self, message: str, retry_after: int = 0, name: str = "") -> None:
        super().__init__(message, {"retry_after": retry_after, "breaker": name})
        self.retry_after = retry_after
        self.name = name


# ==================== Configuration Errors ====================


class ConfigurationError(FeeLedgerError):
    """Raised when required configuration is missing or invalid."""
    pass


# ==================== Storage Errors ====================


class LedgerWriteError(FeeLedgerError):
    """Raised when an entry cannot be durably appended to the history log."""
    pass


class StateFileError(FeeLedgerError):
    """Raised when the tracker state file cannot be read or written."""
    pass
