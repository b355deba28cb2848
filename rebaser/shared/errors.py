"""
REBASER — Shared Error Definitions

Common exceptions used across all REBASER components. Every exception is
tagged with an ErrorKind and carries the pool/phase context it was raised in,
so log entries can be structured instead of string-formatted.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Tag identifying which failure family an error belongs to."""
    INTERVAL_NOT_ELAPSED = "interval_not_elapsed"
    TRANSPORT_FAILURE = "transport_failure"
    ACCOUNT_NOT_FOUND = "account_not_found"
    MALFORMED_PERSISTED_RECORD = "malformed_persisted_record"
    RESOURCE_REJECTED = "resource_rejected"
    TRANSACTION_REJECTED = "transaction_rejected"
    PARTIAL_BATCH_FAILURE = "partial_batch_failure"
    CONFIGURATION = "configuration"


class RebaserError(Exception):
    """Base exception for all REBASER errors."""

    kind: ErrorKind = ErrorKind.TRANSPORT_FAILURE

    def __init__(
        self,
        message: str,
        *,
        pool: str | None = None,
        phase: str | None = None,
        **context: Any,
    ):
        self.message = message
        self.pool = pool
        self.phase = phase
        self.context = context
        super().__init__(message)

    def with_context(self, *, pool: str | None = None, phase: str | None = None) -> "RebaserError":
        """Fill in pool/phase if the raiser did not know them."""
        if self.pool is None:
            self.pool = pool
        if self.phase is None:
            self.phase = phase
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "pool": self.pool,
            "phase": self.phase,
            **{k: str(v) for k, v in self.context.items()},
        }


# =============================================================================
# Control Flow
# =============================================================================
class IntervalNotElapsed(RebaserError):
    """Raised when the checkpoint interval has not elapsed yet. Not a failure."""

    kind = ErrorKind.INTERVAL_NOT_ELAPSED

    def __init__(self, remaining_seconds: int, **kwargs: Any):
        self.remaining_seconds = remaining_seconds
        super().__init__(
            f"Checkpoint interval not elapsed, {remaining_seconds}s remaining",
            remaining_seconds=remaining_seconds,
            **kwargs,
        )


# =============================================================================
# Configuration Errors
# =============================================================================
class ConfigurationError(RebaserError):
    """Raised when required configuration is missing or invalid."""

    kind = ErrorKind.CONFIGURATION


class MissingEnvironmentVariableError(ConfigurationError):
    """Raised when a required environment variable is not set."""

    def __init__(self, var_name: str):
        self.var_name = var_name
        super().__init__(f"Missing required environment variable: {var_name}", var_name=var_name)


# =============================================================================
# Ledger Errors
# =============================================================================
class TransportFailure(RebaserError):
    """Raised when an RPC call fails at the network or protocol level."""

    kind = ErrorKind.TRANSPORT_FAILURE


class AccountNotFoundError(RebaserError):
    """Raised when an account does not exist on the ledger."""

    kind = ErrorKind.ACCOUNT_NOT_FOUND

    def __init__(self, address: Any, **kwargs: Any):
        self.address = address
        super().__init__(f"Account not found: {address}", address=address, **kwargs)


class TransactionRejectedError(RebaserError):
    """Raised when the ledger rejects a submitted transaction."""

    kind = ErrorKind.TRANSACTION_REJECTED


class ResourceRejected(RebaserError):
    """
    Raised when a submission is oversized or exhausts its compute budget.

    Signals a tuning-constant problem rather than a transient failure.
    """

    kind = ErrorKind.RESOURCE_REJECTED


class InvalidBundleError(ResourceRejected):
    """Raised when a bundle is empty or holds too many transactions."""


class BundleUnconfirmedError(TransportFailure):
    """Raised when a submitted bundle is not confirmed before the deadline."""

    def __init__(self, bundle_id: str, **kwargs: Any):
        self.bundle_id = bundle_id
        super().__init__(f"Bundle {bundle_id} was not confirmed", bundle_id=bundle_id, **kwargs)


# =============================================================================
# Registry Errors
# =============================================================================
class MalformedPersistedRecord(RebaserError):
    """A registry record with the wrong byte length. Logged, never fatal."""

    kind = ErrorKind.MALFORMED_PERSISTED_RECORD

    def __init__(self, path: Any, offset: int, length: int, **kwargs: Any):
        self.path = path
        self.offset = offset
        self.length = length
        super().__init__(
            f"Malformed registry record in {path} at byte {offset} (length {length})",
            path=path,
            offset=offset,
            length=length,
            **kwargs,
        )


# =============================================================================
# Batch Errors
# =============================================================================
class PartialBatchFailure(RebaserError):
    """
    Raised when some units of a multi-unit operation failed.

    Carries per-unit counts so partial progress is never hidden.
    """

    kind = ErrorKind.PARTIAL_BATCH_FAILURE

    def __init__(
        self,
        operation: str,
        succeeded: int,
        failed: int,
        total: int,
        cause: BaseException | None = None,
        **kwargs: Any,
    ):
        self.operation = operation
        self.succeeded = succeeded
        self.failed = failed
        self.total = total
        self.cause = cause
        super().__init__(
            f"{operation}: {succeeded}/{total} units succeeded, {failed} failed",
            operation=operation,
            succeeded=succeeded,
            failed=failed,
            total=total,
            **kwargs,
        )
