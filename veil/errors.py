"""
VEIL Error Types

Every failure the lifecycle protocol can report. Callers branch on the
exception type, never on message text.

    VeilError
    ├─ NotConnected            no active account in the session
    ├─ ValidationError         bad caller input, raised before any side effect
    ├─ EncryptionUnavailable   crypto runtime not ready for encryption
    ├─ DecryptionUnavailable   crypto runtime not ready for decryption
    ├─ LedgerError
    │   ├─ LedgerRejected      reverted, or declined by the signer
    │   ├─ AlreadyVerified     benign race, converted to success
    │   ├─ RecordNotFound      unknown record id
    │   └─ LedgerUnavailable   gateway cannot be reached
    ├─ FetchPartialFailure     one record failed to project during reload
    └─ InvariantViolation      a state machine rule was broken

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

from typing import Any, Optional


class VeilError(Exception):
    """Base exception for the VEIL lifecycle protocol."""
    pass


class NotConnected(VeilError):
    """Raised when an operation needs a connected account and there is none."""

    def __init__(self, message: str = "Please connect wallet first"):
        super().__init__(message)


class ValidationError(VeilError):
    """Caller input failed validation."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class EncryptionUnavailable(VeilError):
    """The encryption capability is not initialized for the current session."""
    pass


class DecryptionUnavailable(VeilError):
    """The decryption capability cannot serve the request."""
    pass


# =============================================================================
# LEDGER ERRORS
# =============================================================================

class LedgerError(VeilError):
    """Base class for failures reported by the ledger gateway."""
    pass


class LedgerRejected(LedgerError):
    """
    A transaction was reverted by the contract or declined by the signer.

    ``declined_by_signer`` distinguishes an explicit user rejection from an
    on-chain revert.
    """

    def __init__(
        self,
        reason: str,
        declined_by_signer: bool = False,
        tx_hash: Optional[str] = None,
    ):
        self.reason = reason
        self.declined_by_signer = declined_by_signer
        self.tx_hash = tx_hash
        super().__init__(reason)


class AlreadyVerified(LedgerError):
    """Another submission already committed the verification for this record."""

    def __init__(self, record_id: str, tx_hash: Optional[str] = None):
        self.record_id = record_id
        self.tx_hash = tx_hash
        super().__init__(f"Data already verified: {record_id}")


class RecordNotFound(LedgerError):
    """The ledger holds no record with the given id."""

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"Record does not exist: {record_id}")


class LedgerUnavailable(LedgerError):
    """The ledger could not be reached."""
    pass


# =============================================================================
# PROJECTION / STATE ERRORS
# =============================================================================

class FetchPartialFailure(VeilError):
    """
    A single record could not be fetched or projected during reload.

    Collected into the reload report; never raised out of a reload.
    """

    def __init__(self, record_id: str, cause: BaseException):
        self.record_id = record_id
        self.cause = cause
        super().__init__(f"{record_id}: {type(cause).__name__}: {cause}")


class InvariantViolation(VeilError):
    """State machine invariant violated."""
    pass
