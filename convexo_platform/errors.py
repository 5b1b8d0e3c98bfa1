"""
Error Taxonomy
==============

Every failure the core can report is an exception in this module. Each class
carries a stable :class:`FailureReason` so presentation code can pick guidance
without parsing free text, plus a human-readable message.

Hierarchy
---------
ConvexoError
    ValidationError          bad input or failed precondition; never reaches the network
        InvalidAmountError
        InvalidAddressError
        InsufficientBalanceError
        InsufficientSharesError
        LoanNotActiveError
        LoanNotFoundError
        OverpaymentError
    GatewayError             anything raised at the ledger boundary
        ReadError            safe to retry; no side effect occurred
        DecodeError          remote value did not match the expected shape
        WrongNetworkError
        NoSigningIdentityError
        UserRejectedError    terminal; never retried
        SubmissionError      failed before a handle existed, or reverted on-chain
            TransactionRevertedError
        ConfirmationTimeoutError
                             transaction fate unknown; re-query before retrying
    WorkflowCancelledError
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class FailureReason(str, Enum):
    """Stable, typed reason attached to every terminal failure."""
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_ADDRESS = "INVALID_ADDRESS"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INSUFFICIENT_SHARES = "INSUFFICIENT_SHARES"
    LOAN_NOT_ACTIVE = "LOAN_NOT_ACTIVE"
    LOAN_NOT_FOUND = "LOAN_NOT_FOUND"
    OVERPAYMENT = "OVERPAYMENT"
    READ_ERROR = "READ_ERROR"
    DECODE_ERROR = "DECODE_ERROR"
    WRONG_NETWORK = "WRONG_NETWORK"
    NO_SIGNING_IDENTITY = "NO_SIGNING_IDENTITY"
    USER_REJECTED = "USER_REJECTED"
    SUBMISSION_ERROR = "SUBMISSION_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"


class ConvexoError(Exception):
    """Base class for every error raised by the core."""

    reason: FailureReason = FailureReason.SUBMISSION_ERROR

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.reason.value)
        self.message = message or self.reason.value


# =============================================================================
# Validation
# =============================================================================


class ValidationError(ConvexoError):
    """Raised before any network access when input or preconditions are bad."""
    reason = FailureReason.INVALID_AMOUNT


class InvalidAmountError(ValidationError):
    reason = FailureReason.INVALID_AMOUNT


class InvalidAddressError(ValidationError):
    reason = FailureReason.INVALID_ADDRESS


class InsufficientBalanceError(ValidationError):
    reason = FailureReason.INSUFFICIENT_BALANCE


class InsufficientSharesError(ValidationError):
    reason = FailureReason.INSUFFICIENT_SHARES


class LoanNotActiveError(ValidationError):
    reason = FailureReason.LOAN_NOT_ACTIVE


class LoanNotFoundError(ValidationError):
    reason = FailureReason.LOAN_NOT_FOUND


class OverpaymentError(ValidationError):
    reason = FailureReason.OVERPAYMENT


# =============================================================================
# Gateway
# =============================================================================


class GatewayError(ConvexoError):
    """Raised at the ledger boundary."""


class ReadError(GatewayError):
    """
    A read-only contract call failed.

    ``reverted`` is True when the node executed the call and the contract
    reverted it (e.g. ``getLoan`` on an id that was never minted), as opposed
    to a transport or node failure.
    """
    reason = FailureReason.READ_ERROR

    def __init__(self, message: str = "", cause: Optional[BaseException] = None, reverted: bool = False) -> None:
        super().__init__(message)
        self.cause = cause
        self.reverted = reverted


class DecodeError(GatewayError):
    reason = FailureReason.DECODE_ERROR


class WrongNetworkError(GatewayError):
    reason = FailureReason.WRONG_NETWORK

    def __init__(self, expected_chain_id: int, actual_chain_id: Optional[int] = None, message: str = "") -> None:
        super().__init__(
            message
            or f"Signing identity is on chain {actual_chain_id}, expected chain {expected_chain_id}"
        )
        self.expected_chain_id = expected_chain_id
        self.actual_chain_id = actual_chain_id


class NoSigningIdentityError(GatewayError):
    reason = FailureReason.NO_SIGNING_IDENTITY


class UserRejectedError(GatewayError):
    reason = FailureReason.USER_REJECTED


class SubmissionError(GatewayError):
    reason = FailureReason.SUBMISSION_ERROR

    def __init__(self, message: str = "", cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class TransactionRevertedError(SubmissionError):
    """The transaction was mined but the contract reverted it."""

    def __init__(self, tx_handle: Any, receipt: Any = None, message: str = "") -> None:
        super().__init__(message or f"Transaction {getattr(tx_handle, 'tx_hash', tx_handle)} reverted")
        self.tx_handle = tx_handle
        self.receipt = receipt


class ConfirmationTimeoutError(GatewayError):
    """The bounded confirmation wait elapsed; the transaction's fate is unknown."""
    reason = FailureReason.TIMED_OUT

    def __init__(self, tx_handle: Any, timeout_seconds: float, message: str = "") -> None:
        super().__init__(
            message
            or f"Transaction {getattr(tx_handle, 'tx_hash', tx_handle)} not confirmed within {timeout_seconds}s"
        )
        self.tx_handle = tx_handle
        self.timeout_seconds = timeout_seconds


# =============================================================================
# Workflow
# =============================================================================


class WorkflowCancelledError(ConvexoError):
    reason = FailureReason.CANCELLED
