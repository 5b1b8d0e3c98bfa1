"""
Financial Calculation Engine
============================

Pure functions deriving loan and vault figures from already-fetched ledger
values. No I/O, no logging, no exception handling: invalid input raises.

Interest Model
--------------
Loans use simple interest on principal: interest is a one-time multiplier,
not accrued over elapsed time and not compounded::

    total_owed = principal + principal * interest_rate_bps // 10000

Integer floor division mirrors the loan contract's own uint256 arithmetic, so
the figures here reconcile to the unit with what the chain records. If the
contract's formula ever changes (e.g. time-accrued interest), this module must
change to match it.

Basis-point arithmetic is integer throughout; ratios for display are
``Decimal``. Nothing here touches ``float``.

Example
-------
>>> loan = LoanRecord(loan_id=1, borrower=addr, principal=1_000_000_000,
...                   interest_rate_bps=1500, term_seconds=86400 * 90,
...                   start_time_unix=0, amount_paid=575_000_000, is_active=True)
>>> str(remaining_balance(loan))
'575'
>>> repayment_progress_percent(loan)
Decimal('50.0')
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ..errors import InvalidAmountError
from .ledger_schema import LoanRecord
from .units import BPS_DENOMINATOR, TOKEN_DECIMALS, LedgerAmount

_HUNDRED = Decimal(100)


def _check_bps(bps: int, what: str, upper: Optional[int] = None) -> int:
    if isinstance(bps, bool) or not isinstance(bps, int):
        raise InvalidAmountError(f"{what} must be an integer number of basis points, got {bps!r}")
    if bps < 0:
        raise InvalidAmountError(f"{what} cannot be negative: {bps}")
    if upper is not None and bps > upper:
        raise InvalidAmountError(f"{what} cannot exceed {upper} bps: {bps}")
    return bps


def _paid(loan: LoanRecord, amount_paid: Optional[LedgerAmount]) -> LedgerAmount:
    return loan.amount_paid_amount if amount_paid is None else amount_paid.rescale(TOKEN_DECIMALS)


# =============================================================================
# Loans
# =============================================================================


def total_owed(loan: LoanRecord) -> LedgerAmount:
    """Principal plus the one-time interest charge, in token units."""
    _check_bps(loan.interest_rate_bps, "interest rate")
    interest = loan.principal * loan.interest_rate_bps // BPS_DENOMINATOR
    return LedgerAmount(loan.principal + interest, TOKEN_DECIMALS)


def remaining_balance(loan: LoanRecord, amount_paid: Optional[LedgerAmount] = None) -> LedgerAmount:
    """
    Amount still owed on a loan, floored at zero.

    Parameters
    ----------
    loan : LoanRecord
        Freshly read loan.
    amount_paid : LedgerAmount, optional
        Override for the paid amount, e.g. the collector's ``totalRepaid``
        tally. Defaults to the loan's own ``amount_paid``.
    """
    return total_owed(loan).saturating_sub(_paid(loan, amount_paid))


def repayment_ratio(loan: LoanRecord, amount_paid: Optional[LedgerAmount] = None) -> Optional[Decimal]:
    """
    Unclamped paid / owed ratio. Values above 1 mean the loan was overpaid.

    Returns None when the loan owes nothing, since no ratio exists; use
    :func:`is_overpaid` to tell whether anything was paid against it.
    """
    owed = total_owed(loan)
    if owed.is_zero:
        return None
    return Decimal(_paid(loan, amount_paid).value) / Decimal(owed.value)


def repayment_progress_percent(loan: LoanRecord, amount_paid: Optional[LedgerAmount] = None) -> Decimal:
    """
    Repayment progress for display, clamped to [0, 100].

    A loan that owes nothing shows 100 once anything was paid, else 0.
    """
    ratio = repayment_ratio(loan, amount_paid)
    if ratio is None:
        return _HUNDRED if is_overpaid(loan, amount_paid) else Decimal(0)
    percent = ratio * _HUNDRED
    return max(Decimal(0), min(_HUNDRED, percent))


def is_overpaid(loan: LoanRecord, amount_paid: Optional[LedgerAmount] = None) -> bool:
    return _paid(loan, amount_paid) > total_owed(loan)


def loan_maturity(loan: LoanRecord) -> int:
    """Unix timestamp at which the loan term ends."""
    return loan.start_time_unix + loan.term_seconds


def seconds_until_due(loan: LoanRecord, now: int) -> int:
    """Seconds left in the term; negative once the term has passed."""
    return loan_maturity(loan) - int(now)


def is_overdue(loan: LoanRecord, now: int) -> bool:
    """An active loan whose term has ended."""
    return int(now) > loan_maturity(loan) and loan.is_active


# =============================================================================
# Fees
# =============================================================================


@dataclass(frozen=True)
class FeeBreakdown:
    """
    Split of a gross payment into the collector's fee and the net amount.

    ``fee + net == gross`` always holds exactly.
    """

    gross: LedgerAmount
    fee: LedgerAmount
    net: LedgerAmount
    fee_bps: int


def fee_breakdown(gross: LedgerAmount, fee_bps: int) -> FeeBreakdown:
    """
    Split ``gross`` into fee and net using integer basis-point math.

    The fee is floored (``gross * fee_bps // 10000``) and the net is the exact
    remainder, so no unit is ever lost or created by rounding.
    """
    _check_bps(fee_bps, "fee", upper=BPS_DENOMINATOR)
    fee = LedgerAmount(gross.value * fee_bps // BPS_DENOMINATOR, gross.decimals)
    return FeeBreakdown(gross=gross, fee=fee, net=gross - fee, fee_bps=fee_bps)


# =============================================================================
# Vault
# =============================================================================


def value_of_shares(shares: LedgerAmount, value_per_share: LedgerAmount) -> LedgerAmount:
    """
    Underlying-asset value of ``shares``.

    ``value_per_share`` is the asset amount for one whole share, so the result
    carries ``value_per_share``'s decimals. Rounds down, as ERC-4626
    ``convertToAssets`` does.
    """
    value = shares.value * value_per_share.value // 10 ** shares.decimals
    return LedgerAmount(value, value_per_share.decimals)


def normalize_yield_rate(apy_bps: int) -> Decimal:
    """Annual yield in basis points as a fraction (1250 -> 0.125)."""
    _check_bps(apy_bps, "yield rate")
    return Decimal(apy_bps) / Decimal(BPS_DENOMINATOR)


def apy_percent(apy_bps: int) -> Decimal:
    """Annual yield in basis points as a percentage (1250 -> 12.5)."""
    return normalize_yield_rate(apy_bps) * _HUNDRED


def projected_annual_yield(assets: LedgerAmount, apy_bps: int) -> LedgerAmount:
    """One year of simple yield on ``assets`` at ``apy_bps``, rounded down."""
    _check_bps(apy_bps, "yield rate")
    return LedgerAmount(assets.value * apy_bps // BPS_DENOMINATOR, assets.decimals)
