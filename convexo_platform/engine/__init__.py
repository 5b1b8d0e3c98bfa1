"""
Convexo Core Engine
===================

Pure and read-only building blocks plus the workflow orchestrator:

1. **Units** (:mod:`.units`): exact decimal <-> fixed-point conversion.
2. **Ledger schema** (:mod:`.ledger_schema`): validated records decoded from
   raw contract returns.
3. **Reader** (:mod:`.reader`): fresh balance, allowance, vault and loan reads.
4. **Financials** (:mod:`.financials`): remaining balance, progress, fees and
   vault share valuation.
5. **Workflow** (:mod:`.workflow`): allowance-then-act write sequencing with a
   single typed terminal outcome.

Example
-------
>>> from convexo_platform.engine import token_amount, fee_breakdown
>>> fee_breakdown(token_amount("1000"), 250).fee
LedgerAmount(value=25000000, decimals=6)
"""

from .financials import (
    FeeBreakdown,
    apy_percent,
    fee_breakdown,
    is_overdue,
    is_overpaid,
    loan_maturity,
    normalize_yield_rate,
    projected_annual_yield,
    remaining_balance,
    repayment_progress_percent,
    repayment_ratio,
    seconds_until_due,
    total_owed,
    value_of_shares,
)
from .ledger_schema import ConfirmationReceipt, LoanRecord, VaultSnapshot
from .units import (
    BPS_DECIMALS,
    SHARE_DECIMALS,
    TOKEN_DECIMALS,
    LedgerAmount,
    coerce_amount,
    format_amount,
    from_fixed_point,
    share_amount,
    to_fixed_point,
    token_amount,
    truncate_to_fixed_point,
)

__all__ = [
    "BPS_DECIMALS",
    "SHARE_DECIMALS",
    "TOKEN_DECIMALS",
    "ConfirmationReceipt",
    "FeeBreakdown",
    "LedgerAmount",
    "LoanRecord",
    "VaultSnapshot",
    "apy_percent",
    "coerce_amount",
    "fee_breakdown",
    "format_amount",
    "from_fixed_point",
    "is_overdue",
    "is_overpaid",
    "loan_maturity",
    "normalize_yield_rate",
    "projected_annual_yield",
    "remaining_balance",
    "repayment_progress_percent",
    "repayment_ratio",
    "seconds_until_due",
    "share_amount",
    "to_fixed_point",
    "token_amount",
    "total_owed",
    "truncate_to_fixed_point",
    "value_of_shares",
]
