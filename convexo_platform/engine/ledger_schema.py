"""
Validated Ledger Records
========================

Typed, validated representations of the structures the core reads from the
ledger. Raw contract return values (tuples, attribute dicts) are turned into
these models exactly once, at the gateway boundary; a value that does not fit
the expected shape raises :class:`~convexo_platform.errors.DecodeError`
instead of leaking half-populated fields into financial calculations.

All amount fields hold raw integer units. Each model exposes
:class:`~convexo_platform.engine.units.LedgerAmount` views with the right
decimal places attached.

Models
------
- :class:`LoanRecord`: one loan note from the loan registry.
- :class:`VaultSnapshot`: point-in-time vault statistics.
- :class:`ConfirmationReceipt`: a mined transaction's receipt.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from web3 import Web3

from ..errors import DecodeError
from .units import SHARE_DECIMALS, TOKEN_DECIMALS, LedgerAmount

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Field order of the loan registry's getLoan() struct
_LOAN_STRUCT_FIELDS = (
    "borrower",
    "principal",
    "interestRate",
    "termLength",
    "startTime",
    "amountPaid",
    "isActive",
)


def _struct_to_mapping(raw: Any, field_names: Sequence[str]) -> Mapping[str, Any]:
    """Accept a positional tuple, a mapping or an attribute object."""
    if isinstance(raw, Mapping):
        return raw
    if isinstance(raw, (list, tuple)):
        if len(raw) != len(field_names):
            raise DecodeError(f"Expected {len(field_names)} struct fields, got {len(raw)}")
        return dict(zip(field_names, raw))
    if all(hasattr(raw, name) for name in field_names):
        return {name: getattr(raw, name) for name in field_names}
    raise DecodeError(f"Cannot decode struct from {type(raw).__name__}")


class LoanRecord(BaseModel):
    """
    A loan note as recorded on-chain.

    Read-only from the core's perspective: the only way it changes is through
    on-chain writes, so a copy is only as current as the read that produced it.
    """

    model_config = ConfigDict(frozen=True)

    loan_id: int = Field(ge=0, strict=True, description="Loan note token id")
    borrower: str = Field(description="Checksummed borrower address")
    principal: int = Field(ge=0, strict=True, description="Principal in token units (6 decimals)")
    interest_rate_bps: int = Field(ge=0, strict=True, description="One-time interest multiplier in basis points")
    term_seconds: int = Field(ge=0, strict=True, description="Loan term length in seconds")
    start_time_unix: int = Field(ge=0, strict=True, description="Loan start as a unix timestamp")
    amount_paid: int = Field(ge=0, strict=True, description="Amount repaid so far in token units")
    is_active: bool = Field(strict=True, description="False once repaid or defaulted")

    @field_validator("borrower")
    @classmethod
    def _checksum_borrower(cls, value: str) -> str:
        if not Web3.is_address(value):
            raise ValueError(f"Invalid borrower address: {value!r}")
        return Web3.to_checksum_address(value)

    @property
    def principal_amount(self) -> LedgerAmount:
        return LedgerAmount(self.principal, TOKEN_DECIMALS)

    @property
    def amount_paid_amount(self) -> LedgerAmount:
        return LedgerAmount(self.amount_paid, TOKEN_DECIMALS)

    @property
    def is_empty(self) -> bool:
        """True for the zeroed struct a registry returns for an unminted id."""
        return self.borrower == ZERO_ADDRESS

    @classmethod
    def from_chain(cls, loan_id: int, raw: Any) -> "LoanRecord":
        """
        Build a record from a raw ``getLoan`` return value.

        Raises
        ------
        DecodeError
            If the value is not a 7-field loan struct of the expected types.
        """
        fields = _struct_to_mapping(raw, _LOAN_STRUCT_FIELDS)
        try:
            return cls(
                loan_id=loan_id,
                borrower=fields["borrower"],
                principal=fields["principal"],
                interest_rate_bps=fields["interestRate"],
                term_seconds=fields["termLength"],
                start_time_unix=fields["startTime"],
                amount_paid=fields["amountPaid"],
                is_active=fields["isActive"],
            )
        except KeyError as exc:
            raise DecodeError(f"Loan {loan_id}: missing field {exc}") from exc
        except ValidationError as exc:
            raise DecodeError(f"Loan {loan_id}: malformed record: {exc}") from exc


class VaultSnapshot(BaseModel):
    """
    Vault statistics as of a single block.

    Stale as soon as it is returned; re-read before relying on it for a write.
    """

    model_config = ConfigDict(frozen=True)

    total_assets: int = Field(ge=0, strict=True, description="Underlying assets held, token units")
    total_supply: int = Field(ge=0, strict=True, description="Shares outstanding, share units")
    value_per_share: int = Field(ge=0, strict=True, description="Token units per whole share")
    apy_bps: int = Field(ge=0, strict=True, description="Annual yield in basis points")
    block_number: Optional[int] = Field(default=None, ge=0, description="Block the values were read at")

    @property
    def total_assets_amount(self) -> LedgerAmount:
        return LedgerAmount(self.total_assets, TOKEN_DECIMALS)

    @property
    def total_supply_amount(self) -> LedgerAmount:
        return LedgerAmount(self.total_supply, SHARE_DECIMALS)

    @property
    def value_per_share_amount(self) -> LedgerAmount:
        return LedgerAmount(self.value_per_share, TOKEN_DECIMALS)

    @classmethod
    def from_chain(
        cls,
        total_assets: Any,
        total_supply: Any,
        value_per_share: Any,
        apy_bps: Any,
        block_number: Optional[int] = None,
    ) -> "VaultSnapshot":
        try:
            return cls(
                total_assets=total_assets,
                total_supply=total_supply,
                value_per_share=value_per_share,
                apy_bps=apy_bps,
                block_number=block_number,
            )
        except ValidationError as exc:
            raise DecodeError(f"Malformed vault statistics: {exc}") from exc


class ConfirmationReceipt(BaseModel):
    """The subset of a transaction receipt the workflow relies on."""

    model_config = ConfigDict(frozen=True)

    tx_hash: str
    block_number: int = Field(ge=0)
    status: int = Field(ge=0, le=1, description="1 = success, 0 = reverted")
    gas_used: int = Field(default=0, ge=0)

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    @classmethod
    def from_web3(cls, receipt: Mapping[str, Any]) -> "ConfirmationReceipt":
        try:
            return cls(
                tx_hash=Web3.to_hex(receipt["transactionHash"]),
                block_number=int(receipt["blockNumber"]),
                status=int(receipt["status"]),
                gas_used=int(receipt.get("gasUsed", 0)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DecodeError(f"Malformed transaction receipt: {exc}") from exc
