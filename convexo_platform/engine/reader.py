"""
Balance & Allowance Reader
==========================

Thin read-only queries over :meth:`LedgerGateway.read`. Every call issues a
fresh read; nothing is cached here, so each answer is as current as the node
that served it.

Missing data is reported distinctly from zero: :meth:`BalanceReader.loan_record`
returns ``None`` for an id that was never minted, never a zero-principal loan.

Example
-------
>>> reader = BalanceReader(gateway)
>>> reader.token_balance(user)
LedgerAmount(value=50000000, decimals=6)
>>> reader.allowance(user, ContractId.VAULT)
LedgerAmount(value=0, decimals=6)
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Union

from web3 import Web3

from ..errors import DecodeError, ReadError
from ..web3_integration.abis import ContractId
from .ledger_schema import ZERO_ADDRESS, LoanRecord, VaultSnapshot
from .units import SHARE_DECIMALS, TOKEN_DECIMALS, LedgerAmount

logger = logging.getLogger("CONVEXO.Reader")

Spender = Union[ContractId, str]


def _unwrap(raw: Any) -> Any:
    # Some nodes hand back single outputs as a 1-tuple
    if isinstance(raw, (list, tuple)) and len(raw) == 1:
        return raw[0]
    return raw


def _as_uint(raw: Any, what: str) -> int:
    value = _unwrap(raw)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise DecodeError(f"{what}: expected an unsigned integer, got {value!r}")
    return value


def _as_address(raw: Any, what: str) -> str:
    value = _unwrap(raw)
    if not isinstance(value, str) or not Web3.is_address(value):
        raise DecodeError(f"{what}: expected an address, got {value!r}")
    return Web3.to_checksum_address(value)


class BalanceReader:
    """Fresh, uncached reads of balances, allowances, vault stats and loans."""

    def __init__(self, gateway: Any) -> None:
        self.gateway = gateway

    # -------------------------------------------------------------------------
    # Token & vault balances
    # -------------------------------------------------------------------------

    def token_balance(self, address: str) -> LedgerAmount:
        raw = self.gateway.read(ContractId.TOKEN, "balanceOf", [address])
        return LedgerAmount(_as_uint(raw, "token balanceOf"), TOKEN_DECIMALS)

    def vault_share_balance(self, address: str) -> LedgerAmount:
        raw = self.gateway.read(ContractId.VAULT, "balanceOf", [address])
        return LedgerAmount(_as_uint(raw, "vault balanceOf"), SHARE_DECIMALS)

    def allowance(self, owner: str, spender: Spender) -> LedgerAmount:
        """Token allowance ``owner`` has granted ``spender`` (a contract id or address)."""
        if isinstance(spender, ContractId):
            spender = self.gateway.contract_address(spender)
        raw = self.gateway.read(ContractId.TOKEN, "allowance", [owner, spender])
        return LedgerAmount(_as_uint(raw, "token allowance"), TOKEN_DECIMALS)

    def vault_snapshot(self) -> VaultSnapshot:
        """
        Read the four vault statistics pinned to a single block.

        Pinning keeps assets, supply, value-per-share and APY consistent with
        each other even if a block lands between the individual calls.
        """
        block = self.gateway.latest_block()
        return VaultSnapshot.from_chain(
            total_assets=_unwrap(self.gateway.read(ContractId.VAULT, "totalAssets", [], block)),
            total_supply=_unwrap(self.gateway.read(ContractId.VAULT, "totalSupply", [], block)),
            value_per_share=_unwrap(self.gateway.read(ContractId.VAULT, "vaultValuePerShare", [], block)),
            apy_bps=_unwrap(self.gateway.read(ContractId.VAULT, "previewAPY", [], block)),
            block_number=block,
        )

    # -------------------------------------------------------------------------
    # Loans
    # -------------------------------------------------------------------------

    def loan_record(self, loan_id: int) -> Optional[LoanRecord]:
        """
        Fetch a loan by id.

        Returns ``None`` when the registry has no such loan, either because
        the call reverts (nonexistent token) or because it returns the zeroed
        struct. Transport failures still raise :class:`ReadError`.
        """
        try:
            raw = self.gateway.read(ContractId.LOAN_NFT, "getLoan", [loan_id])
        except ReadError as exc:
            if exc.reverted:
                logger.debug(f"getLoan({loan_id}) reverted; treating as missing")
                return None
            raise
        record = LoanRecord.from_chain(loan_id, raw)
        if record.is_empty:
            return None
        return record

    def loan_count(self) -> int:
        return _as_uint(self.gateway.read(ContractId.LOAN_NFT, "totalSupply", []), "loan totalSupply")

    def loan_owner(self, loan_id: int) -> Optional[str]:
        """Current holder of the loan note, or None if it does not exist."""
        try:
            raw = self.gateway.read(ContractId.LOAN_NFT, "ownerOf", [loan_id])
        except ReadError as exc:
            if exc.reverted:
                return None
            raise
        owner = _as_address(raw, "loan ownerOf")
        return None if owner == ZERO_ADDRESS else owner

    def borrower_loans(self, borrower: str) -> List[LoanRecord]:
        """
        All loans whose borrower is ``borrower``.

        Walks ids ``1..loan_count()``; ids without a record are skipped.
        """
        target = borrower.lower()
        loans: List[LoanRecord] = []
        for loan_id in range(1, self.loan_count() + 1):
            loan = self.loan_record(loan_id)
            if loan is not None and loan.borrower.lower() == target:
                loans.append(loan)
        return loans

    # -------------------------------------------------------------------------
    # Collector
    # -------------------------------------------------------------------------

    def total_repaid(self, loan_id: int) -> LedgerAmount:
        """Repayments the collector has recorded against ``loan_id``."""
        raw = self.gateway.read(ContractId.COLLECTOR, "totalRepaid", [loan_id])
        return LedgerAmount(_as_uint(raw, "collector totalRepaid"), TOKEN_DECIMALS)

    def fee_bps(self) -> int:
        return _as_uint(self.gateway.read(ContractId.COLLECTOR, "feeBps", []), "collector feeBps")

    def fee_recipient(self) -> str:
        return _as_address(self.gateway.read(ContractId.COLLECTOR, "feeRecipient", []), "collector feeRecipient")
