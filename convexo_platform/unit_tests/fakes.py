"""
Test doubles shared across the unit tests.

``FakeGateway`` stands in for :class:`LedgerGateway` in reader and workflow
tests: reads come from a table, writes are recorded in order and confirmed
with a configurable receipt status.
"""

import itertools
from typing import Any, Callable, Dict, List, Optional, Tuple

from convexo_platform.engine.ledger_schema import ConfirmationReceipt, LoanRecord
from convexo_platform.errors import NoSigningIdentityError
from convexo_platform.web3_integration.abis import ContractId
from convexo_platform.web3_integration.identity import SigningIdentity
from convexo_platform.web3_integration.web3_client import TxHandle

USER = "0x1111111111111111111111111111111111111111"
VAULT_ADDRESS = "0x2222222222222222222222222222222222222222"
COLLECTOR_ADDRESS = "0x3333333333333333333333333333333333333333"
TOKEN_ADDRESS = "0x4444444444444444444444444444444444444444"
LOAN_NFT_ADDRESS = "0x5555555555555555555555555555555555555555"
BORROWER = "0x6666666666666666666666666666666666666666"

CONTRACT_ADDRESSES = {
    ContractId.TOKEN: TOKEN_ADDRESS,
    ContractId.VAULT: VAULT_ADDRESS,
    ContractId.LOAN_NFT: LOAN_NFT_ADDRESS,
    ContractId.COLLECTOR: COLLECTOR_ADDRESS,
}


def loan_struct(
    principal: int = 1_000_000_000,
    rate_bps: int = 1500,
    amount_paid: int = 0,
    is_active: bool = True,
    borrower: str = BORROWER,
    term_seconds: int = 90 * 86400,
    start_time: int = 1_700_000_000,
) -> Tuple[Any, ...]:
    """Raw getLoan() return tuple in contract field order."""
    return (borrower, principal, rate_bps, term_seconds, start_time, amount_paid, is_active)


def make_loan(loan_id: int = 1, **kwargs: Any) -> LoanRecord:
    return LoanRecord.from_chain(loan_id, loan_struct(**kwargs))


class FakeIdentity(SigningIdentity):
    def __init__(self, address: str = USER) -> None:
        self._address = address
        self.closed = False
        self.networks: List[int] = []
        self.submissions: List[Dict[str, Any]] = []

    @property
    def address(self) -> str:
        return self._address

    def ensure_network(self, chain_id: int) -> None:
        self.networks.append(chain_id)

    def request_signed_submission(self, tx_params: Dict[str, Any]) -> str:
        self.submissions.append(tx_params)
        return "0x" + f"{len(self.submissions):064x}"

    def close(self) -> None:
        self.closed = True


class FakeGateway:
    """
    In-memory gateway.

    Attributes
    ----------
    reads : dict
        ``(contract_id, method, args_tuple) -> value``. A value that is an
        exception instance is raised instead.
    writes : list
        ``(contract_id, method, args)`` for every accepted write, in order.
    events : list
        ``("write" | "confirm", method)`` in the order they happened.
    write_errors : dict
        ``method -> exception`` raised by ``write`` instead of accepting.
    confirm_errors : dict
        ``method -> exception`` raised by ``await_confirmation``.
    receipt_status : dict
        ``method -> 0 | 1`` status of the receipt (default 1).
    on_confirm : callable, optional
        Called with the handle before each confirmation returns.
    """

    def __init__(self, identity: Optional[SigningIdentity] = None) -> None:
        self.identity = identity
        self.reads: Dict[Tuple[Any, ...], Any] = {}
        self.read_calls: List[Tuple[Any, ...]] = []
        self.writes: List[Tuple[ContractId, str, Tuple[Any, ...]]] = []
        self.events: List[Tuple[str, str]] = []
        self.write_errors: Dict[str, Exception] = {}
        self.confirm_errors: Dict[str, Exception] = {}
        self.receipt_status: Dict[str, int] = {}
        self.on_confirm: Optional[Callable[[TxHandle], None]] = None
        self.block_number = 100
        self._hashes = itertools.count(1)

    # Mirrors the LedgerGateway surface used by BalanceReader / WorkflowOrchestrator

    def contract_address(self, contract_id: ContractId) -> str:
        return CONTRACT_ADDRESSES[contract_id]

    def latest_block(self) -> int:
        return self.block_number

    def read(self, contract_id, method, args=(), block_identifier=None):
        key = (contract_id, method, tuple(args))
        self.read_calls.append(key + (block_identifier,))
        if key not in self.reads:
            raise AssertionError(f"Unexpected read {key}")
        value = self.reads[key]
        if isinstance(value, Exception):
            raise value
        return value

    def write(self, contract_id, method, args=()):
        if self.identity is None:
            raise NoSigningIdentityError("No signing identity is attached to the gateway")
        if method in self.write_errors:
            raise self.write_errors[method]
        self.writes.append((contract_id, method, tuple(args)))
        self.events.append(("write", method))
        return TxHandle(
            tx_hash=f"0x{next(self._hashes):064x}",
            contract_id=contract_id,
            method=method,
            sender=self.identity.address,
        )

    def await_confirmation(self, handle, timeout=None):
        self.events.append(("confirm", handle.method))
        if self.on_confirm is not None:
            self.on_confirm(handle)
        if handle.method in self.confirm_errors:
            raise self.confirm_errors[handle.method]
        return ConfirmationReceipt(
            tx_hash=handle.tx_hash,
            block_number=self.block_number,
            status=self.receipt_status.get(handle.method, 1),
            gas_used=50_000,
        )

    # Convenience setters

    def set_token_balance(self, address: str, value: int) -> None:
        self.reads[(ContractId.TOKEN, "balanceOf", (address,))] = value

    def set_share_balance(self, address: str, value: int) -> None:
        self.reads[(ContractId.VAULT, "balanceOf", (address,))] = value

    def set_allowance(self, owner: str, spender: ContractId, value: int) -> None:
        self.reads[(ContractId.TOKEN, "allowance", (owner, CONTRACT_ADDRESSES[spender]))] = value

    def set_loan(self, loan_id: int, raw: Any) -> None:
        self.reads[(ContractId.LOAN_NFT, "getLoan", (loan_id,))] = raw

    def set_vault_stats(
        self,
        total_assets: int = 1_000_000_000,
        total_supply: int = 1_000 * 10**18,
        value_per_share: int = 1_000_000,
        apy_bps: int = 1200,
    ) -> None:
        self.reads[(ContractId.VAULT, "totalAssets", ())] = total_assets
        self.reads[(ContractId.VAULT, "totalSupply", ())] = total_supply
        self.reads[(ContractId.VAULT, "vaultValuePerShare", ())] = value_per_share
        self.reads[(ContractId.VAULT, "previewAPY", ())] = apy_bps
