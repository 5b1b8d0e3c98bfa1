"""
Ledger Gateway
==============

Typed read/write facade over the remote ledger.

- :meth:`LedgerGateway.read` performs a side-effect-free ``eth_call``. It may
  be retried freely.
- :meth:`LedgerGateway.write` binds the signing identity to the expected
  network and submits exactly one transaction. A returned :class:`TxHandle`
  means *accepted for broadcast*, not confirmed.
- :meth:`LedgerGateway.await_confirmation` blocks until the transaction is
  mined (plus the configured number of confirmation blocks) or a bounded wait
  elapses. It polls with exponential backoff and never hangs indefinitely.

Every web3 / eth-abi / transport exception is translated into the taxonomy in
:mod:`convexo_platform.errors`, with the original kept as ``__cause__``.

Example
-------
>>> gateway = LedgerGateway.from_settings(settings)
>>> raw = gateway.read(ContractId.TOKEN, "balanceOf", [address])
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Sequence

from eth_abi.exceptions import DecodingError
from web3 import Web3
from web3.exceptions import (
    BadFunctionCallOutput,
    ContractLogicError,
    MismatchedABI,
    TransactionNotFound,
    Web3Exception,
)

from ..config import ContractAddresses, Settings
from ..engine.ledger_schema import ConfirmationReceipt
from ..errors import (
    ConfirmationTimeoutError,
    DecodeError,
    NoSigningIdentityError,
    ReadError,
    SubmissionError,
)
from .abis import CONTRACT_ABIS, ContractId
from .identity import SigningIdentity

logger = logging.getLogger("CONVEXO.Gateway")


@dataclass(frozen=True)
class TxHandle:
    """A transaction accepted for broadcast. Says nothing about confirmation."""

    tx_hash: str
    contract_id: ContractId
    method: str
    sender: str
    submitted_at: float = field(default_factory=time.time, compare=False)


class LedgerGateway:
    def __init__(
        self,
        w3: Web3,
        addresses: ContractAddresses,
        chain_id: int,
        identity: Optional[SigningIdentity] = None,
        *,
        default_gas: int = 500_000,
        gas_price_multiplier_bps: int = 10_000,
        confirmation_timeout_seconds: float = 120.0,
        poll_initial_seconds: float = 0.5,
        poll_max_seconds: float = 8.0,
        poll_backoff: float = 2.0,
        confirmation_blocks: int = 1,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.w3 = w3
        self.addresses = addresses
        self.chain_id = chain_id
        self._identity = identity

        self.default_gas = default_gas
        self.gas_price_multiplier_bps = gas_price_multiplier_bps
        self.confirmation_timeout_seconds = confirmation_timeout_seconds
        self.poll_initial_seconds = poll_initial_seconds
        self.poll_max_seconds = poll_max_seconds
        self.poll_backoff = poll_backoff
        self.confirmation_blocks = max(1, confirmation_blocks)
        self._sleep = sleep
        self._clock = clock

        # One submission at a time per identity (nonce ordering)
        self._write_lock = threading.Lock()

        self._addresses = {
            ContractId.TOKEN: addresses.token,
            ContractId.VAULT: addresses.vault,
            ContractId.LOAN_NFT: addresses.loan_nft,
            ContractId.COLLECTOR: addresses.collector,
        }
        self._contracts = {
            contract_id: self._get_contract(address, CONTRACT_ABIS[contract_id])
            for contract_id, address in self._addresses.items()
        }
        self._addresses = {
            contract_id: Web3.to_checksum_address(address)
            for contract_id, address in self._addresses.items()
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        identity: Optional[SigningIdentity] = None,
        w3: Optional[Web3] = None,
    ) -> "LedgerGateway":
        """Build a gateway for the configured endpoint and contracts."""
        if w3 is None:
            w3 = Web3(Web3.HTTPProvider(settings.rpc_url))
        return cls(
            w3,
            settings.contract_addresses(),
            settings.chain_id,
            identity,
            default_gas=settings.default_gas,
            gas_price_multiplier_bps=settings.gas_price_multiplier_bps,
            confirmation_timeout_seconds=settings.confirmation_timeout_seconds,
            poll_initial_seconds=settings.confirmation_poll_initial_seconds,
            poll_max_seconds=settings.confirmation_poll_max_seconds,
            poll_backoff=settings.confirmation_poll_backoff,
            confirmation_blocks=settings.confirmation_blocks,
        )

    # =========================================================================
    # IDENTITY
    # =========================================================================

    @property
    def identity(self) -> Optional[SigningIdentity]:
        return self._identity

    def attach_identity(self, identity: SigningIdentity) -> None:
        self._identity = identity

    def detach_identity(self) -> None:
        self._identity = None

    def is_connected(self) -> bool:
        return self.w3.is_connected()

    def contract_address(self, contract_id: ContractId) -> str:
        """Checksummed address of one of the four configured contracts."""
        return self._addresses[contract_id]

    # =========================================================================
    # READS
    # =========================================================================

    def read(
        self,
        contract_id: ContractId,
        method: str,
        args: Sequence[Any] = (),
        block_identifier: Optional[Any] = None,
    ) -> Any:
        """
        Execute a read-only contract call.

        Parameters
        ----------
        contract_id : ContractId
            Which of the four contracts to call.
        method : str
            ABI function name.
        args : sequence
            Positional call arguments.
        block_identifier : int or str, optional
            Pin the call to a block (default: latest).

        Returns
        -------
        Any
            The ABI-decoded return value.

        Raises
        ------
        ReadError
            Node/transport failure, or a contract revert (``reverted=True``).
        DecodeError
            The returned bytes do not decode against the expected ABI.
        """
        call_kwargs: Dict[str, Any] = {}
        if block_identifier is not None:
            call_kwargs["block_identifier"] = block_identifier
        try:
            fn = self._function(contract_id, method, args)
            return fn.call(**call_kwargs)
        except ContractLogicError as exc:
            raise ReadError(f"{contract_id.value}.{method} reverted: {exc}", cause=exc, reverted=True) from exc
        except (BadFunctionCallOutput, DecodingError) as exc:
            raise DecodeError(f"{contract_id.value}.{method} returned undecodable data: {exc}") from exc
        except MismatchedABI as exc:
            raise ReadError(f"{contract_id.value}.{method} arguments do not match the ABI: {exc}", cause=exc) from exc
        except (Web3Exception, OSError, ValueError) as exc:
            logger.error(f"Read {contract_id.value}.{method} failed: {exc}")
            raise ReadError(f"{contract_id.value}.{method} failed: {exc}", cause=exc) from exc

    def latest_block(self) -> int:
        try:
            return int(self.w3.eth.block_number)
        except (Web3Exception, OSError, ValueError) as exc:
            raise ReadError(f"Could not read the latest block number: {exc}", cause=exc) from exc

    # =========================================================================
    # WRITES
    # =========================================================================

    def write(self, contract_id: ContractId, method: str, args: Sequence[Any] = ()) -> TxHandle:
        """
        Submit exactly one transaction from the attached signing identity.

        Raises
        ------
        NoSigningIdentityError
            No identity attached (e.g. the session was closed).
        WrongNetworkError
            The identity is on another chain and could not be switched.
        UserRejectedError
            The signer declined.
        SubmissionError
            The transaction could not be built or broadcast.
        """
        identity = self._identity
        if identity is None:
            raise NoSigningIdentityError("No signing identity is attached to the gateway")

        identity.ensure_network(self.chain_id)
        try:
            fn = self._function(contract_id, method, args)
        except (Web3Exception, TypeError, ValueError) as exc:
            raise SubmissionError(f"{contract_id.value}.{method} arguments do not match the ABI: {exc}", cause=exc) from exc

        with self._write_lock:
            tx_params = self._build_tx(fn, identity.address)
            tx_hash = identity.request_signed_submission(tx_params)

        handle = TxHandle(tx_hash=tx_hash, contract_id=contract_id, method=method, sender=identity.address)
        logger.info(f"Submitted {contract_id.value}.{method} from {identity.address}: {tx_hash}")
        return handle

    def _build_tx(self, fn: Any, sender: str) -> Dict[str, Any]:
        try:
            gas_price = int(self.w3.eth.gas_price) * self.gas_price_multiplier_bps // 10_000
            return fn.build_transaction(
                {
                    "from": sender,
                    "nonce": self.w3.eth.get_transaction_count(sender, "pending"),
                    "gas": self.default_gas,
                    "gasPrice": gas_price,
                    "chainId": self.chain_id,
                }
            )
        except (Web3Exception, OSError, ValueError, TypeError) as exc:
            raise SubmissionError(f"Could not build transaction: {exc}", cause=exc) from exc

    # =========================================================================
    # CONFIRMATION
    # =========================================================================

    def await_confirmation(self, handle: TxHandle, timeout: Optional[float] = None) -> ConfirmationReceipt:
        """
        Block until ``handle`` is mined and has ``confirmation_blocks`` depth.

        The returned receipt may describe a reverted transaction
        (``receipt.succeeded`` is False); interpreting that is the caller's job.

        Raises
        ------
        ConfirmationTimeoutError
            The bounded wait elapsed. The transaction may still land.
        DecodeError
            The node returned a malformed receipt.
        """
        timeout = self.confirmation_timeout_seconds if timeout is None else timeout
        deadline = self._clock() + timeout
        delay = self.poll_initial_seconds

        while True:
            receipt = self._poll_receipt(handle)
            if receipt is not None and self._is_deep_enough(receipt):
                confirmed = ConfirmationReceipt.from_web3(receipt)
                if confirmed.succeeded:
                    logger.info(f"{handle.method} {handle.tx_hash} confirmed in block {confirmed.block_number}")
                else:
                    logger.warning(f"{handle.method} {handle.tx_hash} reverted in block {confirmed.block_number}")
                return confirmed

            remaining = deadline - self._clock()
            if remaining <= 0:
                logger.warning(f"Timed out after {timeout}s waiting for {handle.method} {handle.tx_hash}")
                raise ConfirmationTimeoutError(handle, timeout)
            self._sleep(min(delay, remaining))
            delay = min(delay * self.poll_backoff, self.poll_max_seconds)

    def _poll_receipt(self, handle: TxHandle) -> Optional[Any]:
        try:
            receipt = self.w3.eth.get_transaction_receipt(handle.tx_hash)
        except TransactionNotFound:
            return None
        except (Web3Exception, OSError, ValueError) as exc:
            # Observational; keep polling until the deadline
            logger.warning(f"Receipt poll for {handle.tx_hash} failed: {exc}")
            return None
        if receipt is None or receipt.get("blockNumber") is None:
            return None
        return receipt

    def _is_deep_enough(self, receipt: Any) -> bool:
        if self.confirmation_blocks <= 1:
            return True
        try:
            head = int(self.w3.eth.block_number)
        except (Web3Exception, OSError, ValueError):
            return False
        return head - int(receipt["blockNumber"]) + 1 >= self.confirmation_blocks

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _function(self, contract_id: ContractId, method: str, args: Sequence[Any]) -> Any:
        contract = self._contracts[contract_id]
        return getattr(contract.functions, method)(*args)

    def _get_contract(self, address: str, abi: Any) -> Any:
        if not address:
            raise ValueError("Contract address missing in settings.")
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
