"""
Signing Identities
==================

A signing identity is one address plus the capability to submit transactions
from it. The gateway needs only three things from it:

- ``address``
- ``ensure_network(chain_id)``: bind the identity to the expected chain,
  switching in place when the backing wallet supports it.
- ``request_signed_submission(tx_params)``: sign and broadcast one
  transaction, returning its hash.

Two implementations are provided:

- :class:`LocalAccountIdentity` signs with a private key held in-process
  (eth-account) and broadcasts through the node. It cannot switch networks.
- :class:`ProviderIdentity` delegates signing to a wallet behind a web3
  provider (``eth_sendTransaction``) and can ask it to switch chains.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from eth_account import Account
from web3 import Web3
from web3.exceptions import Web3Exception

from ..errors import SubmissionError, UserRejectedError, WrongNetworkError

logger = logging.getLogger("CONVEXO.Identity")

# EIP-1193 / EIP-3326 provider error codes
USER_REJECTED_CODE = 4001
UNRECOGNIZED_CHAIN_CODE = 4902


def rpc_error_code(exc: BaseException) -> Optional[int]:
    """Extract a JSON-RPC error code from a web3 / provider exception, if any."""
    response = getattr(exc, "rpc_response", None)
    if isinstance(response, dict):
        error = response.get("error")
        if isinstance(error, dict) and "code" in error:
            return error["code"]
    code = getattr(exc, "code", None)
    if isinstance(code, int):
        return code
    if exc.args and isinstance(exc.args[0], dict):
        code = exc.args[0].get("code")
        if isinstance(code, int):
            return code
    return None


class SigningIdentity(ABC):
    """One address plus the capability to authorize and submit transactions."""

    @property
    @abstractmethod
    def address(self) -> str:
        """Checksummed address transactions are sent from."""

    @abstractmethod
    def ensure_network(self, chain_id: int) -> None:
        """
        Make sure the identity submits to ``chain_id``.

        Raises
        ------
        WrongNetworkError
            If the identity is elsewhere and cannot be switched.
        UserRejectedError
            If the wallet owner declined the switch.
        """

    @abstractmethod
    def request_signed_submission(self, tx_params: Dict[str, Any]) -> str:
        """
        Sign and broadcast a transaction; return its 0x-prefixed hash.

        Raises
        ------
        UserRejectedError
            The signer declined.
        SubmissionError
            Anything else that prevented broadcast.
        """

    def close(self) -> None:
        """Release anything held for the identity. Default: nothing."""


class LocalAccountIdentity(SigningIdentity):
    """
    Signs with an in-process private key and broadcasts raw transactions.

    The account is bound to whatever chain the node serves, so a mismatch
    cannot be fixed in place and is reported as :class:`WrongNetworkError`.
    """

    def __init__(self, w3: Web3, private_key: str) -> None:
        if not private_key:
            raise ValueError("A private key is required for a local signing identity.")
        self.w3 = w3
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    def ensure_network(self, chain_id: int) -> None:
        try:
            actual = int(self.w3.eth.chain_id)
        except (Web3Exception, OSError, ValueError) as exc:
            raise SubmissionError("Could not determine the node's chain id", cause=exc) from exc
        if actual != chain_id:
            raise WrongNetworkError(chain_id, actual)

    def request_signed_submission(self, tx_params: Dict[str, Any]) -> str:
        try:
            signed = self._account.sign_transaction(tx_params)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except (Web3Exception, OSError, ValueError, TypeError) as exc:
            raise SubmissionError(f"Broadcast failed: {exc}", cause=exc) from exc
        return Web3.to_hex(tx_hash)

    def close(self) -> None:
        self._account = None  # type: ignore[assignment]


class ProviderIdentity(SigningIdentity):
    """
    A wallet reached through a web3 provider that signs on our behalf.

    Network switching follows EIP-3326: ``wallet_switchEthereumChain``; if the
    wallet does not know the chain (4902) it is added with
    ``wallet_addEthereumChain`` and the switch is retried once.
    """

    def __init__(
        self,
        w3: Web3,
        address: str,
        chain_name: str = "",
        rpc_url: str = "",
        explorer_url: str = "",
        native_currency_symbol: str = "ETH",
    ) -> None:
        self.w3 = w3
        self._address = Web3.to_checksum_address(address)
        self.chain_name = chain_name
        self.rpc_url = rpc_url
        self.explorer_url = explorer_url
        self.native_currency_symbol = native_currency_symbol

    @property
    def address(self) -> str:
        return self._address

    def _current_chain_id(self) -> int:
        try:
            return int(self.w3.eth.chain_id)
        except (Web3Exception, OSError, ValueError) as exc:
            raise SubmissionError("Could not determine the wallet's chain id", cause=exc) from exc

    def _wallet_request(self, method: str, params: Any) -> None:
        """Issue a wallet RPC; raise the provider error so codes can be inspected."""
        response = self.w3.provider.make_request(method, params)
        if isinstance(response, dict) and response.get("error"):
            raise Web3Exception(response["error"])

    def _switch(self, chain_id: int) -> None:
        self._wallet_request("wallet_switchEthereumChain", [{"chainId": hex(chain_id)}])

    def _add_chain(self, chain_id: int) -> None:
        self._wallet_request(
            "wallet_addEthereumChain",
            [
                {
                    "chainId": hex(chain_id),
                    "chainName": self.chain_name,
                    "nativeCurrency": {
                        "name": "Ethereum",
                        "symbol": self.native_currency_symbol,
                        "decimals": 18,
                    },
                    "rpcUrls": [self.rpc_url],
                    "blockExplorerUrls": [self.explorer_url] if self.explorer_url else [],
                }
            ],
        )

    def ensure_network(self, chain_id: int) -> None:
        actual = self._current_chain_id()
        if actual == chain_id:
            return

        logger.info(f"Switching wallet {self.address} from chain {actual} to {chain_id}")
        try:
            try:
                self._switch(chain_id)
            except (Web3Exception, ValueError) as exc:
                if rpc_error_code(exc) != UNRECOGNIZED_CHAIN_CODE:
                    raise
                logger.info(f"Wallet does not know chain {chain_id}; adding it")
                self._add_chain(chain_id)
                self._switch(chain_id)
        except (Web3Exception, ValueError) as exc:
            code = rpc_error_code(exc)
            if code == USER_REJECTED_CODE:
                raise UserRejectedError("Network switch declined by the wallet owner") from exc
            raise WrongNetworkError(chain_id, actual, f"Wallet could not switch to chain {chain_id}: {exc}") from exc

        switched = self._current_chain_id()
        if switched != chain_id:
            raise WrongNetworkError(chain_id, switched)

    def request_signed_submission(self, tx_params: Dict[str, Any]) -> str:
        try:
            tx_hash = self.w3.eth.send_transaction(tx_params)
        except (Web3Exception, OSError, ValueError) as exc:
            if rpc_error_code(exc) == USER_REJECTED_CODE:
                raise UserRejectedError("Transaction declined by the wallet owner") from exc
            raise SubmissionError(f"Broadcast failed: {exc}", cause=exc) from exc
        return Web3.to_hex(tx_hash)
