"""
Ledger Session
==============

Explicitly scoped owner of one gateway and at most one signing identity.

A session is built when a signing capability becomes available and closed when
it goes away (wallet disconnect, logout). Closing detaches the identity, so
any workflow started afterwards fails with ``NO_SIGNING_IDENTITY`` instead of
writing from a stale account. Sessions share nothing, so several can coexist
in one process (e.g. one per account in tests).

Example
-------
>>> with LedgerSession.from_settings(get_settings()) as session:
...     print(session.reader.token_balance(session.address))
...     result = session.orchestrator().deposit("100")
"""

from __future__ import annotations

import logging
from typing import Optional

from web3 import Web3

from ..config import Settings
from ..engine.reader import BalanceReader
from ..engine.workflow import WorkflowOrchestrator
from ..errors import NoSigningIdentityError
from .identity import LocalAccountIdentity, ProviderIdentity, SigningIdentity
from .web3_client import LedgerGateway

logger = logging.getLogger("CONVEXO.Session")


class LedgerSession:
    def __init__(self, gateway: LedgerGateway, identity: Optional[SigningIdentity] = None) -> None:
        self.gateway = gateway
        self.reader = BalanceReader(gateway)
        self._closed = False
        if identity is not None:
            self.connect(identity)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        w3: Optional[Web3] = None,
        identity: Optional[SigningIdentity] = None,
    ) -> "LedgerSession":
        """
        Build a session from configuration.

        When no identity is passed and ``signer_private_key`` is configured, a
        :class:`LocalAccountIdentity` is created for it. Otherwise the session
        starts read-only.
        """
        if w3 is None:
            w3 = Web3(Web3.HTTPProvider(settings.rpc_url))
        if identity is None and settings.signer_private_key:
            identity = LocalAccountIdentity(w3, settings.signer_private_key)
        gateway = LedgerGateway.from_settings(settings, w3=w3)
        return cls(gateway, identity)

    @classmethod
    def for_provider(cls, settings: Settings, w3: Web3, address: str) -> "LedgerSession":
        """Session whose identity is a wallet behind ``w3``'s provider."""
        identity = ProviderIdentity(
            w3,
            address,
            chain_name=settings.chain_name,
            rpc_url=settings.rpc_url,
            explorer_url=settings.explorer_url,
            native_currency_symbol=settings.native_currency_symbol,
        )
        return cls(LedgerGateway.from_settings(settings, w3=w3), identity)

    # -------------------------------------------------------------------------

    @property
    def identity(self) -> Optional[SigningIdentity]:
        return self.gateway.identity

    @property
    def address(self) -> str:
        identity = self.gateway.identity
        if identity is None:
            raise NoSigningIdentityError("Session has no signing identity")
        return identity.address

    @property
    def closed(self) -> bool:
        return self._closed

    def connect(self, identity: SigningIdentity) -> None:
        """Attach ``identity``, replacing (and closing) any current one."""
        if self._closed:
            raise RuntimeError("Cannot connect an identity to a closed session")
        previous = self.gateway.identity
        if previous is not None and previous is not identity:
            previous.close()
        self.gateway.attach_identity(identity)
        logger.info(f"Signing identity {identity.address} connected")

    def disconnect(self) -> None:
        identity = self.gateway.identity
        if identity is None:
            return
        address = identity.address
        self.gateway.detach_identity()
        identity.close()
        logger.info(f"Signing identity {address} disconnected")

    def orchestrator(self, allow_overpayment: bool = True, await_action_confirmation: bool = True) -> WorkflowOrchestrator:
        return WorkflowOrchestrator(
            self.gateway,
            self.reader,
            allow_overpayment=allow_overpayment,
            await_action_confirmation=await_action_confirmation,
        )

    def close(self) -> None:
        """Tear the session down. Idempotent."""
        if self._closed:
            return
        self.disconnect()
        self._closed = True
        logger.info("Session closed")

    def __enter__(self) -> "LedgerSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
