"""
Convexo Platform Configuration
==============================

Centralized configuration management using environment variables with sensible
defaults. Follows the 12-factor app methodology.

This module provides a cached ``Settings`` instance that loads configuration
from environment variables prefixed with ``CONVEXO_``. All settings have
defaults suitable for the Base Sepolia deployment.

Settings only describe *where* the ledger and contracts live. No signing
identity or network connection is created here: sessions are constructed
explicitly (see :mod:`convexo_platform.web3_integration.session`).

Environment Variables
---------------------
CONVEXO_RPC_URL : str
    JSON-RPC endpoint of the ledger node (default: "https://sepolia.base.org").
CONVEXO_CHAIN_ID : int
    Chain id every write must be bound to (default: 84532).
CONVEXO_CONFIRMATION_TIMEOUT_SECONDS : float
    Upper bound on a single confirmation wait (default: 120).
CONVEXO_LOG_LEVEL : str
    Logging level (DEBUG, INFO, WARNING, ERROR).

Example
-------
Using environment variables::

    export CONVEXO_RPC_URL=http://127.0.0.1:8545
    export CONVEXO_CHAIN_ID=31337

Accessing settings in code::

    from convexo_platform.config import settings
    print(f"Writes are bound to chain {settings.chain_id}")
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, List


def _get_env(key: str, default: Any, value_type: type = str) -> Any:
    """
    Get an environment variable with type conversion.

    Parameters
    ----------
    key : str
        Environment variable name (will be prefixed with CONVEXO_).
    default : Any
        Default value if not set.
    value_type : type
        Type to convert to (str, int, float, bool, list).

    Returns
    -------
    Any
        The environment variable value converted to the specified type.
    """
    env_name = f"CONVEXO_{key.upper()}"
    env_value = os.environ.get(env_name)

    if env_value is None:
        return default

    try:
        if value_type == bool:
            return env_value.lower() in ("true", "1", "yes", "on")
        elif value_type == int:
            return int(env_value)
        elif value_type == float:
            return float(env_value)
        elif value_type == list:
            try:
                return json.loads(env_value)
            except json.JSONDecodeError:
                return env_value.split(",")
        else:
            return env_value
    except (ValueError, TypeError):
        return default


@dataclass(frozen=True)
class ContractAddresses:
    """Deployed addresses of the four contracts the core talks to."""

    token: str
    vault: str
    loan_nft: str
    collector: str


class Settings:
    """
    Application configuration loaded from environment variables.

    Example
    -------
    >>> from convexo_platform.config import settings
    >>> print(settings.contract_addresses().vault)
    """

    def __init__(self) -> None:
        """Initialize settings from environment variables."""
        # =====================================================================
        # Network
        # =====================================================================
        self.rpc_url: str = _get_env("RPC_URL", "https://sepolia.base.org", str)
        self.chain_id: int = _get_env("CHAIN_ID", 84532, int)
        self.chain_name: str = _get_env("CHAIN_NAME", "Base Sepolia", str)
        self.explorer_url: str = _get_env("EXPLORER_URL", "https://sepolia.basescan.org", str)
        self.native_currency_symbol: str = _get_env("NATIVE_CURRENCY_SYMBOL", "ETH", str)

        # =====================================================================
        # Contract Addresses
        # =====================================================================
        self.token_address: str = _get_env("TOKEN_ADDRESS", "0x036CbD53842c5426634e7929541eC2318f3dCF7e", str)
        self.vault_address: str = _get_env("VAULT_ADDRESS", "0xd61bc1202D0B920D80b69762B78B4ce05dF03D1C", str)
        self.loan_nft_address: str = _get_env("LOAN_NFT_ADDRESS", "0x0B6962F7468BA68A8715ccb67233B54c8dEb5b73", str)
        self.collector_address: str = _get_env("COLLECTOR_ADDRESS", "0xf489d4c235895750Cf6EC06C7B26187aD5Ef1207", str)

        # =====================================================================
        # Transaction Submission
        # =====================================================================
        self.default_gas: int = _get_env("DEFAULT_GAS", 500_000, int)
        self.gas_price_multiplier_bps: int = _get_env("GAS_PRICE_MULTIPLIER_BPS", 10_000, int)
        self.signer_private_key: str = _get_env("SIGNER_PRIVATE_KEY", "", str)

        # =====================================================================
        # Confirmation Wait
        # =====================================================================
        self.confirmation_timeout_seconds: float = _get_env("CONFIRMATION_TIMEOUT_SECONDS", 120.0, float)
        self.confirmation_poll_initial_seconds: float = _get_env("CONFIRMATION_POLL_INITIAL_SECONDS", 0.5, float)
        self.confirmation_poll_max_seconds: float = _get_env("CONFIRMATION_POLL_MAX_SECONDS", 8.0, float)
        self.confirmation_poll_backoff: float = _get_env("CONFIRMATION_POLL_BACKOFF", 2.0, float)
        self.confirmation_blocks: int = _get_env("CONFIRMATION_BLOCKS", 1, int)

        # =====================================================================
        # Logging Configuration
        # =====================================================================
        self.log_level: str = _get_env("LOG_LEVEL", "INFO", str)
        self.log_format: str = _get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s", str)
        self.quiet_loggers: List[str] = _get_env("QUIET_LOGGERS", ["web3", "urllib3"], list)

    @property
    def log_level_int(self) -> int:
        """Return the log level as an integer constant."""
        return getattr(logging, self.log_level.upper(), logging.INFO)

    def contract_addresses(self) -> ContractAddresses:
        """Return the configured contract addresses as one frozen value."""
        return ContractAddresses(
            token=self.token_address,
            vault=self.vault_address,
            loan_nft=self.loan_nft_address,
            collector=self.collector_address,
        )

    def configure_logging(self) -> None:
        """
        Configure application logging based on settings.

        Sets up the root logger with the configured level and format.
        """
        logging.basicConfig(
            level=self.log_level_int,
            format=self.log_format,
        )
        # Quiet noisy loggers
        for name in self.quiet_loggers:
            logging.getLogger(name).setLevel(logging.WARNING)


@lru_cache()
def get_settings() -> Settings:
    """
    Return the cached application settings instance.

    Returns
    -------
    Settings
        Application settings instance.
    """
    return Settings()


# Module-level instance for convenience
settings = get_settings()
