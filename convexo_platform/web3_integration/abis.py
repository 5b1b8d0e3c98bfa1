"""Contract identifiers and the ABI fragments the core calls."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List


class ContractId(str, Enum):
    """The four fixed contracts the core talks to."""
    TOKEN = "token"
    VAULT = "vault"
    LOAN_NFT = "loan_nft"
    COLLECTOR = "collector"


_ERC20_ABI: List[Dict[str, Any]] = [
    {
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


_VAULT_ABI: List[Dict[str, Any]] = [
    {
        "inputs": [
            {"name": "assets", "type": "uint256"},
            {"name": "receiver", "type": "address"},
        ],
        "name": "deposit",
        "outputs": [{"name": "shares", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "assets", "type": "uint256"},
            {"name": "receiver", "type": "address"},
            {"name": "owner", "type": "address"},
        ],
        "name": "withdraw",
        "outputs": [{"name": "shares", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "shares", "type": "uint256"},
            {"name": "receiver", "type": "address"},
            {"name": "owner", "type": "address"},
        ],
        "name": "redeem",
        "outputs": [{"name": "assets", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "totalAssets",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "totalSupply",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    # Token units (6 decimals) per whole share
    {
        "inputs": [],
        "name": "vaultValuePerShare",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    # Annual yield in basis points
    {
        "inputs": [],
        "name": "previewAPY",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]


_LOAN_NFT_ABI: List[Dict[str, Any]] = [
    {
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "name": "getLoan",
        "outputs": [
            {
                "components": [
                    {"name": "borrower", "type": "address"},
                    {"name": "principal", "type": "uint256"},
                    {"name": "interestRate", "type": "uint256"},
                    {"name": "termLength", "type": "uint256"},
                    {"name": "startTime", "type": "uint256"},
                    {"name": "amountPaid", "type": "uint256"},
                    {"name": "isActive", "type": "bool"},
                ],
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "totalSupply",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "name": "ownerOf",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    # Vault owner only
    {
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "name": "markRepaid",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "name": "markDefault",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


_COLLECTOR_ABI: List[Dict[str, Any]] = [
    {
        "inputs": [
            {"name": "loanId", "type": "uint256"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "recordPayment",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "loanId", "type": "uint256"}],
        "name": "totalRepaid",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "feeBps",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "feeRecipient",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]


CONTRACT_ABIS: Dict[ContractId, List[Dict[str, Any]]] = {
    ContractId.TOKEN: _ERC20_ABI,
    ContractId.VAULT: _VAULT_ABI,
    ContractId.LOAN_NFT: _LOAN_NFT_ABI,
    ContractId.COLLECTOR: _COLLECTOR_ABI,
}
