"""
Convexo Platform
================

Client-side transaction workflow and financial reconciliation for the Convexo
lending protocol: a yield vault, a loan-note registry and a payment collector
deployed on an EVM chain.

Subpackages
-----------
engine
    Unit conversion, ledger schemas, balance reads, financial calculations and
    the transaction workflow orchestrator.
web3_integration
    Contract ABIs, signing identities, the ledger gateway and sessions.
"""

__version__ = "0.1.0"
