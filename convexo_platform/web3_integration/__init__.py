"""Ledger access: contract ABIs, signing identities, the gateway and sessions."""
