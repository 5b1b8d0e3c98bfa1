"""
Convexo Platform Unit Tests
===========================

Test Modules
------------
test_units
    Decimal <-> fixed-point conversion and LedgerAmount arithmetic.
test_financials
    Remaining balance, repayment progress, fees and vault valuation.
test_ledger_schema
    Decoding raw contract returns into validated records.
test_reader
    Balance, allowance, vault and loan reads over a fake gateway.
test_gateway
    Read/write/confirmation behaviour of the ledger gateway over mocked web3.
test_identity
    Local-key and wallet-provider signing identities.
test_workflow
    Step ordering, preconditions, failures and cancellation of workflows.
test_session
    Session construction and teardown.

Running Tests
-------------
Execute all tests with pytest::

    pytest convexo_platform/unit_tests/ -v
"""
