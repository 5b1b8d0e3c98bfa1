"""
Ledger Gateway Tests
====================

Tests for the web3-backed gateway: error translation on reads, transaction
building on writes, and the bounded confirmation wait. web3 is replaced by
``unittest.mock`` doubles; nothing touches a network.
"""

from unittest.mock import MagicMock, PropertyMock

import pytest
from web3 import Web3
from web3.exceptions import (
    BadFunctionCallOutput,
    ContractLogicError,
    TransactionNotFound,
    Web3Exception,
)

from convexo_platform.config import ContractAddresses, Settings
from convexo_platform.engine.workflow import WorkflowOrchestrator
from convexo_platform.errors import (
    ConfirmationTimeoutError,
    DecodeError,
    FailureReason,
    NoSigningIdentityError,
    ReadError,
    SubmissionError,
    WrongNetworkError,
)
from convexo_platform.unit_tests.fakes import (
    COLLECTOR_ADDRESS,
    LOAN_NFT_ADDRESS,
    TOKEN_ADDRESS,
    USER,
    VAULT_ADDRESS,
    FakeIdentity,
)
from convexo_platform.web3_integration.abis import ContractId
from convexo_platform.web3_integration.web3_client import LedgerGateway, TxHandle

CHAIN_ID = 84532


class FakeClock:
    """Monotonic clock advanced only by the injected sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def mock_w3():
    w3 = MagicMock()
    w3.eth.contract.side_effect = lambda address, abi: MagicMock(name=f"contract-{address}")
    w3.eth.gas_price = 1_000
    w3.eth.get_transaction_count.return_value = 7
    return w3


def receipt(status=1, block=10):
    return {"transactionHash": b"\xaa" * 32, "blockNumber": block, "status": status, "gasUsed": 50_000}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def w3():
    return mock_w3()


@pytest.fixture
def ledger(w3, clock):
    addresses = ContractAddresses(
        token=TOKEN_ADDRESS, vault=VAULT_ADDRESS, loan_nft=LOAN_NFT_ADDRESS, collector=COLLECTOR_ADDRESS
    )
    return LedgerGateway(
        w3,
        addresses,
        CHAIN_ID,
        FakeIdentity(),
        gas_price_multiplier_bps=12_000,
        confirmation_timeout_seconds=3.0,
        poll_initial_seconds=0.5,
        poll_max_seconds=2.0,
        poll_backoff=2.0,
        sleep=clock.sleep,
        clock=clock,
    )


def contract_fn(ledger, contract_id, method):
    """The mock returned by contract.functions.<method>(...)."""
    return getattr(ledger._contracts[contract_id].functions, method).return_value


def handle(method="approve"):
    return TxHandle(tx_hash="0x" + "aa" * 32, contract_id=ContractId.TOKEN, method=method, sender=USER)


# =============================================================================
# Construction
# =============================================================================

class TestConstruction:
    """Tests for gateway construction."""

    def test_contract_addresses_are_checksummed(self, ledger):
        """
        Configured addresses are exposed in checksummed form.
        """
        assert ledger.contract_address(ContractId.VAULT) == VAULT_ADDRESS
        assert ledger.contract_address(ContractId.COLLECTOR) == COLLECTOR_ADDRESS

    def test_missing_address_rejected(self, w3):
        """
        A contract without an address is a configuration error.
        """
        addresses = ContractAddresses(token="", vault=VAULT_ADDRESS, loan_nft=LOAN_NFT_ADDRESS, collector=COLLECTOR_ADDRESS)
        with pytest.raises(ValueError):
            LedgerGateway(w3, addresses, CHAIN_ID)

    def test_from_settings(self, w3):
        """
        from_settings wires addresses, chain and confirmation config.
        """
        settings = Settings()
        gateway = LedgerGateway.from_settings(settings, w3=w3)
        assert gateway.chain_id == settings.chain_id
        assert gateway.confirmation_timeout_seconds == settings.confirmation_timeout_seconds
        assert gateway.identity is None


# =============================================================================
# Reads
# =============================================================================

class TestRead:
    """Tests for read() error translation."""

    def test_returns_decoded_value(self, ledger):
        """
        A successful call returns the value unchanged.
        """
        contract_fn(ledger, ContractId.TOKEN, "balanceOf").call.return_value = 5
        assert ledger.read(ContractId.TOKEN, "balanceOf", [USER]) == 5

    def test_block_identifier_is_forwarded(self, ledger):
        """
        Pinned reads pass block_identifier to the call.
        """
        fn = contract_fn(ledger, ContractId.VAULT, "totalAssets")
        fn.call.return_value = 1
        ledger.read(ContractId.VAULT, "totalAssets", [], 42)
        fn.call.assert_called_once_with(block_identifier=42)

    def test_revert_is_read_error_flagged_reverted(self, ledger):
        """
        A contract revert is a ReadError with reverted=True.
        """
        contract_fn(ledger, ContractId.LOAN_NFT, "getLoan").call.side_effect = ContractLogicError("execution reverted")
        with pytest.raises(ReadError) as exc_info:
            ledger.read(ContractId.LOAN_NFT, "getLoan", [1])
        assert exc_info.value.reverted

    def test_undecodable_output_is_decode_error(self, ledger):
        """
        Output that does not match the ABI is a DecodeError.
        """
        contract_fn(ledger, ContractId.VAULT, "previewAPY").call.side_effect = BadFunctionCallOutput("empty")
        with pytest.raises(DecodeError) as exc_info:
            ledger.read(ContractId.VAULT, "previewAPY")
        assert exc_info.value.reason == FailureReason.DECODE_ERROR

    @pytest.mark.parametrize("error", [ConnectionError("refused"), Web3Exception("rpc"), ValueError("bad")])
    def test_transport_failure_is_read_error(self, ledger, error):
        """
        Node and transport failures are ReadError with the cause attached.
        """
        contract_fn(ledger, ContractId.TOKEN, "balanceOf").call.side_effect = error
        with pytest.raises(ReadError) as exc_info:
            ledger.read(ContractId.TOKEN, "balanceOf", [USER])
        assert not exc_info.value.reverted
        assert exc_info.value.cause is error

    def test_latest_block(self, ledger, w3):
        """
        latest_block reads the node's block number.
        """
        w3.eth.block_number = 1234
        assert ledger.latest_block() == 1234


# =============================================================================
# Writes
# =============================================================================

class TestWrite:
    """Tests for write() sequencing and transaction building."""

    def test_submits_one_transaction(self, ledger, w3):
        """
        A write checks the network, builds once, submits once.
        """
        fn = contract_fn(ledger, ContractId.TOKEN, "approve")
        fn.build_transaction.return_value = {"to": TOKEN_ADDRESS, "data": "0x"}

        tx = ledger.write(ContractId.TOKEN, "approve", [VAULT_ADDRESS, 100])

        identity = ledger.identity
        assert identity.networks == [CHAIN_ID]
        assert identity.submissions == [{"to": TOKEN_ADDRESS, "data": "0x"}]
        assert tx.tx_hash == "0x" + f"{1:064x}"
        assert tx.method == "approve"
        assert tx.sender == USER

    def test_transaction_parameters(self, ledger, w3):
        """
        Nonce is the pending count; gas price carries the multiplier.
        """
        fn = contract_fn(ledger, ContractId.VAULT, "deposit")
        ledger.write(ContractId.VAULT, "deposit", [1, USER])
        params = fn.build_transaction.call_args[0][0]
        assert params == {
            "from": USER,
            "nonce": 7,
            "gas": 500_000,
            "gasPrice": 1_200,
            "chainId": CHAIN_ID,
        }
        w3.eth.get_transaction_count.assert_called_once_with(USER, "pending")

    def test_no_identity(self, ledger):
        """
        Without a signing identity nothing is built or sent.
        """
        ledger.detach_identity()
        with pytest.raises(NoSigningIdentityError):
            ledger.write(ContractId.TOKEN, "approve", [VAULT_ADDRESS, 1])
        contract_fn(ledger, ContractId.TOKEN, "approve").build_transaction.assert_not_called()

    def test_wrong_network_stops_submission(self, ledger):
        """
        A network mismatch fails before anything is submitted.
        """
        identity = ledger.identity
        identity.ensure_network = MagicMock(side_effect=WrongNetworkError(CHAIN_ID, 1))
        with pytest.raises(WrongNetworkError):
            ledger.write(ContractId.TOKEN, "approve", [VAULT_ADDRESS, 1])
        assert identity.submissions == []

    def test_build_failure_is_submission_error(self, ledger, w3):
        """
        Failing to build the transaction is a SubmissionError.
        """
        w3.eth.get_transaction_count.side_effect = ConnectionError("down")
        with pytest.raises(SubmissionError):
            ledger.write(ContractId.TOKEN, "approve", [VAULT_ADDRESS, 1])
        assert ledger.identity.submissions == []


# =============================================================================
# Argument encoding
# =============================================================================

@pytest.fixture
def abi_ledger():
    """Gateway over a real Web3 instance so calls are ABI-encoded for real."""
    addresses = ContractAddresses(
        token=TOKEN_ADDRESS, vault=VAULT_ADDRESS, loan_nft=LOAN_NFT_ADDRESS, collector=COLLECTOR_ADDRESS
    )
    return LedgerGateway(Web3(), addresses, CHAIN_ID, FakeIdentity())


class TestArgumentEncoding:
    """Tests for arguments that do not fit the contract ABI."""

    def test_unencodable_read_is_read_error(self, abi_ledger):
        """
        A uint256 overflow on a read is a ReadError, not a raw web3 exception.
        """
        with pytest.raises(ReadError) as exc_info:
            abi_ledger.read(ContractId.LOAN_NFT, "getLoan", [2 ** 256])
        assert exc_info.value.reason == FailureReason.READ_ERROR
        assert not exc_info.value.reverted

    def test_unencodable_write_is_submission_error(self, abi_ledger):
        """
        A uint256 overflow on a write fails before anything is signed.
        """
        with pytest.raises(SubmissionError) as exc_info:
            abi_ledger.write(ContractId.TOKEN, "approve", [COLLECTOR_ADDRESS, 2 ** 256])
        assert exc_info.value.reason == FailureReason.SUBMISSION_ERROR
        assert abi_ledger.identity.submissions == []

    @pytest.mark.parametrize("loan_id", [2 ** 256, 2 ** 300])
    def test_oversized_loan_id_fails_workflow(self, abi_ledger, loan_id):
        """
        Repaying a loan id wider than uint256 ends in a typed failure with zero writes.
        """
        orchestrator = WorkflowOrchestrator(abi_ledger)
        result = orchestrator.repay(loan_id, "10")
        assert not result.succeeded
        assert result.failure_reason == FailureReason.INVALID_AMOUNT
        assert orchestrator.mark_default(loan_id).failure_reason == FailureReason.INVALID_AMOUNT
        assert abi_ledger.identity.submissions == []


# =============================================================================
# Confirmation
# =============================================================================

class TestAwaitConfirmation:
    """Tests for the bounded, backing-off confirmation wait."""

    def test_polls_until_mined(self, ledger, w3, clock):
        """
        Not-found polls back off until the receipt appears.
        """
        w3.eth.get_transaction_receipt.side_effect = [
            TransactionNotFound("pending"),
            TransactionNotFound("pending"),
            receipt(),
        ]
        confirmed = ledger.await_confirmation(handle())
        assert confirmed.succeeded
        assert confirmed.block_number == 10
        assert clock.sleeps == [0.5, 1.0]

    def test_reverted_receipt_is_returned(self, ledger, w3):
        """
        A reverted transaction is reported, not raised, by the gateway.
        """
        w3.eth.get_transaction_receipt.return_value = receipt(status=0)
        assert not ledger.await_confirmation(handle()).succeeded

    def test_times_out_without_hanging(self, ledger, w3, clock):
        """
        The wait is bounded; the timeout carries the handle.
        """
        w3.eth.get_transaction_receipt.side_effect = TransactionNotFound("pending")
        pending = handle()
        with pytest.raises(ConfirmationTimeoutError) as exc_info:
            ledger.await_confirmation(pending)
        assert exc_info.value.tx_handle is pending
        assert exc_info.value.reason == FailureReason.TIMED_OUT
        assert clock.sleeps == [0.5, 1.0, 1.5]
        assert clock.now == pytest.approx(3.0)

    def test_poll_errors_do_not_abort_wait(self, ledger, w3):
        """
        A transient node error while polling keeps the wait going.
        """
        w3.eth.get_transaction_receipt.side_effect = [ConnectionError("blip"), receipt()]
        assert ledger.await_confirmation(handle()).succeeded

    def test_waits_for_confirmation_depth(self, ledger, w3, clock):
        """
        With confirmation_blocks=3 the receipt must be 3 blocks deep.
        """
        ledger.confirmation_blocks = 3
        w3.eth.get_transaction_receipt.return_value = receipt(block=10)
        type(w3.eth).block_number = PropertyMock(side_effect=[10, 11, 12])
        assert ledger.await_confirmation(handle()).block_number == 10
        assert len(clock.sleeps) == 2
