"""
Transaction Workflow Tests
==========================

Tests for allowance-then-act sequencing, fail-fast preconditions, typed
failure reasons, at-most-once submission and cancellation. The fake gateway
records every write and confirmation in order.
"""

import pytest

from convexo_platform.engine.units import share_amount, token_amount
from convexo_platform.engine.workflow import (
    ActionKind,
    StepKind,
    WorkflowOrchestrator,
    WorkflowState,
    WorkflowStatus,
    validate_deposit,
    validate_redeem,
    validate_repay,
    validate_withdraw,
)
from convexo_platform.errors import (
    ConfirmationTimeoutError,
    FailureReason,
    InsufficientBalanceError,
    LoanNotFoundError,
    ReadError,
    SubmissionError,
    UserRejectedError,
)
from convexo_platform.unit_tests.fakes import (
    COLLECTOR_ADDRESS,
    USER,
    VAULT_ADDRESS,
    loan_struct,
    make_loan,
)
from convexo_platform.web3_integration.abis import ContractId

RECEIVER = "0x7777777777777777777777777777777777777777"


@pytest.fixture
def orchestrator(gateway):
    return WorkflowOrchestrator(gateway)


def write_methods(gateway):
    return [method for _, method, _ in gateway.writes]


# =============================================================================
# Precondition validators
# =============================================================================

class TestPreconditionValidators:
    """Tests for the pure validators used before any write."""

    def test_deposit_validator_is_repeatable(self):
        """
        Same inputs give the same answer on every call.
        """
        assert validate_deposit(token_amount("10"), token_amount("50")) is None
        assert validate_deposit(token_amount("10"), token_amount("50")) is None

        reasons = []
        for _ in range(2):
            with pytest.raises(InsufficientBalanceError) as exc_info:
                validate_deposit(token_amount("100"), token_amount("50"))
            reasons.append(exc_info.value.reason)
        assert reasons == [FailureReason.INSUFFICIENT_BALANCE] * 2

    def test_zero_amount_is_invalid(self):
        """
        Amounts must be strictly positive.
        """
        with pytest.raises(Exception) as exc_info:
            validate_deposit(token_amount("0"), token_amount("50"))
        assert exc_info.value.reason == FailureReason.INVALID_AMOUNT

    def test_repay_checks_loan_state(self):
        """
        Missing, inactive and overpaid loans are each told apart.
        """
        balance = token_amount("10000")
        with pytest.raises(LoanNotFoundError):
            validate_repay(token_amount("1"), balance, None)

        with pytest.raises(Exception) as exc_info:
            validate_repay(token_amount("1"), balance, make_loan(is_active=False))
        assert exc_info.value.reason == FailureReason.LOAN_NOT_ACTIVE

        with pytest.raises(Exception) as exc_info:
            validate_repay(token_amount("1150.01"), balance, make_loan(), allow_overpayment=False)
        assert exc_info.value.reason == FailureReason.OVERPAYMENT

        assert validate_repay(token_amount("1150.01"), balance, make_loan(), allow_overpayment=True) is None

    def test_redeem_and_withdraw_bounds(self):
        """
        Redeem is bounded by shares, withdraw by the shares' asset value.
        """
        shares = share_amount("10")
        assert validate_redeem(share_amount("10"), shares) is None
        assert validate_withdraw(token_amount("10.5"), shares, token_amount("1.05")) is None
        with pytest.raises(Exception) as exc_info:
            validate_withdraw(token_amount("10.500001"), shares, token_amount("1.05"))
        assert exc_info.value.reason == FailureReason.INSUFFICIENT_SHARES


# =============================================================================
# Deposit
# =============================================================================

class TestDepositWorkflow:
    """Tests for deposit sequencing."""

    def test_insufficient_allowance_approves_then_deposits(self, gateway, orchestrator):
        """
        Approve, await approve, deposit, await deposit, in that order.
        """
        gateway.set_token_balance(USER, 500_000_000)
        gateway.set_allowance(USER, ContractId.VAULT, 10_000_000)

        result = orchestrator.deposit("100.00")

        assert result.succeeded
        assert gateway.events == [
            ("write", "approve"),
            ("confirm", "approve"),
            ("write", "deposit"),
            ("confirm", "deposit"),
        ]
        assert gateway.writes == [
            (ContractId.TOKEN, "approve", (VAULT_ADDRESS, 100_000_000)),
            (ContractId.VAULT, "deposit", (100_000_000, USER)),
        ]
        assert result.tx_handle.method == "deposit"
        assert result.state == WorkflowState.ACTION_CONFIRMED
        assert [step.kind for step in result.steps] == [StepKind.AUTHORIZATION, StepKind.ACTION]

    def test_sufficient_allowance_deposits_only(self, gateway, orchestrator):
        """
        An allowance that already covers the amount skips authorization.
        """
        gateway.set_token_balance(USER, 500_000_000)
        gateway.set_allowance(USER, ContractId.VAULT, 100_000_000)

        result = orchestrator.deposit(token_amount("100"), receiver=RECEIVER)

        assert result.succeeded
        assert gateway.writes == [(ContractId.VAULT, "deposit", (100_000_000, RECEIVER))]
        assert result.writes_submitted == 1

    def test_insufficient_balance_submits_nothing(self, gateway, orchestrator):
        """
        Deposit of 100.00 against a 50.00 balance fails with zero writes.
        """
        gateway.set_token_balance(USER, 50_000_000)
        gateway.set_allowance(USER, ContractId.VAULT, 0)

        result = orchestrator.deposit("100.00")

        assert not result.succeeded
        assert result.failure_reason == FailureReason.INSUFFICIENT_BALANCE
        assert result.state == WorkflowState.FAILED
        assert gateway.writes == []
        assert result.writes_submitted == 0

    @pytest.mark.parametrize("amount", ["0", "abc", "-5", 1.5, "0.0000001"])
    def test_invalid_amount_submits_nothing(self, gateway, orchestrator, amount):
        """
        Malformed, zero, negative, float and over-precise amounts fail fast.
        """
        result = orchestrator.deposit(amount)
        assert result.failure_reason == FailureReason.INVALID_AMOUNT
        assert gateway.writes == []
        assert gateway.read_calls == []

    def test_invalid_receiver_submits_nothing(self, gateway, orchestrator):
        """
        A malformed receiver address fails before any write.
        """
        gateway.set_token_balance(USER, 500_000_000)
        result = orchestrator.deposit("1", receiver="0x1234")
        assert result.failure_reason == FailureReason.INVALID_ADDRESS
        assert gateway.writes == []

    def test_without_identity(self, gateway, orchestrator):
        """
        No signing identity means no reads and no writes.
        """
        gateway.identity = None
        result = orchestrator.deposit("1")
        assert result.failure_reason == FailureReason.NO_SIGNING_IDENTITY
        assert gateway.writes == []

    def test_read_failure_submits_nothing(self, gateway, orchestrator):
        """
        A failed precondition read fails the workflow as READ_ERROR.
        """
        gateway.set_token_balance(USER, ReadError("node down"))
        result = orchestrator.deposit("1")
        assert result.failure_reason == FailureReason.READ_ERROR
        assert gateway.writes == []

    def test_reverted_authorization_stops_workflow(self, gateway, orchestrator):
        """
        A reverted approve is a SubmissionError and the deposit is never sent.
        """
        gateway.set_token_balance(USER, 500_000_000)
        gateway.set_allowance(USER, ContractId.VAULT, 0)
        gateway.receipt_status["approve"] = 0

        result = orchestrator.deposit("100")

        assert result.failure_reason == FailureReason.SUBMISSION_ERROR
        assert write_methods(gateway) == ["approve"]
        assert result.receipt is not None and not result.receipt.succeeded

    def test_authorization_timeout_never_submits_action(self, gateway, orchestrator):
        """
        An unconfirmed approve is not treated as sufficient.
        """
        gateway.set_token_balance(USER, 500_000_000)
        gateway.set_allowance(USER, ContractId.VAULT, 0)
        gateway.confirm_errors["approve"] = ConfirmationTimeoutError("pending-approve", 120)

        result = orchestrator.deposit("100")

        assert result.failure_reason == FailureReason.TIMED_OUT
        assert write_methods(gateway) == ["approve"]
        assert result.state == WorkflowState.FAILED

    def test_action_timeout_reports_action_handle(self, gateway, orchestrator):
        """
        A deposit whose fate is unknown still reports its handle.
        """
        gateway.set_token_balance(USER, 500_000_000)
        gateway.set_allowance(USER, ContractId.VAULT, 500_000_000)

        def time_out(handle):
            gateway.confirm_errors[handle.method] = ConfirmationTimeoutError(handle, 120)

        gateway.on_confirm = time_out
        result = orchestrator.deposit("100")

        assert result.failure_reason == FailureReason.TIMED_OUT
        assert result.tx_handle.method == "deposit"
        assert write_methods(gateway) == ["deposit"]

    def test_user_rejection_is_not_retried(self, gateway, orchestrator):
        """
        A declined approve ends the workflow after one attempt.
        """
        gateway.set_token_balance(USER, 500_000_000)
        gateway.set_allowance(USER, ContractId.VAULT, 0)
        gateway.write_errors["approve"] = UserRejectedError("declined")

        result = orchestrator.deposit("100")

        assert result.failure_reason == FailureReason.USER_REJECTED
        assert result.writes_submitted == 0
        assert len(result.steps) == 1

    def test_submission_error_is_not_retried(self, gateway, orchestrator):
        """
        A broadcast failure fails the workflow; nothing is resent.
        """
        gateway.set_token_balance(USER, 500_000_000)
        gateway.set_allowance(USER, ContractId.VAULT, 500_000_000)
        gateway.write_errors["deposit"] = SubmissionError("nonce too low")

        result = orchestrator.deposit("100")

        assert result.failure_reason == FailureReason.SUBMISSION_ERROR
        assert gateway.writes == []

    def test_no_action_confirmation_wait(self, gateway):
        """
        With action confirmation disabled, success means accepted for broadcast.
        """
        gateway.set_token_balance(USER, 500_000_000)
        gateway.set_allowance(USER, ContractId.VAULT, 500_000_000)
        orchestrator = WorkflowOrchestrator(gateway, await_action_confirmation=False)

        result = orchestrator.deposit("100")

        assert result.succeeded
        assert result.receipt is None
        assert gateway.events == [("write", "deposit")]

    def test_unawaited_action_ends_in_terminal_success_state(self, gateway):
        """
        Without awaiting the action, the workflow still reports SUCCEEDED.
        """
        gateway.set_token_balance(USER, 500_000_000)
        gateway.set_allowance(USER, ContractId.VAULT, 500_000_000)
        workflow = WorkflowOrchestrator(gateway, await_action_confirmation=False).plan_deposit("100")

        result = workflow.run()

        assert result.succeeded
        assert result.state == WorkflowState.ACTION_ACCEPTED
        assert workflow.state == WorkflowState.ACTION_ACCEPTED
        assert workflow.status == WorkflowStatus.SUCCEEDED


# =============================================================================
# Repay
# =============================================================================

class TestRepayWorkflow:
    """Tests for loan repayment sequencing."""

    def test_approves_collector_then_records_payment(self, gateway, orchestrator):
        """
        Repay authorizes the collector, then records the payment.
        """
        gateway.set_loan(3, loan_struct())
        gateway.set_token_balance(USER, 1_000_000_000)
        gateway.set_allowance(USER, ContractId.COLLECTOR, 0)

        result = orchestrator.repay(3, "250")

        assert result.succeeded
        assert result.action == ActionKind.REPAY
        assert gateway.writes == [
            (ContractId.TOKEN, "approve", (COLLECTOR_ADDRESS, 250_000_000)),
            (ContractId.COLLECTOR, "recordPayment", (3, 250_000_000)),
        ]

    def test_inactive_loan_submits_nothing(self, gateway, orchestrator):
        """
        Repaying an inactive loan fails with LOAN_NOT_ACTIVE and zero writes.
        """
        gateway.set_loan(3, loan_struct(is_active=False))
        gateway.set_token_balance(USER, 1_000_000_000)

        result = orchestrator.repay(3, "10")

        assert result.failure_reason == FailureReason.LOAN_NOT_ACTIVE
        assert gateway.writes == []

    def test_missing_loan(self, gateway, orchestrator):
        """
        A loan id with no record fails with LOAN_NOT_FOUND.
        """
        gateway.set_loan(8, ReadError("reverted", reverted=True))
        result = orchestrator.repay(8, "10")
        assert result.failure_reason == FailureReason.LOAN_NOT_FOUND
        assert gateway.writes == []

    @pytest.mark.parametrize("loan_id", [0, -1, "3", True, 2 ** 256])
    def test_invalid_loan_id(self, gateway, orchestrator, loan_id):
        """
        Loan ids must be positive integers that fit in uint256.
        """
        result = orchestrator.repay(loan_id, "10")
        assert result.failure_reason == FailureReason.INVALID_AMOUNT
        assert gateway.writes == []

    def test_insufficient_balance(self, gateway, orchestrator):
        """
        The payer's token balance must cover the payment.
        """
        gateway.set_loan(3, loan_struct())
        gateway.set_token_balance(USER, 5_000_000)
        result = orchestrator.repay(3, "10")
        assert result.failure_reason == FailureReason.INSUFFICIENT_BALANCE
        assert gateway.writes == []

    def test_overpayment_guard(self, gateway):
        """
        With the guard on, paying more than is owed fails fast.
        """
        gateway.set_loan(3, loan_struct(amount_paid=1_000_000_000))
        gateway.set_token_balance(USER, 1_000_000_000)
        gateway.set_allowance(USER, ContractId.COLLECTOR, 1_000_000_000)

        guarded = WorkflowOrchestrator(gateway, allow_overpayment=False)
        assert guarded.repay(3, "150.000001").failure_reason == FailureReason.OVERPAYMENT
        assert gateway.writes == []

        assert guarded.repay(3, "150").succeeded

    def test_preview_repayment(self, gateway, orchestrator):
        """
        Preview reads the current fee and makes no writes.
        """
        gateway.set_loan(3, loan_struct())
        gateway.reads[(ContractId.COLLECTOR, "feeBps", ())] = 250

        breakdown = orchestrator.preview_repayment(3, "1000")

        assert breakdown.fee == token_amount("25")
        assert breakdown.net == token_amount("975")
        assert gateway.writes == []

    def test_preview_unknown_loan_raises(self, gateway, orchestrator):
        """
        Preview is a plain read helper and raises on an unknown loan.
        """
        gateway.set_loan(4, ReadError("reverted", reverted=True))
        with pytest.raises(LoanNotFoundError):
            orchestrator.preview_repayment(4, "1")


# =============================================================================
# Withdraw / Redeem
# =============================================================================

class TestVaultExitWorkflows:
    """Tests for single-step withdraw and redeem."""

    def test_withdraw_is_single_step(self, gateway, orchestrator):
        """
        Withdraw submits one write, validated against share value.
        """
        gateway.set_share_balance(USER, 10 * 10**18)
        gateway.set_vault_stats(value_per_share=1_050_000)

        result = orchestrator.withdraw("10.5", receiver=RECEIVER)

        assert result.succeeded
        assert gateway.writes == [(ContractId.VAULT, "withdraw", (10_500_000, RECEIVER, USER))]

    def test_withdraw_more_than_share_value(self, gateway, orchestrator):
        """
        Withdrawing beyond the shares' value fails with INSUFFICIENT_SHARES.
        """
        gateway.set_share_balance(USER, 10 * 10**18)
        gateway.set_vault_stats(value_per_share=1_050_000)
        result = orchestrator.withdraw("11")
        assert result.failure_reason == FailureReason.INSUFFICIENT_SHARES
        assert gateway.writes == []

    def test_redeem_is_single_step(self, gateway, orchestrator):
        """
        Redeem burns the caller's shares in one write.
        """
        gateway.set_share_balance(USER, 3 * 10**18)
        result = orchestrator.redeem("2")
        assert result.succeeded
        assert gateway.writes == [(ContractId.VAULT, "redeem", (2 * 10**18, USER, USER))]
        assert gateway.events == [("write", "redeem"), ("confirm", "redeem")]

    def test_redeem_more_than_held(self, gateway, orchestrator):
        """
        Redeeming more shares than held fails with INSUFFICIENT_SHARES.
        """
        gateway.set_share_balance(USER, 1 * 10**18)
        result = orchestrator.redeem("2")
        assert result.failure_reason == FailureReason.INSUFFICIENT_SHARES
        assert gateway.writes == []


# =============================================================================
# Loan status writes
# =============================================================================

class TestLoanStatusWorkflows:
    """Tests for markRepaid / markDefault."""

    def test_mark_repaid(self, gateway, orchestrator):
        """
        markRepaid is a single write against the loan registry.
        """
        gateway.set_loan(3, loan_struct())
        result = orchestrator.mark_repaid(3)
        assert result.succeeded
        assert gateway.writes == [(ContractId.LOAN_NFT, "markRepaid", (3,))]

    def test_mark_default_requires_active_loan(self, gateway, orchestrator):
        """
        A closed loan cannot be marked defaulted.
        """
        gateway.set_loan(3, loan_struct(is_active=False))
        result = orchestrator.mark_default(3)
        assert result.failure_reason == FailureReason.LOAN_NOT_ACTIVE
        assert gateway.writes == []


# =============================================================================
# Workflow lifecycle
# =============================================================================

class TestWorkflowLifecycle:
    """Tests for single use, status and cancellation."""

    def test_workflow_runs_once(self, gateway, orchestrator):
        """
        A workflow is single-use.
        """
        gateway.set_share_balance(USER, 3 * 10**18)
        workflow = orchestrator.plan_redeem("1")
        assert workflow.status == WorkflowStatus.PENDING
        workflow.run()
        assert workflow.status == WorkflowStatus.SUCCEEDED
        with pytest.raises(RuntimeError):
            workflow.run()
        assert len(gateway.writes) == 1

    def test_cancel_before_run(self, gateway, orchestrator):
        """
        A cancelled workflow submits nothing.
        """
        gateway.set_token_balance(USER, 500_000_000)
        gateway.set_allowance(USER, ContractId.VAULT, 0)
        workflow = orchestrator.plan_deposit("100")
        workflow.cancel()

        result = workflow.run()

        assert result.failure_reason == FailureReason.CANCELLED
        assert gateway.writes == []

    def test_cancel_after_authorization_stops_action(self, gateway, orchestrator):
        """
        Cancelling while the approve confirms prevents the deposit write.
        """
        gateway.set_token_balance(USER, 500_000_000)
        gateway.set_allowance(USER, ContractId.VAULT, 0)
        workflow = orchestrator.plan_deposit("100")
        gateway.on_confirm = lambda handle: workflow.cancel()

        result = workflow.run()

        assert result.failure_reason == FailureReason.CANCELLED
        assert write_methods(gateway) == ["approve"]
        assert result.tx_handle.method == "approve"
        assert workflow.status == WorkflowStatus.FAILED

    def test_cancel_after_action_submitted_has_no_effect(self, gateway, orchestrator):
        """
        Once the action is out the workflow runs to completion.
        """
        gateway.set_share_balance(USER, 3 * 10**18)
        workflow = orchestrator.plan_redeem("1")
        gateway.on_confirm = lambda handle: workflow.cancel()

        assert workflow.run().succeeded
