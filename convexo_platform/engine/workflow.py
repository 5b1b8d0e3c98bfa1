"""
Transaction Workflow Orchestrator
=================================

Turns one user intent ("deposit X", "repay loan Y", "redeem Z shares") into
the minimal, strictly ordered sequence of ledger writes, and reports a single
terminal outcome.

State machine (per workflow)::

    IDLE -> CHECKING_PRECONDITIONS
         -> [NEEDS_AUTHORIZATION -> AUTHORIZATION_SUBMITTED -> AUTHORIZATION_CONFIRMED]
         -> ACTION_SUBMITTED -> ACTION_CONFIRMED
    ACTION_SUBMITTED -> ACTION_ACCEPTED   (action confirmation not awaited)
    any state -> FAILED

ACTION_CONFIRMED and ACTION_ACCEPTED both report ``WorkflowStatus.SUCCEEDED``.

Guarantees
----------
1. Preconditions are checked against fresh reads before any write. A request
   that fails validation issues zero writes.
2. An authorization is only treated as sufficient once it is *confirmed*;
   the dependent action is never submitted against a merely submitted
   approval.
3. Each write step of a workflow is submitted at most once. Nothing here
   retries: a failed step fails the workflow and retrying is the caller's
   decision.
4. Cancellation is honoured up to the moment the next write would be
   submitted. A write that is already out cannot be recalled.

Example
-------
>>> orchestrator = WorkflowOrchestrator(gateway)
>>> result = orchestrator.deposit("100.00")
>>> result.succeeded, result.tx_handle.tx_hash
(True, '0x...')

>>> workflow = orchestrator.plan_repay(loan_id=3, amount="25")
>>> # from another thread: workflow.cancel()
>>> result = workflow.run()
>>> result.failure_reason
<FailureReason.CANCELLED: 'CANCELLED'>
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Callable, List, Optional, Tuple, Union

from web3 import Web3

from ..errors import (
    ConvexoError,
    FailureReason,
    InsufficientBalanceError,
    InsufficientSharesError,
    InvalidAddressError,
    InvalidAmountError,
    LoanNotActiveError,
    LoanNotFoundError,
    NoSigningIdentityError,
    OverpaymentError,
    TransactionRevertedError,
    WorkflowCancelledError,
)
from ..web3_integration.abis import ContractId
from .financials import FeeBreakdown, fee_breakdown, remaining_balance, value_of_shares
from .ledger_schema import ConfirmationReceipt, LoanRecord
from .reader import BalanceReader
from .units import SHARE_DECIMALS, TOKEN_DECIMALS, AmountInput, LedgerAmount, coerce_amount

logger = logging.getLogger("CONVEXO.Workflow")

UINT256_MAX = 2 ** 256 - 1

Amount = Union[AmountInput, LedgerAmount]


class ActionKind(str, Enum):
    """Value-moving requests the orchestrator understands."""
    DEPOSIT = "deposit"
    REPAY = "repay"
    WITHDRAW = "withdraw"
    REDEEM = "redeem"
    MARK_REPAID = "mark_repaid"
    MARK_DEFAULT = "mark_default"


class WorkflowState(str, Enum):
    """Fine-grained position in the workflow state machine."""
    IDLE = "idle"
    CHECKING_PRECONDITIONS = "checking_preconditions"
    NEEDS_AUTHORIZATION = "needs_authorization"
    AUTHORIZATION_SUBMITTED = "authorization_submitted"
    AUTHORIZATION_CONFIRMED = "authorization_confirmed"
    ACTION_SUBMITTED = "action_submitted"
    ACTION_CONFIRMED = "action_confirmed"
    ACTION_ACCEPTED = "action_accepted"
    FAILED = "failed"


class WorkflowStatus(str, Enum):
    """Coarse status exposed to callers."""
    PENDING = "pending"
    STEP_SUBMITTED = "step_submitted"
    STEP_CONFIRMED = "step_confirmed"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_STATUS_BY_STATE = {
    WorkflowState.IDLE: WorkflowStatus.PENDING,
    WorkflowState.CHECKING_PRECONDITIONS: WorkflowStatus.PENDING,
    WorkflowState.NEEDS_AUTHORIZATION: WorkflowStatus.PENDING,
    WorkflowState.AUTHORIZATION_SUBMITTED: WorkflowStatus.STEP_SUBMITTED,
    WorkflowState.AUTHORIZATION_CONFIRMED: WorkflowStatus.STEP_CONFIRMED,
    WorkflowState.ACTION_SUBMITTED: WorkflowStatus.STEP_SUBMITTED,
    WorkflowState.ACTION_CONFIRMED: WorkflowStatus.SUCCEEDED,
    WorkflowState.ACTION_ACCEPTED: WorkflowStatus.SUCCEEDED,
    WorkflowState.FAILED: WorkflowStatus.FAILED,
}


class StepKind(str, Enum):
    AUTHORIZATION = "authorization"
    ACTION = "action"


@dataclass
class WriteStep:
    """
    One ledger write within a workflow.

    Attributes
    ----------
    kind : StepKind
        Authorization (token approve) or the requested action itself.
    contract_id : ContractId
        Contract the write targets.
    method : str
        ABI function name.
    args : tuple
        Positional call arguments, already in fixed-point integer units.
    tx_handle : TxHandle, optional
        Set once the gateway accepted the transaction for broadcast.
    receipt : ConfirmationReceipt, optional
        Set once the transaction was mined.
    """
    kind: StepKind
    contract_id: ContractId
    method: str
    args: Tuple[Any, ...] = ()
    tx_handle: Optional[Any] = None
    receipt: Optional[ConfirmationReceipt] = None

    @property
    def submitted(self) -> bool:
        return self.tx_handle is not None

    @property
    def confirmed(self) -> bool:
        return self.receipt is not None and self.receipt.succeeded


@dataclass(frozen=True)
class WorkflowResult:
    """
    Terminal outcome of one workflow.

    ``failure_reason`` is a stable :class:`FailureReason`; ``message`` is for
    humans. On a timeout ``tx_handle`` still identifies the transaction whose
    fate is unknown, so the caller can re-query state before retrying.
    """
    action: ActionKind
    succeeded: bool
    state: WorkflowState
    tx_handle: Optional[Any] = None
    receipt: Optional[ConfirmationReceipt] = None
    failure_reason: Optional[FailureReason] = None
    message: str = ""
    steps: Tuple[WriteStep, ...] = ()

    @property
    def writes_submitted(self) -> int:
        return sum(1 for step in self.steps if step.submitted)


# =============================================================================
# Precondition validators
# =============================================================================
# Pure functions over already-read values. Each returns None when the request
# may proceed and raises a ValidationError subclass otherwise, so calling one
# twice with the same inputs always gives the same answer.


def validate_positive(amount: LedgerAmount, what: str = "Amount") -> None:
    if amount.is_zero:
        raise InvalidAmountError(f"{what} must be strictly positive")


def validate_deposit(amount: LedgerAmount, token_balance: LedgerAmount) -> None:
    """Deposit needs a positive amount covered by the token balance."""
    validate_positive(amount)
    if amount > token_balance:
        raise InsufficientBalanceError(f"Deposit of {amount} exceeds token balance of {token_balance}")


def validate_repay(
    amount: LedgerAmount,
    token_balance: LedgerAmount,
    loan: Optional[LoanRecord],
    allow_overpayment: bool = True,
) -> None:
    """
    Repayment checks, in order: positive amount, loan exists, loan active,
    balance covers the amount, and (optionally) no overpayment.
    """
    validate_positive(amount)
    if loan is None:
        raise LoanNotFoundError("Loan does not exist")
    if not loan.is_active:
        raise LoanNotActiveError(f"Loan {loan.loan_id} is not active")
    if amount > token_balance:
        raise InsufficientBalanceError(f"Repayment of {amount} exceeds token balance of {token_balance}")
    if not allow_overpayment:
        owed = remaining_balance(loan)
        if amount > owed:
            raise OverpaymentError(f"Repayment of {amount} exceeds remaining balance of {owed} on loan {loan.loan_id}")


def validate_redeem(shares: LedgerAmount, share_balance: LedgerAmount) -> None:
    validate_positive(shares, "Shares")
    if shares > share_balance:
        raise InsufficientSharesError(f"Redeem of {shares} shares exceeds share balance of {share_balance}")


def validate_withdraw(
    assets: LedgerAmount,
    share_balance: LedgerAmount,
    value_per_share: LedgerAmount,
) -> None:
    """Withdraw is in asset units, bounded by what the owner's shares are worth."""
    validate_positive(assets)
    available = value_of_shares(share_balance, value_per_share)
    if assets > available:
        raise InsufficientSharesError(f"Withdrawal of {assets} exceeds share value of {available}")


def validate_loan_id(loan_id: Any) -> int:
    if isinstance(loan_id, bool) or not isinstance(loan_id, int) or loan_id <= 0:
        raise InvalidAmountError(f"Loan id must be a positive integer, got {loan_id!r}")
    if loan_id > UINT256_MAX:
        raise InvalidAmountError(f"Loan id does not fit in uint256: {loan_id}")
    return loan_id


def validate_address(address: Any, what: str = "Address") -> str:
    if not isinstance(address, str) or not Web3.is_address(address):
        raise InvalidAddressError(f"{what} is not a valid address: {address!r}")
    return Web3.to_checksum_address(address)


# =============================================================================
# Workflow
# =============================================================================


class TransactionWorkflow:
    """
    Ephemeral, single-use record of one request in flight.

    Built by :class:`WorkflowOrchestrator` (``plan_*`` methods) and executed
    once with :meth:`run`. ``cancel`` may be called from any thread.
    """

    def __init__(self, action: ActionKind, description: str, runner: Callable[["TransactionWorkflow"], WorkflowResult]):
        self.action = action
        self.description = description
        self.state = WorkflowState.IDLE
        self.steps: List[WriteStep] = []
        self.result: Optional[WorkflowResult] = None
        self._runner = runner
        self._cancel_event = threading.Event()
        self._started = False
        self._start_lock = threading.Lock()

    @property
    def status(self) -> WorkflowStatus:
        return _STATUS_BY_STATE[self.state]

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Request cancellation; takes effect before the next write, if any."""
        self._cancel_event.set()
        logger.info(f"Cancellation requested for {self.description}")

    def run(self) -> WorkflowResult:
        """Execute the workflow. A workflow can only be run once."""
        with self._start_lock:
            if self._started:
                raise RuntimeError(f"Workflow '{self.description}' has already been run")
            self._started = True
        return self._runner(self)

    # -------------------------------------------------------------------------
    # Transitions (driven by the orchestrator)
    # -------------------------------------------------------------------------

    def _transition(self, state: WorkflowState) -> None:
        logger.debug(f"{self.description}: {self.state.value} -> {state.value}")
        self.state = state

    def _last_handle(self) -> Optional[Any]:
        for step in reversed(self.steps):
            if step.tx_handle is not None:
                return step.tx_handle
        return None

    def _succeed(self, step: WriteStep) -> WorkflowResult:
        self.result = WorkflowResult(
            action=self.action,
            succeeded=True,
            state=self.state,
            tx_handle=step.tx_handle,
            receipt=step.receipt,
            steps=tuple(self.steps),
        )
        logger.info(f"{self.description} succeeded: {step.tx_handle.tx_hash}")
        return self.result

    def _fail(self, exc: ConvexoError) -> WorkflowResult:
        failed_in = self.state
        self._transition(WorkflowState.FAILED)
        handle = getattr(exc, "tx_handle", None) or self._last_handle()
        self.result = WorkflowResult(
            action=self.action,
            succeeded=False,
            state=self.state,
            tx_handle=handle,
            receipt=getattr(exc, "receipt", None),
            failure_reason=exc.reason,
            message=exc.message,
            steps=tuple(self.steps),
        )
        logger.warning(f"{self.description} failed during {failed_in.value}: {exc.reason.value}: {exc.message}")
        return self.result


# Authorization requirement returned by a precondition check: which contract
# must be allowed to pull how much of the caller's token.
Authorization = Optional[Tuple[ContractId, LedgerAmount]]


class WorkflowOrchestrator:
    """
    Plans and runs value-moving workflows over a :class:`LedgerGateway`.

    Parameters
    ----------
    gateway : LedgerGateway
        Gateway with the signing identity attached.
    reader : BalanceReader, optional
        Defaults to a reader over ``gateway``.
    allow_overpayment : bool
        When False, a repayment larger than the loan's remaining balance
        fails with ``OVERPAYMENT``.
    await_action_confirmation : bool
        When False, a workflow succeeds as soon as its action is accepted for
        broadcast. The authorization step is always awaited.
    """

    def __init__(
        self,
        gateway: Any,
        reader: Optional[BalanceReader] = None,
        *,
        allow_overpayment: bool = True,
        await_action_confirmation: bool = True,
    ) -> None:
        self.gateway = gateway
        self.reader = reader or BalanceReader(gateway)
        self.allow_overpayment = allow_overpayment
        self.await_action_confirmation = await_action_confirmation

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def deposit(self, amount: Amount, receiver: Optional[str] = None) -> WorkflowResult:
        return self.plan_deposit(amount, receiver).run()

    def repay(self, loan_id: int, amount: Amount) -> WorkflowResult:
        return self.plan_repay(loan_id, amount).run()

    def withdraw(self, assets: Amount, receiver: Optional[str] = None, owner: Optional[str] = None) -> WorkflowResult:
        return self.plan_withdraw(assets, receiver, owner).run()

    def redeem(self, shares: Amount, receiver: Optional[str] = None, owner: Optional[str] = None) -> WorkflowResult:
        return self.plan_redeem(shares, receiver, owner).run()

    def mark_repaid(self, loan_id: int) -> WorkflowResult:
        return self.plan_mark_repaid(loan_id).run()

    def mark_default(self, loan_id: int) -> WorkflowResult:
        return self.plan_mark_default(loan_id).run()

    def preview_repayment(self, loan_id: int, amount: Amount) -> FeeBreakdown:
        """
        Fee/net split the collector would apply to a repayment of ``amount``.

        Reads the current ``feeBps`` and the loan; makes no writes.

        Raises
        ------
        InvalidAmountError, LoanNotFoundError
            Bad input or unknown loan.
        ReadError, DecodeError
            The ledger could not be read.
        """
        validate_loan_id(loan_id)
        gross = coerce_amount(amount, TOKEN_DECIMALS)
        validate_positive(gross)
        if self.reader.loan_record(loan_id) is None:
            raise LoanNotFoundError(f"Loan {loan_id} does not exist")
        return fee_breakdown(gross, self.reader.fee_bps())

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    def plan_deposit(self, amount: Amount, receiver: Optional[str] = None) -> TransactionWorkflow:
        return self._plan(
            ActionKind.DEPOSIT,
            f"deposit {amount}",
            partial(self._deposit_preconditions, amount),
            partial(self._deposit_action, amount, receiver),
        )

    def plan_repay(self, loan_id: int, amount: Amount) -> TransactionWorkflow:
        return self._plan(
            ActionKind.REPAY,
            f"repay {amount} on loan {loan_id}",
            partial(self._repay_preconditions, loan_id, amount),
            partial(self._repay_action, loan_id, amount),
        )

    def plan_withdraw(self, assets: Amount, receiver: Optional[str] = None, owner: Optional[str] = None) -> TransactionWorkflow:
        return self._plan(
            ActionKind.WITHDRAW,
            f"withdraw {assets}",
            partial(self._withdraw_preconditions, assets, owner),
            partial(self._vault_exit_action, "withdraw", assets, TOKEN_DECIMALS, receiver, owner),
        )

    def plan_redeem(self, shares: Amount, receiver: Optional[str] = None, owner: Optional[str] = None) -> TransactionWorkflow:
        return self._plan(
            ActionKind.REDEEM,
            f"redeem {shares} shares",
            partial(self._redeem_preconditions, shares, owner),
            partial(self._vault_exit_action, "redeem", shares, SHARE_DECIMALS, receiver, owner),
        )

    def plan_mark_repaid(self, loan_id: int) -> TransactionWorkflow:
        return self._plan(
            ActionKind.MARK_REPAID,
            f"mark loan {loan_id} repaid",
            partial(self._loan_status_preconditions, loan_id),
            partial(self._loan_status_action, "markRepaid", loan_id),
        )

    def plan_mark_default(self, loan_id: int) -> TransactionWorkflow:
        return self._plan(
            ActionKind.MARK_DEFAULT,
            f"mark loan {loan_id} defaulted",
            partial(self._loan_status_preconditions, loan_id),
            partial(self._loan_status_action, "markDefault", loan_id),
        )

    def _plan(
        self,
        action: ActionKind,
        description: str,
        preconditions: Callable[[str], Authorization],
        build_action: Callable[[str], WriteStep],
    ) -> TransactionWorkflow:
        return TransactionWorkflow(action, description, partial(self._execute, preconditions, build_action))

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def _execute(
        self,
        preconditions: Callable[[str], Authorization],
        build_action: Callable[[str], WriteStep],
        workflow: TransactionWorkflow,
    ) -> WorkflowResult:
        try:
            workflow._transition(WorkflowState.CHECKING_PRECONDITIONS)
            sender = self._sender()
            authorization = preconditions(sender)
            action = build_action(sender)

            if authorization is not None:
                spender, amount = authorization
                allowance = self.reader.allowance(sender, spender)
                if allowance < amount:
                    workflow._transition(WorkflowState.NEEDS_AUTHORIZATION)
                    approve = WriteStep(
                        StepKind.AUTHORIZATION,
                        ContractId.TOKEN,
                        "approve",
                        (self.gateway.contract_address(spender), amount.value),
                    )
                    self._submit(workflow, approve, WorkflowState.AUTHORIZATION_SUBMITTED)
                    self._confirm(approve)
                    workflow._transition(WorkflowState.AUTHORIZATION_CONFIRMED)
                else:
                    logger.debug(f"{workflow.description}: allowance {allowance} already covers {amount}")

            self._submit(workflow, action, WorkflowState.ACTION_SUBMITTED)
            if self.await_action_confirmation:
                self._confirm(action)
                workflow._transition(WorkflowState.ACTION_CONFIRMED)
            else:
                workflow._transition(WorkflowState.ACTION_ACCEPTED)
            return workflow._succeed(action)
        except ConvexoError as exc:
            return workflow._fail(exc)

    def _sender(self) -> str:
        identity = self.gateway.identity
        if identity is None:
            raise NoSigningIdentityError("Connect a signing identity before submitting transactions")
        return identity.address

    def _submit(self, workflow: TransactionWorkflow, step: WriteStep, state: WorkflowState) -> None:
        if workflow.cancelled:
            raise WorkflowCancelledError(f"{workflow.description} cancelled before {step.contract_id.value}.{step.method}")
        if step.submitted:
            raise RuntimeError(f"{step.method} was already submitted for {workflow.description}")
        workflow.steps.append(step)
        step.tx_handle = self.gateway.write(step.contract_id, step.method, step.args)
        workflow._transition(state)

    def _confirm(self, step: WriteStep) -> None:
        step.receipt = self.gateway.await_confirmation(step.tx_handle)
        if not step.receipt.succeeded:
            raise TransactionRevertedError(step.tx_handle, step.receipt)

    # -------------------------------------------------------------------------
    # Per-action preconditions and action steps
    # -------------------------------------------------------------------------

    def _deposit_preconditions(self, amount: Amount, sender: str) -> Authorization:
        assets = coerce_amount(amount, TOKEN_DECIMALS)
        validate_positive(assets)
        validate_deposit(assets, self.reader.token_balance(sender))
        return ContractId.VAULT, assets

    def _deposit_action(self, amount: Amount, receiver: Optional[str], sender: str) -> WriteStep:
        assets = coerce_amount(amount, TOKEN_DECIMALS)
        receiver = validate_address(receiver or sender, "Receiver")
        return WriteStep(StepKind.ACTION, ContractId.VAULT, "deposit", (assets.value, receiver))

    def _repay_preconditions(self, loan_id: int, amount: Amount, sender: str) -> Authorization:
        validate_loan_id(loan_id)
        payment = coerce_amount(amount, TOKEN_DECIMALS)
        validate_positive(payment)
        loan = self.reader.loan_record(loan_id)
        if loan is None:
            raise LoanNotFoundError(f"Loan {loan_id} does not exist")
        validate_repay(payment, self.reader.token_balance(sender), loan, self.allow_overpayment)
        return ContractId.COLLECTOR, payment

    def _repay_action(self, loan_id: int, amount: Amount, sender: str) -> WriteStep:
        payment = coerce_amount(amount, TOKEN_DECIMALS)
        return WriteStep(StepKind.ACTION, ContractId.COLLECTOR, "recordPayment", (loan_id, payment.value))

    def _withdraw_preconditions(self, amount: Amount, owner: Optional[str], sender: str) -> Authorization:
        assets = coerce_amount(amount, TOKEN_DECIMALS)
        validate_positive(assets)
        owner = validate_address(owner or sender, "Owner")
        snapshot = self.reader.vault_snapshot()
        validate_withdraw(assets, self.reader.vault_share_balance(owner), snapshot.value_per_share_amount)
        return None

    def _redeem_preconditions(self, amount: Amount, owner: Optional[str], sender: str) -> Authorization:
        shares = coerce_amount(amount, SHARE_DECIMALS)
        validate_positive(shares, "Shares")
        owner = validate_address(owner or sender, "Owner")
        validate_redeem(shares, self.reader.vault_share_balance(owner))
        return None

    def _vault_exit_action(
        self,
        method: str,
        amount: Amount,
        decimals: int,
        receiver: Optional[str],
        owner: Optional[str],
        sender: str,
    ) -> WriteStep:
        value = coerce_amount(amount, decimals)
        receiver = validate_address(receiver or sender, "Receiver")
        owner = validate_address(owner or sender, "Owner")
        return WriteStep(StepKind.ACTION, ContractId.VAULT, method, (value.value, receiver, owner))

    def _loan_status_preconditions(self, loan_id: int, sender: str) -> Authorization:
        validate_loan_id(loan_id)
        loan = self.reader.loan_record(loan_id)
        if loan is None:
            raise LoanNotFoundError(f"Loan {loan_id} does not exist")
        if not loan.is_active:
            raise LoanNotActiveError(f"Loan {loan_id} is not active")
        return None

    def _loan_status_action(self, method: str, loan_id: int, sender: str) -> WriteStep:
        return WriteStep(StepKind.ACTION, ContractId.LOAN_NFT, method, (loan_id,))


__all__ = [
    "ActionKind",
    "StepKind",
    "TransactionWorkflow",
    "WorkflowOrchestrator",
    "WorkflowResult",
    "WorkflowState",
    "WorkflowStatus",
    "WriteStep",
    "validate_deposit",
    "validate_redeem",
    "validate_repay",
    "validate_withdraw",
]
