"""
Settlement Engine

Closes lend/borrow records, fully or through accumulated partial
returns, and optionally moves money through an account ledger.

DESIGN DECISION: Settlement is an ordered command sequence, not a
transaction. The writes happen in this order:

    1. RETURN_ENTRY        (partial only) append the repayment
    2. LEDGER_TRANSACTION  (when routed through an account)
    3. RETURN_LINK         (partial only) store the transaction id on the return
    4. TRANSACTION_LINK    (first ledger movement of a record without one)
    5. STATUS_TRANSITION   (to settled, when nothing remains)

There is no rollback. When a step fails, every earlier step stays
written and LedgerWriteError names what completed. Retrying is safe
because every attempt re-reads the return history and re-validates the
amount against it immediately before writing.

The engine owns every ledger formatting decision: transaction type,
description, category and tags. The ledger bridge only persists.
"""

import asyncio
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog

from loanbook.audit import AuditLogger, create_correlation_id
from loanbook.config import get_settings
from loanbook.models.audit import AuditEventType
from loanbook.models.loan import (
    Account,
    LedgerTransaction,
    LoanRecord,
    LoanStatus,
    LoanType,
    ReturnEntry,
    SettlementMethod,
    SettlementResult,
    SettlementStep,
    TransactionType,
    ValidationIssue,
)
from loanbook.services.ledger import LedgerBridge, LedgerWriteError, create_with_fresh_id
from loanbook.services.storage import (
    AccountStorageInterface,
    LoanStorageInterface,
    NotFoundError,
    StorageError,
)
from loanbook.settlement.returns import (
    apply_status_transition,
    compute_remaining,
    has_partial_history,
    is_fully_repaid,
)
from loanbook.validation import (
    AccountRequiredError,
    LoanValidator,
    ValidationError,
    raise_for_issues,
)


logger = structlog.get_logger(__name__)


# =============================================================================
# LEDGER FORMATTING
# =============================================================================

def repayment_type(loan_type: LoanType) -> TransactionType:
    """Money coming back on a loan is income; paying back a borrowing is expense."""
    return TransactionType.INCOME if loan_type == LoanType.LEND else TransactionType.EXPENSE


def opening_type(loan_type: LoanType) -> TransactionType:
    """Lending money out is an expense; borrowing money in is income."""
    return TransactionType.EXPENSE if loan_type == LoanType.LEND else TransactionType.INCOME


def opening_transaction(
    record: LoanRecord,
    transaction_id: str,
    on_date: Optional[date] = None,
) -> LedgerTransaction:
    """The transaction mirroring the loan itself on an account-linked record."""
    verb = "Lent to" if record.type == LoanType.LEND else "Borrowed from"
    return LedgerTransaction(
        transaction_id=transaction_id,
        user_id=record.user_id,
        account_id=record.account_id,
        type=opening_type(record.type),
        amount=record.amount,
        description=f"{verb} {record.person_name}",
        category=get_settings().app.ledger_category,
        transaction_date=on_date or date.today(),
        tags=["lend_borrow", "loan"],
    )


def settlement_transaction(
    record: LoanRecord,
    account_id: str,
    transaction_id: str,
    on_date: date,
) -> LedgerTransaction:
    preposition = "from" if record.type == LoanType.LEND else "to"
    return LedgerTransaction(
        transaction_id=transaction_id,
        user_id=record.user_id,
        account_id=account_id,
        type=repayment_type(record.type),
        amount=record.amount,
        description=f"Repayment {preposition} {record.person_name}",
        category=get_settings().app.ledger_category,
        transaction_date=on_date,
        tags=["lend_borrow", "settlement"],
    )


def partial_transaction(
    record: LoanRecord,
    entry: ReturnEntry,
    transaction_id: str,
) -> LedgerTransaction:
    preposition = "from" if record.type == LoanType.LEND else "to"
    return LedgerTransaction(
        transaction_id=transaction_id,
        user_id=record.user_id,
        account_id=entry.account_id,
        type=repayment_type(record.type),
        amount=entry.amount,
        description=f"Partial return {preposition} {record.person_name}",
        category=get_settings().app.ledger_category,
        transaction_date=entry.return_date,
        tags=["lend_borrow", "loan", "partial"],
    )


# =============================================================================
# ENGINE
# =============================================================================

class SettlementEngine:
    """
    Orchestrates full and partial settlement of a record.

    Flow (partial):
    1. Re-read the record and its return history
    2. Validate 0 < amount <= remaining
    3. Append the ReturnEntry
    4. Mirror it into the ledger if routed through an account, and link
       the return to that transaction
    5. Re-read history, settle the record if nothing remains

    Steps 1-5 run in one shielded task, so the check in step 2 always
    sees every return already written by an earlier call.

    Single writer per record is assumed. There is no lock: the re-read in
    step 1 is what keeps a retried or repeated call from overshooting the
    principal. UI callers must disable the settle control while a call
    for that record is in flight.
    """

    def __init__(
        self,
        loan_storage: LoanStorageInterface,
        ledger: LedgerBridge,
        account_storage: Optional[AccountStorageInterface] = None,
        validator: Optional[LoanValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._loans = loan_storage
        self._ledger = ledger
        self._validator = validator or LoanValidator(account_storage)
        self._audit_logger = audit_logger
        # Audit writes scheduled from task callbacks, held until they finish
        self._pending_audits: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Pure decisions
    # -------------------------------------------------------------------------

    @staticmethod
    def compute_remaining(record: LoanRecord, returns: list[ReturnEntry]) -> Decimal:
        return compute_remaining(record, returns)

    @staticmethod
    def is_full_settlement_allowed(record: LoanRecord, returns: list[ReturnEntry]) -> bool:
        """
        Full settlement is only for untouched loans.

        Once any partial return exists the loan must be closed out through
        partial returns, and a loan with nothing remaining is already
        effectively settled.
        """
        if has_partial_history(record, returns):
            return False
        return not is_fully_repaid(compute_remaining(record, returns))

    @staticmethod
    def settlement_accounts(
        record: LoanRecord,
        accounts: list[Account],
        default_account_id: Optional[str] = None,
    ) -> list[Account]:
        """
        Accounts a record can be settled through.

        Active accounts in the record's currency, plus the record's own
        account even if inactive. Default account first, then by balance.
        """
        eligible = [
            account for account in accounts
            if account.currency == record.currency
            and (account.is_active or account.id == record.account_id)
        ]
        return sorted(
            eligible,
            key=lambda a: (a.id != default_account_id, -a.calculated_balance),
        )

    # -------------------------------------------------------------------------
    # Full settlement
    # -------------------------------------------------------------------------

    async def settle_full(
        self,
        record_id: UUID,
        account_id: Optional[str] = None,
        method: Optional[SettlementMethod] = None,
        settlement_date: Optional[date] = None,
        correlation_id: Optional[UUID] = None,
    ) -> SettlementResult:
        """
        Settle a record in one step.

        A record-only record settled with the SIMPLE method is only marked
        settled. Every other combination creates one ledger transaction for
        the full principal and needs an account: the given one, or the
        record's own account when it is account-linked.

        Raises:
            NotFoundError: Record vanished
            ValidationError: Already settled, has partial returns, or bad account
            AccountRequiredError: Account path chosen without an account
            LedgerWriteError: A write failed; see completed_steps
        """
        correlation_id = correlation_id or create_correlation_id()
        record = await self._load(record_id)
        await self._ensure_open(record, correlation_id)

        returns = await self._loans.list_returns(record.id)
        if not self.is_full_settlement_allowed(record, returns):
            if has_partial_history(record, returns):
                message = "Record has partial returns; settle the rest with a partial return"
            else:
                message = "Nothing remains to be settled"
            await self._reject(record.id, [ValidationIssue(
                field="settlement_type",
                issue_type="not_allowed",
                message=message,
            )], correlation_id)

        if method is None:
            has_account = account_id or record.account_id
            method = SettlementMethod.ACCOUNT if has_account else SettlementMethod.SIMPLE

        if method == SettlementMethod.SIMPLE and record.is_record_only:
            record = await self._mark_settled(record, [], correlation_id)
            await self._log_settled(record.id, method, correlation_id)
            return SettlementResult(
                record=record,
                method=method,
                remaining=Decimal("0"),
                settled_now=True,
            )

        account_id = account_id or record.account_id
        if not account_id:
            raise AccountRequiredError()
        await self._check_account(record, account_id, correlation_id)

        on_date = settlement_date or date.today()
        try:
            transaction_id = await create_with_fresh_id(
                self._ledger,
                lambda tid: settlement_transaction(record, account_id, tid, on_date),
            )
        except StorageError as e:
            await self._fail(record.id, SettlementStep.LEDGER_TRANSACTION, [], e, correlation_id)
        await self._log_ledger(
            AuditEventType.LEDGER_TRANSACTION_CREATED,
            record.id,
            transaction_id,
            correlation_id,
            {"amount": str(record.amount), "account_id": account_id},
        )

        record = await self._mark_settled(
            record, [SettlementStep.LEDGER_TRANSACTION], correlation_id,
        )
        await self._log_settled(record.id, SettlementMethod.ACCOUNT, correlation_id)

        return SettlementResult(
            record=record,
            method=SettlementMethod.ACCOUNT,
            transaction_id=transaction_id,
            remaining=Decimal("0"),
            settled_now=True,
        )

    # -------------------------------------------------------------------------
    # Partial settlement
    # -------------------------------------------------------------------------

    async def settle_partial(
        self,
        record_id: UUID,
        amount: Decimal,
        return_date: Optional[date] = None,
        account_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> SettlementResult:
        """
        Record a partial return/payment, settling the record if it closes it.

        Passing an account_id routes the payment through that account: the
        ReturnEntry keeps the account and a mirroring ledger transaction is
        created. Without one the return is recorded only.

        Raises:
            NotFoundError: Record vanished
            ValidationError: Bad amount, already settled, or bad account.
                Nothing has been written.
            LedgerWriteError: A write failed; see completed_steps
        """
        correlation_id = correlation_id or create_correlation_id()
        amount = Decimal(str(amount))

        record = await self._load(record_id)
        await self._ensure_open(record, correlation_id)
        if account_id:
            await self._check_account(record, account_id, correlation_id)

        # Once the first write starts, cancelling the caller must not
        # abandon the sequence half way.
        task = asyncio.ensure_future(self._apply_partial(
            record.id, amount, return_date or date.today(), account_id, correlation_id,
        ))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(
                lambda done: self._report_detached(done, record.id, correlation_id)
            )
            raise

    async def _apply_partial(
        self,
        record_id: UUID,
        amount: Decimal,
        return_date: date,
        account_id: Optional[str],
        correlation_id: UUID,
    ) -> SettlementResult:
        # Fresh record and history, read immediately before the first write.
        # A concurrent call for the same record either sees this return or
        # has already written its own.
        record = await self._load(record_id)
        await self._ensure_open(record, correlation_id)
        returns = await self._loans.list_returns(record.id)
        issues = self._validator.validate_settlement_amount(
            amount, compute_remaining(record, returns),
        )
        if issues:
            await self._reject(record.id, issues, correlation_id)

        entry = ReturnEntry(
            lend_borrow_id=record.id,
            amount=amount,
            return_date=return_date,
            account_id=account_id,
        )
        method = SettlementMethod.ACCOUNT if account_id else SettlementMethod.SIMPLE
        completed: list[SettlementStep] = []
        failure: Optional[tuple[SettlementStep, StorageError]] = None

        try:
            await self._loans.append_return(entry)
        except NotFoundError:
            raise
        except StorageError as e:
            await self._fail(record.id, SettlementStep.RETURN_ENTRY, completed, e, correlation_id)
        completed.append(SettlementStep.RETURN_ENTRY)

        transaction_id = None
        if entry.account_id:
            try:
                transaction_id = await create_with_fresh_id(
                    self._ledger,
                    lambda tid: partial_transaction(record, entry, tid),
                )
                completed.append(SettlementStep.LEDGER_TRANSACTION)
                await self._log_ledger(
                    AuditEventType.LEDGER_TRANSACTION_CREATED,
                    record.id,
                    transaction_id,
                    correlation_id,
                    {"amount": str(entry.amount), "account_id": entry.account_id},
                )
            except StorageError as e:
                failure = (SettlementStep.LEDGER_TRANSACTION, e)

        if transaction_id is not None:
            # Delete reverses every transaction a return links to
            entry = entry.model_copy(update={"transaction_id": transaction_id})
            try:
                await self._loans.update_return(entry)
                completed.append(SettlementStep.RETURN_LINK)
            except StorageError as e:
                failure = (SettlementStep.RETURN_LINK, e)

        remaining = None
        settled_now = False
        try:
            current = await self._load(record.id)
            returns = await self._loans.list_returns(record.id)
            remaining = compute_remaining(current, returns)

            new_status = apply_status_transition(current.status, remaining)
            settled_now = new_status != current.status
            link = transaction_id is not None and current.transaction_id is None

            if settled_now or link:
                current = current.model_copy(update={
                    "status": new_status,
                    "transaction_id": current.transaction_id or transaction_id,
                    "updated_at": datetime.utcnow(),
                })
                await self._loans.update_loan(current)
                if link:
                    completed.append(SettlementStep.TRANSACTION_LINK)
                if settled_now:
                    completed.append(SettlementStep.STATUS_TRANSITION)
            record = current
        except NotFoundError:
            raise
        except StorageError as e:
            settled_now = False
            failure = failure or (SettlementStep.STATUS_TRANSITION, e)

        if self._audit_logger:
            await self._audit_logger.log_partial_return(
                record_id=record.id,
                return_id=entry.id,
                amount=str(entry.amount),
                remaining=str(remaining) if remaining is not None else "unknown",
                account_id=entry.account_id,
                correlation_id=correlation_id,
            )
        if settled_now:
            await self._log_settled(record.id, method, correlation_id, implicit=True)

        if failure:
            step, error = failure
            await self._fail(record.id, step, completed, error, correlation_id)

        return SettlementResult(
            record=record,
            method=method,
            return_entry=entry,
            transaction_id=transaction_id,
            remaining=remaining,
            settled_now=settled_now,
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _load(self, record_id: UUID) -> LoanRecord:
        record = await self._loans.get_loan_by_id(record_id)
        if record is None:
            raise NotFoundError(f"Record not found: {record_id}")
        return record

    async def _ensure_open(self, record: LoanRecord, correlation_id: UUID) -> None:
        if record.status == LoanStatus.SETTLED:
            await self._reject(record.id, [ValidationIssue(
                field="status",
                issue_type="settled",
                message="This record is already settled",
            )], correlation_id)

    async def _check_account(
        self,
        record: LoanRecord,
        account_id: str,
        correlation_id: UUID,
    ) -> None:
        _, issues = await self._validator.check_account(account_id, record.currency)
        if issues:
            await self._reject(record.id, issues, correlation_id)

    def _report_detached(
        self,
        task: asyncio.Task,
        record_id: UUID,
        correlation_id: UUID,
    ) -> None:
        """Collect the outcome of a partial settlement whose caller was cancelled."""
        if task.cancelled():
            logger.error("detached_settlement_cancelled", record_id=str(record_id))
            return

        error = task.exception()
        if error is None:
            logger.info("detached_settlement_completed", record_id=str(record_id))
            return

        logger.error(
            "detached_settlement_failed",
            record_id=str(record_id),
            error_type=type(error).__name__,
            error=str(error),
        )
        # _fail and _reject have audited these already
        if self._audit_logger and not isinstance(error, (LedgerWriteError, ValidationError)):
            audit = task.get_loop().create_task(self._audit_logger.log_error(
                error_type=type(error).__name__,
                error_message=str(error),
                details={"record_id": str(record_id), "operation": "settle_partial"},
                correlation_id=correlation_id,
            ))
            self._pending_audits.add(audit)
            audit.add_done_callback(self._pending_audits.discard)

    async def _mark_settled(
        self,
        record: LoanRecord,
        completed: list[SettlementStep],
        correlation_id: UUID,
    ) -> LoanRecord:
        settled = record.model_copy(update={
            "status": LoanStatus.SETTLED,
            "updated_at": datetime.utcnow(),
        })
        try:
            await self._loans.update_loan(settled)
        except NotFoundError:
            raise
        except StorageError as e:
            await self._fail(record.id, SettlementStep.STATUS_TRANSITION, completed, e, correlation_id)
        return settled

    async def _reject(
        self,
        record_id: Optional[UUID],
        issues: list[ValidationIssue],
        correlation_id: UUID,
    ) -> None:
        if self._audit_logger:
            await self._audit_logger.log_validation_failed(
                entity_id=record_id,
                issues=[issue.model_dump() for issue in issues],
                correlation_id=correlation_id,
            )
        raise_for_issues(issues)

    async def _fail(
        self,
        record_id: UUID,
        step: SettlementStep,
        completed: list[SettlementStep],
        error: Exception,
        correlation_id: UUID,
    ) -> None:
        """Report a failed step and raise LedgerWriteError."""
        logger.error(
            "settlement_step_failed",
            record_id=str(record_id),
            failed_step=step.value,
            completed_steps=[s.value for s in completed],
            error=str(error),
        )
        if self._audit_logger:
            await self._audit_logger.log_ledger_write_failed(
                record_id=record_id,
                failed_step=step.value,
                completed_steps=[s.value for s in completed],
                error_message=str(error),
                correlation_id=correlation_id,
            )
        if completed:
            message = (
                f"Operation incomplete: {step.value} failed after "
                f"{', '.join(s.value for s in completed)} succeeded"
            )
        else:
            message = f"Operation failed at {step.value}; nothing was written"
        raise LedgerWriteError(message, failed_step=step, completed_steps=completed) from error

    async def _log_ledger(
        self,
        event_type: AuditEventType,
        record_id: UUID,
        transaction_id: str,
        correlation_id: UUID,
        details: Optional[dict] = None,
    ) -> None:
        if self._audit_logger:
            await self._audit_logger.log_ledger_write(
                event_type=event_type,
                record_id=record_id,
                transaction_id=transaction_id,
                correlation_id=correlation_id,
                details=details,
            )

    async def _log_settled(
        self,
        record_id: UUID,
        method: SettlementMethod,
        correlation_id: UUID,
        implicit: bool = False,
    ) -> None:
        if self._audit_logger:
            await self._audit_logger.log_loan_settled(
                record_id=record_id,
                method=method.value,
                correlation_id=correlation_id,
                implicit=implicit,
            )
