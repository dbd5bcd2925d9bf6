"""
Loan Record Lifecycle

Create, update, delete and the overdue sweep for the record itself.

DESIGN DECISION: An account-linked record (affect_account_balance) is
mirrored by one opening transaction in the account ledger. Keeping the
two in step is a dual write with no transaction boundary, so each
operation is an ordered command sequence with the same partial-failure
contract as settlement: earlier steps stay written and LedgerWriteError
names them.

Delete is the exception. It is fail-closed: the linked transaction goes
first, and if that fails nothing else is touched. A record is never
removed while its transaction still exists.
"""

from datetime import date, datetime, timedelta
from typing import Optional
from uuid import UUID

import structlog

from loanbook.audit import AuditLogger, create_correlation_id
from loanbook.config import get_settings
from loanbook.models.audit import AuditEventType
from loanbook.models.loan import (
    LEDGER_SYNC_FIELDS,
    LoanRecord,
    LoanRecordInput,
    LoanRecordPatch,
    LoanStatus,
    LoanType,
    ReturnEntry,
    SettlementStep,
    ValidationIssue,
)
from loanbook.services.ledger import (
    LedgerBridge,
    LedgerWriteError,
    create_with_fresh_id,
    mint_transaction_id,
)
from loanbook.services.storage import (
    AccountStorageInterface,
    DuplicateError,
    LoanStorageInterface,
    NotFoundError,
    StorageError,
)
from loanbook.settlement.engine import opening_transaction, opening_type
from loanbook.settlement.returns import (
    apply_status_transition,
    compute_remaining,
    compute_total_returned,
    linked_transaction_ids,
    sort_for_display,
)
from loanbook.validation import LoanValidator, raise_for_issues


logger = structlog.get_logger(__name__)


def mark_overdue(records: list[LoanRecord], today: date) -> list[LoanRecord]:
    """
    Overdue sweep over a batch of records. Pure and idempotent.

    Every active record whose due date has passed comes back as overdue.
    Nothing else changes; input records are not mutated.
    """
    swept = []
    for record in records:
        if (
            record.status == LoanStatus.ACTIVE
            and record.due_date is not None
            and record.due_date < today
        ):
            record = record.model_copy(update={"status": LoanStatus.OVERDUE})
        swept.append(record)
    return swept


class LoanRecordService:
    """
    Owns the record lifecycle and its mirror in the account ledger.

    Flow (create, account-linked):
    1. Validate input, read the account, derive the currency from it
    2. Mint a transaction id and save the record with it
    3. Create the opening ledger transaction
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

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_record(self, record_id: UUID) -> Optional[LoanRecord]:
        return await self._loans.get_loan_by_id(record_id)

    async def list_returns(self, record_id: UUID) -> list[ReturnEntry]:
        """Return history of a record, most recent first."""
        return sort_for_display(await self._loans.list_returns(record_id))

    async def list_records(
        self,
        user_id: str,
        status: Optional[LoanStatus] = None,
        loan_type: Optional[LoanType] = None,
        today: Optional[date] = None,
    ) -> list[LoanRecord]:
        """
        List a user's records, newest first, after running the overdue sweep.

        The sweep runs on the full list so the status filter sees
        up-to-date statuses.
        """
        records = await self._loans.list_loans(user_id=user_id)
        records = await self.sweep_overdue(records, today=today)
        return [
            record for record in records
            if (status is None or record.status == status)
            and (loan_type is None or record.type == loan_type)
        ]

    async def sweep_overdue(
        self,
        records: list[LoanRecord],
        today: Optional[date] = None,
        correlation_id: Optional[UUID] = None,
    ) -> list[LoanRecord]:
        """Persist the overdue sweep. Only records whose status changed are written."""
        today = today or date.today()
        swept = mark_overdue(records, today)

        for index, (before, after) in enumerate(zip(records, swept)):
            if after.status == before.status:
                continue
            correlation_id = correlation_id or create_correlation_id()
            after = after.model_copy(update={"updated_at": datetime.utcnow()})
            swept[index] = after
            await self._loans.update_loan(after)
            logger.info(
                "loan_marked_overdue",
                record_id=str(after.id),
                due_date=after.due_date.isoformat(),
            )
            if self._audit_logger:
                await self._audit_logger.log_loan_marked_overdue(
                    record_id=after.id,
                    due_date=after.due_date.isoformat(),
                    correlation_id=correlation_id,
                )

        return swept

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    async def create(
        self,
        data: LoanRecordInput,
        user_id: str,
        today: Optional[date] = None,
        correlation_id: Optional[UUID] = None,
    ) -> LoanRecord:
        """
        Create a record.

        The due date defaults to today plus the configured number of days.
        An account-linked record takes its currency from the account.

        Raises:
            ValidationError: Input problems, all reported together
            LedgerWriteError: Record saved but its opening transaction failed
        """
        correlation_id = correlation_id or create_correlation_id()
        today = today or date.today()

        issues = self._validator.validate_input(data)
        currency = data.currency
        if data.affect_account_balance and data.account_id:
            account, account_issues = await self._validator.check_account(data.account_id)
            issues.extend(account_issues)
            if account is not None:
                currency = account.currency
        if data.affect_account_balance and not currency and not issues:
            issues.append(ValidationIssue(
                field="currency",
                issue_type="missing",
                message="Currency could not be derived from the account",
            ))
        if issues:
            await self._reject(None, issues, correlation_id)

        linked = data.affect_account_balance
        record = LoanRecord(
            user_id=user_id,
            type=data.type,
            person_name=data.person_name,
            amount=data.amount,
            currency=currency,
            due_date=data.due_date or today + timedelta(days=get_settings().app.default_due_days),
            account_id=data.account_id if linked else None,
            affect_account_balance=linked,
            transaction_id=mint_transaction_id() if linked else None,
            partial_return_amount=data.partial_return_amount,
            partial_return_date=data.partial_return_date,
            notes=data.notes,
        )
        # A legacy return can already cover the whole principal
        status = apply_status_transition(record.status, compute_remaining(record, []))
        settled_now = status != record.status
        if settled_now:
            record = record.model_copy(update={"status": status})

        await self._loans.save_loan(record)
        if self._audit_logger:
            await self._audit_logger.log_loan_created(
                record_id=record.id,
                values=record.to_audit_values(),
                correlation_id=correlation_id,
            )
        if settled_now:
            await self._log_settled(record.id, correlation_id)

        if linked:
            record = await self._write_opening(
                record, today, [SettlementStep.RECORD_SAVE], correlation_id,
            )

        return record

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------

    async def update(
        self,
        record_id: UUID,
        patch: LoanRecordPatch,
        correlation_id: Optional[UUID] = None,
    ) -> LoanRecord:
        """
        Apply an edit, keeping a linked ledger transaction in sync.

        Raises:
            NotFoundError: Record vanished
            ValidationError: Bad edit, or a core field of a settled record
            LedgerWriteError: Record saved but the ledger sync failed
        """
        correlation_id = correlation_id or create_correlation_id()
        record = await self._load(record_id)

        returns = await self._loans.list_returns(record.id)
        issues = self._validator.validate_patch(
            record, patch, compute_total_returned(record, returns),
        )
        changes = patch.changes()

        if record.affect_account_balance and changes.get("account_id") and not issues:
            account, account_issues = await self._validator.check_account(changes["account_id"])
            issues.extend(account_issues)
            if account is not None:
                changes["currency"] = account.currency
            elif not account_issues:
                logger.warning(
                    "account_currency_unchecked",
                    record_id=str(record.id),
                    account_id=changes["account_id"],
                    currency=record.currency,
                )
        if issues:
            await self._reject(record.id, issues, correlation_id)

        changed = {
            name for name, value in changes.items()
            if value != getattr(record, name)
        }
        sync = record.affect_account_balance and bool(changed & LEDGER_SYNC_FIELDS)

        values = record.model_dump()
        values.update(changes)
        values["updated_at"] = datetime.utcnow()
        if sync and not record.transaction_id:
            values["transaction_id"] = mint_transaction_id()
        updated = LoanRecord.model_validate(values)

        # A lowered amount can close the record against what was returned
        status = apply_status_transition(updated.status, compute_remaining(updated, returns))
        settled_now = status != updated.status
        if settled_now:
            updated = updated.model_copy(update={"status": status})

        await self._loans.update_loan(updated)
        if self._audit_logger:
            await self._audit_logger.log_loan_updated(
                record_id=record.id,
                old_values=record.to_audit_values(),
                new_values=updated.to_audit_values(),
                correlation_id=correlation_id,
            )
        if settled_now:
            await self._log_settled(updated.id, correlation_id)

        if sync:
            updated = await self._sync_ledger(updated, correlation_id)

        return updated

    async def _sync_ledger(self, record: LoanRecord, correlation_id: UUID) -> LoanRecord:
        """Create-or-update the opening transaction of a linked record."""
        completed = [SettlementStep.RECORD_SAVE]
        try:
            existing = await self._ledger.find_transaction(record.transaction_id)
        except StorageError as e:
            await self._fail(record.id, SettlementStep.LEDGER_TRANSACTION, completed, e, correlation_id)

        if existing is None:
            return await self._write_opening(
                record, record.created_at.date(), completed, correlation_id,
            )

        verb = "Lent to" if record.type == LoanType.LEND else "Borrowed from"
        try:
            await self._ledger.update_transaction(record.transaction_id, {
                "amount": record.amount,
                "type": opening_type(record.type),
                "description": f"{verb} {record.person_name}",
                "account_id": record.account_id,
            })
        except StorageError as e:
            await self._fail(record.id, SettlementStep.LEDGER_TRANSACTION, completed, e, correlation_id)

        await self._log_ledger(
            AuditEventType.LEDGER_TRANSACTION_UPDATED,
            record,
            record.transaction_id,
            correlation_id,
        )
        return record

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    async def delete(
        self,
        record_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        """
        Delete a record, its returns and its linked ledger transaction.

        Order: ledger transactions, balance detach, record. A failure of a
        ledger delete aborts before the record is touched.

        Every ledger transaction the record caused is removed: the opening
        transaction and the one behind each account-routed return. This
        holds for record-only records too, whose returns can still have
        gone through an account.

        Raises:
            NotFoundError: Record vanished
            ValidationError: Record is settled
            LedgerWriteError: A step failed; see completed_steps
        """
        correlation_id = correlation_id or create_correlation_id()
        record = await self._load(record_id)

        if record.status == LoanStatus.SETTLED:
            await self._reject(record.id, [ValidationIssue(
                field="status",
                issue_type="settled",
                message="Settled records cannot be deleted",
            )], correlation_id)

        completed: list[SettlementStep] = []

        returns = await self._loans.list_returns(record.id)
        for transaction_id in linked_transaction_ids(record, returns):
            try:
                deleted = await self._ledger.delete_transaction(transaction_id)
            except StorageError as e:
                await self._fail(record.id, SettlementStep.LEDGER_TRANSACTION, completed, e, correlation_id)
            if SettlementStep.LEDGER_TRANSACTION not in completed:
                completed.append(SettlementStep.LEDGER_TRANSACTION)
            if deleted:
                await self._log_ledger(
                    AuditEventType.LEDGER_TRANSACTION_DELETED,
                    record,
                    transaction_id,
                    correlation_id,
                )

        if record.affect_account_balance:
            detached = record.model_copy(update={
                "affect_account_balance": False,
                "updated_at": datetime.utcnow(),
            })
            try:
                await self._loans.update_loan(detached)
            except NotFoundError:
                raise
            except StorageError as e:
                await self._fail(record.id, SettlementStep.BALANCE_DETACH, completed, e, correlation_id)
            completed.append(SettlementStep.BALANCE_DETACH)

        try:
            await self._loans.delete_loan(record.id)
        except StorageError as e:
            await self._fail(record.id, SettlementStep.RECORD_DELETE, completed, e, correlation_id)

        if self._audit_logger:
            await self._audit_logger.log_loan_deleted(
                record_id=record.id,
                old_values=record.to_audit_values(),
                correlation_id=correlation_id,
            )
        return True

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _write_opening(
        self,
        record: LoanRecord,
        on_date: date,
        completed: list[SettlementStep],
        correlation_id: UUID,
    ) -> LoanRecord:
        """
        Create the opening transaction under the record's transaction id.

        If that id turns out to be taken, a fresh one is minted and the
        record is relinked to it.
        """
        completed = list(completed)
        transaction_id = record.transaction_id
        try:
            try:
                await self._ledger.create_transaction(
                    opening_transaction(record, transaction_id, on_date)
                )
            except DuplicateError:
                transaction_id = await create_with_fresh_id(
                    self._ledger,
                    lambda tid: opening_transaction(record, tid, on_date),
                )
        except StorageError as e:
            await self._fail(record.id, SettlementStep.LEDGER_TRANSACTION, completed, e, correlation_id)
        completed.append(SettlementStep.LEDGER_TRANSACTION)

        await self._log_ledger(
            AuditEventType.LEDGER_TRANSACTION_CREATED,
            record,
            transaction_id,
            correlation_id,
        )

        if transaction_id != record.transaction_id:
            record = record.model_copy(update={"transaction_id": transaction_id})
            try:
                await self._loans.update_loan(record)
            except StorageError as e:
                await self._fail(record.id, SettlementStep.TRANSACTION_LINK, completed, e, correlation_id)

        return record

    async def _load(self, record_id: UUID) -> LoanRecord:
        record = await self._loans.get_loan_by_id(record_id)
        if record is None:
            raise NotFoundError(f"Record not found: {record_id}")
        return record

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
        logger.error(
            "lifecycle_step_failed",
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

    async def _log_settled(self, record_id: UUID, correlation_id: UUID) -> None:
        logger.info("loan_settled", record_id=str(record_id), method="simple", implicit=True)
        if self._audit_logger:
            await self._audit_logger.log_loan_settled(
                record_id=record_id,
                method="simple",
                correlation_id=correlation_id,
                implicit=True,
            )

    async def _log_ledger(
        self,
        event_type: AuditEventType,
        record: LoanRecord,
        transaction_id: str,
        correlation_id: UUID,
    ) -> None:
        if self._audit_logger:
            await self._audit_logger.log_ledger_write(
                event_type=event_type,
                record_id=record.id,
                transaction_id=transaction_id,
                correlation_id=correlation_id,
                details={"amount": str(record.amount), "account_id": record.account_id},
            )
