"""
Tests for the settlement engine

Covers the full and partial paths, the ledger formatting they produce,
and the partial-failure contract: what stays written when a step fails.
"""

import asyncio
import re
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from loanbook.models.audit import AuditEventType
from loanbook.models.loan import (
    Account,
    LoanStatus,
    LoanType,
    SettlementMethod,
    SettlementStep,
    TransactionType,
)
from loanbook.services.ledger import LedgerWriteError, ids
from loanbook.services.storage import (
    InMemoryLedgerBridge,
    InMemoryLoanStorage,
    NotFoundError,
    StorageError,
)
from loanbook.settlement import SettlementEngine
from loanbook.validation import AccountRequiredError, ValidationError

from conftest import make_record


TRANSACTION_ID = re.compile(r"^LB\d{6}$")


class FailingLedger(InMemoryLedgerBridge):
    async def create_transaction(self, data):
        raise StorageError("ledger unavailable")


class FailingReturnStorage(InMemoryLoanStorage):
    async def append_return(self, entry):
        raise StorageError("returns sheet unavailable")


class FailingUpdateStorage(InMemoryLoanStorage):
    async def update_loan(self, record):
        raise StorageError("loans sheet unavailable")


class SlowLedger(InMemoryLedgerBridge):
    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()

    async def create_transaction(self, data):
        self.started.set()
        await asyncio.sleep(0.05)
        return await super().create_transaction(data)


async def events_of(audit_storage, event_type):
    events = await audit_storage.get_recent_events(limit=1000)
    return [e for e in events if e.event_type == event_type]


def linked_record(**overrides):
    values = {
        "account_id": "acc1",
        "affect_account_balance": True,
        "transaction_id": "LB000001",
    }
    values.update(overrides)
    return make_record(**values)


class TestEligibility:

    def test_full_settlement_allowed_without_history(self):
        record = make_record()
        assert SettlementEngine.is_full_settlement_allowed(record, [])

    def test_full_settlement_blocked_by_legacy_partial(self):
        record = make_record(partial_return_amount=Decimal("1"))
        assert not SettlementEngine.is_full_settlement_allowed(record, [])

    def test_compute_remaining_delegates_to_reducer(self):
        record = make_record(partial_return_amount=Decimal("25"))
        assert SettlementEngine.compute_remaining(record, []) == Decimal("75")

    def test_settlement_accounts_filter_and_order(self):
        record = make_record(account_id="old", affect_account_balance=True)
        accounts = [
            Account(id="small", currency="USD", calculated_balance=Decimal("10")),
            Account(id="big", currency="USD", calculated_balance=Decimal("900")),
            Account(id="euro", currency="EUR", calculated_balance=Decimal("5000")),
            Account(id="closed", currency="USD", calculated_balance=Decimal("99"), is_active=False),
            Account(id="old", currency="USD", calculated_balance=Decimal("1"), is_active=False),
        ]
        eligible = SettlementEngine.settlement_accounts(record, accounts, default_account_id="small")
        assert [a.id for a in eligible] == ["small", "big", "old"]

    def test_settlement_accounts_without_default(self):
        record = make_record()
        accounts = [
            Account(id="a", currency="USD", calculated_balance=Decimal("1")),
            Account(id="b", currency="USD", calculated_balance=Decimal("2")),
        ]
        assert [a.id for a in SettlementEngine.settlement_accounts(record, accounts)] == ["b", "a"]


class TestPartialSettlement:

    @pytest.mark.asyncio
    async def test_two_partials_settle_the_record(self, engine, loan_storage, ledger, audit_storage):
        record = make_record()
        await loan_storage.save_loan(record)

        first = await engine.settle_partial(record.id, Decimal("40"))
        assert first.method == SettlementMethod.SIMPLE
        assert first.remaining == Decimal("60")
        assert first.record.status == LoanStatus.ACTIVE
        assert not first.settled_now

        second = await engine.settle_partial(record.id, Decimal("60"))
        assert second.remaining == Decimal("0")
        assert second.record.status == LoanStatus.SETTLED
        assert second.settled_now

        stored = await loan_storage.get_loan_by_id(record.id)
        assert stored.status == LoanStatus.SETTLED
        assert len(await loan_storage.list_returns(record.id)) == 2
        assert ledger.transactions == []
        assert len(await events_of(audit_storage, AuditEventType.LOAN_SETTLED)) == 1

    @pytest.mark.asyncio
    async def test_settles_exactly_once(self, engine, loan_storage, audit_storage):
        record = make_record()
        await loan_storage.save_loan(record)

        await engine.settle_partial(record.id, Decimal("100"))
        with pytest.raises(ValidationError):
            await engine.settle_partial(record.id, Decimal("1"))

        assert len(await loan_storage.list_returns(record.id)) == 1
        assert len(await events_of(audit_storage, AuditEventType.LOAN_SETTLED)) == 1

    @pytest.mark.asyncio
    async def test_settled_record_rejection_is_audited(self, engine, loan_storage, audit_storage):
        record = make_record(status=LoanStatus.SETTLED)
        await loan_storage.save_loan(record)

        with pytest.raises(ValidationError) as exc_info:
            await engine.settle_full(record.id)

        assert exc_info.value.issues[0].issue_type == "settled"
        [event] = await events_of(audit_storage, AuditEventType.VALIDATION_FAILED)
        assert event.entity_id == record.id

    @pytest.mark.asyncio
    async def test_overshoot_writes_nothing(self, engine, loan_storage, audit_storage):
        record = make_record()
        await loan_storage.save_loan(record)

        with pytest.raises(ValidationError) as exc_info:
            await engine.settle_partial(record.id, Decimal("120"))

        assert exc_info.value.issues[0].issue_type == "exceeds_remaining"
        assert await loan_storage.list_returns(record.id) == []
        stored = await loan_storage.get_loan_by_id(record.id)
        assert stored.status == LoanStatus.ACTIVE
        assert len(await events_of(audit_storage, AuditEventType.VALIDATION_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_legacy_amount_counts_against_remaining(self, engine, loan_storage):
        record = make_record(partial_return_amount=Decimal("70"))
        await loan_storage.save_loan(record)

        with pytest.raises(ValidationError):
            await engine.settle_partial(record.id, Decimal("31"))

        result = await engine.settle_partial(record.id, Decimal("30"))
        assert result.settled_now

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-5"])
    async def test_non_positive_amount_rejected(self, engine, loan_storage, amount):
        record = make_record()
        await loan_storage.save_loan(record)

        with pytest.raises(ValidationError):
            await engine.settle_partial(record.id, Decimal(amount))
        assert await loan_storage.list_returns(record.id) == []

    @pytest.mark.asyncio
    async def test_partial_through_account(self, engine, loan_storage, ledger):
        record = make_record()
        await loan_storage.save_loan(record)

        result = await engine.settle_partial(
            record.id,
            Decimal("40"),
            return_date=date(2024, 3, 10),
            account_id="acc1",
        )

        assert result.return_entry.account_id == "acc1"
        assert TRANSACTION_ID.match(result.transaction_id)
        [transaction] = ledger.transactions
        assert transaction.transaction_id == result.transaction_id
        assert transaction.type == TransactionType.INCOME
        assert transaction.amount == Decimal("40")
        assert transaction.account_id == "acc1"
        assert transaction.description == "Partial return from Alice"
        assert transaction.category == "Lend/Borrow"
        assert transaction.tags == ["lend_borrow", "loan", "partial"]
        assert transaction.transaction_date == date(2024, 3, 10)
        assert transaction.user_id == record.user_id

        stored = await loan_storage.get_loan_by_id(record.id)
        assert stored.transaction_id == result.transaction_id

    @pytest.mark.asyncio
    async def test_partial_through_account_links_the_return(self, engine, loan_storage):
        record = make_record()
        await loan_storage.save_loan(record)

        result = await engine.settle_partial(record.id, Decimal("40"), account_id="acc1")

        assert result.return_entry.transaction_id == result.transaction_id
        assert result.method == SettlementMethod.ACCOUNT
        [stored] = await loan_storage.list_returns(record.id)
        assert stored.transaction_id == result.transaction_id

    @pytest.mark.asyncio
    async def test_concurrent_partials_cannot_overshoot(self, engine, loan_storage):
        record = make_record()
        await loan_storage.save_loan(record)

        results = await asyncio.gather(
            engine.settle_partial(record.id, Decimal("60")),
            engine.settle_partial(record.id, Decimal("60")),
            return_exceptions=True,
        )

        assert sum(isinstance(r, ValidationError) for r in results) == 1
        assert len([r for r in results if not isinstance(r, Exception)]) == 1
        returns = await loan_storage.list_returns(record.id)
        assert sum(r.amount for r in returns) == Decimal("60")
        stored = await loan_storage.get_loan_by_id(record.id)
        assert stored.status == LoanStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_concurrent_partials_over_a_slow_ledger(self, loan_storage, validator):
        ledger = SlowLedger()
        engine = SettlementEngine(loan_storage, ledger, validator=validator)
        record = make_record()
        await loan_storage.save_loan(record)

        results = await asyncio.gather(
            engine.settle_partial(record.id, Decimal("60"), account_id="acc1"),
            engine.settle_partial(record.id, Decimal("60"), account_id="acc1"),
            return_exceptions=True,
        )

        assert sum(isinstance(r, ValidationError) for r in results) == 1
        assert len(ledger.transactions) == 1
        assert len(await loan_storage.list_returns(record.id)) == 1

    @pytest.mark.asyncio
    async def test_partial_keeps_existing_transaction_link(self, engine, loan_storage, ledger):
        record = linked_record(type=LoanType.BORROW, person_name="Bob")
        await loan_storage.save_loan(record)

        result = await engine.settle_partial(record.id, Decimal("10"), account_id="acc1")

        [transaction] = ledger.transactions
        assert transaction.type == TransactionType.EXPENSE
        assert transaction.description == "Partial return to Bob"
        stored = await loan_storage.get_loan_by_id(record.id)
        assert stored.transaction_id == "LB000001"
        assert result.transaction_id != "LB000001"

    @pytest.mark.asyncio
    async def test_overdue_record_settles_by_partials(self, engine, loan_storage):
        record = make_record(status=LoanStatus.OVERDUE)
        await loan_storage.save_loan(record)

        result = await engine.settle_partial(record.id, Decimal("100"))
        assert result.record.status == LoanStatus.SETTLED

    @pytest.mark.asyncio
    async def test_currency_mismatch_rejected(self, engine, loan_storage, ledger):
        record = make_record()
        await loan_storage.save_loan(record)

        with pytest.raises(ValidationError) as exc_info:
            await engine.settle_partial(record.id, Decimal("10"), account_id="acc-eur")

        assert exc_info.value.issues[0].issue_type == "currency_mismatch"
        assert await loan_storage.list_returns(record.id) == []
        assert ledger.transactions == []

    @pytest.mark.asyncio
    async def test_missing_record(self, engine):
        with pytest.raises(NotFoundError):
            await engine.settle_partial(uuid4(), Decimal("10"))


class TestFullSettlement:

    @pytest.mark.asyncio
    async def test_record_only_through_account(self, engine, loan_storage, ledger):
        record = make_record(amount=Decimal("50"))
        await loan_storage.save_loan(record)

        result = await engine.settle_full(
            record.id, account_id="acc1", settlement_date=date(2024, 3, 20),
        )

        assert result.method == SettlementMethod.ACCOUNT
        assert result.record.status == LoanStatus.SETTLED
        [transaction] = ledger.transactions
        assert transaction.transaction_id == result.transaction_id
        assert transaction.amount == Decimal("50")
        assert transaction.type == TransactionType.INCOME
        assert transaction.description == "Repayment from Alice"
        assert transaction.tags == ["lend_borrow", "settlement"]
        assert transaction.transaction_date == date(2024, 3, 20)
        stored = await loan_storage.get_loan_by_id(record.id)
        assert stored.status == LoanStatus.SETTLED

    @pytest.mark.asyncio
    async def test_borrow_settles_as_expense(self, engine, loan_storage, ledger):
        record = make_record(type=LoanType.BORROW, person_name="Bob")
        await loan_storage.save_loan(record)

        await engine.settle_full(record.id, account_id="acc1")

        [transaction] = ledger.transactions
        assert transaction.type == TransactionType.EXPENSE
        assert transaction.description == "Repayment to Bob"

    @pytest.mark.asyncio
    async def test_simple_settlement_has_no_ledger_effect(self, engine, loan_storage, ledger):
        record = make_record()
        await loan_storage.save_loan(record)

        result = await engine.settle_full(record.id)

        assert result.method == SettlementMethod.SIMPLE
        assert result.transaction_id is None
        assert result.record.status == LoanStatus.SETTLED
        assert ledger.transactions == []

    @pytest.mark.asyncio
    async def test_linked_record_defaults_to_its_account(self, engine, loan_storage, ledger):
        record = linked_record()
        await loan_storage.save_loan(record)

        result = await engine.settle_full(record.id)

        assert result.method == SettlementMethod.ACCOUNT
        [transaction] = ledger.transactions
        assert transaction.account_id == "acc1"

    @pytest.mark.asyncio
    async def test_account_method_without_account(self, engine, loan_storage, ledger):
        record = make_record()
        await loan_storage.save_loan(record)

        with pytest.raises(AccountRequiredError):
            await engine.settle_full(record.id, method=SettlementMethod.ACCOUNT)

        assert ledger.transactions == []
        stored = await loan_storage.get_loan_by_id(record.id)
        assert stored.status == LoanStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_unknown_account(self, engine, loan_storage):
        record = make_record()
        await loan_storage.save_loan(record)

        with pytest.raises(ValidationError) as exc_info:
            await engine.settle_full(record.id, account_id="nope")
        assert exc_info.value.issues[0].issue_type == "not_found"

    @pytest.mark.asyncio
    async def test_blocked_after_partial_return(self, engine, loan_storage, ledger):
        record = make_record()
        await loan_storage.save_loan(record)
        await engine.settle_partial(record.id, Decimal("10"))

        with pytest.raises(ValidationError):
            await engine.settle_full(record.id, account_id="acc1")
        assert ledger.transactions == []

    @pytest.mark.asyncio
    async def test_settling_twice_fails(self, engine, loan_storage, ledger):
        record = make_record()
        await loan_storage.save_loan(record)
        await engine.settle_full(record.id, account_id="acc1")

        with pytest.raises(ValidationError):
            await engine.settle_full(record.id, account_id="acc1")
        assert len(ledger.transactions) == 1

    @pytest.mark.asyncio
    async def test_audit_trail(self, engine, loan_storage, audit_storage):
        record = make_record()
        await loan_storage.save_loan(record)

        await engine.settle_full(record.id, account_id="acc1")

        events = await audit_storage.get_events_by_entity("lend_borrow", record.id)
        assert [e.event_type for e in events] == [
            AuditEventType.LEDGER_TRANSACTION_CREATED,
            AuditEventType.LOAN_SETTLED,
        ]
        assert events[0].correlation_id == events[1].correlation_id


class TestTransactionIds:

    @pytest.mark.asyncio
    async def test_duplicate_id_is_reminted(self, engine, loan_storage, ledger, monkeypatch):
        taken = linked_record()
        await loan_storage.save_loan(taken)
        await engine.settle_partial(taken.id, Decimal("1"), account_id="acc1")
        taken_id = ledger.transactions[0].transaction_id

        minted = iter([taken_id, "LB424242"])
        monkeypatch.setattr(ids, "mint_transaction_id", lambda: next(minted))

        record = make_record()
        await loan_storage.save_loan(record)
        result = await engine.settle_full(record.id, account_id="acc1")

        assert result.transaction_id == "LB424242"
        assert len(ledger.transactions) == 2

    @pytest.mark.asyncio
    async def test_every_id_taken(self, engine, loan_storage, ledger, monkeypatch):
        record = make_record()
        await loan_storage.save_loan(record)
        await engine.settle_partial(record.id, Decimal("1"), account_id="acc1")
        taken_id = ledger.transactions[0].transaction_id
        monkeypatch.setattr(ids, "mint_transaction_id", lambda: taken_id)

        with pytest.raises(LedgerWriteError) as exc_info:
            await engine.settle_partial(record.id, Decimal("1"), account_id="acc1")

        assert exc_info.value.failed_step == SettlementStep.LEDGER_TRANSACTION
        assert len(ledger.transactions) == 1


class TestPartialFailures:

    @pytest.mark.asyncio
    async def test_ledger_failure_keeps_return_entry(self, loan_storage, validator, audit_logger, audit_storage):
        engine = SettlementEngine(loan_storage, FailingLedger(), validator=validator, audit_logger=audit_logger)
        record = make_record()
        await loan_storage.save_loan(record)

        with pytest.raises(LedgerWriteError) as exc_info:
            await engine.settle_partial(record.id, Decimal("40"), account_id="acc1")

        error = exc_info.value
        assert error.failed_step == SettlementStep.LEDGER_TRANSACTION
        assert error.completed_steps == [SettlementStep.RETURN_ENTRY]
        assert error.is_incomplete
        assert isinstance(error.__cause__, StorageError)

        [kept] = await loan_storage.list_returns(record.id)
        assert kept.amount == Decimal("40")
        assert len(await events_of(audit_storage, AuditEventType.LEDGER_WRITE_FAILED)) == 1

        # Retry is re-validated against the kept history
        with pytest.raises(ValidationError):
            await engine.settle_partial(record.id, Decimal("61"))
        result = await engine.settle_partial(record.id, Decimal("60"))
        assert result.settled_now

    @pytest.mark.asyncio
    async def test_ledger_failure_still_settles_closing_return(self, loan_storage, validator):
        engine = SettlementEngine(loan_storage, FailingLedger(), validator=validator)
        record = make_record()
        await loan_storage.save_loan(record)

        with pytest.raises(LedgerWriteError) as exc_info:
            await engine.settle_partial(record.id, Decimal("100"), account_id="acc1")

        assert exc_info.value.completed_steps == [
            SettlementStep.RETURN_ENTRY,
            SettlementStep.STATUS_TRANSITION,
        ]
        stored = await loan_storage.get_loan_by_id(record.id)
        assert stored.status == LoanStatus.SETTLED

    @pytest.mark.asyncio
    async def test_return_write_failure_writes_nothing(self, ledger, validator):
        storage = FailingReturnStorage()
        engine = SettlementEngine(storage, ledger, validator=validator)
        record = make_record()
        await storage.save_loan(record)

        with pytest.raises(LedgerWriteError) as exc_info:
            await engine.settle_partial(record.id, Decimal("40"), account_id="acc1")

        assert exc_info.value.failed_step == SettlementStep.RETURN_ENTRY
        assert not exc_info.value.is_incomplete
        assert ledger.transactions == []

    @pytest.mark.asyncio
    async def test_status_failure_after_full_ledger_write(self, ledger, validator):
        storage = FailingUpdateStorage()
        engine = SettlementEngine(storage, ledger, validator=validator)
        record = make_record()
        await storage.save_loan(record)

        with pytest.raises(LedgerWriteError) as exc_info:
            await engine.settle_full(record.id, account_id="acc1")

        assert exc_info.value.failed_step == SettlementStep.STATUS_TRANSITION
        assert exc_info.value.completed_steps == [SettlementStep.LEDGER_TRANSACTION]
        assert len(ledger.transactions) == 1

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_abort_writes(self, loan_storage, validator):
        slow = SlowLedger()
        engine = SettlementEngine(loan_storage, slow, validator=validator)
        record = make_record()
        await loan_storage.save_loan(record)

        task = asyncio.create_task(
            engine.settle_partial(record.id, Decimal("100"), account_id="acc1")
        )
        await slow.started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(0.2)
        assert len(slow.transactions) == 1
        stored = await loan_storage.get_loan_by_id(record.id)
        assert stored.status == LoanStatus.SETTLED

    @pytest.mark.asyncio
    async def test_detached_failure_is_audited(self, loan_storage, validator, audit_logger, audit_storage):
        slow = SlowLedger()
        engine = SettlementEngine(loan_storage, slow, validator=validator, audit_logger=audit_logger)
        record = make_record()
        await loan_storage.save_loan(record)

        task = asyncio.create_task(
            engine.settle_partial(record.id, Decimal("40"), account_id="acc1")
        )
        await slow.started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        # Record vanishes while the detached sequence is still running
        await loan_storage.delete_loan(record.id)

        await asyncio.sleep(0.2)
        [event] = await events_of(audit_storage, AuditEventType.SYSTEM_ERROR)
        assert event.details == {"record_id": str(record.id), "operation": "settle_partial"}
        assert event.error_message.startswith("Record not found")
