"""Tests for the audit logger."""

from uuid import uuid4

import pytest

from loanbook.audit import AuditLogger, create_correlation_id
from loanbook.models.audit import AuditEventBuilder, AuditEventType
from loanbook.services.storage import InMemoryAuditStorage, StorageError


class BrokenAuditStorage(InMemoryAuditStorage):
    async def append_event(self, event):
        raise StorageError("audit sheet unavailable")


class TestAuditLogger:

    @pytest.mark.asyncio
    async def test_persists_events(self, audit_logger, audit_storage):
        correlation_id = create_correlation_id()
        record_id = uuid4()

        await audit_logger.log_partial_return(
            record_id=record_id,
            return_id=uuid4(),
            amount="40",
            remaining="60",
            account_id=None,
            correlation_id=correlation_id,
        )
        await audit_logger.log_loan_settled(
            record_id=record_id,
            method="simple",
            correlation_id=correlation_id,
            implicit=True,
        )

        events = await audit_storage.get_events_by_correlation_id(correlation_id)
        assert [e.event_type for e in events] == [
            AuditEventType.PARTIAL_RETURN_RECORDED,
            AuditEventType.LOAN_SETTLED,
        ]
        assert events[0].details["remaining"] == "60"

    @pytest.mark.asyncio
    async def test_local_only_logger(self):
        logger = AuditLogger()
        event = AuditEventBuilder.system_error("startup", "no sheets")
        assert await logger.log(event)

    @pytest.mark.asyncio
    async def test_storage_failure_does_not_raise(self):
        logger = AuditLogger(BrokenAuditStorage())

        ok = await logger.log(AuditEventBuilder.loan_marked_overdue(
            record_id=uuid4(),
            due_date="2024-03-01",
            correlation_id=uuid4(),
        ))

        assert ok is False

    @pytest.mark.asyncio
    async def test_ledger_write_failure_event(self, audit_logger, audit_storage):
        record_id = uuid4()
        await audit_logger.log_ledger_write_failed(
            record_id=record_id,
            failed_step="ledger_transaction",
            completed_steps=["return_entry"],
            error_message="ledger unavailable",
            correlation_id=uuid4(),
        )

        [event] = await audit_storage.get_events_by_entity("lend_borrow", record_id)
        assert event.event_type == AuditEventType.LEDGER_WRITE_FAILED
        assert event.error_message == "ledger unavailable"

    def test_correlation_ids_are_unique(self):
        assert create_correlation_id() != create_correlation_id()
