"""
Audit Logger

DESIGN DECISION: Every write to a record, its returns or the ledger is
logged. This provides:
1. Complete traceability of balance-moving operations
2. A trail for reconciling partially applied settlements
3. Old/new snapshots of every edit

The audit logger:
- Is async to not block main flow
- Gracefully handles storage failures (an audit write never fails a settlement)
- Supports correlation IDs to trace all writes of one user action
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from loanbook.models.audit import AuditEvent, AuditEventBuilder, AuditEventType
from loanbook.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence and user visibility)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger(__name__)

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_loan_created(
        self,
        record_id: UUID,
        values: dict,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.loan_created(
            record_id=record_id,
            values=values,
            correlation_id=correlation_id,
        ))

    async def log_loan_updated(
        self,
        record_id: UUID,
        old_values: dict,
        new_values: dict,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.loan_updated(
            record_id=record_id,
            old_values=old_values,
            new_values=new_values,
            correlation_id=correlation_id,
        ))

    async def log_loan_deleted(
        self,
        record_id: UUID,
        old_values: dict,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.loan_deleted(
            record_id=record_id,
            old_values=old_values,
            correlation_id=correlation_id,
        ))

    async def log_loan_marked_overdue(
        self,
        record_id: UUID,
        due_date: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.loan_marked_overdue(
            record_id=record_id,
            due_date=due_date,
            correlation_id=correlation_id,
        ))

    async def log_partial_return(
        self,
        record_id: UUID,
        return_id: UUID,
        amount: str,
        remaining: str,
        account_id: Optional[str],
        correlation_id: UUID,
    ) -> None:
        """Log a partial return/payment."""
        await self.log(AuditEventBuilder.partial_return_recorded(
            record_id=record_id,
            return_id=return_id,
            amount=amount,
            remaining=remaining,
            account_id=account_id,
            correlation_id=correlation_id,
        ))

    async def log_loan_settled(
        self,
        record_id: UUID,
        method: str,
        correlation_id: UUID,
        implicit: bool = False,
    ) -> None:
        await self.log(AuditEventBuilder.loan_settled(
            record_id=record_id,
            method=method,
            correlation_id=correlation_id,
            implicit=implicit,
        ))

    async def log_ledger_write(
        self,
        event_type: AuditEventType,
        record_id: UUID,
        transaction_id: str,
        correlation_id: UUID,
        details: Optional[dict] = None,
    ) -> None:
        """Log a ledger transaction create/update/delete."""
        await self.log(AuditEventBuilder.ledger_transaction_written(
            event_type=event_type,
            record_id=record_id,
            transaction_id=transaction_id,
            details=details,
            correlation_id=correlation_id,
        ))

    async def log_ledger_write_failed(
        self,
        record_id: UUID,
        failed_step: str,
        completed_steps: list[str],
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.ledger_write_failed(
            record_id=record_id,
            failed_step=failed_step,
            completed_steps=completed_steps,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_validation_failed(
        self,
        entity_id: Optional[UUID],
        issues: list[dict],
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.validation_failed(
            entity_id=entity_id,
            issues=issues,
            correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new user action (e.g., a settlement).
    Pass it through all subsequent writes.
    """
    return uuid4()
