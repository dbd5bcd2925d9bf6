"""
Audit Models for Loanbook

Every write to a loan record, its return history or the linked ledger
is logged for audit purposes. This provides:
1. Complete traceability of balance-moving operations
2. A record of partially applied settlements to reconcile later
3. Old/new value snapshots for every edit

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.
    """
    # Record lifecycle
    LOAN_CREATED = "loan_created"
    LOAN_UPDATED = "loan_updated"
    LOAN_DELETED = "loan_deleted"
    LOAN_MARKED_OVERDUE = "loan_marked_overdue"

    # Settlement
    PARTIAL_RETURN_RECORDED = "partial_return_recorded"
    LOAN_SETTLED = "loan_settled"

    # Ledger
    LEDGER_TRANSACTION_CREATED = "ledger_transaction_created"
    LEDGER_TRANSACTION_UPDATED = "ledger_transaction_updated"
    LEDGER_TRANSACTION_DELETED = "ledger_transaction_deleted"
    LEDGER_WRITE_FAILED = "ledger_write_failed"

    # Validation
    VALIDATION_FAILED = "validation_failed"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'lend_borrow', 'transaction')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all writes of one settlement)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         correlation_id, description, details_json, error_message, is_user_action]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            str(self.entity_id) if self.entity_id else "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details) if self.details else "",
            self.error_message or "",
            str(self.is_user_action),
        ]


def _direction(loan_type: str) -> str:
    return "loan to" if loan_type == "lend" else "borrowing from"


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.loan_created(record_id, values, correlation_id)
        event = AuditEventBuilder.loan_settled(record_id, "account", correlation_id)
    """

    @staticmethod
    def loan_created(
        record_id: UUID,
        values: dict,
        correlation_id: UUID
    ) -> AuditEvent:
        verb = "Lent" if values.get("type") == "lend" else "Borrowed"
        preposition = "to" if values.get("type") == "lend" else "from"
        return AuditEvent(
            event_type=AuditEventType.LOAN_CREATED,
            entity_type="lend_borrow",
            entity_id=record_id,
            correlation_id=correlation_id,
            description=(
                f"{verb} {values.get('amount')} {values.get('currency')} "
                f"{preposition} {values.get('person_name')}"
            ),
            details={
                "old_values": None,
                "new_values": values,
            },
            is_user_action=True,
        )

    @staticmethod
    def loan_updated(
        record_id: UUID,
        old_values: dict,
        new_values: dict,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LOAN_UPDATED,
            entity_type="lend_borrow",
            entity_id=record_id,
            correlation_id=correlation_id,
            description=(
                f"Updated {_direction(new_values.get('type'))} "
                f"{new_values.get('person_name')}"
            ),
            details={
                "old_values": old_values,
                "new_values": new_values,
            },
            is_user_action=True,
        )

    @staticmethod
    def loan_deleted(
        record_id: UUID,
        old_values: dict,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LOAN_DELETED,
            entity_type="lend_borrow",
            entity_id=record_id,
            correlation_id=correlation_id,
            description=(
                f"Deleted {_direction(old_values.get('type'))} "
                f"{old_values.get('person_name')}"
            ),
            details={
                "old_values": old_values,
                "new_values": None,
            },
            is_user_action=True,
        )

    @staticmethod
    def loan_marked_overdue(
        record_id: UUID,
        due_date: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LOAN_MARKED_OVERDUE,
            entity_type="lend_borrow",
            entity_id=record_id,
            correlation_id=correlation_id,
            description=f"Record overdue since {due_date}",
            details={"due_date": due_date},
        )

    @staticmethod
    def partial_return_recorded(
        record_id: UUID,
        return_id: UUID,
        amount: str,
        remaining: str,
        account_id: Optional[str],
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PARTIAL_RETURN_RECORDED,
            entity_type="lend_borrow",
            entity_id=record_id,
            correlation_id=correlation_id,
            description=f"Partial return of {amount} recorded, {remaining} remaining",
            details={
                "return_id": str(return_id),
                "amount": amount,
                "remaining": remaining,
                "account_id": account_id,
            },
            is_user_action=True,
        )

    @staticmethod
    def loan_settled(
        record_id: UUID,
        method: str,
        correlation_id: UUID,
        implicit: bool = False,
    ) -> AuditEvent:
        how = "by accumulated partial returns" if implicit else f"via {method} settlement"
        return AuditEvent(
            event_type=AuditEventType.LOAN_SETTLED,
            entity_type="lend_borrow",
            entity_id=record_id,
            correlation_id=correlation_id,
            description=f"Record settled {how}",
            details={
                "method": method,
                "implicit": implicit,
            },
            is_user_action=not implicit,
        )

    @staticmethod
    def ledger_transaction_written(
        event_type: AuditEventType,
        record_id: UUID,
        transaction_id: str,
        details: Optional[dict],
        correlation_id: UUID
    ) -> AuditEvent:
        action = event_type.value.rsplit("_", 1)[-1]
        return AuditEvent(
            event_type=event_type,
            entity_type="lend_borrow",
            entity_id=record_id,
            correlation_id=correlation_id,
            description=f"Ledger transaction {transaction_id} {action}",
            details={
                "transaction_id": transaction_id,
                **(details or {}),
            },
        )

    @staticmethod
    def ledger_write_failed(
        record_id: UUID,
        failed_step: str,
        completed_steps: list[str],
        error_message: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LEDGER_WRITE_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="lend_borrow",
            entity_id=record_id,
            correlation_id=correlation_id,
            description=f"Write failed at step '{failed_step}', operation incomplete",
            error_message=error_message,
            details={
                "failed_step": failed_step,
                "completed_steps": completed_steps,
            },
        )

    @staticmethod
    def validation_failed(
        entity_id: Optional[UUID],
        issues: list[dict],
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALIDATION_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="lend_borrow",
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"Validation failed with {len(issues)} issues",
            details={"issues": issues},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
