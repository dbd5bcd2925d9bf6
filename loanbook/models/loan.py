"""
Core Data Models for Loanbook

These models define the schemas for everything the lend/borrow core
reads and writes:
1. The loan record itself and its partial-return history
2. The account and ledger-transaction shapes consumed from collaborators
3. Inputs, patches and results of the public operations

DESIGN DECISION: Persisted models are strict (positive amounts, non-empty
names). Input models are lax on purpose: LoanValidator inspects them and
reports every problem at once instead of failing on the first one.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


PERSON_NAME_MAX_LENGTH = 200
NOTES_MAX_LENGTH = 1000


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class LoanType(str, Enum):
    """Direction of the obligation, seen from the user."""
    LEND = "lend"      # User gave money, expects it back
    BORROW = "borrow"  # User received money, owes it back


class LoanStatus(str, Enum):
    """
    Loan lifecycle status.

    active -> overdue -> settled, or active -> settled.
    CRITICAL: settled is terminal. Nothing leaves it.
    """
    ACTIVE = "active"
    OVERDUE = "overdue"
    SETTLED = "settled"


class TransactionType(str, Enum):
    """Ledger transaction direction."""
    INCOME = "income"
    EXPENSE = "expense"


class SettlementMethod(str, Enum):
    """
    How a settlement is recorded.

    SIMPLE only marks the record; ACCOUNT also moves money through an account.
    """
    SIMPLE = "simple"
    ACCOUNT = "account"


class SettlementStep(str, Enum):
    """Individual writes of a settlement or lifecycle command sequence."""
    RETURN_ENTRY = "return_entry"
    RETURN_LINK = "return_link"
    LEDGER_TRANSACTION = "ledger_transaction"
    TRANSACTION_LINK = "transaction_link"
    STATUS_TRANSITION = "status_transition"
    RECORD_SAVE = "record_save"
    RECORD_DELETE = "record_delete"
    BALANCE_DETACH = "balance_detach"


ALLOWED_TRANSITIONS: dict[LoanStatus, frozenset[LoanStatus]] = {
    LoanStatus.ACTIVE: frozenset({LoanStatus.OVERDUE, LoanStatus.SETTLED}),
    LoanStatus.OVERDUE: frozenset({LoanStatus.SETTLED}),
    LoanStatus.SETTLED: frozenset(),
}


# =============================================================================
# CORE LOAN MODELS
# =============================================================================

class LoanRecord(BaseModel):
    """
    A tracked lend or borrow obligation.

    `transaction_id` is only a back-reference to a ledger transaction.
    The ledger owns that transaction; this record never controls its
    lifecycle except through explicit delete calls.

    `partial_return_amount` is the legacy cumulative field from before
    per-return history existed. It must always be folded into any
    remaining-balance computation.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    # Identity
    id: UUID = Field(
        default_factory=uuid4,
        description="Unique record ID"
    )
    user_id: str = Field(
        ...,
        min_length=1,
        description="Owner of the record"
    )

    # Core fields
    type: LoanType
    person_name: str = Field(
        ...,
        min_length=1,
        max_length=PERSON_NAME_MAX_LENGTH,
        description="The other party"
    )
    amount: Decimal = Field(
        ...,
        gt=0,
        description="Principal amount"
    )
    currency: str = Field(
        ...,
        min_length=3,
        max_length=3,
        description="ISO currency code"
    )
    due_date: Optional[date] = None
    status: LoanStatus = Field(
        default=LoanStatus.ACTIVE,
        description="Lifecycle status"
    )

    # Account linkage
    account_id: Optional[str] = None
    affect_account_balance: bool = False
    transaction_id: Optional[str] = Field(
        default=None,
        description="Weak reference to the linked ledger transaction"
    )

    # Legacy cumulative repayment
    partial_return_amount: Decimal = Field(
        default=Decimal("0"),
        ge=0,
    )
    partial_return_date: Optional[date] = None

    notes: Optional[str] = Field(
        default=None,
        max_length=NOTES_MAX_LENGTH,
    )

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator('currency')
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode='after')
    def validate_legacy_return(self) -> 'LoanRecord':
        """The legacy field alone can never exceed the principal."""
        if self.partial_return_amount > self.amount:
            raise ValueError("Partial return amount cannot exceed the loan amount")
        return self

    @property
    def is_settled(self) -> bool:
        return self.status == LoanStatus.SETTLED

    @property
    def is_record_only(self) -> bool:
        """True when the record was never linked to an account."""
        return self.account_id is None

    def to_audit_values(self) -> dict:
        """Fields captured in audit old/new value snapshots."""
        return {
            "person_name": self.person_name,
            "amount": str(self.amount),
            "type": self.type.value,
            "currency": self.currency,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "status": self.status.value,
        }


class ReturnEntry(BaseModel):
    """
    One partial repayment event recorded against a LoanRecord.

    Append-only. Cascade-deleted with its owning record.
    `account_id` is set only when this payment moved money through an account;
    `transaction_id` then names the ledger transaction that mirrors it.
    """

    id: UUID = Field(default_factory=uuid4)
    lend_borrow_id: UUID = Field(
        ...,
        description="Owning LoanRecord"
    )
    amount: Decimal = Field(..., gt=0)
    return_date: date
    account_id: Optional[str] = None
    transaction_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


# =============================================================================
# COLLABORATOR MODELS
# =============================================================================

class Account(BaseModel):
    """Account as exposed by the external account store."""

    id: str = Field(..., min_length=1)
    name: str = ""
    currency: str = Field(..., min_length=3, max_length=3)
    calculated_balance: Decimal = Decimal("0")
    is_active: bool = True

    @field_validator('currency')
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.upper()


class LedgerTransaction(BaseModel):
    """
    A money-moving record in the external ledger.

    The settlement engine owns every formatting decision
    (description, category, tags). The ledger only persists it.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    transaction_id: str = Field(
        ...,
        min_length=1,
        description="Generated short id, e.g. LB004211"
    )
    user_id: str
    account_id: str
    type: TransactionType
    amount: Decimal = Field(..., gt=0)
    description: str = Field(..., max_length=500)
    category: str
    transaction_date: date
    tags: list[str] = Field(default_factory=list)


# =============================================================================
# OPERATION INPUTS
# =============================================================================

class LoanRecordInput(BaseModel):
    """
    User input for creating a record.

    Deliberately lax - LoanValidator reports all issues together.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    type: Optional[LoanType] = None
    person_name: str = ""
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    due_date: Optional[date] = None
    account_id: Optional[str] = None
    affect_account_balance: bool = False
    partial_return_amount: Decimal = Decimal("0")
    partial_return_date: Optional[date] = None
    notes: Optional[str] = None

    @field_validator('account_id', 'currency', 'notes', mode='before')
    @classmethod
    def empty_string_to_none(cls, v):
        """Forms submit "" for untouched optional fields."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator('due_date', 'partial_return_date', mode='before')
    @classmethod
    def empty_date_to_none(cls, v):
        if v == "":
            return None
        return v


class LoanRecordPatch(BaseModel):
    """Partial update. Only fields explicitly set are applied."""
    model_config = ConfigDict(str_strip_whitespace=True)

    type: Optional[LoanType] = None
    person_name: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    due_date: Optional[date] = None
    account_id: Optional[str] = None
    notes: Optional[str] = None

    @field_validator('due_date', mode='before')
    @classmethod
    def empty_date_to_none(cls, v):
        if v == "":
            return None
        return v

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True)


# Fields whose change must be mirrored into the linked ledger transaction
LEDGER_SYNC_FIELDS = frozenset({"amount", "person_name", "type", "account_id"})

# Fields frozen once a record is settled
CORE_FIELDS = LEDGER_SYNC_FIELDS | {"currency"}


# =============================================================================
# VALIDATION MODELS
# =============================================================================

class ValidationIssue(BaseModel):
    """A single validation issue found."""

    field: str = Field(
        ...,
        description="Field with the issue"
    )
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'invalid_value', 'mismatch')"
    )
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )


# =============================================================================
# RESULTS
# =============================================================================

class SettlementResult(BaseModel):
    """Outcome of a full or partial settlement."""

    record: LoanRecord
    method: SettlementMethod
    return_entry: Optional[ReturnEntry] = None
    transaction_id: Optional[str] = Field(
        default=None,
        description="Ledger transaction created by this settlement, if any"
    )
    remaining: Decimal = Field(
        ...,
        description="Remaining balance after this settlement"
    )
    settled_now: bool = Field(
        default=False,
        description="Did this call move the record to settled?"
    )


class CurrencySummary(BaseModel):
    """Per-currency money figures."""

    currency: str
    total_lent: Decimal = Decimal("0")
    total_borrowed: Decimal = Decimal("0")
    outstanding_lent: Decimal = Decimal("0")
    outstanding_borrowed: Decimal = Decimal("0")


class LoanAnalytics(BaseModel):
    """
    Summary figures over a user's records.

    Money totals mix currencies; use `by_currency` for anything displayed
    next to a currency symbol.
    """

    total_lent: Decimal = Decimal("0")
    total_borrowed: Decimal = Decimal("0")
    outstanding_lent: Decimal = Decimal("0")
    outstanding_borrowed: Decimal = Decimal("0")
    active_count: int = Field(default=0, ge=0)
    overdue_count: int = Field(default=0, ge=0)
    settled_count: int = Field(default=0, ge=0)
    top_person: Optional[str] = None
    by_currency: list[CurrencySummary] = Field(default_factory=list)
