"""
Two-Stage Validation for Lend/Borrow Records

STAGE 1 - SCHEMA VALIDATION:
- Required field presence
- Positive amounts
- Account/currency exclusivity (account-linked vs record-only)

STAGE 2 - SEMANTIC VALIDATION:
- The chosen account exists
- The account currency matches the record currency
- Amounts fit the remaining balance

Stage 2 needs the account store, so it is async. Stage 1 never is.

IMPORTANT: Validation NEVER silently fixes issues. Every issue found is
collected and raised together so the user can correct them in one pass.
"""

from decimal import Decimal
from typing import Optional

from loanbook.models.loan import (
    CORE_FIELDS,
    NOTES_MAX_LENGTH,
    PERSON_NAME_MAX_LENGTH,
    Account,
    LoanRecord,
    LoanRecordInput,
    LoanRecordPatch,
    LoanStatus,
    ValidationIssue,
)
from loanbook.services.storage import AccountStorageInterface


class ValidationError(Exception):
    """Bad amount or missing required field. Non-fatal: correct and retry."""

    def __init__(self, message: str, issues: Optional[list[ValidationIssue]] = None):
        self.issues = list(issues or [])
        super().__init__(message)

    def to_dicts(self) -> list[dict]:
        return [issue.model_dump() for issue in self.issues]


class AccountRequiredError(ValidationError):
    """The chosen settlement path needs an account but none was selected."""

    def __init__(self, message: str = "Please select an account"):
        super().__init__(
            message,
            issues=[ValidationIssue(
                field="account_id",
                issue_type="missing",
                message=message,
            )],
        )


def _summary(issues: list[ValidationIssue]) -> str:
    return "; ".join(issue.message for issue in issues)


def raise_for_issues(issues: list[ValidationIssue]) -> None:
    """Raise a ValidationError carrying every issue, if there are any."""
    if issues:
        raise ValidationError(_summary(issues), issues)


def check_field_limits(values: dict) -> list[ValidationIssue]:
    """
    Length and format limits of the persisted record.

    Checked here so bad input is reported with every other issue instead
    of surfacing as a model error on save.
    """
    issues = []

    person_name = values.get("person_name")
    if person_name and len(person_name) > PERSON_NAME_MAX_LENGTH:
        issues.append(ValidationIssue(
            field="person_name",
            issue_type="too_long",
            message=f"Person name cannot exceed {PERSON_NAME_MAX_LENGTH} characters",
        ))

    notes = values.get("notes")
    if notes and len(notes) > NOTES_MAX_LENGTH:
        issues.append(ValidationIssue(
            field="notes",
            issue_type="too_long",
            message=f"Notes cannot exceed {NOTES_MAX_LENGTH} characters",
        ))

    currency = values.get("currency")
    if currency and not (len(currency) == 3 and currency.isascii() and currency.isalpha()):
        issues.append(ValidationIssue(
            field="currency",
            issue_type="invalid_format",
            message="Currency must be a 3-letter code",
        ))

    return issues


class LoanValidator:
    """
    Validates record input, edits and settlement amounts.

    Stage 1 checks run on the input alone.
    Stage 2 checks read the account store (skipped when none is configured).
    """

    def __init__(
        self,
        account_storage: Optional[AccountStorageInterface] = None,
    ):
        """
        Initialize validator.

        Args:
            account_storage: Account store for existence/currency checks.
                            If None, account checks are skipped.
        """
        self._accounts = account_storage

    def validate_input(self, data: LoanRecordInput) -> list[ValidationIssue]:
        """Stage 1 checks for a new record."""
        issues = []

        if not data.person_name:
            issues.append(ValidationIssue(
                field="person_name",
                issue_type="missing",
                message="Person name is required",
            ))

        if data.amount is None or data.amount <= 0:
            issues.append(ValidationIssue(
                field="amount",
                issue_type="invalid_value",
                message="Valid amount is required",
            ))

        if data.type is None:
            issues.append(ValidationIssue(
                field="type",
                issue_type="missing",
                message="Type is required",
            ))

        if data.affect_account_balance and not data.account_id:
            issues.append(ValidationIssue(
                field="account_id",
                issue_type="missing",
                message="Account is required when affecting account balance",
            ))
        if not data.affect_account_balance and data.account_id:
            issues.append(ValidationIssue(
                field="account_id",
                issue_type="unexpected",
                message="Record-only entries cannot name an account",
            ))

        if not data.affect_account_balance and not data.currency:
            issues.append(ValidationIssue(
                field="currency",
                issue_type="missing",
                message="Currency is required for record-only transactions",
            ))

        if data.partial_return_amount < 0:
            issues.append(ValidationIssue(
                field="partial_return_amount",
                issue_type="invalid_value",
                message="Partial return amount cannot be negative",
            ))
        elif data.amount is not None and data.partial_return_amount > data.amount:
            issues.append(ValidationIssue(
                field="partial_return_amount",
                issue_type="invalid_value",
                message="Partial return amount cannot exceed the loan amount",
            ))

        limits = data.model_dump(include={"person_name", "notes"})
        if not data.affect_account_balance:
            limits["currency"] = data.currency
        issues.extend(check_field_limits(limits))

        return issues

    def validate_patch(
        self,
        record: LoanRecord,
        patch: LoanRecordPatch,
        total_returned: Decimal,
    ) -> list[ValidationIssue]:
        """Stage 1 checks for an edit of an existing record."""
        issues = []
        changes = patch.changes()

        if record.status == LoanStatus.SETTLED:
            frozen = sorted(
                name for name in CORE_FIELDS & changes.keys()
                if changes[name] != getattr(record, name)
            )
            if frozen:
                issues.append(ValidationIssue(
                    field=frozen[0],
                    issue_type="settled",
                    message=f"Settled records cannot change: {', '.join(frozen)}",
                ))

        if "person_name" in changes and not changes["person_name"]:
            issues.append(ValidationIssue(
                field="person_name",
                issue_type="missing",
                message="Person name is required",
            ))

        if "type" in changes and changes["type"] is None:
            issues.append(ValidationIssue(
                field="type",
                issue_type="missing",
                message="Type is required",
            ))

        if "amount" in changes:
            amount = changes["amount"]
            if amount is None or amount <= 0:
                issues.append(ValidationIssue(
                    field="amount",
                    issue_type="invalid_value",
                    message="Valid amount is required",
                ))
            elif amount < total_returned:
                issues.append(ValidationIssue(
                    field="amount",
                    issue_type="invalid_value",
                    message=f"Amount cannot be less than the {total_returned} already returned",
                ))

        if "account_id" in changes:
            if record.affect_account_balance and not changes["account_id"]:
                issues.append(ValidationIssue(
                    field="account_id",
                    issue_type="missing",
                    message="Account is required when affecting account balance",
                ))
            elif not record.affect_account_balance and changes["account_id"]:
                issues.append(ValidationIssue(
                    field="account_id",
                    issue_type="unexpected",
                    message="Record-only entries cannot name an account",
                ))

        if "currency" in changes and record.affect_account_balance:
            issues.append(ValidationIssue(
                field="currency",
                issue_type="derived",
                message="Currency of an account-linked record follows its account",
            ))
        elif "currency" in changes and not changes["currency"]:
            issues.append(ValidationIssue(
                field="currency",
                issue_type="missing",
                message="Currency is required for record-only transactions",
            ))
        else:
            issues.extend(check_field_limits({"currency": changes.get("currency")}))

        issues.extend(check_field_limits({
            "person_name": changes.get("person_name"),
            "notes": changes.get("notes"),
        }))

        return issues

    def validate_settlement_amount(
        self,
        amount: Decimal,
        remaining: Decimal,
    ) -> list[ValidationIssue]:
        """A partial amount must be positive and fit the remaining balance."""
        if amount <= 0:
            return [ValidationIssue(
                field="amount",
                issue_type="invalid_value",
                message="Amount must be greater than 0",
            )]
        if amount > remaining:
            return [ValidationIssue(
                field="amount",
                issue_type="exceeds_remaining",
                message=f"Amount cannot exceed remaining amount ({max(remaining, Decimal('0'))})",
            )]
        return []

    async def check_account(
        self,
        account_id: str,
        currency: Optional[str] = None,
    ) -> tuple[Optional[Account], list[ValidationIssue]]:
        """
        Stage 2: the account exists and, if a currency is given, matches it.

        Returns:
            (account or None, issues). Account is None when no store is configured.
        """
        if self._accounts is None:
            return None, []

        account = await self._accounts.get_account(account_id)
        if account is None:
            return None, [ValidationIssue(
                field="account_id",
                issue_type="not_found",
                message=f"Account not found: {account_id}",
            )]

        if currency and account.currency != currency.upper():
            return account, [ValidationIssue(
                field="account_id",
                issue_type="currency_mismatch",
                message=(
                    f"Account currency ({account.currency}) must match "
                    f"record currency ({currency.upper()})"
                ),
            )]

        return account, []
