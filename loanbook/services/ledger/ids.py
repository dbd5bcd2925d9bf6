"""
Ledger Transaction Ids

Ids are short and random (LB + 6 digits by default), so collisions are
possible. The ledger store rejects a taken id with DuplicateError and we
simply mint a fresh one and try again.
"""

import random
from typing import Callable, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from loanbook.config import get_settings
from loanbook.models.loan import LedgerTransaction
from loanbook.services.ledger.interface import LedgerBridge
from loanbook.services.storage.interface import DuplicateError


def mint_transaction_id() -> str:
    """
    Generate a short ledger transaction id: prefix + zero-padded digits.

    Not guaranteed unique. The ledger store enforces uniqueness.
    """
    settings = get_settings().app
    digits = settings.transaction_id_digits
    number = random.randrange(10 ** digits)
    return f"{settings.transaction_id_prefix}{number:0{digits}d}"


async def create_with_fresh_id(
    ledger: LedgerBridge,
    build: Callable[[str], LedgerTransaction],
    attempts: Optional[int] = None,
) -> str:
    """
    Create a transaction under a newly minted id, re-minting on collision.

    Args:
        ledger: Target ledger
        build: Builds the transaction for a given id
        attempts: Max ids to try (defaults to settings)

    Returns:
        The id the ledger accepted

    Raises:
        DuplicateError: If every minted id was taken
        StorageError: Any other ledger failure, immediately
    """
    attempts = attempts or get_settings().app.transaction_id_attempts
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(attempts),
        retry=retry_if_exception_type(DuplicateError),
        reraise=True,
    ):
        with attempt:
            return await ledger.create_transaction(build(mint_transaction_id()))
