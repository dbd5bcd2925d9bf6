"""
Loanbook - Lend/Borrow Tracking Package

Tracks money lent to or borrowed from other people, the partial
repayments made against each loan, and the account-ledger transactions
that move real balances when a repayment goes through an account.

DESIGN PRINCIPLES:
1. Remaining balance is always recomputed from stored history
2. Settled is terminal
3. Partial failures are reported, never hidden
4. Every write is auditable
5. Storage and ledger backends are swappable
"""

__version__ = "1.0.0"
__author__ = "Loanbook Team"
