"""
Ledgers module: double-entry bookkeeping for payments, refunds and credits.

Every money movement produces a LedgerTransaction plus balanced LedgerEntry rows
(signed amounts: debits positive, credits negative on asset accounts).
"""
