"""
Expense reports: member reimbursement requests with receipts, plus the bank account
(encrypted at rest) used for bank-transfer reimbursements.
"""
