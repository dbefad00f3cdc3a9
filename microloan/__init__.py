"""
Micro-Loan Collection Engine

Daily-repayment tokens and batches: term calculation, schedule generation,
penalty accrual, payment allocation, cash-account ledgers and collection
reports, with Decimal money and a hash-chained audit trail.
"""

__version__ = "1.0.0"
