"""
EMI Engine

Daily installment loans: schedule generation, overdue penalty accrual,
payment verification requests and loan read models over a document store.
"""

__version__ = "1.0.0"
