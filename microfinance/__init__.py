"""
Microfinance Repayment Engine

Repayment scheduling, overdue penalties, collection-day counting and
payment settlement for a microfinance back office. All monetary math uses
Decimal precision.
"""

__version__ = "1.0.0"
