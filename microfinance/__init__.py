"""
Village Microfinance Back-Office

Borrower registry, weekly-installment loans, field collection recording and
dashboard reporting over a JSON document store. All money is Decimal.
"""

__version__ = "1.0.0"
