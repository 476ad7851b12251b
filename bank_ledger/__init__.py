"""
Bank Ledger

Account ledger and transfer engine: balances and the transaction log are
kept mutually consistent under deposits, withdrawals and transfers, with
all monetary values handled as Decimal.
"""

__version__ = "1.0.0"
