"""Double-entry trade ledger with lot tracking, wash sales and tax reports."""

__version__ = "0.1.0"
