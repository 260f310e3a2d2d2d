"""Shared-expense ledger and debt settlement engine."""

__version__ = "0.1.0"
