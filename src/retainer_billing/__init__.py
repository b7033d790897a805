"""Retainer billing engine: rollover balances, time allocation and invoicing."""

__version__ = "0.1.0"
