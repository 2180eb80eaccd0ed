"""
Cashbook - Source Package

Offline-first bookkeeping data layer: customers, cash-in/cash-out
transactions and balances stored on the device, with best-effort sync of
each user's data to a cloud document store.

DESIGN PRINCIPLES:
1. The device is the source of truth; the cloud is a copy
2. Expected conditions are results, not exceptions
3. Balances never drift from the transactions behind them
4. Guest data never leaves the device
5. Storage and remote transport are swappable
"""

__version__ = "1.0.0"
__author__ = "Cashbook Team"
