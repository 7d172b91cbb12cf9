"""
Stock Kernel - lot ledger and inventory reconciliation core.

Pharmaceutical stock held as dated, cost-bearing lots with:
- An append-only movement ledger (before/after invariant per lot)
- Reception-to-lot resolution with resumable, per-line application
- Counting sessions with aggregates recomputed from the item table
"""

__version__ = "0.1.0"
