"""Shelfkeeper - lending library core

This package contains:
- Circulation ledger: loans, returns, renewals, overdue flags (circulation.py)
- Inventory reconciliation sessions (inventory.py)
- Damage/loss issue tracking and write-offs (issues.py)
- Stock counters, the only writer of book quantities (stock.py)
- Library facade (library.py), API endpoints (api.py), CLI (main.py)
- Database layer (database.py)
"""
