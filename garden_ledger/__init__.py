"""
Garden Ledger

Economic ledger of the garden game: per-account leases, withdrawal sagas with
compensation, administrator status transitions and a reconciliation sweep.
All balances are held as Decimal and every change is backed by a ledger entry.
"""

__version__ = "1.0.0"
