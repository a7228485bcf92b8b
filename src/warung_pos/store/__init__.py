"""Catalog and transaction ledger backed by SQLite.

Modules:
- db: DB location, schema, catalog CRUD and aggregate loading
- models: Dataclasses for products, transactions and line items
- ledger: TransactionManager, the cart aggregate and its finalize step
- events: per-transaction publish/subscribe used for live UI sync
- analytics: read-only sales reports
- receipt: receipt projection of a transaction
- seed: demo catalog
"""

from .analytics import SalesAnalytics
from .db import WarungDatabase
from .events import TransactionEventBus
from .ledger import TransactionManager

__all__ = [
    "SalesAnalytics",
    "TransactionEventBus",
    "TransactionManager",
    "WarungDatabase",
]
