from __future__ import annotations

from typing import Any, Dict, List

from ..errors import ValidationError
from ..logging import get_logger
from .db import WarungDatabase


LOG = get_logger("store-seed")


DEMO_CATALOG: List[Dict[str, Any]] = [
    # Bahan Kue
    {"barcode": "8991001234501", "name": "Telur", "category": "Bahan", "buy_price": 2000, "sell_price": 2500, "stock": 50, "vision_label": "egg"},
    {"barcode": "8991001234502", "name": "Tepung Terigu Segitiga", "category": "Bahan", "buy_price": 8000, "sell_price": 10000, "stock": 30},
    {"barcode": "8991001234503", "name": "Gula Pasir", "category": "Bahan", "buy_price": 12000, "sell_price": 14000, "stock": 25},
    {"barcode": "8991001234504", "name": "Mentega BlueBand", "category": "Bahan", "buy_price": 5000, "sell_price": 7000, "stock": 20},
    # Mie Instan
    {"barcode": "089686010947", "name": "Indomie Goreng", "category": "Mie", "buy_price": 2500, "sell_price": 3500, "stock": 100, "vision_label": "noodle pack"},
    {"barcode": "089686010954", "name": "Indomie Soto", "category": "Mie", "buy_price": 2500, "sell_price": 3500, "stock": 80},
    {"barcode": "089686010985", "name": "Mie Sedaap Goreng", "category": "Mie", "buy_price": 2500, "sell_price": 3500, "stock": 50},
    # Bumbu
    {"barcode": "8991001234509", "name": "Kecap Manis ABC", "category": "Bumbu", "buy_price": 5000, "sell_price": 7000, "stock": 25},
    {"barcode": "8991001234513", "name": "Garam Dapur", "category": "Bumbu", "buy_price": 2000, "sell_price": 3000, "stock": 30},
    # Minuman
    {"barcode": "089686911015", "name": "Aqua 600ml", "category": "Minuman", "buy_price": 3000, "sell_price": 4000, "stock": 100, "vision_label": "bottle"},
    {"barcode": "089686911022", "name": "Teh Botol Sosro", "category": "Minuman", "buy_price": 4000, "sell_price": 5000, "stock": 50},
    {"barcode": "089686911046", "name": "Coca Cola 390ml", "category": "Minuman", "buy_price": 5000, "sell_price": 7000, "stock": 40, "vision_label": "can"},
    # Snack
    {"barcode": "089686911101", "name": "Chitato Sapi Panggang", "category": "Snack", "buy_price": 8000, "sell_price": 10000, "stock": 25, "vision_label": "chips bag"},
    {"barcode": "089686911103", "name": "Oreo Original", "category": "Snack", "buy_price": 5000, "sell_price": 7000, "stock": 30, "vision_label": "box"},
    # Toiletries
    {"barcode": "8991001234801", "name": "Pasta Gigi Pepsodent", "category": "Toiletries", "buy_price": 8000, "sell_price": 11000, "stock": 15, "vision_label": "tube"},
    # Rokok
    {"barcode": "8991001234601", "name": "Gudang Garam Surya", "category": "Rokok", "buy_price": 20000, "sell_price": 25000, "stock": 30},
    # Low stock items (for alerts)
    {"barcode": "8991001234701", "name": "Vanili Bubuk", "category": "Bahan", "buy_price": 2000, "sell_price": 3000, "stock": 3},
    {"barcode": "8991001234702", "name": "Coklat Bubuk", "category": "Bahan", "buy_price": 5000, "sell_price": 7000, "stock": 2},
]


def seed_catalog(db: WarungDatabase, catalog: List[Dict[str, Any]] = DEMO_CATALOG) -> int:
    """Insert catalog entries whose barcode is not present yet; return how many were added."""
    added = 0
    for entry in catalog:
        try:
            db.create_product(entry)
        except ValidationError:
            LOG.debug("Skipping existing barcode %s", entry.get("barcode"))
            continue
        added += 1
    LOG.info("Seeded %d of %d catalog entries", added, len(catalog))
    return added
