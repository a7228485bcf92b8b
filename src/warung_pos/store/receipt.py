from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from ..config import ShopProfile
from .constants import DIRECTION_OUT
from .models import Transaction


def receipt_number(tx: Transaction) -> str:
    """`TXN-YYYYMMDD-NNNN` from the creation date and the transaction id."""
    created = _parse_timestamp(tx.created_at)
    day = created.strftime("%Y%m%d") if created else "00000000"
    return f"TXN-{day}-{tx.transaction_id:04d}"


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace(" ", "T"))
    except ValueError:
        return None


def build_receipt(tx: Transaction, shop: ShopProfile) -> Dict[str, Any]:
    """Read-only receipt projection of an aggregate."""
    return {
        "shopName": shop.name,
        "address": shop.address,
        "date": tx.completed_at or tx.created_at,
        "receiptNumber": receipt_number(tx),
        "type": "SALE" if tx.direction == DIRECTION_OUT else "PURCHASE",
        "status": tx.status,
        "items": [
            {
                "name": item.product.name if item.product else str(item.product_id),
                "quantity": item.quantity,
                "unitPrice": item.unit_price,
                "total": item.line_total,
            }
            for item in tx.items
        ],
        "total": tx.total_amount,
        "kepoSentence": tx.commentary_sentence,
        "kepoAudioUrl": tx.kepo_audio_url,
    }
