from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .constants import DIRECTION_OUT


def parse_kepo_sentence(raw: Optional[str]) -> Optional[str]:
    """Extract the display sentence from a stored commentary payload.

    Older rows stored the sentence as plain text rather than JSON.
    """
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except ValueError:
        return raw
    if isinstance(parsed, dict):
        sentence = parsed.get("sentence")
        return sentence if isinstance(sentence, str) else None
    return raw


@dataclass
class Product:
    product_id: int
    barcode: str
    name: str
    category: Optional[str]
    buy_price: int
    sell_price: int
    stock: int
    low_stock_threshold: int
    vision_label: Optional[str] = None
    image_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "Product":
        return cls(
            product_id=int(row["product_id"]),
            barcode=row["barcode"],
            name=row["name"],
            category=row["category"],
            buy_price=int(row["buy_price"]),
            sell_price=int(row["sell_price"]),
            stock=int(row["stock"]),
            low_stock_threshold=int(row["low_stock_threshold"]),
            vision_label=row["vision_label"],
            image_url=row["image_url"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def unit_price_for(self, direction: str) -> int:
        """Sale price for OUT carts, cost price for IN carts."""
        return self.sell_price if direction == DIRECTION_OUT else self.buy_price

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TransactionItem:
    item_id: int
    transaction_id: int
    product_id: int
    quantity: int
    unit_price: int  # snapshot taken when the line was created
    product: Optional[Product] = None
    created_at: Optional[str] = None

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity

    def as_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "transaction_id": self.transaction_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "line_total": self.line_total,
            "product": self.product.as_dict() if self.product else None,
            "created_at": self.created_at,
        }


@dataclass
class Commentary:
    sentence: str
    tts: Optional[str] = None
    audio_ref: Optional[str] = None


@dataclass
class Transaction:
    """A cart together with its current lines (the aggregate)."""

    transaction_id: int
    direction: str
    status: str
    total_amount: int
    created_at: Optional[str]
    completed_at: Optional[str] = None
    kepo_guess: Optional[str] = None
    kepo_audio_url: Optional[str] = None
    items: List[TransactionItem] = field(default_factory=list)

    @property
    def computed_total(self) -> int:
        return sum(item.line_total for item in self.items)

    def find_item(self, item_id: int) -> Optional[TransactionItem]:
        for item in self.items:
            if item.item_id == item_id:
                return item
        return None

    def find_product_line(self, product_id: int) -> Optional[TransactionItem]:
        for item in self.items:
            if item.product_id == product_id:
                return item
        return None

    @property
    def commentary_sentence(self) -> Optional[str]:
        return parse_kepo_sentence(self.kepo_guess)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "direction": self.direction,
            "status": self.status,
            "total_amount": self.total_amount,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "kepo_sentence": self.commentary_sentence,
            "kepo_audio_url": self.kepo_audio_url,
            "items": [item.as_dict() for item in self.items],
        }
