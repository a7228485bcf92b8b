from __future__ import annotations

import json

from warung_pos.config import ShopProfile
from warung_pos.store import TransactionManager, WarungDatabase
from warung_pos.store.models import Transaction, parse_kepo_sentence
from warung_pos.store.receipt import build_receipt, receipt_number

SHOP = ShopProfile(name="WARUNG DREAM HIGHER", address="Jl. Contoh 1")


def test_receipt_number_format() -> None:
    tx = Transaction(transaction_id=42, direction="OUT", status="COMPLETED", total_amount=0, created_at="2024-05-10 09:15:00")
    assert receipt_number(tx) == "TXN-20240510-0042"


def test_receipt_projection(db: WarungDatabase) -> None:
    product = db.create_product({"barcode": "1", "name": "Teh Botol", "buy_price": 4000, "sell_price": 5000})
    manager = TransactionManager(db)
    tx = manager.open()
    manager.add_item(tx.transaction_id, product.product_id, 3)
    done = manager.finalize(tx.transaction_id)

    receipt = build_receipt(done, SHOP)

    assert receipt["shopName"] == "WARUNG DREAM HIGHER"
    assert receipt["type"] == "SALE"
    assert receipt["status"] == "COMPLETED"
    assert receipt["date"] == done.completed_at
    assert receipt["receiptNumber"].startswith("TXN-")
    assert receipt["receiptNumber"].endswith(f"-{tx.transaction_id:04d}")
    assert receipt["items"] == [{"name": "Teh Botol", "quantity": 3, "unitPrice": 5000, "total": 15000}]
    assert receipt["total"] == 15000
    assert receipt["kepoSentence"] is None


def test_purchase_receipt_type(db: WarungDatabase) -> None:
    tx = TransactionManager(db).open("IN")
    assert build_receipt(tx, SHOP)["type"] == "PURCHASE"


def test_stored_commentary_sentence() -> None:
    assert parse_kepo_sentence(json.dumps({"sentence": "Wah borong!", "tts": "Waaah"})) == "Wah borong!"
    assert parse_kepo_sentence("plain text line") == "plain text line"
    assert parse_kepo_sentence(None) is None
