from __future__ import annotations

import json
import sqlite3
from typing import TYPE_CHECKING, Any, Optional, Tuple

from ..errors import ExternalUnavailable, InvalidState, NotFound, ValidationError
from ..logging import get_logger
from .constants import (
    DIRECTION_CHOICES,
    DIRECTION_OUT,
    EVENT_COMMENTARY,
    EVENT_COMPLETED,
    EVENT_DISCARDED,
    EVENT_ITEM_ADDED,
    EVENT_ITEM_REMOVED,
    EVENT_ITEM_UPDATED,
    EVENT_OPENED,
    STATUS_COMPLETED,
    STATUS_PENDING,
)
from .db import ProductRef, WarungDatabase
from .events import TransactionEventBus
from .models import Commentary, Transaction, TransactionItem

if TYPE_CHECKING:
    from ..ai.commentary import KepoCommentator


LOG = get_logger("ledger")


def _validate_quantity(quantity: Any) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("quantity must be a positive integer", field="quantity")
    if quantity <= 0:
        raise ValidationError("quantity must be a positive integer", field="quantity")
    return quantity


class TransactionManager:
    """Owns the cart aggregate: a transaction plus its line items.

    Every mutation runs in one `WarungDatabase.write()` unit which re-checks
    the status, applies the line change and recomputes the total from the
    lines before committing, so `total_amount == Σ unit_price × quantity`
    holds for every committed state. Each call returns the full aggregate as
    stored after the write.
    """

    def __init__(
        self,
        db: WarungDatabase,
        *,
        events: Optional[TransactionEventBus] = None,
        commentator: Optional["KepoCommentator"] = None,
    ) -> None:
        self.db = db
        self.events = events or TransactionEventBus()
        self.commentator = commentator

    # ---------- internals ----------
    @staticmethod
    def _require_pending(conn: sqlite3.Connection, transaction_id: int) -> Transaction:
        tx = WarungDatabase.load_transaction(conn, transaction_id)
        if tx.status != STATUS_PENDING:
            raise InvalidState(tx.transaction_id, tx.status)
        return tx

    @staticmethod
    def _recompute_total(conn: sqlite3.Connection, transaction_id: int) -> None:
        conn.execute(
            """
            UPDATE transactions
            SET total_amount = (
                SELECT COALESCE(SUM(unit_price * quantity), 0)
                FROM transaction_items
                WHERE transaction_id = ?
            )
            WHERE transaction_id = ?;
            """,
            (int(transaction_id), int(transaction_id)),
        )

    def _publish(self, tx: Transaction, event: str, **extra: Any) -> None:
        self.events.publish(tx.transaction_id, event, {"transaction": tx.as_dict(), **extra})

    # ---------- reads ----------
    def get(self, transaction_id: int) -> Transaction:
        return self.db.fetch_transaction(transaction_id)

    # ---------- lifecycle ----------
    def open(self, direction: str = DIRECTION_OUT) -> Transaction:
        direction = (direction or DIRECTION_OUT).upper()
        if direction not in DIRECTION_CHOICES:
            raise ValidationError(f"direction must be one of {', '.join(DIRECTION_CHOICES)}", field="direction")
        with self.db.write() as conn:
            cur = conn.execute(
                "INSERT INTO transactions (direction, status, total_amount) VALUES (?, ?, 0);",
                (direction, STATUS_PENDING),
            )
            tx = self.db.load_transaction(conn, int(cur.lastrowid))
        LOG.info("Opened %s transaction %s", direction, tx.transaction_id)
        self._publish(tx, EVENT_OPENED)
        return tx

    def add_item(
        self, transaction_id: int, product_ref: ProductRef, quantity: int = 1
    ) -> Tuple[TransactionItem, Transaction]:
        """Add `quantity` of a product (catalog id or scan code) to a pending cart.

        A product already on the cart accumulates into its existing line; the
        unit price captured when that line was created is kept.
        """
        quantity = _validate_quantity(quantity)
        with self.db.write() as conn:
            tx = self._require_pending(conn, transaction_id)
            product = self.db.find_product(conn, product_ref)
            existing = tx.find_product_line(product.product_id)
            if existing is not None:
                conn.execute(
                    "UPDATE transaction_items SET quantity = quantity + ? WHERE item_id = ?;",
                    (quantity, existing.item_id),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO transaction_items (transaction_id, product_id, quantity, unit_price)
                    VALUES (?, ?, ?, ?);
                    """,
                    (tx.transaction_id, product.product_id, quantity, product.unit_price_for(tx.direction)),
                )
            self._recompute_total(conn, tx.transaction_id)
            updated = self.db.load_transaction(conn, tx.transaction_id)
        item = updated.find_product_line(product.product_id)
        if item is None:
            raise NotFound("item", f"product {product.product_id}")
        LOG.info(
            "Transaction %s: +%d x %s (line qty %d, total %d)",
            updated.transaction_id,
            quantity,
            product.name,
            item.quantity,
            updated.total_amount,
        )
        self._publish(updated, EVENT_ITEM_ADDED, item=item.as_dict())
        return item, updated

    def set_quantity(self, transaction_id: int, item_id: int, quantity: int) -> Transaction:
        """Set a line to an exact positive quantity. Zero is refused, not treated as removal."""
        quantity = _validate_quantity(quantity)
        with self.db.write() as conn:
            tx = self._require_pending(conn, transaction_id)
            if tx.find_item(int(item_id)) is None:
                raise NotFound("item", item_id)
            conn.execute(
                "UPDATE transaction_items SET quantity = ? WHERE item_id = ? AND transaction_id = ?;",
                (quantity, int(item_id), tx.transaction_id),
            )
            self._recompute_total(conn, tx.transaction_id)
            updated = self.db.load_transaction(conn, tx.transaction_id)
        LOG.info("Transaction %s: item %s set to %d (total %d)", updated.transaction_id, item_id, quantity, updated.total_amount)
        self._publish(updated, EVENT_ITEM_UPDATED, itemId=int(item_id))
        return updated

    def remove_item(self, transaction_id: int, item_id: int) -> Transaction:
        with self.db.write() as conn:
            tx = self._require_pending(conn, transaction_id)
            if tx.find_item(int(item_id)) is None:
                raise NotFound("item", item_id)
            conn.execute(
                "DELETE FROM transaction_items WHERE item_id = ? AND transaction_id = ?;",
                (int(item_id), tx.transaction_id),
            )
            self._recompute_total(conn, tx.transaction_id)
            updated = self.db.load_transaction(conn, tx.transaction_id)
        LOG.info("Transaction %s: removed item %s (total %d)", updated.transaction_id, item_id, updated.total_amount)
        self._publish(updated, EVENT_ITEM_REMOVED, itemId=int(item_id))
        return updated

    def decrement_product(self, transaction_id: int, product_id: int) -> Transaction:
        """Take one unit of a product back off the cart, dropping the line at zero."""
        with self.db.write() as conn:
            tx = self._require_pending(conn, transaction_id)
            line = tx.find_product_line(int(product_id))
            if line is None:
                raise NotFound("item", f"product {product_id}", f"Product {product_id} is not on transaction {tx.transaction_id}")
            if line.quantity <= 1:
                conn.execute("DELETE FROM transaction_items WHERE item_id = ?;", (line.item_id,))
                event = EVENT_ITEM_REMOVED
            else:
                conn.execute("UPDATE transaction_items SET quantity = quantity - 1 WHERE item_id = ?;", (line.item_id,))
                event = EVENT_ITEM_UPDATED
            self._recompute_total(conn, tx.transaction_id)
            updated = self.db.load_transaction(conn, tx.transaction_id)
        self._publish(updated, event, itemId=line.item_id)
        return updated

    def finalize(self, transaction_id: int, *, enrich: bool = True) -> Transaction:
        """Apply every line's stock delta and flip PENDING -> COMPLETED in one unit.

        OUT lines decrement stock, IN lines increment it. Any failure rolls
        the whole unit back, leaving both stock and status untouched. When
        `enrich` is set, commentary is attempted afterwards on a best-effort
        basis.
        """
        with self.db.write() as conn:
            tx = self._require_pending(conn, transaction_id)
            sign = -1 if tx.direction == DIRECTION_OUT else 1
            for item in tx.items:
                self.db.apply_stock_delta(conn, item.product_id, sign * item.quantity)
            cur = conn.execute(
                """
                UPDATE transactions
                SET status = ?, completed_at = datetime('now')
                WHERE transaction_id = ? AND status = ?;
                """,
                (STATUS_COMPLETED, tx.transaction_id, STATUS_PENDING),
            )
            if cur.rowcount != 1:
                raise InvalidState(tx.transaction_id, STATUS_COMPLETED)
            completed = self.db.load_transaction(conn, tx.transaction_id)
        LOG.info(
            "Completed %s transaction %s: %d line(s), total %d",
            completed.direction,
            completed.transaction_id,
            len(completed.items),
            completed.total_amount,
        )
        self._publish(completed, EVENT_COMPLETED)
        if enrich:
            self.enrich_quietly(completed.transaction_id)
            completed = self.get(completed.transaction_id)
        return completed

    def discard(self, transaction_id: int) -> Transaction:
        """Delete a pending cart and its lines; returns the aggregate as it was."""
        with self.db.write() as conn:
            tx = self._require_pending(conn, transaction_id)
            conn.execute("DELETE FROM transactions WHERE transaction_id = ?;", (tx.transaction_id,))
        LOG.info("Discarded transaction %s (%d line(s))", tx.transaction_id, len(tx.items))
        self._publish(tx, EVENT_DISCARDED)
        return tx

    # ---------- commentary side channel ----------
    def generate_commentary(self, transaction_id: int) -> Optional[Commentary]:
        """Ask the commentator about a completed sale and store the result.

        Returns None when there is nothing to comment on (not a sale, no
        lines, no commentator) or the commentator is unavailable. Raises
        NotFound if the transaction disappeared before the write.
        """
        tx = self.get(transaction_id)
        if tx.status != STATUS_COMPLETED:
            raise InvalidState(tx.transaction_id, tx.status, "Commentary is only generated for completed transactions")
        if tx.direction != DIRECTION_OUT or not tx.items or self.commentator is None:
            return None

        descriptions = [f"{item.product.name if item.product else item.product_id} ({item.quantity})" for item in tx.items]
        try:
            commentary = self.commentator.generate(descriptions, transaction_id=tx.transaction_id)
        except ExternalUnavailable as exc:
            LOG.warning("Commentary skipped for transaction %s: %s", tx.transaction_id, exc)
            return None

        raw = json.dumps({"sentence": commentary.sentence, "tts": commentary.tts}, ensure_ascii=False)
        with self.db.write() as conn:
            cur = conn.execute(
                "UPDATE transactions SET kepo_guess = ?, kepo_audio_url = ? WHERE transaction_id = ?;",
                (raw, commentary.audio_ref, tx.transaction_id),
            )
            if cur.rowcount == 0:
                raise NotFound("transaction", tx.transaction_id)
            updated = self.db.load_transaction(conn, tx.transaction_id)
        self._publish(updated, EVENT_COMMENTARY, kepoSentence=commentary.sentence, kepoAudioUrl=commentary.audio_ref)
        return commentary

    def enrich_quietly(self, transaction_id: int) -> None:
        """generate_commentary for background use: every failure is logged, none escapes."""
        try:
            self.generate_commentary(transaction_id)
        except Exception:
            LOG.exception("Commentary generation failed for transaction %s", transaction_id)
