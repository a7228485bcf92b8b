from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from ..logging import get_logger
from .constants import DIRECTION_IN, DIRECTION_OUT, STATUS_COMPLETED
from .db import WarungDatabase


LOG = get_logger("store-analytics")

PERIODS = ("today", "week", "month")
_TS_FORMAT = "%Y-%m-%d %H:%M:%S"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def period_start(period: str, now: Optional[datetime] = None) -> datetime:
    """Start of a reporting window. Timestamps are UTC, matching SQLite's datetime('now')."""
    now = now or _utcnow()
    if period == "week":
        return now - timedelta(days=7)
    if period == "month":
        return now - timedelta(days=30)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _parse_day(value: Optional[str], fallback: date) -> date:
    if not value:
        return fallback
    try:
        return date.fromisoformat(value[:10])
    except ValueError as exc:
        raise ValueError(f"Invalid date: {value!r} (expected YYYY-MM-DD)") from exc


class SalesAnalytics:
    """Read-only reports over completed transactions."""

    def __init__(self, db: WarungDatabase) -> None:
        self.db = db

    def summary(self, period: str = "today", *, now: Optional[datetime] = None) -> Dict[str, Any]:
        if period not in PERIODS:
            period = "today"
        start = period_start(period, now).strftime(_TS_FORMAT)
        LOG.debug("Summary for %s since %s", period, start)
        with self.db.connect() as conn:
            totals = conn.execute(
                """
                SELECT
                    COALESCE(SUM(CASE WHEN direction = ? THEN total_amount END), 0) AS total_sales,
                    COALESCE(SUM(CASE WHEN direction = ? THEN total_amount END), 0) AS total_purchases,
                    COUNT(*) AS transaction_count,
                    COALESCE(SUM(direction = ?), 0) AS sales_count,
                    COALESCE(SUM(direction = ?), 0) AS purchase_count
                FROM transactions
                WHERE status = ? AND completed_at >= ?;
                """,
                (DIRECTION_OUT, DIRECTION_IN, DIRECTION_OUT, DIRECTION_IN, STATUS_COMPLETED, start),
            ).fetchone()
            cogs = conn.execute(
                """
                SELECT COALESCE(SUM(p.buy_price * i.quantity), 0) AS cogs
                FROM transaction_items i
                JOIN transactions t ON t.transaction_id = i.transaction_id
                JOIN products p ON p.product_id = i.product_id
                WHERE t.status = ? AND t.direction = ? AND t.completed_at >= ?;
                """,
                (STATUS_COMPLETED, DIRECTION_OUT, start),
            ).fetchone()["cogs"]
        total_sales = int(totals["total_sales"])
        return {
            "period": period,
            "totalSales": total_sales,
            "totalPurchases": int(totals["total_purchases"]),
            "netProfit": total_sales - int(cogs),
            "transactionCount": int(totals["transaction_count"]),
            "salesCount": int(totals["sales_count"]),
            "purchaseCount": int(totals["purchase_count"]),
        }

    def revenue(
        self,
        *,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Per-day revenue/purchases/cost/profit; days without sales are zero-filled."""
        today = (now or _utcnow()).date()
        end = _parse_day(date_to, today)
        start = _parse_day(date_from, end - timedelta(days=30))
        if start > end:
            raise ValueError("date_from must not be after date_to")

        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT
                    substr(t.completed_at, 1, 10) AS day,
                    COUNT(*) AS tx_count,
                    COALESCE(SUM(CASE WHEN t.direction = ? THEN t.total_amount END), 0) AS revenue,
                    COALESCE(SUM(CASE WHEN t.direction = ? THEN t.total_amount END), 0) AS purchases,
                    COALESCE(SUM(CASE WHEN t.direction = ? THEN (
                        SELECT COALESCE(SUM(p.buy_price * i.quantity), 0)
                        FROM transaction_items i JOIN products p ON p.product_id = i.product_id
                        WHERE i.transaction_id = t.transaction_id
                    ) END), 0) AS cost
                FROM transactions t
                WHERE t.status = ? AND substr(t.completed_at, 1, 10) BETWEEN ? AND ?
                GROUP BY day;
                """,
                (DIRECTION_OUT, DIRECTION_IN, DIRECTION_OUT, STATUS_COMPLETED, start.isoformat(), end.isoformat()),
            ).fetchall()
        by_day = {row["day"]: row for row in rows}

        result: List[Dict[str, Any]] = []
        current = start
        while current <= end:
            key = current.isoformat()
            row = by_day.get(key)
            revenue = int(row["revenue"]) if row else 0
            cost = int(row["cost"]) if row else 0
            result.append(
                {
                    "date": key,
                    "revenue": revenue,
                    "purchases": int(row["purchases"]) if row else 0,
                    "cost": cost,
                    "profit": revenue - cost,
                    "transactionCount": int(row["tx_count"]) if row else 0,
                }
            )
            current += timedelta(days=1)
        return result

    def top_products(self, period: str = "week", *, limit: int = 10, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        start = period_start(period if period in PERIODS else "week", now).strftime(_TS_FORMAT)
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT
                    p.product_id, p.name, p.barcode, p.category,
                    SUM(i.quantity) AS total_quantity,
                    SUM(i.quantity * i.unit_price) AS total_revenue
                FROM transaction_items i
                JOIN transactions t ON t.transaction_id = i.transaction_id
                JOIN products p ON p.product_id = i.product_id
                WHERE t.status = ? AND t.direction = ? AND t.completed_at >= ?
                GROUP BY p.product_id
                ORDER BY total_quantity DESC, p.name ASC
                LIMIT ?;
                """,
                (STATUS_COMPLETED, DIRECTION_OUT, start, int(limit)),
            ).fetchall()
        return [
            {
                "product": {
                    "product_id": row["product_id"],
                    "name": row["name"],
                    "barcode": row["barcode"],
                    "category": row["category"],
                },
                "totalQuantity": int(row["total_quantity"]),
                "totalRevenue": int(row["total_revenue"]),
            }
            for row in rows
        ]

    def categories(self, period: str = "week", *, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        start = period_start(period if period in PERIODS else "week", now).strftime(_TS_FORMAT)
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT
                    COALESCE(p.category, 'Lainnya') AS category,
                    SUM(i.quantity * i.unit_price) AS total_revenue,
                    SUM(i.quantity) AS total_quantity
                FROM transaction_items i
                JOIN transactions t ON t.transaction_id = i.transaction_id
                JOIN products p ON p.product_id = i.product_id
                WHERE t.status = ? AND t.direction = ? AND t.completed_at >= ?
                GROUP BY COALESCE(p.category, 'Lainnya')
                ORDER BY total_revenue DESC;
                """,
                (STATUS_COMPLETED, DIRECTION_OUT, start),
            ).fetchall()
        return [
            {
                "category": row["category"],
                "totalRevenue": int(row["total_revenue"]),
                "totalQuantity": int(row["total_quantity"]),
            }
            for row in rows
        ]

    def hourly_pattern(self, day: Optional[str] = None, *, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        target = _parse_day(day, (now or _utcnow()).date()).isoformat()
        buckets = [{"hour": hour, "revenue": 0, "count": 0} for hour in range(24)]
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT CAST(substr(completed_at, 12, 2) AS INTEGER) AS hour,
                       SUM(total_amount) AS revenue,
                       COUNT(*) AS count
                FROM transactions
                WHERE status = ? AND direction = ? AND substr(completed_at, 1, 10) = ?
                GROUP BY hour;
                """,
                (STATUS_COMPLETED, DIRECTION_OUT, target),
            ).fetchall()
        for row in rows:
            hour = int(row["hour"])
            if 0 <= hour < 24:
                buckets[hour]["revenue"] = int(row["revenue"])
                buckets[hour]["count"] = int(row["count"])
        return buckets

    def low_stock(self, *, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM products WHERE stock <= low_stock_threshold ORDER BY stock ASC, name ASC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)
        with self.db.connect() as conn:
            return self.db.rows_to_dicts(conn.execute(sql + ";", params).fetchall())

    def weekly_report(self, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or _utcnow()
        week_start = (now - timedelta(days=7)).strftime(_TS_FORMAT)
        prev_start = (now - timedelta(days=14)).strftime(_TS_FORMAT)
        with self.db.connect() as conn:
            current = conn.execute(
                """
                SELECT COALESCE(SUM(total_amount), 0) AS sales, COUNT(*) AS n
                FROM transactions
                WHERE status = ? AND direction = ? AND completed_at >= ?;
                """,
                (STATUS_COMPLETED, DIRECTION_OUT, week_start),
            ).fetchone()
            previous = conn.execute(
                """
                SELECT COALESCE(SUM(total_amount), 0) AS sales
                FROM transactions
                WHERE status = ? AND direction = ? AND completed_at >= ? AND completed_at < ?;
                """,
                (STATUS_COMPLETED, DIRECTION_OUT, prev_start, week_start),
            ).fetchone()
        current_sales = int(current["sales"])
        prev_sales = int(previous["sales"])
        change = ((current_sales - prev_sales) / prev_sales) * 100 if prev_sales > 0 else 0.0
        best = self.top_products("week", limit=5, now=now)
        return {
            "period": "Last 7 days",
            "totalRevenue": current_sales,
            "revenueChange": round(change, 1),
            "transactionCount": int(current["n"]),
            "bestSellers": [{"name": b["product"]["name"], "quantity": b["totalQuantity"]} for b in best],
            "lowStockWarnings": self.low_stock(limit=5),
        }
