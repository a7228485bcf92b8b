from __future__ import annotations

from typing import Tuple

# Transaction direction: OUT = sale to a customer, IN = purchase from a supplier.
DIRECTION_OUT = "OUT"
DIRECTION_IN = "IN"
DIRECTION_CHOICES: Tuple[str, ...] = (DIRECTION_OUT, DIRECTION_IN)

STATUS_PENDING = "PENDING"
STATUS_COMPLETED = "COMPLETED"
STATUS_CHOICES: Tuple[str, ...] = (STATUS_PENDING, STATUS_COMPLETED)

ACTION_ADD = "add"
ACTION_CANCEL = "cancel"

# Zone A is the shop side (left of the midline), zone B the customer side.
ZONE_INSIDE = "inside"
ZONE_OUTSIDE = "outside"

DETECTION_CONFIDENCE_THRESHOLD = 0.5
DEFAULT_LOW_STOCK_THRESHOLD = 5
DEFAULT_DETECTION_LABELS: Tuple[str, ...] = ("box", "tube", "bottle")

# Event names pushed to per-transaction subscribers.
EVENT_OPENED = "transaction:opened"
EVENT_ITEM_ADDED = "item:added"
EVENT_ITEM_UPDATED = "item:updated"
EVENT_ITEM_REMOVED = "item:removed"
EVENT_COMPLETED = "transaction:completed"
EVENT_DISCARDED = "transaction:discarded"
EVENT_COMMENTARY = "transaction:commentary"
