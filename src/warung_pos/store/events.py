from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List

from ..logging import get_logger


LOG = get_logger("store-events")

Listener = Callable[[Dict[str, Any]], None]


class TransactionEventBus:
    """Per-transaction publish/subscribe channel.

    Subscribers register for one transaction id and only receive events for
    that id. A failing listener is logged and skipped; publishing never raises
    back into the mutation that triggered it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: Dict[int, List[Listener]] = defaultdict(list)

    def subscribe(self, transaction_id: int, listener: Listener) -> Callable[[], None]:
        key = int(transaction_id)
        with self._lock:
            self._listeners[key].append(listener)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(key)
                if listeners and listener in listeners:
                    listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(key, None)

        return unsubscribe

    def subscriber_count(self, transaction_id: int) -> int:
        with self._lock:
            return len(self._listeners.get(int(transaction_id), ()))

    def publish(self, transaction_id: int, event: str, payload: Dict[str, Any]) -> int:
        """Deliver `event` to the listeners of `transaction_id`; return how many got it."""
        key = int(transaction_id)
        with self._lock:
            listeners = list(self._listeners.get(key, ()))
        message = {"event": event, "transactionId": key, **payload}
        delivered = 0
        for listener in listeners:
            try:
                listener(message)
                delivered += 1
            except Exception:
                LOG.exception("Listener for transaction %s failed on %s", key, event)
        LOG.debug("Published %s for transaction %s to %d listener(s)", event, key, delivered)
        return delivered
