from __future__ import annotations

import threading
import time
from typing import Any, Dict, List, Optional, Sequence

from ..errors import ExternalUnavailable, InvalidState, NotFound
from ..logging import get_logger
from ..store.constants import ACTION_ADD, DIRECTION_CHOICES, DIRECTION_OUT
from ..store.ledger import TransactionManager
from ..store.models import Transaction
from .detector import KolosalDetector
from .tracker import Detection, DetectionTracker, ScanEvent


LOG = get_logger("vision-session")


class ScanSession:
    """One camera feed polling the vision service.

    At most one sample is in flight at a time: a sample that arrives while
    another is still being processed is dropped (returns None). Results that
    come back after `close()` are ignored. When bound to a transaction, the
    matched intents are applied to its cart.
    """

    def __init__(
        self,
        detector: Optional[KolosalDetector],
        tracker: DetectionTracker,
        *,
        direction: str = DIRECTION_OUT,
        mirrored: bool = False,
        prompts: Optional[Sequence[str]] = None,
        manager: Optional[TransactionManager] = None,
        transaction_id: Optional[int] = None,
    ) -> None:
        direction = (direction or DIRECTION_OUT).upper()
        if direction not in DIRECTION_CHOICES:
            raise ValueError(f"Unsupported direction: {direction}")
        self.detector = detector
        self.tracker = tracker
        self.direction = direction
        self.mirrored = bool(mirrored)
        self.prompts: List[str] = list(prompts or [])
        self.manager = manager
        self.transaction_id = transaction_id
        self._busy = threading.Lock()
        self._closed = False
        self.last_used = time.monotonic()

    @property
    def closed(self) -> bool:
        return self._closed

    def idle_seconds(self, now: Optional[float] = None) -> float:
        return (time.monotonic() if now is None else now) - self.last_used

    def close(self) -> None:
        self._closed = True
        self.tracker.reset()
        LOG.info("Scan session closed (transaction %s)", self.transaction_id)

    def sample(self, image_b64: str) -> Optional[Dict[str, Any]]:
        """Send one frame to the detector and feed the result to the tracker.

        Returns None when the session is closed or still busy with an earlier
        frame, otherwise {"event": ..., "applied": bool, "transaction": ...}.
        A vision failure counts as an empty frame.
        """
        if self._closed or self.detector is None:
            return None
        self.last_used = time.monotonic()
        if not self._busy.acquire(blocking=False):
            LOG.debug("Previous frame still in flight; dropping sample")
            return None
        try:
            try:
                frame = self.detector.detect(image_b64, self.prompts)
                detections, width = frame.detections, frame.image_width
            except ExternalUnavailable as exc:
                LOG.warning("Detection failed, treating frame as empty: %s", exc)
                detections, width = [], 0
            if self._closed:
                LOG.debug("Session closed while detecting; discarding result")
                return None
            return self._observe(detections, width)
        finally:
            self._busy.release()

    def observe(self, detections: Sequence[Detection], image_width: float) -> Optional[Dict[str, Any]]:
        """Feed detections obtained elsewhere (e.g. a client-side detector)."""
        if self._closed:
            return None
        self.last_used = time.monotonic()
        if not self._busy.acquire(blocking=False):
            LOG.debug("A frame is already being processed; dropping detections")
            return None
        try:
            return self._observe(detections, image_width)
        finally:
            self._busy.release()

    def _observe(self, detections: Sequence[Detection], image_width: float) -> Dict[str, Any]:
        event = self.tracker.observe_frame(detections, image_width, self.direction, mirrored=self.mirrored)
        result: Dict[str, Any] = {"event": event.as_dict() if event else None, "applied": False, "transaction": None}
        if event is not None and event.matched:
            tx = self._apply(event)
            if tx is not None:
                result["applied"] = True
                result["transaction"] = tx.as_dict()
        return result

    def _apply(self, event: ScanEvent) -> Optional[Transaction]:
        if self.manager is None or self.transaction_id is None or event.product is None:
            return None
        if self._closed:
            LOG.debug("Session closed before %s of %s could be applied", event.action, event.label)
            return None
        product_id = event.product.product_id
        try:
            if event.action == ACTION_ADD:
                _, tx = self.manager.add_item(self.transaction_id, product_id, 1)
            else:
                tx = self.manager.decrement_product(self.transaction_id, product_id)
        except (NotFound, InvalidState) as exc:
            LOG.warning("Could not apply %s of %s to transaction %s: %s", event.action, event.label, self.transaction_id, exc)
            return None
        return tx
