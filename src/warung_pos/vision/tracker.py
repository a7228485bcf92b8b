from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from ..errors import ExternalUnavailable
from ..logging import get_logger
from ..store.constants import (
    ACTION_ADD,
    ACTION_CANCEL,
    DETECTION_CONFIDENCE_THRESHOLD,
    DIRECTION_OUT,
    ZONE_INSIDE,
    ZONE_OUTSIDE,
)
from ..store.models import Product


LOG = get_logger("vision-tracker")

LabelMatcherFn = Callable[[str], Optional[Product]]


@dataclass(frozen=True)
class Detection:
    label: str
    confidence: float
    bbox: Tuple[float, float, float, float]  # x, y, width, height in image pixels

    @property
    def center_x(self) -> float:
        return self.bbox[0] + self.bbox[2] / 2

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Detection":
        """Build from the vision service shape: {name|label, confidence, bbox: [x, y, w, h]}."""
        label = data.get("name") or data.get("label")
        bbox = data.get("bbox")
        if not isinstance(label, str) or not isinstance(bbox, (list, tuple)) or len(bbox) < 4:
            raise ValueError(f"Malformed detection: {data!r}")
        return cls(
            label=label.strip(),
            confidence=float(data.get("confidence", 0.0)),
            bbox=(float(bbox[0]), float(bbox[1]), float(bbox[2]), float(bbox[3])),
        )


@dataclass(frozen=True)
class ScanEvent:
    """A crossing turned into a cart intent; `product` is None when the label did not match."""

    label: str
    action: str
    confidence: float
    zone: str
    product: Optional[Product] = None

    @property
    def matched(self) -> bool:
        return self.product is not None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "action": self.action,
            "confidence": self.confidence,
            "zone": self.zone,
            "matched": self.matched,
            "product": self.product.as_dict() if self.product else None,
        }


def zone_for(detection: Detection, image_width: float, *, mirrored: bool = False) -> str:
    """Zone of the box center relative to the vertical midline.

    `mirrored` means the frame pixels are flipped left-right relative to the
    physical scene; the center is mapped back first so zones always name the
    physical side.
    """
    center = detection.center_x
    if mirrored:
        center = image_width - center
    return ZONE_INSIDE if center < image_width / 2 else ZONE_OUTSIDE


def crossing_action(previous_zone: str, zone: str, direction: str) -> str:
    """Selling (OUT): inside->outside adds. Buying (IN): outside->inside adds. The reverse cancels."""
    leaving_shop = previous_zone == ZONE_INSIDE and zone == ZONE_OUTSIDE
    if direction == DIRECTION_OUT:
        return ACTION_ADD if leaving_shop else ACTION_CANCEL
    return ACTION_CANCEL if leaving_shop else ACTION_ADD


class DetectionTracker:
    """Turns per-frame detections into add/cancel intents for one object at a time.

    The only state is the last (label, zone) seen in the immediately
    preceding frame. It is cleared on an empty or low-confidence frame and
    after every crossing, and replaced when a different label shows up.
    """

    def __init__(
        self,
        matcher: Optional[LabelMatcherFn] = None,
        *,
        threshold: float = DETECTION_CONFIDENCE_THRESHOLD,
    ) -> None:
        self.matcher = matcher
        self.threshold = threshold
        self._track: Optional[Tuple[str, str]] = None

    @property
    def track(self) -> Optional[Tuple[str, str]]:
        return self._track

    def reset(self) -> None:
        self._track = None

    def observe_frame(
        self,
        detections: Sequence[Detection],
        image_width: float,
        direction: str,
        *,
        mirrored: bool = False,
    ) -> Optional[ScanEvent]:
        candidates = [d for d in detections if d.confidence >= self.threshold]
        if not candidates:
            if self._track is not None:
                LOG.debug("No object at or above %.2f confidence; resetting track", self.threshold)
            self._track = None
            return None

        best = max(candidates, key=lambda d: d.confidence)
        zone = zone_for(best, image_width, mirrored=mirrored)
        previous = self._track

        if previous is None:
            LOG.debug("First sighting of %s in %s zone", best.label, zone)
            self._track = (best.label, zone)
            return None

        prev_label, prev_zone = previous
        if prev_label != best.label:
            LOG.debug("Object changed (%s -> %s); tracking the new one", prev_label, best.label)
            self._track = (best.label, zone)
            return None

        if prev_zone == zone:
            return None

        # Cleared so a lingering object needs two fresh frames before the next intent.
        self._track = None
        action = crossing_action(prev_zone, zone, direction)
        LOG.info("%s moved %s -> %s: %s (%s)", best.label, prev_zone, zone, action, direction)

        product = None
        if self.matcher is not None:
            try:
                product = self.matcher(best.label)
            except ExternalUnavailable as exc:
                LOG.warning("Label matching failed for %r: %s", best.label, exc)
        if product is None:
            LOG.info("No catalog product matches label %r", best.label)
        return ScanEvent(label=best.label, action=action, confidence=best.confidence, zone=zone, product=product)
