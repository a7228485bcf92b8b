"""Camera-side scanning: zone-crossing tracker, vision client, label matching.

Modules:
- tracker: DetectionTracker, turns per-frame detections into add/cancel intents
- detector: KolosalDetector, the segmentation service client
- matcher: LabelMatcher, resolves detector labels to catalog products
- session: ScanSession, one polling camera feed bound to a cart
"""

from .detector import DetectionFrame, KolosalDetector
from .matcher import LabelMatcher, match_label
from .session import ScanSession
from .tracker import Detection, DetectionTracker, ScanEvent

__all__ = [
    "Detection",
    "DetectionFrame",
    "DetectionTracker",
    "KolosalDetector",
    "LabelMatcher",
    "ScanEvent",
    "ScanSession",
    "match_label",
]
