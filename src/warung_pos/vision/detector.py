from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import requests

from ..config import KolosalSettings
from ..errors import ExternalUnavailable
from ..logging import get_logger
from ..store.constants import DETECTION_CONFIDENCE_THRESHOLD
from .tracker import Detection


LOG = get_logger("vision-detector")

DEFAULT_IMAGE_WIDTH = 320


@dataclass
class DetectionFrame:
    detections: List[Detection] = field(default_factory=list)
    image_width: float = DEFAULT_IMAGE_WIDTH


class KolosalDetector:
    """Thin client for the Kolosal open-vocabulary segmentation endpoint."""

    def __init__(
        self,
        settings: KolosalSettings,
        *,
        timeout: int = 15,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.settings = settings
        self.timeout = int(timeout)
        self.s = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.settings.api_url}{path}"

    def detect(self, image_b64: str, prompts: Sequence[str]) -> DetectionFrame:
        """Detect `prompts` in a base64 JPEG; raises ExternalUnavailable on any failure."""
        if not self.settings.api_key:
            raise ExternalUnavailable("vision", "KOLOSAL_API_KEY not set")
        payload = {
            "image": image_b64,
            "prompts": list(prompts),
            "return_masks": False,
            "return_annotated": False,
            "threshold": DETECTION_CONFIDENCE_THRESHOLD,
        }
        headers = {
            "Authorization": f"Bearer {self.settings.api_key}",
            "Content-Type": "application/json",
        }
        started = time.monotonic()
        try:
            r = self.s.post(self._url("/v1/segment/base64"), json=payload, headers=headers, timeout=self.timeout)
            r.raise_for_status()
            body = r.json()
        except (requests.RequestException, ValueError) as exc:
            LOG.error("Vision request failed after %.0fms: %s", (time.monotonic() - started) * 1000, exc)
            raise ExternalUnavailable("vision", str(exc)) from exc

        elapsed_ms = (time.monotonic() - started) * 1000
        if not isinstance(body, dict) or body.get("success") is False:
            raise ExternalUnavailable("vision", "service reported failure")
        results = body.get("results") or []
        try:
            detections = [Detection.from_dict(item) for item in results]
        except (TypeError, ValueError, AttributeError) as exc:
            raise ExternalUnavailable("vision", f"malformed response: {exc}") from exc
        size = body.get("image_size") or []
        try:
            width = float(size[0]) if size else DEFAULT_IMAGE_WIDTH
        except (TypeError, ValueError, KeyError, IndexError) as exc:
            raise ExternalUnavailable("vision", "malformed image_size") from exc
        LOG.debug(
            "Vision: %d object(s) in %.0fms (internal: %s ms)",
            len(detections),
            elapsed_ms,
            body.get("processing_time_ms", "N/A"),
        )
        return DetectionFrame(detections=detections, image_width=width)
