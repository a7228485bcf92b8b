from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional, Sequence

import pytest
import requests

from warung_pos.config import KolosalSettings
from warung_pos.errors import ExternalUnavailable
from warung_pos.store import TransactionManager, WarungDatabase
from warung_pos.vision import (
    Detection,
    DetectionFrame,
    DetectionTracker,
    KolosalDetector,
    LabelMatcher,
    ScanSession,
)

SETTINGS = KolosalSettings(api_url="https://kolosal.test", api_key="key", chat_model="m")


class _FakeResponse:
    def __init__(self, payload: Any, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def json(self) -> Any:
        return self._payload


class _FakeSession:
    def __init__(self, response: _FakeResponse) -> None:
        self.response = response
        self.calls: List[Dict[str, Any]] = []

    def post(self, url: str, **kwargs: Any) -> _FakeResponse:
        self.calls.append({"url": url, **kwargs})
        return self.response


class _ScriptedDetector:
    """Returns one prepared frame per call; None entries simulate an outage."""

    def __init__(self, frames: Sequence[Optional[DetectionFrame]]) -> None:
        self.frames = list(frames)
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()

    def detect(self, image_b64: str, prompts: Sequence[str]) -> DetectionFrame:
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        frame = self.frames.pop(0)
        if frame is None:
            raise ExternalUnavailable("vision", "timeout")
        return frame


def _frame(label: str, center_x: float, confidence: float = 0.9) -> DetectionFrame:
    return DetectionFrame([Detection(label, confidence, (center_x - 10, 0, 20, 20))], 320)


def _catalog(db: WarungDatabase):
    aqua = db.create_product(
        {"barcode": "1", "name": "Aqua 600ml", "sell_price": 4000, "buy_price": 3000, "vision_label": "bottle"}
    )
    chitato = db.create_product({"barcode": "2", "name": "Chitato Sapi Panggang", "sell_price": 10000})
    return aqua, chitato


# ---------- detector ----------
def test_detector_parses_service_response() -> None:
    session = _FakeSession(
        _FakeResponse(
            {
                "success": True,
                "results": [{"name": "bottle", "confidence": 0.87, "bbox": [10, 20, 50, 80]}],
                "image_size": [640, 480],
            }
        )
    )
    detector = KolosalDetector(SETTINGS, session=session)  # type: ignore[arg-type]

    frame = detector.detect("aGVsbG8=", ["bottle", "box"])

    assert frame.image_width == 640
    assert frame.detections == [Detection("bottle", 0.87, (10.0, 20.0, 50.0, 80.0))]
    call = session.calls[0]
    assert call["url"] == "https://kolosal.test/v1/segment/base64"
    assert call["json"]["prompts"] == ["bottle", "box"]
    assert call["json"]["threshold"] == 0.5
    assert call["json"]["return_masks"] is False


def test_detector_defaults_width_and_handles_empty() -> None:
    detector = KolosalDetector(SETTINGS, session=_FakeSession(_FakeResponse({"success": True})))  # type: ignore[arg-type]
    frame = detector.detect("x", ["box"])
    assert frame.detections == []
    assert frame.image_width == 320


@pytest.mark.parametrize(
    "response",
    [
        _FakeResponse({"error": "boom"}, status_code=500),
        _FakeResponse({"success": False}),
        _FakeResponse({"success": True, "results": [{"name": "bottle", "bbox": [1]}]}),
    ],
)
def test_detector_failures_are_unavailable(response: _FakeResponse) -> None:
    detector = KolosalDetector(SETTINGS, session=_FakeSession(response))  # type: ignore[arg-type]
    with pytest.raises(ExternalUnavailable):
        detector.detect("x", ["box"])


def test_detector_without_key_is_unavailable() -> None:
    settings = KolosalSettings(api_url="https://kolosal.test", api_key=None, chat_model="m")
    with pytest.raises(ExternalUnavailable):
        KolosalDetector(settings).detect("x", ["box"])


# ---------- matcher ----------
def test_matcher_prefers_vision_label_then_name(db: WarungDatabase) -> None:
    aqua, chitato = _catalog(db)
    matcher = LabelMatcher(db)

    assert matcher("Bottle").product_id == aqua.product_id
    assert matcher.match("chitato").product_id == chitato.product_id
    assert matcher.match("sapi panggang chips").product_id == chitato.product_id
    assert matcher.match("chitatto sapi panggan").product_id == chitato.product_id
    assert matcher.match("umbrella") is None
    assert matcher.match("   ") is None


# ---------- scan session ----------
def test_session_applies_crossings_to_bound_cart(db: WarungDatabase) -> None:
    aqua, _ = _catalog(db)
    manager = TransactionManager(db)
    tx = manager.open("OUT")
    detector = _ScriptedDetector(
        [_frame("bottle", 60), _frame("bottle", 260), _frame("bottle", 260), _frame("bottle", 60)]
    )
    session = ScanSession(
        detector, DetectionTracker(LabelMatcher(db)), prompts=["bottle"], manager=manager, transaction_id=tx.transaction_id
    )

    assert session.sample("img")["event"] is None
    added = session.sample("img")
    assert added["applied"] is True
    assert added["event"]["action"] == "add"
    assert added["transaction"]["total_amount"] == 4000

    session.sample("img")
    cancelled = session.sample("img")
    assert cancelled["event"]["action"] == "cancel"
    assert manager.get(tx.transaction_id).items == []


def test_session_outage_counts_as_empty_frame(db: WarungDatabase) -> None:
    _catalog(db)
    detector = _ScriptedDetector([_frame("bottle", 60), None, _frame("bottle", 260)])
    session = ScanSession(detector, DetectionTracker())

    session.sample("img")
    assert session.sample("img") == {"event": None, "applied": False, "transaction": None}
    assert session.sample("img")["event"] is None


def test_session_unmatched_label_is_reported_not_applied(db: WarungDatabase) -> None:
    _catalog(db)
    manager = TransactionManager(db)
    tx = manager.open("OUT")
    session = ScanSession(
        _ScriptedDetector([_frame("umbrella", 60), _frame("umbrella", 260)]),
        DetectionTracker(LabelMatcher(db)),
        manager=manager,
        transaction_id=tx.transaction_id,
    )
    session.sample("img")
    result = session.sample("img")
    assert result["event"]["matched"] is False
    assert result["applied"] is False


def test_session_refuses_overlapping_samples() -> None:
    detector = _ScriptedDetector([_frame("bottle", 60)])
    detector.gate = threading.Event()
    session = ScanSession(detector, DetectionTracker())
    results: List[Any] = []

    worker = threading.Thread(target=lambda: results.append(session.sample("first")))
    worker.start()
    assert detector.entered.wait(5)
    assert session.sample("second") is None
    detector.gate.set()
    worker.join(5)

    assert results == [{"event": None, "applied": False, "transaction": None}]


def test_session_discards_results_after_close() -> None:
    detector = _ScriptedDetector([_frame("bottle", 60)])
    detector.gate = threading.Event()
    tracker = DetectionTracker()
    session = ScanSession(detector, tracker)
    results: List[Any] = []

    worker = threading.Thread(target=lambda: results.append(session.sample("img")))
    worker.start()
    assert detector.entered.wait(5)
    session.close()
    detector.gate.set()
    worker.join(5)

    assert results == [None]
    assert tracker.track is None
    assert session.sample("img") is None


def test_session_rejects_unknown_direction() -> None:
    with pytest.raises(ValueError):
        ScanSession(None, DetectionTracker(), direction="UP")


@pytest.mark.parametrize("image_size", [{"width": 320}, ["wide", 240], [None]])
def test_malformed_image_size_counts_as_empty_frame(image_size: Any) -> None:
    response = _FakeResponse({"success": True, "results": [], "image_size": image_size})
    detector = KolosalDetector(SETTINGS, session=_FakeSession(response))  # type: ignore[arg-type]
    with pytest.raises(ExternalUnavailable):
        detector.detect("aGk=", ["bottle"])

    tracker = DetectionTracker()
    session = ScanSession(detector, tracker)
    session.observe(_frame("bottle", 60).detections, 320)
    assert tracker.track is not None

    assert session.sample("aGk=") == {"event": None, "applied": False, "transaction": None}
    assert tracker.track is None


def test_observe_is_dropped_while_a_sample_is_in_flight() -> None:
    detector = _ScriptedDetector([_frame("bottle", 60)])
    detector.gate = threading.Event()
    tracker = DetectionTracker()
    session = ScanSession(detector, tracker)
    results: List[Any] = []

    worker = threading.Thread(target=lambda: results.append(session.sample("img")))
    worker.start()
    assert detector.entered.wait(5)
    assert session.observe(_frame("can", 260).detections, 320) is None
    detector.gate.set()
    worker.join(5)

    assert tracker.track == ("bottle", "inside")
    assert session.observe(_frame("bottle", 60).detections, 320) == {"event": None, "applied": False, "transaction": None}


def test_crossing_is_not_applied_once_session_closed(db: WarungDatabase) -> None:
    aqua, _ = _catalog(db)
    manager = TransactionManager(db)
    tx = manager.open("OUT")
    holder: Dict[str, ScanSession] = {}

    def close_then_match(label: str):
        holder["session"].close()
        return aqua

    session = ScanSession(
        None, DetectionTracker(close_then_match), manager=manager, transaction_id=tx.transaction_id
    )
    holder["session"] = session
    session.observe(_frame("bottle", 60).detections, 320)
    result = session.observe(_frame("bottle", 260).detections, 320)

    assert result is not None
    assert result["event"]["action"] == "add"
    assert result["applied"] is False
    assert manager.get(tx.transaction_id).items == []


def test_idle_seconds_tracks_last_frame() -> None:
    session = ScanSession(None, DetectionTracker())
    session.last_used -= 120
    assert session.idle_seconds() >= 120
    session.observe([], 320)
    assert session.idle_seconds() < 120
