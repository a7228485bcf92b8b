from __future__ import annotations

import asyncio
import contextlib
import os
import uuid
from typing import Any, Dict, List, Optional

from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route, WebSocketRoute
from starlette.staticfiles import StaticFiles
from starlette.websockets import WebSocket, WebSocketDisconnect

from ..ai.commentary import AUDIO_MAX_AGE_MINUTES, CommentaryConfig, KepoCommentator, cleanup_audio
from ..config import load_db_path, load_frontend_origin, load_kolosal, load_openai, load_shop_profile
from ..errors import ExternalUnavailable, InvalidState, NotFound, ValidationError, WarungError
from ..logging import get_logger
from ..paths import audio_dir, find_project_root
from ..store import SalesAnalytics, TransactionEventBus, TransactionManager, WarungDatabase
from ..store.constants import DIRECTION_OUT, STATUS_PENDING
from ..store.receipt import build_receipt
from ..vision import Detection, DetectionTracker, KolosalDetector, LabelMatcher, ScanSession


LOG = get_logger("web-app")

AUDIO_CLEANUP_INTERVAL_SECONDS = 10 * 60
SCAN_SESSION_IDLE_SECONDS = 10 * 60

_STATUS_BY_ERROR = (
    (NotFound, 404),
    (ValidationError, 400),
    (InvalidState, 409),
    (ExternalUnavailable, 503),
)


def _parse_int(value: Optional[str], *, default: int, minimum: int, maximum: int) -> int:
    try:
        parsed = int(value) if value is not None else default
    except (TypeError, ValueError):
        parsed = default
    if parsed < minimum:
        return minimum
    if parsed > maximum:
        return maximum
    return parsed


async def _read_json(request: Request) -> Dict[str, Any]:
    body = await request.body()
    if not body:
        return {}
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Request body must be JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return payload


def _product_ref(payload: Dict[str, Any]) -> Any:
    """A scanned code (str) wins over a catalog id (int)."""
    barcode = payload.get("barcode")
    if barcode not in (None, ""):
        return str(barcode)
    product_id = payload.get("product_id", payload.get("productId"))
    if isinstance(product_id, bool) or not isinstance(product_id, int):
        raise ValidationError("barcode or product_id is required", field="barcode")
    return product_id


async def _warung_error(_: Request, exc: Exception) -> JSONResponse:
    status = 500
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status = code
            break
    payload = exc.to_dict() if isinstance(exc, WarungError) else {"error": str(exc)}
    if status >= 500:
        LOG.warning("Request failed with %s: %s", status, exc)
    return JSONResponse(payload, status_code=status)


async def _http_error(_: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code)


def create_app(
    root_dir: Optional[str] = None,
    *,
    db_path: Optional[str] = None,
    allow_origins: Optional[List[str]] = None,
    commentator: Optional[KepoCommentator] = None,
    detector: Optional[KolosalDetector] = None,
    serve_audio: bool = True,
) -> Starlette:
    """Create the Starlette app: catalog, cart, analytics, scanning and live sync."""

    project_root = find_project_root(root_dir)
    db = WarungDatabase(root_dir=project_root, db_path=db_path or load_db_path(project_root))
    kolosal = load_kolosal(project_root)
    clips_dir = audio_dir(project_root)
    os.makedirs(clips_dir, exist_ok=True)
    if commentator is None:
        commentator = KepoCommentator(
            CommentaryConfig(kolosal=kolosal, speech=load_openai(project_root), audio_dir=clips_dir)
        )
    if detector is None:
        detector = KolosalDetector(kolosal)
    shop = load_shop_profile(project_root)
    events = TransactionEventBus()
    manager = TransactionManager(db, events=events, commentator=commentator)
    analytics = SalesAnalytics(db)
    matcher = LabelMatcher(db)
    sessions: Dict[str, ScanSession] = {}

    def prune_idle_sessions(max_idle_seconds: float = SCAN_SESSION_IDLE_SECONDS) -> int:
        """Close and forget scan sessions nobody has fed for `max_idle_seconds`."""
        idle = [sid for sid, session in list(sessions.items()) if session.idle_seconds() > max_idle_seconds]
        for sid in idle:
            session = sessions.pop(sid, None)
            if session is not None:
                session.close()
        if idle:
            LOG.info("Closed %d idle scan session(s)", len(idle))
        return len(idle)

    # ---------- health ----------
    async def health(_: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "db_path": db.db_path})

    # ---------- products ----------
    async def list_products(request: Request) -> JSONResponse:
        qp = request.query_params
        products = db.list_products(search=qp.get("search") or None, category=qp.get("category") or None)
        return JSONResponse({"products": [p.as_dict() for p in products]})

    async def create_product(request: Request) -> JSONResponse:
        product = db.create_product(await _read_json(request))
        return JSONResponse(product.as_dict(), status_code=201)

    async def product_by_barcode(request: Request) -> JSONResponse:
        return JSONResponse(db.get_product_by_barcode(request.path_params["code"]).as_dict())

    async def product_detail(request: Request) -> JSONResponse:
        product_id = request.path_params["product_id"]
        if request.method == "PATCH":
            product = db.update_product(product_id, await _read_json(request))
            return JSONResponse(product.as_dict())
        if request.method == "DELETE":
            db.delete_product(product_id)
            return JSONResponse({"deleted": product_id})
        return JSONResponse(db.get_product(product_id).as_dict())

    async def adjust_stock(request: Request) -> JSONResponse:
        payload = await _read_json(request)
        delta = payload.get("delta")
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise ValidationError("delta must be an integer", field="delta")
        return JSONResponse(db.adjust_stock(request.path_params["product_id"], delta).as_dict())

    # ---------- transactions ----------
    async def list_transactions(request: Request) -> JSONResponse:
        qp = request.query_params
        try:
            payload = db.fetch_transactions(
                page=_parse_int(qp.get("page"), default=1, minimum=1, maximum=100_000),
                limit=_parse_int(qp.get("limit"), default=20, minimum=1, maximum=200),
                direction=(qp.get("direction") or "").upper() or None,
                status=(qp.get("status") or "").upper() or None,
                date_from=qp.get("from") or qp.get("date_from"),
                date_to=qp.get("to") or qp.get("date_to"),
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        payload["transactions"] = [tx.as_dict() for tx in payload["transactions"]]
        return JSONResponse(payload)

    async def open_transaction(request: Request) -> JSONResponse:
        payload = await _read_json(request)
        tx = manager.open(payload.get("direction") or DIRECTION_OUT)
        return JSONResponse(tx.as_dict(), status_code=201)

    async def transaction_detail(request: Request) -> JSONResponse:
        tx_id = request.path_params["transaction_id"]
        if request.method == "DELETE":
            discarded = manager.discard(tx_id)
            return JSONResponse({"deleted": discarded.transaction_id})
        return JSONResponse(manager.get(tx_id).as_dict())

    async def add_item(request: Request) -> JSONResponse:
        payload = await _read_json(request)
        item, tx = manager.add_item(
            request.path_params["transaction_id"],
            _product_ref(payload),
            payload.get("quantity", 1),
        )
        return JSONResponse({"item": item.as_dict(), "transaction": tx.as_dict()}, status_code=201)

    async def item_detail(request: Request) -> JSONResponse:
        tx_id = request.path_params["transaction_id"]
        item_id = request.path_params["item_id"]
        if request.method == "DELETE":
            tx = manager.remove_item(tx_id, item_id)
        else:
            payload = await _read_json(request)
            tx = manager.set_quantity(tx_id, item_id, payload.get("quantity"))
        return JSONResponse(tx.as_dict())

    async def complete_transaction(request: Request) -> JSONResponse:
        tx = manager.finalize(request.path_params["transaction_id"], enrich=False)
        task = BackgroundTask(manager.enrich_quietly, tx.transaction_id)
        return JSONResponse(tx.as_dict(), background=task)

    async def commentary(request: Request) -> JSONResponse:
        tx_id = request.path_params["transaction_id"]
        result = await run_in_threadpool(manager.generate_commentary, tx_id)
        tx = manager.get(tx_id)
        return JSONResponse(
            {
                "kepoSentence": result.sentence if result else None,
                "kepoAudioUrl": result.audio_ref if result else None,
                "transaction": tx.as_dict(),
            }
        )

    async def receipt(request: Request) -> JSONResponse:
        return JSONResponse(build_receipt(manager.get(request.path_params["transaction_id"]), shop))

    # ---------- analytics ----------
    async def analytics_summary(request: Request) -> JSONResponse:
        return JSONResponse(analytics.summary(request.query_params.get("period") or "today"))

    async def analytics_revenue(request: Request) -> JSONResponse:
        qp = request.query_params
        try:
            payload = analytics.revenue(
                date_from=qp.get("from") or qp.get("date_from") or qp.get("startDate"),
                date_to=qp.get("to") or qp.get("date_to") or qp.get("endDate"),
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(payload)

    async def analytics_top_products(request: Request) -> JSONResponse:
        qp = request.query_params
        limit = _parse_int(qp.get("limit"), default=10, minimum=1, maximum=100)
        return JSONResponse(analytics.top_products(qp.get("period") or "week", limit=limit))

    async def analytics_categories(request: Request) -> JSONResponse:
        return JSONResponse(analytics.categories(request.query_params.get("period") or "week"))

    async def analytics_hourly(request: Request) -> JSONResponse:
        try:
            payload = analytics.hourly_pattern(request.query_params.get("date"))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(payload)

    async def analytics_low_stock(_: Request) -> JSONResponse:
        return JSONResponse(analytics.low_stock())

    async def analytics_weekly(_: Request) -> JSONResponse:
        return JSONResponse(analytics.weekly_report())

    # ---------- vision ----------
    async def detect(request: Request) -> JSONResponse:
        payload = await _read_json(request)
        image = payload.get("image")
        if not isinstance(image, str) or not image:
            raise ValidationError("image (base64) is required", field="image")
        prompts = payload.get("prompts") or db.detection_labels()
        frame = await run_in_threadpool(detector.detect, image, prompts)
        return JSONResponse(
            {
                "detections": [
                    {"name": d.label, "confidence": d.confidence, "bbox": list(d.bbox)} for d in frame.detections
                ],
                "imageWidth": frame.image_width,
            }
        )

    async def match(request: Request) -> JSONResponse:
        payload = await _read_json(request)
        labels = payload.get("labels")
        if labels is None and payload.get("label"):
            labels = [payload["label"]]
        if not isinstance(labels, list) or not all(isinstance(label, str) for label in labels):
            raise ValidationError("labels must be a list of strings", field="labels")
        results = []
        for label in labels:
            product = matcher.match(label)
            results.append({"label": label, "product": product.as_dict() if product else None})
        return JSONResponse({"matches": results})

    async def detection_labels(_: Request) -> JSONResponse:
        return JSONResponse({"labels": db.detection_labels()})

    # ---------- scan sessions ----------
    async def open_scan_session(request: Request) -> JSONResponse:
        payload = await _read_json(request)
        prune_idle_sessions()
        mirrored = payload.get("mirrored", False)
        if not isinstance(mirrored, bool):
            raise ValidationError("mirrored must be a boolean", field="mirrored")
        tx_id = payload.get("transaction_id", payload.get("transactionId"))
        direction = (payload.get("direction") or DIRECTION_OUT).upper()
        if tx_id is not None:
            tx = manager.get(tx_id)
            if tx.status != STATUS_PENDING:
                raise InvalidState(tx.transaction_id, tx.status)
            direction = tx.direction
        try:
            session = ScanSession(
                detector,
                DetectionTracker(matcher),
                direction=direction,
                mirrored=mirrored,
                prompts=payload.get("prompts") or db.detection_labels(),
                manager=manager,
                transaction_id=tx_id,
            )
        except ValueError as exc:
            raise ValidationError(str(exc), field="direction") from exc
        session_id = uuid.uuid4().hex
        sessions[session_id] = session
        LOG.info("Scan session %s opened (%s, transaction %s)", session_id, direction, tx_id)
        return JSONResponse(
            {"session_id": session_id, "direction": direction, "mirrored": session.mirrored, "transaction_id": tx_id},
            status_code=201,
        )

    async def scan_frame(request: Request) -> JSONResponse:
        session = sessions.get(request.path_params["session_id"])
        if session is None:
            raise NotFound("scan session", request.path_params["session_id"])
        payload = await _read_json(request)
        if "detections" in payload:
            try:
                detections = [Detection.from_dict(d) for d in payload.get("detections") or []]
                width = float(payload.get("image_width", payload.get("imageWidth", 0)) or 0)
            except (TypeError, ValueError, AttributeError) as exc:
                raise ValidationError(str(exc), field="detections") from exc
            result = session.observe(detections, width)
        else:
            image = payload.get("image")
            if not isinstance(image, str) or not image:
                raise ValidationError("image (base64) or detections is required", field="image")
            result = await run_in_threadpool(session.sample, image)
        if result is None:
            return JSONResponse({"skipped": True})
        return JSONResponse({"skipped": False, **result})

    async def close_scan_session(request: Request) -> JSONResponse:
        session_id = request.path_params["session_id"]
        session = sessions.pop(session_id, None)
        if session is None:
            raise NotFound("scan session", session_id)
        session.close()
        return JSONResponse({"closed": session_id})

    # ---------- live sync ----------
    async def transaction_feed(websocket: WebSocket) -> None:
        tx_id = websocket.path_params["transaction_id"]
        await websocket.accept()
        try:
            tx = manager.get(tx_id)
        except NotFound as exc:
            await websocket.send_json({"event": "error", **exc.to_dict()})
            await websocket.close(code=4404)
            return

        loop = asyncio.get_running_loop()
        queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        unsubscribe = events.subscribe(tx_id, lambda message: loop.call_soon_threadsafe(queue.put_nowait, message))
        await websocket.send_json({"event": "snapshot", "transactionId": tx_id, "transaction": tx.as_dict()})

        async def forward() -> None:
            while True:
                await websocket.send_json(await queue.get())

        sender = asyncio.create_task(forward())
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            LOG.debug("Live feed for transaction %s disconnected", tx_id)
        finally:
            unsubscribe()
            sender.cancel()

    # ---------- lifespan ----------
    async def _audio_janitor() -> None:
        while True:
            await asyncio.sleep(AUDIO_CLEANUP_INTERVAL_SECONDS)
            await run_in_threadpool(cleanup_audio, clips_dir, max_age_minutes=AUDIO_MAX_AGE_MINUTES)
            prune_idle_sessions()

    @contextlib.asynccontextmanager
    async def lifespan(_: Starlette):
        cleanup_audio(clips_dir, max_age_minutes=AUDIO_MAX_AGE_MINUTES)
        janitor = asyncio.create_task(_audio_janitor())
        try:
            yield
        finally:
            janitor.cancel()
            for session in sessions.values():
                session.close()
            sessions.clear()

    routes = [
        Route("/api/health", health, methods=["GET"]),
        Route("/api/products", list_products, methods=["GET"]),
        Route("/api/products", create_product, methods=["POST"]),
        Route("/api/products/barcode/{code:str}", product_by_barcode, methods=["GET"]),
        Route("/api/products/{product_id:int}", product_detail, methods=["GET", "PATCH", "DELETE"]),
        Route("/api/products/{product_id:int}/stock", adjust_stock, methods=["POST"]),
        Route("/api/transactions", list_transactions, methods=["GET"]),
        Route("/api/transactions", open_transaction, methods=["POST"]),
        Route("/api/transactions/{transaction_id:int}", transaction_detail, methods=["GET", "DELETE"]),
        Route("/api/transactions/{transaction_id:int}/items", add_item, methods=["POST"]),
        Route(
            "/api/transactions/{transaction_id:int}/items/{item_id:int}",
            item_detail,
            methods=["PATCH", "DELETE"],
        ),
        Route("/api/transactions/{transaction_id:int}/complete", complete_transaction, methods=["POST"]),
        Route("/api/transactions/{transaction_id:int}/commentary", commentary, methods=["POST"]),
        Route("/api/transactions/{transaction_id:int}/receipt", receipt, methods=["GET"]),
        Route("/api/analytics/summary", analytics_summary, methods=["GET"]),
        Route("/api/analytics/revenue", analytics_revenue, methods=["GET"]),
        Route("/api/analytics/top-products", analytics_top_products, methods=["GET"]),
        Route("/api/analytics/categories", analytics_categories, methods=["GET"]),
        Route("/api/analytics/hourly-pattern", analytics_hourly, methods=["GET"]),
        Route("/api/analytics/low-stock", analytics_low_stock, methods=["GET"]),
        Route("/api/analytics/weekly-report", analytics_weekly, methods=["GET"]),
        Route("/api/ai/detect", detect, methods=["POST"]),
        Route("/api/ai/match", match, methods=["POST"]),
        Route("/api/ai/detection-labels", detection_labels, methods=["GET"]),
        Route("/api/scan/sessions", open_scan_session, methods=["POST"]),
        Route("/api/scan/sessions/{session_id:str}/frames", scan_frame, methods=["POST"]),
        Route("/api/scan/sessions/{session_id:str}", close_scan_session, methods=["DELETE"]),
        WebSocketRoute("/ws/transactions/{transaction_id:int}", transaction_feed),
    ]
    if serve_audio:
        routes.append(Mount("/audio", app=StaticFiles(directory=clips_dir, check_dir=False), name="audio"))

    app = Starlette(
        debug=False,
        routes=routes,
        lifespan=lifespan,
        exception_handlers={WarungError: _warung_error, HTTPException: _http_error},
    )

    origins = allow_origins or [load_frontend_origin(project_root), "http://127.0.0.1:5173"]
    if "*" in origins:
        cors_allow_origins = ["*"]
    else:
        cors_allow_origins = origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.db = db
    app.state.manager = manager
    app.state.sessions = sessions
    app.state.prune_idle_sessions = prune_idle_sessions
    return app


__all__ = ["create_app"]
