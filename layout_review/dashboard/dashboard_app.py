"""
Layout Review Dashboard Web Application

FastAPI application hosting the review dashboard:
- Per-reviewer detection sessions with server-rendered annotated canvases
- Backend status polling for every open session
- The saved results persistence API (/api/save-result)
- Saved results listing and bulk export
- A zoomable viewer for individual saved results
"""

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import HTMLResponse, JSONResponse, Response
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, ValidationError as PayloadValidationError

from ..core.annotation_renderer import encode_png
from ..core.config_manager import ConfigurationManager
from ..core.detection_client import DetectionClient
from ..core.errors import (
    ConflictError, DecodeError, FileTooLarge, LayoutReviewError, RasterizationError,
    TransportError, ValidationError,
)
from ..core.models import UATStatus
from ..core.persistence_client import LocalPersistenceClient
from ..core.result_store import ResultStore, create_result_store
from ..review.canvas_view import CanvasView
from ..review.detection_session import DetectionSession, SaveOutcome
from ..review.status_monitor import StatusMonitor
from .results_query import ResultsQuery, class_counts, export_payload, find_result, summarize
from .results_viewer import ResultsViewer

logger = logging.getLogger(__name__)

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))

# Most specific first
ERROR_STATUS_CODES = [
    (FileTooLarge, 413),
    (ValidationError, 400),
    (ConflictError, 409),
    (RasterizationError, 422),
    (DecodeError, 422),
    (TransportError, 502),
    (LayoutReviewError, 400),
]


def http_status_for(error: LayoutReviewError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


def raise_for_error(error: LayoutReviewError):
    raise HTTPException(status_code=http_status_for(error), detail=error.message)


class ClickRequest(BaseModel):
    x: float
    y: float
    width: float
    height: float
    screen: bool = False


class ZoomRequest(BaseModel):
    action: str


class PanRequest(BaseModel):
    dx: float
    dy: float


class ThresholdRequest(BaseModel):
    confidence: Optional[float] = None
    iou: Optional[float] = None


class SelectRequest(BaseModel):
    detection_id: Optional[str] = None


class SaveRequest(BaseModel):
    uatStatus: Optional[str] = None
    uatNote: Optional[str] = None


class DeleteResultsRequest(BaseModel):
    ids: Optional[List[str]] = None
    deleteAll: bool = False


class ExportRequest(BaseModel):
    ids: Optional[List[str]] = None


class ViewerZoomRequest(BaseModel):
    action: str
    deltaY: float = 0.0
    ctrlKey: bool = False


class DragRequest(BaseModel):
    phase: str
    x: float = 0.0
    y: float = 0.0


@dataclass
class SessionEntry:
    """A live session with its canvas and backend status poller."""
    session: DetectionSession
    view: CanvasView
    monitor: StatusMonitor


class SessionRegistry:
    """Open review sessions keyed by an opaque id."""

    def __init__(self, config: Dict[str, Any], detector: DetectionClient, store: ResultStore):
        self.config = config
        self.detector = detector
        self.persistence = LocalPersistenceClient(store)
        self._entries: Dict[str, SessionEntry] = {}

    def __len__(self):
        return len(self._entries)

    async def create(self) -> str:
        session = DetectionSession.from_config(self.config, self.detector, self.persistence)
        view = CanvasView(session)
        monitor = StatusMonitor(
            self.detector,
            interval=self.config['monitoring']['polling_interval'],
            on_change=session.set_backend_status,
        )

        # First check inline so a new session knows its backend status right away
        await monitor.check_once()
        monitor.start(immediate=False)
        await session.refresh_saved_count()

        session_id = uuid.uuid4().hex
        self._entries[session_id] = SessionEntry(session, view, monitor)
        logger.info(f"🆕 Session {session_id} opened ({len(self._entries)} active)")
        return session_id

    def get(self, session_id: str) -> SessionEntry:
        entry = self._entries.get(session_id)
        if entry is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return entry

    async def close(self, session_id: str) -> bool:
        entry = self._entries.pop(session_id, None)
        if entry is None:
            return False
        await entry.monitor.stop()
        entry.view.close()
        logger.info(f"Session {session_id} closed ({len(self._entries)} active)")
        return True

    async def close_all(self):
        for session_id in list(self._entries):
            await self.close(session_id)


def create_app(config: Optional[Dict[str, Any]] = None,
               detector: Optional[DetectionClient] = None,
               store: Optional[ResultStore] = None) -> FastAPI:
    """
    Build the dashboard application.

    Collaborators not passed in are created from configuration at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan management."""
        logger.info("Starting layout review dashboard...")

        app_config = config or ConfigurationManager().load_configuration()
        app_detector = detector or DetectionClient.from_config(app_config)
        app_store = store or create_result_store(app_config)

        app.state.config = app_config
        app.state.store = app_store
        app.state.sessions = SessionRegistry(app_config, app_detector, app_store)
        app.state.viewers = {}
        logger.info(f"✅ Detection backend: {app_detector.base_url}")

        yield

        logger.info("Shutting down layout review dashboard...")
        await app.state.sessions.close_all()
        app.state.viewers.clear()
        if detector is None:
            await app_detector.aclose()
        logger.info("✅ Stopped all status monitors")

    app = FastAPI(
        title="Layout Review Dashboard",
        description="Review dashboard for document layout detection results",
        version="1.0.0",
        lifespan=lifespan
    )

    def sessions() -> SessionRegistry:
        return app.state.sessions

    def session_payload(session_id: str) -> Dict[str, Any]:
        return {'sessionId': session_id, 'session': sessions().get(session_id).session.to_dict()}

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    @app.get("/", response_class=HTMLResponse)
    async def dashboard_home(request: Request):
        """Main review dashboard page."""
        return templates.TemplateResponse(request, "index.html", {
            "title": "Layout Detection Dashboard",
            "max_upload_mb": app.state.config['upload']['max_size_bytes'] // (1024 * 1024),
            "polling_interval": app.state.config['monitoring']['polling_interval'],
            "defaults": app.state.config['detection'],
        })

    @app.get("/results", response_class=HTMLResponse)
    async def results_page(request: Request):
        """Saved results table."""
        return templates.TemplateResponse(request, "results.html", {
            "title": "Saved Results",
            "current_time": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        })

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "active_sessions": len(sessions()),
            "store": type(app.state.store).__name__,
        }

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @app.post("/api/sessions", status_code=201)
    async def create_session():
        session_id = await sessions().create()
        return session_payload(session_id)

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str):
        return session_payload(session_id)

    @app.delete("/api/sessions/{session_id}")
    async def close_session(session_id: str):
        if not await sessions().close(session_id):
            raise HTTPException(status_code=404, detail="Session not found")
        return {"success": True}

    @app.post("/api/sessions/{session_id}/upload")
    async def upload_file(session_id: str, file: UploadFile = File(...)):
        session = sessions().get(session_id).session
        filename = file.filename or 'upload'
        content_type = file.content_type or ''

        # Refuse on the declared size before reading the body
        if file.size is not None and session.check_upload(filename, file.size, content_type) is None:
            raise_for_error(session.last_error)
        data = await file.read(session.max_upload_size + 1)

        if not await session.upload(filename, data, content_type):
            if session.last_error is not None:
                raise_for_error(session.last_error)
            raise HTTPException(status_code=409, detail="Upload superseded by a newer request")
        return session_payload(session_id)

    @app.post("/api/sessions/{session_id}/thresholds")
    async def set_thresholds(session_id: str, body: ThresholdRequest):
        session = sessions().get(session_id).session
        try:
            session.set_thresholds(body.confidence, body.iou)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return session_payload(session_id)

    @app.post("/api/sessions/{session_id}/detect")
    async def run_detection(session_id: str,
                            confidence: Optional[float] = Query(None, ge=0.0, le=1.0),
                            iou: Optional[float] = Query(None, ge=0.0, le=1.0)):
        session = sessions().get(session_id).session
        session.set_thresholds(confidence, iou)

        if not await session.detect():
            if session.last_error is not None:
                raise_for_error(session.last_error)
            raise HTTPException(status_code=409, detail="Detection superseded by a newer request")
        return session_payload(session_id)

    @app.get("/api/sessions/{session_id}/canvas.png")
    async def canvas_image(session_id: str,
                           width: Optional[int] = Query(None, gt=0),
                           height: Optional[int] = Query(None, gt=0)):
        view = sessions().get(session_id).view
        view.resize(width, height)
        frame = view.current_frame()
        if frame is None:
            raise HTTPException(status_code=404, detail="Nothing to render yet")
        return Response(content=frame, media_type="image/png", headers={"Cache-Control": "no-store"})

    @app.post("/api/sessions/{session_id}/click")
    async def click_canvas(session_id: str, body: ClickRequest):
        session = sessions().get(session_id).session
        if body.screen:
            session.select_at_screen(body.x, body.y, body.width, body.height)
        else:
            session.select_at_display(body.x, body.y, body.width, body.height)
        return session_payload(session_id)

    @app.post("/api/sessions/{session_id}/select")
    async def select_detection(session_id: str, body: SelectRequest):
        sessions().get(session_id).session.select(body.detection_id)
        return session_payload(session_id)

    @app.post("/api/sessions/{session_id}/page/{page_number}")
    async def go_to_page(session_id: str, page_number: int):
        session = sessions().get(session_id).session
        if not session.go_to_page(page_number):
            raise HTTPException(status_code=400, detail=f"Page {page_number} out of range")
        return session_payload(session_id)

    @app.post("/api/sessions/{session_id}/zoom")
    async def zoom(session_id: str, body: ZoomRequest):
        session = sessions().get(session_id).session
        actions = {'in': session.zoom_in, 'out': session.zoom_out, 'reset': session.reset_view}
        if body.action not in actions:
            raise HTTPException(status_code=400, detail=f"Unknown zoom action: {body.action}")
        actions[body.action]()
        return session_payload(session_id)

    @app.post("/api/sessions/{session_id}/pan")
    async def pan(session_id: str, body: PanRequest):
        sessions().get(session_id).session.pan_by(body.dx, body.dy)
        return session_payload(session_id)

    @app.post("/api/sessions/{session_id}/save")
    async def save_session(session_id: str, body: SaveRequest):
        session = sessions().get(session_id).session
        try:
            status = UATStatus(body.uatStatus) if body.uatStatus else None
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid UAT status: {body.uatStatus}")

        result = await session.save(status, body.uatNote)
        if result.outcome is SaveOutcome.DUPLICATE:
            return JSONResponse(status_code=409, content={
                "success": False, "error": "duplicate", "message": result.message,
            })
        if result.outcome is SaveOutcome.NOTHING_TO_SAVE:
            raise HTTPException(status_code=400, detail=result.message)
        if result.outcome is SaveOutcome.FAILED:
            raise HTTPException(status_code=500, detail=result.message)

        return {
            "success": True,
            "message": result.message,
            "totalResults": result.total_results,
            "session": session.to_dict(),
        }

    @app.get("/api/sessions/{session_id}/export")
    async def export_session(session_id: str):
        session = sessions().get(session_id).session
        exported = session.export()
        if exported is None:
            raise HTTPException(status_code=400, detail=session.message.text)
        filename, payload = exported
        return JSONResponse(content=payload, headers={
            "Content-Disposition": f'attachment; filename="{filename}"'
        })

    # ------------------------------------------------------------------
    # Persistence API
    # ------------------------------------------------------------------

    @app.get("/api/save-result")
    async def list_saved_results():
        try:
            return app.state.store.list_results()
        except OSError as e:
            logger.error(f"Error reading results: {e}")
            raise HTTPException(status_code=500, detail=f"Failed to read results: {e}")

    @app.post("/api/save-result", status_code=201)
    async def save_result(record: Dict[str, Any]):
        if not record.get('imageName'):
            raise HTTPException(status_code=400, detail="imageName is required")
        try:
            saved = app.state.store.save(record)
        except ConflictError as e:
            return JSONResponse(status_code=409, content={
                "success": False, "error": "duplicate", "message": e.message,
            })
        except OSError as e:
            logger.error(f"Error saving result: {e}")
            raise HTTPException(status_code=500, detail=f"Failed to save result: {e}")

        return {
            "success": True,
            "message": "Result saved successfully",
            "totalResults": saved['totalResults'],
            "savedResult": saved['savedResult'],
        }

    @app.delete("/api/save-result")
    async def delete_results(request: Request):
        # Body is optional: a bare DELETE clears everything
        raw = await request.body()
        body = None
        if raw:
            try:
                body = DeleteResultsRequest.model_validate_json(raw)
            except PayloadValidationError as e:
                raise HTTPException(status_code=400, detail=f"Invalid delete request: {e.errors()[0]['msg']}")
        store = app.state.store
        if body is None or body.deleteAll:
            deleted = store.delete_all()
            message = "All results cleared"
        elif body.ids:
            deleted = store.delete_ids(body.ids)
            message = f"Deleted {deleted} results"
        else:
            raise HTTPException(status_code=400, detail="Provide ids or deleteAll")
        return {"success": True, "message": message, "deleted": deleted}

    # ------------------------------------------------------------------
    # Saved results listing
    # ------------------------------------------------------------------

    @app.get("/api/results")
    async def query_results(search: str = Query("", description="Case-insensitive image name filter"),
                            status: str = Query("all", description="all, pass or fail"),
                            sort_by: str = Query("date", description="date, name or detections"),
                            descending: bool = Query(True),
                            page: int = Query(1, ge=1)):
        try:
            query = ResultsQuery(search=search, status=status, sort_by=sort_by,
                                 descending=descending, page=page)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        data = app.state.store.list_results()
        results = data['results']
        listing = query.paginate(results)
        return {
            **listing.to_dict(),
            "stats": summarize(results),
            "classCounts": class_counts(d for r in results for d in r.get('detections') or []),
            "lastUpdated": data.get('lastUpdated', ''),
        }

    @app.post("/api/results/export")
    async def export_results(body: ExportRequest):
        data = app.state.store.list_results()
        if not data['results']:
            raise HTTPException(status_code=400, detail="No data to export")
        filename, payload = export_payload(data['results'], body.ids, source_file=data.get('filePath', ''))
        return JSONResponse(content=payload, headers={
            "Content-Disposition": f'attachment; filename="{filename}"'
        })

    # ------------------------------------------------------------------
    # Saved result viewer
    # ------------------------------------------------------------------

    def viewer_payload(viewer_id: str) -> Dict[str, Any]:
        return {'viewerId': viewer_id, 'viewer': get_viewer(viewer_id).to_dict()}

    def get_viewer(viewer_id: str) -> ResultsViewer:
        viewer = app.state.viewers.get(viewer_id)
        if viewer is None:
            raise HTTPException(status_code=404, detail="Viewer not found")
        return viewer

    @app.post("/api/results/{result_id}/viewer", status_code=201)
    async def open_viewer(result_id: str):
        record = find_result(app.state.store.list_results()['results'], result_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Result not found")
        viewer_id = uuid.uuid4().hex
        app.state.viewers[viewer_id] = ResultsViewer(record)
        logger.info(f"🔍 Viewer {viewer_id} opened for {record.get('imageName')}")
        return viewer_payload(viewer_id)

    @app.get("/api/viewers/{viewer_id}")
    async def get_viewer_state(viewer_id: str):
        return viewer_payload(viewer_id)

    @app.delete("/api/viewers/{viewer_id}")
    async def close_viewer(viewer_id: str):
        if app.state.viewers.pop(viewer_id, None) is None:
            raise HTTPException(status_code=404, detail="Viewer not found")
        return {"success": True}

    @app.get("/api/viewers/{viewer_id}/canvas.png")
    async def viewer_canvas(viewer_id: str,
                            width: int = Query(800, gt=0),
                            height: Optional[int] = Query(None, gt=0)):
        viewer = get_viewer(viewer_id)
        try:
            frame = viewer.render(width, height)
        except LayoutReviewError as e:
            raise_for_error(e)
        if frame is None:
            raise HTTPException(status_code=404, detail="No image stored for this page")
        return Response(content=encode_png(frame), media_type="image/png", headers={"Cache-Control": "no-store"})

    @app.post("/api/viewers/{viewer_id}/page/{page_number}")
    async def viewer_page(viewer_id: str, page_number: int):
        if not get_viewer(viewer_id).go_to_page(page_number):
            raise HTTPException(status_code=400, detail=f"Page {page_number} out of range")
        return viewer_payload(viewer_id)

    @app.post("/api/viewers/{viewer_id}/zoom")
    async def viewer_zoom(viewer_id: str, body: ViewerZoomRequest):
        viewer = get_viewer(viewer_id)
        if body.action == 'wheel':
            viewer.wheel(body.deltaY, body.ctrlKey)
        elif body.action == 'in':
            viewer.zoom_in()
        elif body.action == 'out':
            viewer.zoom_out()
        elif body.action == 'reset':
            viewer.reset_view()
        else:
            raise HTTPException(status_code=400, detail=f"Unknown zoom action: {body.action}")
        return viewer_payload(viewer_id)

    @app.post("/api/viewers/{viewer_id}/drag")
    async def viewer_drag(viewer_id: str, body: DragRequest):
        viewer = get_viewer(viewer_id)
        if body.phase == 'start':
            viewer.start_drag(body.x, body.y)
        elif body.phase == 'move':
            viewer.drag_to(body.x, body.y)
        elif body.phase == 'end':
            viewer.end_drag()
        else:
            raise HTTPException(status_code=400, detail=f"Unknown drag phase: {body.phase}")
        return viewer_payload(viewer_id)

    return app


app = create_app()
