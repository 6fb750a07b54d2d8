"""
Detection Session

Stateful orchestrator of one review session:
- Upload validation, image decoding and PDF rasterization
- Detection calls against the backend with confidence/IoU thresholds
- Page-partitioned detections, selection, page navigation, zoom and pan
- Saving reviewed results and exporting them locally

Every async operation captures a generation token when it starts and only
applies its result if no newer operation has begun since. Errors are caught
here and turned into a user-facing message; the session never raises them to
the view.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from PIL import Image

from ..core.annotation_renderer import DEFAULT_OPTIONS, RenderOptions, render_page, select_at
from ..core.coordinate_mapper import compute_scale
from ..core.detection_client import DetectionClient
from ..core.errors import (
    ConflictError, DecodeError, FileTooLarge, LayoutReviewError, RasterizationError,
    TransportError, UnsupportedFileType, ValidationError,
)
from ..core.models import (
    LOW_CONFIDENCE_THRESHOLD, AnnotatedDetection, DetectionIdFactory, DetectionResponse,
    FileCategory, FileInfo, ModelInfo, PageImage, UATStatus,
)
from ..core.page_rasterizer import PageRasterizer, decode_image
from ..core.persistence_client import ResultPersistenceClient
from ..core.result_store import utc_timestamp
from ..core.view_transform import ViewTransform
from .status_monitor import BackendStatus

logger = logging.getLogger(__name__)

DEFAULT_MAX_UPLOAD_SIZE = 100 * 1024 * 1024


class SessionState(Enum):
    """Lifecycle of a review session."""
    EMPTY = "empty"
    FILE_LOADING = "file_loading"
    READY = "ready"
    DETECTING = "detecting"
    ANNOTATED = "annotated"
    ERROR = "error"


STABLE_STATES = (SessionState.READY, SessionState.ANNOTATED)


class MessageLevel(Enum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class SessionMessage:
    """Status line shown to the reviewer."""
    level: MessageLevel
    text: str

    def to_dict(self) -> Dict[str, str]:
        return {'type': self.level.value, 'text': self.text}


class SaveOutcome(Enum):
    SAVED = "saved"
    DUPLICATE = "duplicate"
    FAILED = "failed"
    NOTHING_TO_SAVE = "nothing_to_save"


@dataclass
class SaveResult:
    outcome: SaveOutcome
    message: str
    total_results: Optional[int] = None
    saved_record: Optional[Dict[str, Any]] = None


def classify_upload(filename: str, content_type: str) -> Optional[FileCategory]:
    """Image by mime type, PDF by mime type or .pdf suffix, otherwise None."""
    content_type = (content_type or '').lower()
    if content_type.startswith('image/'):
        return FileCategory.IMAGE
    if content_type == 'application/pdf' or (filename or '').lower().endswith('.pdf'):
        return FileCategory.PDF
    return None


def export_filename(image_name: str) -> str:
    stem = (image_name or '').split('.')[0] or 'result'
    return f"{stem}_result.json"


class DetectionSession:
    """One reviewer's working state for a single uploaded document."""

    def __init__(self,
                 detector: DetectionClient,
                 persistence: Optional[ResultPersistenceClient] = None,
                 rasterizer: Optional[PageRasterizer] = None,
                 max_upload_size: int = DEFAULT_MAX_UPLOAD_SIZE,
                 confidence: float = 0.25,
                 iou: float = 0.45):
        self.detector = detector
        self.persistence = persistence
        self.rasterizer = rasterizer or PageRasterizer()
        self.max_upload_size = max_upload_size

        self.confidence = confidence
        self.iou = iou

        self.state = SessionState.EMPTY
        self.file: Optional[FileInfo] = None
        self.pages: List[PageImage] = []
        self.detections: List[AnnotatedDetection] = []
        self.page_sizes: Dict[int, Tuple[int, int]] = {}
        self.selected_id: Optional[str] = None
        self.current_page = 1
        self.view = ViewTransform.for_dashboard()

        self.uat_status = UATStatus.PASS
        self.uat_note = ''
        self.saved = False
        self.saved_results_count = 0
        self.processing_time: Optional[float] = None
        self.message: Optional[SessionMessage] = None
        self.last_error: Optional[LayoutReviewError] = None

        self.backend_status = BackendStatus.CHECKING
        self.model_info: Optional[ModelInfo] = None

        self._file_bytes: bytes = b''
        self._generation = 0
        self._last_stable: Optional[SessionState] = None
        self._ids = DetectionIdFactory()
        self._listeners: List[Callable[["DetectionSession"], None]] = []

    @classmethod
    def from_config(cls, config: Dict[str, Any], detector: DetectionClient,
                    persistence: Optional[ResultPersistenceClient] = None) -> "DetectionSession":
        return cls(
            detector=detector,
            persistence=persistence,
            rasterizer=PageRasterizer(config['upload']['pdf_render_scale']),
            max_upload_size=config['upload']['max_size_bytes'],
            confidence=config['detection']['default_confidence'],
            iou=config['detection']['default_iou'],
        )

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: Callable[["DetectionSession"], None]) -> Callable[[], None]:
        """Register a state-change listener. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self):
        for listener in list(self._listeners):
            listener(self)

    def _set_message(self, level: MessageLevel, text: str):
        self.message = SessionMessage(level, text)

    def clear_message(self):
        self.message = None
        self._notify()

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_pdf(self) -> bool:
        return self.file is not None and self.file.is_pdf

    @property
    def total_pages(self) -> int:
        return len(self.pages) or 1

    @property
    def file_bytes(self) -> bytes:
        return self._file_bytes

    @property
    def current_page_image(self) -> Optional[PageImage]:
        if not self.pages:
            return None
        return self.pages[self.current_page - 1]

    @property
    def current_page_detections(self) -> List[AnnotatedDetection]:
        return [d for d in self.detections if d.detection.on_page(self.current_page)]

    @property
    def can_detect(self) -> bool:
        return (self.file is not None
                and self.state in STABLE_STATES
                and self.backend_status is BackendStatus.CONNECTED)

    def natural_size(self, page_number: Optional[int] = None) -> Tuple[int, int]:
        """
        Natural pixel size that detection boxes on a page are expressed in.

        The detector's reported page size wins; otherwise the page raster's size.
        Returns (0, 0) when nothing is loaded.
        """
        page_number = page_number or self.current_page
        if page_number in self.page_sizes:
            return self.page_sizes[page_number]
        if 1 <= page_number <= len(self.pages):
            return self.pages[page_number - 1].size
        return 0, 0

    def stats(self) -> Dict[str, Any]:
        count = len(self.detections)
        avg = sum(d.confidence for d in self.detections) / count if count else 0.0
        class_counts: Dict[str, int] = {}
        for det in self.current_page_detections:
            class_counts[det.class_name] = class_counts.get(det.class_name, 0) + 1
        return {
            'total_detections': count,
            'current_page_detections': len(self.current_page_detections),
            'average_confidence': f"{avg:.2f}",
            'low_confidence': sum(1 for d in self.detections if d.confidence < LOW_CONFIDENCE_THRESHOLD),
            'class_counts': class_counts,
            'processing_time': self.processing_time,
        }

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def validate_upload(self, filename: str, size: int, content_type: str) -> FileCategory:
        """Raise UnsupportedFileType or FileTooLarge; return the file category."""
        category = classify_upload(filename, content_type)
        if category is None:
            raise UnsupportedFileType()
        if size > self.max_upload_size:
            raise FileTooLarge(size, self.max_upload_size)
        return category

    def check_upload(self, filename: str, size: int, content_type: str) -> Optional[FileCategory]:
        """
        Validate an upload without loading it.

        On failure the error is recorded, the session is left exactly as it was
        and None is returned.
        """
        try:
            return self.validate_upload(filename, size, content_type)
        except ValidationError as e:
            logger.warning(f"Upload rejected: {filename}: {e.message}")
            self._reject(e)
            return None

    async def upload(self, filename: str, data: bytes, content_type: str) -> bool:
        """
        Load a new file, superseding anything in flight.

        Returns True when the file is loaded and the session is READY.
        """
        category = self.check_upload(filename, len(data), content_type)
        if category is None:
            return False

        self._generation += 1
        generation = self._generation
        file_info = FileInfo(name=filename, size=len(data), content_type=content_type, category=category)

        self.state = SessionState.FILE_LOADING
        self.message = None
        self.last_error = None
        self._notify()
        logger.info(f"📄 Loading {filename} ({file_info.size_label}, {category.value})")

        try:
            if category is FileCategory.PDF:
                pages = await self.rasterizer.rasterize_async(data)
            else:
                loop = asyncio.get_running_loop()
                pages = [await loop.run_in_executor(None, decode_image, data, content_type)]
        except (RasterizationError, DecodeError) as e:
            if generation != self._generation:
                logger.info(f"Discarding stale load failure for {filename}")
                return False
            self._recover(e, f"Could not load {filename}: {e.message}")
            return False
        except Exception as e:
            logger.exception(f"Unexpected load failure for {filename}")
            if generation != self._generation:
                return False
            self._recover(DecodeError(f"Could not read {filename}"), f"Could not load {filename}: {e}")
            return False

        if generation != self._generation:
            logger.info(f"Discarding stale load result for {filename}")
            return False

        self.file = file_info
        self._file_bytes = data
        self.pages = pages
        self.detections = []
        self.page_sizes = {}
        self.selected_id = None
        self.current_page = 1
        self.view.reset()
        self.saved = False
        self.processing_time = None
        self.uat_status = UATStatus.PASS
        self.uat_note = ''
        self._enter(SessionState.READY)
        self._notify()

        logger.info(f"✅ Loaded {filename}: {len(pages)} page(s), page 1 is {pages[0].width}x{pages[0].height}")
        return True

    def _enter(self, state: SessionState):
        self.state = state
        if state in STABLE_STATES:
            self._last_stable = state

    def _reject(self, error: LayoutReviewError):
        """Refuse an operation without changing state."""
        self.last_error = error
        self._set_message(MessageLevel.ERROR, error.message)
        self._notify()

    def _recover(self, error: LayoutReviewError, text: str):
        """Return to the last stable state, or ERROR when there is none."""
        if self.file is not None and self._last_stable is not None:
            self.state = self._last_stable
        else:
            self.state = SessionState.ERROR
        self.last_error = error
        self._set_message(MessageLevel.ERROR, text)
        logger.error(f"❌ {text}")
        self._notify()

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def set_thresholds(self, confidence: Optional[float] = None, iou: Optional[float] = None):
        for name, value in (('confidence', confidence), ('iou', iou)):
            if value is not None and not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1, got {value}")
        if confidence is not None:
            self.confidence = confidence
        if iou is not None:
            self.iou = iou
        self._notify()

    async def detect(self) -> bool:
        """Send the original upload to the backend and replace all detections."""
        if self.file is None:
            self._reject(LayoutReviewError("Please upload an image first!"))
            return False
        if self.state not in STABLE_STATES:
            self._reject(LayoutReviewError("Please wait for the current operation to finish"))
            return False
        if self.backend_status is not BackendStatus.CONNECTED:
            self._reject(TransportError("Backend is not connected! Please check the server is running."))
            return False

        self._generation += 1
        generation = self._generation
        file_info = self.file

        self.state = SessionState.DETECTING
        self.message = None
        self.last_error = None
        self._notify()

        started = time.monotonic()
        try:
            response = await self.detector.detect(
                self._file_bytes, file_info.name, file_info.content_type,
                self.confidence, self.iou,
            )
        except TransportError as e:
            if generation != self._generation:
                logger.info(f"Discarding stale detection failure for {file_info.name}")
                return False
            self._recover(e, f"Detection error: {e.message}")
            return False
        except Exception as e:
            logger.exception(f"Unexpected detection failure for {file_info.name}")
            if generation != self._generation:
                return False
            self._recover(TransportError(f"Unexpected backend response: {e}"),
                          "Detection error: unexpected backend response")
            return False

        if generation != self._generation:
            logger.info(f"Discarding stale detection result for {file_info.name}")
            return False

        self._apply_detections(response, time.monotonic() - started)
        return True

    def _apply_detections(self, response: DetectionResponse, elapsed: float):
        if self.is_pdf and response.is_pdf and response.total_pages != len(self.pages):
            logger.warning(f"Backend reported {response.total_pages} pages, rasterized {len(self.pages)}")

        self.detections = [self._ids.annotate(d) for d in response.detections]
        self.page_sizes = dict(response.page_sizes)
        self.selected_id = None
        self.saved = False
        self.processing_time = elapsed
        self._enter(SessionState.ANNOTATED)

        if not self.detections:
            self._set_message(MessageLevel.INFO,
                              "No objects detected. Try lowering the confidence threshold.")
        else:
            self._set_message(MessageLevel.SUCCESS,
                              f"Detected {len(self.detections)} objects in {elapsed:.2f}s")

        logger.info(f"🎯 {self.file.name}: {len(self.detections)} detections in {elapsed:.2f}s")
        self._notify()

    # ------------------------------------------------------------------
    # Selection, pages and view
    # ------------------------------------------------------------------

    def select(self, detection_id: Optional[str]) -> Optional[str]:
        """Select a detection on the current page by id; None or unknown ids clear it."""
        ids = {d.id for d in self.current_page_detections}
        self.selected_id = detection_id if detection_id in ids else None
        self._notify()
        return self.selected_id

    def select_at_display(self, x: float, y: float,
                          display_width: float, display_height: float) -> Optional[str]:
        """
        Hit-test a click given in display pixels of the (unzoomed) canvas.

        The scale is computed from the display box passed in, never cached.
        A click on empty space clears the selection.
        """
        natural_w, natural_h = self.natural_size()
        scale = compute_scale(natural_w, natural_h, display_width, display_height)
        if scale is None:
            return None

        self.selected_id = select_at(self.current_page_detections, (x, y), scale)
        self._notify()
        return self.selected_id

    def select_at_screen(self, screen_x: float, screen_y: float,
                         display_width: float, display_height: float) -> Optional[str]:
        """Like select_at_display, for a point on the zoomed and panned view."""
        x, y = self.view.screen_to_display(screen_x, screen_y)
        return self.select_at_display(x, y, display_width, display_height)

    def go_to_page(self, page_number: int) -> bool:
        if not self.pages or not 1 <= page_number <= self.total_pages:
            return False
        if page_number != self.current_page:
            self.current_page = page_number
            self.selected_id = None
            self._notify()
        return True

    def next_page(self) -> bool:
        return self.go_to_page(self.current_page + 1)

    def previous_page(self) -> bool:
        return self.go_to_page(self.current_page - 1)

    def zoom_in(self) -> float:
        zoom = self.view.zoom_in()
        self._notify()
        return zoom

    def zoom_out(self) -> float:
        zoom = self.view.zoom_out()
        self._notify()
        return zoom

    def reset_view(self):
        self.view.reset()
        self._notify()

    def pan_by(self, dx: float, dy: float):
        self.view.pan_by(dx, dy)
        self._notify()

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render(self, display_width: int, display_height: int,
               options: RenderOptions = DEFAULT_OPTIONS) -> Optional[Image.Image]:
        """Render the current page at display size, or None when not ready."""
        page = self.current_page_image
        if page is None:
            return None
        natural_w, natural_h = self.natural_size()
        scale = compute_scale(natural_w, natural_h, display_width, display_height)
        if scale is None:
            return None
        return render_page(page, self.current_page_detections, self.selected_id,
                           (int(display_width), int(display_height)), scale, options)

    # ------------------------------------------------------------------
    # Backend status
    # ------------------------------------------------------------------

    def set_backend_status(self, status: BackendStatus, model_info: Optional[ModelInfo] = None):
        """Status monitor callback. Never touches annotation state."""
        self.backend_status = status
        if model_info is not None:
            self.model_info = model_info
        self._notify()

    # ------------------------------------------------------------------
    # Review, save and export
    # ------------------------------------------------------------------

    def set_review(self, status: Optional[UATStatus] = None, note: Optional[str] = None):
        if status is not None:
            self.uat_status = UATStatus(status)
        if note is not None:
            self.uat_note = note
        self._notify()

    def _detection_dicts(self) -> List[Dict[str, Any]]:
        return [d.detection.to_dict() for d in self.detections]

    def _image_size(self) -> Dict[str, int]:
        width, height = self.natural_size(1)
        return {'width': width, 'height': height}

    def build_record(self) -> Dict[str, Any]:
        """Snapshot of the session as a persisted result record (without id/timestamp)."""
        record = {
            'imageName': self.file.name,
            'imageData': self.pages[0].to_data_url() if self.pages else '',
            'imageSize': self._image_size(),
            'detections': self._detection_dicts(),
            'uatStatus': self.uat_status.value,
            'uatNote': self.uat_note,
            'isPDF': self.is_pdf,
            'totalPages': self.total_pages,
        }
        if self.is_pdf:
            record['pdfPages'] = [
                {'pageNumber': p.page_number, 'imageUrl': p.to_data_url()} for p in self.pages
            ]
        return record

    async def save(self, uat_status: Optional[UATStatus] = None, uat_note: Optional[str] = None) -> SaveResult:
        """
        Persist the annotated result.

        A duplicate name yields SaveOutcome.DUPLICATE and leaves the detections
        and the saved flag untouched.
        """
        if uat_status is not None or uat_note is not None:
            self.set_review(uat_status, uat_note)

        if self.state is not SessionState.ANNOTATED or not self.detections:
            return self._save_result(SaveOutcome.NOTHING_TO_SAVE, "No data to save!")
        if self.persistence is None:
            return self._save_result(SaveOutcome.FAILED, "Result storage is not configured")

        generation = self._generation
        record = self.build_record()

        try:
            response = await self.persistence.save(record)
        except ConflictError as e:
            logger.warning(f"Duplicate save rejected: {record['imageName']}")
            return self._save_result(SaveOutcome.DUPLICATE, e.message)
        except LayoutReviewError as e:
            logger.error(f"❌ Save failed: {e.message}")
            return self._save_result(SaveOutcome.FAILED, f"Save error: {e.message}")

        total = response.get('totalResults')
        if total is not None:
            self.saved_results_count = total

        if generation == self._generation:
            self.saved = True
        else:
            logger.info("Session moved on during save; not marking the new file as saved")

        return self._save_result(
            SaveOutcome.SAVED, f"Saved successfully! (Total: {total} results)",
            total_results=total, saved_record=response.get('savedResult'),
        )

    def _save_result(self, outcome: SaveOutcome, text: str, **kwargs) -> SaveResult:
        level = MessageLevel.SUCCESS if outcome is SaveOutcome.SAVED else MessageLevel.ERROR
        self._set_message(level, text)
        self._notify()
        return SaveResult(outcome=outcome, message=text, **kwargs)

    async def refresh_saved_count(self) -> int:
        if self.persistence is None:
            return self.saved_results_count
        try:
            self.saved_results_count = await self.persistence.count()
        except LayoutReviewError as e:
            logger.error(f"Failed to fetch saved results: {e.message}")
        return self.saved_results_count

    def export(self) -> Optional[Tuple[str, Dict[str, Any]]]:
        """
        Build the downloadable JSON export. Local only, independent of save status.

        Returns (filename, payload) or None when there is nothing to export.
        """
        if self.file is None or not self.detections:
            self._set_message(MessageLevel.ERROR, "No data to export yet!")
            self._notify()
            return None

        payload = {
            'imageName': self.file.name,
            'imageSize': self._image_size(),
            'detections': self._detection_dicts(),
            'uatStatus': self.uat_status.value,
            'uatNote': self.uat_note,
            'isPDF': self.is_pdf,
            'totalPages': self.total_pages,
            'timestamp': utc_timestamp(),
        }
        return export_filename(self.file.name), payload

    def to_dict(self) -> Dict[str, Any]:
        """JSON view of the session for the dashboard."""
        natural_w, natural_h = self.natural_size()
        return {
            'state': self.state.value,
            'generation': self._generation,
            'file': {
                'name': self.file.name,
                'size': self.file.size,
                'sizeLabel': self.file.size_label,
                'contentType': self.file.content_type,
                'category': self.file.category.value,
            } if self.file else None,
            'isPDF': self.is_pdf,
            'totalPages': self.total_pages,
            'currentPage': self.current_page,
            'naturalSize': {'width': natural_w, 'height': natural_h},
            'detections': [
                dict(d.detection.to_dict(), id=d.id, color=d.color)
                for d in self.current_page_detections
            ],
            'selectedId': self.selected_id,
            'view': self.view.to_dict(),
            'thresholds': {'confidence': self.confidence, 'iou': self.iou},
            'review': {'uatStatus': self.uat_status.value, 'uatNote': self.uat_note},
            'saved': self.saved,
            'savedResultsCount': self.saved_results_count,
            'stats': self.stats(),
            'backendStatus': self.backend_status.value,
            'canDetect': self.can_detect,
            'modelInfo': vars(self.model_info) if self.model_info else None,
            'message': self.message.to_dict() if self.message else None,
            'updatedAt': datetime.now().isoformat(),
        }
