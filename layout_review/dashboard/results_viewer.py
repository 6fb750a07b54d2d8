"""
Results Viewer

Read-only viewer for one saved result: page navigation for PDF records,
zoom up to 5x (buttons and ctrl+wheel), drag-to-pan while zoomed in and
annotated page frames rendered from the stored page images.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from PIL import Image

from ..core.annotation_renderer import DEFAULT_OPTIONS, RenderOptions, render_page
from ..core.coordinate_mapper import compute_scale, fit_inside, fit_width
from ..core.errors import DecodeError
from ..core.models import AnnotatedDetection, Detection, DetectionIdFactory, PageImage
from ..core.page_rasterizer import decode_data_url
from ..core.view_transform import ViewTransform
from .results_query import class_counts, page_detections

logger = logging.getLogger(__name__)


class ResultsViewer:
    """Viewer state for a saved result record."""

    def __init__(self, record: Dict[str, Any], options: RenderOptions = DEFAULT_OPTIONS):
        self.record = record
        self.options = options
        self.current_page = 1
        self.view = ViewTransform.for_results_viewer()
        self._pages: Dict[int, PageImage] = {}

    @property
    def result_id(self) -> str:
        return self.record.get('id', '')

    @property
    def is_pdf(self) -> bool:
        return bool(self.record.get('isPDF'))

    @property
    def total_pages(self) -> int:
        if not self.is_pdf:
            return 1
        return int(self.record.get('totalPages') or len(self.record.get('pdfPages') or []) or 1)

    def go_to_page(self, page_number: int) -> bool:
        if not 1 <= page_number <= self.total_pages:
            return False
        self.current_page = page_number
        return True

    # ------------------------------------------------------------------
    # Page data
    # ------------------------------------------------------------------

    def _image_url(self, page_number: int) -> str:
        if self.is_pdf:
            for page in self.record.get('pdfPages') or []:
                if page.get('pageNumber') == page_number:
                    return page.get('imageUrl') or ''
        # Records without per-page images only have the first page
        return self.record.get('imageData') or ''

    def page_image(self, page_number: Optional[int] = None) -> Optional[PageImage]:
        """
        Decoded raster of a page, or None when the record holds no image.

        Raises:
            DecodeError: the stored image is corrupt
        """
        page_number = page_number or self.current_page
        if page_number not in self._pages:
            url = self._image_url(page_number)
            if not url:
                return None
            self._pages[page_number] = decode_data_url(url, page_number)
        return self._pages[page_number]

    def natural_size(self) -> Tuple[int, int]:
        """Stored imageSize for page 1, else the page raster's size."""
        size = self.record.get('imageSize') or {}
        if self.current_page == 1 and size.get('width') and size.get('height'):
            return int(size['width']), int(size['height'])
        page = self.page_image()
        return page.size if page else (0, 0)

    def current_page_detections(self) -> List[Dict[str, Any]]:
        return page_detections(self.record, self.current_page)

    def _annotated(self) -> List[AnnotatedDetection]:
        ids = DetectionIdFactory()
        try:
            return [ids.annotate(Detection.from_dict(d)) for d in self.current_page_detections()]
        except (TypeError, ValueError) as e:
            logger.error(f"❌ Malformed detection in saved result {self.result_id}: {e}")
            raise DecodeError(f"Stored detection is malformed: {e}")

    # ------------------------------------------------------------------
    # Zoom and pan
    # ------------------------------------------------------------------

    def zoom_in(self) -> float:
        return self.view.zoom_in()

    def zoom_out(self) -> float:
        return self.view.zoom_out()

    def reset_view(self):
        self.view.reset()

    def wheel(self, delta_y: float, ctrl_key: bool) -> float:
        """Only ctrl (or cmd) + wheel zooms; a plain wheel scrolls the page."""
        if ctrl_key:
            return self.view.wheel(delta_y)
        return self.view.zoom

    def start_drag(self, x: float, y: float) -> bool:
        return self.view.start_drag(x, y)

    def drag_to(self, x: float, y: float) -> bool:
        return self.view.drag_to(x, y)

    def end_drag(self):
        self.view.end_drag()

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def display_size(self, max_width: int, max_height: Optional[int] = None) -> Tuple[int, int]:
        """Fit inside the box without upscaling, or fill max_width when no height is given."""
        natural_w, natural_h = self.natural_size()
        if max_height:
            width, height = fit_inside(natural_w, natural_h, max_width, max_height)
        else:
            width, height = fit_width(natural_w, natural_h, max_width)
        return int(round(width)), int(round(height))

    def render(self, max_width: int, max_height: Optional[int] = None) -> Optional[Image.Image]:
        """Annotated frame of the current page, or None when there is nothing to draw."""
        page = self.page_image()
        if page is None:
            return None
        display_size = self.display_size(max_width, max_height)
        scale = compute_scale(*self.natural_size(), *display_size)
        if scale is None:
            return None
        return render_page(page, self._annotated(), None, display_size, scale, self.options)

    def to_dict(self) -> Dict[str, Any]:
        detections = self.current_page_detections()
        return {
            'resultId': self.result_id,
            'imageName': self.record.get('imageName', ''),
            'uatStatus': self.record.get('uatStatus', ''),
            'uatNote': self.record.get('uatNote', ''),
            'timestamp': self.record.get('timestamp', ''),
            'isPDF': self.is_pdf,
            'totalPages': self.total_pages,
            'currentPage': self.current_page,
            'detections': detections,
            'classCounts': class_counts(detections),
            'view': self.view.to_dict(),
            'dragging': self.view.is_dragging,
        }
