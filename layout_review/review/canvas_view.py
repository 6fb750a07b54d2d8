"""
Canvas View

Holds the latest rendered frame of a detection session. Session changes only
mark the view dirty through the redraw scheduler; the PNG is produced once per
coalesced frame.
"""

import logging
from typing import Optional, Tuple

from ..core.annotation_renderer import DEFAULT_OPTIONS, RenderOptions, encode_png
from ..core.coordinate_mapper import fit_inside
from .detection_session import DetectionSession
from .redraw_scheduler import RedrawScheduler

logger = logging.getLogger(__name__)

MAX_DISPLAY_WIDTH = 1200
MAX_DISPLAY_HEIGHT = 1600


class CanvasView:
    """Render target bound to one session."""

    def __init__(self, session: DetectionSession, options: RenderOptions = DEFAULT_OPTIONS,
                 scheduler: Optional[RedrawScheduler] = None):
        self.session = session
        self.options = options
        self.scheduler = scheduler or RedrawScheduler(self._redraw)
        self._display_size: Optional[Tuple[int, int]] = None
        self._frame: Optional[bytes] = None
        self._unsubscribe = session.subscribe(self.scheduler.request)

    @property
    def display_size(self) -> Tuple[int, int]:
        """Explicit size from resize(), else the page fitted inside the default box."""
        if self._display_size is not None:
            return self._display_size
        natural_w, natural_h = self.session.natural_size()
        width, height = fit_inside(natural_w, natural_h, MAX_DISPLAY_WIDTH, MAX_DISPLAY_HEIGHT)
        return int(round(width)), int(round(height))

    def resize(self, width: Optional[int], height: Optional[int]):
        """Set the display box; None for either dimension reverts to auto-fit."""
        size = (int(width), int(height)) if width and height else None
        if size != self._display_size:
            self._display_size = size
            self.scheduler.request()

    def set_options(self, options: RenderOptions):
        self.options = options
        self.scheduler.request()

    def _redraw(self):
        width, height = self.display_size
        surface = self.session.render(width, height, self.options)
        # Scale not ready (no page or empty box): keep nothing rather than a stale frame
        self._frame = encode_png(surface) if surface is not None else None

    def current_frame(self) -> Optional[bytes]:
        """Latest PNG frame, running any pending redraw first."""
        if self._frame is None and not self.scheduler.pending:
            self.scheduler.request()
        self.scheduler.flush()
        return self._frame

    def close(self):
        self.scheduler.cancel()
        self._unsubscribe()
