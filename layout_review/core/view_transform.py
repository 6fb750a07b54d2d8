"""
View Transform

Zoom and pan layered on top of display space. Purely visual: nothing here
ever touches stored detection coordinates.
"""

from dataclasses import dataclass
from typing import Tuple

ZOOM_STEP = 0.25
WHEEL_STEP = 0.1
MIN_ZOOM = 0.25
DASHBOARD_MAX_ZOOM = 3.0
VIEWER_MAX_ZOOM = 5.0


@dataclass
class ViewTransform:
    """Zoom factor and pan offset of a canvas view."""
    min_zoom: float = MIN_ZOOM
    max_zoom: float = DASHBOARD_MAX_ZOOM
    zoom: float = 1.0
    pan_x: float = 0.0
    pan_y: float = 0.0

    def __post_init__(self):
        self._drag_origin = None

    @classmethod
    def for_dashboard(cls) -> "ViewTransform":
        return cls(max_zoom=DASHBOARD_MAX_ZOOM)

    @classmethod
    def for_results_viewer(cls) -> "ViewTransform":
        return cls(max_zoom=VIEWER_MAX_ZOOM)

    @property
    def pan(self) -> Tuple[float, float]:
        return self.pan_x, self.pan_y

    def set_zoom(self, value: float) -> float:
        # Round away float drift from repeated 0.1 wheel steps
        self.zoom = round(max(self.min_zoom, min(self.max_zoom, value)), 4)
        return self.zoom

    def zoom_in(self) -> float:
        return self.set_zoom(self.zoom + ZOOM_STEP)

    def zoom_out(self) -> float:
        return self.set_zoom(self.zoom - ZOOM_STEP)

    def wheel(self, delta_y: float) -> float:
        """Ctrl+wheel zoom: scrolling down zooms out."""
        return self.set_zoom(self.zoom + (-WHEEL_STEP if delta_y > 0 else WHEEL_STEP))

    def reset(self):
        self.zoom = 1.0
        self.pan_x = 0.0
        self.pan_y = 0.0
        self._drag_origin = None

    def pan_by(self, dx: float, dy: float):
        self.pan_x += dx
        self.pan_y += dy

    def start_drag(self, screen_x: float, screen_y: float) -> bool:
        """Begin a drag-to-pan gesture. Only allowed while zoomed in."""
        if self.zoom <= 1:
            return False
        self._drag_origin = (screen_x - self.pan_x, screen_y - self.pan_y)
        return True

    def drag_to(self, screen_x: float, screen_y: float) -> bool:
        if self._drag_origin is None or self.zoom <= 1:
            return False
        origin_x, origin_y = self._drag_origin
        self.pan_x = screen_x - origin_x
        self.pan_y = screen_y - origin_y
        return True

    def end_drag(self):
        self._drag_origin = None

    @property
    def is_dragging(self) -> bool:
        return self._drag_origin is not None

    def screen_to_display(self, screen_x: float, screen_y: float) -> Tuple[float, float]:
        """Undo pan then zoom (zoom is applied around the canvas origin)."""
        return (screen_x - self.pan_x) / self.zoom, (screen_y - self.pan_y) / self.zoom

    def display_to_screen(self, display_x: float, display_y: float) -> Tuple[float, float]:
        return display_x * self.zoom + self.pan_x, display_y * self.zoom + self.pan_y

    def to_dict(self):
        return {'zoom': self.zoom, 'pan': {'x': self.pan_x, 'y': self.pan_y}}
