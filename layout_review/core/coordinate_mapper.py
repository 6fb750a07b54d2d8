"""
Coordinate Mapper

Affine mapping between natural image pixel space (the space detector bounding
boxes are expressed in) and display pixel space (the rendered canvas). The two
axes scale independently. Scales are never cached: callers recompute them from
the current display box whenever display size, zoom or page changes.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

Point = Tuple[float, float]
Box = Tuple[float, float, float, float]


@dataclass(frozen=True)
class Scale:
    """Per-axis natural-to-display scale factors."""
    x: float
    y: float


def compute_scale(natural_width: float, natural_height: float,
                  display_width: float, display_height: float) -> Optional[Scale]:
    """
    Compute natural-to-display scale factors.

    Returns None ("not ready") when the natural size is unknown (zero) or the
    display box is empty; callers must skip rendering that frame.
    """
    if natural_width <= 0 or natural_height <= 0:
        return None
    if display_width <= 0 or display_height <= 0:
        return None
    return Scale(display_width / natural_width, display_height / natural_height)


def natural_to_display_point(point: Point, scale: Scale) -> Point:
    x, y = point
    return x * scale.x, y * scale.y


def display_to_natural_point(point: Point, scale: Scale) -> Point:
    x, y = point
    return x / scale.x, y / scale.y


def natural_to_display_box(box: Box, scale: Scale) -> Box:
    x, y, w, h = box
    return x * scale.x, y * scale.y, w * scale.x, h * scale.y


def display_to_natural_box(box: Box, scale: Scale) -> Box:
    x, y, w, h = box
    return x / scale.x, y / scale.y, w / scale.x, h / scale.y


def fit_width(natural_width: float, natural_height: float,
              container_width: float) -> Tuple[float, float]:
    """Display size filling the container width at the image's aspect ratio."""
    if natural_width <= 0 or natural_height <= 0:
        return 0.0, 0.0
    return container_width, container_width * natural_height / natural_width


def fit_inside(natural_width: float, natural_height: float,
               max_width: float, max_height: float) -> Tuple[float, float]:
    """Largest display size inside the container, never upscaling."""
    if natural_width <= 0 or natural_height <= 0:
        return 0.0, 0.0
    scale = min(max_width / natural_width, max_height / natural_height, 1.0)
    return natural_width * scale, natural_height * scale
