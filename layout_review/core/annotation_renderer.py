"""
Annotation Renderer

Draws a page image and its detections onto a Pillow drawing surface and
resolves canvas clicks back to detections.

Rendering is a pure function of its inputs: the surface is cleared first, so
repeated calls with the same arguments produce identical pixels and a call
with only the selected id changed moves the highlight without leaving stale
boxes behind.
"""

import io
import logging
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Iterable, Optional, Sequence, Tuple

from PIL import Image, ImageColor, ImageDraw, ImageFont

from .coordinate_mapper import Point, Scale, display_to_natural_point, natural_to_display_box
from .models import AnnotatedDetection, PageImage

logger = logging.getLogger(__name__)

LABEL_HEIGHT = 18
LABEL_PADDING = 3
LABEL_FONT_SIZE = 12
CLEAR_COLOR = (255, 255, 255, 255)


class FillMode(Enum):
    """Box fill opacity presets."""
    CANVAS = 0.1
    BORDER_ONLY = 0.0
    TRANSPARENT = 0.15
    SEMI_TRANSPARENT = 0.3


@dataclass(frozen=True)
class RenderOptions:
    """Overlay appearance."""
    fill_mode: FillMode = FillMode.CANVAS
    show_labels: bool = True
    border_width: int = 2

    @property
    def fill_alpha(self) -> int:
        # 0.1 -> 0x1A, matching an 8-digit hex color suffix
        return int(round(self.fill_mode.value * 255))

    def border_for(self, selected: bool) -> int:
        return self.border_width + 1 if selected else self.border_width


DEFAULT_OPTIONS = RenderOptions()


@lru_cache(maxsize=4)
def _label_font(size: int = LABEL_FONT_SIZE) -> ImageFont.ImageFont:
    return ImageFont.load_default(size=size)


def label_text(detection: AnnotatedDetection) -> str:
    return f"{detection.class_name} {detection.confidence:.2f}"


def _rgb(color: str) -> Tuple[int, int, int]:
    return ImageColor.getrgb(color)[:3]


def render(surface: Image.Image,
           page_image: PageImage,
           detections: Sequence[AnnotatedDetection],
           selected_id: Optional[str],
           scale_x: float,
           scale_y: float,
           options: RenderOptions = DEFAULT_OPTIONS) -> Image.Image:
    """
    Draw page_image scaled to the surface and overlay its detections.

    Args:
        surface: Target image; its size is the display size
        page_image: Page raster in natural pixels
        detections: Detections belonging to this page, in natural pixels
        selected_id: Id of the highlighted detection or None
        scale_x, scale_y: Natural-to-display factors from compute_scale()
        options: Overlay appearance

    Returns:
        The same surface, for chaining
    """
    size = surface.size
    frame = Image.new('RGBA', size, CLEAR_COLOR)

    with Image.open(io.BytesIO(page_image.image_data)) as page:
        page_rgba = page.convert('RGBA')
    if page_rgba.size != size:
        page_rgba = page_rgba.resize(size, Image.Resampling.BILINEAR)
    frame.alpha_composite(page_rgba)

    scale = Scale(scale_x, scale_y)
    fill_layer = Image.new('RGBA', size, (0, 0, 0, 0))
    fill_draw = ImageDraw.Draw(fill_layer)
    draw = ImageDraw.Draw(frame)

    boxes = []
    for det in detections:
        x, y, w, h = natural_to_display_box(det.bbox, scale)
        boxes.append((det, x, y, w, h))
        if options.fill_alpha and w > 0 and h > 0:
            fill_draw.rectangle([x, y, x + w, y + h], fill=_rgb(det.color) + (options.fill_alpha,))

    frame.alpha_composite(fill_layer)

    font = _label_font()
    for det, x, y, w, h in boxes:
        color = _rgb(det.color)
        if w > 0 and h > 0:
            draw.rectangle([x, y, x + w, y + h], outline=color,
                           width=options.border_for(det.id == selected_id))

        if options.show_labels:
            text = label_text(det)
            text_width = draw.textlength(text, font=font)
            draw.rectangle([x, y, x + text_width + 2 * LABEL_PADDING, y + LABEL_HEIGHT], fill=color)
            draw.text((x + LABEL_PADDING, y + LABEL_PADDING), text, fill=(255, 255, 255), font=font)

    # Clear the whole surface, then copy the finished frame
    surface.paste(frame.convert(surface.mode), (0, 0))
    return surface


def render_page(page_image: PageImage,
                detections: Sequence[AnnotatedDetection],
                selected_id: Optional[str],
                display_size: Tuple[int, int],
                scale: Scale,
                options: RenderOptions = DEFAULT_OPTIONS) -> Image.Image:
    """Render onto a fresh RGBA surface of display_size."""
    surface = Image.new('RGBA', display_size, CLEAR_COLOR)
    return render(surface, page_image, detections, selected_id, scale.x, scale.y, options)


def encode_png(surface: Image.Image) -> bytes:
    buffer = io.BytesIO()
    surface.save(buffer, format='PNG')
    return buffer.getvalue()


def hit_test(detections: Iterable[AnnotatedDetection], point: Point) -> Optional[AnnotatedDetection]:
    """First detection in list order whose box contains the natural-space point."""
    x, y = point
    for det in detections:
        if det.detection.contains(x, y):
            return det
    return None


def select_at(detections: Iterable[AnnotatedDetection], display_point: Point,
              scale: Scale) -> Optional[str]:
    """Map a display-space click to natural space and return the hit id or None."""
    natural = display_to_natural_point(display_point, scale)
    hit = hit_test(detections, natural)
    if hit is not None:
        logger.debug(f"Selected {hit.id} ({hit.class_name}) at natural {natural}")
    return hit.id if hit else None
