"""
Data Model

Detections as returned by the layout detector, their session-local annotated
form, rasterized pages and the persisted result record.
"""

import base64
import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

CLASS_COLORS: Dict[str, str] = {
    'Text': '#a855f7',
    'Title': '#22c55e',
    'Section header': '#ef4444',
    'Picture': '#f97316',
    'Table': '#eab308',
    'Signature': '#ec4899',
    'Logo': '#92400e',
}

DEFAULT_CLASS_COLOR = '#6b7280'

LOW_CONFIDENCE_THRESHOLD = 0.5


def get_class_color(class_name: str) -> str:
    """Return the display color for a class, gray for unknown classes."""
    return CLASS_COLORS.get(class_name, DEFAULT_CLASS_COLOR)


class FileCategory(Enum):
    """Mime category of an uploaded file."""
    IMAGE = "image"
    PDF = "pdf"


class UATStatus(Enum):
    """Reviewer verdict attached to a saved result."""
    PASS = "pass"
    FAIL = "fail"


@dataclass(frozen=True)
class Detection:
    """One labeled bounding box in natural pixel space."""
    class_id: int
    class_name: str
    confidence: float
    bbox: Tuple[float, float, float, float]
    page: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], page: Optional[int] = None) -> "Detection":
        if not isinstance(data, dict):
            raise ValueError(f"detection must be an object, got {data!r}")
        bbox = data.get('bbox') or []
        if len(bbox) != 4:
            raise ValueError(f"bbox must have 4 values, got {bbox!r}")
        page_value = data.get('page', page)
        return cls(
            class_id=int(data.get('class_id', -1)),
            class_name=str(data.get('class_name', '')),
            confidence=float(data.get('confidence', 0.0)),
            bbox=tuple(float(v) for v in bbox),
            page=int(page_value) if page_value is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'class_id': self.class_id,
            'class_name': self.class_name,
            'confidence': self.confidence,
            'bbox': list(self.bbox),
        }
        if self.page is not None:
            data['page'] = self.page
        return data

    def on_page(self, page_number: int) -> bool:
        # Single-image detections carry no page and belong to the implicit page 1
        return (self.page or 1) == page_number

    def contains(self, x: float, y: float) -> bool:
        bx, by, bw, bh = self.bbox
        return bx <= x <= bx + bw and by <= y <= by + bh


@dataclass(frozen=True)
class AnnotatedDetection:
    """Detection with a session-local id and its class color."""
    id: str
    detection: Detection
    color: str

    @property
    def class_name(self) -> str:
        return self.detection.class_name

    @property
    def confidence(self) -> float:
        return self.detection.confidence

    @property
    def bbox(self) -> Tuple[float, float, float, float]:
        return self.detection.bbox

    @property
    def page(self) -> Optional[int]:
        return self.detection.page


class DetectionIdFactory:
    """Session-scoped monotonic id generator. Ids are never reused."""

    def __init__(self, prefix: str = "box"):
        self.prefix = prefix
        self._counter = itertools.count(1)

    def __call__(self) -> str:
        return f"{self.prefix}_{next(self._counter)}"

    def annotate(self, detection: Detection) -> AnnotatedDetection:
        return AnnotatedDetection(
            id=self(),
            detection=detection,
            color=get_class_color(detection.class_name),
        )


@dataclass(frozen=True)
class PageImage:
    """A rasterized page in natural pixel dimensions."""
    page_number: int
    image_data: bytes
    width: int
    height: int
    mime_type: str = "image/png"

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64," + base64.b64encode(self.image_data).decode('utf-8')


@dataclass(frozen=True)
class FileInfo:
    """Identity of the uploaded file."""
    name: str
    size: int
    content_type: str
    category: FileCategory

    @property
    def is_pdf(self) -> bool:
        return self.category is FileCategory.PDF

    @property
    def size_label(self) -> str:
        return format_file_size(self.size)


@dataclass
class ModelInfo:
    """Model metadata reported by the detection backend."""
    model_loaded: bool = False
    model_path: str = ""
    model_type: str = ""
    num_classes: int = 0
    class_names: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelInfo":
        return cls(
            model_loaded=bool(data.get('model_loaded', False)),
            model_path=str(data.get('model_path', '')),
            model_type=str(data.get('model_type', '')),
            num_classes=int(data.get('num_classes', 0)),
            class_names=list(data.get('class_names') or []),
        )


@dataclass
class DetectionResponse:
    """Parsed backend response, normalized across single-image and PDF modes."""
    detections: List[Detection]
    total_pages: int = 1
    # Natural size reported by the detector per page number
    page_sizes: Dict[int, Tuple[int, int]] = field(default_factory=dict)
    is_pdf: bool = False


def format_file_size(num_bytes: int) -> str:
    if num_bytes < 1024:
        return f"{num_bytes} B"
    if num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.1f} KB"
    return f"{num_bytes / (1024 * 1024):.1f} MB"
