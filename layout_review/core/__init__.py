"""
Core modules for layout detection review.

This package contains the core functionality for:
- PDF rasterization and image decoding
- Natural/display coordinate mapping and the zoom/pan view transform
- Annotation rendering and hit testing
- Detection backend client
- Saved result storage and persistence clients
"""

from .annotation_renderer import FillMode, RenderOptions, hit_test, render, render_page, select_at
from .config_manager import ConfigurationManager
from .coordinate_mapper import Scale, compute_scale
from .detection_client import DetectionClient
from .errors import LayoutReviewError
from .models import AnnotatedDetection, Detection, PageImage
from .page_rasterizer import PageRasterizer, decode_image
from .persistence_client import HttpPersistenceClient, LocalPersistenceClient
from .result_store import JsonFileResultStore, SqliteResultStore, create_result_store
from .view_transform import ViewTransform

__all__ = [
    'FillMode',
    'RenderOptions',
    'hit_test',
    'render',
    'render_page',
    'select_at',
    'ConfigurationManager',
    'Scale',
    'compute_scale',
    'DetectionClient',
    'LayoutReviewError',
    'AnnotatedDetection',
    'Detection',
    'PageImage',
    'PageRasterizer',
    'decode_image',
    'HttpPersistenceClient',
    'LocalPersistenceClient',
    'JsonFileResultStore',
    'SqliteResultStore',
    'create_result_store',
    'ViewTransform'
]
