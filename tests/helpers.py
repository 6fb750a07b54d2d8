"""
Shared fixtures for the layout review tests.

Builds real PNG and PDF bytes with Pillow and PyMuPDF, a fake detection
backend on top of httpx.MockTransport and a file-backed test configuration.
"""

import io
import json
import struct
import zlib

import fitz  # PyMuPDF
import httpx
from PIL import Image

from layout_review.core.models import AnnotatedDetection, Detection, PageImage

MODEL_INFO = {
    'model_loaded': True,
    'model_path': 'models/layout.pt',
    'model_type': 'yolo',
    'num_classes': 7,
    'class_names': ['Text', 'Title', 'Section header', 'Picture', 'Table', 'Signature', 'Logo'],
}


def make_image_bytes(width=800, height=600, color=(255, 255, 255), image_format='PNG'):
    buffer = io.BytesIO()
    Image.new('RGB', (width, height), color).save(buffer, format=image_format)
    return buffer.getvalue()


def make_oversized_png(width=14000, height=14000):
    """A small PNG whose IHDR claims width x height pixels."""
    data = bytearray(make_image_bytes(10, 10))
    # Signature (8) + chunk length (4) + b"IHDR" (4), then width and height
    data[16:24] = struct.pack(">II", width, height)
    data[29:33] = struct.pack(">I", zlib.crc32(bytes(data[12:29])) & 0xffffffff)
    return bytes(data)


def make_page_image(width=800, height=600, page_number=1):
    return PageImage(page_number=page_number, image_data=make_image_bytes(width, height),
                     width=width, height=height)


def make_pdf_bytes(page_count=2, width=300, height=200):
    doc = fitz.open()
    try:
        for index in range(page_count):
            page = doc.new_page(width=width, height=height)
            page.insert_text((20, 40), f"Page {index + 1}")
        return doc.tobytes()
    finally:
        doc.close()


def annotated(id, class_name='Title', bbox=(10, 10, 100, 20), confidence=0.9, page=None, color='#22c55e'):
    detection = Detection(class_id=1, class_name=class_name, confidence=confidence,
                          bbox=tuple(float(v) for v in bbox), page=page)
    return AnnotatedDetection(id=id, detection=detection, color=color)


class FakeBackend:
    """Routes requests like the layout detection service and records them."""

    def __init__(self, detect_payload=None, healthy=True, detect_status=200):
        self.detect_payload = detect_payload if detect_payload is not None else {'detections': []}
        self.healthy = healthy
        self.detect_status = detect_status
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == '/':
            if not self.healthy:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={'status': 'ok'})
        if request.url.path == '/model/info':
            return httpx.Response(200, json=MODEL_INFO)
        if request.url.path == '/detect':
            if self.detect_status != 200:
                return httpx.Response(self.detect_status, json={'detail': 'Model crashed'})
            return httpx.Response(200, json=self.detect_payload)
        return httpx.Response(404, json={'detail': 'Not found'})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def detect_requests(self):
        return [r for r in self.requests if r.url.path == '/detect']


def make_config(tmp_dir, **overrides):
    """Configuration dict as ConfigurationManager.load_configuration() builds it."""
    config = {
        'backend': {'url': 'http://detector.test', 'timeout': 5.0},
        'detection': {'default_confidence': 0.25, 'default_iou': 0.45},
        'upload': {'max_size_bytes': 100 * 1024 * 1024, 'pdf_render_scale': 2.0},
        'monitoring': {'polling_interval': 30},
        'storage': {
            'backend': 'json',
            'results_file': str(tmp_dir / 'result.json'),
            'fallback_dirs': [],
            'database_path': str(tmp_dir / 'results.db'),
        },
        'logging': {'level': 'INFO', 'format': '%(message)s', 'file': ''},
        'dashboard': {'host': '127.0.0.1', 'port': 8001},
    }
    for section, values in overrides.items():
        config[section].update(values)
    return config


def read_json(path):
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)
