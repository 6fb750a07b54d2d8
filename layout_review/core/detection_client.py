"""
Detection Backend Client

Async HTTP client for the external layout detection service:
- POST /detect with the original upload and confidence/IoU thresholds
- GET / liveness check
- GET /model/info model metadata
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from .errors import TransportError
from .models import Detection, DetectionResponse, ModelInfo

logger = logging.getLogger(__name__)


class DetectionClient:
    """Thin async wrapper over the detection service HTTP API."""

    def __init__(self, base_url: str, timeout: float = 120.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: Dict[str, Any], **kwargs) -> "DetectionClient":
        return cls(config['backend']['url'], timeout=config['backend']['timeout'], **kwargs)

    async def aclose(self):
        await self.client.aclose()

    async def check_health(self) -> bool:
        """Return True when the backend answers its root endpoint with 2xx."""
        try:
            response = await self.client.get("/")
            return response.is_success
        except httpx.HTTPError as e:
            logger.debug(f"Backend health check failed: {e}")
            return False

    async def get_model_info(self) -> ModelInfo:
        response = await self._request("GET", "/model/info")
        return ModelInfo.from_dict(response.json())

    async def detect(self, file_bytes: bytes, filename: str, content_type: str,
                     confidence: float, iou: float) -> DetectionResponse:
        """
        Send the uploaded file to the detector.

        Raises:
            TransportError: network failure, non-2xx status or an unexpected body
        """
        files = {'file': (filename, file_bytes, content_type or 'application/octet-stream')}
        params = {'confidence': confidence, 'iou': iou}

        response = await self._request("POST", "/detect", params=params, files=files)
        try:
            payload = response.json()
        except ValueError:
            raise TransportError("Backend returned a non-JSON response")

        return parse_detection_payload(payload)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"❌ {method} {self.base_url}{path} failed: {e}")
            raise TransportError(f"Detection backend unreachable: {e}")

        if not response.is_success:
            message = _error_detail(response)
            logger.error(f"❌ {method} {path} returned {response.status_code}: {message}")
            raise TransportError(message, status_code=response.status_code)

        return response


def _error_detail(response: httpx.Response) -> str:
    text = response.text
    try:
        detail = response.json().get('detail')
        if detail:
            return str(detail)
    except (ValueError, AttributeError):
        pass
    return text or 'Detection failed'


def parse_detection_payload(payload: Any) -> DetectionResponse:
    """
    Normalize a detector response.

    Single image: {"detections": [...]}
    PDF: {"file_type": "pdf", "total_pages": N,
          "pages": [{"detections": [...], "image_width": W, "image_height": H}, ...]}
    """
    if not isinstance(payload, dict):
        raise TransportError("Unexpected response format from backend")

    try:
        if payload.get('file_type') == 'pdf' and isinstance(payload.get('pages'), list):
            return _parse_pdf_payload(payload)

        if isinstance(payload.get('detections'), list):
            detections = [Detection.from_dict(d) for d in payload['detections']]
            return DetectionResponse(detections=detections, total_pages=1)
    except (AttributeError, TypeError, ValueError) as e:
        raise TransportError(f"Malformed detection in backend response: {e}")

    logger.warning(f"Unexpected response format: {list(payload.keys())}")
    raise TransportError("Unexpected response format from backend")


def _parse_pdf_payload(payload: Dict[str, Any]) -> DetectionResponse:
    detections: List[Detection] = []
    page_sizes = {}

    for index, page in enumerate(payload['pages']):
        if not isinstance(page, dict):
            continue
        page_number = int(page.get('page_number', page.get('page', index + 1)))
        for det in page.get('detections') or []:
            detections.append(Detection.from_dict(det, page=page_number))
        if page.get('image_width') and page.get('image_height'):
            page_sizes[page_number] = (int(page['image_width']), int(page['image_height']))

    return DetectionResponse(
        detections=detections,
        total_pages=int(payload.get('total_pages') or len(payload['pages']) or 1),
        page_sizes=page_sizes,
        is_pdf=True,
    )
