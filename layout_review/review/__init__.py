"""
Review session modules.

This package contains:
- The detection session state machine
- Redraw coalescing and the canvas view
- Backend status polling
"""

from .canvas_view import CanvasView
from .detection_session import DetectionSession, SessionState
from .redraw_scheduler import RedrawScheduler
from .status_monitor import BackendStatus, StatusMonitor

__all__ = [
    'CanvasView',
    'DetectionSession',
    'SessionState',
    'RedrawScheduler',
    'BackendStatus',
    'StatusMonitor'
]
