"""
Dashboard web application.

This package contains:
- The FastAPI review dashboard and persistence API
- Saved results listing and export
- The saved result viewer
"""

from .dashboard_app import app, create_app
from .results_query import ResultsQuery
from .results_viewer import ResultsViewer

__all__ = [
    'app',
    'create_app',
    'ResultsQuery',
    'ResultsViewer'
]
