"""
Redraw Scheduler

Coalesces "state changed" notifications into at most one redraw per frame.
Any number of request() calls made before the frame fires produce a single
call of the redraw callback.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

FRAME_INTERVAL = 1 / 60


class RedrawScheduler:
    """Schedules a redraw callback on the running event loop."""

    def __init__(self, redraw: Callable[[], Any], frame_interval: float = FRAME_INTERVAL):
        self._redraw = redraw
        self.frame_interval = frame_interval
        self._pending = False
        self._handle: Optional[asyncio.TimerHandle] = None
        self.request_count = 0
        self.redraw_count = 0

    @property
    def pending(self) -> bool:
        return self._pending

    def request(self, *_args):
        """Mark the view dirty. Safe to call with or without a running loop."""
        self.request_count += 1
        if self._pending:
            return
        self._pending = True

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (CLI, sync tests): the owner calls flush() before reading a frame
            return
        self._handle = loop.call_later(self.frame_interval, self._fire)

    def flush(self) -> bool:
        """Run a pending redraw immediately. Returns True if one ran."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if not self._pending:
            return False
        self._fire()
        return True

    def cancel(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._pending = False

    def _fire(self):
        self._handle = None
        if not self._pending:
            return
        self._pending = False
        self.redraw_count += 1
        try:
            self._redraw()
        except Exception as e:
            logger.error(f"❌ Redraw failed: {e}")
            raise
