"""
Backend Status Monitor

Polls the detection backend on a fixed interval while a session view is
active. Failures only degrade the status to disconnected; they never touch
annotation state.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

from ..core.detection_client import DetectionClient
from ..core.errors import TransportError
from ..core.models import ModelInfo

logger = logging.getLogger(__name__)


class BackendStatus(Enum):
    """Detection backend reachability."""
    CHECKING = "checking"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class StatusMonitor:
    """Background polling task for backend liveness and model info."""

    def __init__(self, client: DetectionClient, interval: float = 30,
                 on_change: Optional[Callable[[BackendStatus, Optional[ModelInfo]], None]] = None):
        self.client = client
        self.interval = interval
        self.on_change = on_change
        self.status = BackendStatus.CHECKING
        self.model_info: Optional[ModelInfo] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _set_status(self, status: BackendStatus):
        self.status = status
        if self.on_change:
            self.on_change(status, self.model_info)

    async def check_once(self) -> BackendStatus:
        """Run a single liveness check, refreshing model info when connected."""
        if not await self.client.check_health():
            logger.warning(f"⚠️ Detection backend disconnected: {self.client.base_url}")
            self._set_status(BackendStatus.DISCONNECTED)
            return self.status

        try:
            self.model_info = await self.client.get_model_info()
        except TransportError as e:
            logger.warning(f"Failed to fetch model info: {e}")

        self._set_status(BackendStatus.CONNECTED)
        return self.status

    def start(self, immediate: bool = True) -> asyncio.Task:
        """Start polling on the running loop. Idempotent."""
        if not self.running:
            self._task = asyncio.create_task(self._run(immediate))
            logger.info(f"🔄 Backend status polling started (every {self.interval}s)")
        return self._task

    async def stop(self):
        """Cancel the polling task and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("🛑 Backend status polling stopped")

    async def _run(self, immediate: bool):
        if not immediate:
            await asyncio.sleep(self.interval)
        while True:
            try:
                await self.check_once()
            except Exception as e:
                logger.error(f"❌ Status check failed: {e}")
                self._set_status(BackendStatus.DISCONNECTED)
            await asyncio.sleep(self.interval)
