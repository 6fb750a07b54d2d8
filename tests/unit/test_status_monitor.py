"""
Unit tests for backend status polling.
"""

import asyncio
import unittest
from unittest.mock import AsyncMock, Mock

from layout_review.core.errors import TransportError
from layout_review.core.models import ModelInfo
from layout_review.review.status_monitor import BackendStatus, StatusMonitor


def make_client(healthy=True):
    client = Mock()
    client.base_url = "http://detector.test"
    client.check_health = AsyncMock(return_value=healthy)
    client.get_model_info = AsyncMock(return_value=ModelInfo(model_loaded=True, num_classes=7))
    return client


class TestStatusMonitor(unittest.IsolatedAsyncioTestCase):
    """Test cases for StatusMonitor."""

    async def test_connected_fetches_model_info(self):
        changes = []
        monitor = StatusMonitor(make_client(), on_change=lambda s, info: changes.append((s, info)))

        self.assertEqual(await monitor.check_once(), BackendStatus.CONNECTED)
        self.assertEqual(monitor.model_info.num_classes, 7)
        self.assertEqual(changes[-1][0], BackendStatus.CONNECTED)

    async def test_disconnected(self):
        client = make_client(healthy=False)
        monitor = StatusMonitor(client)

        self.assertEqual(await monitor.check_once(), BackendStatus.DISCONNECTED)
        client.get_model_info.assert_not_called()

    async def test_model_info_failure_still_connected(self):
        client = make_client()
        client.get_model_info.side_effect = TransportError("boom")
        monitor = StatusMonitor(client)

        self.assertEqual(await monitor.check_once(), BackendStatus.CONNECTED)
        self.assertIsNone(monitor.model_info)

    async def test_polls_on_interval(self):
        client = make_client()
        monitor = StatusMonitor(client, interval=0.01)

        monitor.start()
        await asyncio.sleep(0.055)
        await monitor.stop()

        self.assertGreaterEqual(client.check_health.await_count, 3)

    async def test_stop_leaves_no_task(self):
        """Test teardown cancels polling so nothing keeps running."""
        client = make_client()
        monitor = StatusMonitor(client, interval=0.01)

        task = monitor.start()
        self.assertIs(monitor.start(), task)
        await asyncio.sleep(0.02)
        await monitor.stop()

        self.assertTrue(task.done())
        self.assertFalse(monitor.running)
        calls = client.check_health.await_count
        await asyncio.sleep(0.05)
        self.assertEqual(client.check_health.await_count, calls)

    async def test_unexpected_error_degrades_to_disconnected(self):
        client = make_client()
        client.check_health.side_effect = RuntimeError("socket exploded")
        monitor = StatusMonitor(client, interval=0.01)

        monitor.start()
        await asyncio.sleep(0.02)
        await monitor.stop()
        self.assertEqual(monitor.status, BackendStatus.DISCONNECTED)

    async def test_delayed_start(self):
        client = make_client()
        monitor = StatusMonitor(client, interval=10)

        monitor.start(immediate=False)
        await asyncio.sleep(0.02)
        await monitor.stop()
        client.check_health.assert_not_called()


if __name__ == '__main__':
    unittest.main()
