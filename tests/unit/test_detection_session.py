"""
Unit tests for the detection session state machine.

The detection backend is a FakeBackend behind httpx.MockTransport and
results are stored in a temporary JSON file.
"""

import asyncio
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, patch

from layout_review.core.detection_client import DetectionClient
from layout_review.core.errors import DecodeError, FileTooLarge, TransportError, UnsupportedFileType
from layout_review.core.models import UATStatus
from layout_review.core.persistence_client import LocalPersistenceClient
from layout_review.core.result_store import JsonFileResultStore
from layout_review.review.detection_session import (
    DetectionSession, MessageLevel, SaveOutcome, SessionState, export_filename,
)
from layout_review.review.status_monitor import BackendStatus
from tests.helpers import FakeBackend, make_image_bytes, make_oversized_png, make_pdf_bytes

TITLE_PAYLOAD = {'detections': [
    {'class_id': 1, 'class_name': 'Title', 'confidence': 0.9, 'bbox': [10, 10, 100, 20]},
]}

TWO_PAGE_PAYLOAD = {
    'file_type': 'pdf',
    'total_pages': 2,
    'pages': [
        {'detections': [
            {'class_id': 1, 'class_name': 'Title', 'confidence': 0.9, 'bbox': [20, 20, 200, 40], 'page': 1},
            {'class_id': 0, 'class_name': 'Text', 'confidence': 0.8, 'bbox': [20, 80, 300, 100], 'page': 1},
        ], 'image_width': 600, 'image_height': 400},
        {'detections': [
            {'class_id': 4, 'class_name': 'Table', 'confidence': 0.4, 'bbox': [30, 30, 100, 100], 'page': 2},
        ], 'image_width': 600, 'image_height': 400},
    ],
}


class SessionTestCase(unittest.IsolatedAsyncioTestCase):
    """Base fixture: a connected session over a fake backend."""

    detect_payload = TITLE_PAYLOAD

    async def asyncSetUp(self):
        """Set up test fixtures."""
        self._tmp = tempfile.TemporaryDirectory()
        self.store = JsonFileResultStore(Path(self._tmp.name) / 'result.json')
        self.backend = FakeBackend(detect_payload=self.detect_payload)
        self.client = DetectionClient("http://detector.test", transport=self.backend.transport())
        self.session = DetectionSession(self.client, LocalPersistenceClient(self.store))
        self.session.set_backend_status(BackendStatus.CONNECTED)

    async def asyncTearDown(self):
        await self.client.aclose()
        self._tmp.cleanup()

    async def load_image(self, name='scan.jpg', width=800, height=600):
        data = make_image_bytes(width, height, image_format='JPEG')
        self.assertTrue(await self.session.upload(name, data, 'image/jpeg'))
        return data


class TestUpload(SessionTestCase):
    """Test cases for upload validation and loading."""

    async def test_image_upload_ready(self):
        await self.load_image()

        self.assertEqual(self.session.state, SessionState.READY)
        self.assertEqual(self.session.natural_size(), (800, 600))
        self.assertEqual(self.session.total_pages, 1)
        self.assertFalse(self.session.is_pdf)

    async def test_pdf_upload_rasterizes_all_pages(self):
        self.assertTrue(await self.session.upload('report.pdf', make_pdf_bytes(2, 300, 200), 'application/pdf'))

        self.assertEqual(self.session.state, SessionState.READY)
        self.assertEqual(self.session.total_pages, 2)
        self.assertEqual(self.session.current_page, 1)
        self.assertEqual(self.session.natural_size(), (600, 400))

    async def test_pdf_detected_by_suffix(self):
        self.assertTrue(await self.session.upload('report.PDF', make_pdf_bytes(1), 'application/octet-stream'))
        self.assertTrue(self.session.is_pdf)

    async def test_wrong_type_leaves_prior_session_untouched(self):
        """Test validation failures keep the previous file, state and detections."""
        await self.load_image()
        await self.session.detect()
        generation = self.session.generation

        self.assertFalse(await self.session.upload('notes.txt', b'hello', 'text/plain'))

        self.assertIsInstance(self.session.last_error, UnsupportedFileType)
        self.assertEqual(self.session.state, SessionState.ANNOTATED)
        self.assertEqual(self.session.file.name, 'scan.jpg')
        self.assertEqual(len(self.session.detections), 1)
        self.assertEqual(self.session.generation, generation)
        self.assertEqual(self.session.message.level, MessageLevel.ERROR)

    async def test_too_large(self):
        self.session.max_upload_size = 1024 * 1024
        self.assertFalse(await self.session.upload('big.png', b'\x00' * (1024 * 1024 + 1), 'image/png'))

        self.assertIsInstance(self.session.last_error, FileTooLarge)
        self.assertEqual(self.session.state, SessionState.EMPTY)
        self.assertEqual(self.session.message.text, "File too large! Maximum is 1MB.")

    async def test_corrupt_image_without_prior_file_is_error(self):
        self.assertFalse(await self.session.upload('broken.png', b'\x89PNG broken', 'image/png'))
        self.assertEqual(self.session.state, SessionState.ERROR)
        self.assertIsNone(self.session.file)

    async def test_bad_pdf_restores_last_stable_state(self):
        """Test a rasterization failure returns to the previous stable file."""
        await self.load_image()
        self.assertFalse(await self.session.upload('bad.pdf', b'%PDF-garbage', 'application/pdf'))

        self.assertEqual(self.session.state, SessionState.READY)
        self.assertEqual(self.session.file.name, 'scan.jpg')
        self.assertEqual(self.session.natural_size(), (800, 600))

    async def test_check_upload_on_declared_size(self):
        await self.load_image()
        self.session.max_upload_size = 1024 * 1024

        self.assertIsNone(self.session.check_upload('big.png', 5 * 1024 * 1024, 'image/png'))
        self.assertIsInstance(self.session.last_error, FileTooLarge)
        self.assertEqual(self.session.state, SessionState.READY)
        self.assertEqual(self.session.file.name, 'scan.jpg')

    async def test_oversized_image_restores_last_stable_state(self):
        await self.load_image()
        self.assertFalse(await self.session.upload('huge.png', make_oversized_png(), 'image/png'))

        self.assertEqual(self.session.state, SessionState.READY)
        self.assertEqual(self.session.file.name, 'scan.jpg')
        self.assertIsInstance(self.session.last_error, DecodeError)
        self.assertTrue(self.session.can_detect)

    async def test_oversized_image_without_prior_file_is_error(self):
        self.assertFalse(await self.session.upload('huge.png', make_oversized_png(), 'image/png'))
        self.assertEqual(self.session.state, SessionState.ERROR)

    async def test_unexpected_load_failure_recovers(self):
        await self.load_image()
        with patch('layout_review.review.detection_session.decode_image', side_effect=RuntimeError("boom")):
            self.assertFalse(await self.session.upload('other.png', make_image_bytes(10, 10), 'image/png'))

        self.assertEqual(self.session.state, SessionState.READY)
        self.assertEqual(self.session.file.name, 'scan.jpg')
        self.assertIsInstance(self.session.last_error, DecodeError)

    async def test_new_upload_replaces_detections(self):
        await self.load_image()
        await self.session.detect()
        await self.load_image('other.jpg', 400, 300)

        self.assertEqual(self.session.detections, [])
        self.assertEqual(self.session.state, SessionState.READY)
        self.assertFalse(self.session.saved)


class TestDetect(SessionTestCase):
    """Test cases for detection."""

    async def test_detect_annotates_with_fresh_ids(self):
        data = await self.load_image()
        self.assertTrue(await self.session.detect())
        self.assertTrue(await self.session.detect())

        self.assertEqual(self.session.state, SessionState.ANNOTATED)
        self.assertEqual([d.id for d in self.session.detections], ['box_2'])
        self.assertEqual(self.session.detections[0].color, '#22c55e')
        self.assertIn(data, self.backend.detect_requests[0].content)

    async def test_thresholds_sent(self):
        await self.load_image()
        self.session.set_thresholds(confidence=0.6, iou=0.3)
        await self.session.detect()

        params = self.backend.detect_requests[0].url.params
        self.assertEqual((params['confidence'], params['iou']), ('0.6', '0.3'))

    async def test_invalid_threshold(self):
        with self.assertRaises(ValueError):
            self.session.set_thresholds(confidence=1.5)

    async def test_zero_detections_is_informational(self):
        """Test an empty response is ANNOTATED with an info message, not ERROR."""
        self.backend.detect_payload = {'detections': []}
        await self.load_image()

        self.assertTrue(await self.session.detect())
        self.assertEqual(self.session.state, SessionState.ANNOTATED)
        self.assertEqual(self.session.message.level, MessageLevel.INFO)
        self.assertIn('lowering the confidence', self.session.message.text)

    async def test_requires_file(self):
        self.assertFalse(await self.session.detect())
        self.assertEqual(self.session.state, SessionState.EMPTY)
        self.assertEqual(self.backend.detect_requests, [])

    async def test_requires_connected_backend(self):
        await self.load_image()
        self.session.set_backend_status(BackendStatus.DISCONNECTED)

        self.assertFalse(self.session.can_detect)
        self.assertFalse(await self.session.detect())
        self.assertIsInstance(self.session.last_error, TransportError)
        self.assertEqual(self.backend.detect_requests, [])

    async def test_transport_failure_keeps_annotations(self):
        await self.load_image()
        await self.session.detect()
        self.backend.detect_status = 500

        self.assertFalse(await self.session.detect())
        self.assertEqual(self.session.state, SessionState.ANNOTATED)
        self.assertEqual(len(self.session.detections), 1)
        self.assertIn('Model crashed', self.session.message.text)

    async def test_malformed_detection_entry_recovers(self):
        """Test a null detection entry returns the session to its last stable state."""
        await self.load_image()
        self.backend.detect_payload = {'detections': [None]}

        self.assertFalse(await self.session.detect())
        self.assertEqual(self.session.state, SessionState.READY)
        self.assertIsInstance(self.session.last_error, TransportError)
        self.assertTrue(self.session.can_detect)

        self.backend.detect_payload = TITLE_PAYLOAD
        self.assertTrue(await self.session.detect())
        self.assertEqual(self.session.state, SessionState.ANNOTATED)

    async def test_unexpected_detector_error_keeps_annotations(self):
        await self.load_image()
        await self.session.detect()

        with patch.object(self.client, 'detect', side_effect=KeyError('pages')):
            self.assertFalse(await self.session.detect())

        self.assertEqual(self.session.state, SessionState.ANNOTATED)
        self.assertEqual(len(self.session.detections), 1)
        self.assertIsInstance(self.session.last_error, TransportError)

    async def test_disconnect_does_not_clear_annotations(self):
        await self.load_image()
        await self.session.detect()
        self.session.set_backend_status(BackendStatus.DISCONNECTED)

        self.assertEqual(self.session.state, SessionState.ANNOTATED)
        self.assertEqual(len(self.session.detections), 1)

    async def test_stale_detection_result_is_discarded(self):
        """Test a detect response arriving after a newer upload is dropped."""
        await self.load_image()
        release = asyncio.Event()
        original_detect = self.client.detect

        async def slow_detect(*args, **kwargs):
            await release.wait()
            return await original_detect(*args, **kwargs)

        with patch.object(self.client, 'detect', side_effect=slow_detect):
            detect_task = asyncio.create_task(self.session.detect())
            await asyncio.sleep(0)
            self.assertEqual(self.session.state, SessionState.DETECTING)

            await self.load_image('newer.jpg', 400, 300)
            release.set()
            self.assertFalse(await detect_task)

        self.assertEqual(self.session.file.name, 'newer.jpg')
        self.assertEqual(self.session.state, SessionState.READY)
        self.assertEqual(self.session.detections, [])

    async def test_stale_load_result_is_discarded(self):
        release = asyncio.Event()
        rasterizer = self.session.rasterizer
        original = rasterizer.rasterize_async

        async def slow_rasterize(data):
            await release.wait()
            return await original(data)

        with patch.object(rasterizer, 'rasterize_async', side_effect=slow_rasterize):
            pdf_task = asyncio.create_task(
                self.session.upload('slow.pdf', make_pdf_bytes(1), 'application/pdf'))
            await asyncio.sleep(0)
            await self.load_image('fast.jpg')
            release.set()
            self.assertFalse(await pdf_task)

        self.assertEqual(self.session.file.name, 'fast.jpg')
        self.assertFalse(self.session.is_pdf)

    async def test_stats(self):
        self.backend.detect_payload = {'detections': [
            {'class_id': 1, 'class_name': 'Title', 'confidence': 0.9, 'bbox': [0, 0, 10, 10]},
            {'class_id': 0, 'class_name': 'Text', 'confidence': 0.3, 'bbox': [0, 20, 10, 10]},
            {'class_id': 0, 'class_name': 'Text', 'confidence': 0.6, 'bbox': [0, 40, 10, 10]},
        ]}
        await self.load_image()
        await self.session.detect()

        stats = self.session.stats()
        self.assertEqual(stats['total_detections'], 3)
        self.assertEqual(stats['average_confidence'], '0.60')
        self.assertEqual(stats['low_confidence'], 1)
        self.assertEqual(stats['class_counts'], {'Title': 1, 'Text': 2})


class TestSelection(SessionTestCase):
    """Test cases for click selection on an 800x600 image."""

    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.load_image()
        await self.session.detect()

    async def test_click_on_detection_selects(self):
        """Test display (25, 7.5) at half size maps to natural (50, 15) and selects."""
        self.assertEqual(self.session.select_at_display(25, 7.5, 400, 300), 'box_1')
        self.assertEqual(self.session.selected_id, 'box_1')

    async def test_click_on_empty_space_clears(self):
        self.session.select('box_1')
        self.assertIsNone(self.session.select_at_display(250, 250, 400, 300))
        self.assertIsNone(self.session.selected_id)

    async def test_click_through_zoom_and_pan(self):
        self.session.zoom_in()
        self.session.zoom_in()
        self.session.pan_by(10, 10)
        # Display (25, 7.5) at zoom 1.5 with pan (10, 10)
        self.assertEqual(self.session.select_at_screen(47.5, 21.25, 400, 300), 'box_1')

    async def test_select_unknown_id_clears(self):
        self.session.select('box_1')
        self.assertIsNone(self.session.select('box_99'))

    async def test_zoom_never_changes_bboxes(self):
        before = [d.bbox for d in self.session.detections]
        for _ in range(5):
            self.session.zoom_in()
        self.session.render(400, 300)
        self.assertEqual([d.bbox for d in self.session.detections], before)

    async def test_render(self):
        frame = self.session.render(400, 300)
        self.assertEqual(frame.size, (400, 300))
        self.assertIsNone(self.session.render(0, 300))


class TestPdfPages(SessionTestCase):
    """Test cases for page navigation in a 2-page PDF."""

    detect_payload = TWO_PAGE_PAYLOAD

    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.session.upload('report.pdf', make_pdf_bytes(2, 300, 200), 'application/pdf')
        await self.session.detect()

    async def test_page_change_filters_detections_and_resets_selection(self):
        self.assertEqual(len(self.session.current_page_detections), 2)
        self.session.select('box_1')

        self.assertTrue(self.session.next_page())

        self.assertEqual(self.session.current_page, 2)
        self.assertEqual([d.class_name for d in self.session.current_page_detections], ['Table'])
        self.assertIsNone(self.session.selected_id)

    async def test_page_bounds(self):
        self.assertFalse(self.session.previous_page())
        self.assertTrue(self.session.go_to_page(2))
        self.assertFalse(self.session.next_page())
        self.assertFalse(self.session.go_to_page(0))

    async def test_cannot_select_detection_from_other_page(self):
        self.session.go_to_page(2)
        self.assertIsNone(self.session.select('box_1'))

    async def test_natural_size_from_detector(self):
        self.assertEqual(self.session.natural_size(1), (600, 400))

    async def test_record_contains_pages(self):
        record = self.session.build_record()
        self.assertTrue(record['isPDF'])
        self.assertEqual(record['totalPages'], 2)
        self.assertEqual([p['pageNumber'] for p in record['pdfPages']], [1, 2])
        self.assertEqual([d['page'] for d in record['detections']], [1, 1, 2])


class TestSaveAndExport(SessionTestCase):
    """Test cases for saving and exporting."""

    async def test_save(self):
        await self.load_image()
        await self.session.detect()

        result = await self.session.save(UATStatus.FAIL, 'Title box too wide')

        self.assertEqual(result.outcome, SaveOutcome.SAVED)
        self.assertEqual(result.total_results, 1)
        self.assertTrue(self.session.saved)
        saved = self.store.list_results()['results'][0]
        self.assertEqual(saved['imageName'], 'scan.jpg')
        self.assertEqual(saved['uatStatus'], 'fail')
        self.assertEqual(saved['uatNote'], 'Title box too wide')
        self.assertEqual(saved['imageSize'], {'width': 800, 'height': 600})
        self.assertTrue(saved['imageData'].startswith('data:image/jpeg;base64,'))

    async def test_duplicate_save(self):
        """Test a duplicate keeps detections, the saved flag and the store unchanged."""
        self.store.save({'imageName': 'SCAN.jpg', 'detections': []})
        await self.load_image()
        await self.session.detect()

        result = await self.session.save()

        self.assertEqual(result.outcome, SaveOutcome.DUPLICATE)
        self.assertFalse(self.session.saved)
        self.assertEqual(len(self.session.detections), 1)
        self.assertEqual(self.store.count(), 1)

    async def test_nothing_to_save(self):
        self.backend.detect_payload = {'detections': []}
        await self.load_image()
        await self.session.detect()

        result = await self.session.save()
        self.assertEqual(result.outcome, SaveOutcome.NOTHING_TO_SAVE)
        self.assertEqual(self.store.count(), 0)

    async def test_save_failure(self):
        await self.load_image()
        await self.session.detect()
        self.session.persistence.save = AsyncMock(side_effect=TransportError("disk on fire"))

        result = await self.session.save()
        self.assertEqual(result.outcome, SaveOutcome.FAILED)
        self.assertFalse(self.session.saved)

    async def test_export(self):
        await self.load_image('page.one.jpg')
        await self.session.detect()

        filename, payload = self.session.export()

        self.assertEqual(filename, 'page_result.json')
        self.assertEqual(payload['imageName'], 'page.one.jpg')
        self.assertEqual(payload['detections'][0]['bbox'], [10.0, 10.0, 100.0, 20.0])
        self.assertNotIn('id', payload['detections'][0])
        self.assertNotIn('imageData', payload)

    async def test_export_without_detections(self):
        await self.load_image()
        self.assertIsNone(self.session.export())

    def test_export_filename(self):
        self.assertEqual(export_filename('scan.png'), 'scan_result.json')
        self.assertEqual(export_filename('noext'), 'noext_result.json')


class TestObservers(SessionTestCase):
    """Test cases for change notification."""

    async def test_subscribe_and_unsubscribe(self):
        calls = []
        unsubscribe = self.session.subscribe(calls.append)

        await self.load_image()
        self.assertGreaterEqual(len(calls), 2)

        unsubscribe()
        count = len(calls)
        self.session.zoom_in()
        self.assertEqual(len(calls), count)

    async def test_to_dict(self):
        await self.load_image()
        await self.session.detect()
        data = self.session.to_dict()

        self.assertEqual(data['state'], 'annotated')
        self.assertEqual(data['detections'][0]['id'], 'box_1')
        self.assertEqual(data['naturalSize'], {'width': 800, 'height': 600})
        self.assertEqual(data['backendStatus'], 'connected')
        self.assertTrue(data['canDetect'])


class TestFromConfig(unittest.TestCase):
    """Test cases for configuration wiring."""

    def test_from_config(self):
        from tests.helpers import make_config

        with tempfile.TemporaryDirectory() as tmp:
            config = make_config(Path(tmp), upload={'max_size_bytes': 2048, 'pdf_render_scale': 1.5})
            session = DetectionSession.from_config(config, detector=None)

        self.assertEqual(session.max_upload_size, 2048)
        self.assertEqual(session.rasterizer.scale, 1.5)
        self.assertEqual(session.confidence, 0.25)
        self.assertEqual(session.state, SessionState.EMPTY)


if __name__ == '__main__':
    unittest.main()
