"""Unit tests for output routing and event sinks."""

from __future__ import annotations

from unittest.mock import patch

import cv2
import numpy as np
import pytest

from fod_monitor.errors import CameraError, FrameError
from fod_monitor.pipeline.router import OutputRouter, encode_image
from fod_monitor.pipeline.routing import RoutingTable
from fod_monitor.pipeline.sinks import OpenCVWindowSink, QueueSink
from fod_monitor.pipeline.types import (
    Detection,
    ErrorEvent,
    Frame,
    FrameResult,
    ImagePayloadEvent,
    NoDataEvent,
    SourcesEvent,
)
from fod_monitor.pipeline.workers import WorkerPool


def _result(source_id: int, value: int = 50, detections=()) -> FrameResult:
    image = np.full((8, 8, 3), value, dtype=np.uint8)
    frame = Frame(source_id=source_id, sequence=10 + source_id, timestamp=0.0, image=image)
    return FrameResult(frame=frame, detections=tuple(detections), image=image)


class TestEncodeImage:
    """Tests for image encoding."""

    def test_png_is_lossless(self):
        """PNG payloads decode back to the same pixels."""
        image = np.random.default_rng(0).integers(0, 255, (16, 16, 3), dtype=np.uint8)
        data = encode_image(image, "png")
        decoded = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
        np.testing.assert_array_equal(decoded, image)

    def test_jpeg_header(self):
        """JPEG payloads start with the SOI marker."""
        data = encode_image(np.zeros((8, 8, 3), dtype=np.uint8), "jpg", quality=50)
        assert data[:2] == b"\xff\xd8"

    def test_refused_encoding_raises(self):
        """An encoder failure becomes a frame error."""
        with patch("fod_monitor.pipeline.router.cv2.imencode", return_value=(False, None)):
            with pytest.raises(FrameError):
                encode_image(np.zeros((8, 8, 3), dtype=np.uint8), "jpg")


class TestOutputRouter:
    """Tests for OutputRouter.route."""

    def test_unmapped_destinations_are_idle(self):
        """Destinations without a source get no event."""
        sink = QueueSink(3)
        events = OutputRouter(sink).route(RoutingTable.create(3), {})
        assert events == []

    def test_payload_for_mapped_source(self):
        """A processed frame produces an image payload with its detections."""
        sink = QueueSink(2)
        det = Detection(class_id=1, confidence=0.9, box=(1.0, 1.0, 5.0, 5.0))
        snapshot = RoutingTable.create(2, {1: 4})

        events = OutputRouter(sink, encoding="png").route(
            snapshot, {4: _result(4, detections=[det])}
        )

        (event,) = events
        assert isinstance(event, ImagePayloadEvent)
        assert event.destination_id == 1
        assert event.source_id == 4
        assert event.sequence == 14
        assert event.encoding == "png"
        assert event.detections == (det,)
        assert sink.get(1, timeout=0) == event

    def test_shared_source_encoded_once(self):
        """Two destinations on one source share a single encode."""
        sink = QueueSink(3)
        snapshot = RoutingTable.create(3, {0: 0, 2: 0})

        with patch(
            "fod_monitor.pipeline.router.encode_image", wraps=encode_image
        ) as mock_encode:
            events = OutputRouter(sink).route(snapshot, {0: _result(0)})

        assert mock_encode.call_count == 1
        assert [e.destination_id for e in events] == [0, 2]
        assert events[0].image == events[1].image

    def test_source_error(self):
        """A failed camera turns into an error event with its reason."""
        sink = QueueSink(1)
        snapshot = RoutingTable.create(1, {0: 3})
        errors = {3: CameraError(3, "Error: Camera 3 is invalid.")}

        (event,) = OutputRouter(sink).route(snapshot, {}, errors)

        assert event == ErrorEvent(0, 3, "Error: Camera 3 is invalid.")

    def test_failed_batch(self):
        """Sources whose batch failed get the batch error."""
        sink = QueueSink(2)
        snapshot = RoutingTable.create(2, {0: 0, 1: 1})

        events = OutputRouter(sink).route(
            snapshot, {}, batch_error="Error: Inference failed.", failed={0}
        )

        assert events == [
            ErrorEvent(0, 0, "Error: Inference failed."),
            NoDataEvent(1, 1),
        ]

    def test_encode_failure_is_per_destination(self):
        """An encode failure only affects the destinations of that source."""
        sink = QueueSink(2)
        snapshot = RoutingTable.create(2, {0: 0, 1: 1})

        def flaky(image, encoding, quality):
            if image[0, 0, 0] == 1:
                raise FrameError("Could not encode frame as jpg")
            return b"ok"

        with patch("fod_monitor.pipeline.router.encode_image", side_effect=flaky):
            events = OutputRouter(sink).route(
                snapshot, {0: _result(0, value=1), 1: _result(1, value=2)}
            )

        assert isinstance(events[0], ErrorEvent)
        assert "Could not encode" in events[0].reason
        assert isinstance(events[1], ImagePayloadEvent)
        assert events[1].image == b"ok"

    def test_encoding_on_pool(self):
        """Encoding through a worker pool gives the same events."""
        snapshot = RoutingTable.create(3, {0: 0, 1: 1, 2: 2})
        results = {i: _result(i, value=10 * (i + 1)) for i in range(3)}

        plain = OutputRouter(QueueSink(3), encoding="png").route(snapshot, results)
        with WorkerPool(max_workers=3) as pool:
            pooled = OutputRouter(QueueSink(3), encoding="png", pool=pool).route(
                snapshot, results
            )

        assert pooled == plain

    def test_emit_sources(self):
        """Available sources are emitted sorted."""
        sink = QueueSink(1)
        event = OutputRouter(sink).emit_sources([2, 0])
        assert event == SourcesEvent((0, 2))
        assert sink.latest_sources() == event


class TestQueueSink:
    """Tests for QueueSink."""

    def test_drops_oldest_when_full(self):
        """A full queue discards its oldest event."""
        sink = QueueSink(1, maxsize=2)
        for source_id in range(3):
            sink.emit(NoDataEvent(0, source_id))

        assert [event.source_id for event in sink.drain(0)] == [1, 2]
        assert sink.dropped == 1

    def test_destinations_are_separate(self):
        """Each destination has its own queue."""
        sink = QueueSink(2)
        sink.emit(NoDataEvent(1, 5))
        assert sink.drain(0) == []
        assert sink.drain(1) == [NoDataEvent(1, 5)]


class TestOpenCVWindowSink:
    """Tests for OpenCVWindowSink."""

    @patch("fod_monitor.pipeline.sinks.cv2.waitKey", return_value=-1)
    @patch("fod_monitor.pipeline.sinks.cv2.imshow")
    def test_pump_shows_latest_image(self, mock_imshow, mock_wait):
        """Pending images are shown in the destination's window."""
        sink = OpenCVWindowSink(["top view", "side view"])
        data = encode_image(np.full((8, 8, 3), 9, dtype=np.uint8), "png")
        sink.emit(ImagePayloadEvent(1, 0, 1, data, "png"))

        assert sink.pump() is True
        mock_imshow.assert_called_once()
        name, image = mock_imshow.call_args.args
        assert name == "side view"
        assert image.shape == (8, 8, 3)

    @patch("fod_monitor.pipeline.sinks.cv2.waitKey", return_value=ord("q"))
    @patch("fod_monitor.pipeline.sinks.cv2.imshow")
    def test_quit_key(self, mock_imshow, mock_wait):
        """Pressing q requests shutdown."""
        sink = OpenCVWindowSink(["top view"])
        assert sink.pump() is False
        assert sink.quit_requested

    @patch("fod_monitor.pipeline.sinks.cv2.waitKey", return_value=-1)
    @patch("fod_monitor.pipeline.sinks.cv2.imshow")
    def test_waiting_keeps_last_frame(self, mock_imshow, mock_wait):
        """A no-data event does not replace a frame already on screen."""
        sink = OpenCVWindowSink(["top view"])
        data = encode_image(np.zeros((8, 8, 3), dtype=np.uint8), "png")
        sink.emit(ImagePayloadEvent(0, 0, 1, data, "png"))
        sink.pump()
        sink.emit(NoDataEvent(0, 0))
        sink.pump()

        assert mock_imshow.call_count == 1

    @patch("fod_monitor.pipeline.sinks.cv2.waitKey", return_value=-1)
    @patch("fod_monitor.pipeline.sinks.cv2.imshow")
    def test_waiting_after_reroute_replaces_frame(self, mock_imshow, mock_wait):
        """A destination moved to another camera stops showing the old camera."""
        sink = OpenCVWindowSink(["top view"])
        data = encode_image(np.full((8, 8, 3), 255, dtype=np.uint8), "png")
        sink.emit(ImagePayloadEvent(0, 0, 1, data, "png"))
        sink.pump()
        sink.emit(NoDataEvent(0, 5))
        sink.pump()

        assert mock_imshow.call_count == 2
        _, image = mock_imshow.call_args.args
        assert image.shape != (8, 8, 3)
