"""Unit tests for drawing detections."""

from __future__ import annotations

import numpy as np

from fod_monitor.pipeline.types import Detection, Frame, Keypoint
from fod_monitor.yolo.draw import Annotator, class_label, draw_masks


def _frame(value: int = 40) -> Frame:
    image = np.full((120, 160, 3), value, dtype=np.uint8)
    return Frame(source_id=0, sequence=1, timestamp=0.0, image=image)


class TestAnnotator:
    """Tests for Annotator."""

    def test_disabled_returns_original_buffer(self):
        """With annotation off the frame buffer itself is returned."""
        frame = _frame()
        det = Detection(class_id=0, confidence=0.9, box=(10.0, 10.0, 50.0, 50.0))
        image = Annotator(enabled=False).annotate(frame, [det])
        assert image is frame.image

    def test_no_detections_gives_clean_copy(self):
        """Without detections the image is an unmodified copy."""
        frame = _frame()
        image = Annotator().annotate(frame, [])

        assert image is not frame.image
        np.testing.assert_array_equal(image, frame.image)

    def test_boxes_drawn_on_copy(self):
        """Detections are drawn without touching the source frame."""
        frame = _frame()
        original = frame.image.copy()
        det = Detection(class_id=1, confidence=0.8, box=(20.0, 40.0, 100.0, 100.0))

        image = Annotator(["bolt", "nut"]).annotate(frame, [det])

        np.testing.assert_array_equal(frame.image, original)
        assert not np.array_equal(image, original)
        # Box edge pixels change while the far corner is untouched.
        assert not np.array_equal(image[70, 20], original[70, 20])
        np.testing.assert_array_equal(image[115, 155], original[115, 155])

    def test_degenerate_box_skipped(self):
        """Zero-area boxes are not drawn."""
        frame = _frame()
        det = Detection(class_id=0, confidence=0.9, box=(30.0, 30.0, 30.0, 30.0))
        image = Annotator().annotate(frame, [det])
        np.testing.assert_array_equal(image, frame.image)

    def test_visible_keypoints_only(self):
        """Invisible keypoints are not drawn."""
        frame = _frame(0)
        keypoints = (
            Keypoint(x=60.0, y=60.0, confidence=0.9, visible=True),
            Keypoint(x=140.0, y=20.0, confidence=0.1, visible=False),
        )
        det = Detection(
            class_id=0, confidence=0.9, box=(50.0, 50.0, 70.0, 70.0), keypoints=keypoints
        )

        image = Annotator().annotate(frame, [det])

        assert image[60, 60].any()
        assert not image[20, 140].any()

    def test_coco_skeleton(self):
        """17 visible keypoints get skeleton lines between them."""
        frame = _frame(0)
        keypoints = tuple(
            Keypoint(x=20.0 + 7 * i, y=100.0, confidence=0.9, visible=True) for i in range(17)
        )
        det = Detection(
            class_id=0, confidence=0.9, box=(10.0, 60.0, 150.0, 110.0), keypoints=keypoints
        )
        image = Annotator().annotate(frame, [det])

        # Pair (5, 11) spans x=55..97 on row 100.
        assert image[100, 76].any()


class TestMasks:
    """Tests for mask blending."""

    def test_mask_blended(self):
        """Masked pixels are tinted and others left alone."""
        image = np.zeros((10, 10, 3), dtype=np.uint8)
        mask = np.zeros((10, 10), dtype=bool)
        mask[2:5, 2:5] = True
        det = Detection(class_id=0, confidence=0.9, box=(2.0, 2.0, 5.0, 5.0), mask=mask)

        draw_masks(image, [det])

        assert image[3, 3].any()
        assert not image[8, 8].any()

    def test_mismatched_mask_ignored(self):
        """Masks of another size are skipped."""
        image = np.zeros((10, 10, 3), dtype=np.uint8)
        det = Detection(
            class_id=0, confidence=0.9, box=(0.0, 0.0, 5.0, 5.0), mask=np.ones((4, 4), bool)
        )
        draw_masks(image, [det])
        assert not image.any()


def test_class_label_fallback():
    """Unknown class ids get a generic label."""
    assert class_label(0, ("bolt",)) == "bolt"
    assert class_label(3, ("bolt",)) == "class 3"
