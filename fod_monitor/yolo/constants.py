"""Drawing constants shared by the annotator."""

from __future__ import annotations


_PALETTE_HEX = (
    "FF3838", "FF9D97", "FF701F", "FFB21D", "CFD231", "48F90A", "92CC17",
    "3DDB86", "1A9334", "00D4BB", "2C99A8", "00C2FF", "344593", "6473FF",
    "0018EC", "8438FF", "520085", "CB38FF", "FF95C8", "FF37C7",
)


def _hex_to_bgr(value: str) -> tuple[int, int, int]:
    r, g, b = (int(value[i : i + 2], 16) for i in (0, 2, 4))
    return (b, g, r)


COLORS: tuple[tuple[int, int, int], ...] = tuple(_hex_to_bgr(h) for h in _PALETTE_HEX)

# COCO keypoint pairs, only meaningful for 17-keypoint models.
SKELETON: tuple[tuple[int, int], ...] = (
    (0, 1),
    (0, 2),
    (1, 3),
    (2, 4),
    (5, 6),
    (5, 11),
    (6, 12),
    (11, 12),
    (5, 7),
    (6, 8),
    (7, 9),
    (8, 10),
    (11, 13),
    (12, 14),
    (13, 15),
    (14, 16),
)

PAD_VALUE = 114
MASK_ALPHA = 0.4
