"""Batch assembly from the frames acquired in one iteration."""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from fod_monitor.pipeline.types import Batch


if TYPE_CHECKING:
    from collections.abc import Mapping

    from fod_monitor.pipeline.types import Frame


class BatchAssembler:
    """Package ready frames into a batch of at most ``batch_max`` frames.

    Fewer than ``batch_min`` frames never block: the batch simply shrinks.
    When more than ``batch_max`` frames are ready, the sources left out are
    remembered and go first in the next iteration, so no source starves.
    """

    def __init__(self, batch_min: int = 1, batch_max: int = 3) -> None:
        if batch_min < 1 or batch_max < batch_min:
            raise ValueError(f"Invalid batch bounds [{batch_min}, {batch_max}]")
        self.batch_min = batch_min
        self.batch_max = batch_max
        self._deferred: set[int] = set()

    @property
    def deferred(self) -> frozenset[int]:
        return frozenset(self._deferred)

    def assemble(self, frames: Mapping[int, Frame]) -> Batch:
        ordered = sorted(
            frames.values(),
            key=lambda frame: (frame.source_id not in self._deferred, frame.source_id),
        )
        selected = ordered[: self.batch_max]
        left_out = tuple(frame.source_id for frame in ordered[self.batch_max :])

        # Deferred sources that were not polled this time are dropped.
        self._deferred = set(left_out)

        if left_out:
            logger.debug("Batch capped at {}, deferring sources {}", self.batch_max, left_out)
        if 0 < len(selected) < self.batch_min:
            logger.trace(
                "Only {} frame(s) ready (batch_min={}), running a smaller batch",
                len(selected),
                self.batch_min,
            )

        selected.sort(key=lambda frame: frame.source_id)
        return Batch(frames=tuple(selected), deferred=left_out)
