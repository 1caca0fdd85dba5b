"""Camera source management with concurrent, bounded-wait reads.

Every open source owns a reader thread that keeps grabbing frames and holds on
to the newest one. ``read`` only waits on that buffer, so a stalled camera can
never delay frames that other cameras have already delivered.
"""

from __future__ import annotations

import itertools
import threading
import time
from typing import TYPE_CHECKING, Protocol

from loguru import logger

from fod_monitor.capture.opencv import OpenCVCapture
from fod_monitor.pipeline.types import (
    Frame,
    ReadResult,
    ReadStatus,
    SourceHealth,
    SourceStatus,
)


if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    import numpy as np

    from fod_monitor.config import PipelineConfig


class CaptureProtocol(Protocol):
    """Protocol for capture backends."""

    def open(self) -> bool:
        """Open the capture backend."""
        ...

    def read(self) -> tuple[bool, np.ndarray | None]:
        """Read a frame from the backend."""
        ...

    def release(self) -> None:
        """Release backend resources."""
        ...

    def is_opened(self) -> bool:
        """Return True when the backend is open."""
        ...


class CameraSource:
    """A camera handle plus the reader thread that buffers its newest frame."""

    def __init__(
        self,
        source_id: int,
        capture_factory: Callable[[int], CaptureProtocol],
        next_sequence: Callable[[], int],
        *,
        max_read_failures: int = 5,
        reopen_interval_s: float = 2.0,
        retry_wait_s: float = 0.005,
    ) -> None:
        self.source_id = source_id
        self.status = SourceStatus.CLOSED
        self.reason = ""
        self.frames_read = 0
        self.consecutive_failures = 0

        self._capture_factory = capture_factory
        self._next_sequence = next_sequence
        self._max_read_failures = max_read_failures
        self._reopen_interval_s = reopen_interval_s
        self._retry_wait_s = retry_wait_s

        self._capture: CaptureProtocol | None = None
        self._latest: Frame | None = None
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def open(self) -> bool:
        """Open the capture handle and start the reader thread.

        The reader thread is started even when opening fails so the source is
        retried every ``reopen_interval_s``.
        """
        opened = self._try_open()
        if not opened:
            logger.error("Camera {} could not be opened", self.source_id)

        self._stop.clear()
        self._thread = threading.Thread(
            target=self._reader_loop,
            name=f"camera-{self.source_id}",
            daemon=True,
        )
        self._thread.start()
        return opened

    def read(self, timeout: float) -> ReadResult:
        """Return the newest undelivered frame, waiting at most ``timeout`` seconds."""
        deadline = time.monotonic() + max(0.0, timeout)
        with self._cond:
            while True:
                if self._latest is not None:
                    frame, self._latest = self._latest, None
                    return ReadResult(self.source_id, ReadStatus.READY, frame=frame)
                if self.status is SourceStatus.ERROR:
                    return ReadResult(self.source_id, ReadStatus.ERROR, reason=self.reason)
                if self.status is SourceStatus.CLOSED:
                    return ReadResult(
                        self.source_id,
                        ReadStatus.ERROR,
                        reason=f"Camera {self.source_id} is closed.",
                    )
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return ReadResult(self.source_id, ReadStatus.NOT_READY)
                self._cond.wait(remaining)

    def close(self, join_timeout: float = 1.0) -> None:
        """Stop the reader thread; the thread releases the capture on exit."""
        self._stop.set()
        with self._cond:
            self._cond.notify_all()
        thread = self._thread
        if thread is not None:
            thread.join(timeout=join_timeout)
            if thread.is_alive():
                logger.warning(
                    "Reader for camera {} did not stop within {:.1f}s",
                    self.source_id,
                    join_timeout,
                )
        else:
            self._release_capture()
        with self._cond:
            self.status = SourceStatus.CLOSED
            self._latest = None
            self._cond.notify_all()

    def health(self) -> SourceHealth:
        with self._cond:
            return SourceHealth(
                source_id=self.source_id,
                status=self.status,
                reason=self.reason,
                frames_read=self.frames_read,
                consecutive_failures=self.consecutive_failures,
            )

    def _try_open(self) -> bool:
        capture = self._capture_factory(self.source_id)
        try:
            opened = bool(capture.open())
        except Exception as exc:
            logger.warning("Opening camera {} raised: {}", self.source_id, exc)
            opened = False

        with self._cond:
            if opened:
                self._capture = capture
                self.status = SourceStatus.OPEN
                self.reason = ""
                self.consecutive_failures = 0
            else:
                self.status = SourceStatus.ERROR
                self.reason = f"Error: Camera {self.source_id} is invalid."
            self._cond.notify_all()

        if not opened:
            capture.release()
        return opened

    def _reader_loop(self) -> None:
        try:
            while not self._stop.is_set():
                if self._capture is None:
                    if self._stop.wait(self._reopen_interval_s):
                        break
                    if self._try_open():
                        logger.info("Camera {} reopened", self.source_id)
                    continue
                self._read_once()
        finally:
            self._release_capture()

    def _read_once(self) -> None:
        try:
            ok, image = self._capture.read()
        except Exception as exc:
            logger.warning("Camera {} read raised: {}", self.source_id, exc)
            ok, image = False, None

        if ok and image is not None and image.size > 0:
            frame = Frame(
                source_id=self.source_id,
                sequence=self._next_sequence(),
                timestamp=time.time(),
                image=image,
            )
            with self._cond:
                self._latest = frame
                self.frames_read += 1
                self.consecutive_failures = 0
                self._cond.notify_all()
            return

        failed = False
        with self._cond:
            self.consecutive_failures += 1
            if self.consecutive_failures >= self._max_read_failures:
                self.status = SourceStatus.ERROR
                self.reason = (
                    f"Error: Could not read frame from camera {self.source_id}. "
                    "Tip: Check camera connection."
                )
                self._cond.notify_all()
                failed = True

        if failed:
            logger.warning(
                "Camera {} failed {} consecutive reads, marking as errored",
                self.source_id,
                self.consecutive_failures,
            )
            self._release_capture()
        else:
            self._stop.wait(self._retry_wait_s)

    def _release_capture(self) -> None:
        capture, self._capture = self._capture, None
        if capture is not None:
            try:
                capture.release()
            except Exception as exc:
                logger.warning("Releasing camera {} raised: {}", self.source_id, exc)


class CameraSourceManager:
    """Open, read, and close camera sources by id."""

    def __init__(
        self,
        capture_factory: Callable[[int], CaptureProtocol] | None = None,
        *,
        max_read_failures: int = 5,
        reopen_interval_s: float = 2.0,
        probe_sources: int = 8,
    ) -> None:
        self._capture_factory = capture_factory or (lambda source_id: OpenCVCapture(source_id))
        self._max_read_failures = max_read_failures
        self._reopen_interval_s = reopen_interval_s
        self._probe_sources = probe_sources
        self._sources: dict[int, CameraSource] = {}
        self._lock = threading.Lock()
        self._sequence = itertools.count()
        self._sequence_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        capture_factory: Callable[[int], CaptureProtocol] | None = None,
    ) -> CameraSourceManager:
        """Build a manager whose OpenCV captures use the configured properties."""

        def _opencv_factory(source_id: int) -> CaptureProtocol:
            return OpenCVCapture(
                source_id,
                width=config.capture_width,
                height=config.capture_height,
                fps=config.capture_fps,
            )

        return cls(
            capture_factory or _opencv_factory,
            max_read_failures=config.max_read_failures,
            reopen_interval_s=config.reopen_interval_s,
            probe_sources=config.probe_sources,
        )

    @property
    def open_ids(self) -> list[int]:
        with self._lock:
            return sorted(self._sources)

    def open(self, source_id: int) -> bool:
        """Acquire a capture handle for ``source_id``."""
        with self._lock:
            existing = self._sources.get(source_id)
            if existing is not None:
                return existing.health().status is SourceStatus.OPEN
            source = CameraSource(
                source_id,
                self._capture_factory,
                self._next_sequence,
                max_read_failures=self._max_read_failures,
                reopen_interval_s=self._reopen_interval_s,
            )
            self._sources[source_id] = source
        return source.open()

    def read(self, source_id: int, timeout: float = 0.05) -> ReadResult:
        """Return the most recent frame of one source within ``timeout`` seconds."""
        with self._lock:
            source = self._sources.get(source_id)
        if source is None:
            return ReadResult(
                source_id,
                ReadStatus.ERROR,
                reason=f"Error: Camera {source_id} does not exist.",
            )
        return source.read(timeout)

    def read_many(self, source_ids: Iterable[int], timeout: float) -> dict[int, ReadResult]:
        """Read several sources under one shared acquisition deadline."""
        deadline = time.monotonic() + max(0.0, timeout)
        results: dict[int, ReadResult] = {}
        for source_id in sorted(set(source_ids)):
            remaining = max(0.0, deadline - time.monotonic())
            results[source_id] = self.read(source_id, remaining)
        return results

    def close(self, source_id: int) -> None:
        """Release the handle of a source that is no longer referenced."""
        with self._lock:
            source = self._sources.pop(source_id, None)
        if source is not None:
            source.close()
            logger.info("Camera {} closed", source_id)

    def close_all(self) -> None:
        for source_id in self.open_ids:
            self.close(source_id)

    def sync(self, wanted: Iterable[int]) -> None:
        """Open newly referenced sources and close unreferenced ones."""
        wanted_ids = set(wanted)
        current = set(self.open_ids)
        for source_id in sorted(current - wanted_ids):
            self.close(source_id)
        for source_id in sorted(wanted_ids - current):
            self.open(source_id)

    def poll_sources(self) -> list[int]:
        """Enumerate camera ids that can currently be opened."""
        available: list[int] = []
        with self._lock:
            active = {
                source_id
                for source_id, source in self._sources.items()
                if source.health().status is SourceStatus.OPEN
            }
        for source_id in range(self._probe_sources):
            if source_id in active:
                available.append(source_id)
                continue
            capture = self._capture_factory(source_id)
            try:
                if capture.open():
                    available.append(source_id)
            except Exception as exc:
                logger.debug("Probing camera {} raised: {}", source_id, exc)
            finally:
                capture.release()
        logger.debug("Available cameras: {}", available)
        return available

    def health(self) -> dict[int, SourceHealth]:
        with self._lock:
            sources = list(self._sources.values())
        return {source.source_id: source.health() for source in sources}

    def _next_sequence(self) -> int:
        with self._sequence_lock:
            return next(self._sequence)
