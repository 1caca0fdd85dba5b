"""The per-iteration inference loop.

One iteration walks ``IDLE -> ACQUIRING -> ASSEMBLING -> PREPROCESSING ->
INFERRING -> POSTPROCESSING -> ANNOTATING -> ROUTING -> IDLE``. Routing
updates and camera open/close only happen on the way out of ``IDLE``, so every
stage of an iteration sees the same routing snapshot.
"""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING, Any

from loguru import logger

from fod_monitor.errors import CameraError, InferenceError
from fod_monitor.pipeline.batching import BatchAssembler
from fod_monitor.pipeline.metrics.performance import PerformanceTracker
from fod_monitor.pipeline.router import OutputRouter
from fod_monitor.pipeline.routing import RoutingController, RoutingTable
from fod_monitor.pipeline.types import (
    FrameResult,
    IterationReport,
    PipelineState,
    ReadStatus,
    StageTimings,
)
from fod_monitor.pipeline.workers import WorkerPool
from fod_monitor.yolo.draw import Annotator
from fod_monitor.yolo.postprocess import DecodeSettings, Decoder
from fod_monitor.yolo.preprocess import Preprocessor, stack_batch


if TYPE_CHECKING:
    from fod_monitor.capture.manager import CameraSourceManager
    from fod_monitor.config import PipelineConfig
    from fod_monitor.pipeline.sinks import EventSink
    from fod_monitor.pipeline.types import Frame, PipelineMetrics
    from fod_monitor.yolo.engine import InferenceEngine


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


class PipelineOrchestrator:
    """Drives acquisition, batching, inference and routing until stopped."""

    def __init__(
        self,
        config: PipelineConfig,
        engine: InferenceEngine,
        cameras: CameraSourceManager,
        sink: EventSink,
        *,
        pool: WorkerPool | None = None,
    ) -> None:
        self.config = config
        self.engine = engine
        self.cameras = cameras
        self.sink = sink

        self._owns_pool = pool is None
        self.pool = pool or WorkerPool(config.workers)

        info = engine.info
        batch_max = config.batch_max
        if info.batch is not None and info.batch < batch_max:
            logger.warning(
                "Model has a static batch size of {}, capping batch_max {} to it",
                info.batch,
                batch_max,
            )
            batch_max = info.batch
        self.assembler = BatchAssembler(min(config.batch_min, batch_max), batch_max)
        self.preprocessor = Preprocessor(engine.input_size)
        self.decoder = Decoder(
            DecodeSettings(
                task=info.task,
                nc=info.nc,
                nk=info.nk,
                nm=info.nm,
                conf=config.conf,
                iou=config.iou,
                kconf=config.kconf,
            )
        )
        self.annotator = Annotator(info.names or config.class_names, enabled=config.annotate)
        self.router = OutputRouter(
            sink,
            encoding=config.encoding,
            jpeg_quality=config.jpeg_quality,
            pool=self.pool,
        )
        self.tracker = PerformanceTracker()

        self.routing = RoutingController(
            RoutingTable.create(config.num_destinations, config.routing)
        )
        self.snapshot = self.routing.table
        self.state = PipelineState.IDLE

        self._synced_version: int | None = None
        self._stop = threading.Event()
        self._read_timeout_s = config.read_timeout_ms / 1000.0

    def update_routing(self, destination_id: int, source_id: int | None) -> None:
        """Queue a routing change, applied at the next iteration boundary."""
        self.routing.submit(destination_id, source_id)

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def metrics(self) -> PipelineMetrics:
        return self.tracker.get_metrics()

    def run(self, max_iterations: int | None = None) -> int:
        """Loop until stopped; returns the number of completed iterations."""
        iterations = 0
        last_log_time = time.perf_counter()
        logger.info("Pipeline started")
        try:
            while not self._stop.is_set():
                if max_iterations is not None and iterations >= max_iterations:
                    break
                start = time.perf_counter()
                report = self.run_iteration()
                iterations += 1

                if report.batch_size == 0:
                    # Nothing to process: do not spin on errored or unmapped sources.
                    self._stop.wait(max(0.0, self._read_timeout_s - (time.perf_counter() - start)))

                now = time.perf_counter()
                if not self.config.profile and now - last_log_time >= self.config.log_interval_s:
                    self._log_summary()
                    last_log_time = now
        finally:
            self.shutdown()
        logger.info("Pipeline stopped after {} iteration(s)", iterations)
        return iterations

    def run_iteration(self) -> IterationReport:
        """Run exactly one iteration and return what it emitted."""
        timings = StageTimings()
        iteration_start = time.perf_counter()

        self.state = PipelineState.ACQUIRING
        start = time.perf_counter()
        snapshot = self._begin_iteration()
        reads = self.cameras.read_many(snapshot.sources(), self._read_timeout_s)
        frames: dict[int, Frame] = {}
        source_errors: dict[int, CameraError] = {}
        for source_id, result in reads.items():
            if result.status is ReadStatus.READY and result.frame is not None:
                frames[source_id] = result.frame
            elif result.status is ReadStatus.ERROR:
                source_errors[source_id] = CameraError(source_id, result.reason)
        timings.acquire_ms = _elapsed_ms(start)

        self.state = PipelineState.ASSEMBLING
        start = time.perf_counter()
        batch = self.assembler.assemble(frames)
        timings.assemble_ms = _elapsed_ms(start)

        self.state = PipelineState.PREPROCESSING
        start = time.perf_counter()
        prepared = []
        for frame, item in zip(
            batch.frames, self.pool.map(self.preprocessor, batch.frames), strict=True
        ):
            if item.ok:
                prepared.append(item.value)
            else:
                logger.warning(
                    "Preprocessing frame {} of camera {} failed: {}",
                    frame.sequence,
                    frame.source_id,
                    item.error,
                )
        timings.preprocess_ms = _elapsed_ms(start)

        self.state = PipelineState.INFERRING
        start = time.perf_counter()
        outputs: list[Any] = []
        batch_error: str | None = None
        failed: set[int] = set()
        if prepared:
            try:
                outputs = self.engine.run(stack_batch(prepared))
                if len(outputs) != len(prepared):
                    raise InferenceError(
                        f"Expected {len(prepared)} outputs, got {len(outputs)}"
                    )
            except InferenceError as exc:
                batch_error = f"Error: Inference failed. {exc}"
                failed = {item.frame.source_id for item in prepared}
                logger.error("Inference failed for cameras {}: {}", sorted(failed), exc)
                prepared = []
        timings.inference_ms = _elapsed_ms(start)

        self.state = PipelineState.POSTPROCESSING
        start = time.perf_counter()
        decoded = self.pool.map(
            self.decoder.decode, outputs, [item.transform for item in prepared]
        )
        detections = []
        for item, result in zip(prepared, decoded, strict=True):
            if result.ok:
                detections.append(result.value)
            else:
                logger.warning(
                    "Postprocessing frame {} of camera {} failed: {}",
                    item.frame.sequence,
                    item.frame.source_id,
                    result.error,
                )
                detections.append(())
        timings.postprocess_ms = _elapsed_ms(start)

        self.state = PipelineState.ANNOTATING
        start = time.perf_counter()
        processed = [item.frame for item in prepared]
        annotated = self.pool.map(self.annotator.annotate, processed, detections)
        results: dict[int, FrameResult] = {}
        for frame, dets, item in zip(processed, detections, annotated, strict=True):
            if item.ok:
                image = item.value
            else:
                logger.warning(
                    "Annotating frame {} of camera {} failed: {}",
                    frame.sequence,
                    frame.source_id,
                    item.error,
                )
                image = frame.image
            results[frame.source_id] = FrameResult(frame=frame, detections=dets, image=image)
        timings.annotate_ms = _elapsed_ms(start)

        self.state = PipelineState.ROUTING
        start = time.perf_counter()
        events = self.router.route(snapshot, results, source_errors, batch_error, failed)
        timings.route_ms = _elapsed_ms(start)

        self.state = PipelineState.IDLE
        timings.total_ms = _elapsed_ms(iteration_start)
        self.tracker.add_iteration(timings, len(results))
        if self.config.profile:
            self._log_profile(snapshot.version, len(batch), timings)

        return IterationReport(
            routing_version=snapshot.version,
            batch_size=len(batch),
            events=events,
            timings=timings,
            batch_error=batch_error,
            deferred=batch.deferred,
        )

    def shutdown(self) -> None:
        """Close cameras and the worker pool."""
        self.state = PipelineState.IDLE
        self.cameras.close_all()
        if self._owns_pool:
            self.pool.shutdown()

    def _begin_iteration(self) -> RoutingTable:
        snapshot = self.routing.apply_pending()
        if snapshot.version != self._synced_version:
            self.cameras.sync(snapshot.sources())
            self._synced_version = snapshot.version
        self.snapshot = snapshot
        return snapshot

    def _log_profile(self, version: int, batch_size: int, timings: StageTimings) -> None:
        logger.info(
            "Routing v{} | Batch {} | {} | Total: {:.1f}ms",
            version,
            batch_size,
            " | ".join(f"{stage}: {ms:.1f}ms" for stage, ms in timings.as_dict().items()),
            timings.total_ms,
        )

    def _log_summary(self) -> None:
        metrics = self.tracker.get_metrics()
        logger.info(
            "Loop: {:.1f} it/s | Frames: {:.1f} FPS | Inference: {:.1f}ms | Budget: {:.0f}%",
            metrics.iteration_fps,
            metrics.frames_per_second,
            metrics.inference_ms,
            metrics.inference_budget_percent,
        )
        for source_id, health in sorted(self.cameras.health().items()):
            if health.reason:
                logger.info("Camera {}: {} ({})", source_id, health.status.value, health.reason)
