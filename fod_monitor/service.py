"""Command surface used by a display shell.

The shell never touches the pipeline directly: it issues commands on
:class:`FodMonitorService` and receives events through the configured sink.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from loguru import logger

from fod_monitor.capture.manager import CameraSourceManager
from fod_monitor.logging import attach_log_buffer, create_log_buffer
from fod_monitor.pipeline.orchestrator import PipelineOrchestrator


if TYPE_CHECKING:
    from fod_monitor.config import PipelineConfig
    from fod_monitor.pipeline.sinks import EventSink
    from fod_monitor.pipeline.types import SourcesEvent
    from fod_monitor.pipeline.workers import WorkerPool
    from fod_monitor.yolo.engine import InferenceEngine


class FodMonitorService:
    """Runs the pipeline on a background thread and accepts shell commands."""

    def __init__(
        self,
        config: PipelineConfig,
        engine: InferenceEngine,
        sink: EventSink,
        *,
        cameras: CameraSourceManager | None = None,
        pool: WorkerPool | None = None,
    ) -> None:
        self.config = config
        self.sink = sink
        self.cameras = cameras or CameraSourceManager.from_config(config)
        self.orchestrator = PipelineOrchestrator(
            config, engine, self.cameras, sink, pool=pool
        )
        self._pipeline_thread: threading.Thread | None = None
        self._poll_thread: threading.Thread | None = None
        self._poll_stop = threading.Event()
        self.iterations = 0

        self.log_buffer = create_log_buffer(max_lines=200)
        self._log_sink_id: int | None = attach_log_buffer(self.log_buffer, level="INFO")

    @property
    def is_running(self) -> bool:
        thread = self._pipeline_thread
        return thread is not None and thread.is_alive()

    def start_streaming(self, max_iterations: int | None = None) -> bool:
        """Start the inference loop; returns False if it is already running."""
        if self.is_running:
            logger.warning("Streaming already running")
            return False

        def _run() -> None:
            try:
                self.iterations = self.orchestrator.run(max_iterations=max_iterations)
            except Exception:
                logger.exception("Pipeline loop terminated unexpectedly")

        self._pipeline_thread = threading.Thread(
            target=_run, name="fod-pipeline", daemon=True
        )
        self._pipeline_thread.start()
        logger.success("Streaming started")
        return True

    def update_routing(self, destination_id: int, source_id: int | None) -> None:
        """Map a destination to a camera (or to nothing) from the next iteration on."""
        self.orchestrator.update_routing(destination_id, source_id)

    def poll_sources(self) -> SourcesEvent:
        """Enumerate openable cameras and emit them as a SourcesEvent."""
        return self.orchestrator.router.emit_sources(self.cameras.poll_sources())

    def start_source_polling(self, interval_s: float | None = None) -> None:
        """Poll available cameras now and then every ``interval_s`` seconds."""
        if self._poll_thread is not None and self._poll_thread.is_alive():
            return
        interval = self.config.poll_interval_s if interval_s is None else interval_s
        self._poll_stop.clear()

        def _poll_loop() -> None:
            while not self._poll_stop.is_set():
                try:
                    self.poll_sources()
                except Exception as exc:
                    logger.warning("Polling camera sources failed: {}", exc)
                if self._poll_stop.wait(interval):
                    break

        self._poll_thread = threading.Thread(
            target=_poll_loop, name="fod-source-poll", daemon=True
        )
        self._poll_thread.start()

    def recent_logs(self) -> list[str]:
        """Most recent log lines, oldest first, for display in a shell."""
        return list(self.log_buffer)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the loop finishes; returns True once it has."""
        thread = self._pipeline_thread
        if thread is not None:
            thread.join(timeout)
        return not self.is_running

    def stop(self, timeout: float = 5.0) -> None:
        """Stop polling and the loop; cameras are closed by the loop on exit."""
        self._poll_stop.set()
        self.orchestrator.stop()

        for thread in (self._poll_thread, self._pipeline_thread):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout)
                if thread.is_alive():
                    logger.warning("Thread {} did not stop within {:.1f}s", thread.name, timeout)

        if self._pipeline_thread is None:
            self.orchestrator.shutdown()
        logger.info("Service stopped")
        if self._log_sink_id is not None:
            logger.remove(self._log_sink_id)
            self._log_sink_id = None
