from __future__ import annotations

import platform
import time

import cv2
import onnxruntime as ort
import psutil
from loguru import logger

from fod_monitor.capture.manager import CameraSourceManager
from fod_monitor.cli import config_overrides, parse_args
from fod_monitor.config import load_config, merge_overrides
from fod_monitor.errors import ConfigError, ModelLoadError, RoutingError
from fod_monitor.logging import configure_logging
from fod_monitor.pipeline.sinks import OpenCVWindowSink, QueueSink
from fod_monitor.service import FodMonitorService
from fod_monitor.yolo.engine import InferenceEngine


def _log_environment() -> None:
    logger.info("Platform: {} {}", platform.system(), platform.release())
    logger.info("Python: {}", platform.python_version())
    logger.info("OpenCV: {}", cv2.__version__)
    logger.info("ONNX Runtime: {} ({})", ort.__version__, ", ".join(ort.get_available_providers()))
    logger.info(
        "CPU cores: {} physical, {} logical",
        psutil.cpu_count(logical=False),
        psutil.cpu_count(),
    )


def run_monitor(argv: list[str] | None = None) -> int:
    """Entry point for the FOD monitor."""
    args = parse_args(argv)
    configure_logging(args.log_level, args.log_dir, json_logs=args.json_logs)

    logger.info("=" * 60)
    logger.info("FOD Monitor: multi-camera foreign object detection")
    logger.info("=" * 60)
    _log_environment()

    try:
        config = load_config(args.config)
        overrides = config_overrides(args)
        if args.route:
            routing = dict(config.routing)
            routing.update(dict(args.route))
            overrides["routing"] = routing
        config = merge_overrides(config, **overrides)
    except ConfigError as exc:
        logger.error("Invalid configuration: {}", exc)
        return 1

    if args.list_sources:
        cameras = CameraSourceManager.from_config(config)
        available = cameras.poll_sources()
        logger.info("Available cameras: {}", available or "none")
        return 0

    try:
        engine = InferenceEngine.load(config)
    except ModelLoadError as exc:
        logger.error("Failed to load model: {}", exc)
        return 1

    window_sink = None if args.no_display else OpenCVWindowSink(config.destinations)
    sink = window_sink or QueueSink(config.num_destinations)
    try:
        service = FodMonitorService(config, engine, sink)
    except RoutingError as exc:
        logger.error("Invalid routing: {}", exc)
        engine.close()
        sink.close()
        return 1

    logger.info("-" * 60)
    snapshot = service.orchestrator.snapshot
    for destination_id, name in enumerate(config.destinations):
        source_id = snapshot.source_for(destination_id)
        logger.info(
            "Destination {} ({}): camera {}",
            destination_id,
            name,
            "none" if source_id is None else source_id,
        )

    start_time = time.perf_counter()
    try:
        service.start_source_polling()
        service.start_streaming(max_iterations=args.max_iterations)
        while service.is_running:
            if window_sink is not None:
                if not window_sink.pump():
                    break
            else:
                service.wait(timeout=0.5)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        service.stop()
        engine.close()
        sink.close()

        metrics = service.orchestrator.metrics()
        elapsed = time.perf_counter() - start_time
        logger.info("=" * 60)
        logger.info("Session Summary")
        logger.info("Duration: {:.1f}s", elapsed)
        logger.info("Iterations: {}", metrics.iterations)
        logger.info("Frames processed: {}", metrics.frames)
        logger.info(
            "Avg throughput: {:.1f} FPS",
            metrics.frames / elapsed if elapsed > 0 else 0.0,
        )
        logger.info("Avg inference: {:.1f}ms", metrics.inference_ms)
        if isinstance(sink, QueueSink) and sink.dropped:
            logger.info("Events dropped by slow consumers: {}", sink.dropped)
        logger.success("Cleanup complete. Goodbye!")

    return 0


def main() -> None:
    raise SystemExit(run_monitor())


if __name__ == "__main__":
    main()
