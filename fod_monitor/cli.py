from __future__ import annotations

import argparse

from fod_monitor.pipeline.types import TaskKind


def _route(value: str) -> tuple[int, int | None]:
    """Parse ``DEST=SRC`` (``SRC`` may be ``none``)."""
    dest, sep, source = value.partition("=")
    if not sep:
        raise argparse.ArgumentTypeError(f"expected DEST=SRC, got {value!r}")
    try:
        dest_id = int(dest)
        source_id = None if source.strip().lower() in ("", "none") else int(source)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected integers in {value!r}") from exc
    return dest_id, source_id


def parse_args(argv: list | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Foreign object detection over multiple cameras",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  fod-monitor --config fod.yaml
  fod-monitor --model models/yolov8n.onnx --route 0=0 --route 1=2
  fod-monitor --list-sources
  fod-monitor --config fod.yaml --no-display --max-iterations 500 --profile
""",
    )

    parser.add_argument("--config", type=str, default=None, help="YAML configuration file")
    parser.add_argument("--model", type=str, default=None)
    parser.add_argument(
        "--task", type=str, choices=[task.value for task in TaskKind], default=None
    )
    parser.add_argument("--conf", type=float, default=None)
    parser.add_argument("--iou", type=float, default=None)
    parser.add_argument("--kconf", type=float, default=None)
    parser.add_argument("--batch", type=int, default=None)
    parser.add_argument("--batch-min", type=int, default=None)
    parser.add_argument("--batch-max", type=int, default=None)
    parser.add_argument("--device-id", type=int, default=None)
    parser.add_argument("--cpu", action="store_true", help="Disable CUDA and TensorRT")
    parser.add_argument("--trt", action="store_true", help="Use TensorRT")
    parser.add_argument("--fp16", action="store_true", help="TensorRT FP16 mode")
    parser.add_argument("--no-annotate", action="store_true", help="Emit raw frames")
    parser.add_argument(
        "--profile", action="store_true", help="Log per-stage timings every iteration"
    )
    parser.add_argument(
        "--route",
        type=_route,
        action="append",
        default=[],
        metavar="DEST=SRC",
        help="Map a destination to a camera id; repeatable",
    )
    parser.add_argument(
        "--list-sources", action="store_true", help="Print available cameras and exit"
    )
    parser.add_argument("--no-display", action="store_true")
    parser.add_argument("--max-iterations", type=int, default=None)
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    )
    parser.add_argument("--log-dir", type=str, default="logs")
    parser.add_argument("--json-logs", action="store_true", help="Also write JSONL logs")

    return parser.parse_args(argv)


def config_overrides(args: argparse.Namespace) -> dict:
    """Translate parsed flags into ``merge_overrides`` keyword arguments."""
    overrides = {
        "model": args.model,
        "task": args.task,
        "conf": args.conf,
        "iou": args.iou,
        "kconf": args.kconf,
        "batch": args.batch,
        "batch_min": args.batch_min,
        "batch_max": args.batch_max,
        "device_id": args.device_id,
    }
    if args.cpu:
        overrides.update(cuda=False, trt=False)
    if args.trt:
        overrides["trt"] = True
    if args.fp16:
        overrides["fp16"] = True
    if args.no_annotate:
        overrides["annotate"] = False
    if args.profile:
        overrides["profile"] = True
    return overrides
