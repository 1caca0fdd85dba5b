"""Startup configuration for the FOD monitor.

The configuration is loaded once from a YAML file, optionally overridden from
the command line, validated, and then treated as immutable for the lifetime of
the process.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from fod_monitor.errors import ConfigError
from fod_monitor.pipeline.types import TaskKind


ENCODINGS = ("jpg", "png", "bmp", "webp")


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable per-process pipeline configuration."""

    model: str = "./models/yolov8n.onnx"
    task: TaskKind = TaskKind.DETECT
    nc: int | None = 5
    nk: int | None = None
    nm: int | None = None
    width: int | None = 512
    height: int | None = 512
    conf: float = 0.5
    iou: float = 0.5
    kconf: float = 0.5
    batch: int = 3
    batch_min: int = 1
    batch_max: int = 3
    trt: bool = False
    cuda: bool = True
    fp16: bool = False
    device_id: int = 0
    annotate: bool = True
    profile: bool = False
    destinations: tuple[str, ...] = ("top view", "side view", "rear view")
    routing: dict[int, int | None] = field(default_factory=dict)
    class_names: tuple[str, ...] = ()
    read_timeout_ms: float = 50.0
    inference_timeout_ms: float = 2000.0
    max_read_failures: int = 5
    reopen_interval_s: float = 2.0
    probe_sources: int = 8
    poll_interval_s: float = 30.0
    capture_width: int = 640
    capture_height: int = 480
    capture_fps: int = 30
    encoding: str = "jpg"
    jpeg_quality: int = 80
    workers: int | None = None
    warmup_runs: int = 1
    log_interval_s: float = 2.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineConfig:
        """Build a config from a plain mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning("Ignoring unknown configuration keys: {}", unknown)

        values = {key: value for key, value in data.items() if key in known}
        try:
            if "task" in values:
                values["task"] = TaskKind(str(values["task"]).lower())
            if "destinations" in values:
                values["destinations"] = tuple(str(d) for d in values["destinations"])
            if "class_names" in values:
                values["class_names"] = tuple(str(n) for n in values["class_names"])
            if "routing" in values:
                values["routing"] = _parse_routing(values["routing"] or {})
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid configuration value: {exc}") from exc

        config = cls(**values)
        config.validate()
        return config

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["task"] = self.task.value
        data["destinations"] = list(self.destinations)
        data["class_names"] = list(self.class_names)
        return data

    @property
    def num_destinations(self) -> int:
        return len(self.destinations)

    def validate(self) -> None:
        """Raise ConfigError if any field is out of range."""
        if not isinstance(self.task, TaskKind):
            raise ConfigError(f"Unknown task kind: {self.task!r}")
        for name in ("conf", "iou", "kconf"):
            value = getattr(self, name)
            if not 0.0 <= float(value) <= 1.0:
                raise ConfigError(f"{name} must be within [0, 1], got {value}")
        if not 1 <= self.batch_min <= self.batch <= self.batch_max:
            raise ConfigError(
                "Batch sizing must satisfy 1 <= batch_min <= batch <= batch_max, "
                f"got {self.batch_min}/{self.batch}/{self.batch_max}"
            )
        for name in ("width", "height", "nc", "nk", "nm"):
            value = getattr(self, name)
            if value is not None and int(value) <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")
        if not self.destinations:
            raise ConfigError("At least one destination is required")
        for dest, source in self.routing.items():
            if not 0 <= dest < self.num_destinations:
                raise ConfigError(f"Routing references unknown destination {dest}")
            if source is not None and (not isinstance(source, int) or source < 0):
                raise ConfigError(f"Routing maps destination {dest} to invalid camera {source!r}")
        if self.encoding not in ENCODINGS:
            raise ConfigError(
                f"encoding must be one of {', '.join(ENCODINGS)}, got {self.encoding!r}"
            )
        if not 0 <= self.jpeg_quality <= 100:
            raise ConfigError(f"jpeg_quality must be within [0, 100], got {self.jpeg_quality}")
        if self.read_timeout_ms < 0 or self.inference_timeout_ms <= 0:
            raise ConfigError("Timeouts must be positive")
        if self.max_read_failures < 1:
            raise ConfigError("max_read_failures must be at least 1")
        if self.workers is not None and self.workers < 1:
            raise ConfigError("workers must be at least 1")


def _parse_routing(raw: dict[Any, Any]) -> dict[int, int | None]:
    routing: dict[int, int | None] = {}
    for dest, source in raw.items():
        routing[int(dest)] = None if source is None else int(source)
    return routing


def load_config(path: str | Path | None = None) -> PipelineConfig:
    """Load the pipeline configuration from a YAML file.

    A missing path yields the defaults. Omitted keys take their documented
    defaults, unknown keys are logged and ignored.
    """
    if path is None:
        logger.info("No configuration file given, using defaults")
        return PipelineConfig()

    config_path = Path(path)
    if not config_path.is_file():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at the root of {config_path}")

    logger.info("Loaded configuration from {}", config_path)
    return PipelineConfig.from_dict(data)


def merge_overrides(config: PipelineConfig, **overrides: Any) -> PipelineConfig:
    """Return a validated copy of ``config`` with non-None overrides applied."""
    values = {key: value for key, value in overrides.items() if value is not None}
    if not values:
        return config
    if "task" in values and not isinstance(values["task"], TaskKind):
        try:
            values["task"] = TaskKind(str(values["task"]).lower())
        except ValueError as exc:
            raise ConfigError(f"Unknown task kind: {values['task']!r}") from exc
    try:
        merged = replace(config, **values)
    except TypeError as exc:
        raise ConfigError(str(exc)) from exc
    merged.validate()
    return merged
