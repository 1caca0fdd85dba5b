"""ONNX Runtime inference engine.

The engine is the single serialization point of the pipeline: one batched
forward pass at a time, executed on a dedicated thread so that a hung device
call can be abandoned after a timeout instead of stalling the loop forever.
"""

from __future__ import annotations

import ast
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import onnxruntime as ort
from loguru import logger

from fod_monitor.errors import InferenceError, InferenceTimeoutError, ModelLoadError
from fod_monitor.pipeline.types import FrameOutput, TaskKind
from fod_monitor.yolo.preprocess import infer_input_size


if TYPE_CHECKING:
    from fod_monitor.config import PipelineConfig


@dataclass(frozen=True)
class ModelInfo:
    """Resolved model properties used by the rest of the pipeline."""

    task: TaskKind
    input_name: str
    input_size: tuple[int, int]
    nc: int
    nk: int = 0
    nm: int = 0
    batch: int | None = None
    dynamic_size: bool = False
    dtype: str = "float32"
    names: tuple[str, ...] = ()
    providers: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_batch_dynamic(self) -> bool:
        return self.batch is None

    @property
    def numpy_dtype(self) -> type:
        return np.float16 if self.dtype == "float16" else np.float32


def build_providers(config: PipelineConfig, input_name: str | None = None) -> list:
    """Select execution providers: TensorRT, then CUDA, always CPU last."""
    providers: list = []
    if config.trt:
        trt_options: dict[str, Any] = {
            "device_id": config.device_id,
            "trt_fp16_enable": config.fp16,
            "trt_engine_cache_enable": True,
            "trt_engine_cache_path": "./trt_cache",
        }
        if input_name is not None and config.width and config.height:
            shape = f"3x{config.height}x{config.width}"
            trt_options.update(
                {
                    "trt_profile_min_shapes": f"{input_name}:{config.batch_min}x{shape}",
                    "trt_profile_opt_shapes": f"{input_name}:{config.batch}x{shape}",
                    "trt_profile_max_shapes": f"{input_name}:{config.batch_max}x{shape}",
                }
            )
        providers.append(("TensorrtExecutionProvider", trt_options))
    if config.cuda or config.trt:
        providers.append(
            (
                "CUDAExecutionProvider",
                {"device_id": config.device_id, "arena_extend_strategy": "kNextPowerOfTwo"},
            )
        )
    providers.append("CPUExecutionProvider")

    available = set(ort.get_available_providers())
    selected = [p for p in providers if (p[0] if isinstance(p, tuple) else p) in available]
    dropped = [p[0] for p in providers if isinstance(p, tuple) and p[0] not in available]
    if dropped:
        logger.warning("Execution providers not available, skipping: {}", dropped)
    return selected or ["CPUExecutionProvider"]


def _parse_names(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    try:
        parsed = ast.literal_eval(raw)
    except (ValueError, SyntaxError):
        logger.warning("Could not parse class names from model metadata")
        return ()
    if isinstance(parsed, dict):
        return tuple(str(parsed[key]) for key in sorted(parsed))
    if isinstance(parsed, (list, tuple)):
        return tuple(str(name) for name in parsed)
    return ()


def _parse_kpt_shape(raw: str | None) -> int | None:
    if not raw:
        return None
    try:
        parsed = ast.literal_eval(raw)
    except (ValueError, SyntaxError):
        return None
    if isinstance(parsed, (list, tuple)) and parsed:
        return int(parsed[0])
    return None


def resolve_model_info(session: Any, config: PipelineConfig) -> ModelInfo:
    """Resolve task, input size, batch and class/keypoint/mask counts."""
    model_input = session.get_inputs()[0]
    input_shape = list(model_input.shape)

    fallback = (config.height or 640, config.width or 640)
    input_size = infer_input_size(input_shape, fallback=fallback)
    dynamic_size = not (
        len(input_shape) >= 4
        and isinstance(input_shape[-2], int)
        and isinstance(input_shape[-1], int)
    )
    batch_dim = input_shape[0] if input_shape else None
    batch = batch_dim if isinstance(batch_dim, int) and batch_dim > 0 else None
    dtype = "float16" if "float16" in str(model_input.type) else "float32"

    try:
        metadata = dict(session.get_modelmeta().custom_metadata_map or {})
    except Exception:
        metadata = {}
    names = _parse_names(metadata.get("names"))

    task = config.task
    meta_task = metadata.get("task")
    if meta_task and meta_task != task.value:
        logger.warning(
            "Model metadata declares task '{}' but configuration requests '{}'",
            meta_task,
            task.value,
        )

    nc = len(names) or config.nc
    if not nc:
        raise ModelLoadError("Failed to get num_classes, make it explicit with `nc`")

    nk = nm = 0
    if task is TaskKind.POSE:
        nk = _parse_kpt_shape(metadata.get("kpt_shape")) or config.nk or 0
        if not nk:
            raise ModelLoadError("Failed to get num_keypoints, make it explicit with `nk`")
    elif task is TaskKind.SEGMENT:
        outputs = session.get_outputs()
        proto_shape = list(outputs[1].shape) if len(outputs) > 1 else []
        if len(proto_shape) == 4 and isinstance(proto_shape[1], int):
            nm = proto_shape[1]
        else:
            nm = config.nm or 0
        if not nm:
            raise ModelLoadError("Failed to get num_masks, make it explicit with `nm`")

    if not names and config.class_names:
        names = tuple(config.class_names)

    return ModelInfo(
        task=task,
        input_name=model_input.name,
        input_size=input_size,
        nc=int(nc),
        nk=int(nk),
        nm=int(nm),
        batch=batch,
        dynamic_size=dynamic_size,
        dtype=dtype,
        names=names,
        providers=tuple(session.get_providers()),
    )


class InferenceEngine:
    """Runs one batched forward pass per iteration on an ONNX Runtime session."""

    def __init__(
        self,
        session: Any,
        info: ModelInfo,
        *,
        timeout_s: float = 2.0,
    ) -> None:
        self.session = session
        self.info = info
        self.timeout_s = timeout_s
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="onnx-run")
        self._inflight: Future | None = None

    @classmethod
    def load(cls, config: PipelineConfig) -> InferenceEngine:
        """Load the ONNX model; raises ModelLoadError when that is impossible."""
        logger.info("Loading model: {}", config.model)
        input_name = None
        if config.trt:
            # TensorRT batch profiles are keyed by the input name.
            try:
                probe = ort.InferenceSession(config.model, providers=["CPUExecutionProvider"])
            except Exception as exc:
                raise ModelLoadError(f"Failed to load model {config.model}: {exc}") from exc
            input_name = probe.get_inputs()[0].name
            del probe

        providers = build_providers(config, input_name=input_name)
        try:
            session = ort.InferenceSession(config.model, providers=providers)
        except Exception as exc:
            raise ModelLoadError(f"Failed to load model {config.model}: {exc}") from exc

        try:
            info = resolve_model_info(session, config)
        except ModelLoadError:
            raise
        except Exception as exc:
            raise ModelLoadError(f"Could not inspect model {config.model}: {exc}") from exc
        engine = cls(session, info, timeout_s=config.inference_timeout_ms / 1000.0)
        logger.success("Model loaded using: {}", info.providers[0] if info.providers else "?")
        engine.log_summary(config)

        if config.warmup_runs > 0:
            try:
                engine.warmup(config.warmup_runs, batch=min(config.batch, info.batch or config.batch))
            except InferenceError as exc:
                engine.close()
                raise ModelLoadError(f"Warmup inference failed: {exc}") from exc
        return engine

    @property
    def input_size(self) -> tuple[int, int]:
        return self.info.input_size

    def log_summary(self, config: PipelineConfig) -> None:
        info = self.info
        logger.info(
            "Task: {} | EP: {}{} | Dtype: {}",
            info.task.value,
            ", ".join(info.providers),
            "" if info.providers[:1] == ("CPUExecutionProvider",) else " (may fall back to CPU)",
            info.dtype,
        )
        logger.info(
            "Batch: {} ({}) | Height: {} ({}) | Width: {} ({})",
            info.batch or config.batch,
            "Dynamic" if info.is_batch_dynamic else "Const",
            info.input_size[0],
            "Dynamic" if info.dynamic_size else "Const",
            info.input_size[1],
            "Dynamic" if info.dynamic_size else "Const",
        )
        logger.info(
            "nc: {} nk: {} nm: {} | conf: {} kconf: {} iou: {}",
            info.nc,
            info.nk,
            info.nm,
            config.conf,
            config.kconf,
            config.iou,
        )

    def warmup(self, runs: int = 1, batch: int = 1) -> None:
        height, width = self.info.input_size
        dummy = np.zeros((max(1, batch), 3, height, width), dtype=np.float32)
        for _ in range(runs):
            self.run(dummy)
        logger.debug("Warmup complete ({} run(s))", runs)

    def run(self, batch_tensor: np.ndarray) -> list[FrameOutput]:
        """Execute exactly one forward pass and split outputs per input."""
        if self._inflight is not None and not self._inflight.done():
            raise InferenceError("Previous inference call is still running")

        count = int(batch_tensor.shape[0])
        if count == 0:
            raise InferenceError("Empty batch")

        tensor = batch_tensor.astype(self.info.numpy_dtype, copy=False)
        static_batch = self.info.batch
        if static_batch is not None:
            if count > static_batch:
                raise InferenceError(
                    f"Batch of {count} exceeds the model's static batch size {static_batch}"
                )
            if count < static_batch:
                padding = np.zeros((static_batch - count, *tensor.shape[1:]), dtype=tensor.dtype)
                tensor = np.concatenate([tensor, padding], axis=0)

        start = time.perf_counter()
        self._inflight = self._executor.submit(
            self.session.run, None, {self.info.input_name: tensor}
        )
        try:
            outputs = self._inflight.result(timeout=self.timeout_s)
        except FutureTimeoutError as exc:
            raise InferenceTimeoutError(
                f"Inference did not finish within {self.timeout_s * 1000:.0f} ms"
            ) from exc
        except Exception as exc:
            raise InferenceError(f"Inference failed: {exc}") from exc
        logger.trace("Forward pass took {:.1f} ms", (time.perf_counter() - start) * 1000)

        return self._split(outputs, count)

    def _split(self, outputs: list, count: int) -> list[FrameOutput]:
        if not outputs:
            raise InferenceError("Model returned no outputs")
        preds = np.asarray(outputs[0], dtype=np.float32)
        if preds.ndim != 3 or preds.shape[0] < count:
            raise InferenceError(f"Unexpected prediction shape {preds.shape}")

        protos = None
        if self.info.task is TaskKind.SEGMENT:
            if len(outputs) < 2:
                raise InferenceError("Segmentation model returned no mask prototypes")
            protos = np.asarray(outputs[1], dtype=np.float32)
            if protos.ndim != 4 or protos.shape[0] < count:
                raise InferenceError(f"Unexpected prototype shape {protos.shape}")

        return [
            FrameOutput(pred=preds[i], proto=None if protos is None else protos[i])
            for i in range(count)
        ]

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
