"""Bounded fan-out/fan-in over a shared thread pool."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import psutil
from loguru import logger


if TYPE_CHECKING:
    from collections.abc import Callable, Iterable


T = TypeVar("T")


@dataclass(frozen=True)
class WorkResult(Generic[T]):
    """Value or error of one work item."""

    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def default_worker_count() -> int:
    return psutil.cpu_count(logical=True) or 1


class WorkerPool:
    """Thread pool whose ``map`` joins all items and keeps input order.

    A failure in one item is captured in its :class:`WorkResult` and never
    affects the other items.
    """

    def __init__(self, max_workers: int | None = None, name: str = "fod-worker") -> None:
        self.max_workers = max_workers or default_worker_count()
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers,
            thread_name_prefix=name,
        )
        logger.debug("Worker pool started with {} threads", self.max_workers)

    def map(self, fn: Callable[..., T], *iterables: Iterable[Any]) -> list[WorkResult[T]]:
        items = list(zip(*iterables))
        if len(items) <= 1:
            return [_call(fn, args) for args in items]
        futures = [self._executor.submit(_call, fn, args) for args in items]
        return [future.result() for future in futures]

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True, cancel_futures=True)

    def __enter__(self) -> WorkerPool:
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown()


def _call(fn: Callable[..., T], args: tuple) -> WorkResult[T]:
    try:
        return WorkResult(value=fn(*args))
    except Exception as exc:
        return WorkResult(error=exc)
