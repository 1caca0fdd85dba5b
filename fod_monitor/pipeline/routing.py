"""Destination to camera-source routing.

The pipeline never reads a mutable routing table. Commands from the shell are
queued on a :class:`RoutingController`, and the orchestrator swaps in a new
immutable :class:`RoutingTable` snapshot at each iteration boundary.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from loguru import logger

from fod_monitor.errors import RoutingError


if TYPE_CHECKING:
    from collections.abc import Mapping


@dataclass(frozen=True)
class RoutingTable:
    """Versioned, immutable mapping of destination id to optional source id."""

    num_destinations: int
    mapping: tuple[int | None, ...] = ()
    version: int = 0

    @classmethod
    def create(
        cls,
        num_destinations: int,
        initial: Mapping[int, int | None] | None = None,
    ) -> RoutingTable:
        mapping: list[int | None] = [None] * num_destinations
        for dest, source in (initial or {}).items():
            _check(num_destinations, dest, source)
            mapping[dest] = source
        return cls(num_destinations=num_destinations, mapping=tuple(mapping))

    def source_for(self, destination_id: int) -> int | None:
        return self.mapping[destination_id]

    def sources(self) -> frozenset[int]:
        """Distinct source ids referenced by at least one destination."""
        return frozenset(source for source in self.mapping if source is not None)

    def destinations_for(self, source_id: int) -> tuple[int, ...]:
        return tuple(dest for dest, source in enumerate(self.mapping) if source == source_id)

    def with_update(self, destination_id: int, source_id: int | None) -> RoutingTable:
        _check(self.num_destinations, destination_id, source_id)
        mapping = list(self.mapping)
        mapping[destination_id] = source_id
        return RoutingTable(
            num_destinations=self.num_destinations,
            mapping=tuple(mapping),
            version=self.version + 1,
        )

    def items(self) -> list[tuple[int, int | None]]:
        return list(enumerate(self.mapping))


def _check(num_destinations: int, destination_id: int, source_id: int | None) -> None:
    if not isinstance(destination_id, int) or not 0 <= destination_id < num_destinations:
        raise RoutingError(
            f"Unknown destination {destination_id!r}, expected 0..{num_destinations - 1}"
        )
    if source_id is not None and (not isinstance(source_id, int) or source_id < 0):
        raise RoutingError(f"Invalid source id {source_id!r}")


@dataclass
class RoutingController:
    """Queue of routing commands applied between iterations."""

    table: RoutingTable
    _pending: list[tuple[int, int | None]] = field(default_factory=list, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def submit(self, destination_id: int, source_id: int | None) -> None:
        """Queue a routing change; raises RoutingError for invalid commands."""
        _check(self.table.num_destinations, destination_id, source_id)
        with self._lock:
            self._pending.append((destination_id, source_id))
        logger.debug("Queued routing update: destination {} -> {}", destination_id, source_id)

    @property
    def has_pending(self) -> bool:
        with self._lock:
            return bool(self._pending)

    def apply_pending(self) -> RoutingTable:
        """Apply every queued command in order and return the new snapshot."""
        with self._lock:
            pending, self._pending = self._pending, []
        if not pending:
            return self.table

        table = self.table
        for destination_id, source_id in pending:
            table = table.with_update(destination_id, source_id)
        self.table = table
        logger.info("Routing updated (v{}): {}", table.version, dict(table.items()))
        return table
