from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

import structlog

from ..errors import ExecutorBusyError

logger = structlog.get_logger(__name__)


class AdmissionGate:
    """Bound the number of containers running at once.

    Callers wait up to `acquire_timeout` seconds for a slot and are turned
    away with `ExecutorBusyError` once the host is saturated.

    Example:
        ```python
        gate = AdmissionGate(max_concurrent=4, acquire_timeout=15)
        with gate.slot():
            ...
        ```
    """

    def __init__(self, *, max_concurrent: int, acquire_timeout: float) -> None:
        """Create a gate with a fixed number of slots.

        Example:
            ```python
            gate = AdmissionGate(max_concurrent=2, acquire_timeout=1)
            ```
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._capacity = max_concurrent
        self._acquire_timeout = acquire_timeout
        self._slots = threading.BoundedSemaphore(max_concurrent)
        self._lock = threading.Lock()
        self._in_use = 0

    @property
    def capacity(self) -> int:
        """Return the total number of slots.

        Example:
            ```python
            size = gate.capacity
            ```
        """
        return self._capacity

    @property
    def in_use(self) -> int:
        """Return how many slots are currently held.

        Example:
            ```python
            busy = gate.in_use
            ```
        """
        with self._lock:
            return self._in_use

    @contextmanager
    def slot(self) -> Iterator[None]:
        """Hold one slot for the duration of the block.

        Example:
            ```python
            with gate.slot():
                outcome = launch()
            ```
        """
        if not self._slots.acquire(timeout=self._acquire_timeout):
            logger.warning(
                "admission_rejected",
                capacity=self._capacity,
                acquire_timeout=self._acquire_timeout,
            )
            raise ExecutorBusyError(
                f"All {self._capacity} execution slots are busy; "
                f"gave up after {self._acquire_timeout:g}s"
            )
        with self._lock:
            self._in_use += 1
        try:
            yield
        finally:
            with self._lock:
                self._in_use -= 1
            self._slots.release()
