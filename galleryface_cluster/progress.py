"""
Progress reporting for pipeline runs.

:class:`ProgressReporter` holds the current :class:`ProgressState`
(fraction complete plus stage) and publishes every change to subscribed
observers.  The pipeline coordinator is the only writer; observers receive
immutable snapshots and never mutate the reporter.  Updates and
notifications are serialised by a lock so observers always see whole
states, delivered in the order they were written.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from loguru import logger


class Stage(Enum):
    """Stages of a run, in execution order."""
    SCANNING = "Scanning photos"
    EXTRACTING = "Extracting faces"
    CLUSTERING = "Clustering faces"
    SAVING = "Saving results"

    @property
    def label(self) -> str:
        return self.value


@dataclass(frozen=True)
class ProgressState:
    fraction_complete: float = 0.0
    stage: Optional[Stage] = None

    @property
    def stage_label(self) -> str:
        return self.stage.label if self.stage is not None else ""


Observer = Callable[[ProgressState], None]


class ProgressReporter:
    """Single-writer progress publisher.

    ``fraction_complete`` is clamped to ``[0, 1]`` and never decreases
    between two calls to :meth:`reset`.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._state = ProgressState()
        self._observers: List[Observer] = []

    @property
    def state(self) -> ProgressState:
        with self._lock:
            return self._state

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register ``observer`` and return a function that unsubscribes it."""
        with self._lock:
            self._observers.append(observer)

        def unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)
        return unsubscribe

    def reset(self, stage: Optional[Stage] = None) -> ProgressState:
        """Start a new run at fraction 0."""
        with self._lock:
            self._state = ProgressState(0.0, stage)
            self._publish()
            return self._state

    def update(self, fraction: Optional[float] = None, stage: Optional[Stage] = None) -> ProgressState:
        """Set the fraction and/or stage and notify observers."""
        with self._lock:
            current = self._state
            new_fraction = current.fraction_complete
            if fraction is not None:
                new_fraction = max(current.fraction_complete, min(1.0, max(0.0, float(fraction))))
            self._state = ProgressState(new_fraction, stage if stage is not None else current.stage)
            self._publish()
            return self._state

    def _publish(self) -> None:
        state = self._state
        for observer in list(self._observers):
            try:
                observer(state)
            except Exception:
                logger.exception("Progress observer failed")
