"""
History Manager - bounded linear undo/redo over the tracked partition.

The manager subscribes to a ProjectStore and keeps two stacks of
TrackedState snapshots (settings, asset library, timeline):
- Every store notification whose tracked partition differs from the last
  recorded value pushes that previous value onto ``past`` and clears
  ``future``
- Selection, playhead, play flag and zoom are not part of a snapshot, so
  changes to them never create history entries
- A store batch arrives as a single notification and becomes one step

``past`` is bounded (oldest entries are evicted); ``future`` is emptied by
any new recorded change.
"""

from __future__ import annotations

import logging
from collections import deque

from models.project_models import HistoryStatus, ProjectDocument, TrackedState
from operators.project_store import BatchInProgressError, ProjectStore

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50


def _same_partition(document: ProjectDocument, tracked: TrackedState) -> bool:
    return (
        document.project_settings == tracked.project_settings
        and document.asset_library == tracked.asset_library
        and document.timeline == tracked.timeline
    )


class HistoryManager:
    """Undo/redo for one store. Call ``close()`` to detach it."""

    def __init__(self, store: ProjectStore, limit: int = DEFAULT_HISTORY_LIMIT):
        if limit < 1:
            raise ValueError(f"History limit must be positive, got {limit}")
        self._store = store
        self._limit = limit
        self._past: deque[TrackedState] = deque(maxlen=limit)
        self._future: list[TrackedState] = []
        self._current = store.tracked_state()
        self._paused = False
        self._applying = False
        self._unsubscribe = store.subscribe(self._on_change)

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def can_undo(self) -> bool:
        return len(self._past) > 0

    @property
    def can_redo(self) -> bool:
        return len(self._future) > 0

    @property
    def history_size(self) -> int:
        return len(self._past)

    @property
    def future_size(self) -> int:
        return len(self._future)

    @property
    def paused(self) -> bool:
        return self._paused

    def status(self) -> HistoryStatus:
        return HistoryStatus(
            can_undo=self.can_undo,
            can_redo=self.can_redo,
            history_size=self.history_size,
            future_size=self.future_size,
        )

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def _on_change(self, state: ProjectDocument, previous: ProjectDocument) -> None:
        if _same_partition(state, self._current):
            return
        tracked = state.tracked()
        if self._applying or self._paused:
            self._current = tracked
            return
        self._past.append(self._current)
        self._future.clear()
        self._current = tracked
        logger.debug(f"Recorded history step ({len(self._past)}/{self._limit})")

    def pause(self) -> None:
        """Stop recording. The recorded current value keeps following the store."""
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    # -------------------------------------------------------------------------
    # Undo / redo
    # -------------------------------------------------------------------------

    def _apply(self, target: TrackedState) -> None:
        self._applying = True
        try:
            self._store.replace_tracked_state(target)
        finally:
            self._applying = False
        self._current = target

    def _check_not_in_batch(self, action: str) -> None:
        if self._store.in_batch:
            raise BatchInProgressError(f"Cannot {action} while a batch is open")

    def undo(self) -> bool:
        """Step back once. Returns False when there is nothing to undo."""
        self._check_not_in_batch("undo")
        if not self._past:
            return False
        target = self._past.pop()
        self._future.append(self._current)
        self._apply(target)
        logger.debug(f"Undo ({len(self._past)} left)")
        return True

    def redo(self) -> bool:
        """Step forward once. Returns False when there is nothing to redo."""
        self._check_not_in_batch("redo")
        if not self._future:
            return False
        target = self._future.pop()
        self._past.append(self._current)
        self._apply(target)
        logger.debug(f"Redo ({len(self._future)} left)")
        return True

    def clear(self) -> None:
        """Forget all history without touching the document."""
        self._past.clear()
        self._future.clear()
        self._current = self._store.tracked_state()

    def close(self) -> None:
        self._unsubscribe()
