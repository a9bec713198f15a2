from __future__ import annotations

import logging
from collections.abc import Callable

from .clock import Clock
from .task_core import Cue, CueSink, play_cue

logger = logging.getLogger(__name__)

Bridge = Callable[[str, str | None], None]


class TaskShell:
    """Overlay state and host bridge around a single task attempt.

    Implements ``CompletionSink``. The host hears ``onTaskComplete`` at most
    once and ``onTaskClose`` at most once, whatever the caller does.
    """

    CONTINUE_DELAY_S = 2.0

    def __init__(
        self,
        *,
        clock: Clock,
        cues: CueSink | None = None,
        bridge: Bridge | None = None,
    ) -> None:
        self._clock = clock
        self._cues = cues
        self._bridge_fn = bridge
        self._is_open = True
        self._completed_task_id: str | None = None
        self._completed_at_s: float | None = None

    @property
    def is_open(self) -> bool:
        return self._is_open

    @property
    def completed_task_id(self) -> str | None:
        return self._completed_task_id

    def completion_visible(self) -> bool:
        return self._completed_task_id is not None

    def continue_visible(self) -> bool:
        if self._completed_at_s is None:
            return False
        return self._clock.now() - self._completed_at_s >= self.CONTINUE_DELAY_S

    def notify_task_complete(self, task_id: str) -> None:
        if self._completed_task_id is not None:
            return
        self._completed_task_id = str(task_id)
        self._completed_at_s = self._clock.now()
        play_cue(self._cues, Cue.SUCCESS)
        self._bridge("onTaskComplete", self._completed_task_id)

    def close(self) -> bool:
        """Close the overlay. Returns False if it was already closed."""

        if not self._is_open:
            return False
        self._is_open = False
        self._bridge("onTaskClose", None)
        return True

    def _bridge(self, method: str, data: str | None) -> None:
        logger.info("bridge: %s %s", method, data or "")
        if self._bridge_fn is None:
            return
        try:
            self._bridge_fn(method, data)
        except Exception:
            # Hosts without a bridge (plain desktop runs) must not break the task.
            logger.warning("bridge call %s failed", method, exc_info=True)
