"""Plan/action mode flag shared between tool actions and the orchestrator."""

import threading


class ModeState:
    """Thread-safe plan-mode flag.

    Tool actions flip it while a turn runs; the orchestrator re-reads it
    between rounds and the queue snapshots it at enqueue time.
    """

    def __init__(self, plan_mode: bool = False):
        self._lock = threading.Lock()
        self._plan_mode = plan_mode

    @property
    def plan_mode(self) -> bool:
        with self._lock:
            return self._plan_mode

    def set_plan_mode(self, enabled: bool) -> bool:
        """Set the flag; returns True when it changed."""
        with self._lock:
            changed = self._plan_mode != enabled
            self._plan_mode = enabled
            return changed

    def toggle(self) -> bool:
        with self._lock:
            self._plan_mode = not self._plan_mode
            return self._plan_mode
