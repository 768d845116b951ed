from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

from loguru import logger

WINDOW_SECONDS = 60.0


@dataclass
class _UserWindow:
    lock: threading.Lock = field(default_factory=threading.Lock)
    timestamps: deque[float] = field(default_factory=deque)
    last_activity: float = 0.0


class RateLimiter:
    """Sliding one-minute admission window per user.

    One instance is owned by the runtime and shared by every turn. The map of
    users is guarded by its own lock; prune-and-check for a user runs under that
    user's lock. Idle users are evicted by a sweep that piggybacks on admission
    checks once ``sweep_interval_minutes`` has passed since the previous sweep.
    """

    def __init__(
        self,
        max_per_minute: int = 60,
        *,
        sweep_interval_minutes: float = 5,
        expiration_minutes: float = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._max_per_minute = max_per_minute
        self._sweep_interval = sweep_interval_minutes * 60
        self._expiration = expiration_minutes * 60
        self._clock = clock
        self._users: dict[str, _UserWindow] = {}
        self._map_lock = threading.Lock()
        self._last_sweep = clock()

    @property
    def user_count(self) -> int:
        with self._map_lock:
            return len(self._users)

    def try_admit(self, user_id: str) -> bool:
        now = self._clock()
        self._maybe_sweep(now)

        # last_activity is refreshed under the map lock so a sweep cannot evict
        # the window between this lookup and the admission below.
        with self._map_lock:
            window = self._users.get(user_id)
            if window is None:
                window = _UserWindow()
                self._users[user_id] = window
            window.last_activity = now

        with window.lock:
            cutoff = now - WINDOW_SECONDS
            while window.timestamps and window.timestamps[0] <= cutoff:
                window.timestamps.popleft()

            if len(window.timestamps) >= self._max_per_minute:
                logger.warning(
                    f"Rate limit exceeded for user {user_id}: "
                    f"{len(window.timestamps)}/{self._max_per_minute} in the last minute"
                )
                return False

            window.timestamps.append(now)
            return True

    def sweep(self) -> int:
        """Evict users with no request in the window and no activity within the expiration horizon."""
        now = self._clock()
        self._last_sweep = now
        window_cutoff = now - WINDOW_SECONDS
        idle_cutoff = now - self._expiration

        removed = 0
        with self._map_lock:
            for user_id, window in list(self._users.items()):
                with window.lock:
                    has_recent = bool(window.timestamps) and window.timestamps[-1] > window_cutoff
                    if not has_recent and window.last_activity <= idle_cutoff:
                        del self._users[user_id]
                        removed += 1

        if removed:
            logger.debug(f"Rate limiter sweep removed {removed} idle users")
        return removed

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep >= self._sweep_interval:
            self.sweep()
