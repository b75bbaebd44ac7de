"""Cache key layout, invalidation table and an in-process TTL cache."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

LOGGER = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 600
CHECK_PERIOD_SECONDS = 120
MAX_ENTRIES = 10_000

LEADERBOARD_PREFIX = "leaderboard:"
USER_PREFIX = "user:"
WORKOUT_PREFIX = "workout:"
COACH_STATS_PREFIX = "coach:stats:"
PLAYER_PROGRESS_PREFIX = "player:progress:"

INVALIDATION_TABLE: Dict[str, FrozenSet[str]] = {
    "workout": frozenset({WORKOUT_PREFIX, COACH_STATS_PREFIX, PLAYER_PROGRESS_PREFIX}),
    "progress": frozenset({PLAYER_PROGRESS_PREFIX, LEADERBOARD_PREFIX, COACH_STATS_PREFIX}),
    "user": frozenset({USER_PREFIX, LEADERBOARD_PREFIX, COACH_STATS_PREFIX}),
    "leaderboard": frozenset({LEADERBOARD_PREFIX}),
}


def keys_to_invalidate(change_kind: str) -> FrozenSet[str]:
    """Key prefixes made stale by a change of the given kind."""
    try:
        return INVALIDATION_TABLE[change_kind]
    except KeyError:
        raise ValueError(
            f"Unknown change kind {change_kind!r}; expected one of {', '.join(sorted(INVALIDATION_TABLE))}."
        ) from None


def leaderboard_key(board: str = "global", team_id: Optional[str] = None) -> str:
    return f"{LEADERBOARD_PREFIX}{board}:{team_id}" if team_id else f"{LEADERBOARD_PREFIX}{board}"


def user_key(user_id: str) -> str:
    return f"{USER_PREFIX}{user_id}"


def workout_key(workout_id: str) -> str:
    return f"{WORKOUT_PREFIX}{workout_id}"


def coach_stats_key(coach_id: str) -> str:
    return f"{COACH_STATS_PREFIX}{coach_id}"


def player_progress_key(player_id: str) -> str:
    return f"{PLAYER_PROGRESS_PREFIX}{player_id}"


@dataclass
class _Entry:
    value: Any
    expires_at: float


class MemoryCache:
    """
    Thread-safe dictionary cache with per-key expiry.

    Expired keys are swept from `set` at most once per `check_period`
    seconds. Past `max_entries` the entries closest to expiry are evicted.
    `clock` returns monotonic seconds and can be swapped in tests.
    """

    def __init__(
        self,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        *,
        check_period: float = CHECK_PERIOD_SECONDS,
        max_entries: int = MAX_ENTRIES,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1.")
        self.default_ttl = default_ttl
        self.check_period = check_period
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._last_sweep = clock()

    def _live(self, key: str, now: float) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= now:
            del self._entries[key]
            return None
        return entry

    def _sweep(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        self._last_sweep = now
        return len(expired)

    def _evict_overflow(self) -> int:
        overflow = len(self._entries) - self.max_entries
        if overflow <= 0:
            return 0
        doomed = sorted(self._entries, key=lambda key: self._entries[key].expires_at)[:overflow]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._live(key, self._clock())
            if entry is None:
                self._misses += 1
                LOGGER.debug("Cache MISS: %s", key)
                return None
            self._hits += 1
        LOGGER.debug("Cache HIT: %s", key)
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        seconds = self.default_ttl if ttl is None else ttl
        with self._lock:
            now = self._clock()
            swept = self._sweep(now) if now - self._last_sweep >= self.check_period else 0
            self._entries[key] = _Entry(value=value, expires_at=now + seconds)
            evicted = self._evict_overflow()
        LOGGER.debug("Cache SET: %s (TTL: %ss)", key, seconds)
        if swept or evicted:
            LOGGER.debug("Cache SWEEP: %d expired, %d evicted", swept, evicted)

    def has(self, key: str) -> bool:
        with self._lock:
            return self._live(key, self._clock()) is not None

    def delete(self, key: str) -> int:
        with self._lock:
            removed = 1 if self._entries.pop(key, None) is not None else 0
        if removed:
            LOGGER.debug("Cache DELETE: %s", key)
        return removed

    def delete_by_prefix(self, prefixes: Iterable[str]) -> int:
        """Drop every key starting with any of `prefixes`; returns the count removed."""
        wanted = tuple(prefixes)
        if not wanted:
            return 0
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(wanted)]
            for key in doomed:
                del self._entries[key]
        if doomed:
            LOGGER.debug("Cache INVALIDATE %s: %d keys", ", ".join(sorted(wanted)), len(doomed))
        return len(doomed)

    def keys(self) -> List[str]:
        with self._lock:
            now = self._clock()
            return sorted(key for key in list(self._entries) if self._live(key, now) is not None)

    def flush(self) -> None:
        with self._lock:
            self._entries.clear()
        LOGGER.debug("Cache FLUSHED")

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"keys": len(self._entries), "hits": self._hits, "misses": self._misses}
