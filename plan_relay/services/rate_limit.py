import time
from typing import Any, Callable, Hashable


class CooldownLimiter:
    """Allows one call per key every cooldown_ms milliseconds.

    Keys whose cooldown has lapsed are dropped at most once per cooldown window.
    """

    def __init__(self, cooldown_ms: int = 1500, clock: Callable[[], float] = time.monotonic) -> None:
        self.cooldown_ms = cooldown_ms
        self._clock = clock
        self._last_call: dict[Hashable, float] = {}
        self._next_sweep = 0.0

    def __len__(self) -> int:
        return len(self._last_call)

    def remaining_ms(self, key: Hashable) -> int:
        last = self._last_call.get(key)
        if last is None:
            return 0
        elapsed_ms = (self._clock() - last) * 1000
        return max(0, int(self.cooldown_ms - elapsed_ms))

    def try_acquire(self, key: Hashable) -> bool:
        now = self._clock()
        if now >= self._next_sweep:
            self._sweep(now)
        if self.remaining_ms(key) > 0:
            return False
        self._last_call[key] = now
        return True

    def _sweep(self, now: float) -> None:
        window = self.cooldown_ms / 1000
        self._last_call = {key: last for key, last in self._last_call.items() if now - last < window}
        self._next_sweep = now + window


class TTLCache:
    def __init__(self, ttl_sec: float = 30.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._entries: dict[Hashable, tuple[float, Any]] = {}
        self._next_sweep = 0.0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: Hashable) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: Hashable, value: Any, ttl_sec: float | None = None) -> None:
        now = self._clock()
        if now >= self._next_sweep:
            # drop everything already expired; next sweep after one default ttl
            self._entries = {k: entry for k, entry in self._entries.items() if entry[0] > now}
            self._next_sweep = now + self.ttl_sec
        self._entries[key] = (now + (ttl_sec if ttl_sec is not None else self.ttl_sec), value)

    def clear(self) -> None:
        self._entries.clear()
