"""Process-wide notification gate with per-(target, kind) cooldowns."""

from __future__ import annotations

import datetime as _dt
import logging
import threading
from typing import Callable, Dict, Optional, Tuple, Union

from .state_machine import AlertKind

LOGGER = logging.getLogger(__name__)

ThrottleKey = Tuple[str, AlertKind]


def _default_clock() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def _coerce_kind(kind: Union[AlertKind, str]) -> AlertKind:
    if isinstance(kind, AlertKind):
        return kind
    return AlertKind(str(kind).upper())


class NotificationThrottler:
    """Decide whether an alert may go out now.

    A disabled throttler suppresses everything. Otherwise an alert is held
    back when one of the same kind was sent for the same target within the
    cooldown window; critical alerts skip that check but are still recorded.
    """

    def __init__(
        self,
        cooldown_minutes: float = 10,
        *,
        enabled: bool = True,
        clock: Optional[Callable[[], _dt.datetime]] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._clock = clock or _default_clock
        self._enabled = bool(enabled)
        self._cooldown = self._minutes(cooldown_minutes)
        self._last_sent: Dict[ThrottleKey, _dt.datetime] = {}

    @staticmethod
    def _minutes(value: float) -> _dt.timedelta:
        minutes = float(value)
        if minutes < 0:
            raise ValueError("Cooldown must not be negative")
        return _dt.timedelta(minutes=minutes)

    def set_enabled(self, enabled: bool) -> None:
        with self._lock:
            self._enabled = bool(enabled)
        LOGGER.info("notify.throttle.enabled value=%s", bool(enabled))

    def is_enabled(self) -> bool:
        with self._lock:
            return self._enabled

    def set_cooldown(self, minutes: float) -> None:
        cooldown = self._minutes(minutes)
        with self._lock:
            self._cooldown = cooldown
        LOGGER.info("notify.throttle.cooldown minutes=%s", minutes)

    def get_cooldown(self) -> int:
        with self._lock:
            return int(self._cooldown.total_seconds() // 60)

    def clear_cooldowns(self) -> None:
        with self._lock:
            self._last_sent.clear()
        LOGGER.info("notify.throttle.cleared")

    def last_sent(self, target_id: str,
                  kind: Union[AlertKind, str]) -> Optional[_dt.datetime]:
        with self._lock:
            return self._last_sent.get((target_id, _coerce_kind(kind)))

    def _record_locked(self, key: ThrottleKey, now: _dt.datetime) -> None:
        previous = self._last_sent.get(key)
        if previous is not None and previous > now:
            # Clock went backwards; keep timestamps non-decreasing.
            now = previous
        self._last_sent[key] = now

    def record(self, target_id: str, kind: Union[AlertKind, str]) -> bool:
        """Record a send that bypasses the cooldown; ``False`` if disabled."""

        key = (target_id, _coerce_kind(kind))
        with self._lock:
            if not self._enabled:
                return False
            self._record_locked(key, self._clock())
            return True

    def should_notify(self, target_id: str,
                      kind: Union[AlertKind, str]) -> bool:
        """Check enabled flag and cooldown; records the send when allowed."""

        key = (target_id, _coerce_kind(kind))
        with self._lock:
            if not self._enabled:
                return False
            now = self._clock()
            last = self._last_sent.get(key)
            if last is not None and now - last < self._cooldown:
                LOGGER.info("notify.throttle.cooldown target=%s kind=%s",
                            target_id, key[1].value)
                return False
            self._record_locked(key, now)
            return True
