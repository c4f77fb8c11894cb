"""Timestamp sources for the billing engine.

Responsibilities:
- Provide the current timestamp in whole seconds
- Offer a virtual clock that tests and simulations can fast-forward
- Never move backwards
"""

import threading
import time
from typing import Optional

from recurring_billing.logging_config import get_logger

logger = get_logger(__name__)


class Clock:
    """Monotonic, non-decreasing timestamp source (seconds)."""

    def now(self) -> int:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall clock, clamped so it never reports an earlier time than before."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last = 0

    def now(self) -> int:
        with self._lock:
            self._last = max(self._last, int(time.time()))
            return self._last


class VirtualClock(Clock):
    """Virtual clock for time manipulation and fast-forwarding.

    Unlike a scheduler, advancing the clock triggers nothing: charges stay
    externally driven.

    Args:
        start_time: initial virtual time in seconds, defaults to the real current time
    """

    def __init__(self, start_time: Optional[int] = None) -> None:
        self._lock = threading.RLock()
        self._virtual_time = int(time.time()) if start_time is None else start_time
        self._time_offset = 0

        if self._virtual_time < 0:
            raise ValueError("Virtual time cannot be negative")

        logger.info("virtual_clock_initialized", virtual_time=self._virtual_time)

    def now(self) -> int:
        with self._lock:
            return self._virtual_time

    @property
    def time_offset(self) -> int:
        """Total seconds advanced since creation."""
        with self._lock:
            return self._time_offset

    def advance_time(
            self,
            days: int = 0,
            hours: int = 0,
            minutes: int = 0,
            seconds: int = 0,
    ) -> dict:
        """Advance virtual time.

        Args:
            days: number of days to advance
            hours: number of hours to advance
            minutes: number of minutes to advance
            seconds: number of seconds to advance

        Returns:
            Dictionary with:
                - old_time: time before advancement
                - new_time: time after advancement
                - time_advanced: amount of time advanced (seconds)
        Raises:
            ValueError: if any value is negative
        """
        if days < 0 or hours < 0 or minutes < 0 or seconds < 0:
            raise ValueError("Cannot advance time backwards, negative values are not allowed")

        seconds_to_advance = (
            days * 24 * 60 * 60
            + hours * 60 * 60
            + minutes * 60
            + seconds
        )

        with self._lock:
            old_time = self._virtual_time
            self._virtual_time += seconds_to_advance
            self._time_offset += seconds_to_advance
            new_time = self._virtual_time

        if seconds_to_advance:
            logger.info(
                "time_advanced",
                old_time=old_time,
                new_time=new_time,
                time_advanced=seconds_to_advance,
            )

        return {
            "old_time": old_time,
            "new_time": new_time,
            "time_advanced": seconds_to_advance,
        }

    def set_time(self, timestamp: int) -> dict:
        """Set virtual time to a specific timestamp.

        Args:
            timestamp: Timestamp in seconds

        Returns:
            Dictionary with old_time and new_time

        Raises:
            ValueError: If timestamp is before the current virtual time
        """
        with self._lock:
            old_time = self._virtual_time
            if timestamp < old_time:
                raise ValueError(
                    f"Cannot set time backwards, current: {old_time}, requested: {timestamp}"
                )
            self._virtual_time = timestamp
            self._time_offset += timestamp - old_time

        logger.info("time_set", old_time=old_time, new_time=timestamp)

        return {"old_time": old_time, "new_time": timestamp}


_clock_instance: Optional[Clock] = None
_clock_lock = threading.Lock()


def get_clock() -> Clock:
    """Get global clock instance (singleton, SystemClock by default)."""
    global _clock_instance
    if _clock_instance is None:
        with _clock_lock:
            if _clock_instance is None:
                _clock_instance = SystemClock()
    return _clock_instance


def set_clock(clock: Clock) -> None:
    """Replace the global clock (e.g., with a VirtualClock for simulations)."""
    global _clock_instance
    with _clock_lock:
        _clock_instance = clock
