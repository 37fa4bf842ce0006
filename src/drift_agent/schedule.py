"""
Duty Cycle Schedule

Decides whether the agent is awake and how long to pause between cycles,
recomputed from the clock on every check.
"""

import logging
import re
from datetime import datetime, time, timezone
from typing import Callable, FrozenSet, Iterable, Optional, Union

from .config import ScheduleConfig

logger = logging.getLogger(__name__)

DEFAULT_WAKE_TIME = time(8, 0)
DEFAULT_SLEEP_TIME = time(19, 0)
DEFAULT_WAKE_DAYS = frozenset({1, 2, 3, 4, 5})
DEFAULT_WAKE_FREQUENCY = 5  # minutes
DEFAULT_PAUSE = 60  # minutes, used while asleep with no slow-work frequency


def parse_time(value: Optional[Union[str, int]], fallback: time) -> time:
    """Parse ``HH:MM`` or ``HHMM``; anything else gives the fallback."""
    if value is None:
        return fallback
    text = str(value).strip()
    try:
        if ":" in text:
            hours, minutes = text.split(":")[:2]
            return time(int(hours), int(minutes))
        if len(text) >= 4:
            return time(int(text[:2]), int(text[2:4]))
    except ValueError:
        return fallback
    return fallback


def parse_days(value: Optional[Union[str, Iterable]], fallback: FrozenSet[int] = DEFAULT_WAKE_DAYS) -> FrozenSet[int]:
    """Parse ISO weekday numbers (1=Monday .. 7=Sunday) from a list or a separated string."""
    if value is None:
        return fallback
    tokens = re.split(r"[,; :]+", value) if isinstance(value, str) else list(value)
    days = set()
    for token in tokens:
        try:
            day = int(str(token).strip())
        except ValueError:
            continue
        if 1 <= day <= 7:
            days.add(day)
    return frozenset(days) if days else fallback


def _minutes(value, fallback: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return fallback


class Schedule:
    """Awake/asleep state derived from the time of day and the configured window."""

    def __init__(self, config: ScheduleConfig, clock: Optional[Callable[[], datetime]] = None):
        self.wake_time = parse_time(config.wake_time, DEFAULT_WAKE_TIME)
        self.sleep_time = parse_time(config.sleep_time, DEFAULT_SLEEP_TIME)
        self.wake_days = parse_days(config.wake_days)
        self.wake_frequency = _minutes(config.wake_frequency, DEFAULT_WAKE_FREQUENCY)
        self.sleep_frequency = _minutes(config.sleep_frequency, 0)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def is_awake(self) -> bool:
        now = self.clock()
        return (
            self.wake_time <= now.time() < self.sleep_time
            and now.isoweekday() in self.wake_days
        )

    def should_work(self) -> bool:
        return self.is_awake() or self.sleep_frequency > 0

    def pause_between_cycles(self) -> float:
        """Seconds to sleep before the next cycle."""
        if self.is_awake():
            minutes = self.wake_frequency
        elif self.sleep_frequency > 0:
            minutes = self.sleep_frequency
        else:
            minutes = DEFAULT_PAUSE
        return minutes * 60.0
