# SPDX-License-Identifier: MPL-2.0
"""
Cheapest window selection and slot label resolution.

Finds the cheapest run of consecutive hourly slots in a day's price table
and turns the label of its first slot into the instant the outlet should be
switched on.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Tuple

from plug_scheduler.prices import PriceTable

logger = logging.getLogger(__name__)

WINDOW_SLOTS = 3

SLOT_LABEL_RE = re.compile(r'(\d{2})-(\d{2})', re.ASCII)


class ScheduleError(Exception):
    """Base exception for errors computing a schedule from prices."""
    pass


class InsufficientDataError(ScheduleError):
    """Raised when the price table has fewer entries than the window needs."""
    pass


class MalformedLabelError(ScheduleError):
    """Raised when a slot label is not a same-day 'HH-HH' hour range."""
    pass


class StaleScheduleError(ScheduleError):
    """Raised when the resolved start instant is not in the future."""
    pass


@dataclass(frozen=True)
class Window:
    """A run of consecutive slots, identified by its first and last label."""
    start_label: str
    end_label: str
    total_price: float

    def __str__(self) -> str:
        return f"{self.start_label}..{self.end_label} (sum {self.total_price:.2f})"


def find_cheapest_window(prices: PriceTable, window_size: int = WINDOW_SLOTS) -> Window:
    """
    Find the run of consecutive slots with the lowest summed price.

    Slots are ordered by label, which the feed guarantees sorts in
    chronological order. When several windows share the lowest sum the
    earliest one wins.

    Args:
        prices: Price table for one day
        window_size: Number of consecutive slots in the window

    Returns:
        The cheapest Window

    Raises:
        InsufficientDataError: If the table holds fewer than window_size entries
        ValueError: If window_size is not positive
    """
    if window_size < 1:
        raise ValueError(f"Window size must be positive, got {window_size}")

    if len(prices) < window_size:
        raise InsufficientDataError(
            f"Need at least {window_size} price entries, got {len(prices)}"
        )

    entries = sorted(prices.values(), key=lambda e: e.slot_label)

    best_sum = float('inf')
    best_start = 0

    for i in range(len(entries) - window_size + 1):
        # Summed per window rather than incrementally so equal windows compare equal
        total = sum(e.price for e in entries[i:i + window_size])
        # Strict comparison keeps the earliest window on ties
        if total < best_sum:
            best_sum = total
            best_start = i

    window = Window(
        start_label=entries[best_start].slot_label,
        end_label=entries[best_start + window_size - 1].slot_label,
        total_price=best_sum,
    )
    logger.info(f"Cheapest {window_size}-slot window: {window}")
    return window


def parse_slot_label(label: str) -> Tuple[int, int]:
    """
    Parse a slot label in 'HH-HH' format.

    Args:
        label: Slot label, e.g. "14-15" or "23-24"

    Returns:
        Tuple of (start_hour, end_hour)

    Raises:
        MalformedLabelError: If the label is not two zero-padded hours, or
                             the slot does not end after it starts on the
                             same day
    """
    match = SLOT_LABEL_RE.fullmatch(label)
    if match is None:
        raise MalformedLabelError(f"Invalid slot label: '{label}'. Expected 'HH-HH'")

    start_hour = int(match.group(1))
    end_hour = int(match.group(2))

    if not (0 <= start_hour <= 23):
        raise MalformedLabelError(f"Start hour must be 0-23, got {start_hour} in '{label}'")
    # "23-00" style labels end on the next day
    if end_hour <= start_hour:
        raise MalformedLabelError(f"Slot '{label}' wraps past midnight")
    if end_hour > 24:
        raise MalformedLabelError(f"End hour must be 1-24, got {end_hour} in '{label}'")

    return start_hour, end_hour


def resolve_start_time(label: str, now: datetime) -> datetime:
    """
    Resolve a slot label to its start instant on now's calendar day.

    Only the start hour is used. An aware now keeps its timezone, so a
    ZoneInfo zone gives the start hour the offset in force at that hour.
    A naive now is read as system local time, and the result is localised
    with the offset the system applies at the start hour, which differs
    from now's on daylight saving change days.

    Args:
        label: Slot label of the first slot in the window
        now: Current instant, in the price feed's time reference

    Returns:
        Start instant at minute 0, second 0 of the slot's start hour

    Raises:
        MalformedLabelError: If the label cannot be parsed
        StaleScheduleError: If the start instant is not after now
    """
    start_hour, _ = parse_slot_label(label)
    start = now.replace(hour=start_hour, minute=0, second=0, microsecond=0)
    if start.tzinfo is None:
        start = start.astimezone()

    if start.timestamp() <= now.timestamp():
        raise StaleScheduleError(
            f"Start time {start.strftime('%H:%M')} has already passed "
            f"(now {now.strftime('%H:%M')})"
        )

    return start
