# SPDX-License-Identifier: MPL-2.0
"""
Unit tests for the outlet activation scheduler.

Waits are replaced by a fake sleep so the on/off sequence runs instantly,
and the outlet is a Mock recording its calls.
"""

import asyncio
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Tuple
from unittest.mock import Mock
from zoneinfo import ZoneInfo

import pytest

from plug_scheduler.activation import (
    DEFAULT_DURATION,
    ActivationScheduler,
    ActivationStatus,
    ScheduledActivation,
)
from plug_scheduler.outlet import ActivationFailure, DeactivationFailure


NOW = datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)
START = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FakeSleep:
    """
    Records requested waits and returns immediately.

    With block_after=N, every call after the first N never returns, which
    leaves the activation parked in whatever state it was in.
    """

    def __init__(self, events: Optional[List[Any]] = None, block_after: Optional[int] = None) -> None:
        self.calls: List[float] = []
        self.events = events if events is not None else []
        self.block_after = block_after
        self.blocked = asyncio.Event()

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.events.append(("sleep", seconds))
        if self.block_after is not None and len(self.calls) > self.block_after:
            self.blocked.set()
            await asyncio.Event().wait()


def make_outlet(events: Optional[List[Any]] = None) -> Mock:
    outlet = Mock()
    if events is not None:
        outlet.power_on.side_effect = lambda: events.append("on")
        outlet.power_off.side_effect = lambda: events.append("off")
    return outlet


def make_blocking_outlet(error: Optional[Exception] = None) -> Tuple[Mock, threading.Event, threading.Event]:
    """
    Outlet whose power_on blocks in its worker thread until released.

    Returns the outlet, an event set once power_on has started and the
    event that releases it. With error, power_on raises it once released.
    """
    started = threading.Event()
    release = threading.Event()

    def power_on() -> None:
        started.set()
        release.wait(5)
        if error is not None:
            raise error

    outlet = Mock()
    outlet.power_on.side_effect = power_on
    return outlet, started, release


class TestActivationStatus:

    def test_finished_states(self) -> None:
        assert ActivationStatus.COMPLETED.finished
        assert ActivationStatus.ABORTED.finished
        assert not ActivationStatus.PENDING.finished
        assert not ActivationStatus.ACTIVATING.finished
        assert not ActivationStatus.ACTIVE.finished
        assert not ActivationStatus.DEACTIVATING.finished

    def test_scheduled_activation_str(self) -> None:
        activation = ScheduledActivation(start=START, end=START + DEFAULT_DURATION)
        assert str(activation) == "2026-10-19 12:00-15:00 [pending]"


class TestSchedulerSetup:

    def test_default_duration_is_three_hours(self) -> None:
        scheduler = ActivationScheduler(Mock())
        assert scheduler.duration == timedelta(hours=3)
        assert scheduler.current is None

    def test_rejects_non_positive_duration(self) -> None:
        with pytest.raises(ValueError, match="must be positive"):
            ActivationScheduler(Mock(), duration=timedelta(0))

    def test_arm_requires_running_loop(self) -> None:
        scheduler = ActivationScheduler(Mock())
        with pytest.raises(RuntimeError):
            scheduler.arm(START, now=NOW)

    def test_cancel_without_activation(self) -> None:
        scheduler = ActivationScheduler(Mock())
        assert scheduler.cancel() is False


class TestActivationSequence:

    @pytest.mark.asyncio
    async def test_arm_returns_pending_without_side_effects(self) -> None:
        sleeper = FakeSleep(block_after=0)
        outlet = make_outlet()
        scheduler = ActivationScheduler(outlet, sleep=sleeper)

        activation = scheduler.arm(START, now=NOW)

        assert activation.status is ActivationStatus.PENDING
        assert activation.start == START
        assert activation.end == START + timedelta(hours=3)
        assert scheduler.current is activation
        outlet.power_on.assert_not_called()

        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_full_sequence(self) -> None:
        events: List[Any] = []
        sleeper = FakeSleep(events)
        outlet = make_outlet(events)
        scheduler = ActivationScheduler(outlet, sleep=sleeper)

        activation = scheduler.arm(START, now=NOW)
        assert activation.task is not None
        await activation.task

        assert activation.status is ActivationStatus.COMPLETED
        assert events == [("sleep", 7200.0), "on", ("sleep", 10800.0), "off"]
        outlet.power_on.assert_called_once_with()
        outlet.power_off.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_wait_computed_at_arming_time(self) -> None:
        sleeper = FakeSleep()
        scheduler = ActivationScheduler(make_outlet(), sleep=sleeper)

        activation = scheduler.arm(START, now=START - timedelta(minutes=90, seconds=30))
        assert activation.task is not None
        await activation.task

        assert sleeper.calls[0] == 5430.0

    @pytest.mark.asyncio
    async def test_wait_spans_spring_forward(self) -> None:
        madrid = ZoneInfo("Europe/Madrid")
        sleeper = FakeSleep()
        scheduler = ActivationScheduler(make_outlet(), sleep=sleeper)

        activation = scheduler.arm(datetime(2026, 3, 29, 4, 0, tzinfo=madrid),
                                   now=datetime(2026, 3, 29, 0, 0, tzinfo=madrid))
        assert activation.task is not None
        await activation.task

        assert sleeper.calls[0] == 10800.0

    @pytest.mark.asyncio
    async def test_wait_spans_fall_back(self) -> None:
        madrid = ZoneInfo("Europe/Madrid")
        sleeper = FakeSleep()
        scheduler = ActivationScheduler(make_outlet(), sleep=sleeper)

        activation = scheduler.arm(datetime(2026, 10, 25, 4, 0, tzinfo=madrid),
                                   now=datetime(2026, 10, 25, 0, 0, tzinfo=madrid))
        assert activation.task is not None
        await activation.task

        assert sleeper.calls[0] == 18000.0

    @pytest.mark.asyncio
    async def test_custom_duration(self) -> None:
        sleeper = FakeSleep()
        scheduler = ActivationScheduler(make_outlet(), duration=timedelta(minutes=30), sleep=sleeper)

        activation = scheduler.arm(START, now=NOW)
        assert activation.task is not None
        await activation.task

        assert activation.end == START + timedelta(minutes=30)
        assert sleeper.calls == [7200.0, 1800.0]

    @pytest.mark.asyncio
    async def test_power_on_failure_aborts(self, caplog: Any) -> None:
        caplog.set_level(logging.DEBUG)
        sleeper = FakeSleep()
        outlet = make_outlet()
        outlet.power_on.side_effect = ActivationFailure("Failed to switch outlet on: status code 500")
        scheduler = ActivationScheduler(outlet, sleep=sleeper)

        activation = scheduler.arm(START, now=NOW)
        assert activation.task is not None
        await activation.task

        assert activation.status is ActivationStatus.ABORTED
        outlet.power_on.assert_called_once_with()
        outlet.power_off.assert_not_called()
        assert sleeper.calls == [7200.0]

        errors = [r for r in caplog.records if r.levelno >= logging.ERROR]
        assert len(errors) == 1
        assert "status code 500" in errors[0].getMessage()

    @pytest.mark.asyncio
    async def test_power_off_failure_still_completes(self, caplog: Any) -> None:
        sleeper = FakeSleep()
        outlet = make_outlet()
        outlet.power_off.side_effect = DeactivationFailure("Failed to switch outlet off: timed out")
        scheduler = ActivationScheduler(outlet, sleep=sleeper)

        activation = scheduler.arm(START, now=NOW)
        assert activation.task is not None
        await activation.task

        assert activation.status is ActivationStatus.COMPLETED
        outlet.power_off.assert_called_once_with()
        assert any("timed out" in r.getMessage() for r in caplog.records
                   if r.levelno >= logging.ERROR)

    @pytest.mark.asyncio
    async def test_start_in_past_waits_zero(self) -> None:
        sleeper = FakeSleep()
        scheduler = ActivationScheduler(make_outlet(), sleep=sleeper)

        activation = scheduler.arm(NOW, now=START)
        assert activation.task is not None
        await activation.task

        assert sleeper.calls[0] == 0.0

    @pytest.mark.asyncio
    async def test_default_now_uses_clock(self) -> None:
        sleeper = FakeSleep(block_after=0)
        scheduler = ActivationScheduler(make_outlet(), sleep=sleeper)

        start = datetime.now(timezone.utc) + timedelta(hours=1)
        scheduler.arm(start)
        await sleeper.blocked.wait()

        assert 3500 < sleeper.calls[0] <= 3600
        await scheduler.shutdown()


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_pending(self) -> None:
        sleeper = FakeSleep(block_after=0)
        outlet = make_outlet()
        scheduler = ActivationScheduler(outlet, sleep=sleeper)

        activation = scheduler.arm(START, now=NOW)
        await sleeper.blocked.wait()

        assert scheduler.cancel() is True
        await scheduler.shutdown()

        assert activation.status is ActivationStatus.ABORTED
        outlet.power_on.assert_not_called()
        outlet.power_off.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_while_active_switches_off(self) -> None:
        sleeper = FakeSleep(block_after=1)
        outlet = make_outlet()
        scheduler = ActivationScheduler(outlet, sleep=sleeper)

        activation = scheduler.arm(START, now=NOW)
        await sleeper.blocked.wait()
        assert activation.status is ActivationStatus.ACTIVE

        await scheduler.shutdown()

        assert activation.status is ActivationStatus.ABORTED
        outlet.power_on.assert_called_once_with()
        outlet.power_off.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_arming_replaces_previous(self) -> None:
        sleeper = FakeSleep(block_after=0)
        outlet = make_outlet()
        scheduler = ActivationScheduler(outlet, sleep=sleeper)

        first = scheduler.arm(START, now=NOW)
        await sleeper.blocked.wait()
        second = scheduler.arm(START + timedelta(hours=1), now=NOW)

        assert first.task is not None
        await asyncio.gather(first.task, return_exceptions=True)

        assert first.status is ActivationStatus.ABORTED
        assert second.status is ActivationStatus.PENDING
        assert scheduler.current is second
        outlet.power_on.assert_not_called()

        await scheduler.shutdown()
        assert second.status is ActivationStatus.ABORTED

    @pytest.mark.asyncio
    async def test_cancel_during_power_on_switches_off(self) -> None:
        outlet, started, release = make_blocking_outlet()
        scheduler = ActivationScheduler(outlet, sleep=FakeSleep())

        activation = scheduler.arm(START, now=NOW)
        assert await asyncio.to_thread(started.wait, 5)
        assert activation.status is ActivationStatus.ACTIVATING

        assert scheduler.cancel() is True
        assert scheduler.cancel() is False
        release.set()
        await scheduler.shutdown()

        assert activation.status is ActivationStatus.ABORTED
        outlet.power_on.assert_called_once_with()
        outlet.power_off.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_cancel_during_failed_power_on(self, caplog: Any) -> None:
        outlet, started, release = make_blocking_outlet(
            error=ActivationFailure("Failed to switch outlet on: status code 503")
        )
        scheduler = ActivationScheduler(outlet, sleep=FakeSleep())

        activation = scheduler.arm(START, now=NOW)
        assert await asyncio.to_thread(started.wait, 5)

        scheduler.cancel()
        release.set()
        await scheduler.shutdown()

        assert activation.status is ActivationStatus.ABORTED
        outlet.power_off.assert_not_called()
        errors = [r for r in caplog.records if r.levelno >= logging.ERROR]
        assert len(errors) == 1
        assert "status code 503" in errors[0].getMessage()

    @pytest.mark.asyncio
    async def test_arming_during_power_on_switches_old_outlet_off(self) -> None:
        outlet, started, release = make_blocking_outlet()
        # Only the first activation's initial wait returns
        scheduler = ActivationScheduler(outlet, sleep=FakeSleep(block_after=1))

        first = scheduler.arm(START, now=NOW)
        assert await asyncio.to_thread(started.wait, 5)

        second = scheduler.arm(START + timedelta(hours=1), now=NOW)
        release.set()
        assert first.task is not None
        await asyncio.gather(first.task, return_exceptions=True)

        assert first.status is ActivationStatus.ABORTED
        outlet.power_off.assert_called_once_with()
        assert scheduler.current is second

        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_after_completion(self) -> None:
        scheduler = ActivationScheduler(make_outlet(), sleep=FakeSleep())

        activation = scheduler.arm(START, now=NOW)
        assert activation.task is not None
        await activation.task

        assert scheduler.cancel() is False
        await scheduler.shutdown()
        assert activation.status is ActivationStatus.COMPLETED
