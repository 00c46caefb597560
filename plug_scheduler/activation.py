# SPDX-License-Identifier: MPL-2.0
"""
Outlet activation scheduler.

Arms a single background task that waits for the window start, switches the
outlet on, keeps it on for a fixed duration and switches it off again. The
scheduler holds at most one activation; arming a new one cancels the
previous one.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from plug_scheduler.outlet import ActivationFailure, DeactivationFailure, OutletClient

logger = logging.getLogger(__name__)

DEFAULT_DURATION = timedelta(hours=3)


class ActivationStatus(Enum):
    """Lifecycle states of a scheduled activation."""
    PENDING = "pending"
    ACTIVATING = "activating"
    ACTIVE = "active"
    DEACTIVATING = "deactivating"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def finished(self) -> bool:
        return self in (ActivationStatus.COMPLETED, ActivationStatus.ABORTED)


@dataclass
class ScheduledActivation:
    """Live state of one armed on/off sequence."""
    start: datetime
    end: datetime
    status: ActivationStatus = ActivationStatus.PENDING
    task: Optional["asyncio.Task[None]"] = field(default=None, repr=False, compare=False)
    cancel_requested: bool = field(default=False, repr=False, compare=False)

    def __str__(self) -> str:
        return (f"{self.start.strftime('%Y-%m-%d %H:%M')}-{self.end.strftime('%H:%M')} "
                f"[{self.status.value}]")


class ActivationScheduler:
    """
    Owns the single slot for the currently armed activation.

    Args:
        outlet: Client used to switch the outlet on and off
        duration: How long the outlet stays on once switched on
        sleep: Coroutine function used for the waits (default: asyncio.sleep)
    """

    def __init__(
        self,
        outlet: OutletClient,
        duration: timedelta = DEFAULT_DURATION,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        if duration <= timedelta(0):
            raise ValueError(f"Duration must be positive, got {duration}")

        self.outlet = outlet
        self.duration = duration
        self._sleep = sleep or asyncio.sleep
        self._current: Optional[ScheduledActivation] = None

    @property
    def current(self) -> Optional[ScheduledActivation]:
        """The activation held by this scheduler, if any."""
        return self._current

    def arm(self, start: datetime, now: Optional[datetime] = None) -> ScheduledActivation:
        """
        Arm an activation starting at the given instant.

        Must be called from a running event loop. Returns immediately; the
        waits and outlet calls happen in a background task. Any activation
        armed earlier is cancelled first.

        Args:
            start: Instant to switch the outlet on (timezone aware)
            now: Current instant, used to compute the initial wait

        Returns:
            The new ScheduledActivation
        """
        loop = asyncio.get_running_loop()

        if now is None:
            now = datetime.now(start.tzinfo)

        if self.cancel():
            logger.info("Replaced previously armed activation")

        # Elapsed seconds, not wall-clock difference, and computed only once
        delay = max(start.timestamp() - now.timestamp(), 0.0)

        activation = ScheduledActivation(start=start, end=start + self.duration)
        activation.task = loop.create_task(self._run(activation, delay))
        activation.task.add_done_callback(lambda task: self._on_done(activation, task))
        self._current = activation

        logger.info(
            f"Outlet will switch on at {activation.start.strftime('%H:%M')} and off at "
            f"{activation.end.strftime('%H:%M')} (in {delay / 3600:.1f} hours)"
        )
        return activation

    def cancel(self) -> bool:
        """
        Cancel the current activation if it has not finished.

        If the outlet is already on it is switched off by the cancelled
        task before it ends.

        Returns:
            True if an activation was cancelled, False otherwise
        """
        activation = self._current
        if activation is None or activation.status.finished:
            return False
        if activation.task is None or activation.task.done():
            return False
        # A second cancel would interrupt the switch-off cleanup
        if activation.cancel_requested:
            return False

        logger.debug(f"Cancelling activation {activation}")
        activation.cancel_requested = True
        activation.task.cancel()
        return True

    async def shutdown(self) -> None:
        """Cancel the current activation and wait for its task to end."""
        activation = self._current
        if activation is None or activation.task is None or activation.task.done():
            return

        self.cancel()
        try:
            await activation.task
        except asyncio.CancelledError:
            pass

    @staticmethod
    def _on_done(activation: ScheduledActivation, task: "asyncio.Task[None]") -> None:
        # A task cancelled before its first step never enters _run
        if task.cancelled() and not activation.status.finished:
            activation.status = ActivationStatus.ABORTED
        elif not task.cancelled() and task.exception() is not None:
            activation.status = ActivationStatus.ABORTED
            logger.error(f"Activation failed unexpectedly: {task.exception()!r}")

    async def _run(self, activation: ScheduledActivation, delay: float) -> None:
        power_on: Optional["asyncio.Future[None]"] = None
        try:
            logger.debug(f"Waiting {delay:.0f}s until activation")
            await self._sleep(delay)

            activation.status = ActivationStatus.ACTIVATING
            power_on = asyncio.ensure_future(asyncio.to_thread(self.outlet.power_on))
            try:
                await asyncio.shield(power_on)
            except ActivationFailure as e:
                logger.error(f"Activation aborted: {e}")
                activation.status = ActivationStatus.ABORTED
                return

            activation.status = ActivationStatus.ACTIVE
            await self._sleep(self.duration.total_seconds())

            activation.status = ActivationStatus.DEACTIVATING
            await self._switch_off()
            activation.status = ActivationStatus.COMPLETED
            logger.info(f"Activation completed: {activation}")

        except asyncio.CancelledError:
            if activation.status is ActivationStatus.ACTIVATING and power_on is not None:
                # The request is already on the wire; find out whether it switched the outlet on
                try:
                    await power_on
                    activation.status = ActivationStatus.ACTIVE
                except ActivationFailure as e:
                    logger.error(f"Activation aborted: {e}")

            if activation.status is ActivationStatus.ACTIVE:
                logger.info("Activation cancelled while outlet is on, switching it off")
                await self._switch_off()

            activation.status = ActivationStatus.ABORTED
            raise

    async def _switch_off(self) -> None:
        try:
            await asyncio.to_thread(self.outlet.power_off)
        except DeactivationFailure as e:
            logger.error(f"Deactivation failed: {e}")
