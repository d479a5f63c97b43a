"""
Pulse and wobble animation of the density fields.

The loop is driven by a `Scheduler` so it can run on a plain asyncio event loop or
on NiceGUI timers. Each tick recomputes every point's pulse multiplier and render
position from elapsed time and the point's fixed phase and jitter, so nothing
accumulates between frames.
"""

import asyncio
import logging
import math
import time
import typing

import attrs
from nicegui import ui

from floodline.errors import RenderTargetNotReady
from floodline.types import ColoredSegment, DensityPoint

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_PULSE_AMOUNT",
    "DEFAULT_PULSE_SPEED",
    "DEFAULT_MAX_UPDATE_RATE",
    "Scheduler",
    "AsyncioScheduler",
    "NiceGUIScheduler",
    "AnimationState",
    "pulse_multiplier",
    "wobble_position",
    "animate_point",
    "advance",
    "AnimationLoop",
]

DEFAULT_PULSE_AMOUNT = 0.35
DEFAULT_PULSE_SPEED = 0.3  # Hz
DEFAULT_MAX_UPDATE_RATE = 20.0  # Hz
DEFAULT_FRAME_INTERVAL = 1 / 60  # seconds
DEFAULT_MAX_NOT_READY = 5

TickCallback = typing.Callable[[], None]


class Scheduler(typing.Protocol):
    """Schedules the next animation frame."""

    def schedule_tick(self, callback: TickCallback) -> typing.Any:
        """Run `callback` once on the next frame and return a cancellable handle."""
        ...

    def cancel(self, handle: typing.Any) -> None:
        """Cancel a handle returned by `schedule_tick`. Must be idempotent."""
        ...


class AsyncioScheduler:
    """Frame scheduler on an asyncio event loop."""

    def __init__(
        self,
        interval: float = DEFAULT_FRAME_INTERVAL,
        loop: typing.Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        """
        :param interval: Delay between frames in seconds.
        :param loop: Event loop to schedule on. Defaults to the running loop.
        """
        self.interval = interval
        self._loop = loop

    def schedule_tick(self, callback: TickCallback) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(self.interval, callback)

    def cancel(self, handle: asyncio.TimerHandle) -> None:
        handle.cancel()


class NiceGUIScheduler:
    """Frame scheduler using one-shot NiceGUI timers."""

    def __init__(
        self,
        interval: float = DEFAULT_FRAME_INTERVAL,
        parent: typing.Optional[ui.element] = None,
    ) -> None:
        """
        :param interval: Delay between frames in seconds.
        :param parent: Element the timers are attached to, so they die with its client.
        """
        self.interval = interval
        self.parent = parent

    def schedule_tick(self, callback: TickCallback) -> ui.timer:
        if self.parent is None:
            return ui.timer(self.interval, callback, once=True)
        with self.parent:
            return ui.timer(self.interval, callback, once=True)

    def cancel(self, handle: ui.timer) -> None:
        handle.cancel()


@attrs.define(slots=True, frozen=True)
class AnimationState:
    """Snapshot of a running overlay animation."""

    started_at: float
    """Clock time the animation started at"""
    node_points: typing.Tuple[DensityPoint, ...] = attrs.field(
        factory=tuple, converter=tuple
    )
    line_points: typing.Tuple[DensityPoint, ...] = attrs.field(
        factory=tuple, converter=tuple
    )
    segments: typing.Tuple[ColoredSegment, ...] = attrs.field(
        factory=tuple, converter=tuple
    )
    """Gradient line segments shown alongside the density fields"""
    running: bool = True
    last_tick_time: typing.Optional[float] = None

    @property
    def elapsed(self) -> float:
        """Seconds between the start and the last tick."""
        if self.last_tick_time is None:
            return 0.0
        return max(0.0, self.last_tick_time - self.started_at)


def pulse_multiplier(
    elapsed: float,
    phase: float,
    amount: float = DEFAULT_PULSE_AMOUNT,
    speed: float = DEFAULT_PULSE_SPEED,
) -> float:
    """
    Intensity multiplier of a pulsing point.

    Oscillates within `[1 - amount, 1]`.

    :param elapsed: Seconds since the animation started.
    :param phase: Phase offset of the point in radians.
    :param amount: Peak-to-peak size of the pulse.
    :param speed: Pulse frequency in Hz.
    """
    half = amount / 2
    return 1 - half + math.sin(2 * math.pi * speed * elapsed + phase) * half


def wobble_position(
    point: DensityPoint, elapsed: float, speed: float = DEFAULT_PULSE_SPEED
) -> typing.Tuple[float, float]:
    """Base position displaced along the point's wobble angle."""
    offset = point.wobble_radius * math.sin(2 * math.pi * speed * elapsed + point.phase)
    lng, lat = point.position
    return (
        lng + offset * math.cos(point.wobble_angle),
        lat + offset * math.sin(point.wobble_angle),
    )


def animate_point(
    point: DensityPoint,
    elapsed: float,
    amount: float = DEFAULT_PULSE_AMOUNT,
    speed: float = DEFAULT_PULSE_SPEED,
) -> DensityPoint:
    """Return a copy of `point` with its animated fields computed for `elapsed`."""
    return attrs.evolve(
        point,
        pulse_multiplier=pulse_multiplier(elapsed, point.phase, amount, speed),
        render_position=wobble_position(point, elapsed, speed),
    )


def advance(
    state: AnimationState,
    now: float,
    amount: float = DEFAULT_PULSE_AMOUNT,
    speed: float = DEFAULT_PULSE_SPEED,
) -> AnimationState:
    """
    Compute the next animation state for clock time `now`.

    The input state is left untouched.
    """
    elapsed = max(0.0, now - state.started_at)
    return attrs.evolve(
        state,
        last_tick_time=now,
        node_points=tuple(
            animate_point(point, elapsed, amount, speed) for point in state.node_points
        ),
        line_points=tuple(
            animate_point(point, elapsed, amount, speed) for point in state.line_points
        ),
    )


FramePush = typing.Callable[[AnimationState], None]


class AnimationLoop:
    """
    Drives `advance` on every scheduled frame and pushes the result.

    Frames arriving faster than `max_update_rate` are coalesced: they are skipped
    and the next frame is scheduled, so updates never queue up.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        push: FramePush,
        *,
        pulse_amount: float = DEFAULT_PULSE_AMOUNT,
        pulse_speed: float = DEFAULT_PULSE_SPEED,
        max_update_rate: float = DEFAULT_MAX_UPDATE_RATE,
        max_not_ready: int = DEFAULT_MAX_NOT_READY,
        clock: typing.Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the loop.

        :param scheduler: Frame scheduler.
        :param push: Called with every new state. Errors are logged and the loop continues,
            except `RenderTargetNotReady`, which stops the loop once `max_not_ready`
            consecutive frames raised it.
        :param pulse_amount: Peak-to-peak size of the pulse.
        :param pulse_speed: Pulse and wobble frequency in Hz.
        :param max_update_rate: Maximum number of pushes per second.
        :param max_not_ready: Consecutive frames the render target may be not ready
            before the loop gives up and stops.
        :param clock: Monotonic clock returning seconds.
        """
        self.scheduler = scheduler
        self.push = push
        self.pulse_amount = pulse_amount
        self.pulse_speed = pulse_speed
        self.max_update_rate = max_update_rate
        self.max_not_ready = max_not_ready
        self.clock = clock
        self._state: typing.Optional[AnimationState] = None
        self._handle: typing.Any = None
        self._generation = 0
        self._last_push: typing.Optional[float] = None
        self._not_ready_count = 0

    @property
    def running(self) -> bool:
        return self._state is not None and self._state.running

    @property
    def state(self) -> typing.Optional[AnimationState]:
        return self._state

    def new_state(
        self,
        node_points: typing.Iterable[DensityPoint],
        line_points: typing.Iterable[DensityPoint],
        segments: typing.Iterable[ColoredSegment] = (),
    ) -> AnimationState:
        """Create a fresh state starting now."""
        return AnimationState(
            started_at=self.clock(),
            node_points=node_points,
            line_points=line_points,
            segments=segments,
        )

    def start(self, state: AnimationState) -> None:
        """
        Start animating `state`, replacing whatever was running.

        The first frame is pushed immediately.
        """
        self._cancel_pending()
        self._generation += 1
        self._state = attrs.evolve(state, running=True)
        self._last_push = None
        self._not_ready_count = 0
        logger.debug(
            f"Starting animation with {len(state.node_points)} node points and "
            f"{len(state.line_points)} line points"
        )
        self._frame(self._generation)

    def stop(self) -> None:
        """Stop the loop. Any pending or in-flight frame becomes a no-op."""
        self._generation += 1
        self._cancel_pending()
        if self._state is not None:
            logger.debug("Stopping animation")
        self._state = None
        self._last_push = None

    def _cancel_pending(self) -> None:
        if self._handle is not None:
            self.scheduler.cancel(self._handle)
            self._handle = None

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self.running

    def _frame(self, generation: int) -> None:
        self._handle = None
        if not self._is_current(generation):
            return

        now = self.clock()
        min_interval = 1 / self.max_update_rate if self.max_update_rate > 0 else 0.0
        if self._last_push is None or now - self._last_push >= min_interval:
            self._state = advance(
                typing.cast(AnimationState, self._state),
                now,
                self.pulse_amount,
                self.pulse_speed,
            )
            self._last_push = now
            try:
                self.push(self._state)
            except RenderTargetNotReady as exc:
                self._not_ready_count += 1
                if self._not_ready_count >= self.max_not_ready:
                    logger.error(
                        f"Render target not ready for {self._not_ready_count} "
                        f"consecutive frames; stopping animation: {exc}"
                    )
                    self.stop()
                else:
                    logger.debug(
                        f"Render target not ready ({self._not_ready_count}/"
                        f"{self.max_not_ready}): {exc}"
                    )
            except Exception as exc:
                logger.error(f"Failed to push animation frame: {exc}", exc_info=True)
            else:
                self._not_ready_count = 0

        # The push may have stopped or restarted the loop
        if self._is_current(generation):
            self._handle = self.scheduler.schedule_tick(lambda: self._frame(generation))
