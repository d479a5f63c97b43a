"""
Activation surface of the flood overlay.

`FloodOverlay` owns the pipe topology cache, the animation loop and the pushes to the
render target. Consuming views only need `enable()`, `disable()` and `is_running()`.
"""

import logging
import random
import time
import typing

from floodline.config.core import Configuration, ConfigurationState
from floodline.errors import RenderTargetNotReady, TopologyUnavailable
from floodline.overlay.animation import AnimationLoop, AnimationState, Scheduler
from floodline.overlay.core import OverlayResult, OverlaySettings, build_overlay
from floodline.overlay.render import (
    RenderTarget,
    ease_out_cubic,
    empty_collection,
    points_to_collection,
    segments_to_collection,
)
from floodline.retry import RetryPolicy
from floodline.topology import TopologySource, fetch_pipes, structure_records
from floodline.types import (
    EventCallback,
    EventSubscription,
    NodeCoordinate,
    PipePolyline,
    RenderConfig,
    VulnerabilityRecord,
)
from floodline.units import to_hertz, to_seconds

logger = logging.getLogger(__name__)

__all__ = ["FloodOverlay"]


def _topology_key(config_state: ConfigurationState) -> typing.Tuple[str, str]:
    topology = config_state.topology
    return (topology.pipes_location, topology.pipe_id_property)


class FloodOverlay:
    """Manages the flood overlay of one map view."""

    def __init__(
        self,
        target: RenderTarget,
        nodes: typing.Iterable[NodeCoordinate],
        scheduler: Scheduler,
        config: Configuration,
        *,
        topology: typing.Optional[TopologySource] = None,
        pipes: typing.Optional[typing.Iterable[PipePolyline]] = None,
        rng: typing.Optional[random.Random] = None,
        clock: typing.Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the overlay.

        :param target: Rendering engine the overlay pushes to.
        :param nodes: Static node coordinates (inlets and drains).
        :param scheduler: Animation frame scheduler.
        :param config: Configuration manager. The overlay observes its changes.
        :param topology: Source the pipe network is fetched from on first enable.
        :param pipes: Already loaded pipes. Skips fetching when given.
        :param rng: Random source for per-point animation offsets.
        :param clock: Monotonic clock returning seconds.
        """
        self._target = target
        self._nodes = list(nodes)
        self._topology = topology
        self._pipes: typing.Optional[typing.List[PipePolyline]] = (
            list(pipes) if pipes is not None else None
        )
        self._rng = rng or random.Random()
        self._subscriptions: typing.List[EventSubscription] = []
        self._generation = 0
        self._result: typing.Optional[OverlayResult] = None
        self._fade_complete = True
        self._shown_node_field: typing.Optional[dict] = None

        animation = config.state.animation
        self._loop = AnimationLoop(
            scheduler,
            self._push_frame,
            pulse_amount=animation.pulse_amount,
            pulse_speed=to_hertz(animation.pulse_speed),
            max_update_rate=to_hertz(animation.max_update_rate),
            clock=clock,
        )
        self._config = config
        self._topology_key = _topology_key(config.state)
        self._apply_config(config.state)
        self._config.observe(self.on_config_change)

    @property
    def config(self) -> Configuration:
        """The configuration manager."""
        return self._config

    @property
    def settings(self) -> OverlaySettings:
        """Numeric pipeline settings derived from the configuration."""
        return self._settings

    @property
    def result(self) -> typing.Optional[OverlayResult]:
        """The overlay currently shown, if any."""
        return self._result

    @property
    def animation(self) -> AnimationLoop:
        return self._loop

    @property
    def pipes(self) -> typing.Optional[typing.List[PipePolyline]]:
        """Cached pipe network. `None` until fetched."""
        return self._pipes

    def set_nodes(self, nodes: typing.Iterable[NodeCoordinate]) -> None:
        """Replace the static node coordinates used by subsequent `enable()` calls."""
        self._nodes = list(nodes)

    def is_running(self) -> bool:
        """Whether the overlay is shown and animating."""
        return self._loop.running

    async def load_pipes(self) -> typing.List[PipePolyline]:
        """
        Return the pipe network, fetching it on first use.

        :raises TopologyUnavailable: If no source is configured or the fetch failed.
        """
        if self._pipes is not None:
            return self._pipes
        if self._topology is None:
            raise TopologyUnavailable("No topology source configured")

        topology = self._config.state.topology
        policy = RetryPolicy(
            max_attempts=topology.fetch_attempts,
            delay=to_seconds(topology.fetch_delay),
        )
        pipes = await fetch_pipes(
            self._topology,
            topology.pipes_location,
            topology.pipe_id_property,
            policy=policy,
        )
        self._pipes = pipes
        return pipes

    async def enable(
        self,
        records: typing.Iterable[typing.Union[VulnerabilityRecord, typing.Mapping[str, typing.Any]]],
    ) -> bool:
        """
        Show the overlay for a simulation result, replacing whatever is shown.

        Never raises for missing topology or render layers. Both degrade the output
        and are logged instead.

        :param records: Simulation records, as `VulnerabilityRecord`s or wire dicts.
        :return: Whether the overlay was applied. False if the render layers never
            became ready, or if a newer `enable()`/`disable()` call superseded this one.
        """
        self._generation += 1
        generation = self._generation
        records = structure_records(records)
        logger.info(f"Enabling flood overlay for {len(records)} simulation records")

        pipes: typing.Optional[typing.List[PipePolyline]]
        degraded_reason: typing.Optional[str] = None
        try:
            pipes = await self.load_pipes()
        except TopologyUnavailable as exc:
            logger.warning(f"Pipe topology unavailable; showing flooded nodes only: {exc}")
            pipes = None
            degraded_reason = str(exc)

        if generation != self._generation:
            logger.debug("Overlay enable superseded while loading topology")
            return False

        result = build_overlay(records, self._nodes, pipes, self._settings, self._rng)
        if not await self._wait_for_layers(generation):
            if generation == self._generation:
                self._loop.stop()
                self._result = None
            return False
        if generation != self._generation:
            logger.debug("Overlay enable superseded while waiting for render layers")
            return False

        self._result = result
        self._fade_complete = self._fade_in_duration <= 0
        self._push(
            self._render.line_source,
            segments_to_collection(
                result.segments, None if self._fade_complete else 0.0
            ),
        )
        self._loop.start(
            self._loop.new_state(
                result.fields.node_points,
                result.fields.line_points,
                result.segments,
            )
        )

        if degraded_reason is not None:
            self.notify("overlay.degraded", {"reason": degraded_reason})
        self.notify(
            "overlay.enabled",
            {
                "segments": len(result.segments),
                "node_points": len(result.fields.node_points),
                "line_points": len(result.fields.line_points),
            },
        )
        return True

    def disable(self) -> None:
        """Stop the animation and clear every overlay source. Safe to call repeatedly."""
        self._generation += 1
        was_shown = self._result is not None or self._loop.running
        self._loop.stop()
        self._result = None
        self._fade_complete = True
        self._shown_node_field = None

        for source_id in (
            self._render.line_source,
            self._render.node_field_source,
            self._render.line_field_source,
        ):
            self._push(source_id, empty_collection())

        if was_shown:
            logger.info("Flood overlay disabled")
            self.notify("overlay.disabled")

    @property
    def _layer_ids(self) -> typing.Tuple[str, ...]:
        return (
            self._render.line_layer,
            self._render.node_field_layer,
            self._render.line_field_layer,
        )

    async def _wait_for_layers(self, generation: int) -> bool:
        policy = RetryPolicy(
            max_attempts=self._render.retry_attempts,
            delay=to_seconds(self._render.retry_delay),
        )
        ready = await policy.wait_until(
            lambda: generation != self._generation
            or all(self._target.has_layer(layer_id) for layer_id in self._layer_ids),
            description="render layers",
        )
        if not ready:
            missing = [
                layer_id
                for layer_id in self._layer_ids
                if not self._target.has_layer(layer_id)
            ]
            logger.error(
                f"Render layers {missing} not ready after "
                f"{policy.max_attempts} attempts; giving up"
            )
        return ready

    def _push(self, source_id: str, data: dict) -> None:
        try:
            self._target.set_source_data(source_id, data)
        except RenderTargetNotReady as exc:
            logger.error(f"Cannot push to source {source_id!r}: {exc}")
        except Exception as exc:
            logger.error(f"Failed to push to source {source_id!r}: {exc}", exc_info=True)

    def _push_frame(self, state: AnimationState) -> None:
        """
        Push both density fields of one frame.

        The two fields are shown as a matching pair. If the line field push fails
        after the node field went through, the node field of the last complete
        frame is restored before the error propagates.
        """
        node_field = points_to_collection(state.node_points)
        line_field = points_to_collection(state.line_points)

        self._target.set_source_data(self._render.node_field_source, node_field)
        try:
            self._target.set_source_data(self._render.line_field_source, line_field)
        except Exception:
            logger.warning("Line field push failed; restoring the previous node field")
            self._push(
                self._render.node_field_source,
                self._shown_node_field or empty_collection(),
            )
            raise
        self._shown_node_field = node_field

        if self._fade_complete:
            return

        progress = state.elapsed / self._fade_in_duration
        self._target.set_source_data(
            self._render.line_source,
            segments_to_collection(state.segments, ease_out_cubic(progress)),
        )
        if progress >= 1:
            self._fade_complete = True

    def _apply_config(self, config_state: ConfigurationState) -> None:
        self._settings = OverlaySettings.from_state(config_state)
        self._render: RenderConfig = config_state.render
        animation = config_state.animation
        self._fade_in_duration = to_seconds(animation.fade_in_duration)
        self._loop.pulse_amount = animation.pulse_amount
        self._loop.pulse_speed = to_hertz(animation.pulse_speed)
        self._loop.max_update_rate = to_hertz(animation.max_update_rate)
        self._loop.max_not_ready = self._render.retry_attempts

    def on_config_change(self, config_state: ConfigurationState) -> None:
        """
        Apply configuration changes.

        Animation settings take effect on the next frame. Pipeline settings apply to
        the next `enable()` call. A change of the pipe location drops the cached pipes.
        """
        topology_key = _topology_key(config_state)
        if topology_key != self._topology_key and self._topology is not None:
            logger.info("Pipe topology location changed; dropping cached pipes")
            self._pipes = None
        self._topology_key = topology_key
        self._apply_config(config_state)

    def subscribe(self, event: str, callback: EventCallback) -> None:
        """
        Subscribe to overlay events matching the given pattern.

        :param event: Event pattern to match:
            - "*" for all events
            - "overlay.*" for prefix matching
            - "overlay.enabled" for exact event
            - Regex patterns are also supported

        :param callback: Function to call when event matches
        """
        subscription = EventSubscription(event, callback)
        # Remove existing subscription with same event pattern and callback
        self._subscriptions = [
            sub
            for sub in self._subscriptions
            if not (sub.event == event and sub.callback == callback)
        ]
        self._subscriptions.append(subscription)

    def unsubscribe(self, event: str, callback: EventCallback) -> None:
        """Remove a subscription for the given event and callback."""
        self._subscriptions = [
            sub
            for sub in self._subscriptions
            if not (sub.event == event and sub.callback == callback)
        ]

    def notify(self, event: str, data: typing.Optional[typing.Dict] = None) -> None:
        """
        Notify all subscribers whose event patterns match the given event
        (sequentially, as they registered).

        :param event: The event name to notify.
        :param data: Optional data to pass to the callback.
        """
        if data is not None and not isinstance(data, dict):
            raise ValueError("Data must be a dictionary or None")

        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                try:
                    subscription.callback(event, data)
                except Exception as exc:
                    logger.error(
                        f"Error notifying subscriber for event '{event}': {exc}",
                        exc_info=True,
                    )
