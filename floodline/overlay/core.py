"""
Builds the complete flood overlay from one simulation result.

Runs the synchronous part of the pipeline in order: classification, matching and
gradient segments, orphan connectors, line sampling and density field assembly.
"""

import logging
import random
import typing

import attrs

from floodline.overlay.density import (
    DensityFields,
    NODE_WEIGHTS,
    assemble_density_fields,
    build_node_points,
)
from floodline.overlay.gradients import build_pipe_segments
from floodline.overlay.matching import flooded_nodes, node_positions
from floodline.overlay.orphans import connect_orphans
from floodline.overlay.sampling import sample_segments
from floodline.types import (
    ColoredSegment,
    NodeCoordinate,
    PipePolyline,
    RiskCategory,
    VulnerabilityRecord,
)
from floodline.units import METERS_PER_COORDINATE_DEGREE, to_coordinate_span

if typing.TYPE_CHECKING:
    from floodline.config.core import ConfigurationState

logger = logging.getLogger(__name__)

__all__ = ["OverlaySettings", "OverlayResult", "build_overlay"]


@attrs.define(slots=True, frozen=True)
class OverlaySettings:
    """Numeric pipeline settings, with every distance in coordinate degrees."""

    matching_radius: float = 90.0 / METERS_PER_COORDINATE_DEGREE
    subdivisions: int = 10
    base_density: float = 3.0
    reference_length: float = 0.0005
    max_wobble_radius: float = 0.00008
    node_exclusion_radius: float = 0.00008
    line_weight_factor: float = 0.3

    @classmethod
    def from_state(cls, state: "ConfigurationState") -> "OverlaySettings":
        """Derive settings from a configuration state, converting its quantities."""
        return cls(
            matching_radius=to_coordinate_span(state.matching.radius),
            subdivisions=state.gradient.subdivisions,
            base_density=state.sampling.base_density,
            reference_length=to_coordinate_span(state.sampling.reference_length),
            max_wobble_radius=to_coordinate_span(state.sampling.max_wobble_radius),
            node_exclusion_radius=to_coordinate_span(
                state.sampling.node_exclusion_radius
            ),
            line_weight_factor=state.sampling.line_weight_factor,
        )

    @property
    def line_weights(self) -> typing.Dict[typing.Optional[RiskCategory], float]:
        """Line point weight per category. Unknown categories weigh as no-risk."""
        weights: typing.Dict[typing.Optional[RiskCategory], float] = {
            category: weight * self.line_weight_factor
            for category, weight in NODE_WEIGHTS.items()
        }
        weights[None] = weights[RiskCategory.NO_RISK]
        return weights


@attrs.define(slots=True, frozen=True)
class OverlayResult:
    """Everything the overlay renders for one simulation result."""

    segments: typing.List[ColoredSegment] = attrs.field(factory=list)
    """Gradient pipe segments followed by orphan connectors"""
    fields: DensityFields = attrs.field(factory=DensityFields)

    @property
    def is_empty(self) -> bool:
        return not (self.segments or self.fields.node_points or self.fields.line_points)


def build_overlay(
    records: typing.Iterable[VulnerabilityRecord],
    nodes: typing.Iterable[NodeCoordinate],
    pipes: typing.Optional[typing.Iterable[PipePolyline]],
    settings: typing.Optional[OverlaySettings] = None,
    rng: typing.Optional[random.Random] = None,
) -> OverlayResult:
    """
    Build the gradient lines and density fields for a simulation result.

    :param records: Simulation records with unique node ids.
    :param nodes: Node coordinates. The first coordinate of a repeated id wins.
    :param pipes: Pipe polylines, or `None` when the topology is unavailable. Without
        pipes only the node density field is produced.
    :param settings: Pipeline settings. Defaults are used if not given.
    :param rng: Random source for per-point animation offsets.
    :return: The overlay result.
    """
    settings = settings or OverlaySettings()
    rng = rng or random.Random()
    records = list(records)
    positions = node_positions(nodes)
    flooded = flooded_nodes(records)

    node_points = build_node_points(
        records, positions, max_wobble_radius=settings.max_wobble_radius, rng=rng
    )
    if pipes is None:
        logger.info("No pipe topology; building the node density field only")
        return OverlayResult(
            segments=[], fields=assemble_density_fields(node_points, [])
        )

    pipe_segments = build_pipe_segments(
        flooded,
        positions,
        pipes,
        settings.matching_radius,
        subdivisions=settings.subdivisions,
    )
    connectors = connect_orphans(flooded, positions, pipe_segments.connected_node_ids)
    segments = [*pipe_segments.segments, *connectors]

    line_points = sample_segments(
        segments,
        settings.base_density,
        settings.reference_length,
        weights=settings.line_weights,
        max_wobble_radius=settings.max_wobble_radius,
        rng=rng,
    )
    fields = assemble_density_fields(
        node_points, line_points, settings.node_exclusion_radius
    )
    return OverlayResult(segments=segments, fields=fields)
