"""
Assembly of the node and line density fields.

The two fields stay separate because the renderer gives each its own radius and
intensity curve, letting node points dominate the diffuse line points.
"""

import logging
import math
import random
import typing

import attrs

from floodline.overlay.classify import classify_risk
from floodline.overlay.sampling import DEFAULT_MAX_WOBBLE_RADIUS
from floodline.types import (
    Coordinate,
    DensityPoint,
    RiskCategory,
    SourceKind,
    VulnerabilityRecord,
)

logger = logging.getLogger(__name__)

__all__ = [
    "NODE_WEIGHTS",
    "DEFAULT_NODE_EXCLUSION_RADIUS",
    "DensityFields",
    "node_weight",
    "build_node_points",
    "filter_line_points",
    "assemble_density_fields",
]

NODE_WEIGHTS: typing.Dict[RiskCategory, float] = {
    RiskCategory.HIGH: 5.0,
    RiskCategory.MEDIUM: 1.5,
    RiskCategory.LOW: 0.6,
    RiskCategory.NO_RISK: 0.2,
}

DEFAULT_NODE_EXCLUSION_RADIUS = 0.00008  # ~9 m


@attrs.define(slots=True, frozen=True)
class DensityFields:
    """The node and line heatmap fields."""

    node_points: typing.List[DensityPoint] = attrs.field(factory=list)
    line_points: typing.List[DensityPoint] = attrs.field(factory=list)


def node_weight(vulnerability: typing.Optional[RiskCategory]) -> float:
    """Heatmap weight for a node of the given category. Unknown counts as no-risk."""
    if vulnerability is None:
        return NODE_WEIGHTS[RiskCategory.NO_RISK]
    return NODE_WEIGHTS[vulnerability]


def build_node_points(
    records: typing.Iterable[VulnerabilityRecord],
    positions: typing.Mapping[str, Coordinate],
    *,
    max_wobble_radius: float = DEFAULT_MAX_WOBBLE_RADIUS,
    rng: typing.Optional[random.Random] = None,
) -> typing.List[DensityPoint]:
    """
    Create one density point per flooded node.

    Records referencing a node without coordinates are skipped and logged.

    :param records: Simulation records. Records without flooding are ignored.
    :param positions: Node positions keyed by node id.
    :param max_wobble_radius: Upper bound of the per-point jitter in coordinate degrees.
    :param rng: Random source for the per-point animation offsets.
    :return: The node density points, in record order.
    """
    rng = rng or random.Random()
    points = []
    missing = 0
    for record in records:
        if record.flood_volume <= 0:
            continue
        position = positions.get(record.node_id)
        if position is None:
            missing += 1
            logger.warning(
                f"No coordinates for flooded node {record.node_id!r}; skipping"
            )
            continue

        vulnerability = classify_risk(record.category)
        points.append(
            DensityPoint(
                position=position,
                source_kind=SourceKind.NODE,
                weight=node_weight(vulnerability),
                vulnerability=vulnerability,
                phase=rng.uniform(0.0, 2 * math.pi),
                wobble_angle=rng.uniform(0.0, 2 * math.pi),
                wobble_radius=rng.uniform(0.0, max_wobble_radius),
                node_id=record.node_id,
                flood_volume=record.flood_volume,
                hours_flooded=record.hours_flooded,
            )
        )

    if missing:
        logger.warning(f"{missing} flooded node(s) had no coordinates")
    return points


def _cell(position: Coordinate, size: float) -> typing.Tuple[int, int]:
    return (math.floor(position[0] / size), math.floor(position[1] / size))


def filter_line_points(
    line_points: typing.Iterable[DensityPoint],
    node_points: typing.Sequence[DensityPoint],
    min_distance: float = DEFAULT_NODE_EXCLUSION_RADIUS,
) -> typing.List[DensityPoint]:
    """
    Drop line points lying within `min_distance` of any node point.

    Node points are bucketed into a grid with cells of `min_distance`, so each line
    point is only compared against node points in its 3x3 cell neighbourhood.
    """
    if min_distance <= 0 or not node_points:
        return list(line_points)

    grid: typing.Dict[typing.Tuple[int, int], typing.List[Coordinate]] = {}
    for point in node_points:
        grid.setdefault(_cell(point.position, min_distance), []).append(point.position)

    kept = []
    for point in line_points:
        cx, cy = _cell(point.position, min_distance)
        lng, lat = point.position
        too_close = any(
            math.hypot(lng - node[0], lat - node[1]) < min_distance
            for dx in (-1, 0, 1)
            for dy in (-1, 0, 1)
            for node in grid.get((cx + dx, cy + dy), ())
        )
        if not too_close:
            kept.append(point)
    return kept


def assemble_density_fields(
    node_points: typing.Sequence[DensityPoint],
    line_points: typing.Iterable[DensityPoint],
    min_distance: float = DEFAULT_NODE_EXCLUSION_RADIUS,
) -> DensityFields:
    """
    Combine node points and sampled line points into the two density fields.

    :param node_points: Points from `build_node_points`.
    :param line_points: Points from the line sampler.
    :param min_distance: Exclusion radius around node points, in coordinate degrees.
    :return: The assembled fields.
    """
    line_points = list(line_points)
    kept = filter_line_points(line_points, node_points, min_distance)
    dropped = len(line_points) - len(kept)
    logger.info(
        f"Assembled density fields: {len(node_points)} node points, "
        f"{len(kept)} line points ({dropped} dropped near nodes)"
    )
    return DensityFields(node_points=list(node_points), line_points=kept)
