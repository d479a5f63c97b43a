"""
Node-to-pipe matching.

A pipe is considered flooded only when both of its endpoints lie within the matching
radius of a flooded node. A single flooded node near one end must not color pipes
that merely pass by it.

When several flooded nodes are equally close to an endpoint, the first one in the
flooded set's iteration order wins. Simulation output is not expected to produce
exact ties, so this ordering dependence is accepted rather than resolved.
"""

import logging
import typing

import attrs

from floodline.overlay.geometry import distance
from floodline.types import (
    Coordinate,
    NodeCoordinate,
    PipePolyline,
    VulnerabilityRecord,
)

logger = logging.getLogger(__name__)

__all__ = [
    "FloodedNodes",
    "PipeMatch",
    "flooded_nodes",
    "node_positions",
    "find_nearest_flooded_node",
    "match_pipe",
]

FloodedNodes = typing.Dict[str, VulnerabilityRecord]
"""Flooded records keyed by node id, in input order."""


@attrs.define(slots=True, frozen=True)
class PipeMatch:
    """Flooded nodes matched at the two ends of a pipe."""

    pipe: PipePolyline
    start: typing.Optional[VulnerabilityRecord] = None
    end: typing.Optional[VulnerabilityRecord] = None

    @property
    def is_complete(self) -> bool:
        """Whether both ends matched a flooded node."""
        return self.start is not None and self.end is not None

    @property
    def flood_volume(self) -> float:
        """Average flood volume of the two matched nodes."""
        if self.start is None or self.end is None:
            return 0.0
        return (self.start.flood_volume + self.end.flood_volume) / 2


def flooded_nodes(records: typing.Iterable[VulnerabilityRecord]) -> FloodedNodes:
    """Collect records with a positive flood volume, keyed by node id."""
    flooded: FloodedNodes = {}
    for record in records:
        if record.flood_volume > 0:
            flooded[record.node_id] = record
    return flooded


def node_positions(
    nodes: typing.Iterable[NodeCoordinate],
) -> typing.Dict[str, Coordinate]:
    """
    Index node positions by id.

    The first occurrence of an id wins, so inlets listed before drains take precedence.
    """
    positions: typing.Dict[str, Coordinate] = {}
    for node in nodes:
        positions.setdefault(node.id, node.position)
    return positions


def find_nearest_flooded_node(
    coordinate: Coordinate,
    flooded: FloodedNodes,
    positions: typing.Mapping[str, Coordinate],
    radius: float,
) -> typing.Optional[VulnerabilityRecord]:
    """
    Find the flooded node closest to a coordinate.

    :param coordinate: Coordinate to search around.
    :param flooded: Flooded records keyed by node id.
    :param positions: Node positions keyed by node id.
    :param radius: Matching radius in coordinate degrees. Matches must be strictly closer.
    :return: The nearest flooded record within the radius, or `None`.
    """
    nearest: typing.Optional[VulnerabilityRecord] = None
    min_distance = float("inf")
    for node_id, record in flooded.items():
        position = positions.get(node_id)
        if position is None:
            continue
        node_distance = distance(coordinate, position)
        if node_distance < min_distance:
            min_distance = node_distance
            nearest = record

    if min_distance < radius:
        return nearest
    return None


def match_pipe(
    pipe: PipePolyline,
    flooded: FloodedNodes,
    positions: typing.Mapping[str, Coordinate],
    radius: float,
) -> PipeMatch:
    """
    Match the first and last vertex of a pipe against the flooded nodes.

    :param pipe: The pipe to match.
    :param flooded: Flooded records keyed by node id.
    :param positions: Node positions keyed by node id.
    :param radius: Matching radius in coordinate degrees.
    :return: A `PipeMatch`. Only complete matches should produce flood segments.
    """
    start = find_nearest_flooded_node(pipe.vertices[0], flooded, positions, radius)
    end = find_nearest_flooded_node(pipe.vertices[-1], flooded, positions, radius)
    return PipeMatch(pipe=pipe, start=start, end=end)
