"""
Gradient flood segments along matched pipes.

The rendering engine only supports one solid color per line feature, so a color
change along a pipe is expressed by splitting the pipe into short pieces, each
colored by interpolating the two endpoint colors at the piece's midpoint.
"""

import logging
import typing

import attrs

from floodline.overlay.classify import classify_risk, get_line_color
from floodline.overlay.geometry import cumulative_lengths, subdivide
from floodline.overlay.matching import (
    FloodedNodes,
    flooded_nodes,
    match_pipe,
    node_positions,
)
from floodline.types import (
    RGB,
    ColoredSegment,
    Coordinate,
    NodeCoordinate,
    PipePolyline,
    RiskCategory,
    VulnerabilityRecord,
)

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_SUBDIVISIONS",
    "PipeSegments",
    "build_gradient_segments",
    "build_pipe_segments",
]

DEFAULT_SUBDIVISIONS = 10


@attrs.define(slots=True, frozen=True)
class PipeSegments:
    """Flood segments built from pipes, and the nodes they cover."""

    segments: typing.List[ColoredSegment] = attrs.field(factory=list)
    connected_node_ids: typing.FrozenSet[str] = attrs.field(factory=frozenset)
    """Ids of every node at either end of at least one segment"""


def build_gradient_segments(
    vertices: typing.Sequence[Coordinate],
    start_color: RGB,
    end_color: RGB,
    flood_volume: float,
    *,
    pipe_name: typing.Optional[str] = None,
    start_node_id: typing.Optional[str] = None,
    end_node_id: typing.Optional[str] = None,
    start_risk: typing.Optional[RiskCategory] = None,
    end_risk: typing.Optional[RiskCategory] = None,
    subdivisions: int = DEFAULT_SUBDIVISIONS,
) -> typing.List[ColoredSegment]:
    """
    Convert a polyline into solid-colored segments interpolating between two colors.

    If both colors are equal the whole polyline becomes one segment. Otherwise every
    vertex pair becomes one segment, after splitting a two-vertex polyline into
    `subdivisions` equal pieces. Each piece takes the color found at its midpoint's
    fractional arc-length position along the full polyline.

    :param vertices: Polyline vertices, at least 2.
    :param start_color: Color at the first vertex.
    :param end_color: Color at the last vertex.
    :param flood_volume: Flood volume to tag every segment with.
    :param pipe_name: Name of the parent pipe, if any.
    :param start_node_id: Node matched at the first vertex.
    :param end_node_id: Node matched at the last vertex.
    :param start_risk: Risk category of the start node.
    :param end_risk: Risk category of the end node.
    :param subdivisions: Number of pieces for a two-vertex polyline.
    :return: A list of colored segments. Empty if fewer than 2 vertices were given.
    """
    if len(vertices) < 2:
        return []

    if start_color == end_color:
        return [
            ColoredSegment(
                color=start_color,
                flood_volume=flood_volume,
                vertices=vertices,
                start_node_id=start_node_id,
                end_node_id=end_node_id,
                pipe_name=pipe_name,
                vulnerability=start_risk or end_risk,
            )
        ]

    if len(vertices) == 2:
        vertices = subdivide(vertices[0], vertices[1], subdivisions)

    lengths = cumulative_lengths(vertices)
    total = lengths[-1]
    edge_count = len(vertices) - 1
    segments = []
    for index in range(edge_count):
        if total > 0:
            midpoint = (lengths[index] + lengths[index + 1]) / 2 / total
        else:
            midpoint = (index + 0.5) / edge_count

        segments.append(
            ColoredSegment(
                color=start_color.interpolate(end_color, midpoint),
                flood_volume=flood_volume,
                vertices=(vertices[index], vertices[index + 1]),
                start_node_id=start_node_id,
                end_node_id=end_node_id,
                pipe_name=pipe_name,
                segment_index=index,
                vulnerability=start_risk if midpoint < 0.5 else end_risk,
            )
        )
    return segments


def build_pipe_segments(
    records: typing.Union[typing.Iterable[VulnerabilityRecord], FloodedNodes],
    nodes: typing.Union[typing.Iterable[NodeCoordinate], typing.Mapping[str, Coordinate]],
    pipes: typing.Iterable[PipePolyline],
    radius: float,
    *,
    subdivisions: int = DEFAULT_SUBDIVISIONS,
) -> PipeSegments:
    """
    Build gradient flood segments for every pipe whose two ends match flooded nodes.

    :param records: Simulation records (or an already built flooded set).
    :param nodes: Node coordinates (or positions keyed by node id).
    :param pipes: Pipe polylines.
    :param radius: Matching radius in coordinate degrees.
    :param subdivisions: Number of pieces for two-vertex pipes with a color change.
    :return: The segments and the ids of the nodes they connect.
    """
    flooded = records if isinstance(records, dict) else flooded_nodes(records)
    positions = nodes if isinstance(nodes, typing.Mapping) else node_positions(nodes)

    segments: typing.List[ColoredSegment] = []
    connected: typing.Set[str] = set()
    pipe_count = 0
    for pipe in pipes:
        pipe_count += 1
        match = match_pipe(pipe, flooded, positions, radius)
        if not match.is_complete:
            continue

        start = typing.cast(VulnerabilityRecord, match.start)
        end = typing.cast(VulnerabilityRecord, match.end)
        start_risk = classify_risk(start.category)
        end_risk = classify_risk(end.category)
        segments.extend(
            build_gradient_segments(
                pipe.vertices,
                get_line_color(start.category),
                get_line_color(end.category),
                match.flood_volume,
                pipe_name=pipe.id,
                start_node_id=start.node_id,
                end_node_id=end.node_id,
                start_risk=start_risk,
                end_risk=end_risk,
                subdivisions=subdivisions,
            )
        )
        connected.add(start.node_id)
        connected.add(end.node_id)

    logger.info(
        f"Built {len(segments)} gradient segments from {pipe_count} pipes "
        f"({len(flooded)} flooded nodes)"
    )
    return PipeSegments(segments=segments, connected_node_ids=frozenset(connected))
