"""
Planar geometry helpers working directly in (lng, lat) coordinate space.
"""

import bisect
import math
import typing

from floodline.types import Coordinate

__all__ = [
    "distance",
    "cumulative_lengths",
    "interpolate",
    "point_at_fraction",
    "subdivide",
]


def distance(a: Coordinate, b: Coordinate) -> float:
    """Euclidean distance between two coordinates, in coordinate degrees."""
    return math.hypot(a[0] - b[0], a[1] - b[1])


def cumulative_lengths(vertices: typing.Sequence[Coordinate]) -> typing.List[float]:
    """
    Arc length from the first vertex up to each vertex.

    :param vertices: Polyline vertices.
    :return: A list the same length as `vertices`, starting at 0.0.
    """
    lengths = [0.0]
    for previous, current in zip(vertices, vertices[1:]):
        lengths.append(lengths[-1] + distance(previous, current))
    return lengths


def interpolate(a: Coordinate, b: Coordinate, factor: float) -> Coordinate:
    """Linear interpolation between two coordinates."""
    return (a[0] + (b[0] - a[0]) * factor, a[1] + (b[1] - a[1]) * factor)


def point_at_fraction(
    vertices: typing.Sequence[Coordinate],
    lengths: typing.Sequence[float],
    fraction: float,
) -> Coordinate:
    """
    Locate the point at a fractional arc-length position along a polyline.

    :param vertices: Polyline vertices.
    :param lengths: Cumulative lengths from `cumulative_lengths(vertices)`.
    :param fraction: Position along the polyline, 0.0 (start) to 1.0 (end).
    :return: The interpolated coordinate.
    """
    total = lengths[-1]
    if total <= 0:
        return vertices[0]

    target = min(max(fraction, 0.0), 1.0) * total
    # Index of the first vertex at or past the target, clamped to a valid edge
    index = bisect.bisect_left(lengths, target)
    index = min(max(index, 1), len(vertices) - 1)
    start_length = lengths[index - 1]
    edge_length = lengths[index] - start_length
    if edge_length <= 0:
        return vertices[index]
    return interpolate(
        vertices[index - 1], vertices[index], (target - start_length) / edge_length
    )


def subdivide(start: Coordinate, end: Coordinate, count: int) -> typing.List[Coordinate]:
    """Split a straight line into `count` equal pieces, returning `count + 1` vertices."""
    return [interpolate(start, end, i / count) for i in range(count + 1)]
