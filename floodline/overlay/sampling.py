"""
Sampling of flood segments into heatmap density points.
"""

import math
import random
import typing

from floodline.overlay.geometry import cumulative_lengths, point_at_fraction
from floodline.types import ColoredSegment, DensityPoint, RiskCategory, SourceKind

__all__ = [
    "SAMPLE_MULTIPLIERS",
    "DEFAULT_BASE_DENSITY",
    "DEFAULT_REFERENCE_LENGTH",
    "DEFAULT_MAX_WOBBLE_RADIUS",
    "sample_count",
    "sample_segment",
    "sample_segments",
]

SAMPLE_MULTIPLIERS: typing.Dict[RiskCategory, float] = {
    RiskCategory.HIGH: 3.0,
    RiskCategory.MEDIUM: 2.0,
    RiskCategory.LOW: 1.5,
    RiskCategory.NO_RISK: 1.0,
}

DEFAULT_BASE_DENSITY = 3.0
DEFAULT_REFERENCE_LENGTH = 0.0005  # ~55 m
DEFAULT_MAX_WOBBLE_RADIUS = 0.00008  # ~9 m


def sample_count(
    length: float,
    vulnerability: typing.Optional[RiskCategory],
    base_density: float = DEFAULT_BASE_DENSITY,
    reference_length: float = DEFAULT_REFERENCE_LENGTH,
) -> int:
    """
    Number of points to sample along a segment.

    Short segments are sampled as if they were at least one base-density unit long,
    so the risk multiplier always makes a difference.

    :param length: Segment length in coordinate degrees.
    :param vulnerability: Risk category of the segment. Unknown counts as no-risk.
    :param base_density: Samples per reference length.
    :param reference_length: Reference length in coordinate degrees.
    :return: The sample count, 0 for degenerate segments.
    """
    if length <= 0:
        return 0
    multiplier = SAMPLE_MULTIPLIERS.get(vulnerability, 1.0)  # type: ignore[arg-type]
    scaled = max(1.0, (length / reference_length) * base_density)
    return math.ceil(scaled * multiplier)


def sample_segment(
    segment: ColoredSegment,
    base_density: float = DEFAULT_BASE_DENSITY,
    reference_length: float = DEFAULT_REFERENCE_LENGTH,
    *,
    weight: float = 1.0,
    max_wobble_radius: float = DEFAULT_MAX_WOBBLE_RADIUS,
    rng: typing.Optional[random.Random] = None,
) -> typing.Iterator[DensityPoint]:
    """
    Lazily sample density points along a colored segment.

    Points are evenly spaced by arc length and never placed on the segment's two
    endpoints, which are already represented by node points.

    :param segment: Segment to sample.
    :param base_density: Samples per reference length.
    :param reference_length: Reference length in coordinate degrees.
    :param weight: Heatmap weight of every emitted point.
    :param max_wobble_radius: Upper bound of the per-point jitter in coordinate degrees.
    :param rng: Random source for the per-point animation offsets.
    :return: An iterator of line density points.
    """
    rng = rng or random.Random()
    lengths = cumulative_lengths(segment.vertices)
    count = sample_count(lengths[-1], segment.vulnerability, base_density, reference_length)

    for index in range(count):
        fraction = (index + 1) / (count + 1)
        yield DensityPoint(
            position=point_at_fraction(segment.vertices, lengths, fraction),
            source_kind=SourceKind.LINE,
            weight=weight,
            vulnerability=segment.vulnerability,
            phase=rng.uniform(0.0, 2 * math.pi),
            wobble_angle=rng.uniform(0.0, 2 * math.pi),
            wobble_radius=rng.uniform(0.0, max_wobble_radius),
            flood_volume=segment.flood_volume,
        )


def sample_segments(
    segments: typing.Iterable[ColoredSegment],
    base_density: float = DEFAULT_BASE_DENSITY,
    reference_length: float = DEFAULT_REFERENCE_LENGTH,
    *,
    weights: typing.Optional[typing.Mapping[typing.Optional[RiskCategory], float]] = None,
    max_wobble_radius: float = DEFAULT_MAX_WOBBLE_RADIUS,
    rng: typing.Optional[random.Random] = None,
) -> typing.Iterator[DensityPoint]:
    """Sample several segments in order, weighting points by segment category."""
    rng = rng or random.Random()
    weights = weights or {}
    for segment in segments:
        yield from sample_segment(
            segment,
            base_density,
            reference_length,
            weight=weights.get(segment.vulnerability, 1.0),
            max_wobble_radius=max_wobble_radius,
            rng=rng,
        )
