import math
import random

import pytest

from floodline.overlay.sampling import (
    SAMPLE_MULTIPLIERS,
    sample_count,
    sample_segment,
    sample_segments,
)
from floodline.types import RGB, ColoredSegment, RiskCategory, SourceKind


def _segment(vertices, vulnerability=RiskCategory.HIGH, volume=5.0):
    return ColoredSegment(
        color=RGB(211, 47, 47),
        flood_volume=volume,
        vertices=vertices,
        vulnerability=vulnerability,
    )


class TestSampleCount:
    def test_scales_with_length(self):
        short = sample_count(1.0, RiskCategory.NO_RISK, reference_length=1.0)
        long = sample_count(10.0, RiskCategory.NO_RISK, reference_length=1.0)

        assert short == 3
        assert long == 30

    @pytest.mark.parametrize("length", [1e-7, 0.0001, 0.0005, 0.002])
    def test_high_samples_more_than_low(self, length):
        assert sample_count(length, RiskCategory.HIGH) > sample_count(
            length, RiskCategory.LOW
        )

    def test_multipliers(self):
        assert SAMPLE_MULTIPLIERS == {
            RiskCategory.HIGH: 3.0,
            RiskCategory.MEDIUM: 2.0,
            RiskCategory.LOW: 1.5,
            RiskCategory.NO_RISK: 1.0,
        }

    def test_unknown_category_counts_as_no_risk(self):
        assert sample_count(0.001, None) == sample_count(0.001, RiskCategory.NO_RISK)

    def test_zero_length(self):
        assert sample_count(0.0, RiskCategory.HIGH) == 0


class TestSampleSegment:
    def test_sample_scaling(self):
        vertices = [(0.0, 0.0), (0.0, 0.0003)]

        high = list(sample_segment(_segment(vertices, RiskCategory.HIGH)))
        low = list(sample_segment(_segment(vertices, RiskCategory.LOW)))

        assert len(high) > len(low)

    def test_points_lie_strictly_between_endpoints(self):
        start, end = (0.0, 0.0), (0.001, 0.0)

        points = list(sample_segment(_segment([start, end]), rng=random.Random(1)))

        assert points
        for point in points:
            lng, lat = point.position
            assert 0.0 < lng < 0.001
            assert lat == pytest.approx(0.0)
            assert point.position not in (start, end)

    def test_points_follow_polyline(self):
        vertices = [(0.0, 0.0), (0.001, 0.0), (0.001, 0.001)]

        points = list(sample_segment(_segment(vertices)))

        for point in points:
            lng, lat = point.position
            on_first_edge = lat == pytest.approx(0.0) and 0.0 <= lng <= 0.001
            on_second_edge = lng == pytest.approx(0.001) and 0.0 <= lat <= 0.001
            assert on_first_edge or on_second_edge

    def test_point_attributes(self):
        segment = _segment([(0.0, 0.0), (0.001, 0.0)], RiskCategory.MEDIUM, volume=8.0)

        points = list(
            sample_segment(segment, weight=0.45, max_wobble_radius=0.00005, rng=random.Random(7))
        )

        for point in points:
            assert point.source_kind is SourceKind.LINE
            assert point.weight == 0.45
            assert point.vulnerability is RiskCategory.MEDIUM
            assert point.flood_volume == 8.0
            assert 0.0 <= point.phase <= 2 * math.pi
            assert 0.0 <= point.wobble_angle <= 2 * math.pi
            assert 0.0 <= point.wobble_radius <= 0.00005
            assert point.render_position == point.position
            assert point.pulse_multiplier == 1.0

    def test_zero_length_segment_yields_nothing(self):
        assert list(sample_segment(_segment([(1.0, 1.0), (1.0, 1.0)]))) == []

    def test_is_lazy(self):
        points = sample_segment(_segment([(0.0, 0.0), (0.01, 0.0)]))

        assert next(points).source_kind is SourceKind.LINE


class TestSampleSegments:
    def test_weights_by_category(self):
        segments = [
            _segment([(0.0, 0.0), (0.001, 0.0)], RiskCategory.HIGH),
            _segment([(0.0, 1.0), (0.001, 1.0)], RiskCategory.LOW),
        ]

        points = list(
            sample_segments(
                segments, weights={RiskCategory.HIGH: 1.5, RiskCategory.LOW: 0.18}
            )
        )

        assert {p.weight for p in points if p.vulnerability is RiskCategory.HIGH} == {1.5}
        assert {p.weight for p in points if p.vulnerability is RiskCategory.LOW} == {0.18}
