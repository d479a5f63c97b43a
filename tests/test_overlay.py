import asyncio
import random

import pytest

from floodline.errors import RenderTargetNotReady
from floodline.overlay.classify import get_line_color
from floodline.overlay.core import OverlaySettings, build_overlay
from floodline.overlay.manage import FloodOverlay
from floodline.overlay.render import InMemoryRenderTarget, line_opacity
from floodline.types import RiskCategory, SourceKind, VulnerabilityRecord
from floodline.units import Quantity

PIPES_LOCATION = "drainage/man_pipes.geojson"
PIPES = {
    "type": "FeatureCollection",
    "features": [
        {
            "type": "Feature",
            "properties": {"Name": "P1"},
            "geometry": {"type": "LineString", "coordinates": [[0, 0], [0, 0.001]]},
        }
    ],
}


class _Source:
    def __init__(self, documents=None, fail=False):
        self.documents = documents or {PIPES_LOCATION: PIPES}
        self.fail = fail
        self.calls = 0
        self.gate = asyncio.Event()
        self.gate.set()

    async def fetch(self, location):
        self.calls += 1
        await self.gate.wait()
        if self.fail:
            raise OSError("network unreachable")
        return self.documents[location]


class _FlakyTarget(InMemoryRenderTarget):
    """In-memory target whose pushes to selected sources raise."""

    def __init__(self, layers):
        super().__init__(layers=layers)
        self.failing = {}

    def set_source_data(self, source_id, data):
        if source_id in self.failing:
            raise self.failing[source_id]
        super().set_source_data(source_id, data)


@pytest.fixture
def events():
    return []


@pytest.fixture
def make_overlay(render_target, scenario_nodes, scheduler, config, clock, events):
    def factory(**kwargs):
        kwargs.setdefault("rng", random.Random(0))
        kwargs.setdefault("clock", clock)
        overlay = FloodOverlay(render_target, scenario_nodes, scheduler, config, **kwargs)
        overlay.subscribe("overlay.*", lambda event, data: events.append((event, data)))
        return overlay

    return factory


class TestEndToEndScenario:
    def test_gradient_between_n1_and_n2_only(
        self, scenario_records, scenario_nodes, scenario_pipes
    ):
        result = build_overlay(
            scenario_records, scenario_nodes, scenario_pipes, rng=random.Random(0)
        )
        red = get_line_color(RiskCategory.HIGH)
        amber = get_line_color(RiskCategory.MEDIUM)

        assert len(result.segments) == 10
        for segment in result.segments:
            assert segment.pipe_name == "P1"
            assert {segment.start_node_id, segment.end_node_id} == {"N1", "N2"}
            assert "N3" not in (segment.start_node_id, segment.end_node_id)
        first, last = result.segments[0], result.segments[-1]
        assert first.color.distance(red) < first.color.distance(amber)
        assert last.color.distance(amber) < last.color.distance(red)

        # N1 is reached by the pipe, so no orphan connector is added
        assert all(segment.pipe_name is not None for segment in result.segments)

        assert [point.node_id for point in result.fields.node_points] == ["N1", "N2"]
        assert result.fields.line_points
        assert all(p.source_kind is SourceKind.LINE for p in result.fields.line_points)

    def test_line_points_keep_clear_of_nodes(
        self, scenario_records, scenario_nodes, scenario_pipes
    ):
        settings = OverlaySettings()
        result = build_overlay(scenario_records, scenario_nodes, scenario_pipes, settings)

        for point in result.fields.line_points:
            lng, lat = point.position
            for node in ((0.0, 0.0), (0.0, 0.001)):
                assert ((lng - node[0]) ** 2 + (lat - node[1]) ** 2) ** 0.5 >= (
                    settings.node_exclusion_radius
                )

    def test_line_point_weights(self, scenario_records, scenario_nodes, scenario_pipes):
        result = build_overlay(scenario_records, scenario_nodes, scenario_pipes)

        weights = {p.vulnerability: p.weight for p in result.fields.line_points}
        assert weights[RiskCategory.HIGH] == pytest.approx(5.0 * 0.3)
        assert weights[RiskCategory.MEDIUM] == pytest.approx(1.5 * 0.3)

    def test_orphan_is_connected(self, scenario_nodes, scenario_pipes):
        records = [
            {"node_id": "N1", "category": "High Risk", "flood_volume": 20.0},
            {"node_id": "N3", "category": "Low Risk", "flood_volume": 2.0},
        ]
        result = build_overlay(
            [VulnerabilityRecord(**record) for record in records],
            scenario_nodes,
            scenario_pipes,
        )

        assert len(result.segments) == 1
        assert result.segments[0].pipe_name is None
        assert result.segments[0].start_node_id == "N1"
        assert result.segments[0].end_node_id == "N3"

    def test_without_pipes(self, scenario_records, scenario_nodes):
        result = build_overlay(scenario_records, scenario_nodes, None)

        assert result.segments == []
        assert result.fields.line_points == []
        assert len(result.fields.node_points) == 2


class TestFloodOverlay:
    async def test_enable_pushes_all_sources(
        self, make_overlay, scenario_pipes, render_target, render_config, events, make_wire_record
    ):
        overlay = make_overlay(pipes=scenario_pipes)

        applied = await overlay.enable(
            [
                make_wire_record("N1", "High Risk", 20.0),
                make_wire_record("N2", "Medium Risk", 5.0),
                make_wire_record("N3", "No Risk", 0.0),
            ]
        )

        assert applied
        assert overlay.is_running()
        lines = render_target.sources[render_config.line_source]["features"]
        nodes = render_target.sources[render_config.node_field_source]["features"]
        line_field = render_target.sources[render_config.line_field_source]["features"]
        assert len(lines) == 10
        assert [f["properties"]["nodeId"] for f in nodes] == ["N1", "N2"]
        assert line_field
        assert events[-1][0] == "overlay.enabled"
        assert events[-1][1]["segments"] == 10

    async def test_frames_update_density_fields(
        self, make_overlay, scenario_records, scenario_pipes, render_target, render_config, scheduler, clock
    ):
        overlay = make_overlay(pipes=scenario_pipes)
        await overlay.enable(scenario_records)
        before = render_target.push_counts[render_config.node_field_source]

        clock.advance(0.5)
        scheduler.run_pending()

        assert render_target.push_counts[render_config.node_field_source] == before + 1
        multipliers = [
            f["properties"]["pulseMultiplier"]
            for f in render_target.sources[render_config.node_field_source]["features"]
        ]
        assert all(0.65 <= m <= 1.0 for m in multipliers)

    async def test_gradient_lines_fade_in(
        self, make_overlay, scenario_records, scenario_pipes, render_target, render_config, scheduler, clock
    ):
        overlay = make_overlay(pipes=scenario_pipes)
        await overlay.enable(scenario_records)
        lines = render_target.sources[render_config.line_source]["features"]
        assert all(f["properties"]["opacity"] == 0.0 for f in lines)

        clock.advance(3.5)
        scheduler.run_pending()
        lines = render_target.sources[render_config.line_source]["features"]
        assert lines[0]["properties"]["opacity"] == pytest.approx(line_opacity(12.5))

        pushes = render_target.push_counts[render_config.line_source]
        clock.advance(0.5)
        scheduler.run_pending()
        assert render_target.push_counts[render_config.line_source] == pushes

    async def test_fade_in_can_be_disabled(
        self, make_overlay, config, scenario_records, scenario_pipes, render_target, render_config
    ):
        config.update("animation", fade_in_duration=Quantity(0, "s"))
        overlay = make_overlay(pipes=scenario_pipes)

        await overlay.enable(scenario_records)

        lines = render_target.sources[render_config.line_source]["features"]
        assert "opacity" not in lines[0]["properties"]

    async def test_disable_clears_sources(
        self, make_overlay, scenario_records, scenario_pipes, render_target, render_config, scheduler, events
    ):
        overlay = make_overlay(pipes=scenario_pipes)
        await overlay.enable(scenario_records)

        overlay.disable()

        assert not overlay.is_running()
        assert scheduler.pending == {}
        for source_id in (
            render_config.line_source,
            render_config.node_field_source,
            render_config.line_field_source,
        ):
            assert render_target.sources[source_id]["features"] == []
        assert events[-1] == ("overlay.disabled", None)

        overlay.disable()
        assert [e for e, _ in events].count("overlay.disabled") == 1

    async def test_enable_replaces_previous_result(
        self, make_overlay, scenario_records, scenario_pipes, render_target, render_config
    ):
        overlay = make_overlay(pipes=scenario_pipes)
        await overlay.enable(scenario_records)

        await overlay.enable([scenario_records[0]])

        nodes = render_target.sources[render_config.node_field_source]["features"]
        assert [f["properties"]["nodeId"] for f in nodes] == ["N1"]
        assert render_target.sources[render_config.line_source]["features"] == []
        assert overlay.is_running()

    async def test_pipes_are_fetched_once(self, make_overlay, scenario_records):
        source = _Source()
        overlay = make_overlay(topology=source)

        await overlay.enable(scenario_records)
        await overlay.enable(scenario_records)

        assert source.calls == 1
        assert overlay.pipes is not None and len(overlay.pipes) == 1

    async def test_topology_unavailable_degrades_to_nodes(
        self, make_overlay, scenario_records, render_target, render_config, events
    ):
        source = _Source(fail=True)
        overlay = make_overlay(topology=source)

        applied = await overlay.enable(scenario_records)

        assert applied
        assert overlay.is_running()
        assert source.calls == 3
        assert render_target.sources[render_config.line_source]["features"] == []
        assert render_target.sources[render_config.line_field_source]["features"] == []
        assert len(render_target.sources[render_config.node_field_source]["features"]) == 2
        assert "overlay.degraded" in [event for event, _ in events]

    async def test_render_target_not_ready(
        self, scenario_nodes, scheduler, config, scenario_records, scenario_pipes, caplog
    ):
        target = InMemoryRenderTarget()
        overlay = FloodOverlay(target, scenario_nodes, scheduler, config, pipes=scenario_pipes)

        with caplog.at_level("ERROR"):
            applied = await overlay.enable(scenario_records)

        assert not applied
        assert not overlay.is_running()
        assert target.sources == {}
        assert "not ready" in caplog.text

    async def test_failed_enable_stops_previous_result(
        self, make_overlay, scenario_records, scenario_pipes, render_target, render_config
    ):
        overlay = make_overlay(pipes=scenario_pipes)
        assert await overlay.enable(scenario_records)

        render_target.remove_layer(render_config.line_layer)
        applied = await overlay.enable([scenario_records[1]])

        assert not applied
        assert not overlay.is_running()
        assert overlay.result is None
        assert overlay.animation.state is None

    async def test_animation_stops_when_target_stays_not_ready(
        self, scenario_nodes, scheduler, config, clock, scenario_records, scenario_pipes, render_config, caplog
    ):
        target = _FlakyTarget(
            [render_config.line_layer, render_config.node_field_layer, render_config.line_field_layer]
        )
        overlay = FloodOverlay(
            target, scenario_nodes, scheduler, config, pipes=scenario_pipes, clock=clock
        )
        assert await overlay.enable(scenario_records)

        target.failing[render_config.node_field_source] = RenderTargetNotReady(
            render_config.node_field_layer
        )
        with caplog.at_level("ERROR"):
            for _ in range(50):
                clock.advance(0.1)
                scheduler.run_pending()

        assert not overlay.is_running()
        assert scheduler.pending == {}
        assert caplog.text.count("stopping animation") == 1

    async def test_density_fields_stay_paired_when_line_field_push_fails(
        self, scenario_nodes, scheduler, config, clock, scenario_records, scenario_pipes, render_config
    ):
        target = _FlakyTarget(
            [render_config.line_layer, render_config.node_field_layer, render_config.line_field_layer]
        )
        overlay = FloodOverlay(
            target, scenario_nodes, scheduler, config, pipes=scenario_pipes, clock=clock
        )
        assert await overlay.enable(scenario_records)
        node_field = target.sources[render_config.node_field_source]
        line_field = target.sources[render_config.line_field_source]

        target.failing[render_config.line_field_source] = RuntimeError("line field rejected")
        clock.advance(0.5)
        scheduler.run_pending()

        assert target.sources[render_config.node_field_source] == node_field
        assert target.sources[render_config.line_field_source] == line_field
        assert overlay.is_running()

        del target.failing[render_config.line_field_source]
        clock.advance(0.5)
        scheduler.run_pending()

        assert target.sources[render_config.node_field_source] != node_field

    async def test_disable_supersedes_inflight_enable(
        self, make_overlay, scenario_records, render_target, render_config
    ):
        source = _Source()
        source.gate.clear()
        overlay = make_overlay(topology=source)

        task = asyncio.create_task(overlay.enable(scenario_records))
        await asyncio.sleep(0)
        overlay.disable()
        source.gate.set()

        assert await task is False
        assert not overlay.is_running()
        assert render_target.sources[render_config.node_field_source]["features"] == []

    async def test_newer_enable_wins(
        self, make_overlay, scenario_records, render_target, render_config
    ):
        source = _Source()
        source.gate.clear()
        overlay = make_overlay(topology=source)

        first = asyncio.create_task(overlay.enable(scenario_records))
        await asyncio.sleep(0)
        second = asyncio.create_task(overlay.enable([scenario_records[1]]))
        await asyncio.sleep(0)
        source.gate.set()

        assert await first is False
        assert await second is True
        nodes = render_target.sources[render_config.node_field_source]["features"]
        assert [f["properties"]["nodeId"] for f in nodes] == ["N2"]

    async def test_malformed_records_are_skipped(
        self, make_overlay, scenario_pipes, render_target, render_config, make_wire_record
    ):
        overlay = make_overlay(pipes=scenario_pipes)

        await overlay.enable(
            [make_wire_record("N1", "High Risk", 20.0), {"Node_ID": "N2"}, "junk"]
        )

        nodes = render_target.sources[render_config.node_field_source]["features"]
        assert [f["properties"]["nodeId"] for f in nodes] == ["N1"]

    async def test_subscriber_errors_do_not_propagate(
        self, make_overlay, scenario_records, scenario_pipes, caplog
    ):
        overlay = make_overlay(pipes=scenario_pipes)

        def broken(event, data):
            raise RuntimeError("subscriber exploded")

        overlay.subscribe("overlay.enabled", broken)
        with caplog.at_level("ERROR"):
            assert await overlay.enable(scenario_records)

        assert "subscriber exploded" in caplog.text

    async def test_unsubscribe(self, make_overlay, scenario_records, scenario_pipes):
        overlay = make_overlay(pipes=scenario_pipes)
        seen = []

        def callback(event, data):
            seen.append(event)

        overlay.subscribe("overlay.enabled", callback)
        overlay.unsubscribe("overlay.enabled", callback)
        await overlay.enable(scenario_records)

        assert seen == []


class TestConfigChanges:
    def test_animation_settings_apply_live(self, make_overlay, config):
        overlay = make_overlay()

        config.update("animation", pulse_amount=0.2, max_update_rate=Quantity(10, "Hz"))

        assert overlay.animation.pulse_amount == 0.2
        assert overlay.animation.max_update_rate == 10

    def test_pipeline_settings_follow_config(self, make_overlay, config):
        overlay = make_overlay()

        config.update("matching", radius=Quantity(50, "m"))

        assert overlay.settings.matching_radius == pytest.approx(50 / 111_320)

    async def test_pipe_location_change_drops_cache(
        self, make_overlay, config, scenario_records
    ):
        source = _Source(
            {PIPES_LOCATION: PIPES, "other.geojson": PIPES}
        )
        overlay = make_overlay(topology=source)
        await overlay.enable(scenario_records)

        config.update("topology", pipes_location="other.geojson")
        assert overlay.pipes is None

        await overlay.enable(scenario_records)
        assert source.calls == 2
