"""
Output contract towards the rendering engine.

The engine is driven through two operations only: replacing a named source's data
and checking whether a named layer exists. This module converts overlay records to
GeoJSON feature collections and provides render target adapters.
"""

import logging
import typing
from collections import defaultdict

from nicegui import ui

from floodline.errors import RenderTargetNotReady
from floodline.types import ColoredSegment, DensityPoint

logger = logging.getLogger(__name__)

__all__ = [
    "RenderTarget",
    "InMemoryRenderTarget",
    "LeafletRenderTarget",
    "LINE_WIDTH_BREAKPOINTS",
    "LINE_OPACITY_BREAKPOINTS",
    "LINE_WIDTH_EXPRESSION",
    "LINE_OPACITY_EXPRESSION",
    "interpolate_breakpoints",
    "line_width",
    "line_opacity",
    "ease_out_cubic",
    "empty_collection",
    "segment_to_feature",
    "segments_to_collection",
    "point_to_feature",
    "points_to_collection",
]

Breakpoints = typing.Sequence[typing.Tuple[float, float]]

LINE_WIDTH_BREAKPOINTS: Breakpoints = ((0, 4), (10, 8), (25, 14), (50, 20))
"""Flood volume (10^6 litres) to line width (px)"""
LINE_OPACITY_BREAKPOINTS: Breakpoints = ((0, 0.4), (5, 0.6), (15, 0.8))
"""Flood volume (10^6 litres) to line opacity"""


def interpolate_breakpoints(value: float, breakpoints: Breakpoints) -> float:
    """
    Piecewise-linear lookup, clamped to the first and last breakpoint.

    Mirrors the renderer's `["interpolate", ["linear"], ...]` expression.
    """
    first_input, first_output = breakpoints[0]
    if value <= first_input:
        return first_output
    for (low_input, low_output), (high_input, high_output) in zip(
        breakpoints, breakpoints[1:]
    ):
        if value <= high_input:
            factor = (value - low_input) / (high_input - low_input)
            return low_output + (high_output - low_output) * factor
    return breakpoints[-1][1]


def _paint_expression(property_name: str, breakpoints: Breakpoints) -> list:
    expression: list = ["interpolate", ["linear"], ["get", property_name]]
    for stop, output in breakpoints:
        expression.extend([stop, output])
    return expression


LINE_WIDTH_EXPRESSION = _paint_expression("floodVolume", LINE_WIDTH_BREAKPOINTS)
LINE_OPACITY_EXPRESSION = _paint_expression("floodVolume", LINE_OPACITY_BREAKPOINTS)


def line_width(flood_volume: float) -> float:
    """Line width in pixels for a flood volume."""
    return interpolate_breakpoints(flood_volume, LINE_WIDTH_BREAKPOINTS)


def line_opacity(flood_volume: float, progress: float = 1.0) -> float:
    """Line opacity for a flood volume, scaled by fade-in progress (0 to 1)."""
    return interpolate_breakpoints(flood_volume, LINE_OPACITY_BREAKPOINTS) * progress


def ease_out_cubic(progress: float) -> float:
    """Ease-out cubic easing over [0, 1]."""
    progress = min(max(progress, 0.0), 1.0)
    return 1 - (1 - progress) ** 3


def empty_collection() -> dict:
    return {"type": "FeatureCollection", "features": []}


def segment_to_feature(
    segment: ColoredSegment, opacity_progress: typing.Optional[float] = None
) -> dict:
    """Convert a colored segment to a GeoJSON LineString feature."""
    properties: typing.Dict[str, typing.Any] = {
        "pipeName": segment.pipe_name,
        "floodVolume": segment.flood_volume,
        "width": line_width(segment.flood_volume),
        "color": segment.color.to_css(),
        "startNodeId": segment.start_node_id,
        "endNodeId": segment.end_node_id,
        "vulnerability": str(segment.vulnerability) if segment.vulnerability else None,
    }
    if segment.segment_index is not None:
        properties["segmentIndex"] = segment.segment_index
    if opacity_progress is not None:
        properties["opacity"] = line_opacity(segment.flood_volume, opacity_progress)
    return {
        "type": "Feature",
        "properties": properties,
        "geometry": {
            "type": "LineString",
            "coordinates": [list(vertex) for vertex in segment.vertices],
        },
    }


def segments_to_collection(
    segments: typing.Iterable[ColoredSegment],
    opacity_progress: typing.Optional[float] = None,
) -> dict:
    """Convert colored segments to a GeoJSON FeatureCollection."""
    return {
        "type": "FeatureCollection",
        "features": [segment_to_feature(s, opacity_progress) for s in segments],
    }


def point_to_feature(point: DensityPoint) -> dict:
    """Convert a density point to a GeoJSON Point feature at its current render position."""
    properties: typing.Dict[str, typing.Any] = {
        "vulnerability": str(point.vulnerability) if point.vulnerability else None,
        "weight": point.weight,
        "pulseMultiplier": point.pulse_multiplier,
    }
    if point.node_id is not None:
        properties["nodeId"] = point.node_id
        properties["floodVolume"] = point.flood_volume
        properties["hoursFlooded"] = point.hours_flooded
    return {
        "type": "Feature",
        "properties": properties,
        "geometry": {"type": "Point", "coordinates": list(point.render_position)},
    }


def points_to_collection(points: typing.Iterable[DensityPoint]) -> dict:
    """Convert density points to a GeoJSON FeatureCollection."""
    return {
        "type": "FeatureCollection",
        "features": [point_to_feature(point) for point in points],
    }


@typing.runtime_checkable
class RenderTarget(typing.Protocol):
    """The two rendering engine operations the overlay depends on."""

    def set_source_data(self, source_id: str, data: dict) -> None:
        """Replace the data of a named source in one update."""
        ...

    def has_layer(self, layer_id: str) -> bool:
        """Whether a named layer currently exists."""
        ...


class InMemoryRenderTarget:
    """Render target that keeps the last pushed data per source. For headless use and tests."""

    def __init__(self, layers: typing.Optional[typing.Iterable[str]] = None) -> None:
        self.sources: typing.Dict[str, dict] = {}
        self.layers: typing.Set[str] = set(layers or ())
        self.push_counts: typing.Dict[str, int] = defaultdict(int)

    def add_layer(self, layer_id: str) -> None:
        self.layers.add(layer_id)

    def remove_layer(self, layer_id: str) -> None:
        self.layers.discard(layer_id)

    def has_layer(self, layer_id: str) -> bool:
        return layer_id in self.layers

    def set_source_data(self, source_id: str, data: dict) -> None:
        logger.debug(
            f"Setting data for source {source_id!r} ({len(data.get('features', []))} features)"
        )
        self.sources[source_id] = data
        self.push_counts[source_id] += 1


class LeafletRenderTarget:
    """Render target backed by GeoJSON layers on a NiceGUI `ui.leaflet` map."""

    def __init__(self, leaflet: ui.leaflet) -> None:
        self.leaflet = leaflet
        self._layers: typing.Dict[str, typing.Any] = {}
        self._sources: typing.Dict[str, str] = {}

    def add_geojson_layer(
        self,
        layer_id: str,
        source_id: str,
        options: typing.Optional[dict] = None,
    ) -> None:
        """
        Create an empty GeoJSON layer fed by `source_id`.

        :param layer_id: Name of the layer.
        :param source_id: Name of the source whose data the layer displays.
        :param options: Leaflet `L.geoJSON` options.
        """
        if layer_id in self._layers:
            self.remove_layer(layer_id)
        layer = self.leaflet.generic_layer(
            name="geoJSON", args=[empty_collection(), options or {}]
        )
        self._layers[layer_id] = layer
        self._sources[source_id] = layer_id
        logger.debug(f"Added GeoJSON layer {layer_id!r} for source {source_id!r}")

    def remove_layer(self, layer_id: str) -> None:
        layer = self._layers.pop(layer_id, None)
        if layer is None:
            return
        self._sources = {s: l for s, l in self._sources.items() if l != layer_id}
        self.leaflet.remove_layer(layer)

    def has_layer(self, layer_id: str) -> bool:
        return layer_id in self._layers

    def set_source_data(self, source_id: str, data: dict) -> None:
        layer_id = self._sources.get(source_id)
        layer = self._layers.get(layer_id) if layer_id else None
        if layer is None:
            raise RenderTargetNotReady(layer_id or source_id)
        layer.run_method("clearLayers")
        layer.run_method("addData", data)
