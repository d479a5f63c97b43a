import enum
import math
import re
import typing
import attrs
import cattrs
from cattrs.gen import make_dict_structure_fn, make_dict_unstructure_fn, override
from pint.facets.plain import PlainQuantity

from floodline.units import Quantity, Unit


def structure_quantity(obj: typing.Any, _) -> PlainQuantity:
    """Convert a dict with 'magnitude' and 'units' to a Pint Quantity."""
    if isinstance(obj, PlainQuantity):
        return Quantity(obj.magnitude, obj.units)
    if isinstance(obj, dict) and "magnitude" in obj and "units" in obj:
        return Quantity(obj["magnitude"], obj["units"])
    raise ValueError(f"Cannot structure {obj} as PlainQuantity")


def unstructure_quantity(obj: PlainQuantity) -> dict:
    """Convert a Pint Quantity to a dict with 'magnitude' and 'units'."""
    return {"magnitude": obj.magnitude, "units": str(obj.units)}


def structure_unit(obj: typing.Any, _: typing.Type[Unit]) -> Unit:
    """Convert a string to a Pint Unit."""
    if isinstance(obj, Unit):
        return obj
    if isinstance(obj, str):
        return Unit(obj)
    raise ValueError(f"Cannot structure {obj} as Unit")


def unstructure_unit(obj: Unit) -> str:
    """Convert a Pint Unit to a string."""
    return str(obj)


converter = cattrs.Converter()
converter.register_structure_hook(PlainQuantity, structure_quantity)
converter.register_unstructure_hook(PlainQuantity, unstructure_quantity)
converter.register_structure_hook(Unit, structure_unit)
converter.register_unstructure_hook(Unit, unstructure_unit)


Coordinate = typing.Tuple[float, float]
"""A `(lng, lat)` pair."""


def _to_coordinate(value: typing.Sequence[float]) -> Coordinate:
    return (float(value[0]), float(value[1]))


def _to_vertices(
    values: typing.Iterable[typing.Sequence[float]],
) -> typing.Tuple[Coordinate, ...]:
    return tuple(_to_coordinate(value) for value in values)


class RiskCategory(str, enum.Enum):
    """Flood risk classification of a network node."""

    NO_RISK = "No Risk"
    LOW = "Low Risk"
    MEDIUM = "Medium Risk"
    HIGH = "High Risk"

    def __str__(self) -> str:
        return self.value


class SourceKind(str, enum.Enum):
    """Origin of a density point."""

    NODE = "node"
    """Point placed on a flooded network node."""
    LINE = "line"
    """Point sampled along a colored flood segment."""

    def __str__(self) -> str:
        return self.value


def _round_channel(value: float) -> int:
    return max(0, min(255, int(math.floor(value + 0.5))))


@attrs.define(slots=True, frozen=True)
class RGB:
    """An RGB color with float channels in the 0-255 range."""

    r: float
    g: float
    b: float

    @classmethod
    def from_hex(cls, value: str) -> "RGB":
        """Parse a `#rrggbb` color string."""
        value = value.lstrip("#")
        if len(value) != 6:
            raise ValueError(f"Invalid hex color: {value!r}")
        return cls(int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16))

    @classmethod
    def from_css(cls, value: str) -> "RGB":
        """Parse an `rgb(r, g, b)` color string."""
        channels = re.findall(r"\d+(?:\.\d+)?", value)
        if len(channels) < 3:
            raise ValueError(f"Invalid rgb color: {value!r}")
        return cls(*(float(channel) for channel in channels[:3]))

    def to_css(self) -> str:
        """Format as `rgb(r, g, b)` with integer channels."""
        return f"rgb({_round_channel(self.r)}, {_round_channel(self.g)}, {_round_channel(self.b)})"

    def to_hex(self) -> str:
        """Format as `#rrggbb`."""
        return f"#{_round_channel(self.r):02x}{_round_channel(self.g):02x}{_round_channel(self.b):02x}"

    def interpolate(self, other: "RGB", factor: float) -> "RGB":
        """
        Linearly interpolate each channel towards `other`.

        :param other: Target color (reached at `factor == 1`).
        :param factor: Interpolation factor, usually within [0, 1].
        :return: The interpolated color.
        """
        return RGB(
            self.r + (other.r - self.r) * factor,
            self.g + (other.g - self.g) * factor,
            self.b + (other.b - self.b) * factor,
        )

    def distance(self, other: "RGB") -> float:
        """Euclidean distance between two colors in RGB space."""
        return math.sqrt(
            (self.r - other.r) ** 2 + (self.g - other.g) ** 2 + (self.b - other.b) ** 2
        )

    def __str__(self) -> str:
        return self.to_css()


@attrs.define(slots=True, frozen=True)
class ColorPair:
    """Fill and stroke colors for a node marker."""

    fill: RGB
    """Marker fill color"""
    stroke: RGB
    """Darker marker outline color"""


@attrs.define(slots=True, frozen=True)
class VulnerabilityRecord:
    """Simulation result for a single network node."""

    node_id: str
    """Identifier of the simulated node"""
    category: str
    """Free-text vulnerability category, e.g. 'High Risk'"""
    flood_volume: float = attrs.field(validator=attrs.validators.ge(0))
    """Total flood volume (10^6 litres)"""
    max_rate: float = 0.0
    """Maximum overflow rate (CMS)"""
    hours_flooded: float = 0.0
    """Number of hours the node was flooded"""
    time_before_overflow: float = 0.0
    """Minutes between rainfall start and overflow"""

    @property
    def is_flooded(self) -> bool:
        return self.flood_volume > 0


@attrs.define(slots=True, frozen=True)
class NodeCoordinate:
    """Static location of a network node (inlet or drain)."""

    id: str
    position: Coordinate = attrs.field(converter=_to_coordinate)
    """`(lng, lat)` of the node"""


@attrs.define(slots=True, frozen=True)
class PipePolyline:
    """Static geometry of a pipe."""

    id: str
    vertices: typing.Tuple[Coordinate, ...] = attrs.field(converter=_to_vertices)
    """Pipe vertices as `(lng, lat)` pairs, from upstream to downstream"""

    @vertices.validator
    def _check_vertices(self, attribute, value) -> None:
        if len(value) < 2:
            raise ValueError(f"Pipe {self.id!r} needs at least 2 vertices")


@attrs.define(slots=True, frozen=True)
class ColoredSegment:
    """A flood line with a single solid color."""

    color: RGB
    """Solid color of the segment"""
    flood_volume: float
    """Average flood volume of the two endpoint nodes"""
    vertices: typing.Tuple[Coordinate, ...] = attrs.field(converter=_to_vertices)
    """Segment geometry as `(lng, lat)` pairs"""
    start_node_id: typing.Optional[str] = None
    """Node matched at the start of the parent pipe/connector"""
    end_node_id: typing.Optional[str] = None
    """Node matched at the end of the parent pipe/connector"""
    pipe_name: typing.Optional[str] = None
    """Name of the parent pipe. `None` for synthetic orphan connectors."""
    segment_index: typing.Optional[int] = None
    """Position of this piece within its parent pipe, if it was split"""
    vulnerability: typing.Optional[RiskCategory] = None
    """Risk category the segment inherits for sampling and styling"""


_frozen = attrs.setters.frozen


@attrs.define(slots=True)
class DensityPoint:
    """
    A weighted heatmap point.

    Everything except `pulse_multiplier` and `render_position` is fixed at creation.
    Those two are recomputed every animation tick from elapsed time and the fixed fields.
    """

    position: Coordinate = attrs.field(converter=_to_coordinate, on_setattr=_frozen)
    """Base `(lng, lat)` of the point"""
    source_kind: SourceKind = attrs.field(on_setattr=_frozen)
    weight: float = attrs.field(on_setattr=_frozen)
    """Heatmap weight"""
    vulnerability: typing.Optional[RiskCategory] = attrs.field(on_setattr=_frozen)
    phase: float = attrs.field(on_setattr=_frozen)
    """Pulse phase offset in radians"""
    wobble_angle: float = attrs.field(on_setattr=_frozen)
    """Direction of the positional jitter in radians"""
    wobble_radius: float = attrs.field(on_setattr=_frozen)
    """Amplitude of the positional jitter in coordinate degrees"""
    node_id: typing.Optional[str] = attrs.field(default=None, on_setattr=_frozen)
    flood_volume: float = attrs.field(default=0.0, on_setattr=_frozen)
    hours_flooded: float = attrs.field(default=0.0, on_setattr=_frozen)
    pulse_multiplier: float = 1.0
    render_position: Coordinate = attrs.field(
        default=attrs.Factory(lambda self: self.position, takes_self=True)
    )


converter.register_structure_hook(
    VulnerabilityRecord,
    make_dict_structure_fn(
        VulnerabilityRecord,
        converter,
        node_id=override(rename="Node_ID"),
        category=override(rename="Vulnerability_Category"),
        flood_volume=override(rename="Total_Flood_Volume"),
        max_rate=override(rename="Maximum_Rate"),
        hours_flooded=override(rename="Hours_Flooded"),
        time_before_overflow=override(rename="Time_Before_Overflow"),
    ),
)
converter.register_unstructure_hook(
    VulnerabilityRecord,
    make_dict_unstructure_fn(
        VulnerabilityRecord,
        converter,
        node_id=override(rename="Node_ID"),
        category=override(rename="Vulnerability_Category"),
        flood_volume=override(rename="Total_Flood_Volume"),
        max_rate=override(rename="Maximum_Rate"),
        hours_flooded=override(rename="Hours_Flooded"),
        time_before_overflow=override(rename="Time_Before_Overflow"),
    ),
)


@attrs.define(slots=True, frozen=True)
class GlobalConfig:
    """Global application configuration"""

    theme_color: str = "blue"
    """Primary theme color for the host application"""
    auto_save: bool = True
    """Whether to auto-save configurations"""


@attrs.define(slots=True, frozen=True)
class MatchingConfig:
    """Node-to-pipe matching settings"""

    radius: Quantity = attrs.field(factory=lambda: Quantity(90, "m"))  # type: ignore
    """Maximum distance between a pipe endpoint and a flooded node"""


@attrs.define(slots=True, frozen=True)
class GradientConfig:
    """Gradient segment settings"""

    subdivisions: int = attrs.field(default=10, validator=attrs.validators.ge(1))
    """Number of pieces a two-vertex pipe is split into when its end colors differ"""


@attrs.define(slots=True, frozen=True)
class SamplingConfig:
    """Line sampling and density field settings"""

    base_density: float = attrs.field(default=3.0, validator=attrs.validators.gt(0))
    """Samples per reference length"""
    reference_length: Quantity = attrs.field(factory=lambda: Quantity(55, "m"))  # type: ignore
    """Reference segment length for the base density"""
    max_wobble_radius: Quantity = attrs.field(factory=lambda: Quantity(9, "m"))  # type: ignore
    """Upper bound of the per-point positional jitter"""
    node_exclusion_radius: Quantity = attrs.field(factory=lambda: Quantity(9, "m"))  # type: ignore
    """Line points closer than this to a node point are dropped"""
    line_weight_factor: float = attrs.field(
        default=0.3,
        validator=attrs.validators.and_(attrs.validators.gt(0), attrs.validators.le(1)),
    )
    """Line point weight as a fraction of the node weight of the same category"""


@attrs.define(slots=True, frozen=True)
class AnimationConfig:
    """Animation loop settings"""

    pulse_amount: float = attrs.field(
        default=0.35,
        validator=attrs.validators.and_(attrs.validators.ge(0), attrs.validators.le(1)),
    )
    """Peak-to-peak size of the pulse"""
    pulse_speed: Quantity = attrs.field(factory=lambda: Quantity(0.3, "Hz"))  # type: ignore
    """Pulse and wobble frequency"""
    max_update_rate: Quantity = attrs.field(factory=lambda: Quantity(20, "Hz"))  # type: ignore
    """Maximum number of pushes per second"""
    frame_interval: Quantity = attrs.field(factory=lambda: Quantity(1 / 60, "s"))  # type: ignore
    """Interval of timer based schedulers"""
    fade_in_duration: Quantity = attrs.field(factory=lambda: Quantity(3, "s"))  # type: ignore
    """Duration of the gradient line fade-in. Zero disables fading."""


@attrs.define(slots=True, frozen=True)
class RenderConfig:
    """Rendering engine source/layer names and readiness retry policy"""

    line_source: str = "flood-3d"
    line_layer: str = "flood-gradient-layer"
    node_field_source: str = "flood-heatmap-nodes"
    node_field_layer: str = "flood-heatmap-nodes-layer"
    line_field_source: str = "flood-heatmap-lines"
    line_field_layer: str = "flood-heatmap-lines-layer"
    retry_attempts: int = attrs.field(default=5, validator=attrs.validators.ge(1))
    """Number of times to check for render layers before giving up"""
    retry_delay: Quantity = attrs.field(factory=lambda: Quantity(0.2, "s"))  # type: ignore
    """Fixed delay between readiness checks"""


@attrs.define(slots=True, frozen=True)
class TopologyConfig:
    """Network topology settings"""

    pipes_location: str = "drainage/man_pipes.geojson"
    """Path or URL of the pipe feature collection"""
    inlets_location: str = "drainage/inlets.geojson"
    drains_location: str = "drainage/storm_drains.geojson"
    pipe_id_property: str = "Name"
    node_id_property: str = "In_Name"
    fetch_attempts: int = attrs.field(default=3, validator=attrs.validators.ge(1))
    """Number of pipe fetch attempts"""
    fetch_delay: Quantity = attrs.field(factory=lambda: Quantity(0.5, "s"))  # type: ignore
    """Fixed delay between pipe fetch attempts"""


EventCallback = typing.Callable[[str, typing.Any], None]


class EventSubscription:
    """Represents a subscription to an event or events with pattern matching."""

    def __init__(self, event: str, callback: EventCallback):
        """
        Initialize event subscription.

        :param event: Event pattern or regex to match (e.g "*" for all, "overlay.*" for prefix, or exact event name)
        :param callback: Callback function to execute when event matches
        """
        self.event = event
        self.callback = callback
        self._is_wildcard = event == "*"
        self._is_prefix = event.endswith("*") and not self._is_wildcard
        self._prefix = event[:-1] if self._is_prefix else None
        self._is_regex = False

        # Dots are common in plain event names, so they alone don't make a regex
        if any(char in event for char in r"[](){}+?^$|\\") and not self._is_prefix:
            self._is_regex = True
            try:
                self._regex = re.compile(event)
            except re.error:
                self._is_regex = False

    def matches(self, event: str) -> bool:
        """Check if the event matches this subscription's event pattern."""
        if self._is_wildcard:
            return True
        if self._is_regex:
            return bool(self._regex.match(event))
        if self._is_prefix:
            return event.startswith(self._prefix)
        return event == self.event
