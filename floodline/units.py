import typing
from pint import UnitRegistry
from pint.facets.plain import PlainQuantity

__all__ = [
    "ureg",
    "Quantity",
    "Unit",
    "METERS_PER_COORDINATE_DEGREE",
    "to_coordinate_span",
    "to_seconds",
    "to_hertz",
]

METERS_PER_COORDINATE_DEGREE = 111_320.0
"""Ground distance covered by one degree of longitude/latitude near the equator."""

ureg = UnitRegistry()
# Distances in the overlay are measured directly in (lng, lat) space.
ureg.define(f"coordinate_degree = {METERS_PER_COORDINATE_DEGREE} * meter")
Quantity = ureg.Quantity  # type: ignore[assignment]
Unit = ureg.Unit


def to_coordinate_span(
    distance: typing.Union[PlainQuantity[float], float],
) -> float:
    """
    Convert a ground distance to a span in coordinate degrees.

    Plain numbers are assumed to already be in coordinate degrees.

    :param distance: Distance quantity (e.g. `Quantity(90, "m")`).
    :return: Equivalent span in coordinate degrees.
    """
    if isinstance(distance, PlainQuantity):
        return float(distance.to("coordinate_degree").magnitude)
    return float(distance)


def to_seconds(duration: typing.Union[PlainQuantity[float], float]) -> float:
    """Convert a duration quantity to seconds. Plain numbers are taken as seconds."""
    if isinstance(duration, PlainQuantity):
        return float(duration.to("s").magnitude)
    return float(duration)


def to_hertz(frequency: typing.Union[PlainQuantity[float], float]) -> float:
    """Convert a frequency quantity to hertz. Plain numbers are taken as hertz."""
    if isinstance(frequency, PlainQuantity):
        return float(frequency.to("Hz").magnitude)
    return float(frequency)
