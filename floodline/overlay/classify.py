"""
Vulnerability category classification and color palettes.

Every function in this module is total: any string, including an empty or unrelated
one, yields a usable result.
"""

import typing

from floodline.types import RGB, ColorPair, RiskCategory

__all__ = [
    "classify_risk",
    "get_color_pair",
    "get_line_color",
    "DEFAULT_COLOR_PAIR",
    "DEFAULT_LINE_COLOR",
]

# Substring tests run in this order; "high" must win over "no" in e.g. "not high".
_PRIORITY: typing.Tuple[typing.Tuple[str, RiskCategory], ...] = (
    ("high", RiskCategory.HIGH),
    ("medium", RiskCategory.MEDIUM),
    ("low", RiskCategory.LOW),
    ("no", RiskCategory.NO_RISK),
)

# Exact lookup for short category codes, which the substring tests cannot catch.
_CODES: typing.Dict[str, RiskCategory] = {
    "h": RiskCategory.HIGH,
    "m": RiskCategory.MEDIUM,
    "l": RiskCategory.LOW,
    "n": RiskCategory.NO_RISK,
}

FILL_COLORS: typing.Dict[RiskCategory, RGB] = {
    RiskCategory.HIGH: RGB.from_hex("#D32F2F"),
    RiskCategory.MEDIUM: RGB.from_hex("#FFA000"),
    RiskCategory.LOW: RGB.from_hex("#FFF176"),
    RiskCategory.NO_RISK: RGB.from_hex("#388E3C"),
}
STROKE_COLORS: typing.Dict[RiskCategory, RGB] = {
    RiskCategory.HIGH: RGB.from_hex("#8B0000"),  # Dark red
    RiskCategory.MEDIUM: RGB.from_hex("#B36200"),  # Dark amber
    RiskCategory.LOW: RGB.from_hex("#C4B000"),  # Dark yellow
    RiskCategory.NO_RISK: RGB.from_hex("#1B5E20"),  # Dark green
}
LINE_COLORS: typing.Dict[RiskCategory, RGB] = {
    RiskCategory.HIGH: RGB(211, 47, 47),
    RiskCategory.MEDIUM: RGB(255, 160, 0),
    RiskCategory.LOW: RGB(253, 216, 53),
    RiskCategory.NO_RISK: RGB(56, 142, 60),
}

DEFAULT_COLOR_PAIR = ColorPair(fill=RGB.from_hex("#5687ca"), stroke=RGB.from_hex("#00346c"))
DEFAULT_LINE_COLOR = RGB(33, 150, 243)  # Water blue


def classify_risk(category: typing.Optional[str]) -> typing.Optional[RiskCategory]:
    """
    Derive a risk category from a free-text vulnerability category.

    :param category: Category text as produced by the simulation, e.g. "High Risk".
    :return: The matching `RiskCategory`, or `None` if the text is not recognized.
    """
    if not category:
        return None
    normalized = category.lower().strip()
    for needle, risk in _PRIORITY:
        if needle in normalized:
            return risk
    return _CODES.get(normalized)


def get_color_pair(category: typing.Optional[str]) -> ColorPair:
    """
    Get the node marker fill and stroke colors for a vulnerability category.

    Unrecognized categories get a neutral blue pair.
    """
    risk = classify_risk(category)
    if risk is None:
        return DEFAULT_COLOR_PAIR
    return ColorPair(fill=FILL_COLORS[risk], stroke=STROKE_COLORS[risk])


def get_line_color(
    category: typing.Union[str, RiskCategory, None],
) -> RGB:
    """Get the flood line color for a vulnerability category."""
    risk = category if isinstance(category, RiskCategory) else classify_risk(category)
    if risk is None:
        return DEFAULT_LINE_COLOR
    return LINE_COLORS[risk]
