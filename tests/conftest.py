"""
Shared fixtures for the floodline tests.

Nothing here touches the network, Redis or a browser: rendering goes to an
`InMemoryRenderTarget` and animation frames are driven by hand through
`ManualScheduler` and `FakeClock`.
"""

import random
import typing

import pytest

from floodline.config.core import Configuration
from floodline.overlay.render import InMemoryRenderTarget
from floodline.storages import InMemoryStorage
from floodline.types import NodeCoordinate, PipePolyline, RenderConfig, VulnerabilityRecord
from floodline.units import Quantity


class ManualScheduler:
    """Scheduler whose frames only run when the test says so."""

    def __init__(self) -> None:
        self.pending: typing.Dict[int, typing.Callable[[], None]] = {}
        self.cancelled: typing.List[int] = []
        self._next_handle = 0

    def schedule_tick(self, callback: typing.Callable[[], None]) -> int:
        self._next_handle += 1
        self.pending[self._next_handle] = callback
        return self._next_handle

    def cancel(self, handle: int) -> None:
        if self.pending.pop(handle, None) is not None:
            self.cancelled.append(handle)

    def run_pending(self) -> int:
        """Run every frame scheduled so far. Returns how many ran."""
        callbacks = list(self.pending.values())
        self.pending.clear()
        for callback in callbacks:
            callback()
        return len(callbacks)


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(42)


@pytest.fixture
def render_config() -> RenderConfig:
    return RenderConfig()


@pytest.fixture
def render_target(render_config: RenderConfig) -> InMemoryRenderTarget:
    """Render target with every overlay layer present."""
    return InMemoryRenderTarget(
        layers=[
            render_config.line_layer,
            render_config.node_field_layer,
            render_config.line_field_layer,
        ]
    )


@pytest.fixture
def config() -> Configuration:
    """In-memory configuration with instant render readiness retries."""
    configuration = Configuration("test", storages=[InMemoryStorage("config")])
    configuration.update("render", retry_delay=Quantity(0, "s"))
    configuration.update("topology", fetch_delay=Quantity(0, "s"))
    return configuration


@pytest.fixture
def scenario_records() -> typing.List[VulnerabilityRecord]:
    """N1 (High, 20), N2 (Medium, 5) and N3 (No Risk, not flooded)."""
    return [
        VulnerabilityRecord(node_id="N1", category="High Risk", flood_volume=20.0),
        VulnerabilityRecord(node_id="N2", category="Medium Risk", flood_volume=5.0),
        VulnerabilityRecord(node_id="N3", category="No Risk", flood_volume=0.0),
    ]


@pytest.fixture
def scenario_nodes() -> typing.List[NodeCoordinate]:
    return [
        NodeCoordinate(id="N1", position=(0.0, 0.0)),
        NodeCoordinate(id="N2", position=(0.0, 0.001)),
        NodeCoordinate(id="N3", position=(0.0, 0.002)),
    ]


@pytest.fixture
def scenario_pipes() -> typing.List[PipePolyline]:
    """A single pipe running from N1 to N2."""
    return [PipePolyline(id="P1", vertices=[(0.0, 0.0), (0.0, 0.001)])]


def wire_record(
    node_id: str, category: str, volume: float, **extra: typing.Any
) -> typing.Dict[str, typing.Any]:
    """Build a simulation record in its wire format."""
    return {
        "Node_ID": node_id,
        "Vulnerability_Category": category,
        "Total_Flood_Volume": volume,
        "Maximum_Rate": extra.get("max_rate", 0.0),
        "Hours_Flooded": extra.get("hours_flooded", 0.0),
        "Time_Before_Overflow": extra.get("time_before_overflow", 0.0),
    }


@pytest.fixture
def make_wire_record() -> typing.Callable[..., typing.Dict[str, typing.Any]]:
    return wire_record
