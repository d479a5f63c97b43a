"""
Error types raised inside the overlay engine.

None of these reach the consuming view. They are caught at the overlay boundary and
degrade the output instead.
"""

__all__ = ["FloodlineError", "TopologyUnavailable", "RenderTargetNotReady"]


class FloodlineError(Exception):
    """Base class for overlay engine errors."""


class TopologyUnavailable(FloodlineError):
    """The pipe topology could not be fetched, or contained no pipes."""


class RenderTargetNotReady(FloodlineError):
    """A source or layer does not exist on the rendering engine yet."""

    def __init__(self, layer_id: str) -> None:
        super().__init__(f"Render layer {layer_id!r} is not ready")
        self.layer_id = layer_id
