"""
Main Entry Point for the Floodline Map Application.
"""

import hashlib
import logging
import os
import typing
import redis
import fastapi
import orjson
from pathlib import Path

from dotenv import find_dotenv, load_dotenv
from nicegui import Client, ui

from floodline.config import ConfigurationState, Configuration
from floodline.overlay.animation import NiceGUIScheduler
from floodline.overlay.manage import FloodOverlay
from floodline.overlay.render import LeafletRenderTarget
from floodline.storages import JSONFileStorage, RedisStorage
from floodline.topology import (
    GeoJSONFileSource,
    HTTPTopologySource,
    StorageTopologySource,
    TopologySource,
    fetch_nodes,
)
from floodline.units import to_seconds

load_dotenv(
    find_dotenv(Path.cwd() / ".env", raise_error_if_not_found=False), encoding="utf-8"
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - [%(name)s:%(funcName)s:%(lineno)d] - %(levelname)s - %(message)s",
    force=True,
)

logger = logging.getLogger(__name__)

DEFAULT_CENTER = (10.337, 123.926)  # (lat, lng)
DEFAULT_ZOOM = 15
RESULTS_PATH = Path(os.getenv("FLOOD_RESULTS_PATH", "data/simulation_results.json"))

LINE_LAYER_OPTIONS = {
    ":style": "f => ({color: f.properties.color, weight: f.properties.width, opacity: f.properties.opacity ?? 0.8})",
}
NODE_FIELD_OPTIONS = {
    ":pointToLayer": "(f, latlng) => L.circleMarker(latlng, {radius: 6 * f.properties.weight ** 0.5 * f.properties.pulseMultiplier, stroke: false, fillColor: '#d32f2f', fillOpacity: 0.35})",
}
LINE_FIELD_OPTIONS = {
    ":pointToLayer": "(f, latlng) => L.circleMarker(latlng, {radius: 4 * f.properties.pulseMultiplier, stroke: false, fillColor: '#2196f3', fillOpacity: 0.25})",
}


redis_client: typing.Optional[redis.Redis] = None
if redis_url := os.getenv("REDIS_URL"):
    try:
        redis_client = redis.Redis.from_url(redis_url)
        redis_client.ping()
        config_storage = RedisStorage(redis_client, namespace="config")
        logger.info("Using `RedisStorage` for config storage")
    except redis.RedisError as exc:
        logger.error(
            f"Failed to connect to Redis: {exc}, falling back to file storage",
            exc_info=True,
        )
        redis_client = None

if redis_client is None:
    config_storage = JSONFileStorage(
        storage_dir=Path.cwd() / ".floodline/configs", namespace="config"
    )
    logger.info("Using `JSONFileStorage` for config storage")


def build_topology_source() -> TopologySource:
    """Pick the topology source from the environment, cached in Redis when available."""
    source: TopologySource
    if base_url := os.getenv("TOPOLOGY_BASE_URL"):
        source = HTTPTopologySource(base_url)
        logger.info(f"Fetching topology from {base_url}")
    else:
        data_dir = Path(os.getenv("TOPOLOGY_DIR", "public"))
        source = GeoJSONFileSource(data_dir)
        logger.info(f"Reading topology from {data_dir}")

    if redis_client is not None:
        cache = RedisStorage(redis_client, namespace="topology", ttl=3600)
        source = StorageTopologySource(cache, upstream=source)
    return source


topology_source = build_topology_source()


def load_simulation_results() -> typing.List[dict]:
    """Read the latest simulation results. Missing or unreadable files yield no records."""
    if not RESULTS_PATH.exists():
        logger.warning(f"No simulation results found at {RESULTS_PATH}")
        return []
    try:
        with RESULTS_PATH.open("rb") as f:
            data = orjson.loads(f.read())
    except orjson.JSONDecodeError as exc:
        logger.error(f"Failed to read simulation results: {exc}", exc_info=True)
        return []
    if not isinstance(data, list):
        logger.error(f"Simulation results in {RESULTS_PATH} are not a list")
        return []
    return data


@ui.page("/", title="Floodline")
async def root(client: Client) -> ui.element:
    """Root page handler for the flood overlay map."""
    request = client.request
    assert request is not None
    user_agent = request.headers.get("user-agent", "unknown")
    session_id = hashlib.sha256(f"client-{user_agent}".encode()).hexdigest()
    logger.info(f"Client connected to root page, session ID: {session_id}")

    config = Configuration(session_id, storages=[config_storage], save_throttle=3.0)
    theme_color = config.state.global_.theme_color
    render_config = config.state.render
    topology_config = config.state.topology

    main_container = ui.column().classes("w-full h-screen gap-0")
    with main_container:
        header = ui.row().classes(
            f"w-full bg-{theme_color}-600 text-white p-4 shadow-lg items-center"
        )
        with header:
            ui.icon("flood").classes("text-lg mr-3 sm:text-2xl")
            ui.label("Floodline").classes("text-lg font-bold flex-1 sm:text-2xl")
            overlay_switch = ui.switch("Flood overlay").props("color=white")

        @config.observe
        def on_theme_change(config_state: ConfigurationState) -> None:
            """Handle theme color changes."""
            nonlocal theme_color

            if theme_color == config_state.global_.theme_color:
                return

            new_theme = config_state.global_.theme_color
            header.classes(remove=f"bg-{theme_color}-600")
            header.classes(add=f"bg-{new_theme}-600")
            theme_color = new_theme
            logger.info(f"Theme changed to: {new_theme}")

        leaflet = ui.leaflet(center=DEFAULT_CENTER, zoom=DEFAULT_ZOOM).classes(
            "w-full flex-1"
        )

    target = LeafletRenderTarget(leaflet)
    target.add_geojson_layer(
        render_config.line_layer, render_config.line_source, LINE_LAYER_OPTIONS
    )
    target.add_geojson_layer(
        render_config.node_field_layer,
        render_config.node_field_source,
        NODE_FIELD_OPTIONS,
    )
    target.add_geojson_layer(
        render_config.line_field_layer,
        render_config.line_field_source,
        LINE_FIELD_OPTIONS,
    )

    nodes = await fetch_nodes(
        topology_source,
        [topology_config.inlets_location, topology_config.drains_location],
        topology_config.node_id_property,
    )
    scheduler = NiceGUIScheduler(
        interval=to_seconds(config.state.animation.frame_interval),
        parent=main_container,
    )
    overlay = FloodOverlay(
        target, nodes, scheduler, config, topology=topology_source
    )

    def on_overlay_event(event: str, data: typing.Any) -> None:
        if event == "overlay.degraded":
            ui.notify("Pipe network unavailable; showing flooded nodes only", type="warning")
        elif event == "overlay.enabled" and data:
            logger.info(f"Overlay shown: {data}")

    overlay.subscribe("overlay.*", on_overlay_event)

    async def on_toggle(event: typing.Any) -> None:
        if event.value:
            records = load_simulation_results()
            if not records:
                ui.notify("No simulation results available", type="info")
            await overlay.enable(records)
        else:
            overlay.disable()

    overlay_switch.on_value_change(on_toggle)
    client.on_disconnect(overlay.disable)
    return main_container


def main():
    """Main application entry point."""
    logger.info("Starting Floodline")
    ui.run(
        title="Floodline",
        port=8080,
        host="0.0.0.0",
        reload=os.getenv("DEBUG", "False").lower()
        in ("t", "true", "yes", "on", "1", "y"),
        show=True,
        favicon="🌊",
        dark=False,
        storage_secret=os.getenv("NICEGUI_STORAGE_SECRET", "floodline-dev-secret"),
        native=False,
        tailwind=True,
        prod_js=True,
    )


app = fastapi.FastAPI(
    openapi_url=None,
    docs_url=None,
    redoc_url=None,
    debug=os.getenv("DEBUG", "False").lower() in ("t", "true", "yes", "on", "1", "y"),
)

ui.run_with(
    app,
    title="Floodline",
    mount_path="/",
    favicon="🌊",
    dark=False,
    language="en-US",
    storage_secret=os.getenv("NICEGUI_STORAGE_SECRET", "floodline-dev-secret"),
    tailwind=True,
    prod_js=True,
)

if __name__ in {"__main__", "__mp_main__"}:
    main()
