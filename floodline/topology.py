"""
Network topology and simulation result loading.

Pipes and nodes are published as GeoJSON feature collections. Pipes are LineStrings
identified by a `Name` property; inlets and storm drains are Points identified by
`In_Name`. Both property names are configurable.
"""

import asyncio
import logging
from pathlib import Path
import typing

import attrs
import cattrs
import httpx
import orjson

from floodline.errors import TopologyUnavailable
from floodline.retry import RetryPolicy
from floodline.storages import StorageBackend
from floodline.types import NodeCoordinate, PipePolyline, VulnerabilityRecord, converter

logger = logging.getLogger(__name__)

__all__ = [
    "TopologySource",
    "GeoJSONFileSource",
    "HTTPTopologySource",
    "StorageTopologySource",
    "parse_node_coordinates",
    "parse_pipes",
    "structure_records",
    "fetch_pipes",
    "fetch_nodes",
]


def _features(collection: typing.Any) -> typing.List[dict]:
    if not isinstance(collection, dict):
        raise ValueError("GeoJSON data must be an object")
    if collection.get("type") == "Feature":
        return [collection]
    features = collection.get("features")
    if not isinstance(features, list):
        raise ValueError("GeoJSON FeatureCollection has no 'features' list")
    return features


def _feature_id(feature: dict, id_property: str) -> typing.Optional[str]:
    value = (feature.get("properties") or {}).get(id_property)
    if value is None or value == "":
        return None
    return str(value)


def parse_node_coordinates(
    collection: dict, id_property: str = "In_Name"
) -> typing.List[NodeCoordinate]:
    """
    Extract node positions from a Point feature collection.

    Features without an id or a point geometry are skipped.
    """
    nodes = []
    skipped = 0
    for feature in _features(collection):
        node_id = _feature_id(feature, id_property)
        geometry = feature.get("geometry") or {}
        coordinates = geometry.get("coordinates")
        if node_id is None or geometry.get("type") != "Point" or not coordinates:
            skipped += 1
            continue
        try:
            nodes.append(NodeCoordinate(id=node_id, position=coordinates))
        except (TypeError, ValueError, IndexError):
            skipped += 1

    if skipped:
        logger.warning(f"Skipped {skipped} node feature(s) without id or point geometry")
    return nodes


def parse_pipes(
    collection: dict, id_property: str = "Name"
) -> typing.List[PipePolyline]:
    """
    Extract pipe polylines from a LineString feature collection.

    Each part of a MultiLineString becomes its own polyline with the same id.
    Features without an id or with fewer than 2 coordinates are skipped.
    """
    pipes = []
    skipped = 0
    for feature in _features(collection):
        pipe_id = _feature_id(feature, id_property)
        geometry = feature.get("geometry") or {}
        geometry_type = geometry.get("type")
        if geometry_type == "LineString":
            parts = [geometry.get("coordinates") or []]
        elif geometry_type == "MultiLineString":
            parts = geometry.get("coordinates") or []
        else:
            parts = []

        if pipe_id is None or not parts:
            skipped += 1
            continue
        for part in parts:
            try:
                pipes.append(PipePolyline(id=pipe_id, vertices=part))
            except (TypeError, ValueError, IndexError):
                skipped += 1

    if skipped:
        logger.warning(f"Skipped {skipped} invalid pipe feature(s)")
    return pipes


def structure_records(
    data: typing.Iterable[typing.Any],
) -> typing.List[VulnerabilityRecord]:
    """
    Convert wire-format simulation records into `VulnerabilityRecord`s.

    Malformed records are skipped with a warning. When a `Node_ID` appears more than
    once, the first record wins.
    """
    records = []
    seen: typing.Set[str] = set()
    for item in data:
        if isinstance(item, VulnerabilityRecord):
            record = item
        else:
            try:
                record = converter.structure(item, VulnerabilityRecord)
            except (cattrs.BaseValidationError, TypeError, ValueError, KeyError) as exc:
                logger.warning(f"Skipping malformed simulation record {item!r}: {exc}")
                continue

        if record.node_id in seen:
            logger.warning(f"Duplicate record for node {record.node_id!r}; keeping the first")
            continue
        seen.add(record.node_id)
        records.append(record)
    return records


class TopologySource(typing.Protocol):
    """Loads a GeoJSON document by location."""

    async def fetch(self, location: str) -> dict:
        """Fetch the GeoJSON document at `location`."""
        ...


class GeoJSONFileSource:
    """Reads GeoJSON files below a base directory."""

    def __init__(self, base_dir: typing.Union[str, Path] = ".") -> None:
        self.base_dir = Path(base_dir)

    def _read(self, location: str) -> dict:
        path = self.base_dir / location.lstrip("/")
        with path.open("rb") as f:
            return orjson.loads(f.read())

    async def fetch(self, location: str) -> dict:
        logger.debug(f"Reading GeoJSON from {self.base_dir / location.lstrip('/')}")
        return await asyncio.to_thread(self._read, location)


class HTTPTopologySource:
    """Fetches GeoJSON documents over HTTP."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 15.0,
        transport: typing.Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        :param base_url: URL the locations are resolved against.
        :param timeout: Request timeout in seconds.
        :param transport: Optional custom httpx transport.
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def fetch(self, location: str) -> dict:
        url = f"{self.base_url}/{location.lstrip('/')}"
        logger.debug(f"Fetching GeoJSON from {url}")
        async with httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=True, transport=self.transport
        ) as client:
            response = await client.get(url)
            response.raise_for_status()
            return orjson.loads(response.content)


@attrs.define
class StorageTopologySource:
    """
    Serves GeoJSON documents from a storage backend, filling misses from `upstream`.

    With a `RedisStorage` this acts as a shared topology cache.
    """

    storage: StorageBackend
    upstream: typing.Optional[TopologySource] = None

    async def fetch(self, location: str) -> dict:
        key = self.storage.get_key("topology", location)
        cached = self.storage.read(key)
        if cached is not None:
            logger.debug(f"Topology cache hit for {location!r}")
            return cached
        if self.upstream is None:
            raise KeyError(f"No cached topology for {location!r}")

        data = await self.upstream.fetch(location)
        try:
            self.storage.write(key, data)
        except Exception as exc:
            logger.error(f"Failed to cache topology for {location!r}: {exc}", exc_info=True)
        return data


async def fetch_pipes(
    source: TopologySource,
    location: str,
    id_property: str = "Name",
    policy: typing.Optional[RetryPolicy] = None,
) -> typing.List[PipePolyline]:
    """
    Fetch and parse the pipe network with bounded retries.

    :param source: Where to load the GeoJSON from.
    :param location: Location of the pipe feature collection.
    :param id_property: Feature property holding the pipe id.
    :param policy: Retry policy. Defaults to 3 attempts, 0.5 s apart.
    :return: The parsed pipes.
    :raises TopologyUnavailable: If every attempt failed or no valid pipe was found.
    """
    policy = policy or RetryPolicy()

    async def _load() -> typing.List[PipePolyline]:
        return parse_pipes(await source.fetch(location), id_property)

    try:
        pipes = await policy.run(_load, description=f"Fetching pipes from {location!r}")
    except Exception as exc:
        raise TopologyUnavailable(f"Could not load pipes from {location!r}: {exc}") from exc
    if not pipes:
        raise TopologyUnavailable(f"No pipes found in {location!r}")

    logger.info(f"Loaded {len(pipes)} pipes from {location!r}")
    return pipes


async def fetch_nodes(
    source: TopologySource,
    locations: typing.Iterable[str],
    id_property: str = "In_Name",
) -> typing.List[NodeCoordinate]:
    """
    Fetch and merge node positions from several point collections (e.g. inlets and drains).

    Locations that fail to load are logged and skipped.
    """
    nodes: typing.List[NodeCoordinate] = []
    for location in locations:
        try:
            collection = await source.fetch(location)
        except Exception as exc:
            logger.error(f"Failed to load nodes from {location!r}: {exc}", exc_info=True)
            continue
        parsed = parse_node_coordinates(collection, id_property)
        logger.info(f"Loaded {len(parsed)} nodes from {location!r}")
        nodes.extend(parsed)
    return nodes
