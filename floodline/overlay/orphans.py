"""
Connectors for high-risk nodes that no flooded pipe reaches.
"""

import logging
import typing

from floodline.overlay.classify import classify_risk, get_line_color
from floodline.overlay.geometry import distance
from floodline.overlay.matching import FloodedNodes
from floodline.types import ColoredSegment, Coordinate, RiskCategory, VulnerabilityRecord

logger = logging.getLogger(__name__)

__all__ = ["find_nearest_neighbour", "connect_orphans"]


def find_nearest_neighbour(
    node_id: str,
    flooded: FloodedNodes,
    positions: typing.Mapping[str, Coordinate],
) -> typing.Optional[VulnerabilityRecord]:
    """
    Find the closest other flooded node that is not classified as no-risk.

    The search covers the whole network, with no distance limit.

    :param node_id: Node to search from. Must have a known position.
    :param flooded: Flooded records keyed by node id.
    :param positions: Node positions keyed by node id.
    :return: The nearest qualifying record, or `None` if there is none.
    """
    origin = positions[node_id]
    nearest: typing.Optional[VulnerabilityRecord] = None
    min_distance = float("inf")
    for other_id, record in flooded.items():
        if other_id == node_id:
            continue
        if classify_risk(record.category) is RiskCategory.NO_RISK:
            continue
        position = positions.get(other_id)
        if position is None:
            continue
        other_distance = distance(origin, position)
        if other_distance < min_distance:
            min_distance = other_distance
            nearest = record
    return nearest


def connect_orphans(
    flooded: FloodedNodes,
    positions: typing.Mapping[str, Coordinate],
    connected_node_ids: typing.AbstractSet[str],
) -> typing.List[ColoredSegment]:
    """
    Link every unconnected high-risk node to its nearest flooded neighbour.

    Each orphan gets exactly one straight two-vertex segment, colored halfway between
    the orphan's and the neighbour's line colors. Orphans without any qualifying
    neighbour stay unconnected.

    :param flooded: Flooded records keyed by node id.
    :param positions: Node positions keyed by node id.
    :param connected_node_ids: Nodes already reached by pipe segments.
    :return: The connector segments, one per connected orphan.
    """
    connectors = []
    for node_id, record in flooded.items():
        if node_id in connected_node_ids:
            continue
        if classify_risk(record.category) is not RiskCategory.HIGH:
            continue
        if node_id not in positions:
            logger.warning(f"Orphan node {node_id!r} has no coordinates; skipping")
            continue

        neighbour = find_nearest_neighbour(node_id, flooded, positions)
        if neighbour is None:
            logger.debug(f"No flooded neighbour found for orphan node {node_id!r}")
            continue

        source_color = get_line_color(record.category)
        connectors.append(
            ColoredSegment(
                color=source_color.interpolate(get_line_color(neighbour.category), 0.5),
                flood_volume=(record.flood_volume + neighbour.flood_volume) / 2,
                vertices=(positions[node_id], positions[neighbour.node_id]),
                start_node_id=node_id,
                end_node_id=neighbour.node_id,
                vulnerability=RiskCategory.HIGH,
            )
        )

    logger.info(f"Created {len(connectors)} orphan connectors")
    return connectors
