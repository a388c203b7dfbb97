"""Built-in node types."""

from __future__ import annotations

import logging

from typeflow.core.config import Settings
from typeflow.core.registry import NodeRegistry, NodeType
from typeflow.nodes.core import core_node_types
from typeflow.nodes.io import io_node_types
from typeflow.nodes.transform import transform_node_types

logger = logging.getLogger(__name__)


def builtin_node_types(settings: Settings | None = None) -> list[NodeType]:
    settings = settings or Settings()
    return [
        *core_node_types(wait_max_seconds=settings.wait_max_seconds),
        *transform_node_types(),
        *io_node_types(),
    ]


def default_registry(settings: Settings | None = None, discover_plugins: bool = True) -> NodeRegistry:
    """Registry with built-ins, installed plugin packs and YAML definitions.

    Later sources override earlier ones, so a plugin or YAML definition
    may replace a built-in type of the same name.
    """
    settings = settings or Settings()
    registry = NodeRegistry()
    registry.register_many(builtin_node_types(settings))
    if discover_plugins:
        registry.discover_entry_points()
    for directory in settings.node_dirs:
        registry.load_definitions(directory)
    logger.debug(f"Node registry ready with {len(registry.names())} types")
    return registry


__all__ = ["builtin_node_types", "default_registry"]
