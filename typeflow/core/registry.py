"""Node type registry.

Node kinds form a closed set of variants: every node type is a
description record plus an optional execute callable. Types without an
execute callable are declarative (routing-only HTTP); types with one are
programmatic. New kinds are added by registering a variant, never by
subclassing.

Discovery methods:
1. Manual registration (built-in nodes)
2. Entry points in the "typeflow.nodes" group (plugin packages)
3. Declarative YAML definitions validated against node_schema.json
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from importlib.metadata import entry_points
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from pydantic import BaseModel, Field, ValidationError

from typeflow.core.errors import NodeDefinitionError, NodeTypeNotFoundError

logger = logging.getLogger(__name__)

NODE_ENTRY_POINT_GROUP = "typeflow.nodes"

# execute(items, params, ctx) -> outputs
ExecuteFn = Callable[..., Any]


class NodeKind(str, Enum):
    """Execution style of a node type."""

    DECLARATIVE = "declarative"
    PROGRAMMATIC = "programmatic"


class NodeParameterOption(BaseModel):
    """Selectable value of an options-type parameter."""

    name: str
    value: Any
    description: str | None = None
    routing: dict[str, Any] | None = None  # Routing applied when this option is selected


class NodeParameter(BaseModel):
    """Declared node parameter."""

    name: str
    display_name: str = ""
    type: str = "string"
    default: Any = None
    required: bool = False
    item_independent: bool = False  # Resolved once against the first item
    description: str | None = None
    options: list[NodeParameterOption] = Field(default_factory=list)
    routing: dict[str, Any] | None = None


class NodeTypeDescription(BaseModel):
    """Static description shared by every node kind."""

    name: str
    display_name: str = ""
    group: list[str] = Field(default_factory=list)
    description: str = ""
    version: int = 1
    inputs: list[str] = Field(default_factory=lambda: ["main"])
    outputs: list[str] = Field(default_factory=lambda: ["main"])
    credentials: list[str] = Field(default_factory=list)  # Credential type names
    parameters: list[NodeParameter] = Field(default_factory=list)
    request_defaults: dict[str, Any] = Field(default_factory=dict)

    def parameter(self, name: str) -> NodeParameter | None:
        for param in self.parameters:
            if param.name == name:
                return param
        return None

    @property
    def parameter_map(self) -> dict[str, NodeParameter]:
        return {p.name: p for p in self.parameters}


@dataclass(frozen=True)
class NodeType:
    """A registered node kind: description plus optional execute behavior."""

    description: NodeTypeDescription
    execute: ExecuteFn | None = None
    trigger: bool = False  # Receives the workflow trigger items as input

    @property
    def name(self) -> str:
        return self.description.name

    @property
    def kind(self) -> NodeKind:
        return NodeKind.DECLARATIVE if self.execute is None else NodeKind.PROGRAMMATIC


class NodeRegistry:
    """Lookup of node types keyed by type name.

    Usage:
        registry = NodeRegistry()
        registry.register_many(builtin_node_types())
        registry.discover_entry_points()
        node_type = registry.get("httpRequest")
    """

    def __init__(self) -> None:
        self._types: dict[str, NodeType] = {}
        self._schema: dict | None = None

    def register(self, node_type: NodeType, replace: bool = False) -> None:
        if node_type.name in self._types and not replace:
            raise ValueError(f"Node type '{node_type.name}' is already registered")
        self._types[node_type.name] = node_type
        logger.debug(f"Registered node type: {node_type.name} ({node_type.kind.value})")

    def register_many(self, node_types: Iterable[NodeType], replace: bool = False) -> None:
        for node_type in node_types:
            self.register(node_type, replace=replace)

    def get(self, name: str) -> NodeType:
        try:
            return self._types[name]
        except KeyError:
            raise NodeTypeNotFoundError(f"Unknown node type '{name}'") from None

    def has(self, name: str) -> bool:
        return name in self._types

    def names(self) -> list[str]:
        return sorted(self._types)

    def all(self) -> list[NodeType]:
        return [self._types[name] for name in self.names()]

    def discover_entry_points(self, group: str = NODE_ENTRY_POINT_GROUP) -> int:
        """Register node types exported by installed plugin packages.

        Entry points are declared in the plugin's pyproject.toml:

            [project.entry-points."typeflow.nodes"]
            mypack = "mypack.nodes:node_types"

        The target is an iterable of NodeType or a callable returning one.

        Returns:
            Number of node types registered
        """
        count = 0
        for ep in entry_points(group=group):
            try:
                target = ep.load()
                node_types = target() if callable(target) else target
                for node_type in node_types:
                    self.register(node_type, replace=True)
                    count += 1
                logger.info(f"Loaded node pack: {ep.name}")
            except Exception as e:
                logger.error(f"Failed to load node pack '{ep.name}': {e}")
        return count

    # --- Declarative YAML definitions ---

    def _load_schema(self) -> dict:
        """Load JSON schema for declarative node definitions."""
        if self._schema is not None:
            return self._schema
        schema_path = Path(__file__).parent.parent / "config" / "node_schema.json"
        try:
            with open(schema_path, encoding="utf-8") as f:
                self._schema = json.load(f)
        except FileNotFoundError:
            raise NodeDefinitionError(
                f"Node schema not found at {schema_path}. "
                f"Ensure typeflow package is properly installed."
            )
        except json.JSONDecodeError as e:
            raise NodeDefinitionError(f"Invalid JSON in node schema at {schema_path}: {e}")
        return self._schema

    def load_definition(self, path: Path) -> NodeType:
        """Load one declarative node definition from YAML."""
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise NodeDefinitionError(f"Invalid YAML in {path}: {e}")

        if not isinstance(data, dict):
            raise NodeDefinitionError(f"Node definition must be a mapping in {path}")

        try:
            jsonschema.validate(data, self._load_schema())
        except jsonschema.ValidationError as e:
            raise NodeDefinitionError(f"Schema validation failed for {path}: {e.message}")

        try:
            description = NodeTypeDescription.model_validate(data)
        except ValidationError as e:
            raise NodeDefinitionError(f"Invalid node definition in {path}: {e}")
        return NodeType(description=description)

    def load_definitions(self, directory: Path) -> int:
        """Register every *.yaml / *.yml definition in a directory."""
        directory = Path(directory)
        if not directory.is_dir():
            return 0
        count = 0
        for path in sorted([*directory.glob("*.yaml"), *directory.glob("*.yml")]):
            self.register(self.load_definition(path), replace=True)
            count += 1
        logger.debug(f"Loaded {count} declarative node definitions from {directory}")
        return count
