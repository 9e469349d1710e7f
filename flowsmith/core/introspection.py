"""Node type introspection: parameter and credential schemas per node type.

The host platform owns the real node catalog. The engine only needs a
read-only view of it, described by the ``IntrospectionClient`` protocol.
``NodeTypeCatalog`` is the built-in implementation backed by a YAML file; a
host can inject any object with the same two coroutines.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Protocol

import yaml
from pydantic import BaseModel, Field, ValidationError

from flowsmith.core.config import PACKAGE_DIR
from flowsmith.core.graph_schema import canonical_node_type

logger = logging.getLogger(__name__)


class CatalogError(Exception):
    """Node type catalog file is missing or malformed."""

    pass


class NodeProperty(BaseModel):
    """One declared parameter of a node type."""

    name: str
    display_name: str | None = None
    type: str = "string"
    default: Any = None
    required: bool = False
    options: list[Any] | None = None  # Allowed values for "options" parameters


class NodeCredential(BaseModel):
    name: str
    required: bool = False


class NodeTypeDescription(BaseModel):
    """Introspection record for a node type."""

    name: str
    display_name: str | None = None
    description: str = ""
    group: str = "transform"
    versions: list[int | float] = Field(default_factory=lambda: [1])
    inputs: list[str] = Field(default_factory=lambda: ["main"])
    outputs: list[str] = Field(default_factory=lambda: ["main"])
    properties: list[NodeProperty] = Field(default_factory=list)
    credentials: list[NodeCredential] = Field(default_factory=list)

    def get_property(self, name: str) -> NodeProperty | None:
        for prop in self.properties:
            if prop.name == name:
                return prop
        return None

    @property
    def required_properties(self) -> list[NodeProperty]:
        return [prop for prop in self.properties if prop.required]

    @property
    def latest_version(self) -> int | float:
        return max(self.versions) if self.versions else 1


class IntrospectionClient(Protocol):
    """Read-only view of the host's node catalog. Either call may be slow."""

    async def get_node_type(self, node_type: str) -> NodeTypeDescription | None:
        ...

    async def get_node_description(self, node_type: str) -> str | None:
        ...


class NodeTypeCatalog:
    """YAML-backed node catalog implementing ``IntrospectionClient``.

    Bare type names ("httpRequest") resolve against the default namespace.
    """

    STATIC_SEARCH_PATHS = [
        Path.home() / ".flowsmith/node_types.yaml",
        PACKAGE_DIR / "config/node_types.yaml",
    ]

    def __init__(
        self,
        catalog_path: Path | None = None,
        node_types: Iterable[NodeTypeDescription] | None = None,
    ) -> None:
        self._types: dict[str, NodeTypeDescription] = {}
        if node_types is not None:
            for description in node_types:
                self.register(description)
        else:
            self._load(catalog_path)

    def _load(self, catalog_path: Path | None) -> None:
        search_paths = [catalog_path] if catalog_path else self.STATIC_SEARCH_PATHS
        for path in search_paths:
            if path.exists():
                self.load_file(path)
                return
        raise CatalogError(f"No node type catalog found in: {', '.join(map(str, search_paths))}")

    def load_file(self, path: Path) -> None:
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise CatalogError(f"Cannot read node catalog {path}: {e}") from e

        entries = data.get("node_types", []) if isinstance(data, dict) else []
        for entry in entries:
            try:
                self.register(NodeTypeDescription.model_validate(entry))
            except ValidationError as e:
                raise CatalogError(f"Invalid node type in {path}: {e}") from e
        logger.debug(f"Loaded {len(entries)} node types from {path}")

    def register(self, description: NodeTypeDescription) -> None:
        """Add or replace a node type. Later registrations win."""
        self._types[canonical_node_type(description.name)] = description

    def lookup(self, node_type: str) -> NodeTypeDescription | None:
        return self._types.get(canonical_node_type(node_type))

    def list_node_types(self) -> list[NodeTypeDescription]:
        return sorted(self._types.values(), key=lambda d: d.name)

    def __contains__(self, node_type: str) -> bool:
        return self.lookup(node_type) is not None

    def __len__(self) -> int:
        return len(self._types)

    async def get_node_type(self, node_type: str) -> NodeTypeDescription | None:
        return self.lookup(node_type)

    async def get_node_description(self, node_type: str) -> str | None:
        description = self.lookup(node_type)
        return description.description if description else None
