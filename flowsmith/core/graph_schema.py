"""Workflow graph schema definitions using Pydantic models.

This module defines the in-memory workflow graph and the declarative operation
vocabulary used to edit it. Workflows are directed graphs of typed nodes;
connections are stored per source node as a list of output branches, each
branch holding the targets wired to that output (the host platform's wire
format).

Edits arrive as an OperationBatch: an ordered list of operations discriminated
by the ``op`` field. The union is closed, so every consumer can dispatch with a
single ``match`` over the variants below.
"""

from collections.abc import Iterator
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

import networkx as nx
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)

DEFAULT_NODE_NAMESPACE = "n8n-nodes-base"
DEFAULT_PORT = "main"

# Substrings that mark a node type as able to start an execution on its own
TRIGGER_MARKERS = ("trigger", "webhook", "schedule", "cron")


def canonical_node_type(node_type: str) -> str:
    """Qualify a bare node type name with the default namespace.

    "httpRequest" -> "n8n-nodes-base.httpRequest"; qualified names pass through.
    """
    if "." in node_type:
        return node_type
    return f"{DEFAULT_NODE_NAMESPACE}.{node_type}"


def is_trigger_type(node_type: str) -> bool:
    lowered = node_type.lower()
    return any(marker in lowered for marker in TRIGGER_MARKERS)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Node(BaseModel):
    """A single workflow node."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = ""  # Human-facing alternate key, defaults to id
    type: str
    type_version: int | float = Field(default=1, alias="typeVersion")
    position: tuple[float, float] = (0, 0)
    parameters: dict[str, Any] = Field(default_factory=dict)
    credentials: dict[str, str] | None = None

    @field_validator("id")
    @classmethod
    def validate_node_id(cls, v):
        if not v or not v.strip():
            raise ValueError("Node ID must be a non-empty string")
        return v

    @field_validator("type")
    @classmethod
    def validate_node_type(cls, v):
        if not v or not v.strip():
            raise ValueError("Node type must be a non-empty string")
        return v

    @model_validator(mode="after")
    def default_name_to_id(self) -> "Node":
        if not self.name:
            self.name = self.id
        return self

    @property
    def is_trigger(self) -> bool:
        return is_trigger_type(self.type)


class ConnectionTarget(BaseModel):
    """Inbound end of a connection: target node id, input port and input index."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    node: str = Field(validation_alias=AliasChoices("node", "targetNodeId"))
    type: str = Field(default=DEFAULT_PORT, validation_alias=AliasChoices("type", "portType"))
    index: int = Field(default=0, ge=0, validation_alias=AliasChoices("index", "portIndex"))


def normalize_connections(
    connections: dict[str, list[list[ConnectionTarget]]],
) -> dict[str, list[list[ConnectionTarget]]]:
    """Drop trailing empty branches and sources left without branches.

    Every mutation path leaves connection maps in this shape, which is what
    makes connect/disconnect exact inverses of each other.
    """
    normalized: dict[str, list[list[ConnectionTarget]]] = {}
    for source, branches in connections.items():
        trimmed = [list(branch) for branch in branches]
        while trimmed and not trimmed[-1]:
            trimmed.pop()
        if trimmed:
            normalized[source] = trimmed
    return normalized


class WorkflowGraph(BaseModel):
    """Complete workflow definition: ordered nodes plus per-source connections."""

    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    name: str | None = None
    nodes: list[Node] = Field(default_factory=list)
    connections: dict[str, list[list[ConnectionTarget]]] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)

    @field_validator("connections", mode="before")
    @classmethod
    def accept_edge_list(cls, v):
        """Accept the flat ``[{from, to, index}]`` edge list as well as the map form."""
        if not isinstance(v, list):
            return v
        connections: dict[str, list[list[dict]]] = {}
        for position, edge in enumerate(v):
            if not isinstance(edge, dict) or "from" not in edge or "to" not in edge:
                raise ValueError(f"Edge {position} must be a mapping with 'from' and 'to'")
            output_index = edge.get("index") or 0
            if type(output_index) is not int or output_index < 0:
                raise ValueError(f"Edge {position} has invalid index {output_index!r}")
            branches = connections.setdefault(edge["from"], [])
            while len(branches) <= output_index:
                branches.append([])
            branches[output_index].append({"node": edge["to"]})
        return connections

    @model_validator(mode="after")
    def normalize(self) -> "WorkflowGraph":
        self.connections = normalize_connections(self.connections)
        return self

    # ========== Lookup ==========

    def find_node(self, ref: str) -> Node | None:
        """Resolve a node reference by id first, then by name."""
        for node in self.nodes:
            if node.id == ref:
                return node
        for node in self.nodes:
            if node.name == ref:
                return node
        return None

    def node_index(self, node_id: str) -> int | None:
        for i, node in enumerate(self.nodes):
            if node.id == node_id:
                return i
        return None

    def node_ids(self) -> set[str]:
        return {node.id for node in self.nodes}

    def trigger_nodes(self) -> list[Node]:
        return [node for node in self.nodes if node.is_trigger]

    def iter_connections(self) -> Iterator[tuple[str, int, ConnectionTarget]]:
        """Yield (source id, output index, target) in storage order."""
        for source, branches in self.connections.items():
            for output_index, branch in enumerate(branches):
                for target in branch:
                    yield source, output_index, target

    def connection_count(self) -> int:
        return sum(1 for _ in self.iter_connections())

    def upstream_of(self, node_id: str) -> list[str]:
        """Source node ids feeding into ``node_id``, in storage order, without repeats."""
        sources: list[str] = []
        for source, _, target in self.iter_connections():
            if target.node == node_id and source not in sources:
                sources.append(source)
        return sources

    # ========== Analysis ==========

    def validate_graph(self) -> list[str]:
        """Check structural invariants. Returns a list of human-readable problems."""
        errors = []

        seen_ids: set[str] = set()
        seen_names: set[str] = set()
        for node in self.nodes:
            if node.id in seen_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            if node.name in seen_names:
                errors.append(f"Duplicate node name: '{node.name}'")
            seen_ids.add(node.id)
            seen_names.add(node.name)

        for source, output_index, target in self.iter_connections():
            if source not in seen_ids:
                errors.append(f"Connection source '{source}' not found")
            if target.node not in seen_ids:
                errors.append(
                    f"Connection {source}[{output_index}] -> '{target.node}': target not found"
                )

        return errors

    def to_networkx(self) -> nx.DiGraph:
        """Convert to a NetworkX DiGraph, skipping edges with unknown endpoints."""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id, type=node.type, name=node.name)
        for source, output_index, target in self.iter_connections():
            if source in G and target.node in G:
                G.add_edge(source, target.node, output_index=output_index, port=target.type)
        return G


# ========== Operations ==========


class _OperationBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


def _endpoint_ref(v):
    """Planner output sometimes wraps endpoints as ``{"nodeId": ...}``."""
    if isinstance(v, dict):
        return v.get("nodeId") or v.get("node") or v.get("name")
    return v


class AddNodeOp(_OperationBase):
    op: Literal["add_node"] = "add_node"
    node: Node
    # Position in the node list (inverse batches); appended when omitted
    insert_at: int | None = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("insertAt", "insert_at"),
        serialization_alias="insertAt",
    )


class SetParamsOp(_OperationBase):
    op: Literal["set_params"] = "set_params"
    target: str = Field(validation_alias=AliasChoices("target", "name", "nodeId", "node_id"))
    parameters: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("parameters", "params")
    )
    unset: list[str] = Field(default_factory=list)  # Keys to remove (inverse batches)


class _EdgeOperation(_OperationBase):
    from_: str = Field(
        validation_alias=AliasChoices("from", "from_"), serialization_alias="from"
    )
    to: str
    output_index: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("outputIndex", "output_index", "index"),
        serialization_alias="outputIndex",
    )
    port_type: str = Field(
        default=DEFAULT_PORT,
        validation_alias=AliasChoices("portType", "port_type"),
        serialization_alias="portType",
    )
    input_index: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("inputIndex", "input_index"),
        serialization_alias="inputIndex",
    )

    @field_validator("from_", "to", mode="before")
    @classmethod
    def unwrap_endpoint(cls, v):
        return _endpoint_ref(v)

    @field_validator("output_index", "input_index", mode="before")
    @classmethod
    def default_missing_index(cls, v):
        return 0 if v is None else v


class ConnectOp(_EdgeOperation):
    op: Literal["connect"] = "connect"
    position: int | None = Field(default=None, ge=0)  # Insert position inside the branch
    # Key position of the source in the connection map when it has to be re-created
    source_position: int | None = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("sourcePosition", "source_position"),
        serialization_alias="sourcePosition",
    )


class DisconnectOp(_EdgeOperation):
    op: Literal["disconnect"] = "disconnect"


class DeleteOp(_OperationBase):
    op: Literal["delete"] = "delete"
    target: str = Field(validation_alias=AliasChoices("target", "name", "nodeId", "node_id"))


class AnnotateOp(_OperationBase):
    op: Literal["annotate"] = "annotate"
    target: str = Field(validation_alias=AliasChoices("target", "name", "nodeId", "node_id"))
    text: str | None = None  # None removes the annotation


Operation = Annotated[
    Union[AddNodeOp, SetParamsOp, ConnectOp, DisconnectOp, DeleteOp, AnnotateOp],
    Field(discriminator="op"),
]

OPERATION_ADAPTER: TypeAdapter = TypeAdapter(Operation)
OPERATION_KINDS = ("add_node", "set_params", "connect", "disconnect", "delete", "annotate")


class OperationBatch(BaseModel):
    """Ordered list of operations applied as a unit."""

    version: str = "v1"
    ops: list[Operation] = Field(default_factory=list)

    def to_wire(self) -> dict[str, Any]:
        """Serialize using the planner's field spellings (``from``, ``outputIndex``)."""
        return self.model_dump(mode="json", by_alias=True)


class UndoEntry(BaseModel):
    """One committed batch: its inverse (for undo) and the forward batch (for redo)."""

    undo_id: str
    batch: OperationBatch  # Inverse batch
    forward: OperationBatch
    timestamp: datetime = Field(default_factory=_utc_now)


def parse_batch(data: OperationBatch | dict[str, Any]) -> OperationBatch:
    """Validate a raw batch document at the boundary."""
    if isinstance(data, OperationBatch):
        return data
    return OperationBatch.model_validate(data)
