"""Operation applier: pure (graph, operation) -> (graph', inverse) transformation.

Every function here is copy-on-write. The input graph, its nodes and its
connection lists are never mutated; changed containers are rebuilt and the
rest is shared with the input. This lets the same committed graph back
validation, simulation and commit paths at the same time.

The inverse returned for each operation is a list of operations which, applied
to the resulting graph, restore the input graph exactly (node order, parameter
values and connection order).
"""

import copy
import logging
from enum import Enum

from flowsmith.core.graph_schema import (
    AddNodeOp,
    AnnotateOp,
    ConnectionTarget,
    ConnectOp,
    DeleteOp,
    DisconnectOp,
    Node,
    Operation,
    OperationBatch,
    SetParamsOp,
    WorkflowGraph,
    normalize_connections,
)

logger = logging.getLogger(__name__)


class OperationErrorKind(str, Enum):
    """Structural failure kinds raised by the applier."""

    DUPLICATE_NODE = "DuplicateNode"
    NODE_NOT_FOUND = "NodeNotFound"


class OperationError(Exception):
    """A single operation could not be applied to the graph."""

    def __init__(self, kind: OperationErrorKind, target: str, message: str):
        super().__init__(message)
        self.kind = kind
        self.target = target
        self.op_index: int | None = None  # Position in the batch, set by apply_batch


class DuplicateNodeError(OperationError):
    def __init__(self, target: str, field: str = "id"):
        super().__init__(
            OperationErrorKind.DUPLICATE_NODE,
            target,
            f"Node with {field} '{target}' already exists",
        )


class NodeNotFoundError(OperationError):
    def __init__(self, target: str):
        super().__init__(OperationErrorKind.NODE_NOT_FOUND, target, f"Node '{target}' not found")


def _require_node(graph: WorkflowGraph, ref: str) -> Node:
    node = graph.find_node(ref)
    if node is None:
        raise NodeNotFoundError(ref)
    return node


def _replace_node(graph: WorkflowGraph, node: Node) -> list[Node]:
    return [node if existing.id == node.id else existing for existing in graph.nodes]


def apply_operation(
    graph: WorkflowGraph, op: Operation
) -> tuple[WorkflowGraph, list[Operation]]:
    """Apply one operation. Returns the new graph and the inverse operations.

    Raises:
        DuplicateNodeError: add_node collides with an existing id or name
        NodeNotFoundError: the operation references a node that does not exist
    """
    match op:
        case AddNodeOp():
            return _add_node(graph, op)
        case DeleteOp():
            return _delete_node(graph, op)
        case SetParamsOp():
            return _set_params(graph, op)
        case ConnectOp():
            return _connect(graph, op)
        case DisconnectOp():
            return _disconnect(graph, op)
        case AnnotateOp():
            return _annotate(graph, op)
        case _:
            raise TypeError(f"Unsupported operation: {op!r}")


def apply_batch(
    graph: WorkflowGraph, batch: OperationBatch
) -> tuple[WorkflowGraph, OperationBatch]:
    """Fold apply_operation over a batch.

    Returns the resulting graph and the inverse batch (per-op inverses in
    reverse op order). On failure the OperationError carries ``op_index`` and
    nothing is returned, so callers never observe a partially applied batch.
    """
    current = graph
    inverses: list[list[Operation]] = []
    for index, op in enumerate(batch.ops):
        try:
            current, inverse = apply_operation(current, op)
        except OperationError as e:
            e.op_index = index
            raise
        inverses.append(inverse)

    inverse_ops = [inv for group in reversed(inverses) for inv in group]
    return current, OperationBatch(version=batch.version, ops=inverse_ops)


# ========== Per-operation handlers ==========


def _add_node(graph: WorkflowGraph, op: AddNodeOp) -> tuple[WorkflowGraph, list[Operation]]:
    node = op.node
    for existing in graph.nodes:
        if existing.id == node.id:
            raise DuplicateNodeError(node.id)
        if existing.name == node.name:
            raise DuplicateNodeError(node.name, field="name")
        # Refs resolve ids first, then names, so the two must not collide across nodes
        if existing.id == node.name:
            raise DuplicateNodeError(node.name)
        if existing.name == node.id:
            raise DuplicateNodeError(node.id, field="name")

    nodes = list(graph.nodes)
    snapshot = node.model_copy(deep=True)
    if op.insert_at is None:
        nodes.append(snapshot)
    else:
        nodes.insert(op.insert_at, snapshot)

    return graph.model_copy(update={"nodes": nodes}), [DeleteOp(target=node.id)]


def _delete_node(graph: WorkflowGraph, op: DeleteOp) -> tuple[WorkflowGraph, list[Operation]]:
    node = _require_node(graph, op.target)
    position = graph.node_index(node.id)

    # Capture every edge touching the node, in storage order, with its branch
    # position so the inverse can re-insert it at the same place.
    restored: list[Operation] = []
    for source_position, (source, branches) in enumerate(graph.connections.items()):
        for output_index, branch in enumerate(branches):
            for branch_position, target in enumerate(branch):
                if source == node.id or target.node == node.id:
                    restored.append(
                        ConnectOp(
                            from_=source,
                            to=target.node,
                            output_index=output_index,
                            port_type=target.type,
                            input_index=target.index,
                            position=branch_position,
                            source_position=source_position,
                        )
                    )

    connections = {
        source: [[t for t in branch if t.node != node.id] for branch in branches]
        for source, branches in graph.connections.items()
        if source != node.id
    }
    nodes = [existing for existing in graph.nodes if existing.id != node.id]

    new_graph = graph.model_copy(
        update={"nodes": nodes, "connections": normalize_connections(connections)}
    )
    inverse: list[Operation] = [AddNodeOp(node=node.model_copy(deep=True), insert_at=position)]
    inverse.extend(restored)
    return new_graph, inverse


def _set_params(graph: WorkflowGraph, op: SetParamsOp) -> tuple[WorkflowGraph, list[Operation]]:
    node = _require_node(graph, op.target)
    before = node.parameters

    merged = {**before, **copy.deepcopy(op.parameters)}
    for key in op.unset:
        merged.pop(key, None)

    # Only the touched keys go into the inverse
    previous: dict = {}
    added: list[str] = []
    for key in [*op.parameters, *op.unset]:
        if key in previous or key in added:
            continue
        if key in before:
            previous[key] = copy.deepcopy(before[key])
        elif key in merged:
            added.append(key)

    updated = node.model_copy(update={"parameters": merged})
    new_graph = graph.model_copy(update={"nodes": _replace_node(graph, updated)})

    if not previous and not added:
        return new_graph, []
    return new_graph, [SetParamsOp(target=node.id, parameters=previous, unset=added)]


def _resolve_edge(
    graph: WorkflowGraph, op: ConnectOp | DisconnectOp
) -> tuple[Node, ConnectionTarget]:
    source = _require_node(graph, op.from_)
    target = _require_node(graph, op.to)
    return source, ConnectionTarget(node=target.id, type=op.port_type, index=op.input_index)


def _put_source(
    connections: dict[str, list[list[ConnectionTarget]]],
    source_id: str,
    branches: list[list[ConnectionTarget]],
    source_position: int | None,
) -> dict[str, list[list[ConnectionTarget]]]:
    """Set a source's branches, re-creating a missing key at ``source_position``."""
    if source_id in connections or source_position is None:
        return {**connections, source_id: branches}
    items = list(connections.items())
    items.insert(source_position, (source_id, branches))
    return dict(items)


def _connect(graph: WorkflowGraph, op: ConnectOp) -> tuple[WorkflowGraph, list[Operation]]:
    source, target = _resolve_edge(graph, op)
    branches = [list(branch) for branch in graph.connections.get(source.id, [])]

    if op.output_index < len(branches) and target in branches[op.output_index]:
        # Already connected: idempotent no-op with an empty inverse
        return graph, []

    while len(branches) <= op.output_index:
        branches.append([])
    branch = branches[op.output_index]
    if op.position is None:
        branch.append(target)
    else:
        branch.insert(op.position, target)

    connections = _put_source(graph.connections, source.id, branches, op.source_position)
    new_graph = graph.model_copy(update={"connections": normalize_connections(connections)})
    inverse = DisconnectOp(
        from_=source.id,
        to=target.node,
        output_index=op.output_index,
        port_type=target.type,
        input_index=target.index,
    )
    return new_graph, [inverse]


def _disconnect(graph: WorkflowGraph, op: DisconnectOp) -> tuple[WorkflowGraph, list[Operation]]:
    source, target = _resolve_edge(graph, op)
    branches = [list(branch) for branch in graph.connections.get(source.id, [])]

    if op.output_index >= len(branches) or target not in branches[op.output_index]:
        return graph, []

    branch = branches[op.output_index]
    position = branch.index(target)
    branch.pop(position)

    connections = {**graph.connections, source.id: branches}
    new_graph = graph.model_copy(update={"connections": normalize_connections(connections)})
    inverse = ConnectOp(
        from_=source.id,
        to=target.node,
        output_index=op.output_index,
        port_type=target.type,
        input_index=target.index,
        position=position,
        source_position=list(graph.connections).index(source.id),
    )
    return new_graph, [inverse]


def _annotate(graph: WorkflowGraph, op: AnnotateOp) -> tuple[WorkflowGraph, list[Operation]]:
    node = graph.find_node(op.target)
    key = node.id if node is not None else op.target
    previous = graph.annotations.get(key)

    if previous == op.text:
        return graph, []

    annotations = dict(graph.annotations)
    if op.text is None:
        annotations.pop(key, None)
    else:
        annotations[key] = op.text

    new_graph = graph.model_copy(update={"annotations": annotations})
    return new_graph, [AnnotateOp(target=key, text=previous)]


def project_batch(
    graph: WorkflowGraph, batch: OperationBatch
) -> tuple[WorkflowGraph, list[OperationError]]:
    """Best-effort fold used for read-only analysis.

    Operations that cannot apply are skipped and returned, tagged with their
    batch index, instead of aborting the fold.
    """
    current = graph
    failures: list[OperationError] = []
    for index, op in enumerate(batch.ops):
        try:
            current, _ = apply_operation(current, op)
        except OperationError as e:
            e.op_index = index
            failures.append(e)
    return current, failures
