"""Dry-run simulation of a workflow graph.

Builds the hypothetical graph a batch would produce, detects cycles, derives
an execution order starting from trigger nodes and attaches coarse per-node
duration, memory, API-call and cost estimates. Nothing is executed and the
input graph is never modified.
"""

import asyncio
import logging
from itertools import islice

import networkx as nx
from pydantic import BaseModel, Field

from flowsmith.core.findings import IssueType, ValidationIssue, error, warning
from flowsmith.core.graph_schema import Node, OperationBatch, WorkflowGraph
from flowsmith.core.operations import project_batch

logger = logging.getLogger(__name__)

# Cycles reported per simulation; enumeration stops after this many
MAX_REPORTED_CYCLES = 10


class NodeCost(BaseModel):
    duration_ms: float
    memory_mb: float
    api_calls: int = 0
    cost: float = 0.0  # Credits


# Matched by substring of the lowercased node type, first match wins
COST_TABLE: list[tuple[str, NodeCost]] = [
    ("httprequest", NodeCost(duration_ms=500, memory_mb=50, api_calls=1, cost=1.0)),
    ("webhook", NodeCost(duration_ms=10, memory_mb=10, cost=0.1)),
    ("executeworkflow", NodeCost(duration_ms=1000, memory_mb=200, cost=5.0)),
    ("executecommand", NodeCost(duration_ms=300, memory_mb=80, cost=1.0)),
    ("function", NodeCost(duration_ms=50, memory_mb=100, cost=0.5)),
    ("code", NodeCost(duration_ms=50, memory_mb=100, cost=0.5)),
    ("postgres", NodeCost(duration_ms=200, memory_mb=40, api_calls=1, cost=1.0)),
    ("mysql", NodeCost(duration_ms=200, memory_mb=40, api_calls=1, cost=1.0)),
    ("mongodb", NodeCost(duration_ms=200, memory_mb=40, api_calls=1, cost=1.0)),
    ("redis", NodeCost(duration_ms=20, memory_mb=10, api_calls=1, cost=0.2)),
    ("slack", NodeCost(duration_ms=300, memory_mb=20, api_calls=1, cost=1.0)),
    ("telegram", NodeCost(duration_ms=300, memory_mb=20, api_calls=1, cost=1.0)),
    ("email", NodeCost(duration_ms=400, memory_mb=20, api_calls=1, cost=1.0)),
    ("google", NodeCost(duration_ms=600, memory_mb=50, api_calls=1, cost=1.0)),
    ("awss3", NodeCost(duration_ms=400, memory_mb=60, api_calls=1, cost=1.0)),
    ("github", NodeCost(duration_ms=500, memory_mb=30, api_calls=1, cost=1.0)),
    ("set", NodeCost(duration_ms=5, memory_mb=20, cost=0.05)),
]
DEFAULT_COST = NodeCost(duration_ms=10, memory_mb=20, cost=0.1)

# Parameters a node cannot run without
RUNTIME_REQUIREMENTS: dict[str, tuple[str, ...]] = {
    "httprequest": ("url",),
    "webhook": ("path",),
    "executeworkflow": ("workflowId",),
    "executecommand": ("command",),
}

# Sample output item per node type, keyed by the type name without namespace
DATA_SHAPES: dict[str, dict[str, str]] = {
    "httprequest": {"id": "number", "name": "string", "email": "string"},
    "webhook": {"body": "object", "headers": "object", "query": "object"},
    "code": {"result": "any"},
}

P95_FACTOR = 1.5
CPU_PER_NODE = 10


def node_cost(node_type: str) -> NodeCost:
    lowered = node_type.lower()
    for marker, cost in COST_TABLE:
        if marker in lowered:
            return cost
    return DEFAULT_COST


def output_shape(node_type: str) -> dict[str, str] | None:
    shape = DATA_SHAPES.get(node_type.rsplit(".", 1)[-1].lower())
    return dict(shape) if shape is not None else None


class NodeEstimate(BaseModel):
    """One step of the execution plan."""

    node_id: str
    node_name: str
    node_type: str
    step: int
    dependencies: list[str] = Field(default_factory=list)
    estimated_duration_ms: float
    estimated_memory_mb: float
    api_calls: int
    estimated_cost: float
    output_shape: dict[str, str] | None = None  # Field name -> value type


class ResourceEstimate(BaseModel):
    total_duration_ms: float = 0.0
    p95_duration_ms: float = 0.0
    peak_memory_mb: float = 0.0
    api_calls: int = 0
    cpu_percent: float = 0.0
    estimated_cost: float = 0.0


class SimulationResult(BaseModel):
    """``success`` is false on a cycle, a warning, or an op that failed to apply."""

    success: bool
    execution_order: list[str] = Field(default_factory=list)
    execution_plan: list[NodeEstimate] = Field(default_factory=list)
    estimates: ResourceEstimate = Field(default_factory=ResourceEstimate)
    cycle_detected: bool = False
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)


def find_cycles(G: nx.DiGraph, limit: int = MAX_REPORTED_CYCLES) -> list[list[str]]:
    """Return up to ``limit`` elementary cycles, self-loops included."""
    return [list(cycle) for cycle in islice(nx.simple_cycles(G), limit)]


def execution_order(graph: WorkflowGraph, G: nx.DiGraph | None = None) -> list[str]:
    """Linear order consistent with the edges, starting from trigger nodes.

    Nodes reachable from a trigger come first; acyclic graphs use a stable
    topological order (ties broken by declaration order), cyclic graphs fall
    back to breadth-first visit order. Unreached nodes follow in declaration
    order. Every node appears exactly once.
    """
    G = G if G is not None else graph.to_networkx()
    position = {node.id: i for i, node in enumerate(graph.nodes)}

    triggers = [node.id for node in graph.trigger_nodes()]
    reached: set[str] = set()
    for trigger in triggers:
        reached.add(trigger)
        reached.update(nx.descendants(G, trigger))

    if nx.is_directed_acyclic_graph(G):
        ordered = [
            n
            for n in nx.lexicographical_topological_sort(G, key=lambda n: position[n])
            if n in reached
        ]
    else:
        ordered = []
        for trigger in triggers:
            for n in [trigger, *(v for _, v in nx.bfs_edges(G, trigger))]:
                if n not in ordered:
                    ordered.append(n)

    seen = set(ordered)
    ordered.extend(node.id for node in graph.nodes if node.id not in seen)
    return ordered


def _missing_runtime_params(node: Node) -> list[str]:
    lowered = node.type.lower()
    for marker, required in RUNTIME_REQUIREMENTS.items():
        if marker in lowered:
            return [name for name in required if node.parameters.get(name) in (None, "")]
    return []


class SimulationEngine:
    """Simulates workflows without executing them.

    USAGE:
        engine = SimulationEngine()
        result = await engine.simulate(graph, batch)
        print(result.execution_order, result.estimates.total_duration_ms)
    """

    def __init__(self, yield_every: int = 50):
        self.yield_every = yield_every

    async def simulate(
        self, base_graph: WorkflowGraph | None = None, batch: OperationBatch | None = None
    ) -> SimulationResult:
        graph = base_graph or WorkflowGraph()
        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []

        if batch is not None:
            graph, failures = project_batch(graph, batch)
            for failure in failures:
                errors.append(
                    error(
                        IssueType.INVALID_OPERATION,
                        "OPERATION_FAILED",
                        f"Operation {failure.op_index} skipped: {failure}",
                        node_id=failure.target,
                        location={"opIndex": failure.op_index, "kind": failure.kind.value},
                    )
                )

        G = graph.to_networkx()
        cycles = find_cycles(G)
        for cycle in cycles:
            errors.append(
                error(
                    IssueType.INVALID_CONNECTION,
                    "INFINITE_LOOP",
                    f"Cycle detected: {' -> '.join([*cycle, cycle[0]])}",
                    node_id=cycle[0],
                    location={"cycle": cycle},
                    suggestion="Break the loop or bound it with a Split In Batches node",
                )
            )

        order = execution_order(graph, G)
        nodes = {node.id: node for node in graph.nodes}

        plan: list[NodeEstimate] = []
        for step, node_id in enumerate(order):
            node = nodes[node_id]
            cost = node_cost(node.type)
            plan.append(
                NodeEstimate(
                    node_id=node.id,
                    node_name=node.name,
                    node_type=node.type,
                    step=step,
                    dependencies=graph.upstream_of(node.id),
                    estimated_duration_ms=cost.duration_ms,
                    estimated_memory_mb=cost.memory_mb,
                    api_calls=cost.api_calls,
                    estimated_cost=cost.cost,
                    output_shape=output_shape(node.type),
                )
            )
            for name in _missing_runtime_params(node):
                warnings.append(
                    warning(
                        IssueType.MISSING_PARAMETER,
                        "MISSING_PARAMETER",
                        f"Node '{node.id}' cannot run without '{name}'",
                        node_id=node.id,
                        parameter=name,
                    )
                )
            if (step + 1) % self.yield_every == 0:
                await asyncio.sleep(0)

        estimates = self._aggregate(plan)
        success = not errors and not warnings
        logger.debug(
            f"Simulated {len(order)} node(s): cycles={len(cycles)}, "
            f"duration={estimates.total_duration_ms}ms"
        )
        return SimulationResult(
            success=success,
            execution_order=order,
            execution_plan=plan,
            estimates=estimates,
            cycle_detected=bool(cycles),
            errors=errors,
            warnings=warnings,
        )

    def _aggregate(self, plan: list[NodeEstimate]) -> ResourceEstimate:
        if not plan:
            return ResourceEstimate()
        total = sum(entry.estimated_duration_ms for entry in plan)
        return ResourceEstimate(
            total_duration_ms=total,
            p95_duration_ms=total * P95_FACTOR,
            peak_memory_mb=max(entry.estimated_memory_mb for entry in plan),
            api_calls=sum(entry.api_calls for entry in plan),
            cpu_percent=min(100, len(plan) * CPU_PER_NODE),
            estimated_cost=round(sum(entry.estimated_cost for entry in plan), 4),
        )

    def estimate_cost(self, graph: WorkflowGraph) -> float:
        """Total credits for one run of ``graph``."""
        return round(sum(node_cost(node.type).cost for node in graph.nodes), 4)
