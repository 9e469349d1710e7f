"""Multi-stage validation of an operation batch against a base graph.

Stages are independent and each reports findings instead of raising:

1. schema       - operation documents parse into the operation vocabulary
2. policy       - the policy engine accepts the batch
3. node_type    - every added node type is known to introspection
4. referential  - every referenced node exists when its op runs
5. parameters   - required / empty / out-of-range parameter values
6. complexity   - projected graph size
7. security     - secrets, shell injection and unsafe URLs

Calls to the policy engine and the introspection client are bounded by a
timeout. A policy timeout blocks the batch; an introspection timeout only
degrades the node type and parameter stages to a warning.
"""

import asyncio
import logging
import time
from typing import Any, Protocol

from pydantic import ValidationError

from flowsmith.core.findings import (
    IssueType,
    ValidationIssue,
    ValidationResult,
    ValidationStats,
    error,
    warning,
)
from flowsmith.core.graph_schema import (
    OPERATION_ADAPTER,
    AddNodeOp,
    AnnotateOp,
    ConnectOp,
    DeleteOp,
    DisconnectOp,
    OperationBatch,
    SetParamsOp,
    WorkflowGraph,
)
from flowsmith.core.introspection import IntrospectionClient, NodeTypeDescription
from flowsmith.core.operations import project_batch
from flowsmith.core.policies import PolicyContext, PolicyViolation
from flowsmith.core.security import is_expression, scan_credentials, scan_parameters

logger = logging.getLogger(__name__)

STAGES = (
    "schema",
    "policy",
    "node_type",
    "referential",
    "parameters",
    "complexity",
    "security",
)


class PolicyEngine(Protocol):
    """Anything with an async ``check_batch`` that raises PolicyViolation."""

    async def check_batch(self, batch: OperationBatch, context: PolicyContext) -> None:
        ...


class _NodeTracker:
    """Tracks which nodes exist as a batch's operations are replayed."""

    def __init__(self, graph: WorkflowGraph):
        self.types: dict[str, str] = {node.id: node.type for node in graph.nodes}
        self.names: dict[str, str] = {node.name: node.id for node in graph.nodes}

    def resolve(self, ref: str) -> str | None:
        if ref in self.types:
            return ref
        return self.names.get(ref)

    def add(self, node_id: str, name: str, node_type: str) -> None:
        self.types[node_id] = node_type
        self.names[name] = node_id

    def remove(self, node_id: str) -> None:
        self.types.pop(node_id, None)
        self.names = {name: nid for name, nid in self.names.items() if nid != node_id}

    def type_of(self, ref: str) -> str | None:
        node_id = self.resolve(ref)
        return self.types.get(node_id) if node_id else None


class ValidationPipeline:
    """Runs the validation stages over a batch.

    USAGE:
        pipeline = ValidationPipeline(policy_engine=policies, introspection=catalog)
        result = await pipeline.validate("wf-1", batch, base_graph=graph)
        if not result.valid:
            ...
    """

    def __init__(
        self,
        policy_engine: PolicyEngine | None = None,
        introspection: IntrospectionClient | None = None,
        max_nodes: int = 50,
        max_connections: int = 100,
        timeout: float = 5.0,
    ):
        self.policy_engine = policy_engine
        self.introspection = introspection
        self.max_nodes = max_nodes
        self.max_connections = max_connections
        self.timeout = timeout

    async def validate(
        self,
        workflow_id: str,
        batch: OperationBatch | dict[str, Any],
        base_graph: WorkflowGraph | None = None,
        estimated_cost: float | None = None,
    ) -> ValidationResult:
        started = time.perf_counter()
        graph = base_graph or WorkflowGraph()

        parsed, schema_issues = self.parse(batch)
        findings: dict[str, list[ValidationIssue]] = {"schema": schema_issues}

        context = PolicyContext(
            workflow_id=workflow_id, current_workflow=graph, estimated_cost=estimated_cost
        )
        findings["policy"] = await self._check_policy(parsed, context)

        descriptions, introspection_issues = await self._describe_types(parsed, graph)
        findings["node_type"] = introspection_issues
        if descriptions is not None:
            findings["node_type"].extend(self._check_node_types(parsed, descriptions))

        findings["referential"] = self._check_references(parsed, graph)
        findings["parameters"] = (
            self._check_parameters(parsed, graph, descriptions) if descriptions is not None else []
        )
        findings["complexity"] = self._check_complexity(parsed, graph)
        findings["security"] = self._check_security(parsed, graph)

        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []
        failed = 0
        for stage in STAGES:
            stage_errors = [i for i in findings[stage] if i.is_error]
            errors.extend(stage_errors)
            warnings.extend(i for i in findings[stage] if not i.is_error)
            if stage_errors:
                failed += 1
            logger.debug(f"Stage {stage}: {len(findings[stage])} finding(s)")

        stats = ValidationStats(
            total_checks=len(STAGES),
            passed=len(STAGES) - failed,
            failed=failed,
            warnings=len(warnings),
            duration_ms=round((time.perf_counter() - started) * 1000, 3),
        )
        result = ValidationResult(valid=not errors, errors=errors, warnings=warnings, stats=stats)
        if not result.valid:
            logger.warning(
                f"Batch for workflow '{workflow_id}' rejected: "
                f"{', '.join(sorted({e.code for e in errors}))}"
            )
        return result

    # ========== Stage 1: schema ==========

    @staticmethod
    def parse(
        batch: OperationBatch | dict[str, Any],
    ) -> tuple[OperationBatch, list[ValidationIssue]]:
        """Parse each op on its own so every malformed op is reported.

        Returns the batch of well-formed ops and the schema findings.
        """
        if isinstance(batch, OperationBatch):
            return batch, []

        if not isinstance(batch, dict):
            return OperationBatch(), [
                error(
                    IssueType.SCHEMA_VALIDATION,
                    "SCHEMA_VALIDATION",
                    f"Batch must be a mapping, got {type(batch).__name__}",
                )
            ]

        issues: list[ValidationIssue] = []
        version = batch.get("version", "v1")
        if not isinstance(version, str):
            issues.append(
                error(
                    IssueType.SCHEMA_VALIDATION,
                    "SCHEMA_VALIDATION",
                    "Batch version must be a string",
                    location={"field": "version"},
                )
            )
            version = "v1"

        raw_ops = batch.get("ops")
        if not isinstance(raw_ops, list):
            issues.append(
                error(
                    IssueType.SCHEMA_VALIDATION,
                    "SCHEMA_VALIDATION",
                    "Batch must contain an 'ops' list",
                    location={"field": "ops"},
                )
            )
            return OperationBatch(version=version), issues

        ops = []
        for index, raw in enumerate(raw_ops):
            try:
                ops.append(OPERATION_ADAPTER.validate_python(raw))
            except ValidationError as e:
                for detail in e.errors():
                    field = ".".join(str(part) for part in detail["loc"])
                    issues.append(
                        error(
                            IssueType.SCHEMA_VALIDATION,
                            "SCHEMA_VALIDATION",
                            f"Operation {index}: {detail['msg']}"
                            + (f" ({field})" if field else ""),
                            location={"opIndex": index, "field": field},
                        )
                    )
        return OperationBatch(version=version, ops=ops), issues

    # ========== Stage 2: policy ==========

    async def _check_policy(
        self, batch: OperationBatch, context: PolicyContext
    ) -> list[ValidationIssue]:
        if self.policy_engine is None:
            return []
        try:
            await asyncio.wait_for(self.policy_engine.check_batch(batch, context), self.timeout)
        except PolicyViolation as e:
            return [
                error(
                    IssueType.POLICY_VIOLATION,
                    "POLICY_VIOLATION",
                    e.message,
                    location={"policy": e.policy_name, "details": e.details},
                )
            ]
        except asyncio.TimeoutError:
            logger.warning(f"Policy check timed out after {self.timeout}s")
            return [
                error(
                    IssueType.POLICY_VIOLATION,
                    "POLICY_TIMEOUT",
                    f"Policy check did not complete within {self.timeout}s",
                )
            ]
        except Exception as e:
            reason = str(e) or type(e).__name__
            logger.warning(f"Policy engine failed: {reason}")
            return [
                error(
                    IssueType.POLICY_VIOLATION,
                    "POLICY_UNAVAILABLE",
                    f"Policy check could not run: {reason}",
                )
            ]
        return []

    # ========== Stage 3: node types ==========

    async def _describe_types(
        self, batch: OperationBatch, graph: WorkflowGraph
    ) -> tuple[dict[str, NodeTypeDescription | None] | None, list[ValidationIssue]]:
        """Fetch descriptions for every node type the batch touches.

        Returns ``None`` with a warning when introspection is absent or
        unavailable; the node type and parameter stages are then skipped.
        """
        if self.introspection is None:
            return None, [
                warning(
                    IssueType.INTROSPECTION_UNAVAILABLE,
                    "INTROSPECTION_UNAVAILABLE",
                    "Node type checks skipped: no introspection client configured",
                )
            ]

        types = {node.type for node in graph.nodes}
        types.update(op.node.type for op in batch.ops if isinstance(op, AddNodeOp))

        descriptions: dict[str, NodeTypeDescription | None] = {}
        for node_type in sorted(types):
            try:
                descriptions[node_type] = await asyncio.wait_for(
                    self.introspection.get_node_type(node_type), self.timeout
                )
            except asyncio.TimeoutError:
                reason = f"timed out after {self.timeout}s"
            except Exception as e:
                reason = str(e) or type(e).__name__
            else:
                continue
            logger.warning(f"Introspection unavailable for '{node_type}': {reason}")
            return None, [
                warning(
                    IssueType.INTROSPECTION_UNAVAILABLE,
                    "INTROSPECTION_UNAVAILABLE",
                    f"Node type checks skipped: introspection {reason}",
                    location={"nodeType": node_type},
                )
            ]
        return descriptions, []

    def _check_node_types(
        self, batch: OperationBatch, descriptions: dict[str, NodeTypeDescription | None]
    ) -> list[ValidationIssue]:
        issues = []
        for index, op in enumerate(batch.ops):
            if isinstance(op, AddNodeOp) and descriptions.get(op.node.type) is None:
                issues.append(
                    error(
                        IssueType.INVALID_NODE_TYPE,
                        "INVALID_NODE_TYPE",
                        f"Unknown node type '{op.node.type}'",
                        node_id=op.node.id,
                        location={"opIndex": index, "nodeType": op.node.type},
                    )
                )
        return issues

    # ========== Stage 4: referential integrity ==========

    def _check_references(self, batch: OperationBatch, graph: WorkflowGraph) -> list[ValidationIssue]:
        tracker = _NodeTracker(graph)
        issues: list[ValidationIssue] = []

        for index, op in enumerate(batch.ops):
            match op:
                case AddNodeOp(node=node):
                    taken = tracker.resolve(node.id) or tracker.resolve(node.name)
                    if taken is not None:
                        issues.append(
                            error(
                                IssueType.DUPLICATE_NODE,
                                "DUPLICATE_NODE",
                                f"Node '{node.id}' already exists",
                                node_id=node.id,
                                location={"opIndex": index},
                            )
                        )
                    else:
                        tracker.add(node.id, node.name, node.type)
                case ConnectOp() | DisconnectOp():
                    for endpoint, ref in (("from", op.from_), ("to", op.to)):
                        if tracker.resolve(ref) is None:
                            issues.append(
                                error(
                                    IssueType.INVALID_CONNECTION,
                                    "INVALID_CONNECTION",
                                    f"{op.op} {endpoint} node '{ref}' does not exist",
                                    node_id=ref,
                                    location={"opIndex": index, "endpoint": endpoint},
                                )
                            )
                case SetParamsOp() | DeleteOp():
                    node_id = tracker.resolve(op.target)
                    if node_id is None:
                        issues.append(
                            error(
                                IssueType.INVALID_OPERATION,
                                "INVALID_OPERATION",
                                f"{op.op} target '{op.target}' does not exist",
                                node_id=op.target,
                                location={"opIndex": index},
                            )
                        )
                    elif isinstance(op, DeleteOp):
                        tracker.remove(node_id)
                case AnnotateOp():
                    pass
        return issues

    # ========== Stage 5: parameters ==========

    def _check_parameters(
        self,
        batch: OperationBatch,
        graph: WorkflowGraph,
        descriptions: dict[str, NodeTypeDescription | None],
    ) -> list[ValidationIssue]:
        tracker = _NodeTracker(graph)
        issues: list[ValidationIssue] = []

        for op in batch.ops:
            if isinstance(op, AddNodeOp):
                tracker.add(op.node.id, op.node.name, op.node.type)
                description = descriptions.get(op.node.type)
                if description is None:
                    continue
                for prop in description.required_properties:
                    if prop.name not in op.node.parameters:
                        issues.append(
                            warning(
                                IssueType.MISSING_PARAMETER,
                                "MISSING_PARAMETER",
                                f"Required parameter '{prop.name}' is missing on node '{op.node.id}'",
                                node_id=op.node.id,
                                parameter=prop.name,
                                suggestion=(
                                    f"Set '{prop.name}' (default: {prop.default!r})"
                                    if prop.default is not None
                                    else f"Set '{prop.name}'"
                                ),
                            )
                        )
                issues.extend(self._check_values(op.node.id, op.node.parameters, description))
            elif isinstance(op, SetParamsOp):
                node_type = tracker.type_of(op.target)
                description = descriptions.get(node_type) if node_type else None
                if description is not None:
                    issues.extend(self._check_values(op.target, op.parameters, description))
            elif isinstance(op, DeleteOp):
                node_id = tracker.resolve(op.target)
                if node_id:
                    tracker.remove(node_id)
        return issues

    def _check_values(
        self, node_ref: str, parameters: dict[str, Any], description: NodeTypeDescription
    ) -> list[ValidationIssue]:
        issues = []
        for name, value in parameters.items():
            prop = description.get_property(name)
            if prop is None:
                continue
            if value is None or value == "":
                issues.append(
                    warning(
                        IssueType.MISSING_PARAMETER if prop.required else IssueType.EMPTY_PARAMETER,
                        "MISSING_PARAMETER" if prop.required else "EMPTY_PARAMETER",
                        f"Parameter '{name}' on node '{node_ref}' is empty",
                        node_id=node_ref,
                        parameter=name,
                    )
                )
            elif (
                prop.options
                and value not in prop.options
                and not (isinstance(value, str) and is_expression(value))
            ):
                issues.append(
                    warning(
                        IssueType.INVALID_PARAMETER,
                        "INVALID_OPTION",
                        f"Parameter '{name}' on node '{node_ref}' has value {value!r}, "
                        f"expected one of {prop.options}",
                        node_id=node_ref,
                        parameter=name,
                        location={"options": prop.options},
                    )
                )
        return issues

    # ========== Stage 6: complexity ==========

    def _check_complexity(self, batch: OperationBatch, graph: WorkflowGraph) -> list[ValidationIssue]:
        projected, _ = project_batch(graph, batch)
        node_count = len(projected.nodes)
        connection_count = projected.connection_count()

        issues = []
        if node_count > self.max_nodes:
            issues.append(
                warning(
                    IssueType.HIGH_COMPLEXITY,
                    "HIGH_COMPLEXITY",
                    f"Workflow would have {node_count} nodes (threshold {self.max_nodes})",
                    location={"nodeCount": node_count, "threshold": self.max_nodes},
                    suggestion="Split the workflow into sub-workflows with Execute Workflow nodes",
                )
            )
        if connection_count > self.max_connections:
            issues.append(
                warning(
                    IssueType.HIGH_COMPLEXITY,
                    "HIGH_COMPLEXITY",
                    f"Workflow would have {connection_count} connections "
                    f"(threshold {self.max_connections})",
                    location={"connectionCount": connection_count, "threshold": self.max_connections},
                    suggestion="Split the workflow into sub-workflows with Execute Workflow nodes",
                )
            )
        return issues

    # ========== Stage 7: security ==========

    def _check_security(self, batch: OperationBatch, graph: WorkflowGraph) -> list[ValidationIssue]:
        tracker = _NodeTracker(graph)
        issues: list[ValidationIssue] = []
        for op in batch.ops:
            if isinstance(op, AddNodeOp):
                tracker.add(op.node.id, op.node.name, op.node.type)
                issues.extend(scan_parameters(op.node.id, op.node.type, op.node.parameters))
                issues.extend(scan_credentials(op.node.id, op.node.credentials))
            elif isinstance(op, SetParamsOp):
                node_type = tracker.type_of(op.target) or ""
                issues.extend(scan_parameters(op.target, node_type, op.parameters))
        return issues
