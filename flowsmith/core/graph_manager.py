"""Graph manager: per-workflow graph state, batch commit and undo/redo.

The manager is the only writer of workflow graphs. Every batch is validated
before any operation is applied; operations are then folded over a
copy-on-write graph so that a failure anywhere in the batch leaves the
committed graph untouched. Each commit records the inverse batch, which makes
undo a privileged apply (no validation or policy re-check).

Collaborators (validation pipeline, policy engine, introspection client,
simulator) are injected; defaults are built from ``EngineConfig``.
"""

import logging
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from flowsmith.core.config import EngineConfig
from flowsmith.core.findings import ValidationIssue, ValidationResult
from flowsmith.core.graph_schema import OperationBatch, UndoEntry, WorkflowGraph
from flowsmith.core.introspection import IntrospectionClient, NodeTypeCatalog
from flowsmith.core.lints import LintReport, build_autofix_batch, describe_graph, lint_graph
from flowsmith.core.locks import WorkflowLock, WorkflowLockTimeout
from flowsmith.core.operations import OperationError, apply_batch, project_batch
from flowsmith.core.policies import PolicyManager
from flowsmith.core.simulation import SimulationEngine, SimulationResult
from flowsmith.core.validation import PolicyEngine, ValidationPipeline

logger = logging.getLogger(__name__)


class ApplyResult(BaseModel):
    """Outcome of apply_batch, undo, redo and autofix."""

    success: bool
    undo_id: str | None = None
    applied_operations: int = 0
    error: str | None = None
    issues: list[ValidationIssue] = Field(default_factory=list)


class HistoryResult(BaseModel):
    workflow_id: str
    undo: list[str] = Field(default_factory=list)  # Oldest first
    redo: list[str] = Field(default_factory=list)


class WorkflowState(BaseModel):
    """Exportable snapshot of one workflow: graph plus history."""

    workflow_id: str
    graph: WorkflowGraph
    undo_stack: list[UndoEntry] = Field(default_factory=list)
    redo_stack: list[UndoEntry] = Field(default_factory=list)


@dataclass
class _Workflow:
    graph: WorkflowGraph
    undo: deque
    redo: deque
    lock: WorkflowLock


def _new_undo_id() -> str:
    return f"undo_{uuid.uuid4().hex}"


class GraphManager:
    """Owns workflow graphs and their undo/redo history.

    USAGE:
        manager = GraphManager()
        result = await manager.apply_batch("wf-1", {"ops": [...]})
        if result.success:
            await manager.undo("wf-1", result.undo_id)
    """

    def __init__(
        self,
        pipeline: ValidationPipeline | None = None,
        policy_engine: PolicyEngine | None = None,
        introspection: IntrospectionClient | None = None,
        simulator: SimulationEngine | None = None,
        config: EngineConfig | None = None,
    ):
        self.config = config or EngineConfig()
        self.introspection = (
            introspection if introspection is not None else NodeTypeCatalog(self.config.catalog_file)
        )
        self.policy_engine = (
            policy_engine
            if policy_engine is not None
            else PolicyManager.from_environment(
                self.config.policy_environment, self.config.policy_file
            )
        )
        self.pipeline = pipeline or ValidationPipeline(
            policy_engine=self.policy_engine,
            introspection=self.introspection,
            max_nodes=self.config.max_nodes,
            max_connections=self.config.max_connections,
            timeout=self.config.external_call_timeout,
        )
        self.simulator = simulator or SimulationEngine(self.config.simulation_yield_every)
        self._workflows: dict[str, _Workflow] = {}

    # ========== Workflow lifecycle ==========

    def _new_state(self, workflow_id: str, graph: WorkflowGraph) -> _Workflow:
        limit = self.config.history_limit
        return _Workflow(
            graph=graph,
            undo=deque(maxlen=limit),
            redo=deque(maxlen=limit),
            lock=WorkflowLock(workflow_id, timeout=self.config.lock_timeout),
        )

    def _state(self, workflow_id: str) -> _Workflow:
        """Return the workflow state, creating an empty graph on first reference."""
        state = self._workflows.get(workflow_id)
        if state is None:
            state = self._new_state(workflow_id, WorkflowGraph(id=workflow_id))
            self._workflows[workflow_id] = state
            logger.info(f"Created workflow '{workflow_id}'")
        return state

    def create_workflow(
        self, workflow_id: str, name: str | None = None, graph: WorkflowGraph | None = None
    ) -> WorkflowGraph:
        """Register a workflow explicitly, optionally seeded with a graph.

        Raises:
            ValueError: If the id is taken or the seed graph is inconsistent
        """
        if workflow_id in self._workflows:
            raise ValueError(f"Workflow '{workflow_id}' already exists")

        seed = graph.model_copy(deep=True) if graph is not None else WorkflowGraph()
        problems = seed.validate_graph()
        if problems:
            raise ValueError(f"Invalid workflow graph: {'; '.join(problems)}")

        seed = seed.model_copy(update={"id": workflow_id, "name": name or seed.name})
        self._workflows[workflow_id] = self._new_state(workflow_id, seed)
        logger.info(f"Created workflow '{workflow_id}' with {len(seed.nodes)} node(s)")
        return seed.model_copy(deep=True)

    def get_workflow(self, workflow_id: str) -> WorkflowGraph | None:
        """Snapshot of the committed graph, or None if the workflow was never referenced."""
        state = self._workflows.get(workflow_id)
        if state is None:
            return None
        return state.graph.model_copy(deep=True)

    def list_workflows(self) -> list[str]:
        return sorted(self._workflows)

    def reset(self, workflow_id: str) -> None:
        """Clear undo/redo history; the committed graph is kept."""
        state = self._workflows.get(workflow_id)
        if state is not None:
            state.undo.clear()
            state.redo.clear()
            logger.info(f"Reset history for workflow '{workflow_id}'")

    def reset_all(self) -> None:
        """Forget every workflow."""
        self._workflows.clear()
        logger.info("Reset all workflows")

    def history(self, workflow_id: str) -> HistoryResult:
        state = self._workflows.get(workflow_id)
        if state is None:
            return HistoryResult(workflow_id=workflow_id)
        return HistoryResult(
            workflow_id=workflow_id,
            undo=[entry.undo_id for entry in state.undo],
            redo=[entry.undo_id for entry in state.redo],
        )

    # ========== Mutation ==========

    async def apply_batch(
        self, workflow_id: str, batch: OperationBatch | dict[str, Any]
    ) -> ApplyResult:
        """Validate and commit a batch. Nothing changes unless every op applies."""
        state = self._state(workflow_id)
        try:
            async with state.lock.write():
                return await self._apply(workflow_id, state, batch)
        except WorkflowLockTimeout as e:
            return ApplyResult(success=False, error=str(e))

    async def _apply(
        self, workflow_id: str, state: _Workflow, batch: OperationBatch | dict[str, Any]
    ) -> ApplyResult:
        parsed, schema_issues = ValidationPipeline.parse(batch)

        estimated_cost = None
        if not schema_issues:
            projected, _ = project_batch(state.graph, parsed)
            estimated_cost = self.simulator.estimate_cost(projected)

        validation = await self.pipeline.validate(
            workflow_id, parsed if not schema_issues else batch, state.graph, estimated_cost
        )
        if not validation.valid:
            codes = ", ".join(sorted({issue.code for issue in validation.errors}))
            return ApplyResult(
                success=False,
                error=f"Validation failed: {codes}",
                issues=validation.issues,
            )

        try:
            new_graph, inverse = apply_batch(state.graph, parsed)
        except OperationError as e:
            op = parsed.ops[e.op_index].op if e.op_index is not None else "?"
            logger.warning(f"Batch for workflow '{workflow_id}' aborted: {e}")
            return ApplyResult(
                success=False,
                error=f"Operation {e.op_index} ({op}) failed: {e}",
                issues=validation.issues,
            )

        undo_id = _new_undo_id()
        state.graph = new_graph
        state.undo.append(UndoEntry(undo_id=undo_id, batch=inverse, forward=parsed))
        state.redo.clear()
        logger.info(
            f"Committed {len(parsed.ops)} operation(s) to workflow '{workflow_id}' ({undo_id})"
        )
        return ApplyResult(
            success=True,
            undo_id=undo_id,
            applied_operations=len(parsed.ops),
            issues=validation.warnings,
        )

    async def undo(self, workflow_id: str, undo_id: str | None = None) -> ApplyResult:
        """Apply the inverse of the matching (or most recent) committed batch."""
        state = self._workflows.get(workflow_id)
        if state is None:
            return ApplyResult(success=False, error=f"Workflow '{workflow_id}' not found")
        try:
            async with state.lock.write():
                return self._undo(workflow_id, state, undo_id)
        except WorkflowLockTimeout as e:
            return ApplyResult(success=False, error=str(e))

    def _undo(self, workflow_id: str, state: _Workflow, undo_id: str | None) -> ApplyResult:
        if not state.undo:
            return ApplyResult(success=False, error="Nothing to undo")

        if undo_id is None:
            entry = state.undo[-1]
        else:
            entry = next((e for e in state.undo if e.undo_id == undo_id), None)
            if entry is None:
                return ApplyResult(success=False, error=f"Undo entry '{undo_id}' not found")

        try:
            new_graph, _ = apply_batch(state.graph, entry.batch)
        except OperationError as e:
            logger.warning(f"Undo {entry.undo_id} on workflow '{workflow_id}' failed: {e}")
            return ApplyResult(success=False, undo_id=entry.undo_id, error=f"Undo failed: {e}")

        state.graph = new_graph
        state.undo.remove(entry)
        state.redo.append(entry)
        logger.info(f"Undid {entry.undo_id} on workflow '{workflow_id}'")
        return ApplyResult(
            success=True, undo_id=entry.undo_id, applied_operations=len(entry.batch.ops)
        )

    async def redo(self, workflow_id: str) -> ApplyResult:
        """Re-apply the most recently undone batch."""
        state = self._workflows.get(workflow_id)
        if state is None:
            return ApplyResult(success=False, error=f"Workflow '{workflow_id}' not found")
        try:
            async with state.lock.write():
                return self._redo(workflow_id, state)
        except WorkflowLockTimeout as e:
            return ApplyResult(success=False, error=str(e))

    def _redo(self, workflow_id: str, state: _Workflow) -> ApplyResult:
        if not state.redo:
            return ApplyResult(success=False, error="Nothing to redo")

        entry = state.redo[-1]
        try:
            new_graph, inverse = apply_batch(state.graph, entry.forward)
        except OperationError as e:
            logger.warning(f"Redo {entry.undo_id} on workflow '{workflow_id}' failed: {e}")
            return ApplyResult(success=False, undo_id=entry.undo_id, error=f"Redo failed: {e}")

        state.graph = new_graph
        state.redo.pop()
        state.undo.append(UndoEntry(undo_id=entry.undo_id, batch=inverse, forward=entry.forward))
        logger.info(f"Redid {entry.undo_id} on workflow '{workflow_id}'")
        return ApplyResult(
            success=True, undo_id=entry.undo_id, applied_operations=len(entry.forward.ops)
        )

    # ========== Read-only analysis ==========

    async def validate(
        self, workflow_id: str, batch: OperationBatch | dict[str, Any]
    ) -> ValidationResult:
        """Validate a batch against the committed graph without applying it.

        Raises:
            WorkflowLockTimeout: If a writer holds the workflow for too long
        """
        state = self._state(workflow_id)
        async with state.lock.read():
            parsed, schema_issues = ValidationPipeline.parse(batch)
            estimated_cost = None
            if not schema_issues:
                projected, _ = project_batch(state.graph, parsed)
                estimated_cost = self.simulator.estimate_cost(projected)
            return await self.pipeline.validate(
                workflow_id, parsed if not schema_issues else batch, state.graph, estimated_cost
            )

    async def simulate(
        self, workflow_id: str, batch: OperationBatch | dict[str, Any] | None = None
    ) -> SimulationResult:
        """Simulate the committed graph, or the graph a batch would produce.

        Raises:
            WorkflowLockTimeout: If a writer holds the workflow for too long
        """
        state = self._state(workflow_id)
        async with state.lock.read():
            if batch is None:
                return await self.simulator.simulate(state.graph)

            parsed, schema_issues = ValidationPipeline.parse(batch)
            result = await self.simulator.simulate(state.graph, parsed)
            if schema_issues:
                result = result.model_copy(
                    update={"success": False, "errors": [*schema_issues, *result.errors]}
                )
            return result

    async def lint(self, workflow_id: str) -> LintReport:
        state = self._state(workflow_id)
        async with state.lock.read():
            descriptions = await describe_graph(
                state.graph, self.introspection, self.config.external_call_timeout
            )
            return lint_graph(state.graph, descriptions)

    async def autofix(self, workflow_id: str) -> ApplyResult:
        """Fill missing required parameters and reset invalid options.

        The fixes go through apply_batch, so they are validated and undoable.
        """
        state = self._state(workflow_id)
        async with state.lock.read():
            descriptions = await describe_graph(
                state.graph, self.introspection, self.config.external_call_timeout
            )
            batch = build_autofix_batch(state.graph, descriptions)
        if not batch.ops:
            return ApplyResult(success=True)
        return await self.apply_batch(workflow_id, batch)

    # ========== State transfer ==========

    def export_state(self, workflow_id: str) -> WorkflowState | None:
        state = self._workflows.get(workflow_id)
        if state is None:
            return None
        return WorkflowState(
            workflow_id=workflow_id,
            graph=state.graph.model_copy(deep=True),
            undo_stack=[entry.model_copy(deep=True) for entry in state.undo],
            redo_stack=[entry.model_copy(deep=True) for entry in state.redo],
        )

    def import_state(self, snapshot: WorkflowState | dict[str, Any]) -> None:
        """Replace a workflow's graph and history with an exported snapshot."""
        if not isinstance(snapshot, WorkflowState):
            snapshot = WorkflowState.model_validate(snapshot)

        state = self._new_state(snapshot.workflow_id, snapshot.graph.model_copy(deep=True))
        state.undo.extend(snapshot.undo_stack)
        state.redo.extend(snapshot.redo_stack)
        self._workflows[snapshot.workflow_id] = state
        logger.info(
            f"Imported workflow '{snapshot.workflow_id}' "
            f"({len(state.undo)} undo, {len(state.redo)} redo)"
        )

