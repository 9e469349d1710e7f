"""Core modules for the flowsmith engine."""

from flowsmith.core.graph_manager import ApplyResult, GraphManager, WorkflowState
from flowsmith.core.graph_schema import (
    Node,
    OperationBatch,
    UndoEntry,
    WorkflowGraph,
    parse_batch,
)
from flowsmith.core.operations import OperationError, apply_batch, apply_operation
from flowsmith.core.policies import PolicyManager, PolicyViolation
from flowsmith.core.simulation import SimulationEngine, SimulationResult
from flowsmith.core.validation import ValidationPipeline, ValidationResult

__all__ = [
    "ApplyResult",
    "GraphManager",
    "WorkflowState",
    "Node",
    "OperationBatch",
    "UndoEntry",
    "WorkflowGraph",
    "parse_batch",
    "OperationError",
    "apply_batch",
    "apply_operation",
    "PolicyManager",
    "PolicyViolation",
    "SimulationEngine",
    "SimulationResult",
    "ValidationPipeline",
    "ValidationResult",
]
