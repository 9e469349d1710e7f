"""Lints over a committed workflow graph, plus catalog-driven autofix."""

import asyncio
import logging

import networkx as nx
from pydantic import BaseModel

from flowsmith.core.findings import Severity
from flowsmith.core.graph_schema import OperationBatch, SetParamsOp, WorkflowGraph
from flowsmith.core.introspection import IntrospectionClient, NodeTypeDescription
from flowsmith.core.security import is_expression

logger = logging.getLogger(__name__)


class LintIssue(BaseModel):
    code: str
    level: Severity
    message: str
    node: str | None = None


class LintReport(BaseModel):
    valid: bool
    lints: list[LintIssue]


def _is_empty(value) -> bool:
    return value is None or value == ""


def _invalid_option(value, options: list | None) -> bool:
    if not options or _is_empty(value):
        return False
    if isinstance(value, str) and is_expression(value):
        return False
    return value not in options


async def describe_graph(
    graph: WorkflowGraph, introspection: IntrospectionClient, timeout: float = 5.0
) -> dict[str, NodeTypeDescription | None]:
    """Fetch the description of every node type used in ``graph``.

    Types whose lookup fails or times out are left out of the result, so
    lint_graph can report them instead of failing the whole lint.
    """
    descriptions: dict[str, NodeTypeDescription | None] = {}
    for node_type in sorted({node.type for node in graph.nodes}):
        try:
            descriptions[node_type] = await asyncio.wait_for(
                introspection.get_node_type(node_type), timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Introspection timed out for {node_type}")
        except Exception as e:
            logger.warning(f"Introspection failed for {node_type}: {e}")
    return descriptions


def lint_graph(
    graph: WorkflowGraph, descriptions: dict[str, NodeTypeDescription | None] | None = None
) -> LintReport:
    """Structural and parameter lints. ``valid`` is false when any lint is an error.

    Parameter lints run only for node types present in ``descriptions``. When
    ``descriptions`` is given, node types missing from it get an
    ``introspection_unavailable`` warning.
    """
    lints: list[LintIssue] = []

    if not graph.trigger_nodes():
        lints.append(
            LintIssue(code="missing_trigger", level=Severity.WARNING, message="Workflow has no trigger node")
        )

    sources = {source for source, _, _ in graph.iter_connections()}
    targets = {target.node for _, _, target in graph.iter_connections()}
    for node in graph.nodes:
        if node.is_trigger:
            continue
        if node.id not in targets:
            lints.append(
                LintIssue(
                    code="unconnected_node",
                    level=Severity.WARNING,
                    message=f'Node "{node.name}" has no incoming connections',
                    node=node.name,
                )
            )
        if node.id not in sources:
            lints.append(
                LintIssue(
                    code="dangling_branch",
                    level=Severity.WARNING,
                    message=f'Node "{node.name}" has no outgoing connections',
                    node=node.name,
                )
            )

    if descriptions is not None:
        for node_type in sorted({node.type for node in graph.nodes} - descriptions.keys()):
            lints.append(
                LintIssue(
                    code="introspection_unavailable",
                    level=Severity.WARNING,
                    message=f"Parameter checks skipped for {node_type}: node type lookup failed",
                )
            )
        for node in graph.nodes:
            description = descriptions.get(node.type)
            if description is None:
                continue
            for prop in description.properties:
                value = node.parameters.get(prop.name)
                if prop.required and _is_empty(value):
                    lints.append(
                        LintIssue(
                            code="missing_required_param",
                            level=Severity.ERROR,
                            message=f'Node "{node.name}" is missing required parameter "{prop.name}"',
                            node=node.name,
                        )
                    )
                elif _invalid_option(value, prop.options):
                    lints.append(
                        LintIssue(
                            code="invalid_enum",
                            level=Severity.ERROR,
                            message=f'Node "{node.name}" has invalid {prop.name} "{value}"',
                            node=node.name,
                        )
                    )

    if not nx.is_directed_acyclic_graph(graph.to_networkx()):
        lints.append(
            LintIssue(
                code="circular_dependency",
                level=Severity.ERROR,
                message="Workflow contains circular dependencies",
            )
        )

    valid = not any(lint.level == Severity.ERROR for lint in lints)
    return LintReport(valid=valid, lints=lints)


def build_autofix_batch(
    graph: WorkflowGraph, descriptions: dict[str, NodeTypeDescription | None]
) -> OperationBatch:
    """set_params ops that fill empty required parameters and reset invalid options.

    Both use the declared default; parameters without a default are left alone.
    """
    ops = []
    for node in graph.nodes:
        description = descriptions.get(node.type)
        if description is None:
            continue
        fixes = {}
        for prop in description.properties:
            if prop.default is None:
                continue
            value = node.parameters.get(prop.name)
            if (prop.required and _is_empty(value)) or _invalid_option(value, prop.options):
                fixes[prop.name] = prop.default
        if fixes:
            logger.debug(f"Autofix for {node.id}: {sorted(fixes)}")
            ops.append(SetParamsOp(target=node.id, parameters=fixes))
    return OperationBatch(ops=ops)
