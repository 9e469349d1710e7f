"""Policy engine: pluggable rules checked against every operation batch.

Policies are independent of structural validity. They express organisational
limits such as forbidden node types, per-batch operation caps, cost ceilings
and destructive-change gates. Each policy raises ``PolicyViolation`` with a
machine-readable policy name and details.

Policy sets are declared per environment in ``config/policies.yaml`` and are
validated against ``config/policies_schema.json`` before parsing.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, Literal, Union
from urllib.parse import urlparse

import jsonschema
import networkx as nx
import yaml
from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from flowsmith.core.config import PACKAGE_DIR
from flowsmith.core.graph_schema import (
    AddNodeOp,
    ConnectOp,
    DeleteOp,
    OperationBatch,
    SetParamsOp,
    WorkflowGraph,
    canonical_node_type,
    is_trigger_type,
)
from flowsmith.core.operations import project_batch

logger = logging.getLogger(__name__)

URL_PARAMETER_KEYS = ("url", "baseUrl", "endpoint")


class PolicyViolation(Exception):
    """A batch breaks a policy rule."""

    def __init__(self, policy_name: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(f"Policy violation: {policy_name} - {message}")
        self.policy_name = policy_name
        self.message = message
        self.details = details or {}


class PolicyConfigError(Exception):
    """Invalid policy configuration."""

    pass


@dataclass
class PolicyContext:
    """What a policy may look at besides the batch itself."""

    workflow_id: str
    current_workflow: WorkflowGraph | None = None
    estimated_cost: float | None = None

    @property
    def graph(self) -> WorkflowGraph:
        return self.current_workflow or WorkflowGraph()


# ========== Policy configuration models ==========


class _PolicyConfigBase(BaseModel):
    enabled: bool = True


class NodeWhitelistConfig(_PolicyConfigBase):
    type: Literal["node_whitelist"] = "node_whitelist"
    whitelist: list[str]
    allow_unknown: bool = False


class OperationLimitConfig(_PolicyConfigBase):
    type: Literal["operation_limit"] = "operation_limit"
    max_operations: int = Field(gt=0)
    max_nodes_per_batch: int | None = Field(default=None, gt=0)
    max_connections_per_batch: int | None = Field(default=None, gt=0)


class NodeTypeLimitConfig(_PolicyConfigBase):
    type: Literal["node_type_limit"] = "node_type_limit"
    limits: dict[str, int]


class ParameterRule(BaseModel):
    node_type: str  # "*" matches every type
    parameter: str
    policy: Literal["forbidden", "required", "pattern"]
    pattern: str | None = None
    message: str | None = None

    @field_validator("pattern")
    @classmethod
    def compile_pattern(cls, v: str | None) -> str | None:
        if v is not None:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"Invalid regex pattern {v!r}: {e}") from e
        return v


class ParameterPolicyConfig(_PolicyConfigBase):
    type: Literal["parameter_policy"] = "parameter_policy"
    rules: list[ParameterRule]


class CostLimitConfig(_PolicyConfigBase):
    type: Literal["cost_limit"] = "cost_limit"
    max_estimated_cost: float = Field(gt=0)
    cost_unit: Literal["tokens", "dollars", "credits"] = "credits"


class WorkflowComplexityConfig(_PolicyConfigBase):
    type: Literal["workflow_complexity"] = "workflow_complexity"
    max_nodes: int = Field(gt=0)
    max_depth: int = Field(gt=0)
    max_connections: int = Field(gt=0)


class DomainBlacklistConfig(_PolicyConfigBase):
    type: Literal["domain_blacklist"] = "domain_blacklist"
    domains: list[str]  # "example.com" or "*.example.com"


class DestructiveChangeConfig(_PolicyConfigBase):
    type: Literal["destructive_change"] = "destructive_change"
    max_deletes: int | None = Field(default=None, ge=0)
    protect_triggers: bool = True


PolicyConfig = Annotated[
    Union[
        NodeWhitelistConfig,
        OperationLimitConfig,
        NodeTypeLimitConfig,
        ParameterPolicyConfig,
        CostLimitConfig,
        WorkflowComplexityConfig,
        DomainBlacklistConfig,
        DestructiveChangeConfig,
    ],
    Field(discriminator="type"),
]

_POLICY_LIST_ADAPTER: TypeAdapter = TypeAdapter(list[PolicyConfig])


# ========== Helpers ==========


def _iter_typed_params(batch: OperationBatch, graph: WorkflowGraph):
    """Yield (node type, node ref, parameters, partial) for add_node and set_params ops.

    set_params targets are resolved against the base graph plus the nodes the
    batch adds before them.
    """
    types: dict[str, str] = {}
    for node in graph.nodes:
        types[node.id] = node.type
        types.setdefault(node.name, node.type)

    for op in batch.ops:
        if isinstance(op, AddNodeOp):
            types[op.node.id] = op.node.type
            types.setdefault(op.node.name, op.node.type)
            yield op.node.type, op.node.id, op.node.parameters, False
        elif isinstance(op, SetParamsOp):
            yield types.get(op.target, "unknown"), op.target, op.parameters, True
        elif isinstance(op, DeleteOp):
            types.pop(op.target, None)


def _host_matches(url: str, patterns: list[str]) -> bool:
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        return False
    return any(fnmatch.fnmatch(host, pattern) for pattern in patterns)


# ========== Policies ==========


class NodeWhitelistPolicy:
    def __init__(self, config: NodeWhitelistConfig):
        self.config = config
        self._allowed = {canonical_node_type(t) for t in config.whitelist}

    def check(self, batch: OperationBatch, context: PolicyContext) -> None:
        if self.config.allow_unknown:
            return
        for op in batch.ops:
            if isinstance(op, AddNodeOp) and canonical_node_type(op.node.type) not in self._allowed:
                raise PolicyViolation(
                    "node_whitelist",
                    f"Node type '{op.node.type}' is not whitelisted",
                    {"nodeType": op.node.type, "nodeId": op.node.id},
                )


class OperationLimitPolicy:
    def __init__(self, config: OperationLimitConfig):
        self.config = config

    def check(self, batch: OperationBatch, context: PolicyContext) -> None:
        cfg = self.config
        if len(batch.ops) > cfg.max_operations:
            raise PolicyViolation(
                "operation_limit",
                f"Batch contains {len(batch.ops)} operations, exceeding limit of {cfg.max_operations}",
                {"operationCount": len(batch.ops), "limit": cfg.max_operations},
            )

        if cfg.max_nodes_per_batch:
            node_ops = sum(1 for op in batch.ops if isinstance(op, AddNodeOp))
            if node_ops > cfg.max_nodes_per_batch:
                raise PolicyViolation(
                    "operation_limit",
                    f"Batch adds {node_ops} nodes, exceeding limit of {cfg.max_nodes_per_batch}",
                    {"nodeCount": node_ops, "limit": cfg.max_nodes_per_batch},
                )

        if cfg.max_connections_per_batch:
            connect_ops = sum(1 for op in batch.ops if isinstance(op, ConnectOp))
            if connect_ops > cfg.max_connections_per_batch:
                raise PolicyViolation(
                    "operation_limit",
                    f"Batch creates {connect_ops} connections, "
                    f"exceeding limit of {cfg.max_connections_per_batch}",
                    {"connectionCount": connect_ops, "limit": cfg.max_connections_per_batch},
                )


class NodeTypeLimitPolicy:
    def __init__(self, config: NodeTypeLimitConfig):
        self.config = config

    def check(self, batch: OperationBatch, context: PolicyContext) -> None:
        existing: dict[str, int] = {}
        for node in context.graph.nodes:
            key = canonical_node_type(node.type)
            existing[key] = existing.get(key, 0) + 1

        adding: dict[str, int] = {}
        for op in batch.ops:
            if isinstance(op, AddNodeOp):
                key = canonical_node_type(op.node.type)
                adding[key] = adding.get(key, 0) + 1

        for node_type, limit in self.config.limits.items():
            key = canonical_node_type(node_type)
            total = existing.get(key, 0) + adding.get(key, 0)
            if adding.get(key, 0) and total > limit:
                raise PolicyViolation(
                    "node_type_limit",
                    f"Total {node_type} nodes would be {total}, exceeding limit of {limit}",
                    {
                        "nodeType": node_type,
                        "existing": existing.get(key, 0),
                        "adding": adding.get(key, 0),
                        "total": total,
                        "limit": limit,
                    },
                )


class ParameterPolicy:
    def __init__(self, config: ParameterPolicyConfig):
        self.config = config

    def check(self, batch: OperationBatch, context: PolicyContext) -> None:
        for node_type, node_ref, params, partial in _iter_typed_params(batch, context.graph):
            for rule in self.config.rules:
                if rule.node_type != "*" and canonical_node_type(rule.node_type) != canonical_node_type(
                    node_type
                ):
                    continue
                # set_params only touches some keys; completeness is checked on add_node
                if rule.policy == "required" and partial:
                    continue
                self._check_rule(rule, params, node_type, node_ref)

    def _check_rule(self, rule: ParameterRule, params: dict, node_type: str, node_ref: str) -> None:
        value = params.get(rule.parameter)
        details = {"nodeType": node_type, "nodeId": node_ref, "parameter": rule.parameter}
        match rule.policy:
            case "forbidden":
                if rule.parameter in params:
                    raise PolicyViolation(
                        "parameter_policy",
                        rule.message or f"Parameter '{rule.parameter}' is forbidden for {node_type}",
                        details,
                    )
            case "required":
                if value is None:
                    raise PolicyViolation(
                        "parameter_policy",
                        rule.message or f"Parameter '{rule.parameter}' is required for {node_type}",
                        details,
                    )
            case "pattern":
                if value is not None and rule.pattern and not re.search(rule.pattern, str(value)):
                    raise PolicyViolation(
                        "parameter_policy",
                        rule.message or f"Parameter '{rule.parameter}' does not match required pattern",
                        {**details, "value": value, "pattern": rule.pattern},
                    )


class CostLimitPolicy:
    def __init__(self, config: CostLimitConfig):
        self.config = config

    def check(self, batch: OperationBatch, context: PolicyContext) -> None:
        cost = context.estimated_cost
        if cost is not None and cost > self.config.max_estimated_cost:
            raise PolicyViolation(
                "cost_limit",
                f"Estimated cost {cost} {self.config.cost_unit} exceeds limit of "
                f"{self.config.max_estimated_cost}",
                {
                    "estimatedCost": cost,
                    "limit": self.config.max_estimated_cost,
                    "unit": self.config.cost_unit,
                },
            )


class WorkflowComplexityPolicy:
    def __init__(self, config: WorkflowComplexityConfig):
        self.config = config

    def check(self, batch: OperationBatch, context: PolicyContext) -> None:
        cfg = self.config
        projected, _ = project_batch(context.graph, batch)

        node_count = len(projected.nodes)
        if node_count > cfg.max_nodes:
            raise PolicyViolation(
                "workflow_complexity",
                f"Workflow would have {node_count} nodes, exceeding limit of {cfg.max_nodes}",
                {"nodeCount": node_count, "limit": cfg.max_nodes},
            )

        connection_count = projected.connection_count()
        if connection_count > cfg.max_connections:
            raise PolicyViolation(
                "workflow_complexity",
                f"Workflow would have {connection_count} connections, "
                f"exceeding limit of {cfg.max_connections}",
                {"connectionCount": connection_count, "limit": cfg.max_connections},
            )

        G = projected.to_networkx()
        if G.number_of_nodes() and nx.is_directed_acyclic_graph(G):
            depth = len(nx.dag_longest_path(G))
            if depth > cfg.max_depth:
                raise PolicyViolation(
                    "workflow_complexity",
                    f"Workflow would be {depth} nodes deep, exceeding limit of {cfg.max_depth}",
                    {"depth": depth, "limit": cfg.max_depth},
                )


class DomainBlacklistPolicy:
    def __init__(self, config: DomainBlacklistConfig):
        self.config = config

    def check(self, batch: OperationBatch, context: PolicyContext) -> None:
        blocked = []
        for _, _, params, _ in _iter_typed_params(batch, context.graph):
            for key in URL_PARAMETER_KEYS:
                url = params.get(key)
                if isinstance(url, str) and _host_matches(url, self.config.domains):
                    blocked.append(url)
        if blocked:
            raise PolicyViolation(
                "domain_blacklist", "URLs match domain blacklist", {"urls": blocked}
            )


class DestructiveChangePolicy:
    def __init__(self, config: DestructiveChangeConfig):
        self.config = config

    def check(self, batch: OperationBatch, context: PolicyContext) -> None:
        deletes = [op for op in batch.ops if isinstance(op, DeleteOp)]
        if self.config.max_deletes is not None and len(deletes) > self.config.max_deletes:
            raise PolicyViolation(
                "destructive_change",
                f"Batch deletes {len(deletes)} nodes, exceeding limit of {self.config.max_deletes}",
                {"deleteCount": len(deletes), "limit": self.config.max_deletes},
            )

        if self.config.protect_triggers:
            for op in deletes:
                node = context.graph.find_node(op.target)
                if node is not None and is_trigger_type(node.type):
                    raise PolicyViolation(
                        "destructive_change",
                        f"Deleting trigger node '{node.name}' requires manual review",
                        {"nodeId": node.id, "nodeType": node.type},
                    )


POLICY_CLASSES = {
    "node_whitelist": NodeWhitelistPolicy,
    "operation_limit": OperationLimitPolicy,
    "node_type_limit": NodeTypeLimitPolicy,
    "parameter_policy": ParameterPolicy,
    "cost_limit": CostLimitPolicy,
    "workflow_complexity": WorkflowComplexityPolicy,
    "domain_blacklist": DomainBlacklistPolicy,
    "destructive_change": DestructiveChangePolicy,
}


def merge_policies(custom: Iterable[BaseModel], defaults: Iterable[BaseModel]) -> list[BaseModel]:
    """Overlay custom policies onto defaults; same-type policies are replaced."""
    result = list(defaults)
    for policy in custom:
        for i, existing in enumerate(result):
            if existing.type == policy.type:
                result[i] = policy
                break
        else:
            result.append(policy)
    return result


class PolicyManager:
    """Runs a list of policies against a batch.

    USAGE:
        manager = PolicyManager.from_environment("production")
        await manager.check_batch(batch, PolicyContext(workflow_id="wf-1", current_workflow=graph))
    """

    def __init__(self, configs: Iterable[BaseModel] = ()):
        self.configs = list(configs)
        self.policies = [
            POLICY_CLASSES[config.type](config) for config in self.configs if config.enabled
        ]

    @classmethod
    def from_environment(cls, environment: str, policy_file: Path | None = None) -> "PolicyManager":
        loader = PolicyLoader(policy_file)
        return cls(loader.load_environment(environment))

    def evaluate(self, batch: OperationBatch, context: PolicyContext) -> list[PolicyViolation]:
        """Run every policy and collect all violations."""
        violations = []
        for policy in self.policies:
            try:
                policy.check(batch, context)
            except PolicyViolation as e:
                violations.append(e)
        return violations

    def check(self, batch: OperationBatch, context: PolicyContext) -> None:
        """Raise the first violation found."""
        for policy in self.policies:
            policy.check(batch, context)

    async def check_batch(self, batch: OperationBatch, context: PolicyContext) -> None:
        self.check(batch, context)


class PolicyLoader:
    """Load environment policy sets from YAML, validated with JSON Schema."""

    DEFAULT_PATH = PACKAGE_DIR / "config/policies.yaml"
    SCHEMA_PATH = PACKAGE_DIR / "config/policies_schema.json"

    def __init__(self, policy_file: Path | None = None, schema_path: Path | None = None):
        self.path = policy_file or self.DEFAULT_PATH
        self._schema = self._load_schema(schema_path or self.SCHEMA_PATH)
        self._document: dict | None = None

    def _load_schema(self, schema_path: Path) -> dict:
        try:
            with open(schema_path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PolicyConfigError(f"Cannot read policy schema {schema_path}: {e}") from e

    def _load_document(self) -> dict:
        if self._document is not None:
            return self._document
        try:
            with open(self.path, encoding="utf-8") as f:
                document = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise PolicyConfigError(f"Cannot read policy file {self.path}: {e}") from e

        try:
            jsonschema.validate(document, self._schema)
        except jsonschema.ValidationError as e:
            raise PolicyConfigError(
                f"Policy config validation failed in {self.path}: {e.message}\n"
                f"Path: {' -> '.join(str(p) for p in e.absolute_path)}"
            ) from e

        self._document = document
        return document

    def environments(self) -> list[str]:
        return list(self._load_document()["environments"])

    def load_environment(self, name: str, _seen: tuple[str, ...] = ()) -> list[BaseModel]:
        environments = self._load_document()["environments"]
        if name not in environments:
            raise PolicyConfigError(
                f"Unknown policy environment '{name}'. Available: {', '.join(environments)}"
            )
        if name in _seen:
            raise PolicyConfigError(f"Circular 'extends' chain: {' -> '.join([*_seen, name])}")

        env = environments[name]
        try:
            own = _POLICY_LIST_ADAPTER.validate_python(env.get("policies", []))
        except ValidationError as e:
            raise PolicyConfigError(f"Invalid policy in environment '{name}': {e}") from e

        parent = env.get("extends")
        if parent:
            return merge_policies(own, self.load_environment(parent, (*_seen, name)))
        return own
