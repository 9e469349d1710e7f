"""Tests for the policy engine and policy configuration loading."""

from __future__ import annotations

import pytest
import yaml
from pydantic import ValidationError

from flowsmith.core.graph_schema import WorkflowGraph, parse_batch
from flowsmith.core.policies import (
    CostLimitConfig,
    DestructiveChangeConfig,
    DomainBlacklistConfig,
    NodeTypeLimitConfig,
    NodeWhitelistConfig,
    OperationLimitConfig,
    ParameterPolicyConfig,
    PolicyConfigError,
    PolicyContext,
    PolicyLoader,
    PolicyManager,
    PolicyViolation,
    WorkflowComplexityConfig,
    merge_policies,
)


def _batch(*ops):
    return parse_batch({"ops": list(ops)})


def _add(node_id: str, node_type: str = "n8n-nodes-base.set", **parameters) -> dict:
    return {"op": "add_node", "node": {"id": node_id, "type": node_type, "parameters": parameters}}


def _context(graph: WorkflowGraph | None = None, cost: float | None = None) -> PolicyContext:
    return PolicyContext(workflow_id="wf-1", current_workflow=graph, estimated_cost=cost)


def _violation(manager: PolicyManager, batch, context) -> PolicyViolation:
    with pytest.raises(PolicyViolation) as exc_info:
        manager.check(batch, context)
    return exc_info.value


# =============================================================================
# Individual policies
# =============================================================================


class TestNodeWhitelist:
    """Tests for node_whitelist."""

    def test_rejects_unlisted_type(self):
        """Types outside the whitelist are rejected."""
        manager = PolicyManager([NodeWhitelistConfig(whitelist=["n8n-nodes-base.set"])])
        violation = _violation(manager, _batch(_add("x", "n8n-nodes-base.executeCommand")), _context())

        assert violation.policy_name == "node_whitelist"
        assert violation.details["nodeType"] == "n8n-nodes-base.executeCommand"

    def test_bare_names_match(self):
        """Bare type names compare in canonical form."""
        manager = PolicyManager([NodeWhitelistConfig(whitelist=["set"])])
        manager.check(_batch(_add("x", "n8n-nodes-base.set")), _context())

    def test_allow_unknown(self):
        manager = PolicyManager([NodeWhitelistConfig(whitelist=[], allow_unknown=True)])
        manager.check(_batch(_add("x", "acme.anything")), _context())


class TestOperationLimit:
    """Tests for operation_limit."""

    def test_total_operations(self):
        manager = PolicyManager([OperationLimitConfig(max_operations=2)])
        violation = _violation(manager, _batch(_add("a"), _add("b"), _add("c")), _context())
        assert violation.details == {"operationCount": 3, "limit": 2}

    def test_nodes_per_batch(self):
        manager = PolicyManager([OperationLimitConfig(max_operations=10, max_nodes_per_batch=1)])
        violation = _violation(manager, _batch(_add("a"), _add("b")), _context())
        assert violation.details["nodeCount"] == 2

    def test_connections_per_batch(self):
        manager = PolicyManager([OperationLimitConfig(max_operations=10, max_connections_per_batch=1)])
        batch = _batch(
            {"op": "connect", "from": "a", "to": "b"},
            {"op": "connect", "from": "b", "to": "c"},
        )
        violation = _violation(manager, batch, _context())
        assert violation.details["connectionCount"] == 2


class TestNodeTypeLimit:
    """Tests for node_type_limit."""

    def test_counts_existing_and_added(self, linear_graph):
        """The limit applies to existing plus added nodes of a type."""
        manager = PolicyManager([NodeTypeLimitConfig(limits={"httpRequest": 1})])
        violation = _violation(manager, _batch(_add("h2", "httpRequest")), _context(linear_graph))

        assert violation.details["existing"] == 1
        assert violation.details["total"] == 2

    def test_existing_over_limit_not_blocking_unrelated_batch(self, linear_graph):
        """Batches that add none of the type are not blocked."""
        manager = PolicyManager([NodeTypeLimitConfig(limits={"httpRequest": 0})])
        manager.check(_batch(_add("s")), _context(linear_graph))


class TestParameterPolicy:
    """Tests for parameter_policy."""

    def test_forbidden(self):
        """Wildcard rules apply to every node type."""
        manager = PolicyManager(
            [
                ParameterPolicyConfig(
                    rules=[{"node_type": "*", "parameter": "authentication", "policy": "forbidden"}]
                )
            ]
        )
        violation = _violation(
            manager, _batch(_add("h", "httpRequest", authentication="genericCredentialType")), _context()
        )
        assert violation.details["parameter"] == "authentication"

    def test_required_only_on_add(self, linear_graph):
        """Required rules check add_node, not partial set_params updates."""
        manager = PolicyManager(
            [
                ParameterPolicyConfig(
                    rules=[
                        {
                            "node_type": "n8n-nodes-base.httpRequest",
                            "parameter": "timeout",
                            "policy": "required",
                        }
                    ]
                )
            ]
        )
        manager.check(
            _batch({"op": "set_params", "target": "fetch", "parameters": {"method": "POST"}}),
            _context(linear_graph),
        )
        with pytest.raises(PolicyViolation):
            manager.check(_batch(_add("h", "httpRequest", url="https://a")), _context())

    def test_pattern_resolves_set_params_type(self, linear_graph):
        """set_params targets are typed from the current graph."""
        manager = PolicyManager(
            [
                ParameterPolicyConfig(
                    rules=[
                        {
                            "node_type": "httpRequest",
                            "parameter": "url",
                            "policy": "pattern",
                            "pattern": "^https://",
                            "message": "HTTPS only",
                        }
                    ]
                )
            ]
        )
        violation = _violation(
            manager,
            _batch({"op": "set_params", "target": "Fetch", "parameters": {"url": "ftp://x"}}),
            _context(linear_graph),
        )
        assert violation.message == "HTTPS only"

    def test_invalid_pattern_rejected_on_load(self):
        """Patterns are compiled when the rule is built, not on first use."""
        with pytest.raises(ValidationError, match="Invalid regex pattern"):
            ParameterPolicyConfig(
                rules=[{"node_type": "*", "parameter": "url", "policy": "pattern", "pattern": "(["}]
            )


class TestCostLimit:
    """Tests for cost_limit."""

    def test_over_limit(self):
        manager = PolicyManager([CostLimitConfig(max_estimated_cost=10)])
        violation = _violation(manager, _batch(), _context(cost=11))
        assert violation.details["estimatedCost"] == 11

    def test_unknown_cost_passes(self):
        manager = PolicyManager([CostLimitConfig(max_estimated_cost=10)])
        manager.check(_batch(), _context(cost=None))


class TestWorkflowComplexity:
    """Tests for workflow_complexity."""

    def test_projected_node_count(self, linear_graph):
        manager = PolicyManager(
            [WorkflowComplexityConfig(max_nodes=3, max_depth=10, max_connections=10)]
        )
        violation = _violation(manager, _batch(_add("extra")), _context(linear_graph))
        assert violation.details == {"nodeCount": 4, "limit": 3}

    def test_depth(self, linear_graph):
        """Depth is the longest path in nodes."""
        manager = PolicyManager(
            [WorkflowComplexityConfig(max_nodes=10, max_depth=3, max_connections=10)]
        )
        batch = _batch(_add("extra"), {"op": "connect", "from": "transform", "to": "extra"})
        violation = _violation(manager, batch, _context(linear_graph))
        assert violation.details == {"depth": 4, "limit": 3}


class TestDomainBlacklist:
    """Tests for domain_blacklist."""

    def test_glob_match(self):
        manager = PolicyManager([DomainBlacklistConfig(domains=["*.evil.com", "bad.org"])])
        violation = _violation(
            manager, _batch(_add("h", "httpRequest", url="https://api.evil.com/x")), _context()
        )
        assert violation.details["urls"] == ["https://api.evil.com/x"]

    def test_other_domains_pass(self):
        manager = PolicyManager([DomainBlacklistConfig(domains=["bad.org"])])
        manager.check(_batch(_add("h", "httpRequest", url="https://good.org")), _context())


class TestDestructiveChange:
    """Tests for destructive_change."""

    def test_max_deletes(self, linear_graph):
        manager = PolicyManager([DestructiveChangeConfig(max_deletes=0, protect_triggers=False)])
        violation = _violation(manager, _batch({"op": "delete", "target": "fetch"}), _context(linear_graph))
        assert violation.details["deleteCount"] == 1

    def test_protect_triggers(self, linear_graph):
        manager = PolicyManager([DestructiveChangeConfig()])
        violation = _violation(
            manager, _batch({"op": "delete", "target": "trigger"}), _context(linear_graph)
        )
        assert violation.details["nodeId"] == "trigger"


# =============================================================================
# Manager and loader
# =============================================================================


class TestPolicyManager:
    """Tests for PolicyManager aggregation."""

    def test_evaluate_collects_all(self):
        """evaluate returns every violation; check stops at the first."""
        manager = PolicyManager(
            [
                OperationLimitConfig(max_operations=1),
                CostLimitConfig(max_estimated_cost=1),
            ]
        )
        violations = manager.evaluate(_batch(_add("a"), _add("b")), _context(cost=5))
        assert [v.policy_name for v in violations] == ["operation_limit", "cost_limit"]

    def test_disabled_policies_skipped(self):
        manager = PolicyManager([OperationLimitConfig(max_operations=1, enabled=False)])
        assert manager.evaluate(_batch(_add("a"), _add("b")), _context()) == []

    @pytest.mark.asyncio
    async def test_check_batch(self):
        """check_batch is the async entry point used by the pipeline."""
        manager = PolicyManager([OperationLimitConfig(max_operations=1)])
        with pytest.raises(PolicyViolation):
            await manager.check_batch(_batch(_add("a"), _add("b")), _context())

    def test_merge_policies(self):
        """Custom policies replace defaults of the same type and add new ones."""
        defaults = [OperationLimitConfig(max_operations=50), CostLimitConfig(max_estimated_cost=100)]
        custom = [OperationLimitConfig(max_operations=5), DomainBlacklistConfig(domains=["x.com"])]

        merged = merge_policies(custom, defaults)
        assert [p.type for p in merged] == ["operation_limit", "cost_limit", "domain_blacklist"]
        assert merged[0].max_operations == 5


class TestPolicyLoader:
    """Tests for YAML policy loading."""

    def test_packaged_environments(self):
        loader = PolicyLoader()
        assert set(loader.environments()) >= {"development", "production", "strict"}

    def test_strict_extends_production(self):
        """strict inherits production policies and overrides limits."""
        policies = {p.type: p for p in PolicyLoader().load_environment("strict")}

        assert "node_whitelist" in policies
        assert policies["operation_limit"].max_operations == 10
        assert policies["destructive_change"].max_deletes == 0

    def test_unknown_environment(self):
        with pytest.raises(PolicyConfigError, match="Unknown policy environment"):
            PolicyLoader().load_environment("staging")

    def test_schema_violation(self, tmp_path):
        """Files failing the JSON schema are rejected."""
        path = tmp_path / "policies.yaml"
        path.write_text(yaml.safe_dump({"environments": {"dev": {"policies": [{"type": "teleport"}]}}}))

        with pytest.raises(PolicyConfigError, match="validation failed"):
            PolicyLoader(path).load_environment("dev")

    def test_circular_extends(self, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "environments": {
                        "a": {"extends": "b", "policies": []},
                        "b": {"extends": "a", "policies": []},
                    }
                }
            )
        )

        with pytest.raises(PolicyConfigError, match="Circular"):
            PolicyLoader(path).load_environment("a")

    def test_invalid_policy_fields(self, tmp_path):
        """Fields that pass the schema but fail the model are reported."""
        path = tmp_path / "policies.yaml"
        path.write_text(
            yaml.safe_dump(
                {"environments": {"dev": {"policies": [{"type": "operation_limit", "max_operations": 0}]}}}
            )
        )

        with pytest.raises(PolicyConfigError, match="Invalid policy"):
            PolicyLoader(path).load_environment("dev")

    def test_bad_regex_is_config_error(self, tmp_path):
        path = tmp_path / "policies.yaml"
        rule = {"node_type": "*", "parameter": "url", "policy": "pattern", "pattern": "(["}
        path.write_text(
            yaml.safe_dump(
                {"environments": {"dev": {"policies": [{"type": "parameter_policy", "rules": [rule]}]}}}
            )
        )

        with pytest.raises(PolicyConfigError, match="Invalid regex pattern"):
            PolicyLoader(path).load_environment("dev")
