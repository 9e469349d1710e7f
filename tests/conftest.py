# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the flowsmith test suite.

Provides:
- The packaged node type catalog
- Sample workflow graphs (empty, linear, branching)
- A GraphManager wired to the development policy set
"""

from __future__ import annotations

import pytest

from flowsmith.core.config import EngineConfig
from flowsmith.core.graph_manager import GraphManager
from flowsmith.core.graph_schema import WorkflowGraph
from flowsmith.core.introspection import NodeTypeCatalog
from flowsmith.core.policies import PolicyManager


# =============================================================================
# Graph Fixtures
# =============================================================================


@pytest.fixture
def empty_graph() -> WorkflowGraph:
    return WorkflowGraph(id="wf-test")


@pytest.fixture
def linear_graph() -> WorkflowGraph:
    """trigger -> fetch -> transform"""
    return WorkflowGraph.model_validate(
        {
            "id": "wf-linear",
            "nodes": [
                {"id": "trigger", "type": "n8n-nodes-base.manualTrigger"},
                {
                    "id": "fetch",
                    "name": "Fetch",
                    "type": "n8n-nodes-base.httpRequest",
                    "parameters": {"url": "https://api.example.com/items", "method": "GET"},
                },
                {"id": "transform", "type": "n8n-nodes-base.set", "parameters": {"values": {}}},
            ],
            "connections": {
                "trigger": [[{"node": "fetch"}]],
                "fetch": [[{"node": "transform"}]],
            },
        }
    )


@pytest.fixture
def branching_graph() -> WorkflowGraph:
    """webhook -> check -(true)-> a, check -(false)-> b, a+b -> merge"""
    return WorkflowGraph.model_validate(
        {
            "id": "wf-branch",
            "nodes": [
                {"id": "hook", "type": "n8n-nodes-base.webhook", "parameters": {"path": "in"}},
                {"id": "check", "type": "n8n-nodes-base.if", "parameters": {"conditions": {}}},
                {"id": "a", "type": "n8n-nodes-base.set"},
                {"id": "b", "type": "n8n-nodes-base.set"},
                {"id": "merge", "type": "n8n-nodes-base.merge"},
            ],
            "connections": {
                "hook": [[{"node": "check"}]],
                "check": [[{"node": "a"}], [{"node": "b"}]],
                "a": [[{"node": "merge"}]],
                "b": [[{"node": "merge", "index": 1}]],
            },
        }
    )


# =============================================================================
# Collaborator Fixtures
# =============================================================================


@pytest.fixture(scope="session")
def catalog() -> NodeTypeCatalog:
    """Packaged node type catalog."""
    return NodeTypeCatalog()


@pytest.fixture
def dev_policies() -> PolicyManager:
    return PolicyManager.from_environment("development")


@pytest.fixture
def manager(catalog: NodeTypeCatalog, dev_policies: PolicyManager) -> GraphManager:
    """GraphManager with the development policy set and a small history."""
    return GraphManager(
        policy_engine=dev_policies,
        introspection=catalog,
        config=EngineConfig(history_limit=5, lock_timeout=1.0),
    )
