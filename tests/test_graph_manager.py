"""Tests for the GraphManager batch coordinator.

Covers:
- Commit, rejection and all-or-nothing semantics
- Undo/redo, including by undo id and bounded history
- Read-only validate/simulate, lints and autofix
- Per-workflow locking
- State export/import
"""

from __future__ import annotations

import asyncio

import pytest

from flowsmith.core.config import EngineConfig
from flowsmith.core.findings import ValidationResult
from flowsmith.core.graph_manager import GraphManager, WorkflowState
from flowsmith.core.graph_schema import WorkflowGraph
from flowsmith.core.policies import PolicyManager


def _add(node_id: str, node_type: str = "n8n-nodes-base.set", **parameters) -> dict:
    return {"op": "add_node", "node": {"id": node_id, "type": node_type, "parameters": parameters}}


class _PermissiveValidator:
    """Pipeline stand-in that accepts every batch."""

    async def validate(self, workflow_id, batch, base_graph=None, estimated_cost=None):
        return ValidationResult(valid=True)


class _CrashingPolicies:
    async def check_batch(self, batch, context):
        raise RuntimeError("policy service down")


class _OfflineCatalog:
    async def get_node_type(self, node_type):
        raise ConnectionError("catalog offline")


# =============================================================================
# apply_batch
# =============================================================================


class TestApplyBatch:
    """Tests for committing batches."""

    @pytest.mark.asyncio
    async def test_insecure_url_applies_and_undoes(self, manager):
        """A plain-HTTP node commits with a warning and undo restores the empty graph."""
        result = await manager.apply_batch(
            "wf-1", {"ops": [_add("h1", "httpRequest", url="http://x")]}
        )

        assert result.success
        assert result.applied_operations == 1
        assert result.undo_id.startswith("undo_")
        assert [i.code for i in result.issues] == ["INSECURE_HTTP"]
        assert [n.id for n in manager.get_workflow("wf-1").nodes] == ["h1"]

        undone = await manager.undo("wf-1")
        assert undone.success
        assert undone.undo_id == result.undo_id
        assert manager.get_workflow("wf-1").nodes == []

    @pytest.mark.asyncio
    async def test_policy_engine_failure_rejects_batch(self, catalog):
        manager = GraphManager(policy_engine=_CrashingPolicies(), introspection=catalog)

        result = await manager.apply_batch("wf-1", {"ops": [_add("a")]})

        assert not result.success
        assert result.error == "Validation failed: POLICY_UNAVAILABLE"
        assert manager.get_workflow("wf-1").nodes == []

    @pytest.mark.asyncio
    async def test_add_delete_add(self, manager):
        """Re-adding a node deleted earlier in the batch succeeds."""
        result = await manager.apply_batch(
            "wf-1", {"ops": [_add("n1"), {"op": "delete", "target": "n1"}, _add("n1")]}
        )

        assert result.success
        assert result.applied_operations == 3
        assert [n.id for n in manager.get_workflow("wf-1").nodes] == ["n1"]

    @pytest.mark.asyncio
    async def test_invalid_batch_rejected_without_change(self, manager):
        """Validation errors reject the batch and leave state untouched."""
        await manager.apply_batch("wf-1", {"ops": [_add("a")]})
        before = manager.get_workflow("wf-1")

        result = await manager.apply_batch(
            "wf-1",
            {"ops": [_add("b"), {"op": "set_params", "target": "missing", "parameters": {"x": 1}}]},
        )

        assert not result.success
        assert "INVALID_OPERATION" in result.error
        assert any(i.code == "INVALID_OPERATION" and i.node_id == "missing" for i in result.issues)
        assert manager.get_workflow("wf-1") == before
        assert len(manager.history("wf-1").undo) == 1

    @pytest.mark.asyncio
    async def test_applier_failure_is_all_or_nothing(self, catalog, dev_policies):
        """An op failing during apply aborts the whole batch."""
        manager = GraphManager(
            pipeline=_PermissiveValidator(), policy_engine=dev_policies, introspection=catalog
        )
        result = await manager.apply_batch(
            "wf-1", {"ops": [_add("a"), {"op": "delete", "target": "ghost"}]}
        )

        assert not result.success
        assert result.error.startswith("Operation 1 (delete) failed")
        assert manager.get_workflow("wf-1").nodes == []
        assert manager.history("wf-1").undo == []

    @pytest.mark.asyncio
    async def test_schema_errors_reported(self, manager):
        result = await manager.apply_batch("wf-1", {"ops": [{"op": "explode"}]})

        assert not result.success
        assert result.issues[0].code == "SCHEMA_VALIDATION"

    @pytest.mark.asyncio
    async def test_policy_rejection(self, catalog):
        """Production policies block destructive trigger deletes."""
        manager = GraphManager(
            policy_engine=PolicyManager.from_environment("production"), introspection=catalog
        )
        await manager.apply_batch("wf-1", {"ops": [_add("t", "manualTrigger")]})

        result = await manager.apply_batch("wf-1", {"ops": [{"op": "delete", "target": "t"}]})
        assert not result.success
        assert result.issues[0].location["policy"] == "destructive_change"

    @pytest.mark.asyncio
    async def test_implicit_creation(self, manager):
        """Workflows are created on first reference."""
        assert manager.get_workflow("new") is None
        await manager.validate("new", {"ops": []})
        assert manager.get_workflow("new").nodes == []

    @pytest.mark.asyncio
    async def test_get_workflow_is_a_snapshot(self, manager):
        await manager.apply_batch("wf-1", {"ops": [_add("a", foo="bar")]})

        snapshot = manager.get_workflow("wf-1")
        snapshot.nodes[0].parameters["foo"] = "changed"
        assert manager.get_workflow("wf-1").nodes[0].parameters["foo"] == "bar"


# =============================================================================
# undo / redo
# =============================================================================


class TestUndoRedo:
    """Tests for history navigation."""

    @pytest.mark.asyncio
    async def test_undo_redo_cycle(self, manager, linear_graph):
        """undo then redo returns to the post-batch graph with the same undo id."""
        manager.create_workflow("wf-1", graph=linear_graph)
        original = manager.get_workflow("wf-1")
        batch = {
            "ops": [
                _add("log", "noOp"),
                {"op": "connect", "from": "transform", "to": "log"},
                {"op": "set_params", "target": "fetch", "parameters": {"method": "POST"}},
                {"op": "delete", "target": "Fetch"},
            ]
        }

        applied = await manager.apply_batch("wf-1", batch)
        after = manager.get_workflow("wf-1")

        undone = await manager.undo("wf-1")
        assert undone.success
        assert manager.get_workflow("wf-1") == original
        assert manager.history("wf-1").redo == [applied.undo_id]

        redone = await manager.redo("wf-1")
        assert redone.success
        assert redone.undo_id == applied.undo_id
        assert manager.get_workflow("wf-1") == after
        assert manager.history("wf-1").undo == [applied.undo_id]
        assert manager.history("wf-1").redo == []

    @pytest.mark.asyncio
    async def test_new_commit_clears_redo(self, manager):
        await manager.apply_batch("wf-1", {"ops": [_add("a")]})
        await manager.undo("wf-1")
        assert manager.history("wf-1").redo

        await manager.apply_batch("wf-1", {"ops": [_add("b")]})
        assert manager.history("wf-1").redo == []

    @pytest.mark.asyncio
    async def test_undo_by_id(self, manager):
        """A specific entry can be undone by its id."""
        first = await manager.apply_batch("wf-1", {"ops": [_add("a")]})
        await manager.apply_batch("wf-1", {"ops": [_add("b")]})

        result = await manager.undo("wf-1", first.undo_id)
        assert result.success
        assert [n.id for n in manager.get_workflow("wf-1").nodes] == ["b"]

    @pytest.mark.asyncio
    async def test_undo_unknown_id(self, manager):
        await manager.apply_batch("wf-1", {"ops": [_add("a")]})
        result = await manager.undo("wf-1", "undo_nope")
        assert not result.success

    @pytest.mark.asyncio
    async def test_nothing_to_undo_or_redo(self, manager):
        assert not (await manager.undo("never")).success
        await manager.apply_batch("wf-1", {"ops": []})
        assert not (await manager.redo("wf-1")).success

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, manager):
        """Only the last history_limit entries are kept."""
        for i in range(7):
            await manager.apply_batch("wf-1", {"ops": [_add(f"n{i}")]})

        assert len(manager.history("wf-1").undo) == 5
        for _ in range(5):
            assert (await manager.undo("wf-1")).success
        assert not (await manager.undo("wf-1")).success
        assert [n.id for n in manager.get_workflow("wf-1").nodes] == ["n0", "n1"]

    @pytest.mark.asyncio
    async def test_reset_clears_history(self, manager):
        await manager.apply_batch("wf-1", {"ops": [_add("a")]})
        manager.reset("wf-1")

        assert manager.history("wf-1").undo == []
        assert [n.id for n in manager.get_workflow("wf-1").nodes] == ["a"]

    @pytest.mark.asyncio
    async def test_undo_does_not_recheck_policies(self, catalog):
        """Undo is privileged: it bypasses validation and policies."""
        manager = GraphManager(
            policy_engine=PolicyManager.from_environment("production"), introspection=catalog
        )
        result = await manager.apply_batch("wf-1", {"ops": [_add("t", "manualTrigger")]})

        # Undoing deletes the trigger, which production policies would block
        assert (await manager.undo("wf-1", result.undo_id)).success
        assert manager.get_workflow("wf-1").nodes == []


# =============================================================================
# Read-only operations
# =============================================================================


class TestReadOnly:
    """Tests for validate, simulate, lint and autofix."""

    @pytest.mark.asyncio
    async def test_validate_does_not_commit(self, manager):
        result = await manager.validate("wf-1", {"ops": [_add("a")]})

        assert result.valid
        assert manager.get_workflow("wf-1").nodes == []

    @pytest.mark.asyncio
    async def test_simulate_hypothetical_batch(self, manager, linear_graph):
        manager.create_workflow("wf-1", graph=linear_graph)
        result = await manager.simulate(
            "wf-1", {"ops": [{"op": "connect", "from": "transform", "to": "fetch"}]}
        )

        assert result.cycle_detected
        assert manager.get_workflow("wf-1").connections == linear_graph.connections

    @pytest.mark.asyncio
    async def test_simulate_schema_errors(self, manager):
        result = await manager.simulate("wf-1", {"ops": [{"op": "explode"}]})

        assert not result.success
        assert result.errors[0].code == "SCHEMA_VALIDATION"

    @pytest.mark.asyncio
    async def test_lint_and_autofix(self, manager):
        """Autofix fills required params and fixes enums through an undoable batch."""
        await manager.apply_batch(
            "wf-1",
            {
                "ops": [
                    _add("hook", "webhook"),
                    _add("fetch", "httpRequest", method="FETCH"),
                    {"op": "connect", "from": "hook", "to": "fetch"},
                ]
            },
        )

        report = await manager.lint("wf-1")
        codes = sorted(lint.code for lint in report.lints)
        assert not report.valid
        assert codes == ["dangling_branch", "invalid_enum", "missing_required_param", "missing_required_param"]

        fixed = await manager.autofix("wf-1")
        assert fixed.success
        graph = manager.get_workflow("wf-1")
        assert graph.find_node("hook").parameters["path"] == "webhook-endpoint"
        assert graph.find_node("fetch").parameters["method"] == "GET"
        assert graph.find_node("fetch").parameters["url"] == "https://example.com"
        assert (await manager.lint("wf-1")).valid

        assert (await manager.undo("wf-1", fixed.undo_id)).success
        assert "path" not in manager.get_workflow("wf-1").find_node("hook").parameters

    @pytest.mark.asyncio
    async def test_lint_flags_cycles(self, manager):
        manager.create_workflow(
            "loop",
            graph=WorkflowGraph.model_validate(
                {
                    "nodes": [{"id": "a", "type": "n8n-nodes-base.set"}],
                    "connections": {"a": [[{"node": "a"}]]},
                }
            ),
        )
        report = await manager.lint("loop")
        assert "circular_dependency" in [lint.code for lint in report.lints]

    @pytest.mark.asyncio
    async def test_lint_survives_offline_catalog(self, dev_policies, linear_graph):
        manager = GraphManager(policy_engine=dev_policies, introspection=_OfflineCatalog())
        manager.create_workflow("wf-1", graph=linear_graph)

        report = await manager.lint("wf-1")

        assert report.valid
        assert [lint.code for lint in report.lints].count("introspection_unavailable") == 3
        assert (await manager.autofix("wf-1")).success


# =============================================================================
# Lifecycle, concurrency and state transfer
# =============================================================================


class TestLifecycle:
    """Tests for workflow registration and state transfer."""

    def test_create_and_list(self, manager, linear_graph):
        created = manager.create_workflow("wf-b", name="Billing", graph=linear_graph)
        manager.create_workflow("wf-a")

        assert created.id == "wf-b"
        assert created.name == "Billing"
        assert manager.list_workflows() == ["wf-a", "wf-b"]

    def test_create_duplicate(self, manager):
        manager.create_workflow("wf-1")
        with pytest.raises(ValueError, match="already exists"):
            manager.create_workflow("wf-1")

    def test_create_rejects_dangling_graph(self, manager):
        graph = WorkflowGraph.model_validate(
            {"nodes": [{"id": "a", "type": "x.a"}], "connections": {"a": [[{"node": "ghost"}]]}}
        )
        with pytest.raises(ValueError, match="ghost"):
            manager.create_workflow("wf-1", graph=graph)

    def test_reset_all(self, manager):
        manager.create_workflow("wf-1")
        manager.reset_all()
        assert manager.list_workflows() == []

    @pytest.mark.asyncio
    async def test_export_import(self, manager, catalog, dev_policies):
        """Exported state restores graph and history in another manager."""
        applied = await manager.apply_batch("wf-1", {"ops": [_add("a")]})
        state = manager.export_state("wf-1")
        assert isinstance(state, WorkflowState)

        other = GraphManager(policy_engine=dev_policies, introspection=catalog)
        other.import_state(state.model_dump(mode="json"))

        assert other.get_workflow("wf-1") == manager.get_workflow("wf-1")
        assert other.history("wf-1").undo == [applied.undo_id]
        assert (await other.undo("wf-1")).success
        assert other.get_workflow("wf-1").nodes == []

    def test_export_unknown(self, manager):
        assert manager.export_state("nope") is None


class TestConcurrency:
    """Tests for per-workflow serialization."""

    @pytest.mark.asyncio
    async def test_concurrent_batches_serialize(self, manager):
        """Concurrent writers on one workflow all commit without losing updates."""
        results = await asyncio.gather(
            *(manager.apply_batch("wf-1", {"ops": [_add(f"n{i}")]}) for i in range(5))
        )

        assert all(r.success for r in results)
        assert len(manager.get_workflow("wf-1").nodes) == 5
        assert len({r.undo_id for r in results}) == 5

    @pytest.mark.asyncio
    async def test_conflicting_concurrent_adds(self, manager):
        """Two writers adding the same id: exactly one wins."""
        results = await asyncio.gather(
            manager.apply_batch("wf-1", {"ops": [_add("same")]}),
            manager.apply_batch("wf-1", {"ops": [_add("same")]}),
        )
        assert sorted(r.success for r in results) == [False, True]

    @pytest.mark.asyncio
    async def test_lock_timeout_reported(self, catalog, dev_policies):
        """A writer that cannot get the lock in time gets an error result."""
        manager = GraphManager(
            policy_engine=dev_policies,
            introspection=catalog,
            config=EngineConfig(lock_timeout=0.05),
        )
        manager.create_workflow("wf-1")
        lock = manager._workflows["wf-1"].lock

        async with lock.read():
            result = await manager.apply_batch("wf-1", {"ops": [_add("a")]})

        assert not result.success
        assert "Timed out" in result.error
