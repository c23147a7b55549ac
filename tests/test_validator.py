"""
Tests for workflow definition parsing and structural validation.

Covers:
- Node kind discrimination and duration parsing from the document form
- Missing entry/targets, duplicate ids, bad conditions
- Parallel/join pairing and private branch entries
- Terminal reachability
"""

import pytest
from pydantic import ValidationError

from graphflow.errors import GraphValidationError
from graphflow.graph.edge import EdgeSpec, WorkflowDefinition
from graphflow.graph.node import (
    ApprovalNode,
    ErrorHandlerNode,
    JoinNode,
    JoinSpec,
    ParallelNode,
    RouterNode,
    StepNode,
    TerminalNode,
    parse_duration,
)
from graphflow.graph.validator import WorkflowValidator, validate_workflow


def make(nodes, edges, entry="start", **kwargs) -> WorkflowDefinition:
    return WorkflowDefinition(id="wf", entry_node=entry, nodes=nodes, edges=edges, **kwargs)


def errors_of(definition: WorkflowDefinition) -> list[str]:
    return WorkflowValidator().validate(definition).errors


class TestDocumentForm:
    def test_from_dict_discriminates_node_kinds(self):
        definition = WorkflowDefinition.from_dict(
            {
                "id": "review",
                "entry_node": "start",
                "nodes": [
                    {"id": "start", "kind": "step", "instruction": {"task": "fetch"}},
                    {"id": "gate", "kind": "approval", "on_approve": "done", "on_deny": "done"},
                    {"id": "done", "kind": "terminal"},
                ],
                "edges": [{"source": "start", "target": "gate"}],
            }
        )
        assert isinstance(definition.get_node("start"), StepNode)
        assert isinstance(definition.get_node("gate"), ApprovalNode)
        assert isinstance(definition.get_node("done"), TerminalNode)
        assert validate_workflow(definition) is definition

    def test_from_json(self):
        definition = WorkflowDefinition.from_json(
            '{"id": "wf", "entry_node": "done", "nodes": [{"id": "done", "kind": "terminal"}]}'
        )
        assert definition.entry_node == "done"

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError):
            WorkflowDefinition.from_dict(
                {"id": "wf", "entry_node": "a", "nodes": [{"id": "a", "kind": "teleport"}]}
            )

    @pytest.mark.parametrize(
        "value, seconds",
        [("2h", 7200.0), ("5m", 300.0), ("30s", 30.0), ("250ms", 0.25), ("45", 45.0), (1.5, 1.5)],
    )
    def test_parse_duration(self, value, seconds):
        assert parse_duration(value) == pytest.approx(seconds)

    def test_approval_timeout_accepts_duration_string(self):
        gate = ApprovalNode(id="gate", timeout="2h", on_approve="a", on_deny="b")
        assert gate.timeout == 7200.0

    def test_invalid_duration_rejected(self):
        with pytest.raises(ValidationError):
            ApprovalNode(id="gate", timeout="two hours", on_approve="a", on_deny="b")

    def test_n_of_m_requires_n(self):
        with pytest.raises(ValidationError):
            JoinSpec(strategy="n_of_m")

    def test_escalation_requires_target(self):
        with pytest.raises(ValidationError):
            ApprovalNode(id="gate", on_timeout="escalate", on_approve="a", on_deny="b")

    def test_edges_sorted_by_priority_then_declaration(self):
        definition = make(
            [RouterNode(id="start"), TerminalNode(id="a"), TerminalNode(id="b"), TerminalNode(id="c")],
            [
                EdgeSpec(source="start", target="a"),
                EdgeSpec(source="start", target="b", priority=5),
                EdgeSpec(source="start", target="c"),
            ],
        )
        assert [e.target for e in definition.get_outgoing_edges("start")] == ["b", "a", "c"]


class TestStructure:
    def test_valid_linear_workflow(self):
        definition = make(
            [StepNode(id="start"), TerminalNode(id="done")],
            [EdgeSpec(source="start", target="done")],
        )
        assert errors_of(definition) == []

    def test_missing_entry_node(self):
        definition = make([TerminalNode(id="done")], [], entry="nope")
        assert any("Entry node 'nope' not found" in e for e in errors_of(definition))

    def test_missing_edge_target(self):
        definition = make(
            [StepNode(id="start"), TerminalNode(id="done")],
            [EdgeSpec(source="start", target="ghost"), EdgeSpec(source="start", target="done")],
        )
        assert any("missing target 'ghost'" in e for e in errors_of(definition))

    def test_duplicate_node_ids(self):
        definition = make(
            [StepNode(id="start"), TerminalNode(id="start")],
            [],
        )
        assert any("Duplicate node id 'start'" in e for e in errors_of(definition))

    def test_invalid_condition(self):
        definition = make(
            [RouterNode(id="start"), TerminalNode(id="done")],
            [EdgeSpec(source="start", target="done", condition="review.critical >")],
        )
        assert any("invalid condition" in e for e in errors_of(definition))

    def test_two_default_edges(self):
        definition = make(
            [RouterNode(id="start"), TerminalNode(id="a"), TerminalNode(id="b")],
            [
                EdgeSpec(source="start", target="a", default=True),
                EdgeSpec(source="start", target="b", default=True),
            ],
        )
        assert any("2 default edges" in e for e in errors_of(definition))

    def test_error_handler_must_be_handler_kind(self):
        definition = make(
            [StepNode(id="start", error_handler="done"), TerminalNode(id="done")],
            [EdgeSpec(source="start", target="done")],
        )
        assert any("is not an error_handler node" in e for e in errors_of(definition))

    def test_no_reachable_terminal(self):
        definition = make(
            [StepNode(id="start"), StepNode(id="loop")],
            [EdgeSpec(source="start", target="loop"), EdgeSpec(source="loop", target="start")],
        )
        assert any("No terminal node is reachable" in e for e in errors_of(definition))

    def test_unreachable_node_is_a_warning(self):
        definition = make(
            [StepNode(id="start"), TerminalNode(id="done"), TerminalNode(id="orphan")],
            [EdgeSpec(source="start", target="done")],
        )
        result = WorkflowValidator().validate(definition)
        assert result.success
        assert any("'orphan' is unreachable" in w for w in result.warnings)

    def test_edges_leaving_approval_rejected(self):
        definition = make(
            [
                ApprovalNode(id="start", on_approve="done", on_deny="done"),
                TerminalNode(id="done"),
            ],
            [EdgeSpec(source="start", target="done")],
        )
        assert any("routes through its own configuration" in e for e in errors_of(definition))

    def test_validate_workflow_raises_with_every_error(self):
        definition = make(
            [StepNode(id="start"), StepNode(id="start")],
            [EdgeSpec(source="start", target="ghost")],
        )
        with pytest.raises(GraphValidationError) as exc_info:
            validate_workflow(definition)
        assert len(exc_info.value.errors) >= 2


class TestParallelBlocks:
    def parallel(self, **join_kwargs) -> list:
        return [
            ParallelNode(id="start", branches=("a", "b"), join="join"),
            StepNode(id="a"),
            StepNode(id="b"),
            JoinNode(id="join", split="start", **join_kwargs),
            TerminalNode(id="done"),
        ]

    def branch_edges(self) -> list[EdgeSpec]:
        return [
            EdgeSpec(source="a", target="join"),
            EdgeSpec(source="b", target="join"),
            EdgeSpec(source="join", target="done"),
        ]

    def test_valid_parallel_block(self):
        definition = make(self.parallel(), self.branch_edges())
        result = WorkflowValidator().validate(definition)
        assert result.errors == []
        assert result.warnings == []

    def test_nested_parallel_block_is_fully_reachable(self):
        nodes = [
            ParallelNode(id="start", branches=("a", "b"), join="join"),
            ParallelNode(id="a", branches=("x", "y"), join="inner_join"),
            StepNode(id="x"),
            StepNode(id="y"),
            JoinNode(id="inner_join", split="a"),
            StepNode(id="b"),
            JoinNode(id="join", split="start"),
            TerminalNode(id="done"),
        ]
        edges = [
            EdgeSpec(source="x", target="inner_join"),
            EdgeSpec(source="y", target="inner_join"),
            EdgeSpec(source="inner_join", target="join"),
            EdgeSpec(source="b", target="join"),
            EdgeSpec(source="join", target="done"),
        ]
        result = WorkflowValidator().validate(make(nodes, edges))
        assert result.errors == []
        assert result.warnings == []

    def test_join_must_point_back_at_split(self):
        nodes = self.parallel()
        nodes[3] = JoinNode(id="join", split="a")
        definition = make(nodes, self.branch_edges())
        errors = errors_of(definition)
        assert any("does not join at it" in e for e in errors)
        assert any("not its join node" in e for e in errors)

    def test_n_larger_than_branch_count(self):
        definition = make(
            self.parallel(spec=JoinSpec(strategy="n_of_m", n=3)), self.branch_edges()
        )
        assert any("requires 3 of only 2 branches" in e for e in errors_of(definition))

    def test_branch_entry_reachable_from_outside(self):
        nodes = [*self.parallel(), StepNode(id="sneak")]
        edges = [*self.branch_edges(), EdgeSpec(source="sneak", target="a")]
        definition = make(nodes, edges)
        assert any("reachable from outside its branch" in e for e in errors_of(definition))

    def test_join_fed_from_outside_block(self):
        nodes = [*self.parallel(), StepNode(id="outsider")]
        edges = [*self.branch_edges(), EdgeSpec(source="outsider", target="join")]
        definition = make(nodes, edges)
        assert any("not on a branch of parallel" in e for e in errors_of(definition))

    def test_workflow_error_handler_must_exist(self):
        definition = make(
            [StepNode(id="start"), TerminalNode(id="done")],
            [EdgeSpec(source="start", target="done")],
            error_handler="handler",
        )
        assert any("references missing node 'handler'" in e for e in errors_of(definition))

    def test_workflow_error_handler_counts_as_reachable(self):
        definition = make(
            [StepNode(id="start"), TerminalNode(id="done"), ErrorHandlerNode(id="handler")],
            [EdgeSpec(source="start", target="done")],
            error_handler="handler",
        )
        result = WorkflowValidator().validate(definition)
        assert result.success
        assert result.warnings == []
