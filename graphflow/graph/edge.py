"""
Edge Protocol - How nodes connect in a workflow graph.

Edges define:
1. Source and target nodes
2. An optional condition, evaluated against the state snapshot
3. A priority that orders evaluation among a node's outgoing edges

Routing takes the first matching edge: edges with higher priority are
evaluated first, equal priorities keep their declaration order. An edge
without a condition always matches. An edge marked `default` is only
followed when nothing else matched.

Retries are not edges. They are an attribute of node execution (see
RetryPolicy), which keeps retry and escalation paths from turning into
cycles in the graph.
"""

import json
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field, PrivateAttr

from graphflow.graph.node import (
    ApprovalNode,
    Node,
    ParallelNode,
    RetryPolicy,
    TerminalNode,
)
from graphflow.runtime.state_store import ReducerPolicy


class EdgeSpec(BaseModel):
    """
    Specification for an edge between nodes.

    Examples:
        # Unconditional transition
        EdgeSpec(source="lint", target="summarize")

        # Conditional routing on state
        EdgeSpec(
            source="triage",
            target="request-changes",
            condition="review.critical > 0",
            priority=10,
        )

        # Fallback when no condition matched
        EdgeSpec(source="triage", target="comment", default=True)
    """

    id: str = ""
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")
    condition: str | None = Field(
        default=None,
        description="Expression evaluated against the state snapshot, e.g. 'review.critical > 0'",
    )
    priority: int = Field(default=0, description="Higher priority edges are evaluated first")
    default: bool = Field(default=False, description="Followed only when no other edge matches")
    description: str = ""

    model_config = {"extra": "allow", "frozen": True}

    @property
    def label(self) -> str:
        return self.id or f"{self.source}->{self.target}"


class WorkflowDefinition(BaseModel):
    """
    Complete, immutable specification of a workflow graph.

    Example:
        WorkflowDefinition(
            id="pr-review",
            entry_node="fetch",
            nodes=[
                StepNode(id="fetch", instruction={"task": "fetch diff"}),
                RouterNode(id="triage"),
                TerminalNode(id="done"),
            ],
            edges=[
                EdgeSpec(source="fetch", target="triage"),
                EdgeSpec(source="triage", target="done", default=True),
            ],
            reducers={"findings": "append"},
        )
    """

    id: str
    version: str = "1.0.0"
    description: str = ""

    entry_node: str = Field(description="ID of the first node to execute")
    nodes: list[Node] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)

    # State keys without a declared reducer use REPLACE
    reducers: dict[str, ReducerPolicy] = Field(default_factory=dict)

    default_retry: RetryPolicy | None = Field(
        default=None, description="Applies to nodes that declare no retry policy"
    )
    error_handler: str | None = Field(
        default=None, description="Workflow-wide error handler for nodes that declare none"
    )
    max_steps: int | None = Field(
        default=None, ge=1, description="Per-branch node execution limit"
    )

    model_config = {"extra": "allow", "frozen": True}

    _node_index: dict[str, Any] = PrivateAttr(default_factory=dict)
    _outgoing: dict[str, list[EdgeSpec]] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        # First definition of an id wins; duplicates are reported by the validator
        for node in self.nodes:
            self._node_index.setdefault(node.id, node)
        for edge in self.edges:
            self._outgoing.setdefault(edge.source, []).append(edge)
        for source, edges in self._outgoing.items():
            self._outgoing[source] = sorted(edges, key=lambda e: -e.priority)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorkflowDefinition":
        """Build a definition from its parsed document form."""
        return cls.model_validate(dict(data))

    @classmethod
    def from_json(cls, data: str) -> "WorkflowDefinition":
        return cls.from_dict(json.loads(data))

    def get_node(self, node_id: str) -> Any | None:
        """Get a node by ID."""
        return self._node_index.get(node_id)

    def get_outgoing_edges(self, node_id: str) -> list[EdgeSpec]:
        """All edges leaving a node, in evaluation order."""
        return list(self._outgoing.get(node_id, []))

    def get_incoming_edges(self, node_id: str) -> list[EdgeSpec]:
        return [e for e in self.edges if e.target == node_id]

    def successors(self, node_id: str) -> list[str]:
        """
        Node ids execution can move to from `node_id` on the same branch.

        A parallel node continues at its join; its branch entries run on
        child branches and are not successors here.
        """
        node = self.get_node(node_id)
        if isinstance(node, ParallelNode):
            return [node.join]
        if isinstance(node, ApprovalNode):
            targets = [target for field, target in node.references() if field.startswith("on_")]
        else:
            targets = [e.target for e in self.get_outgoing_edges(node_id)]
        if node is not None and node.error_handler:
            targets.append(node.error_handler)
        return list(dict.fromkeys(targets))

    def is_terminal(self, node_id: str) -> bool:
        """A terminal node kind, or any routing node that leads nowhere."""
        node = self.get_node(node_id)
        if node is None:
            return False
        if isinstance(node, TerminalNode):
            return True
        if isinstance(node, ParallelNode | ApprovalNode):
            return False
        return not self.get_outgoing_edges(node_id)
