"""Structural validation for workflow definitions.

Collects every violation instead of stopping at the first one, so a workflow
author can fix all problems in one pass.
"""

import logging
from collections import deque
from dataclasses import dataclass, field

from graphflow.errors import EvalError, GraphValidationError
from graphflow.graph.edge import WorkflowDefinition
from graphflow.graph.expression import compile_expression
from graphflow.graph.node import (
    ApprovalNode,
    ErrorHandlerNode,
    JoinNode,
    JoinStrategy,
    ParallelNode,
    RouterNode,
    TerminalNode,
)

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Result of validating a workflow definition."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(self.errors) if self.errors else ""


class WorkflowValidator:
    """
    Checks the structural invariants of a WorkflowDefinition.

    - node ids are unique and the entry node exists
    - every edge endpoint and every node reference resolves
    - edge conditions parse
    - parallel/join pairs point at each other, and branch entries are private
      to their split
    - at least one terminal node is reachable from the entry node
    """

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        result = ValidationResult()
        node_ids = self._check_nodes(definition, result)

        if definition.entry_node not in node_ids:
            result.errors.append(f"Entry node '{definition.entry_node}' not found")

        self._check_edges(definition, node_ids, result)
        self._check_references(definition, node_ids, result)
        self._check_parallel_blocks(definition, node_ids, result)

        if definition.entry_node in node_ids:
            self._check_reachability(definition, result)

        for warning in result.warnings:
            logger.warning(f"Workflow '{definition.id}': {warning}")
        return result

    def _check_nodes(self, definition: WorkflowDefinition, result: ValidationResult) -> set[str]:
        seen: set[str] = set()
        for node in definition.nodes:
            if node.id in seen:
                result.errors.append(f"Duplicate node id '{node.id}'")
            seen.add(node.id)
        return seen

    def _check_edges(
        self, definition: WorkflowDefinition, node_ids: set[str], result: ValidationResult
    ) -> None:
        defaults: dict[str, int] = {}
        for edge in definition.edges:
            if edge.source not in node_ids:
                result.errors.append(f"Edge '{edge.label}' references missing source '{edge.source}'")
            if edge.target not in node_ids:
                result.errors.append(f"Edge '{edge.label}' references missing target '{edge.target}'")
            if edge.condition is not None:
                try:
                    compile_expression(edge.condition)
                except EvalError as e:
                    result.errors.append(f"Edge '{edge.label}' has an invalid condition: {e.message}")
            if edge.default:
                defaults[edge.source] = defaults.get(edge.source, 0) + 1
                if edge.condition is not None:
                    result.errors.append(f"Default edge '{edge.label}' must not have a condition")

            source = definition.get_node(edge.source)
            if isinstance(source, ParallelNode | ApprovalNode | TerminalNode):
                result.errors.append(
                    f"Edge '{edge.label}' leaves {source.kind} node '{source.id}', "
                    f"which routes through its own configuration"
                )

        for source, count in defaults.items():
            if count > 1:
                result.errors.append(f"Node '{source}' declares {count} default edges")

    def _check_references(
        self, definition: WorkflowDefinition, node_ids: set[str], result: ValidationResult
    ) -> None:
        for node in definition.nodes:
            for field_name, target in node.references():
                if target not in node_ids:
                    result.errors.append(
                        f"Node '{node.id}' {field_name} references missing node '{target}'"
                    )
            if node.error_handler and node.error_handler in node_ids:
                if not isinstance(definition.get_node(node.error_handler), ErrorHandlerNode):
                    result.errors.append(
                        f"Node '{node.id}' error_handler '{node.error_handler}' "
                        f"is not an error_handler node"
                    )

        handler = definition.error_handler
        if handler is not None:
            if handler not in node_ids:
                result.errors.append(f"Workflow error_handler references missing node '{handler}'")
            elif not isinstance(definition.get_node(handler), ErrorHandlerNode):
                result.errors.append(f"Workflow error_handler '{handler}' is not an error_handler node")

        for node in definition.nodes:
            if isinstance(node, RouterNode) and not definition.get_outgoing_edges(node.id):
                result.warnings.append(f"Router '{node.id}' has no outgoing edges")

    def _check_parallel_blocks(
        self, definition: WorkflowDefinition, node_ids: set[str], result: ValidationResult
    ) -> None:
        entry_owner: dict[str, str] = {}

        for node in definition.nodes:
            if isinstance(node, JoinNode):
                split = definition.get_node(node.split)
                if split is not None and (
                    not isinstance(split, ParallelNode) or split.join != node.id
                ):
                    result.errors.append(
                        f"Join '{node.id}' names split '{node.split}', which does not join at it"
                    )
                continue

            if not isinstance(node, ParallelNode):
                continue

            join = definition.get_node(node.join)
            if join is not None:
                if not isinstance(join, JoinNode) or join.split != node.id:
                    result.errors.append(
                        f"Parallel '{node.id}' joins at '{node.join}', which is not its join node"
                    )
                elif (
                    join.spec.strategy == JoinStrategy.N_OF_M
                    and join.spec.n is not None
                    and join.spec.n > len(node.branches)
                ):
                    result.errors.append(
                        f"Join '{join.id}' requires {join.spec.n} of only "
                        f"{len(node.branches)} branches"
                    )

            members_by_entry: dict[str, set[str]] = {}
            for entry in node.branches:
                if entry not in node_ids:
                    continue
                if entry in entry_owner:
                    result.errors.append(
                        f"Branch entry '{entry}' is shared by parallel nodes "
                        f"'{entry_owner[entry]}' and '{node.id}'"
                    )
                entry_owner[entry] = node.id
                if entry == definition.entry_node:
                    result.errors.append(f"Branch entry '{entry}' is also the workflow entry node")
                members_by_entry[entry] = self._branch_members(definition, entry, node.join)

            if len(set(node.branches)) != len(node.branches):
                result.errors.append(f"Parallel '{node.id}' lists a branch entry more than once")

            for entry, members in members_by_entry.items():
                for edge in definition.get_incoming_edges(entry):
                    if edge.source not in members:
                        result.errors.append(
                            f"Branch entry '{entry}' of parallel '{node.id}' is reachable "
                            f"from outside its branch via edge '{edge.label}'"
                        )
                for other in definition.nodes:
                    if other.id == node.id or other.id in members:
                        continue
                    for field_name, target in other.references():
                        if target == entry:
                            result.errors.append(
                                f"Branch entry '{entry}' of parallel '{node.id}' is referenced "
                                f"by '{other.id}' {field_name}"
                            )

            all_members = set().union(*members_by_entry.values()) if members_by_entry else set()
            for edge in definition.get_incoming_edges(node.join):
                if edge.source not in all_members:
                    result.errors.append(
                        f"Join '{node.join}' receives edge '{edge.label}' from '{edge.source}', "
                        f"which is not on a branch of parallel '{node.id}'"
                    )

    def _branch_members(self, definition: WorkflowDefinition, entry: str, join_id: str) -> set[str]:
        members: set[str] = set()
        queue = deque([entry])
        while queue:
            current = queue.popleft()
            if current == join_id or current in members or definition.get_node(current) is None:
                continue
            members.add(current)
            queue.extend(definition.successors(current))
        return members

    def _check_reachability(self, definition: WorkflowDefinition, result: ValidationResult) -> None:
        starts = [definition.entry_node]
        if definition.error_handler and definition.get_node(definition.error_handler):
            starts.append(definition.error_handler)

        reachable: set[str] = set()
        queue = deque(starts)
        while queue:
            current = queue.popleft()
            if current in reachable or definition.get_node(current) is None:
                continue
            reachable.add(current)
            queue.extend(definition.successors(current))

        if not any(definition.is_terminal(node_id) for node_id in reachable):
            result.errors.append(
                f"No terminal node is reachable from entry node '{definition.entry_node}'"
            )

        # Branch interiors are reached through their parallel node, at any depth
        splits = deque(n for n in reachable if isinstance(definition.get_node(n), ParallelNode))
        expanded: set[str] = set()
        while splits:
            split_id = splits.popleft()
            if split_id in expanded:
                continue
            expanded.add(split_id)
            node = definition.get_node(split_id)
            for entry in node.branches:
                members = self._branch_members(definition, entry, node.join)
                reachable |= members
                splits.extend(m for m in members if isinstance(definition.get_node(m), ParallelNode))

        for node in definition.nodes:
            if node.id not in reachable:
                result.warnings.append(f"Node '{node.id}' is unreachable from entry")


def validate_workflow(definition: WorkflowDefinition) -> WorkflowDefinition:
    """
    Validate a definition, raising on any structural problem.

    Raises:
        GraphValidationError: listing every violation found
    """
    result = WorkflowValidator().validate(definition)
    if not result.success:
        raise GraphValidationError(result.errors)
    return definition
