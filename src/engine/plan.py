"""Change planning: Plan(config, state) -> ChangePlan.

The planner validates every declaration against its descriptor, builds the
dependency graph, then walks the nodes in topological order and diffs each
one against its state record. References are resolved as far as they can be
known before apply:

- no-op nodes expose their stored attributes
- updated nodes expose declared inputs plus stored computed values
- created/replaced nodes expose declared inputs only; everything else is
  "(known after apply)"

Resources present in state but no longer declared become DELETE actions. A
delete waits for every action on a resource that depended on it when it was
applied, so dependents are torn down or re-pointed first.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .diff import Action, ActionType, DiffEngine
from .graph import DependencyGraph, UnresolvedReferenceError, build_graph
from .models import ConfigurationSnapshot, contains_unknown
from .outputs import PlanningResolver
from .registry import ResourceDescriptorRegistry
from .state import StateRecord

logger = logging.getLogger(__name__)

_SYMBOLS = {
    ActionType.CREATE: "+",
    ActionType.UPDATE: "~",
    ActionType.REPLACE: "-/+",
    ActionType.DELETE: "-",
    ActionType.NOOP: " ",
}


@dataclass
class ChangePlan:
    """Ordered actions plus the addresses each action must wait for."""

    actions: list[Action] = field(default_factory=list)
    waits_for: dict[str, frozenset[str]] = field(default_factory=dict)
    named_outputs: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def action_for(self, address: str) -> Action | None:
        for action in self.actions:
            if action.address == address:
                return action
        return None

    def addresses(self) -> list[str]:
        return [action.address for action in self.actions]

    def summary(self) -> dict[str, int]:
        """Count actions by type."""
        counts = {action_type.value: 0 for action_type in ActionType}
        for action in self.actions:
            counts[action.action_type.value] += 1
        return counts

    @property
    def has_changes(self) -> bool:
        return any(action.is_change for action in self.actions)

    def render(self, show_unchanged: bool = False) -> str:
        """Human-readable listing of the plan."""
        lines: list[str] = []
        for action in self.actions:
            if action.action_type == ActionType.NOOP and not show_unchanged:
                continue

            header = f"{_SYMBOLS[action.action_type]} {action.address} ({action.action_type.value}"
            if action.requires_replace:
                header += f": {', '.join(action.replace_reasons)} forces replacement"
            lines.append(header + ")")

            for name in sorted(action.changes):
                change = action.changes[name]
                after = "(known after apply)" if change.after_unknown else repr(change.after)
                match action.action_type:
                    case ActionType.CREATE:
                        lines.append(f"      {name}: {after}")
                    case ActionType.DELETE:
                        lines.append(f"      {name}: {change.before!r}")
                    case _:
                        marker = " # forces replacement" if change.forces_replacement else ""
                        lines.append(f"      {name}: {change.before!r} -> {after}{marker}")

        counts = self.summary()
        lines.append(
            f"Plan: {counts['create']} to create, {counts['update']} to update, "
            f"{counts['replace']} to replace, {counts['delete']} to delete, "
            f"{counts['no-op']} unchanged."
        )
        return "\n".join(lines)


class Planner:
    """Computes change plans from a configuration snapshot and state."""

    def __init__(
        self, registry: ResourceDescriptorRegistry, diff_engine: DiffEngine | None = None
    ) -> None:
        self._registry = registry
        self._diff = diff_engine or DiffEngine(registry)

    def _check_reference_attributes(self, snapshot: ConfigurationSnapshot) -> None:
        """Every referenced attribute must exist on the target's kind."""
        kinds = {node.address: node.kind for node in snapshot.nodes}
        for node in snapshot.nodes:
            for attribute, ref in node.references():
                descriptor = self._registry.get(kinds[ref.address])
                if descriptor.schema_for(ref.attribute) is None:
                    raise UnresolvedReferenceError(
                        node.address,
                        attribute,
                        f"{ref.address}.{ref.attribute}",
                        reason="references unknown attribute",
                    )

    def plan(
        self, snapshot: ConfigurationSnapshot, state: Mapping[str, StateRecord]
    ) -> ChangePlan:
        """Compute the change plan converging state to the snapshot.

        Args:
            snapshot: Declared configuration.
            state: Stored records keyed by address.

        Returns:
            ChangePlan with one action per declared or stored resource.

        Raises:
            UnknownResourceKindError: If a declaration uses an unregistered kind.
            DeclarationValidationError: If a declaration violates its descriptor.
            UnresolvedReferenceError: If a reference targets an unknown address/attribute.
            CyclicDependencyError: If references form a cycle.
            UnresolvedOutputError: If a referenced attribute has no stored value.
        """
        declared = {node.address: self._registry.validate(node) for node in snapshot.nodes}
        graph = build_graph(snapshot.nodes)
        self._check_reference_attributes(snapshot)

        nodes = {node.address: node for node in snapshot.nodes}
        resolver = PlanningResolver()
        actions: dict[str, Action] = {}
        waits_for: dict[str, set[str]] = {}

        for address in graph.topological_sort():
            node = nodes[address]
            raw = declared[address]
            resolved = resolver.resolve_attributes(address, raw)
            record = state.get(address)
            depends_on = tuple(node.dependency_addresses())

            action = self._diff.diff(node, resolved, record, depends_on, raw_declared=raw)
            actions[address] = action
            waits_for[address] = set(depends_on)

            known_inputs = {k: v for k, v in resolved.items() if not contains_unknown(v)}
            match action.action_type:
                case ActionType.NOOP:
                    # SAFETY: NOOP is only produced when a record exists
                    assert record is not None
                    resolver.record(address, record.attributes())
                case ActionType.UPDATE:
                    assert record is not None
                    resolver.record(address, {**record.attributes(), **resolved})
                case _:
                    resolver.record_pending(address, known_inputs)

        self._plan_deletes(state, nodes.keys(), actions, waits_for)
        ordered = self._order(actions, waits_for, [n.address for n in snapshot.nodes])

        plan = ChangePlan(
            actions=[actions[address] for address in ordered],
            waits_for={address: frozenset(deps) for address, deps in waits_for.items()},
            named_outputs=dict(snapshot.outputs),
        )

        logger.info(
            "Plan computed",
            extra={"summary": plan.summary(), "has_changes": plan.has_changes},
        )
        return plan

    def _plan_deletes(
        self,
        state: Mapping[str, StateRecord],
        declared: Any,
        actions: dict[str, Action],
        waits_for: dict[str, set[str]],
    ) -> None:
        removed = sorted(address for address in state if address not in declared)
        if not removed:
            return

        for address in removed:
            actions[address] = self._diff.diff_removed(state[address])

        for address in removed:
            # Anything applied on top of this resource goes first
            waiters = {
                other.address
                for other in state.values()
                if address in other.dependencies and other.address != address
            }
            waits_for[address] = {w for w in waiters if w in actions}

            # A dependency being replaced or deleted must outlive this resource
            for dep in state[address].dependencies:
                dep_action = actions.get(dep)
                if dep_action is not None and dep_action.action_type in (
                    ActionType.REPLACE,
                    ActionType.DELETE,
                ):
                    waits_for.setdefault(dep, set()).add(address)

    def _order(
        self,
        actions: dict[str, Action],
        waits_for: dict[str, set[str]],
        declaration_order: list[str],
    ) -> list[str]:
        """Linearize all actions consistently with waits_for."""
        rank = {address: i for i, address in enumerate(declaration_order)}
        graph = DependencyGraph()
        for i, address in enumerate(sorted(actions, key=lambda a: rank.get(a, len(rank)))):
            graph.add_node(
                address,
                sorted(waits_for.get(address, set())),
                order=rank.get(address, len(rank) + i),
            )
        return graph.topological_sort()
