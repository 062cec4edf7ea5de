"""Diff engine: declared configuration vs stored state.

For each resource the diff produces exactly one action:

    no state record                              -> CREATE
    declared inputs equal stored inputs          -> NOOP
    only mutable attributes differ               -> UPDATE (changed attributes only)
    any immutable attribute differs              -> REPLACE (delete, then create)
    state record without a declaration           -> DELETE

Values are compared after normalization driven by the attribute's declared
type, so that syntactically different but equivalent values do not show up
as drift:

- number: "100" == 100, 1.0 == 1
- bool: "true", "yes", 1 == True
- string: 8080 == "8080"
- set: order and duplicates do not matter
- list: order matters (a reordering is a change)
- map: keys with null values are dropped; {} == null
- list/set/map: empty == null
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from .models import UNKNOWN, ResourceNode, contains_unknown
from .registry import AttributeSchema, AttributeType, ResourceDescriptorRegistry

if TYPE_CHECKING:
    from .state import StateRecord

logger = logging.getLogger(__name__)


class ActionType(str, Enum):
    """Change plan action types."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "no-op"


@dataclass(frozen=True)
class AttributeChange:
    """One attribute's old -> new transition."""

    name: str
    before: Any
    after: Any
    forces_replacement: bool = False

    @property
    def after_unknown(self) -> bool:
        return contains_unknown(self.after)


@dataclass
class Action:
    """A single planned change for one resource address."""

    action_type: ActionType
    address: str
    kind: str
    changes: dict[str, AttributeChange] = field(default_factory=dict)
    # Addresses of nodes this resource depends on (empty for deletes)
    depends_on: tuple[str, ...] = ()
    # Declared node (None for deletes of removed resources)
    node: ResourceNode | None = None
    # Declared attributes with defaults applied, references unresolved
    declared: dict[str, Any] = field(default_factory=dict)
    prior: StateRecord | None = None

    @property
    def requires_replace(self) -> bool:
        return self.action_type == ActionType.REPLACE

    @property
    def replace_reasons(self) -> list[str]:
        return sorted(name for name, c in self.changes.items() if c.forces_replacement)

    @property
    def external_id(self) -> str | None:
        return self.prior.external_id if self.prior else None

    @property
    def is_change(self) -> bool:
        return self.action_type != ActionType.NOOP


# =============================================================================
# Normalization
# =============================================================================


def _normalize_boolean(value: Any) -> Any:
    """Normalize boolean-like values to actual booleans."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        if value.lower() in ("true", "yes", "1", "on"):
            return True
        if value.lower() in ("false", "no", "0", "off"):
            return False
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
    return value


def _normalize_number(value: Any) -> Any:
    """Normalize numeric strings to numbers."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int | float):
        return value
    if isinstance(value, str):
        try:
            if "." in value or "e" in value.lower():
                return float(value)
            return int(value)
        except ValueError:
            pass
    return value


def _normalize_string(value: Any) -> Any:
    """Render scalars as strings."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return str(value)
    return value


def _canonical(value: Any) -> str:
    """Stable text form of an arbitrary JSON-like value."""
    return json.dumps(value, sort_keys=True, default=str)


def _empty_to_none(value: Any) -> Any:
    if isinstance(value, list | tuple | dict | set | frozenset | str) and len(value) == 0:
        return None
    return value


def normalize(value: Any, schema: AttributeSchema | None) -> Any:
    """Normalize a value for comparison according to its attribute type."""
    if value is None or value is UNKNOWN:
        return value

    attr_type = schema.type if schema else AttributeType.ANY

    match attr_type:
        case AttributeType.NUMBER:
            return _normalize_number(value)
        case AttributeType.BOOL:
            return _normalize_boolean(value)
        case AttributeType.STRING:
            return _normalize_string(value)
        case AttributeType.SET:
            if isinstance(value, list | tuple | set | frozenset):
                return _empty_to_none(frozenset(_canonical(item) for item in value))
            return value
        case AttributeType.LIST:
            if isinstance(value, list | tuple):
                return _empty_to_none(tuple(_canonical(item) for item in value))
            return value
        case AttributeType.MAP:
            if isinstance(value, dict):
                cleaned = {k: v for k, v in value.items() if v is not None}
                return _canonical(cleaned) if cleaned else None
            return value
        case _:
            return value


def values_equal(before: Any, after: Any, schema: AttributeSchema | None) -> bool:
    """Check whether two values are equivalent after normalization.

    Unknown values are never equal to anything.
    """
    if contains_unknown(before) or contains_unknown(after):
        return False
    return normalize(before, schema) == normalize(after, schema)


# =============================================================================
# Diff engine
# =============================================================================


class DiffEngine:
    """Compares declared attributes against state records."""

    def __init__(self, registry: ResourceDescriptorRegistry) -> None:
        self._registry = registry

    def changed_attributes(
        self,
        kind: str,
        declared: dict[str, Any],
        stored: dict[str, Any],
        ignore_changes: frozenset[str] = frozenset(),
    ) -> dict[str, AttributeChange]:
        """Compute the attribute-level diff between declared and stored inputs.

        Args:
            kind: Resource kind (selects the descriptor).
            declared: Declared (resolved or partially unknown) input values.
            stored: Stored input values from the state record.
            ignore_changes: Attributes whose differences are tolerated.

        Returns:
            Mapping of attribute name to change, for differing attributes only.
        """
        descriptor = self._registry.get(kind)
        changes: dict[str, AttributeChange] = {}

        for name, schema in descriptor.input_attributes().items():
            if name in ignore_changes:
                continue

            after = declared.get(name)
            before = stored.get(name)

            # Omitted optional+computed inputs are owned by the provider
            if after is None and schema.is_computed:
                continue

            if values_equal(before, after, schema):
                continue

            changes[name] = AttributeChange(
                name=name,
                before=before,
                after=after,
                forces_replacement=schema.immutable,
            )

        return changes

    def diff(
        self,
        node: ResourceNode,
        declared: dict[str, Any],
        record: StateRecord | None,
        depends_on: tuple[str, ...] = (),
        raw_declared: dict[str, Any] | None = None,
    ) -> Action:
        """Produce the action for one declared resource.

        Args:
            node: Declared resource.
            declared: Declared inputs with references resolved as far as known.
            record: Stored state, or None if the resource was never applied.
            depends_on: Addresses the node depends on.
            raw_declared: Declared inputs before reference resolution.

        Returns:
            A CREATE, UPDATE, REPLACE or NOOP action.
        """
        action = Action(
            action_type=ActionType.NOOP,
            address=node.address,
            kind=node.kind,
            depends_on=depends_on,
            node=node,
            declared=raw_declared if raw_declared is not None else dict(declared),
            prior=record,
        )

        if record is None:
            action.action_type = ActionType.CREATE
            action.changes = {
                name: AttributeChange(name=name, before=None, after=value)
                for name, value in declared.items()
                if value is not None
            }
            return action

        changes = self.changed_attributes(
            node.kind, declared, record.inputs, node.ignore_changes
        )
        action.changes = changes

        if not changes:
            action.action_type = ActionType.NOOP
        elif any(change.forces_replacement for change in changes.values()):
            action.action_type = ActionType.REPLACE
        else:
            action.action_type = ActionType.UPDATE

        if action.is_change:
            logger.debug(
                "Drift detected",
                extra={
                    "address": node.address,
                    "action": action.action_type.value,
                    "changed_attributes": sorted(changes),
                },
            )

        return action

    def diff_removed(self, record: StateRecord) -> Action:
        """Produce the DELETE action for a resource no longer declared."""
        return Action(
            action_type=ActionType.DELETE,
            address=record.address,
            kind=record.kind,
            changes={
                name: AttributeChange(name=name, before=value, after=None)
                for name, value in record.inputs.items()
            },
            prior=record,
        )
