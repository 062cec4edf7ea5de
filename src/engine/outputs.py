"""Output resolver: exposes applied attribute values to dependents.

After a node's action completes (or was a no-op), its current attribute
values, including provider-computed ones, become visible to every node
whose declared inputs reference it, and to the caller's final summary.

Two flavours:
- OutputResolver: apply time. Referencing a failed, skipped or never-applied
  node raises UnresolvedOutputError.
- PlanningResolver: plan time. Nodes that will only be known after apply
  resolve to the UNKNOWN marker instead.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from .models import REFERENCE_RE, UNKNOWN, Reference, contains_unknown, whole_reference

logger = logging.getLogger(__name__)


class UnresolvedOutputError(Exception):
    """Raised when a referenced attribute has no value to offer."""

    def __init__(
        self,
        address: str,
        attribute: str,
        reason: str,
        referenced_by: str | None = None,
    ) -> None:
        self.address = address
        self.attribute = attribute
        self.reason = reason
        self.referenced_by = referenced_by
        prefix = f"{referenced_by}: " if referenced_by else ""
        super().__init__(f"{prefix}cannot resolve {address}.{attribute}: {reason}")


def _render(value: Any) -> str:
    """Text form of a value interpolated into a string."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, int | float):
        return str(value)
    return json.dumps(value, sort_keys=True, default=str)


class OutputResolver:
    """Attribute values of completed nodes, keyed by address."""

    def __init__(self) -> None:
        self._values: dict[str, dict[str, Any]] = {}
        self._unavailable: dict[str, str] = {}

    def record(self, address: str, attributes: dict[str, Any]) -> None:
        """Publish a node's attribute values."""
        self._values[address] = dict(attributes)
        self._unavailable.pop(address, None)

    def mark_unavailable(self, address: str, reason: str) -> None:
        """Mark a node as failed or skipped; references to it cannot resolve."""
        self._values.pop(address, None)
        self._unavailable[address] = reason

    def get(self, address: str) -> dict[str, Any] | None:
        values = self._values.get(address)
        return dict(values) if values is not None else None

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {address: dict(values) for address, values in sorted(self._values.items())}

    def lookup(self, ref: Reference) -> Any:
        """Return the value of one referenced attribute.

        Raises:
            UnresolvedOutputError: If the node is unavailable or lacks the attribute.
        """
        if ref.address in self._unavailable:
            raise UnresolvedOutputError(ref.address, ref.attribute, self._unavailable[ref.address])

        values = self._values.get(ref.address)
        if values is None:
            raise UnresolvedOutputError(
                ref.address, ref.attribute, "resource has not been applied"
            )

        if ref.attribute not in values:
            raise UnresolvedOutputError(
                ref.address, ref.attribute, "attribute has no value"
            )
        return values[ref.attribute]

    def resolve(self, value: Any) -> Any:
        """Substitute every reference inside a declared value."""
        if isinstance(value, str):
            ref = whole_reference(value)
            if ref is not None:
                return self.lookup(ref)

            if not REFERENCE_RE.search(value):
                return value

            parts: list[str] = []
            unknown = False
            last = 0
            for match in REFERENCE_RE.finditer(value):
                parts.append(value[last : match.start()])
                resolved = self.lookup(Reference.parse(match.group(1)))
                if contains_unknown(resolved):
                    unknown = True
                else:
                    parts.append(_render(resolved))
                last = match.end()
            parts.append(value[last:])
            return UNKNOWN if unknown else "".join(parts)

        if isinstance(value, dict):
            return {k: self.resolve(v) for k, v in value.items()}

        if isinstance(value, list | tuple):
            return [self.resolve(v) for v in value]

        return value

    def resolve_attributes(self, address: str, attributes: dict[str, Any]) -> dict[str, Any]:
        """Resolve every declared attribute of one node.

        Raises:
            UnresolvedOutputError: Naming the referencing node.
        """
        try:
            return {name: self.resolve(value) for name, value in attributes.items()}
        except UnresolvedOutputError as e:
            raise UnresolvedOutputError(
                e.address, e.attribute, e.reason, referenced_by=address
            ) from e

    def resolve_named(self, outputs: dict[str, Any]) -> tuple[dict[str, Any], dict[str, str]]:
        """Resolve configuration-level named outputs.

        Returns:
            Tuple of (resolved values, errors by output name).
        """
        resolved: dict[str, Any] = {}
        errors: dict[str, str] = {}
        for name, expression in outputs.items():
            try:
                resolved[name] = self.resolve(expression)
            except UnresolvedOutputError as e:
                errors[name] = str(e)
                logger.warning(
                    "Named output could not be resolved",
                    extra={"output": name, "error": str(e)},
                )
        return resolved, errors


class PlanningResolver(OutputResolver):
    """Plan-time resolver where some values are only known after apply."""

    def __init__(self) -> None:
        super().__init__()
        self._pending: dict[str, dict[str, Any]] = {}

    def record_pending(self, address: str, known: dict[str, Any]) -> None:
        """Publish a node that will change; attributes not in `known` are unknown."""
        self._pending[address] = {k: v for k, v in known.items() if v is not None}
        self._values.pop(address, None)

    def lookup(self, ref: Reference) -> Any:
        pending = self._pending.get(ref.address)
        if pending is not None:
            return pending.get(ref.attribute, UNKNOWN)
        return super().lookup(ref)
