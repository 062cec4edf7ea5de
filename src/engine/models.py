"""Declaration models, resource addresses and cross-resource references.

These models provide:
1. Type-safe YAML parsing of resource declarations (pydantic)
2. Canonical resource addresses (module path + kind + name + index)
3. Reference discovery inside declared attribute values

ADDRESS FORMAT:
    module.<m1>.module.<m2>.<kind>.<name>[<index>]

Examples:
    service_account.api
    module.network.static_ip.ingress[0]
    module.iam.iam_binding.viewers["logging"]

REFERENCE FORMAT:
    ${<address>.<attribute>}

A value that is exactly one reference takes the referenced value (with its
type). A reference embedded in a longer string is interpolated as text.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import MAX_INSTANCE_COUNT

# =============================================================================
# Addresses
# =============================================================================

NAME_PATTERN = r"[A-Za-z_][A-Za-z0-9_-]*"
_INDEX_PATTERN = r'\[(?:(?P<int_index>\d+)|"(?P<str_index>[^"\]]+)")\]'

ADDRESS_RE = re.compile(
    rf"^(?P<modules>(?:module\.{NAME_PATTERN}\.)*)"
    rf"(?P<kind>{NAME_PATTERN})\.(?P<name>{NAME_PATTERN})"
    rf"(?:{_INDEX_PATTERN})?$"
)

_MODULE_SEGMENT_RE = re.compile(rf"module\.({NAME_PATTERN})\.")

# ${...} with no nested braces
REFERENCE_RE = re.compile(r"\$\{([^${}]+)\}")


class AddressError(ValueError):
    """Raised when an address or reference string is malformed."""

    pass


@dataclass(frozen=True)
class Address:
    """Stable identifier of one declared resource instance."""

    kind: str
    name: str
    module_path: tuple[str, ...] = ()
    index: int | str | None = None

    def __str__(self) -> str:
        prefix = "".join(f"module.{m}." for m in self.module_path)
        base = f"{prefix}{self.kind}.{self.name}"
        if self.index is None:
            return base
        if isinstance(self.index, int):
            return f"{base}[{self.index}]"
        return f'{base}["{self.index}"]'

    @classmethod
    def parse(cls, value: str) -> Address:
        """Parse a canonical address string.

        Raises:
            AddressError: If the string is not a valid address.
        """
        match = ADDRESS_RE.match(value.strip())
        if match is None:
            raise AddressError(f"Invalid resource address: '{value}'")

        module_path = tuple(_MODULE_SEGMENT_RE.findall(match.group("modules")))

        index: int | str | None = None
        if match.group("int_index") is not None:
            index = int(match.group("int_index"))
        elif match.group("str_index") is not None:
            index = match.group("str_index")

        return cls(
            kind=match.group("kind"),
            name=match.group("name"),
            module_path=module_path,
            index=index,
        )


def normalize_address(value: str) -> str:
    """Return the canonical string form of an address."""
    return str(Address.parse(value))


# =============================================================================
# References
# =============================================================================


@dataclass(frozen=True)
class Reference:
    """A pointer from one node's input to another node's attribute."""

    address: str
    attribute: str

    def __str__(self) -> str:
        return f"${{{self.address}.{self.attribute}}}"

    @classmethod
    def parse(cls, expression: str) -> Reference:
        """Parse the inside of a ${...} expression.

        Raises:
            AddressError: If the expression is not <address>.<attribute>.
        """
        expression = expression.strip()
        if "." not in expression:
            raise AddressError(f"Invalid reference '${{{expression}}}'")

        address_part, attribute = expression.rsplit(".", 1)
        if not re.fullmatch(NAME_PATTERN, attribute):
            raise AddressError(f"Invalid attribute name in reference '${{{expression}}}'")

        return cls(address=normalize_address(address_part), attribute=attribute)


def find_references(value: Any) -> Iterator[Reference]:
    """Yield every reference contained in a declared value (recursively)."""
    if isinstance(value, str):
        for match in REFERENCE_RE.finditer(value):
            yield Reference.parse(match.group(1))
    elif isinstance(value, dict):
        for item in value.values():
            yield from find_references(item)
    elif isinstance(value, list | tuple):
        for item in value:
            yield from find_references(item)


def whole_reference(value: str) -> Reference | None:
    """Return the reference if the string consists of exactly one reference."""
    match = REFERENCE_RE.fullmatch(value.strip())
    if match is None:
        return None
    return Reference.parse(match.group(1))


class _Unknown:
    """Marker for values that only exist after apply."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __bool__(self) -> bool:
        return False


UNKNOWN = _Unknown()


def contains_unknown(value: Any) -> bool:
    """Check whether a (possibly nested) value contains the UNKNOWN marker."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list | tuple):
        return any(contains_unknown(v) for v in value)
    return False


# =============================================================================
# Graph nodes
# =============================================================================


@dataclass
class ResourceNode:
    """One declared resource instance in a configuration snapshot."""

    address: str
    kind: str
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    ignore_changes: frozenset[str] = field(default_factory=frozenset)
    order: int = 0

    def references(self) -> list[tuple[str, Reference]]:
        """Return (attribute_name, reference) pairs for every reference."""
        pairs: list[tuple[str, Reference]] = []
        for name, value in self.attributes.items():
            for ref in find_references(value):
                pairs.append((name, ref))
        return pairs

    def dependency_addresses(self) -> list[str]:
        """Addresses this node must wait for, in first-seen order."""
        seen: dict[str, None] = {}
        for _, ref in self.references():
            seen.setdefault(ref.address, None)
        for dep in self.depends_on:
            seen.setdefault(dep, None)
        return list(seen)


@dataclass
class ConfigurationSnapshot:
    """Static set of declarations for one engine run."""

    nodes: list[ResourceNode] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    source: str = ""

    def addresses(self) -> list[str]:
        return [node.address for node in self.nodes]

    def node(self, address: str) -> ResourceNode | None:
        for node in self.nodes:
            if node.address == address:
                return node
        return None


# =============================================================================
# YAML declaration documents
# =============================================================================


class ResourceDeclaration(BaseModel):
    """A resource block as written in a configuration file."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    kind: Annotated[str, Field(pattern=rf"^{NAME_PATTERN}$")]
    name: Annotated[str, Field(pattern=rf"^{NAME_PATTERN}$")]
    attributes: dict[str, Any] = Field(default_factory=dict)

    # Repeated instances: either a count or a set/map of keys
    count: Annotated[int, Field(ge=0, le=MAX_INSTANCE_COUNT)] | None = None
    for_each: list[str] | dict[str, Any] | None = Field(None, alias="forEach")

    # Explicit ordering for dependencies not expressed through references
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    # Attributes whose drift is tolerated once the resource exists
    ignore_changes: list[str] = Field(default_factory=list, alias="ignoreChanges")

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: list[str]) -> list[str]:
        try:
            return [normalize_address(dep) for dep in v]
        except AddressError as e:
            raise ValueError(str(e)) from e

    @field_validator("for_each")
    @classmethod
    def validate_for_each(cls, v: list[str] | dict[str, Any] | None) -> Any:
        if v is None:
            return v
        if len(v) > MAX_INSTANCE_COUNT:
            raise ValueError(f"forEach cannot expand to more than {MAX_INSTANCE_COUNT} instances")
        if isinstance(v, list) and len(set(v)) != len(v):
            raise ValueError("forEach keys must be unique")
        return v

    @model_validator(mode="after")
    def check_repetition(self) -> ResourceDeclaration:
        if self.count is not None and self.for_each is not None:
            raise ValueError("count and forEach are mutually exclusive")
        return self


class ConfigurationDocument(BaseModel):
    """One configuration file: an optional module path, resources and outputs."""

    model_config = {"extra": "forbid"}

    module: str | None = None
    resources: list[ResourceDeclaration] = Field(default_factory=list)
    outputs: dict[str, Any] = Field(default_factory=dict)

    @field_validator("module")
    @classmethod
    def validate_module(cls, v: str | None) -> str | None:
        if v is None:
            return v
        for part in v.split("."):
            if not re.fullmatch(NAME_PATTERN, part):
                raise ValueError(f"module must be a dotted path of names: {v}")
        return v

    def module_path(self) -> tuple[str, ...]:
        if not self.module:
            return ()
        return tuple(self.module.split("."))
