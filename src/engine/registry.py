"""Resource descriptor registry.

Every resource kind the engine can manage is registered here together with
the provider that implements its create/read/update/delete operations.
Descriptors are immutable once registered: the diff engine and planner rely
on them staying stable for the duration of a run.

Provider plugins are plain Python modules exposing a ``register(registry)``
hook. They are imported by name from configuration (CKIT_PROVIDER_MODULES).
"""

from __future__ import annotations

import importlib
import logging
import re
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .models import NAME_PATTERN, ResourceNode

if TYPE_CHECKING:
    from .provider import ResourceProvider

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """Base class for registry errors."""

    pass


class UnknownResourceKindError(RegistryError):
    """Raised when a declaration uses a kind nobody registered."""

    pass


class DuplicateResourceKindError(RegistryError):
    """Raised when a kind is registered twice."""

    pass


class DeclarationValidationError(RegistryError):
    """Raised when a declaration does not match its kind's descriptor."""

    def __init__(self, address: str, attribute: str | None, message: str) -> None:
        self.address = address
        self.attribute = attribute
        where = f"{address}.{attribute}" if attribute else address
        super().__init__(f"{where}: {message}")


class PluginLoadError(RegistryError):
    """Raised when a provider plugin module cannot be loaded."""

    pass


class AttributeType(str, Enum):
    """Value types understood by the diff engine."""

    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    LIST = "list"  # Order-sensitive sequence
    SET = "set"  # Order-insensitive collection
    MAP = "map"
    ANY = "any"


class AttributeMode(str, Enum):
    """Who supplies an attribute's value."""

    INPUT = "input"  # Declared by the user
    COMPUTED = "computed"  # Returned by the provider
    BOTH = "both"  # Optional input, provider fills it in when omitted


class AttributeSchema(BaseModel):
    """Schema for a single attribute of a resource kind."""

    model_config = {"frozen": True, "extra": "forbid"}

    type: AttributeType = AttributeType.ANY
    required: bool = False
    mode: AttributeMode = AttributeMode.INPUT
    # Changing an immutable attribute forces delete-then-create
    immutable: bool = False
    default: Any = None
    description: str = ""

    @model_validator(mode="after")
    def check_consistency(self) -> AttributeSchema:
        if self.mode == AttributeMode.COMPUTED and self.required:
            raise ValueError("computed attributes cannot be required")
        if self.mode == AttributeMode.COMPUTED and self.immutable:
            raise ValueError("computed attributes cannot be immutable")
        return self

    @property
    def is_input(self) -> bool:
        return self.mode in (AttributeMode.INPUT, AttributeMode.BOTH)

    @property
    def is_computed(self) -> bool:
        return self.mode in (AttributeMode.COMPUTED, AttributeMode.BOTH)


class ResourceDescriptor(BaseModel):
    """Schema of one resource kind."""

    model_config = {"frozen": True, "extra": "forbid"}

    kind: str
    attributes: dict[str, AttributeSchema] = Field(default_factory=dict)
    description: str = ""

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if not re.fullmatch(NAME_PATTERN, v):
            raise ValueError(f"kind must match {NAME_PATTERN}: {v}")
        return v

    def schema_for(self, attribute: str) -> AttributeSchema | None:
        return self.attributes.get(attribute)

    def input_attributes(self) -> dict[str, AttributeSchema]:
        return {name: s for name, s in self.attributes.items() if s.is_input}

    def computed_attributes(self) -> dict[str, AttributeSchema]:
        return {name: s for name, s in self.attributes.items() if s.is_computed}

    def immutable_attributes(self) -> set[str]:
        return {name for name, s in self.attributes.items() if s.immutable}


class ResourceDescriptorRegistry:
    """Holds descriptors and providers for every known resource kind."""

    def __init__(self) -> None:
        self._descriptors: dict[str, ResourceDescriptor] = {}
        self._providers: dict[str, ResourceProvider] = {}

    def register(self, descriptor: ResourceDescriptor, provider: ResourceProvider) -> None:
        """Register a resource kind.

        Raises:
            DuplicateResourceKindError: If the kind is already registered.
        """
        if descriptor.kind in self._descriptors:
            raise DuplicateResourceKindError(
                f"Resource kind '{descriptor.kind}' is already registered"
            )
        self._descriptors[descriptor.kind] = descriptor
        self._providers[descriptor.kind] = provider
        logger.debug(
            "Registered resource kind",
            extra={"kind": descriptor.kind, "provider": type(provider).__name__},
        )

    def __contains__(self, kind: object) -> bool:
        return kind in self._descriptors

    def kinds(self) -> list[str]:
        return sorted(self._descriptors)

    def get(self, kind: str) -> ResourceDescriptor:
        """Get the descriptor for a kind.

        Raises:
            UnknownResourceKindError: If the kind is not registered.
        """
        descriptor = self._descriptors.get(kind)
        if descriptor is None:
            raise UnknownResourceKindError(
                f"Unknown resource kind '{kind}'. Registered kinds: {self.kinds()}"
            )
        return descriptor

    def provider_for(self, kind: str) -> ResourceProvider:
        """Get the provider for a kind.

        Raises:
            UnknownResourceKindError: If the kind is not registered.
        """
        provider = self._providers.get(kind)
        if provider is None:
            raise UnknownResourceKindError(
                f"Unknown resource kind '{kind}'. Registered kinds: {self.kinds()}"
            )
        return provider

    def validate(self, node: ResourceNode) -> dict[str, Any]:
        """Validate a node against its descriptor and apply defaults.

        Args:
            node: Declared resource instance.

        Returns:
            Declared attributes with defaults filled in for omitted inputs.

        Raises:
            UnknownResourceKindError: If the node's kind is not registered.
            DeclarationValidationError: On unknown, missing or computed-only attributes.
        """
        try:
            descriptor = self.get(node.kind)
        except UnknownResourceKindError as e:
            raise UnknownResourceKindError(f"{node.address}: {e}") from e

        for name in node.attributes:
            schema = descriptor.schema_for(name)
            if schema is None:
                raise DeclarationValidationError(
                    node.address, name, f"unknown attribute for kind '{node.kind}'"
                )
            if not schema.is_input:
                raise DeclarationValidationError(
                    node.address, name, "attribute is computed by the provider and cannot be set"
                )

        for name in node.ignore_changes:
            if descriptor.schema_for(name) is None:
                raise DeclarationValidationError(
                    node.address, name, "ignoreChanges names an unknown attribute"
                )

        attributes = dict(node.attributes)
        for name, schema in descriptor.input_attributes().items():
            if attributes.get(name) is not None:
                continue
            if schema.default is not None:
                attributes[name] = schema.default
            elif schema.required:
                raise DeclarationValidationError(node.address, name, "required attribute is missing")

        return attributes


def load_provider_plugins(
    registry: ResourceDescriptorRegistry, module_names: tuple[str, ...] | list[str]
) -> None:
    """Import provider plugin modules and let them register their kinds.

    Args:
        registry: Registry to populate.
        module_names: Importable module names exposing register(registry).

    Raises:
        PluginLoadError: If a module cannot be imported or has no register hook.
    """
    for module_name in module_names:
        try:
            module = importlib.import_module(module_name)
        except ImportError as e:
            raise PluginLoadError(f"Cannot import provider module '{module_name}': {e}") from e

        hook = getattr(module, "register", None)
        if not callable(hook):
            raise PluginLoadError(
                f"Provider module '{module_name}' does not define register(registry)"
            )

        before = set(registry.kinds())
        hook(registry)
        added = sorted(set(registry.kinds()) - before)
        logger.info(
            "Loaded provider plugin",
            extra={"module": module_name, "kinds": added},
        )
