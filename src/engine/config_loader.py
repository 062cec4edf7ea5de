"""Configuration snapshot loading with validation.

A configuration is a directory of YAML files (``*.yaml`` / ``*.yml``), read
once per run in file-name order and frozen into a ConfigurationSnapshot.
Each file holds an optional module path, a list of resources and a map of
named outputs; a Kubernetes-style wrapper (apiVersion/kind/spec) is accepted
as well.

Repeated resources are expanded here, before any graph is built:
- ``count: N`` declares instances ``<kind>.<name>[0..N-1]``; ``${count.index}``
  inside their attributes is the instance index
- ``forEach: [a, b]`` or ``forEach: {a: x, b: y}`` declares instances
  ``<kind>.<name>["a"]``; ``${each.key}`` and ``${each.value}`` are substituted

A ``dependsOn`` entry naming a repeated resource without an index depends on
every instance.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_CONFIG_FILE_SIZE_BYTES, MAX_CONFIG_FILES
from .models import (
    Address,
    AddressError,
    ConfigurationDocument,
    ConfigurationSnapshot,
    ResourceDeclaration,
    ResourceNode,
    find_references,
)

logger = logging.getLogger(__name__)

CONFIG_SUFFIXES = (".yaml", ".yml")

# Instance placeholders substituted during expansion
_PLACEHOLDER_RE = re.compile(r"\$\{\s*(count\.index|each\.key|each\.value)\s*\}")


class ConfigLoadError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


def _format_validation_error(path: Path, error: ValidationError) -> str:
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        errors.append(f"  - {loc}: {item['msg']}")
    return f"Validation failed for {path}:\n" + "\n".join(errors)


def _read_yaml(path: Path) -> dict[str, Any]:
    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ConfigLoadError(f"Failed to stat configuration file {path}: {e}") from e

    if file_size > MAX_CONFIG_FILE_SIZE_BYTES:
        raise ConfigLoadError(
            f"Configuration file exceeds maximum size of {MAX_CONFIG_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigLoadError(f"Failed to read configuration file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        return {}

    if not isinstance(raw_data, dict):
        raise ConfigLoadError(f"Configuration file must contain a YAML mapping: {path}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise ConfigLoadError(f"Spec section must be a mapping: {path}")
        return spec_data

    return raw_data


def load_document(path: Path) -> ConfigurationDocument:
    """Load and validate a single configuration file.

    Raises:
        ConfigLoadError: If the file cannot be read or fails validation.
    """
    data = _read_yaml(path)
    try:
        return ConfigurationDocument.model_validate(data)
    except ValidationError as e:
        raise ConfigLoadError(_format_validation_error(path, e)) from e


def _substitute(value: Any, bindings: dict[str, Any]) -> Any:
    """Replace instance placeholders inside a declared value."""
    if isinstance(value, str):
        whole = _PLACEHOLDER_RE.fullmatch(value.strip())
        if whole is not None:
            return bindings[whole.group(1)]
        return _PLACEHOLDER_RE.sub(lambda m: str(bindings[m.group(1)]), value)
    if isinstance(value, dict):
        return {k: _substitute(v, bindings) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute(v, bindings) for v in value]
    return value


def _has_placeholder(value: Any) -> bool:
    if isinstance(value, str):
        return _PLACEHOLDER_RE.search(value) is not None
    if isinstance(value, dict):
        return any(_has_placeholder(v) for v in value.values())
    if isinstance(value, list):
        return any(_has_placeholder(v) for v in value)
    return False


def expand_declaration(
    declaration: ResourceDeclaration, module_path: tuple[str, ...] = ()
) -> list[tuple[Address, dict[str, Any]]]:
    """Expand one declaration into (address, attributes) per instance.

    Raises:
        ConfigLoadError: If placeholders are used outside a repeated resource.
    """
    base = Address(kind=declaration.kind, name=declaration.name, module_path=module_path)

    if declaration.count is not None:
        return [
            (
                Address(base.kind, base.name, module_path, index=i),
                _substitute(declaration.attributes, {"count.index": i}),
            )
            for i in range(declaration.count)
        ]

    if declaration.for_each is not None:
        items = (
            declaration.for_each.items()
            if isinstance(declaration.for_each, dict)
            else ((key, key) for key in declaration.for_each)
        )
        return [
            (
                Address(base.kind, base.name, module_path, index=str(key)),
                _substitute(declaration.attributes, {"each.key": str(key), "each.value": value}),
            )
            for key, value in items
        ]

    if _has_placeholder(declaration.attributes):
        raise ConfigLoadError(
            f"{base}: count/each placeholders require 'count' or 'forEach'"
        )
    return [(base, dict(declaration.attributes))]


def build_snapshot(
    documents: list[tuple[str, ConfigurationDocument]], source: str = ""
) -> ConfigurationSnapshot:
    """Turn validated documents into a snapshot of resource nodes.

    Args:
        documents: (origin, document) pairs in declaration order.
        source: Description of where the snapshot came from.

    Raises:
        ConfigLoadError: On duplicate addresses, duplicate named outputs or
            malformed references.
    """
    expanded: list[tuple[str, ResourceDeclaration, Address, dict[str, Any]]] = []
    groups: dict[str, list[str]] = {}
    seen: dict[str, str] = {}

    for origin, document in documents:
        for declaration in document.resources:
            instances = expand_declaration(declaration, document.module_path())
            base = str(Address(declaration.kind, declaration.name, document.module_path()))
            if declaration.count is not None or declaration.for_each is not None:
                groups[base] = [str(address) for address, _ in instances]

            for address, attributes in instances:
                key = str(address)
                if key in seen:
                    raise ConfigLoadError(
                        f"Duplicate resource address {key} (declared in {seen[key]} and {origin})"
                    )
                seen[key] = origin
                expanded.append((origin, declaration, address, attributes))

    nodes: list[ResourceNode] = []
    for order, (origin, declaration, address, attributes) in enumerate(expanded):
        depends_on: list[str] = []
        for dep in declaration.depends_on:
            depends_on.extend(groups.get(dep, [dep]))

        try:
            list(find_references(attributes))
        except AddressError as e:
            raise ConfigLoadError(f"{address} ({origin}): {e}") from e

        nodes.append(
            ResourceNode(
                address=str(address),
                kind=declaration.kind,
                attributes=attributes,
                depends_on=depends_on,
                ignore_changes=frozenset(declaration.ignore_changes),
                order=order,
            )
        )

    outputs: dict[str, Any] = {}
    output_origin: dict[str, str] = {}
    for origin, document in documents:
        for name, expression in document.outputs.items():
            if name in outputs:
                raise ConfigLoadError(
                    f"Duplicate output '{name}' (declared in {output_origin[name]} and {origin})"
                )
            try:
                list(find_references(expression))
            except AddressError as e:
                raise ConfigLoadError(f"output '{name}' ({origin}): {e}") from e
            outputs[name] = expression
            output_origin[name] = origin

    return ConfigurationSnapshot(nodes=nodes, outputs=outputs, source=source)


def load_snapshot(config_dir: Path) -> ConfigurationSnapshot:
    """Load every configuration file in a directory into one snapshot.

    Args:
        config_dir: Directory containing YAML declaration files.

    Returns:
        Snapshot with nodes in declaration order (files sorted by name).

    Raises:
        ConfigLoadError: If any file cannot be loaded or the result is invalid.
    """
    if not config_dir.is_dir():
        raise ConfigLoadError(f"Configuration directory not found: {config_dir}")

    paths = sorted(
        path
        for path in config_dir.iterdir()
        if path.is_file() and path.suffix in CONFIG_SUFFIXES and not path.name.startswith(".")
    )

    if len(paths) > MAX_CONFIG_FILES:
        raise ConfigLoadError(
            f"Configuration directory holds {len(paths)} files, maximum is {MAX_CONFIG_FILES}"
        )

    documents = [(path.name, load_document(path)) for path in paths]
    snapshot = build_snapshot(documents, source=str(config_dir))

    logger.info(
        "Loaded configuration snapshot",
        extra={
            "config_dir": str(config_dir),
            "files": len(paths),
            "resources": len(snapshot.nodes),
            "outputs": len(snapshot.outputs),
        },
    )
    return snapshot
