"""Tests for the diff engine and value normalization."""

from __future__ import annotations

import pytest

from engine.diff import ActionType, DiffEngine, normalize, values_equal
from engine.models import UNKNOWN, ResourceNode
from engine.registry import AttributeSchema, AttributeType, ResourceDescriptorRegistry
from engine.state import StateRecord


def _schema(attr_type: AttributeType) -> AttributeSchema:
    return AttributeSchema(type=attr_type)


def _route(**attributes: object) -> ResourceNode:
    return ResourceNode(address="http_route.web", kind="http_route", attributes=dict(attributes))


def _record(kind: str, address: str, **inputs: object) -> StateRecord:
    return StateRecord(address=address, kind=kind, external_id="ext-1", inputs=dict(inputs))


class TestNormalization:
    """Tests for type-driven value equivalence."""

    @pytest.mark.parametrize(
        ("before", "after", "attr_type"),
        [
            ("100", 100, AttributeType.NUMBER),
            ("1.5", 1.5, AttributeType.NUMBER),
            (1, 1.0, AttributeType.NUMBER),
            ("true", True, AttributeType.BOOL),
            ("no", False, AttributeType.BOOL),
            (8080, "8080", AttributeType.STRING),
            (["a", "b", "a"], ["b", "a"], AttributeType.SET),
            ({"a": 1, "b": None}, {"a": 1}, AttributeType.MAP),
            ({}, None, AttributeType.MAP),
            ([], None, AttributeType.LIST),
        ],
    )
    def test_equivalent(self, before: object, after: object, attr_type: AttributeType) -> None:
        assert values_equal(before, after, _schema(attr_type))

    @pytest.mark.parametrize(
        ("before", "after", "attr_type"),
        [
            (["a", "b"], ["b", "a"], AttributeType.LIST),
            ("100", 101, AttributeType.NUMBER),
            ({"a": 1}, {"a": 2}, AttributeType.MAP),
            ("abc", "ABC", AttributeType.STRING),
        ],
    )
    def test_different(self, before: object, after: object, attr_type: AttributeType) -> None:
        assert not values_equal(before, after, _schema(attr_type))

    def test_unknown_is_never_equal(self) -> None:
        assert not values_equal("x", UNKNOWN, _schema(AttributeType.STRING))
        assert not values_equal(UNKNOWN, UNKNOWN, _schema(AttributeType.ANY))

    def test_set_of_maps_order_insensitive(self) -> None:
        schema = _schema(AttributeType.SET)
        assert normalize([{"b": 2, "a": 1}, {"c": 3}], schema) == normalize(
            [{"c": 3}, {"a": 1, "b": 2}], schema
        )


class TestDiffEngine:
    """Tests for DiffEngine action selection."""

    def test_no_record_is_create(self, registry: ResourceDescriptorRegistry) -> None:
        engine = DiffEngine(registry)
        declared = {"hostname": "example.com", "backend": "api", "port": 80}

        action = engine.diff(_route(**declared), declared, None)

        assert action.action_type == ActionType.CREATE
        assert set(action.changes) == {"hostname", "backend", "port"}
        assert action.changes["port"].before is None

    def test_equal_inputs_is_noop(self, registry: ResourceDescriptorRegistry) -> None:
        engine = DiffEngine(registry)
        declared = {"hostname": "example.com", "backend": "api", "port": 80, "tls": False}
        record = _record("http_route", "http_route.web", **{**declared, "port": "80"})

        action = engine.diff(_route(**declared), declared, record)

        assert action.action_type == ActionType.NOOP
        assert action.changes == {}
        assert action.external_id == "ext-1"

    def test_mutable_change_is_update_with_changed_only(
        self, registry: ResourceDescriptorRegistry
    ) -> None:
        engine = DiffEngine(registry)
        record = _record("http_route", "http_route.web", hostname="example.com", backend="api", port=80)
        declared = {"hostname": "example.com", "backend": "api", "port": 8080}

        action = engine.diff(_route(**declared), declared, record)

        assert action.action_type == ActionType.UPDATE
        assert list(action.changes) == ["port"]
        assert action.changes["port"].before == 80
        assert action.changes["port"].after == 8080
        assert not action.requires_replace

    def test_immutable_change_is_replace(self, registry: ResourceDescriptorRegistry) -> None:
        engine = DiffEngine(registry)
        node = ResourceNode(address="static_ip.ingress", kind="static_ip")
        record = _record("static_ip", "static_ip.ingress", name="ingress", region="us-central1")
        declared = {"name": "ingress", "region": "europe-west1", "labels": {"team": "web"}}

        action = engine.diff(node, declared, record)

        assert action.action_type == ActionType.REPLACE
        assert action.requires_replace
        assert action.replace_reasons == ["region"]
        assert set(action.changes) == {"region", "labels"}

    def test_list_reorder_is_change(self, registry: ResourceDescriptorRegistry) -> None:
        engine = DiffEngine(registry)
        record = _record(
            "http_route", "http_route.web", hostname="h", backend="b", paths=["/a", "/b"]
        )
        declared = {"hostname": "h", "backend": "b", "paths": ["/b", "/a"]}

        action = engine.diff(_route(**declared), declared, record)

        assert action.action_type == ActionType.UPDATE
        assert list(action.changes) == ["paths"]

    def test_set_reorder_is_not_change(self, registry: ResourceDescriptorRegistry) -> None:
        engine = DiffEngine(registry)
        node = ResourceNode(address="iam_binding.viewers", kind="iam_binding")
        record = _record(
            "iam_binding", "iam_binding.viewers", role="viewer", members=["user:a", "user:b"]
        )
        declared = {"role": "viewer", "members": ["user:b", "user:a"]}

        assert engine.diff(node, declared, record).action_type == ActionType.NOOP

    def test_ignore_changes(self, registry: ResourceDescriptorRegistry) -> None:
        engine = DiffEngine(registry)
        node = ResourceNode(
            address="static_ip.ingress",
            kind="static_ip",
            ignore_changes=frozenset({"labels", "region"}),
        )
        record = _record("static_ip", "static_ip.ingress", name="ingress", labels={"a": "1"})
        declared = {"name": "ingress", "region": "europe-west1", "labels": {"a": "2"}}

        assert engine.diff(node, declared, record).action_type == ActionType.NOOP

    def test_unknown_value_is_change(self, registry: ResourceDescriptorRegistry) -> None:
        engine = DiffEngine(registry)
        record = _record("http_route", "http_route.web", hostname="h", backend="10.0.0.1")
        declared = {"hostname": "h", "backend": UNKNOWN}

        action = engine.diff(_route(**declared), declared, record)

        assert action.action_type == ActionType.UPDATE
        assert action.changes["backend"].after_unknown

    def test_removed_is_delete(self, registry: ResourceDescriptorRegistry) -> None:
        engine = DiffEngine(registry)
        record = _record("static_ip", "static_ip.old", name="old")

        action = engine.diff_removed(record)

        assert action.action_type == ActionType.DELETE
        assert action.address == "static_ip.old"
        assert action.changes["name"].before == "old"
        assert action.changes["name"].after is None
