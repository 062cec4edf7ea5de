"""Tests for the plan executor."""

from __future__ import annotations

import logging
from typing import Any

import pytest

from conftest import make_snapshot
from engine.diff import ActionType
from engine.executor import ActionOutcome, ActionStatus, ApplyResult, PlanExecutor
from engine.models import ConfigurationSnapshot
from engine.plan import Planner
from engine.provider import RetryPolicy
from engine.registry import ResourceDescriptorRegistry
from engine.state import StateStore
from provider_mock import MockCloud

FAST_RETRY = RetryPolicy(max_attempts=3, backoff_base_seconds=0.0, backoff_max_seconds=0.0)

ACCOUNT = {"kind": "service_account", "name": "api", "attributes": {"account_id": "api"}}
BINDING = {
    "kind": "iam_binding",
    "name": "api_logs",
    "attributes": {
        "role": "roles/logging.logWriter",
        "members": ["serviceAccount:${service_account.api.email}"],
    },
}


def _ip(name: str, **attributes: Any) -> dict[str, Any]:
    return {"kind": "static_ip", "name": name, "attributes": {"name": name, **attributes}}


async def _apply(
    registry: ResourceDescriptorRegistry,
    state_store: StateStore,
    snapshot: ConfigurationSnapshot,
    **kwargs: Any,
) -> ApplyResult:
    plan = Planner(registry).plan(snapshot, state_store.records())
    executor = PlanExecutor(registry, state_store, policy=FAST_RETRY, **kwargs)
    return await executor.execute(plan)


class TestCreate:
    """Tests for creating resources in dependency order."""

    @pytest.mark.asyncio
    async def test_dependency_finishes_before_dependent_starts(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore, cloud: MockCloud
    ) -> None:
        result = await _apply(registry, state_store, make_snapshot([BINDING, ACCOUNT]))

        assert result.success
        assert cloud.index_of("end", "create", "service_account:api") < cloud.index_of(
            "start", "create", "iam_binding:roles/logging.logWriter"
        )

    @pytest.mark.asyncio
    async def test_references_resolved_from_provider_outputs(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore, cloud: MockCloud
    ) -> None:
        await _apply(registry, state_store, make_snapshot([ACCOUNT, BINDING]))

        (call,) = cloud.calls_for("create", "iam_binding")
        assert call.attributes["members"] == ["serviceAccount:api@mock.iam"]

        record = state_store.get("iam_binding.api_logs")
        assert record is not None
        assert record.inputs["members"] == ["serviceAccount:api@mock.iam"]
        assert record.dependencies == ["service_account.api"]
        assert record.outputs["etag"].startswith("iam_binding-")

    @pytest.mark.asyncio
    async def test_outputs_of_every_node(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore
    ) -> None:
        result = await _apply(registry, state_store, make_snapshot([ACCOUNT]))

        assert result.outputs["service_account.api"]["email"] == "api@mock.iam"
        assert result.changed == ["service_account.api"]
        assert result.end_time is not None

    @pytest.mark.asyncio
    async def test_second_apply_is_noop_without_provider_calls(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore, cloud: MockCloud
    ) -> None:
        snapshot = make_snapshot([ACCOUNT, BINDING])
        await _apply(registry, state_store, snapshot)
        calls_before = len(cloud.calls)

        result = await _apply(registry, state_store, snapshot)

        assert result.success
        assert result.changed == []
        assert len(cloud.calls) == calls_before
        assert all(o.attempts == 0 for o in result.outcomes.values())


class TestFailures:
    """Tests for failure propagation and retries."""

    @pytest.mark.asyncio
    async def test_failure_skips_dependents_not_independent_branches(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore, cloud: MockCloud
    ) -> None:
        cloud.fail("create", "service_account")

        result = await _apply(
            registry, state_store, make_snapshot([ACCOUNT, BINDING, _ip("ingress")])
        )

        assert not result.success
        assert result.failed == ["service_account.api"]
        assert result.skipped == ["iam_binding.api_logs"]
        assert result.succeeded == ["static_ip.ingress"]

        skipped = result.outcomes["iam_binding.api_logs"]
        assert skipped.blocked_by == ["service_account.api"]
        assert "blocked by failed dependency service_account.api" in (skipped.error or "")
        assert cloud.calls_for("create", "iam_binding") == []
        assert state_store.get("iam_binding.api_logs") is None
        assert state_store.get("static_ip.ingress") is not None

    @pytest.mark.asyncio
    async def test_skip_is_transitive(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore, cloud: MockCloud
    ) -> None:
        route = {
            "kind": "http_route",
            "name": "web",
            "attributes": {"hostname": "example.com", "backend": "${iam_binding.api_logs.etag}"},
        }
        cloud.fail("create", "service_account")

        result = await _apply(registry, state_store, make_snapshot([ACCOUNT, BINDING, route]))

        assert result.skipped == ["iam_binding.api_logs", "http_route.web"]
        assert result.outcomes["http_route.web"].blocked_by == ["iam_binding.api_logs"]

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore, cloud: MockCloud
    ) -> None:
        cloud.fail("create", "static_ip", transient=True, times=2)

        result = await _apply(registry, state_store, make_snapshot([_ip("ingress")]))

        outcome = result.outcomes["static_ip.ingress"]
        assert outcome.status == ActionStatus.SUCCEEDED
        assert outcome.attempts == 3
        assert outcome.retries == 2

    @pytest.mark.asyncio
    async def test_transient_error_exhausts_attempts(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore, cloud: MockCloud
    ) -> None:
        cloud.fail("create", "static_ip", transient=True, message="quota exceeded")

        result = await _apply(registry, state_store, make_snapshot([_ip("ingress")]))

        outcome = result.outcomes["static_ip.ingress"]
        assert outcome.status == ActionStatus.FAILED
        assert outcome.attempts == 3
        assert "quota exceeded" in (outcome.error or "")
        assert state_store.get("static_ip.ingress") is None

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore, cloud: MockCloud
    ) -> None:
        cloud.fail("create", "static_ip", message="invalid region")

        result = await _apply(registry, state_store, make_snapshot([_ip("ingress")]))

        outcome = result.outcomes["static_ip.ingress"]
        assert outcome.status == ActionStatus.FAILED
        assert outcome.attempts == 1
        assert outcome.retries == 0
        assert len(cloud.calls_for("create", "static_ip")) == 1

    @pytest.mark.asyncio
    async def test_unclassified_exception_is_permanent(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore, cloud: MockCloud
    ) -> None:
        cloud.fail_with("create", "static_ip", lambda: KeyError("boom"))

        result = await _apply(registry, state_store, make_snapshot([_ip("ingress")]))

        outcome = result.outcomes["static_ip.ingress"]
        assert outcome.status == ActionStatus.FAILED
        assert outcome.attempts == 1
        assert "KeyError" in (outcome.error or "")

    @pytest.mark.asyncio
    async def test_unresolved_named_output(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore, cloud: MockCloud
    ) -> None:
        cloud.fail("create", "static_ip", name="broken")
        snapshot = make_snapshot(
            [_ip("ingress"), _ip("broken")],
            outputs={
                "ingress_ip": "${static_ip.ingress.address}",
                "broken_ip": "${static_ip.broken.address}",
            },
        )

        result = await _apply(registry, state_store, snapshot)

        assert result.named_outputs == {"ingress_ip": "10.0.0.1"}
        assert "failed to apply" in result.unresolved_outputs["broken_ip"]


class TestConcurrency:
    """Tests for the parallelism bound and cancellation."""

    @pytest.mark.asyncio
    async def test_parallelism_bound(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore, cloud: MockCloud
    ) -> None:
        cloud.delay("create", "static_ip", 0.02)
        snapshot = make_snapshot([_ip(f"ip{i}") for i in range(6)])

        result = await _apply(registry, state_store, snapshot, parallelism=2)

        assert result.success
        assert cloud.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_independent_actions_run_concurrently(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore, cloud: MockCloud
    ) -> None:
        cloud.delay("create", "static_ip", 0.02)
        snapshot = make_snapshot([_ip(f"ip{i}") for i in range(3)])

        await _apply(registry, state_store, snapshot, parallelism=8)

        assert cloud.max_in_flight == 3

    def test_parallelism_must_be_positive(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore
    ) -> None:
        with pytest.raises(ValueError, match="parallelism"):
            PlanExecutor(registry, state_store, parallelism=0)

    @pytest.mark.asyncio
    async def test_cancel_leaves_undispatched_actions_canceled(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore, cloud: MockCloud
    ) -> None:
        snapshot = make_snapshot([_ip("a"), _ip("b"), _ip("c")])
        plan = Planner(registry).plan(snapshot, state_store.records())
        executor: PlanExecutor

        def cancel_after_first(outcome: ActionOutcome) -> None:
            if outcome.status == ActionStatus.SUCCEEDED:
                executor.cancel()

        executor = PlanExecutor(
            registry, state_store, policy=FAST_RETRY, parallelism=1, progress=cancel_after_first
        )
        result = await executor.execute(plan)

        assert executor.canceled
        assert result.succeeded == ["static_ip.a"]
        assert result.canceled == ["static_ip.b", "static_ip.c"]
        assert len(cloud.calls_for("create")) == 1
        assert list(state_store.records()) == ["static_ip.a"]

    @pytest.mark.asyncio
    async def test_cancel_lets_in_flight_actions_finish_and_commit(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore, cloud: MockCloud
    ) -> None:
        cloud.delay("create", "static_ip", 0.05)
        snapshot = make_snapshot([_ip("a"), _ip("b"), _ip("c"), _ip("d")])
        plan = Planner(registry).plan(snapshot, state_store.records())
        running: list[str] = []
        finished_at_cancel: list[tuple[str, str, str]] = []
        executor: PlanExecutor

        def cancel_when_both_running(outcome: ActionOutcome) -> None:
            if outcome.status != ActionStatus.RUNNING:
                return
            running.append(outcome.address)
            if len(running) == 2:
                finished_at_cancel.extend(e for e in cloud.events if e[0] == "end")
                executor.cancel()

        executor = PlanExecutor(
            registry,
            state_store,
            policy=FAST_RETRY,
            parallelism=2,
            progress=cancel_when_both_running,
        )
        result = await executor.execute(plan)

        assert executor.canceled
        assert finished_at_cancel == []
        assert result.succeeded == ["static_ip.a", "static_ip.b"]
        assert result.canceled == ["static_ip.c", "static_ip.d"]
        assert sorted(state_store.records()) == ["static_ip.a", "static_ip.b"]
        assert len(cloud.of_kind("static_ip")) == 2
        assert len(cloud.calls_for("create")) == 2

    @pytest.mark.asyncio
    async def test_cancel_before_execute(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore, cloud: MockCloud
    ) -> None:
        plan = Planner(registry).plan(make_snapshot([ACCOUNT, BINDING]), {})
        executor = PlanExecutor(registry, state_store, policy=FAST_RETRY)
        executor.cancel()

        result = await executor.execute(plan)

        assert result.canceled == ["service_account.api", "iam_binding.api_logs"]
        assert cloud.calls == []


class TestUpdateReplaceDelete:
    """Tests for changing and removing existing resources."""

    @pytest.mark.asyncio
    async def test_update_sends_changed_attributes(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore, cloud: MockCloud
    ) -> None:
        route = {
            "kind": "http_route",
            "name": "web",
            "attributes": {"hostname": "example.com", "backend": "api"},
        }
        await _apply(registry, state_store, make_snapshot([route]))
        route["attributes"]["port"] = 8080

        result = await _apply(registry, state_store, make_snapshot([route]))

        assert result.outcomes["http_route.web"].action_type == ActionType.UPDATE
        assert result.success
        assert len(cloud.calls_for("update", "http_route")) == 1
        record = state_store.get("http_route.web")
        assert record is not None
        assert record.inputs["port"] == 8080
        assert record.outputs["url"] == "http://example.com:8080"

    @pytest.mark.asyncio
    async def test_replace_deletes_then_creates(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore, cloud: MockCloud
    ) -> None:
        await _apply(registry, state_store, make_snapshot([_ip("ingress")]))
        old = state_store.get("static_ip.ingress")
        assert old is not None

        result = await _apply(
            registry, state_store, make_snapshot([_ip("ingress", region="europe-west1")])
        )

        assert result.outcomes["static_ip.ingress"].action_type == ActionType.REPLACE
        assert result.success
        delete_end = cloud.index_of("end", "delete", "static_ip:ingress")
        creates = [
            i for i, event in enumerate(cloud.events) if event == ("start", "create", "static_ip:ingress")
        ]
        assert len(creates) == 2
        assert delete_end < creates[1]

        new = state_store.get("static_ip.ingress")
        assert new is not None
        assert new.external_id != old.external_id
        assert new.inputs["region"] == "europe-west1"
        assert old.external_id not in cloud.resources

    @pytest.mark.asyncio
    async def test_removed_resource_deleted(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore, cloud: MockCloud
    ) -> None:
        await _apply(registry, state_store, make_snapshot([_ip("ingress")]))

        result = await _apply(registry, state_store, make_snapshot([]))

        assert result.outcomes["static_ip.ingress"].action_type == ActionType.DELETE
        assert result.success
        assert state_store.records() == {}
        assert cloud.of_kind("static_ip") == []
        assert "static_ip.ingress" not in result.outputs

    @pytest.mark.asyncio
    async def test_delete_of_already_gone_resource_succeeds(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore, cloud: MockCloud
    ) -> None:
        await _apply(registry, state_store, make_snapshot([_ip("ingress")]))
        record = state_store.get("static_ip.ingress")
        assert record is not None
        cloud.remove(record.external_id)

        result = await _apply(registry, state_store, make_snapshot([]))

        assert result.outcomes["static_ip.ingress"].status == ActionStatus.SUCCEEDED
        assert state_store.records() == {}

    @pytest.mark.asyncio
    async def test_dependents_deleted_first(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore, cloud: MockCloud
    ) -> None:
        await _apply(registry, state_store, make_snapshot([ACCOUNT, BINDING]))

        result = await _apply(registry, state_store, make_snapshot([]))

        assert result.success
        assert cloud.index_of("end", "delete", "iam_binding:roles/logging.logWriter") < (
            cloud.index_of("start", "delete", "service_account:api")
        )

    @pytest.mark.asyncio
    async def test_failed_delete_keeps_state(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore, cloud: MockCloud
    ) -> None:
        await _apply(registry, state_store, make_snapshot([_ip("ingress")]))
        cloud.fail("delete", "static_ip")

        result = await _apply(registry, state_store, make_snapshot([]))

        assert result.failed == ["static_ip.ingress"]
        assert state_store.get("static_ip.ingress") is not None


class TestProgress:
    """Tests for progress reporting."""

    @pytest.mark.asyncio
    async def test_every_transition_reported(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore
    ) -> None:
        seen: list[tuple[str, ActionStatus]] = []
        await _apply(
            registry,
            state_store,
            make_snapshot([_ip("ingress")]),
            progress=lambda o: seen.append((o.address, o.status)),
        )

        assert seen == [
            ("static_ip.ingress", ActionStatus.RUNNING),
            ("static_ip.ingress", ActionStatus.SUCCEEDED),
        ]

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_abort_apply(
        self,
        registry: ResourceDescriptorRegistry,
        state_store: StateStore,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        def broken(outcome: ActionOutcome) -> None:
            raise RuntimeError("display went away")

        with caplog.at_level(logging.ERROR, logger="engine.executor"):
            result = await _apply(
                registry, state_store, make_snapshot([_ip("ingress")]), progress=broken
            )

        assert result.success
        assert "Progress callback failed" in caplog.text

    @pytest.mark.asyncio
    async def test_outcome_timing(
        self, registry: ResourceDescriptorRegistry, state_store: StateStore
    ) -> None:
        result = await _apply(registry, state_store, make_snapshot([_ip("ingress")]))

        outcome = result.outcomes["static_ip.ingress"]
        assert outcome.started_at is not None
        assert outcome.finished_at is not None
        assert outcome.duration_seconds >= 0.0
        assert result.duration_seconds >= outcome.duration_seconds
