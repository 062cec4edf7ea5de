"""Plan executor: applies a ChangePlan with bounded concurrency.

EXECUTION MODEL:
- One asyncio task per action; a semaphore bounds how many provider
  operations run at once (parallelism).
- An action starts only after every address it waits for has finished.
  If any of those did not succeed, the action is skipped with
  BlockedByDependencyFailure and never reaches the provider.
- Independent branches keep going when one branch fails.
- The state store is written right after each confirmed provider operation,
  so a failed or canceled apply never loses track of completed resources.

CANCELLATION:
cancel() stops dispatching immediately. Provider calls already in flight are
allowed to finish and commit their state; everything not yet dispatched ends
CANCELED.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .diff import Action, ActionType, DiffEngine
from .outputs import OutputResolver, UnresolvedOutputError
from .plan import ChangePlan
from .provider import (
    ProviderError,
    ResourceNotFoundError,
    ResourceProvider,
    RetryOutcome,
    RetryPolicy,
    call_with_retry,
)
from .registry import ResourceDescriptorRegistry
from .state import StateError, StateRecord, StateStore

logger = logging.getLogger(__name__)


class ActionStatus(str, Enum):
    """Lifecycle of one action during apply."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self not in (ActionStatus.PENDING, ActionStatus.RUNNING)


class BlockedByDependencyFailure(Exception):
    """An action was not attempted because something it waits for failed."""

    def __init__(self, address: str, blocked_by: list[str]) -> None:
        self.address = address
        self.blocked_by = blocked_by
        super().__init__(f"{address}: blocked by failed dependency {', '.join(blocked_by)}")


@dataclass
class ActionOutcome:
    """Status and bookkeeping for one action."""

    address: str
    action_type: ActionType
    status: ActionStatus = ActionStatus.PENDING
    # Provider calls made, including retries
    attempts: int = 0
    retries: int = 0
    error: str | None = None
    blocked_by: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()


ProgressCallback = Callable[[ActionOutcome], None]


@dataclass
class ApplyResult:
    """Result of applying one change plan."""

    outcomes: dict[str, ActionOutcome] = field(default_factory=dict)
    # Attribute values of every node that ended up known, by address
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    named_outputs: dict[str, Any] = field(default_factory=dict)
    unresolved_outputs: dict[str, str] = field(default_factory=dict)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    def _with_status(self, status: ActionStatus) -> list[str]:
        return [a for a, o in self.outcomes.items() if o.status == status]

    @property
    def succeeded(self) -> list[str]:
        return self._with_status(ActionStatus.SUCCEEDED)

    @property
    def failed(self) -> list[str]:
        return self._with_status(ActionStatus.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self._with_status(ActionStatus.SKIPPED)

    @property
    def canceled(self) -> list[str]:
        return self._with_status(ActionStatus.CANCELED)

    @property
    def success(self) -> bool:
        """True only if every action succeeded."""
        return all(o.status == ActionStatus.SUCCEEDED for o in self.outcomes.values())

    @property
    def changed(self) -> list[str]:
        """Addresses whose action changed something and succeeded."""
        return [
            a
            for a, o in self.outcomes.items()
            if o.status == ActionStatus.SUCCEEDED and o.action_type != ActionType.NOOP
        ]

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()


class PlanExecutor:
    """Executes change plans against providers and the state store."""

    def __init__(
        self,
        registry: ResourceDescriptorRegistry,
        state: StateStore,
        policy: RetryPolicy | None = None,
        parallelism: int = 4,
        progress: ProgressCallback | None = None,
    ) -> None:
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        self._registry = registry
        self._state = state
        self._policy = policy or RetryPolicy()
        self._parallelism = parallelism
        self._progress = progress
        self._diff = DiffEngine(registry)
        self._canceled = False

    @property
    def canceled(self) -> bool:
        return self._canceled

    def cancel(self) -> None:
        """Stop dispatching new actions; in-flight operations finish."""
        if not self._canceled:
            logger.warning("Cancellation requested, no further actions will be dispatched")
        self._canceled = True

    async def execute(self, plan: ChangePlan) -> ApplyResult:
        """Apply every action of the plan.

        Args:
            plan: Change plan produced by the planner.

        Returns:
            ApplyResult with one outcome per action.
        """
        result = ApplyResult(
            outcomes={a.address: ActionOutcome(a.address, a.action_type) for a in plan.actions}
        )
        resolver = OutputResolver()
        done = {a.address: asyncio.Event() for a in plan.actions}
        semaphore = asyncio.Semaphore(self._parallelism)

        logger.info(
            "Applying plan",
            extra={"summary": plan.summary(), "parallelism": self._parallelism},
        )

        async def run(action: Action) -> None:
            try:
                await self._run_action(action, plan, result, done, semaphore, resolver)
            finally:
                done[action.address].set()

        await asyncio.gather(*(run(action) for action in plan.actions))

        result.outputs = resolver.snapshot()
        result.named_outputs, result.unresolved_outputs = resolver.resolve_named(
            plan.named_outputs
        )
        result.end_time = datetime.now(UTC)
        return result

    def _transition(
        self, outcome: ActionOutcome, status: ActionStatus, error: str | None = None
    ) -> None:
        outcome.status = status
        if error is not None:
            outcome.error = error
        if status == ActionStatus.RUNNING:
            outcome.started_at = datetime.now(UTC)
        elif status.is_terminal:
            outcome.finished_at = datetime.now(UTC)

        if self._progress is not None:
            try:
                self._progress(outcome)
            except Exception:
                logger.exception(
                    "Progress callback failed", extra={"address": outcome.address}
                )

    async def _run_action(
        self,
        action: Action,
        plan: ChangePlan,
        result: ApplyResult,
        done: dict[str, asyncio.Event],
        semaphore: asyncio.Semaphore,
        resolver: OutputResolver,
    ) -> None:
        address = action.address
        outcome = result.outcomes[address]
        waits_for = [dep for dep in plan.waits_for.get(address, frozenset()) if dep in done]

        for dep in waits_for:
            await done[dep].wait()

        if self._canceled:
            resolver.mark_unavailable(address, "apply was canceled")
            self._transition(outcome, ActionStatus.CANCELED)
            return

        blocked = sorted(
            dep for dep in waits_for if result.outcomes[dep].status != ActionStatus.SUCCEEDED
        )
        if blocked:
            error = BlockedByDependencyFailure(address, blocked)
            outcome.blocked_by = blocked
            resolver.mark_unavailable(address, "resource was skipped")
            self._transition(outcome, ActionStatus.SKIPPED, str(error))
            logger.warning(
                "Action skipped", extra={"address": address, "blocked_by": blocked}
            )
            return

        if action.action_type == ActionType.NOOP:
            # SAFETY: NOOP actions always carry the stored record
            assert action.prior is not None
            resolver.record(address, action.prior.attributes())
            self._transition(outcome, ActionStatus.SUCCEEDED)
            return

        async with semaphore:
            if self._canceled:
                resolver.mark_unavailable(address, "apply was canceled")
                self._transition(outcome, ActionStatus.CANCELED)
                return

            self._transition(outcome, ActionStatus.RUNNING)
            try:
                attributes = await self._perform(action, resolver, outcome)
            except (ProviderError, UnresolvedOutputError, StateError) as e:
                resolver.mark_unavailable(address, "resource failed to apply")
                self._transition(outcome, ActionStatus.FAILED, str(e))
                logger.error(
                    "Action failed",
                    extra={
                        "address": address,
                        "action": action.action_type.value,
                        "attempts": outcome.attempts,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                return
            except Exception as e:
                resolver.mark_unavailable(address, "resource failed to apply")
                self._transition(outcome, ActionStatus.FAILED, f"{type(e).__name__}: {e}")
                logger.exception(
                    "Action failed unexpectedly",
                    extra={"address": address, "action": action.action_type.value},
                )
                return

        if attributes is not None:
            resolver.record(address, attributes)
        self._transition(outcome, ActionStatus.SUCCEEDED)
        logger.info(
            "Action succeeded",
            extra={
                "address": address,
                "action": action.action_type.value,
                "attempts": outcome.attempts,
                "duration_seconds": outcome.duration_seconds,
            },
        )

    async def _call(
        self, action: Action, outcome: ActionOutcome, operation_name: str, operation: Any
    ) -> Any:
        """Run one provider operation under the retry policy."""
        tracker = RetryOutcome()
        try:
            return await call_with_retry(
                operation,
                self._policy,
                operation_name=operation_name,
                address=action.address,
                outcome=tracker,
            )
        finally:
            outcome.attempts += tracker.attempts
            outcome.retries += max(0, tracker.attempts - 1)

    async def _perform(
        self, action: Action, resolver: OutputResolver, outcome: ActionOutcome
    ) -> dict[str, Any] | None:
        """Carry out one action; returns the node's attributes (None for deletes)."""
        provider = self._registry.provider_for(action.kind)

        if action.action_type == ActionType.DELETE:
            # SAFETY: DELETE actions are only planned for stored records
            assert action.prior is not None
            await self._delete(action, outcome, provider, action.prior)
            await self._state.delete(action.address)
            return None

        resolved = resolver.resolve_attributes(action.address, action.declared)
        inputs = {name: value for name, value in resolved.items() if value is not None}

        match action.action_type:
            case ActionType.CREATE:
                return await self._create(action, outcome, provider, inputs)
            case ActionType.REPLACE:
                assert action.prior is not None
                return await self._replace(action, outcome, provider, inputs, action.prior)
            case ActionType.UPDATE:
                assert action.prior is not None
                return await self._update(action, outcome, provider, resolved, action.prior)
            case _:
                raise ValueError(f"Unsupported action type: {action.action_type}")

    async def _create(
        self,
        action: Action,
        outcome: ActionOutcome,
        provider: ResourceProvider,
        inputs: dict[str, Any],
    ) -> dict[str, Any]:
        external_id, outputs = await self._call(
            action, outcome, "create", lambda: provider.create(dict(inputs))
        )
        record = StateRecord(
            address=action.address,
            kind=action.kind,
            external_id=external_id,
            inputs=inputs,
            outputs=dict(outputs or {}),
            dependencies=list(action.depends_on),
        )
        await self._state.put(record)
        return record.attributes()

    async def _delete(
        self,
        action: Action,
        outcome: ActionOutcome,
        provider: ResourceProvider,
        prior: StateRecord,
    ) -> None:
        try:
            await self._call(
                action, outcome, "delete", lambda: provider.delete(prior.external_id)
            )
        except ResourceNotFoundError:
            logger.info(
                "Resource already deleted",
                extra={"address": action.address, "external_id": prior.external_id},
            )

    async def _replace(
        self,
        action: Action,
        outcome: ActionOutcome,
        provider: ResourceProvider,
        inputs: dict[str, Any],
        prior: StateRecord,
    ) -> dict[str, Any]:
        await self._delete(action, outcome, provider, prior)
        await self._state.delete(action.address)
        return await self._create(action, outcome, provider, inputs)

    async def _update(
        self,
        action: Action,
        outcome: ActionOutcome,
        provider: ResourceProvider,
        resolved: dict[str, Any],
        prior: StateRecord,
    ) -> dict[str, Any]:
        ignore = action.node.ignore_changes if action.node else frozenset()
        changes = self._diff.changed_attributes(action.kind, resolved, prior.inputs, ignore)

        # Resolved references may turn a planned update into a replace or a no-op
        if any(change.forces_replacement for change in changes.values()):
            logger.info(
                "Immutable attribute changed after resolution, replacing",
                extra={"address": action.address, "attributes": sorted(changes)},
            )
            inputs = {name: value for name, value in resolved.items() if value is not None}
            return await self._replace(action, outcome, provider, inputs, prior)

        dependencies = list(action.depends_on)
        if not changes:
            if dependencies != prior.dependencies:
                await self._state.put(prior.model_copy(update={"dependencies": dependencies}))
            return prior.attributes()

        changed = {name: change.after for name, change in changes.items()}
        outputs = await self._call(
            action,
            outcome,
            "update",
            lambda: provider.update(prior.external_id, dict(changed)),
        )

        new_inputs = {**prior.inputs, **changed}
        record = prior.model_copy(
            update={
                "inputs": {k: v for k, v in new_inputs.items() if v is not None},
                "outputs": {**prior.outputs, **(outputs or {})},
                "dependencies": dependencies,
            }
        )
        await self._state.put(record)
        return record.attributes()
