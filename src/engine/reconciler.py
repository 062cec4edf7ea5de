"""Invocation surface: plan, apply and reconcile.

A reconcile run:
1. Refresh: read every stored resource from its provider so that drift made
   outside the engine shows up in the diff (optional)
2. Plan: diff the configuration snapshot against state
3. Apply: execute the plan (skipped on dry run)

Every run emits one structured summary record.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .config import EngineConfig
from .diff import DiffEngine
from .executor import ApplyResult, PlanExecutor, ProgressCallback
from .models import ConfigurationSnapshot
from .plan import ChangePlan, Planner
from .provider import ProviderError, ResourceNotFoundError, RetryPolicy, call_with_retry
from .registry import ResourceDescriptorRegistry, UnknownResourceKindError
from .state import StateRecord, StateStore

logger = logging.getLogger(__name__)


@dataclass
class RefreshResult:
    """What a refresh found out about stored resources."""

    checked: int = 0
    drifted: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)


@dataclass
class ReconcileResult:
    """Result of a single reconcile run."""

    source: str = ""
    dry_run: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    plan: ChangePlan | None = None
    apply: ApplyResult | None = None
    refresh: RefreshResult | None = None
    approved: bool = True
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the run succeeded (every action applied, or a clean dry run)."""
        if self.error is not None:
            return False
        if self.apply is None:
            return True
        return self.apply.success


class Reconciler:
    """Drives plan and apply for one state store.

    The reconciler owns no long-lived provider connections; it can be reused
    for several runs but runs must not overlap.
    """

    def __init__(
        self,
        registry: ResourceDescriptorRegistry,
        state: StateStore,
        config: EngineConfig | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        self._registry = registry
        self._state = state
        self._config = config or EngineConfig(config_dir=Path("."))
        self._progress = progress
        self._planner = Planner(registry, DiffEngine(registry))
        self._executor: PlanExecutor | None = None
        self._canceled = False

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def state(self) -> StateStore:
        return self._state

    def _retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self._config.max_attempts,
            backoff_base_seconds=self._config.retry_backoff_base_seconds,
            backoff_max_seconds=self._config.retry_backoff_max_seconds,
            timeout_seconds=self._config.operation_timeout_seconds,
        )

    def cancel(self) -> None:
        """Stop dispatching new actions of the current (or next) run.

        The request is consumed when that run ends; later runs apply normally.
        """
        self._canceled = True
        if self._executor is not None:
            self._executor.cancel()

    def plan(
        self,
        snapshot: ConfigurationSnapshot,
        state: Mapping[str, StateRecord] | None = None,
    ) -> ChangePlan:
        """Compute the change plan for a snapshot against current state."""
        records = state if state is not None else self._state.records()
        return self._planner.plan(snapshot, records)

    async def refresh(self) -> RefreshResult:
        """Read every stored resource back from its provider.

        Resources that no longer exist are dropped from state (the next plan
        recreates them). Returned values overwrite stored outputs, and stored
        inputs for attributes the provider reports, so that drift shows up as
        a diff.
        """
        result = RefreshResult()
        policy = self._retry_policy()

        for address, record in self._state.records().items():
            result.checked += 1
            try:
                provider = self._registry.provider_for(record.kind)
                current = await call_with_retry(
                    lambda p=provider, r=record: p.read(r.external_id),
                    policy,
                    operation_name="read",
                    address=address,
                    idempotent=True,
                )
            except ResourceNotFoundError:
                logger.warning(
                    "Resource no longer exists, dropping from state",
                    extra={"address": address, "external_id": record.external_id},
                )
                await self._state.delete(address)
                result.missing.append(address)
                continue
            except (ProviderError, UnknownResourceKindError) as e:
                logger.error("Refresh failed", extra={"address": address, "error": str(e)})
                result.errors[address] = str(e)
                continue

            refreshed = self._merge_read(record, current or {})
            if refreshed != record:
                if refreshed.inputs != record.inputs:
                    result.drifted.append(address)
                await self._state.put(refreshed)

        logger.info(
            "Refresh completed",
            extra={
                "checked": result.checked,
                "drifted": result.drifted,
                "missing": result.missing,
                "errors": len(result.errors),
            },
        )
        return result

    def _merge_read(self, record: StateRecord, current: dict[str, Any]) -> StateRecord:
        descriptor = self._registry.get(record.kind)
        inputs = dict(record.inputs)
        outputs = dict(record.outputs)
        for name, value in current.items():
            schema = descriptor.schema_for(name)
            if name in inputs:
                inputs[name] = value
            if schema is None or schema.is_computed or name in outputs:
                outputs[name] = value
        if inputs == record.inputs and outputs == record.outputs:
            return record
        return record.model_copy(update={"inputs": inputs, "outputs": outputs})

    async def apply(self, plan: ChangePlan) -> ApplyResult:
        """Execute a change plan."""
        executor = PlanExecutor(
            self._registry,
            self._state,
            policy=self._retry_policy(),
            parallelism=self._config.parallelism,
            progress=self._progress,
        )
        self._executor = executor
        if self._canceled:
            executor.cancel()
        try:
            return await executor.execute(plan)
        finally:
            self._executor = None
            self._canceled = False

    async def reconcile(
        self,
        snapshot: ConfigurationSnapshot,
        dry_run: bool | None = None,
        approve: Callable[[ChangePlan], bool] | None = None,
    ) -> ReconcileResult:
        """Refresh, plan and (unless dry run) apply.

        Args:
            snapshot: Declared configuration.
            dry_run: Override for the configured dry-run flag.
            approve: Called with a plan that has changes; returning False
                stops before apply.

        Returns:
            ReconcileResult. Planning errors are recorded in ``error`` rather
            than raised so that the summary is always logged.
        """
        dry_run = self._config.dry_run if dry_run is None else dry_run
        result = ReconcileResult(source=snapshot.source, dry_run=dry_run)

        try:
            if self._config.refresh:
                result.refresh = await self.refresh()

            result.plan = self.plan(snapshot)

            if dry_run:
                logger.info("Dry run, not applying", extra={"summary": result.plan.summary()})
            elif result.plan.has_changes and approve is not None and not approve(result.plan):
                result.approved = False
                logger.warning("Plan was not approved, not applying")
            else:
                if not result.plan.has_changes:
                    logger.info("No changes, infrastructure is up to date")
                result.apply = await self.apply(result.plan)
        except Exception as e:
            result.error = e
        finally:
            self._canceled = False
            result.end_time = datetime.now(UTC)
            self._log_result(result)

        return result

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconcile result with structured data."""
        extra: dict[str, Any] = {
            "source": result.source,
            "dry_run": result.dry_run,
            "duration_seconds": result.duration_seconds,
        }

        if result.plan is not None:
            extra["plan"] = result.plan.summary()

        if result.refresh is not None:
            extra["drifted"] = result.refresh.drifted
            extra["missing"] = result.refresh.missing

        if result.apply is not None:
            extra["succeeded"] = len(result.apply.succeeded)
            extra["failed"] = result.apply.failed
            extra["skipped"] = result.apply.skipped
            extra["canceled"] = len(result.apply.canceled)
            extra["retries"] = sum(o.retries for o in result.apply.outcomes.values())

        if result.error is not None:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            logger.error("Reconcile failed", extra=extra)
        elif result.apply is not None and result.apply.canceled:
            logger.warning("Reconcile canceled", extra=extra)
        elif result.apply is not None and not result.apply.success:
            logger.warning("Reconcile completed with failures", extra=extra)
        else:
            logger.info("Reconcile result", extra=extra)

