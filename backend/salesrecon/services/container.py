"""Explicit wiring of reconciliation collaborators."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass

from sqlalchemy.orm import Session

from salesrecon.config import Settings
from salesrecon.services.actions import ReconciliationAction, build_action_registry
from salesrecon.services.analysis import AnalysisService
from salesrecon.services.audit_log import AuditLog
from salesrecon.services.batch_runner import BatchRunner
from salesrecon.services.execution import ExecutionEngine
from salesrecon.services.locks import LockCoordinator, build_lock_coordinator
from salesrecon.services.manual_actions import ManualActionService
from salesrecon.services.rate_limiter import RateLimiter
from salesrecon.services.rollback import RollbackManager
from salesrecon.services.transactions import TransactionCoordinator


@dataclass(frozen=True)
class ReconciliationServices:
    settings: Settings
    analysis: AnalysisService
    audit_log: AuditLog
    locks: LockCoordinator
    rate_limiter: RateLimiter
    transactions: TransactionCoordinator
    actions: Mapping[str, ReconciliationAction]
    engine: ExecutionEngine
    batch_runner: BatchRunner
    rollback: RollbackManager
    manual_actions: ManualActionService


def build_services(
    settings: Settings,
    *,
    session_factory: Callable[[], Session] | None = None,
    locks: LockCoordinator | None = None,
    rate_limiter: RateLimiter | None = None,
    sleep: Callable[[float], None] | None = None,
) -> ReconciliationServices:
    """Build one process-wide set of services; tests pass fakes for any collaborator."""

    locks = locks or build_lock_coordinator(settings, session_factory)
    rate_limiter = rate_limiter or RateLimiter.from_settings(settings)
    analysis = AnalysisService(settings)
    audit_log = AuditLog()
    transactions = TransactionCoordinator()
    actions = build_action_registry()
    engine = ExecutionEngine(
        analysis=analysis,
        locks=locks,
        rate_limiter=rate_limiter,
        transactions=transactions,
        audit_log=audit_log,
        actions=actions,
    )
    runner_kwargs = {"sleep": sleep} if sleep is not None else {}
    batch_runner = BatchRunner(engine, settings=settings, **runner_kwargs)
    rollback = RollbackManager(
        locks=locks,
        rate_limiter=rate_limiter,
        transactions=transactions,
        audit_log=audit_log,
    )
    manual_actions = ManualActionService(
        actions=actions,
        locks=locks,
        rate_limiter=rate_limiter,
        transactions=transactions,
        audit_log=audit_log,
        rollback=rollback,
    )
    return ReconciliationServices(
        settings=settings,
        analysis=analysis,
        audit_log=audit_log,
        locks=locks,
        rate_limiter=rate_limiter,
        transactions=transactions,
        actions=actions,
        engine=engine,
        batch_runner=batch_runner,
        rollback=rollback,
        manual_actions=manual_actions,
    )
