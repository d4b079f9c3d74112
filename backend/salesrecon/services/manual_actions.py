"""Operator-initiated reconciliation actions."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from sqlalchemy.orm import Session

from salesrecon.errors import ValidationError
from salesrecon.schemas.execution import ManualActionRequest, ManualActionResult
from salesrecon.services.actions import MANUAL_SOURCE, ActionContext, ReconciliationAction
from salesrecon.services.audit_log import AuditLog
from salesrecon.services.locks import LockCoordinator
from salesrecon.services.rate_limiter import RateLimiter
from salesrecon.services.rollback import RollbackManager
from salesrecon.services.transactions import TransactionCoordinator

logger = logging.getLogger(__name__)

# Request action name -> audit action type.
MANUAL_ACTIONS = {
    "link_manual": "manual_link",
    "create_deal_from_activity": "create_deal_from_activity",
    "create_activity_from_deal": "create_activity_from_deal",
    "merge_records": "merge_duplicate",
}


class ManualActionService:
    def __init__(
        self,
        *,
        actions: Mapping[str, ReconciliationAction],
        locks: LockCoordinator,
        rate_limiter: RateLimiter,
        transactions: TransactionCoordinator,
        audit_log: AuditLog,
        rollback: RollbackManager,
    ) -> None:
        self._actions = actions
        self._locks = locks
        self._rate_limiter = rate_limiter
        self._transactions = transactions
        self._audit_log = audit_log
        self._rollback = rollback

    def perform(
        self,
        db: Session,
        owner_id: str,
        request: ManualActionRequest,
        *,
        origin: str | None = None,
        is_admin: bool = False,
    ) -> ManualActionResult:
        if request.action == "undo_action":
            if request.audit_log_id is None:
                raise ValidationError("auditLogId is required for undo_action")
            summary = self._rollback.rollback(
                db,
                owner_id,
                audit_log_ids=[request.audit_log_id],
                confirm=request.confirm,
                is_admin=is_admin,
                origin=origin,
            )
            return ManualActionResult(
                success=summary.entries_reverted > 0,
                action=request.action,
                audit_log_id=summary.rollback_audit_log_id,
                rollback=summary,
            )

        action = self._actions[MANUAL_ACTIONS[request.action]]
        params = action.validate(self._params_for(request))
        context = ActionContext(owner_id=owner_id, audit_log=self._audit_log, source=MANUAL_SOURCE)
        with self._locks.hold(owner_id):
            if origin:
                self._rate_limiter.check_origin(origin)
            self._rate_limiter.check(owner_id, action.rate_limit_class)
            with self._transactions.unit_of_work(db):
                outcome = action.execute(db, params, context)
        logger.info(
            "reconcile.manual_action owner_id=%s action=%s audit_log_id=%s",
            owner_id,
            request.action,
            outcome.audit_log_id,
        )
        return ManualActionResult(
            success=True,
            action=request.action,
            audit_log_id=outcome.audit_log_id,
            record_ids=outcome.record_ids,
        )

    @staticmethod
    def _params_for(request: ManualActionRequest) -> dict[str, Any]:
        if request.action == "link_manual":
            return {
                "activity_id": request.activity_id,
                "deal_id": request.deal_id,
                "confidence_score": 100 if request.confidence is None else request.confidence,
                "match_details": {"manual": True},
            }
        if request.action == "create_deal_from_activity":
            return {"activity_id": request.activity_id, "overrides": request.overrides or {}}
        if request.action == "create_activity_from_deal":
            return {"deal_id": request.deal_id, "overrides": request.overrides or {}}
        if request.action == "merge_records":
            return {
                "record_type": request.record_type,
                "record_ids": request.record_ids or [],
                "survivor_id": request.survivor_id,
            }
        raise ValidationError(f"Unsupported manual action '{request.action}'")
