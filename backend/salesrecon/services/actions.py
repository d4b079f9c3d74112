"""Reconciliation actions: one class per audited state change."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timezone
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from salesrecon.errors import PartialRecordError, ValidationError
from salesrecon.models.deal import Deal
from salesrecon.models.sales_activity import SalesActivity
from salesrecon.schemas.execution import ActivityOverrides, DealOverrides
from salesrecon.services.audit_log import AuditLog
from salesrecon.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

ENGINE_SOURCE = "reconciliation_engine"
MANUAL_SOURCE = "manual_reconciliation"
ACTIVITIES_TABLE = SalesActivity.__tablename__
DEALS_TABLE = Deal.__tablename__
MERGE_MIN_RECORDS = 2
MERGE_MAX_RECORDS = 50


@dataclass(slots=True)
class ActionContext:
    """Who is acting and where created records and audit entries come from."""

    owner_id: str
    audit_log: AuditLog
    source: str = ENGINE_SOURCE
    run_id: int | None = None
    now: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class ActionOutcome:
    action_type: str
    audit_log_id: int | None
    linked: int = 0
    deals_created: int = 0
    activities_created: int = 0
    merged: int = 0
    record_ids: dict[str, Any] = field(default_factory=dict)


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def snapshot_activity(activity: SalesActivity) -> dict[str, Any]:
    return {
        "id": activity.id,
        "owner_id": activity.owner_id,
        "client_name": activity.client_name,
        "amount": activity.amount,
        "activity_date": _iso(activity.activity_date),
        "activity_type": activity.activity_type,
        "deal_id": activity.deal_id,
        "record_status": activity.record_status,
        "merged_into_id": activity.merged_into_id,
        "merged_at": _iso(activity.merged_at),
        "source": activity.source,
        "created_at": _iso(activity.created_at),
        "updated_at": _iso(activity.updated_at),
    }


def snapshot_deal(deal: Deal) -> dict[str, Any]:
    return {
        "id": deal.id,
        "owner_id": deal.owner_id,
        "company": deal.company,
        "value": deal.value,
        "status": deal.status,
        "stage_changed_at": _iso(deal.stage_changed_at),
        "activity_id": deal.activity_id,
        "record_status": deal.record_status,
        "merged_into_id": deal.merged_into_id,
        "merged_at": _iso(deal.merged_at),
        "source": deal.source,
        "created_at": _iso(deal.created_at),
        "updated_at": _iso(deal.updated_at),
    }


def _require_int(params: Mapping[str, Any], key: str) -> int:
    value = params.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"{key} must be a positive integer")
    return value


def _parse_overrides(model: type[BaseModel], raw: Any, label: str) -> Any:
    if isinstance(raw, model):
        return raw
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise ValidationError(f"{label.capitalize()} overrides must be an object")
    unknown = set(raw) - set(model.model_fields)
    if unknown:
        raise ValidationError(f"Unsupported {label} overrides", details={"fields": sorted(unknown)})
    try:
        return model.model_validate(dict(raw))
    except PydanticValidationError as exc:
        fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
        raise ValidationError(f"Invalid {label} overrides", details={"fields": fields}) from exc


def load_activity(db: Session, activity_id: int, owner_id: str) -> SalesActivity:
    activity = db.scalar(select(SalesActivity).where(SalesActivity.id == activity_id))
    if activity is None:
        raise PartialRecordError(f"Sales activity {activity_id} not found")
    if activity.owner_id != owner_id:
        raise PartialRecordError(f"Sales activity {activity_id} belongs to another owner")
    if activity.record_status != "active":
        raise PartialRecordError(f"Sales activity {activity_id} is not active")
    return activity


def load_deal(db: Session, deal_id: int, owner_id: str) -> Deal:
    deal = db.scalar(select(Deal).where(Deal.id == deal_id))
    if deal is None:
        raise PartialRecordError(f"Deal {deal_id} not found")
    if deal.owner_id != owner_id:
        raise PartialRecordError(f"Deal {deal_id} belongs to another owner")
    if deal.record_status != "active":
        raise PartialRecordError(f"Deal {deal_id} is not active")
    return deal


class ReconciliationAction(ABC):
    """Common interface for link, create and merge actions."""

    action_type: str
    rate_limit_class: str = "standard"

    @abstractmethod
    def validate(self, params: Mapping[str, Any]) -> dict[str, Any]:
        """Return normalised parameters or raise ``ValidationError``."""

    @abstractmethod
    def execute(self, db: Session, params: Mapping[str, Any], context: ActionContext) -> ActionOutcome:
        """Apply the change and its audit entry inside the caller's transaction."""


class LinkRecordsAction(ReconciliationAction):
    """Link an orphan activity and an orphan deal in both directions."""

    def __init__(self, action_type: str = "auto_link") -> None:
        self.action_type = action_type

    def validate(self, params: Mapping[str, Any]) -> dict[str, Any]:
        confidence = params.get("confidence_score", 100)
        if not isinstance(confidence, (int, float)) or isinstance(confidence, bool) or not 0 <= confidence <= 100:
            raise ValidationError("confidence_score must be between 0 and 100")
        return {
            "activity_id": _require_int(params, "activity_id"),
            "deal_id": _require_int(params, "deal_id"),
            "confidence_score": float(confidence),
            "match_details": dict(params.get("match_details") or {}),
        }

    def execute(self, db: Session, params: Mapping[str, Any], context: ActionContext) -> ActionOutcome:
        activity = load_activity(db, params["activity_id"], context.owner_id)
        deal = load_deal(db, params["deal_id"], context.owner_id)
        if activity.deal_id is not None:
            raise PartialRecordError(f"Sales activity {activity.id} is already linked to deal {activity.deal_id}")
        if deal.activity_id is not None:
            raise PartialRecordError(f"Deal {deal.id} is already linked to activity {deal.activity_id}")

        entry = context.audit_log.append(
            db,
            owner_id=context.owner_id,
            action_type=self.action_type,
            source_table=ACTIVITIES_TABLE,
            source_id=activity.id,
            target_table=DEALS_TABLE,
            target_id=deal.id,
            confidence_score=params["confidence_score"],
            metadata={
                "before": {"activity": snapshot_activity(activity), "deal": snapshot_deal(deal)},
                "match_details": params.get("match_details") or {},
            },
            run_id=context.run_id,
        )
        activity.deal_id = deal.id
        deal.activity_id = activity.id
        return ActionOutcome(
            action_type=self.action_type,
            audit_log_id=entry.id,
            linked=1,
            record_ids={"activity_id": activity.id, "deal_id": deal.id},
        )


class CreateDealFromActivityAction(ReconciliationAction):
    """Materialise the missing won deal for an orphan activity."""

    action_type = "create_deal_from_activity"
    rate_limit_class = "bulk"

    def validate(self, params: Mapping[str, Any]) -> dict[str, Any]:
        overrides = _parse_overrides(DealOverrides, params.get("overrides"), "deal")
        return {"activity_id": _require_int(params, "activity_id"), "overrides": overrides}

    def execute(self, db: Session, params: Mapping[str, Any], context: ActionContext) -> ActionOutcome:
        activity = load_activity(db, params["activity_id"], context.owner_id)
        if activity.deal_id is not None:
            raise PartialRecordError(f"Sales activity {activity.id} is already linked to deal {activity.deal_id}")

        overrides: DealOverrides = _parse_overrides(DealOverrides, params.get("overrides"), "deal")
        if overrides.stage_changed_at is not None:
            stage_changed_at = as_utc(overrides.stage_changed_at)
        else:
            stage_changed_at = datetime.combine(activity.activity_date, dt_time.min, tzinfo=timezone.utc)
        deal = Deal(
            owner_id=activity.owner_id,
            company=overrides.company or activity.client_name,
            value=overrides.value if overrides.value is not None else activity.amount,
            status="won",
            stage_changed_at=stage_changed_at,
            activity_id=activity.id,
            source=context.source,
        )
        db.add(deal)
        db.flush()
        activity.deal_id = deal.id

        entry = context.audit_log.append(
            db,
            owner_id=context.owner_id,
            action_type=self.action_type,
            source_table=ACTIVITIES_TABLE,
            source_id=activity.id,
            target_table=DEALS_TABLE,
            target_id=deal.id,
            metadata={
                "before": {"activity": snapshot_activity(activity) | {"deal_id": None}},
                "created_record": {"table": DEALS_TABLE, "id": deal.id},
            },
            run_id=context.run_id,
        )
        return ActionOutcome(
            action_type=self.action_type,
            audit_log_id=entry.id,
            deals_created=1,
            record_ids={"activity_id": activity.id, "deal_id": deal.id},
        )


class CreateActivityFromDealAction(ReconciliationAction):
    """Materialise the missing sales activity for an orphan won deal."""

    action_type = "create_activity_from_deal"
    rate_limit_class = "bulk"

    def validate(self, params: Mapping[str, Any]) -> dict[str, Any]:
        overrides = _parse_overrides(ActivityOverrides, params.get("overrides"), "activity")
        return {"deal_id": _require_int(params, "deal_id"), "overrides": overrides}

    def execute(self, db: Session, params: Mapping[str, Any], context: ActionContext) -> ActionOutcome:
        deal = load_deal(db, params["deal_id"], context.owner_id)
        if deal.activity_id is not None:
            raise PartialRecordError(f"Deal {deal.id} is already linked to activity {deal.activity_id}")

        overrides: ActivityOverrides = _parse_overrides(ActivityOverrides, params.get("overrides"), "activity")
        activity = SalesActivity(
            owner_id=deal.owner_id,
            client_name=overrides.client_name or deal.company,
            amount=overrides.amount if overrides.amount is not None else deal.value,
            activity_date=overrides.activity_date or as_utc(deal.stage_changed_at).date(),
            activity_type="sale",
            deal_id=deal.id,
            source=context.source,
        )
        db.add(activity)
        db.flush()
        deal.activity_id = activity.id

        entry = context.audit_log.append(
            db,
            owner_id=context.owner_id,
            action_type=self.action_type,
            source_table=DEALS_TABLE,
            source_id=deal.id,
            target_table=ACTIVITIES_TABLE,
            target_id=activity.id,
            metadata={
                "before": {"deal": snapshot_deal(deal) | {"activity_id": None}},
                "created_record": {"table": ACTIVITIES_TABLE, "id": activity.id},
            },
            run_id=context.run_id,
        )
        return ActionOutcome(
            action_type=self.action_type,
            audit_log_id=entry.id,
            activities_created=1,
            record_ids={"activity_id": activity.id, "deal_id": deal.id},
        )


def pick_survivor(records: list[Any]) -> Any:
    """Most recently created record wins; ties go to the latest update, then the highest id."""

    return max(records, key=lambda record: (as_utc(record.created_at), as_utc(record.updated_at), record.id))


class MergeDuplicatesAction(ReconciliationAction):
    """Soft-merge duplicate activities or deals into one survivor."""

    action_type = "merge_duplicate"
    rate_limit_class = "heavy"

    def validate(self, params: Mapping[str, Any]) -> dict[str, Any]:
        record_type = params.get("record_type", ACTIVITIES_TABLE)
        if record_type not in (ACTIVITIES_TABLE, DEALS_TABLE):
            raise ValidationError(f"record_type must be '{ACTIVITIES_TABLE}' or '{DEALS_TABLE}'")
        raw_ids = params.get("record_ids") or []
        if not isinstance(raw_ids, (list, tuple)) or any(
            isinstance(value, bool) or not isinstance(value, int) for value in raw_ids
        ):
            raise ValidationError("record_ids must be a list of integers")
        record_ids = list(dict.fromkeys(raw_ids))
        if not MERGE_MIN_RECORDS <= len(record_ids) <= MERGE_MAX_RECORDS:
            raise ValidationError(
                f"Merging requires between {MERGE_MIN_RECORDS} and {MERGE_MAX_RECORDS} distinct records"
            )
        survivor_id = params.get("survivor_id")
        if survivor_id is not None and survivor_id not in record_ids:
            raise ValidationError("survivor_id must be one of record_ids")
        return {"record_type": record_type, "record_ids": record_ids, "survivor_id": survivor_id}

    def execute(self, db: Session, params: Mapping[str, Any], context: ActionContext) -> ActionOutcome:
        table = params["record_type"]
        if table == DEALS_TABLE:
            members: list[Any] = [load_deal(db, record_id, context.owner_id) for record_id in params["record_ids"]]
            snapshot = snapshot_deal
        else:
            members = [load_activity(db, record_id, context.owner_id) for record_id in params["record_ids"]]
            snapshot = snapshot_activity
        survivor = self._survivor(members, params.get("survivor_id"))
        losers = [member for member in members if member.id != survivor.id]
        loser_ids = [loser.id for loser in losers]

        entry = context.audit_log.append(
            db,
            owner_id=context.owner_id,
            action_type=self.action_type,
            source_table=table,
            source_id=survivor.id,
            target_table=table,
            target_id=None,
            metadata={
                "record_type": table,
                "survivor_id": survivor.id,
                "merged_ids": loser_ids,
                "merge_backup": {table: [snapshot(member) for member in members]},
            },
            run_id=context.run_id,
        )
        # Counterpart links stay on the merged rows.
        for loser in losers:
            loser.record_status = "merged"
            loser.merged_into_id = survivor.id
            loser.merged_at = context.now
        return ActionOutcome(
            action_type=self.action_type,
            audit_log_id=entry.id,
            merged=len(losers),
            record_ids={"survivor_id": survivor.id, "merged_ids": loser_ids},
        )

    @staticmethod
    def _survivor(members: list[Any], survivor_id: int | None) -> Any:
        if survivor_id is not None:
            for member in members:
                if member.id == survivor_id:
                    return member
        return pick_survivor(members)


def build_action_registry() -> Mapping[str, ReconciliationAction]:
    """Immutable action table keyed by audit action type."""

    actions: list[ReconciliationAction] = [
        LinkRecordsAction("auto_link"),
        LinkRecordsAction("manual_link"),
        CreateDealFromActivityAction(),
        CreateActivityFromDealAction(),
        MergeDuplicatesAction(),
    ]
    return MappingProxyType({action.action_type: action for action in actions})
