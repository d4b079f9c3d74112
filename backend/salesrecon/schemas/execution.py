"""Execution, batch, rollback and manual-action schemas (camelCase on the wire)."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from salesrecon.schemas.analysis import OverviewData
from salesrecon.schemas.audit_log import AuditLogEntryRead
from salesrecon.schemas.common import CamelModel


class ActionError(CamelModel):
    action_type: str
    message: str
    record_ids: dict[str, Any] = Field(default_factory=dict)


class ExecutionSummary(CamelModel):
    """Counters for one execution batch."""

    mode: str
    owner_id: str
    total_processed: int = 0
    linked: int = 0
    high_confidence_links: int = 0
    medium_confidence_links: int = 0
    deals_created: int = 0
    activities_created: int = 0
    merged: int = 0
    merge_groups: int = 0
    errors: int = 0
    success_rate: float = 100.0
    changes_simulated: bool = False
    actual_changes_made: int = 0
    orphan_activities_found: int = 0
    orphan_deals_found: int = 0
    audit_log_ids: list[int] = Field(default_factory=list)
    error_details: list[ActionError] = Field(default_factory=list)
    run_id: int | None = None
    started_at: datetime
    completed_at: datetime | None = None


class BatchRunResult(CamelModel):
    success: bool
    run_id: int
    batches_executed: int = 0
    total_processed: int = 0
    total_linked: int = 0
    total_deals_created: int = 0
    total_activities_created: int = 0
    total_merged: int = 0
    total_errors: int = 0
    stopped_reason: str
    results: list[ExecutionSummary] = Field(default_factory=list)


class RollbackSummary(CamelModel):
    entries_reverted: int = 0
    records_restored: int = 0
    links_removed: int = 0
    records_deleted: int = 0
    entries_denied: int = 0
    entries_skipped: int = 0
    errors: int = 0
    reverted_entry_ids: list[int] = Field(default_factory=list)
    error_details: list[ActionError] = Field(default_factory=list)
    rollback_audit_log_id: int | None = None
    rollback_audit_log_ids: list[int] = Field(default_factory=list)


class ExecuteRequest(CamelModel):
    """Body of ``POST /reconcile/execute``."""

    mode: str = "safe"
    owner_id: str | None = None
    batch_size: int = 100
    action: Literal["execute", "batch", "rollback"] = "execute"
    max_batches: int = 10
    delay_between_batches: int | None = Field(default=None, ge=0)
    audit_log_ids: list[int] | None = None
    time_threshold: datetime | None = None
    confirm_rollback: bool = False


class ExecutionCounters(CamelModel):
    """Flat batch counters returned as ``summary`` by ``POST /reconcile/execute``."""

    total_processed: int
    linked: int
    high_confidence_links: int
    medium_confidence_links: int
    deals_created: int
    activities_created: int
    merged: int
    errors: int
    success_rate: float

    @classmethod
    def from_execution(cls, execution: ExecutionSummary) -> ExecutionCounters:
        return cls(
            total_processed=execution.total_processed,
            linked=execution.linked,
            high_confidence_links=execution.high_confidence_links,
            medium_confidence_links=execution.medium_confidence_links,
            deals_created=execution.deals_created,
            activities_created=execution.activities_created,
            merged=execution.merged,
            errors=execution.errors,
            success_rate=execution.success_rate,
        )


class ExecuteResponse(CamelModel):
    success: bool
    mode: str
    owner_id: str
    execution: ExecutionSummary
    summary: ExecutionCounters
    linkage: OverviewData
    executed_at: datetime


class RollbackResponse(CamelModel):
    success: bool
    rollback: RollbackSummary


class DealOverrides(BaseModel):
    """Fields an operator may set on a deal created from an activity."""

    model_config = ConfigDict(extra="forbid")

    company: str | None = Field(default=None, min_length=1, max_length=255)
    value: float | None = Field(default=None, ge=0, allow_inf_nan=False)
    stage_changed_at: datetime | None = None


class ActivityOverrides(BaseModel):
    """Fields an operator may set on an activity created from a deal."""

    model_config = ConfigDict(extra="forbid")

    client_name: str | None = Field(default=None, min_length=1, max_length=255)
    amount: float | None = Field(default=None, ge=0, allow_inf_nan=False)
    activity_date: date | None = None


ManualActionName = Literal[
    "link_manual",
    "create_deal_from_activity",
    "create_activity_from_deal",
    "merge_records",
    "undo_action",
]


class ManualActionRequest(CamelModel):
    """Body of ``POST /reconcile/actions``."""

    action: ManualActionName
    owner_id: str | None = None
    activity_id: int | None = None
    deal_id: int | None = None
    confidence: float | None = None
    record_type: Literal["sales_activities", "deals"] = "sales_activities"
    record_ids: list[int] | None = None
    survivor_id: int | None = None
    overrides: dict[str, Any] | None = None
    audit_log_id: int | None = None
    confirm: bool = False


class ManualActionResult(CamelModel):
    success: bool
    action: str
    audit_log_id: int | None = None
    record_ids: dict[str, Any] = Field(default_factory=dict)
    rollback: RollbackSummary | None = None


class ReconciliationRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

    id: int
    owner_id: str
    mode: str
    batch_size: int
    max_batches: int
    status: str
    batches_executed: int
    total_processed: int
    linked: int
    deals_created: int
    activities_created: int
    merged: int
    errors: int
    last_error: str | None
    started_at: datetime
    finished_at: datetime | None


class ProgressData(CamelModel):
    owner_id: str
    orphan_activities: int
    orphan_deals: int
    latest_run: ReconciliationRunRead | None = None
    recent_audit_entries: list[AuditLogEntryRead] = Field(default_factory=list)
