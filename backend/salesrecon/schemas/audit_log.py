"""Reconciliation audit log response schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class AuditLogEntryRead(BaseModel):
    """Serialized reconciliation audit log entry."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    action_type: str
    source_table: str
    source_id: int | None
    target_table: str | None
    target_id: int | None
    confidence_score: float | None
    metadata_json: dict[str, object]
    run_id: int | None
    created_at: datetime


class AuditLogPage(BaseModel):
    items: list[AuditLogEntryRead]
    total: int
    limit: int
    offset: int
