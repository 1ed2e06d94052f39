"""Audit trail writes."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from usdc_payroll.models import AuditEventType, AuditLog


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


def record_audit(
    session: AsyncSession,
    event_type: AuditEventType,
    entity_type: str,
    entity_id: UUID | str,
    payload: dict[str, Any] | None = None,
    *,
    worker_id: UUID | None = None,
    payroll_run_id: UUID | None = None,
    payroll_item_id: UUID | None = None,
) -> AuditLog:
    """Add an audit event to the session; it commits with the caller's unit of work."""
    event = AuditLog(
        event_type=event_type.value,
        entity_type=entity_type,
        entity_id=str(entity_id),
        payload=_jsonable(payload or {}),
        worker_id=worker_id,
        payroll_run_id=payroll_run_id,
        payroll_item_id=payroll_item_id,
    )
    session.add(event)
    return event
