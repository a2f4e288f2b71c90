"""
Audit log queries (admin only).

    GET /api/admin/audit-logs              - filtered, paginated events, newest first
    GET /api/admin/audit-logs/export/json  - download every matching event
    GET /api/admin/audit-logs/{id}         - a single event

Reading or exporting the log is not itself audited.
"""

import json
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from auth.dependencies import require_admin
from auth.errors import NotFound
from database import get_db
from models import AuditLog
from schemas import AuditLogPage, AuditLogResponse

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/admin/audit-logs",
    tags=["audit"],
    dependencies=[Depends(require_admin)],
)


def _filters(
    action: Optional[str] = Query(None, description="e.g. LOGIN, ROTATE_SECRET"),
    severity: Optional[str] = Query(None, pattern="^(info|warning)$"),
    status: Optional[str] = Query(None, pattern="^(success|failure)$"),
    actor: Optional[str] = Query(None),
    resource: Optional[str] = Query(None),
    resource_id: Optional[str] = Query(None),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
) -> list:
    """Query parameters shared by listing and export, as WHERE clauses."""
    clauses = []
    if action:
        clauses.append(AuditLog.action == action.upper())
    if severity:
        clauses.append(AuditLog.severity == severity)
    if status:
        clauses.append(AuditLog.status == status)
    if actor:
        clauses.append(AuditLog.actor == actor)
    if resource:
        clauses.append(AuditLog.resource == resource)
    if resource_id:
        clauses.append(AuditLog.resource_id == resource_id)
    if since:
        clauses.append(AuditLog.created_at >= since)
    if until:
        clauses.append(AuditLog.created_at <= until)
    return clauses


@router.get("", response_model=AuditLogPage)
async def list_audit_logs(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=1000),
    clauses: list = Depends(_filters),
    db: AsyncSession = Depends(get_db),
):
    """
    List audit events with pagination and filtering.

    Query parameters:
    - skip / limit: pagination (default 0 / 50, max 1000)
    - action, severity, status, actor, resource, resource_id: exact matches
    - since / until: ISO8601 bounds on the event time
    """
    total = await db.scalar(select(func.count(AuditLog.id)).where(*clauses))

    result = await db.execute(
        select(AuditLog)
        .where(*clauses)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .offset(skip)
        .limit(limit)
    )
    return AuditLogPage(
        total=total,
        skip=skip,
        limit=limit,
        items=[AuditLogResponse.model_validate(row) for row in result.scalars().all()],
    )


@router.get("/export/json")
async def export_audit_logs(
    clauses: list = Depends(_filters),
    db: AsyncSession = Depends(get_db),
):
    """Every matching event as a JSON file download, newest first."""
    start_time = time.perf_counter()
    result = await db.execute(
        select(AuditLog)
        .where(*clauses)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    )
    data = [
        AuditLogResponse.model_validate(row).model_dump(mode="json")
        for row in result.scalars().all()
    ]

    json_content = json.dumps(data, indent=2)
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    filename = f"audit-logs_{timestamp}.json"

    logger.info(
        f"Exported {len(data)} audit events in {(time.perf_counter() - start_time)*1000:.1f}ms"
    )
    return Response(
        content=json_content,
        media_type="application/json",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.get("/{log_id}", response_model=AuditLogResponse)
async def get_audit_log(log_id: int, db: AsyncSession = Depends(get_db)):
    row = await db.get(AuditLog, log_id)
    if row is None:
        raise NotFound(f"Audit log entry {log_id} not found")
    return AuditLogResponse.model_validate(row)
