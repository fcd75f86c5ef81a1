"""
Admin-only billing operations router.

Protected by X-Admin-Key (ADMIN_KEY). Lets operators trigger the
scheduled maintenance jobs and inspect recently processed webhooks.
"""
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select

from teammove.core.auth import require_admin
from teammove.core.database import get_db_session, processed_webhook_events
from teammove.core.errors import ValidationError
from teammove.features.subscriptions.service import get_subscription
from teammove.workers.billing_maintenance import JOBS, run_all


router = APIRouter(prefix="/v1/admin/billing", tags=["admin-billing"])


@router.post("/jobs/{job_name}")
def run_job(job_name: str, _admin: str = Depends(require_admin)) -> Dict[str, Any]:
    if job_name == "all":
        return {"job": job_name, "stats": run_all()}
    job = JOBS.get(job_name)
    if job is None:
        raise ValidationError(f"Unknown job: {job_name}")
    return {"job": job_name, "stats": job()}


@router.get("/events")
def list_processed_events(
    limit: int = Query(50, ge=1, le=500),
    _admin: str = Depends(require_admin),
) -> List[Dict[str, Any]]:
    """Most recent processed webhook events."""
    with get_db_session() as session:
        rows = session.execute(
            select(processed_webhook_events)
            .order_by(processed_webhook_events.c.processed_at.desc())
            .limit(limit)
        ).mappings().all()
    return [
        {**dict(row), "processed_at": row["processed_at"].isoformat() if row["processed_at"] else None}
        for row in rows
    ]


@router.get("/tenants/{tenant_id}")
def tenant_subscription(tenant_id: str, _admin: str = Depends(require_admin)) -> Dict[str, Any]:
    return get_subscription(tenant_id).model_dump(mode="json")
