"""
Data Export API
Download endpoints for alerts, cached jobs and change history.

Formats:
    - CSV (default): Excel/pandas compatible
    - JSON: for programmatic access
"""

import io
import csv
import json
from datetime import datetime
from typing import Optional

import pandas as pd
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse

from services import PipelineServices
from .deps import get_services

router = APIRouter(prefix="/export", tags=["Export"])


ALERT_COLUMNS = [
    "id", "rule_id", "severity", "title", "message", "record_id",
    "created_at", "acknowledged", "acknowledged_by", "acknowledged_at", "status",
]


def _check_format(format: str) -> str:
    if format not in ("csv", "json"):
        raise HTTPException(400, f"Invalid format: {format}. Use: csv, json")
    return format


def _download(content: str, filename: str, format: str) -> StreamingResponse:
    media_type = "application/json" if format == "json" else "text/csv"
    return StreamingResponse(
        io.BytesIO(content.encode()),
        media_type=media_type,
        headers={"Content-Disposition": f"attachment; filename={filename}.{format}"}
    )


def _stamp() -> str:
    return datetime.now().strftime('%Y%m%d_%H%M%S')


# =============================================================================
# Alerts Export
# =============================================================================

@router.get("/alerts")
async def export_alerts(
    format: str = Query(default="csv", description="csv or json"),
    services: PipelineServices = Depends(get_services),
):
    """Export active alerts in priority order"""
    _check_format(format)
    alerts = services.engine.get_active_alerts()
    filename = f"alerts_{_stamp()}"

    if format == "json":
        return _download(json.dumps([a.to_dict() for a in alerts], indent=2), filename, format)

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(ALERT_COLUMNS)

    for a in alerts:
        row = a.to_dict()
        writer.writerow(["" if row[c] is None else row[c] for c in ALERT_COLUMNS])

    return _download(output.getvalue(), filename, format)


# =============================================================================
# Jobs Export
# =============================================================================

@router.get("/jobs")
async def export_jobs(
    format: str = Query(default="csv", description="csv or json"),
    services: PipelineServices = Depends(get_services),
):
    """
    Export cached jobs.

    CSV has one column per FileMaker field.
    """
    _check_format(format)
    records = services.cache.get_all()
    filename = f"jobs_{_stamp()}"

    if format == "json":
        return _download(json.dumps([r.to_dict() for r in records], indent=2, default=str), filename, format)

    df = pd.DataFrame([
        {"id": r.id, "record_id": r.record_id, "mod_id": r.mod_id, **r.field_data}
        for r in records
    ])
    if df.empty:
        df = pd.DataFrame(columns=["id", "record_id", "mod_id"])
    return _download(df.to_csv(index=False), filename, format)


# =============================================================================
# History Export
# =============================================================================

@router.get("/history")
async def export_history(
    format: str = Query(default="csv", description="csv or json"),
    job_id: Optional[str] = Query(default=None, description="Only this job"),
    limit: int = Query(default=10000, le=100000),
    services: PipelineServices = Depends(get_services),
):
    """Export the change history (newest first)"""
    _check_format(format)
    df = services.cache.history_frame(job_id, limit)
    if df is None:
        raise HTTPException(503, "Change history store unavailable")

    filename = f"history_{job_id + '_' if job_id else ''}{_stamp()}"

    if format == "json":
        return _download(df.to_json(orient="records", date_format="iso", indent=2), filename, format)

    df = df.copy()
    df["data"] = df["data"].map(lambda d: json.dumps(d) if d is not None else "")
    return _download(df.to_csv(index=False), filename, format)
