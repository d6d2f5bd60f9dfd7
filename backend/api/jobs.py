"""
Jobs API
Last-known job state, change detection results and cache maintenance.

Jobs are served from the cache, so they stay available while the
source system is down (responses carry `stale`).
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from core.exceptions import NotFoundError
from services import PipelineServices
from .deps import get_services, is_stale


router = APIRouter(prefix="/jobs", tags=["Jobs"])


@router.get("")
async def list_jobs(
    status: Optional[str] = Query(default=None, description="Filter by job_status"),
    limit: int = Query(default=500, ge=1, le=5000),
    services: PipelineServices = Depends(get_services),
):
    """Cached jobs"""
    records = services.cache.get_all()
    if status is not None:
        records = [r for r in records if r.get("job_status") == status]

    return {
        "success": True,
        "jobs": [r.to_dict() for r in records[:limit]],
        "total": len(records),
        "stale": is_stale(services),
    }


@router.get("/changes")
async def last_changes(services: PipelineServices = Depends(get_services)):
    """Most recent change detection pass with its analysis"""
    detector = services.detector
    summary = detector.last_summary
    if summary is None:
        return {"summary": None, "analysis": None, "critical": []}

    return {
        **summary.to_dict(),
        "analysis": detector.analyze_changes(summary),
        "critical": [c.to_dict() for c in detector.get_critical_changes(summary)],
    }


@router.get("/cache/stats")
async def cache_stats(services: PipelineServices = Depends(get_services)):
    return {
        "cache": services.cache.stats(),
        "detector": services.detector.stats(),
    }


@router.post("/cache/clean")
def clean_cache(services: PipelineServices = Depends(get_services)):
    """Remove expired entries and old change history"""
    removed = services.cache.clean_expired()
    history_removed = services.cache.clean_old_history(services.config.cache.history_days)
    return {
        "success": True,
        "removed": removed,
        "history_removed": history_removed,
        "size": services.cache.size(),
    }


@router.get("/{job_id}")
async def get_job(job_id: str, services: PipelineServices = Depends(get_services)):
    record = services.cache.get(job_id)
    if record is None:
        raise NotFoundError("job", job_id)

    entry = services.cache.entry(job_id)
    alerts = [a.to_dict() for a in services.engine.get_active_alerts() if a.record_id == job_id]
    return {
        "job": record.to_dict(),
        "cached_at": entry.cached_at if entry else None,
        "hits": entry.hits if entry else 0,
        "alerts": alerts,
        "stale": is_stale(services),
    }


@router.get("/{job_id}/history")
async def get_job_history(
    job_id: str,
    limit: int = Query(default=10, ge=1, le=500),
    services: PipelineServices = Depends(get_services),
):
    history = services.detector.get_change_history(job_id, limit)
    return {
        "id": job_id,
        "count": len(history),
        "history": [h.to_dict() for h in history],
    }
