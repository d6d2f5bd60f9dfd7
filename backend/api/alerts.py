"""
Alerts API
Endpoints for active alerts, operator actions and streaming events.

Endpoints:
    GET    /api/alerts                     → Active alerts (priority order)
    GET    /api/alerts/priority            → Highest priority alert
    GET    /api/alerts/stats               → Engine statistics
    GET    /api/alerts/history             → Alert lifecycle log
    GET    /api/alerts/rules               → Loaded rules
    GET    /api/alerts/dedup               → Deduplication cache
    POST   /api/alerts/dedup/window        → Change deduplication window
    POST   /api/alerts/bulk/acknowledge    → Acknowledge many
    POST   /api/alerts/bulk/dismiss        → Dismiss many
    POST   /api/alerts/{id}/acknowledge    → Acknowledge one
    POST   /api/alerts/{id}/dismiss        → Dismiss one
    GET    /api/alerts/stream              → SSE stream of pipeline events
"""

import asyncio
import json
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from alerts import Severity
from core.exceptions import NotFoundError
from services import PipelineServices
from services.events import ALERT_ACKNOWLEDGED, ALERT_DISMISSED
from .deps import get_services, is_stale

router = APIRouter(prefix="/alerts", tags=["Alerts"])


# =============================================================================
# Request Models
# =============================================================================

class AcknowledgeRequest(BaseModel):
    """Request body for acknowledging an alert"""
    model_config = ConfigDict(populate_by_name=True)

    acknowledged_by: str = Field(default="system", alias="acknowledgedBy")


class DismissRequest(BaseModel):
    """Request body for dismissing an alert"""
    model_config = ConfigDict(populate_by_name=True)

    dismissed_by: str = Field(default="system", alias="dismissedBy")


class BulkAcknowledgeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    alert_ids: List[str] = Field(alias="alertIds")
    acknowledged_by: str = Field(default="system", alias="acknowledgedBy")


class BulkDismissRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    alert_ids: List[str] = Field(alias="alertIds")
    dismissed_by: str = Field(default="system", alias="dismissedBy")


class DedupWindowRequest(BaseModel):
    milliseconds: int = Field(ge=0)


def _parse_severity(value: Optional[str]) -> Optional[Severity]:
    if value is None:
        return None
    try:
        return Severity(value.upper())
    except ValueError:
        raise HTTPException(400, f"Invalid severity: {value}. Use: LOW, MEDIUM, HIGH, CRITICAL")


# =============================================================================
# Queries
# =============================================================================

@router.get("")
async def list_alerts(
    severity: Optional[str] = Query(default=None, description="LOW, MEDIUM, HIGH or CRITICAL"),
    rule_id: Optional[str] = None,
    acknowledged: Optional[bool] = None,
    limit: Optional[int] = Query(default=None, ge=1),
    services: PipelineServices = Depends(get_services),
):
    """Active alerts, highest priority first"""
    engine = services.engine
    alerts = engine.get_active_alerts(
        severity=_parse_severity(severity),
        rule_id=rule_id,
        acknowledged=acknowledged,
        limit=limit,
    )
    counts = engine.get_statistics()["by_severity"]

    return {
        "success": True,
        "alerts": [a.to_dict() for a in alerts],
        "stats": {
            "total": sum(counts.values()),
            "critical": counts[Severity.CRITICAL.value],
            "high": counts[Severity.HIGH.value],
            "medium": counts[Severity.MEDIUM.value],
            "low": counts[Severity.LOW.value],
        },
        "total": len(alerts),
        "stale": is_stale(services),
    }


@router.get("/priority")
async def highest_priority(services: PipelineServices = Depends(get_services)):
    alert = services.engine.get_highest_priority_alert()
    return {"alert": alert.to_dict() if alert else None}


@router.get("/stats")
async def get_stats(services: PipelineServices = Depends(get_services)):
    """Get alert engine statistics"""
    return services.engine.get_statistics()


@router.get("/history")
async def get_history(
    limit: int = Query(default=50, ge=1, le=500),
    services: PipelineServices = Depends(get_services),
):
    """Recent alert lifecycle entries, newest first"""
    history = services.engine.get_history(limit)
    return {
        "count": len(history),
        "history": [e.to_dict() for e in history],
    }


@router.get("/rules")
async def list_rules(services: PipelineServices = Depends(get_services)):
    rules = services.engine.rules
    return {
        "count": len(rules),
        "rules": [r.to_dict() for r in rules],
    }


@router.get("/dedup")
async def dedup_stats(services: PipelineServices = Depends(get_services)):
    return services.engine.get_deduplication_stats()


@router.post("/dedup/window")
async def set_dedup_window(request: DedupWindowRequest, services: PipelineServices = Depends(get_services)):
    services.engine.set_deduplication_window(request.milliseconds)
    return {"success": True, "window_ms": request.milliseconds}


# =============================================================================
# Operator Actions
# =============================================================================

@router.post("/bulk/acknowledge")
async def bulk_acknowledge(request: BulkAcknowledgeRequest, services: PipelineServices = Depends(get_services)):
    result = services.engine.bulk_acknowledge(request.alert_ids, request.acknowledged_by)
    for alert_id in result["acknowledged_ids"]:
        services.events.emit(ALERT_ACKNOWLEDGED, {"alert_id": alert_id, "acknowledged_by": request.acknowledged_by})
    return {
        "success": True,
        "acknowledged": result["acknowledged"],
        "failed": result["failed"],
        "failed_ids": result["failed_ids"],
    }


@router.post("/bulk/dismiss")
async def bulk_dismiss(request: BulkDismissRequest, services: PipelineServices = Depends(get_services)):
    result = services.engine.bulk_dismiss(request.alert_ids, request.dismissed_by)
    for alert_id in result["dismissed_ids"]:
        services.events.emit(ALERT_DISMISSED, {"alert_id": alert_id, "dismissed_by": request.dismissed_by})
    return {
        "success": True,
        "dismissed": result["dismissed"],
        "failed": result["failed"],
        "failed_ids": result["failed_ids"],
    }


@router.post("/{alert_id}/acknowledge")
async def acknowledge_alert(
    alert_id: str,
    request: Optional[AcknowledgeRequest] = None,
    services: PipelineServices = Depends(get_services),
):
    """Acknowledge an active alert (it stays active)"""
    who = request.acknowledged_by if request else "system"
    actor = services.poller or services.engine
    if not actor.acknowledge_alert(alert_id, who):
        raise NotFoundError("alert", alert_id)
    return {"success": True}


@router.post("/{alert_id}/dismiss")
async def dismiss_alert(
    alert_id: str,
    request: Optional[DismissRequest] = None,
    services: PipelineServices = Depends(get_services),
):
    """Dismiss an active alert (removes it)"""
    who = request.dismissed_by if request else "system"
    actor = services.poller or services.engine
    if not actor.dismiss_alert(alert_id, who):
        raise NotFoundError("alert", alert_id)
    return {"success": True}


# =============================================================================
# SSE Stream
# =============================================================================

@router.get("/stream")
async def stream_events(request: Request, services: PipelineServices = Depends(get_services)):
    """
    Server-Sent Events stream of pipeline events.

    Connect via EventSource in browser:
        const es = new EventSource('/api/alerts/stream');
        es.addEventListener('newAlerts', (e) => console.log(JSON.parse(e.data)));
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue(maxsize=100)

    def offer(item):
        try:
            queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.debug(f"SSE client lagging, dropped {item[0]!r} event")

    def on_event(event: str, payload):
        # Called on the poller thread
        loop.call_soon_threadsafe(offer, (event, payload))

    services.events.on("*", on_event)

    async def event_generator():
        try:
            yield f"data: {json.dumps({'type': 'connected', 'message': 'Event stream connected'})}\n\n"

            while True:
                if await request.is_disconnected():
                    break
                try:
                    event, payload = await asyncio.wait_for(queue.get(), timeout=30.0)
                except asyncio.TimeoutError:
                    # Keepalive ping
                    yield ": keepalive\n\n"
                    continue
                yield f"event: {event}\ndata: {json.dumps(payload, default=str)}\n\n"
        finally:
            services.events.off("*", on_event)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"  # Disable nginx buffering
        }
    )
