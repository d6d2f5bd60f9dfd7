"""
Polling API
Endpoints to control the background poller.
"""

from fastapi import APIRouter, Depends

from services import Poller
from .deps import get_poller


router = APIRouter(prefix="/polling", tags=["Polling"])


@router.post("/start")
async def start_polling(poller: Poller = Depends(get_poller)):
    """
    Start the poll loop.

    The first cycle runs immediately, then once per interval.
    """
    return poller.start()


@router.post("/stop")
def stop_polling(poller: Poller = Depends(get_poller)):
    """Stop the poll loop (waits for an in-flight cycle)"""
    return poller.stop()


@router.post("/poll")
def poll_now(poller: Poller = Depends(get_poller)):
    """Run one cycle now; skipped when a cycle is already running"""
    return poller.poll()


@router.get("/status")
async def polling_status(poller: Poller = Depends(get_poller)):
    return {
        "status": "running" if poller.is_running else "stopped",
        "stats": poller.get_stats(),
    }


@router.get("/health")
async def polling_health(poller: Poller = Depends(get_poller)):
    return poller.get_health()
