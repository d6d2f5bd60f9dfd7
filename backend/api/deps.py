"""Route dependencies: access to the service container."""

from fastapi import Depends, HTTPException, Request

from services import PipelineServices, Poller


def get_services(request: Request) -> PipelineServices:
    return request.app.state.services


def get_poller(services: PipelineServices = Depends(get_services)) -> Poller:
    if services.poller is None:
        raise HTTPException(503, "Polling is not configured (set FILEMAKER_* variables)")
    return services.poller


def is_stale(services: PipelineServices) -> bool:
    """Served state is stale when the last cycle failed or is overdue"""
    return services.poller.stale if services.poller is not None else False
