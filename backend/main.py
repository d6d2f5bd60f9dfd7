from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from api.alerts import router as alerts_router
from api.polling import router as polling_router
from api.jobs import router as jobs_router
from api.export import router as export_router
from config import AppConfig
from core.exceptions import MonitorError, NotFoundError
from core.log import configure_logging
from services import PipelineServices, build_services

APP_NAME = "Job Monitor API"
APP_VERSION = "1.0.0"


def create_app(config: Optional[AppConfig] = None,
               services: Optional[PipelineServices] = None) -> FastAPI:
    """
    Build the API.

    Services are created in the lifespan (not at import). Tests pass a
    prebuilt container to run against fakes.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = services.config if services is not None else (config or AppConfig())
        configure_logging(cfg.logging.level, cfg.logging.file)

        svc = services if services is not None else build_services(cfg)
        app.state.services = svc
        if cfg.polling.auto_start:
            svc.start()
        yield
        svc.close()
        logger.info("Job monitor shut down")

    app = FastAPI(
        title=APP_NAME,
        version=APP_VERSION,
        lifespan=lifespan,
        docs_url="/docs",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(
            status_code=404,
            content={"success": False, "error": exc.message, "details": exc.details},
        )

    @app.exception_handler(MonitorError)
    async def monitor_error_handler(request: Request, exc: MonitorError):
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": exc.message, "details": exc.details},
        )

    app.include_router(alerts_router, prefix="/api")
    app.include_router(polling_router, prefix="/api")
    app.include_router(jobs_router, prefix="/api")
    app.include_router(export_router, prefix="/api")

    @app.get("/")
    async def root():
        return {
            "name": APP_NAME,
            "version": APP_VERSION,
            "docs": "/docs",
        }

    @app.get("/health")
    async def health(request: Request):
        svc: PipelineServices = request.app.state.services
        poller = svc.poller
        polling = poller.get_health() if poller is not None else {"status": "disabled"}
        alert_stats = svc.engine.get_statistics()

        return {
            "status": polling["status"] if poller is not None else "healthy",
            "polling": polling,
            "alerts": {
                "total": alert_stats["total"],
                "by_severity": alert_stats["by_severity"],
            },
            "cache": svc.cache.stats(),
        }

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
