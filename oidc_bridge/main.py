from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from oidc_bridge.controller import Controller
from oidc_bridge.shared.core.config import get_settings
from oidc_bridge.shared.core.health import HealthService
from oidc_bridge.shared.core.logging import setup_logging

# Configure logging
setup_logging()

logger = structlog.get_logger()


# Runs before the app starts serving and after it stops.
@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("app_starting", app=settings.APP_NAME, version=settings.VERSION)

    # A pre-built controller (tests, embedding) wins over one built from settings
    controller = getattr(app.state, "controller", None) or Controller(settings)
    # IssuerMismatchError propagates: the process must not start publishing
    await controller.validate()
    await controller.start()
    app.state.controller = controller
    app.state.health = HealthService(controller)

    yield

    logger.info("app_shutting_down", app=settings.APP_NAME)
    await controller.stop()


settings = get_settings()

app = FastAPI(title=settings.APP_NAME, version=settings.VERSION, lifespan=lifespan)

# Prometheus metrics, including the bridge's own counters, on /metrics
Instrumentator().instrument(app).expose(app)


# Liveness: the process is up and its loops have not crashed
@app.get("/health")
async def health_check():
    report = app.state.health.check_all()
    return {
        "app": settings.APP_NAME,
        "version": settings.VERSION,
        "controller": app.state.controller.get_status(),
        **report,
    }


# Readiness fails after a fault that needs an operator, such as denied storage credentials
@app.get("/ready")
async def readiness_check():
    report = app.state.health.check_all()
    status_code = 503 if report["status"] == "unhealthy" else 200
    return JSONResponse(status_code=status_code, content=report)
