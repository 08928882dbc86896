"""SocialBridge API: provider connect flows, gated provider reads, health and metrics"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from socialbridge.api import auth, oauth, proxy
from socialbridge.core import otel
from socialbridge.core.config import settings
from socialbridge.core.dependencies import Services, get_services
from socialbridge.core.errors import SocialBridgeError
from socialbridge.core.logging import setup_logging
from socialbridge.core.security import security_middleware
from socialbridge.db.redis import get_redis_client
from socialbridge.db.session import engine, init_db
from socialbridge.tasks.credential_refresh import credential_refresh_task
from socialbridge.tasks.state_eviction import state_eviction_task

setup_logging()
logger = logging.getLogger(__name__)


def _start_telemetry() -> None:
    if not otel.initialize_otel():
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, tracing disabled")
        return
    if not otel.setup_otel_logging():
        logger.warning("OpenTelemetry log export could not be set up; traces and metrics still exported")
    otel.instrument_sqlalchemy(engine)


def _check_backing_services() -> None:
    """Fail startup early when the database or Redis is unreachable"""
    try:
        init_db()
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise
    try:
        get_redis_client().ping()
    except Exception as e:
        logger.error(f"Redis ping failed: {e}")
        raise


def _start_background_tasks(services: Services) -> List[asyncio.Task]:
    tasks = [asyncio.create_task(state_eviction_task(services.registry), name="state-eviction")]
    if settings.PROACTIVE_REFRESH_ENABLED:
        tasks.append(asyncio.create_task(
            credential_refresh_task(services.refresh_service), name="credential-refresh"
        ))
    return tasks


@asynccontextmanager
async def lifespan(app: FastAPI):
    _start_telemetry()
    _check_backing_services()

    services = get_services()
    unconfigured = [name for name, provider in services.providers.items()
                    if not (provider.client_id and provider.client_secret)]
    if unconfigured:
        logger.warning(f"Providers without client credentials: {', '.join(unconfigured)}")

    tasks = _start_background_tasks(services)
    logger.info(f"Started {', '.join(task.get_name() for task in tasks)}")

    yield

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    logger.info("Background tasks stopped")


app = FastAPI(
    title="SocialBridge Backend",
    description="OAuth connections and credential lifecycle for Facebook, Instagram, TikTok, Gmail and WhatsApp",
    version="1.0.0",
    lifespan=lifespan
)

otel.instrument_fastapi(app)
otel.instrument_httpx()

allowed_origins = [origin for origin in [settings.FRONTEND_URL] if origin]
if settings.ENVIRONMENT == "development":
    allowed_origins += ["http://localhost:3000", "http://127.0.0.1:3000"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.middleware("http")(security_middleware)

app.include_router(auth.router)
app.include_router(oauth.router)
app.include_router(proxy.router)


@app.exception_handler(SocialBridgeError)
async def socialbridge_exception_handler(request: Request, exc: SocialBridgeError):
    """Render domain errors as {"error": <code>, "message": ..., **details}"""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "INTERNAL_ERROR", "message": "Internal server error"})


@app.get("/metrics")
def metrics_endpoint():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
def health_check():
    """Liveness plus which providers have client credentials configured"""
    providers = get_services().providers
    return {
        "status": "healthy",
        "providers": {name: bool(p.client_id and p.client_secret) for name, p in providers.items()},
    }
