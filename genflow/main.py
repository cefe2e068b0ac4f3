import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from . import metrics
from .auth_middleware import WorkerAuthMiddleware
from .billing import get_billing
from .engines import EngineDefinition, enabled_engine_ids, validate_registry
from .job_client import JOB_SERVICE_URL, JobServiceClient
from .limits import get_limits_provider
from .routes import router
from .session import SessionManager

load_dotenv()

logging.basicConfig(
    level=os.environ.get("GENFLOW_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    job_client: Optional[JobServiceClient] = None,
    limits_provider=None,
    billing=None,
    registry: Optional[dict[str, EngineDefinition]] = None,
    autostart: bool = True,
    **poller_options,
) -> FastAPI:
    """
    Build the service. Collaborators default to the environment-configured
    ones (Redis limits, Supabase billing, JOB_SERVICE_URL); tests pass their own.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Generation service starting up...")
        metrics.set_gauge("start_time", time.time())

        app.state.registry = registry if registry is not None else validate_registry(enabled_engine_ids())
        client = job_client or JobServiceClient()
        app.state.job_client = client
        app.state.sessions = SessionManager(
            client,
            limits_provider or get_limits_provider(),
            billing or get_billing(),
            registry=app.state.registry,
            autostart=autostart,
            **poller_options,
        )
        if autostart:
            app.state.sessions.start_reaper()
        logger.info(f"Job service at {JOB_SERVICE_URL if job_client is None else 'injected client'}")
        yield
        logger.info("Generation service shutting down...")
        await app.state.sessions.close_all()
        if job_client is None:
            await client.aclose()

    app = FastAPI(title="genflow", lifespan=lifespan)
    app.add_middleware(WorkerAuthMiddleware)
    app.include_router(router)

    @app.get("/health")
    def health_check():
        return {
            "status": "ok",
            "engines": len(getattr(app.state, "registry", {}) or {}),
            "job_service_url_set": bool(os.environ.get("JOB_SERVICE_URL")),
            "redis_url_set": bool(os.environ.get("REDIS_URL")),
            "supabase_url_set": bool(os.environ.get("SUPABASE_URL")),
        }

    @app.get("/metrics")
    def metrics_endpoint():
        sessions = getattr(app.state, "sessions", None)
        if sessions is not None:
            metrics.set_gauge("active_sessions", len(sessions))
            metrics.set_gauge("tracked_workflows", sessions.tracked_workflows())
        return metrics.get_snapshot()

    return app


app = create_app()


def run():
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("genflow.main:app", host="0.0.0.0", port=port)


if __name__ == "__main__":
    run()
