"""
kudos.api.main — FastAPI application entry point
=================================================

Run with::

    uvicorn kudos.api.main:app --port 8000

or ``python -m kudos``.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

from kudos.api.routes.admin import router as admin_router  # noqa: E402
from kudos.api.routes.imports import router as imports_router  # noqa: E402
from kudos.api.routes.webhooks import router as webhooks_router  # noqa: E402
from kudos.config import load_config, load_identity_maps, load_secrets  # noqa: E402
from kudos.database.engine import create_db_engine, init_db  # noqa: E402
from kudos.services.bootstrap import Services, build_services  # noqa: E402

logger = logging.getLogger(__name__)


def _build_from_environment() -> Services:
    cfg = load_config(os.getenv("KUDOS_CONFIG", "config.yaml"))
    engine = create_db_engine()
    init_db(engine)
    return build_services(cfg, load_secrets(), load_identity_maps(), engine)


def create_app(services: Services | None = None) -> FastAPI:
    """Build the application.  Without *services* they are built at startup
    from ``config.yaml`` and the environment.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            app.state.services = _build_from_environment()
        svc: Services = app.state.services
        logger.info(
            "Kudos API started — dry_run=%s, db=%s",
            svc.config.dry_run, svc.engine.url.render_as_string(hide_password=True),
        )
        yield
        await svc.close()
        logger.info("Kudos API shutting down")

    app = FastAPI(title="Kudos Reward Pipeline", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    app.include_router(webhooks_router)
    app.include_router(imports_router, prefix="/api")
    app.include_router(admin_router, prefix="/api")

    @app.get("/api/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
