"""
lumina.api.main — FastAPI application entry point
===================================================

Run with::

    python -m lumina.api

or, for development::

    uvicorn lumina.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from lumina import __version__  # noqa: E402
from lumina.api.deps import get_engine  # noqa: E402
from lumina.api.rate_limit import configure_rate_limiters  # noqa: E402
from lumina.api.routes.admin import router as admin_router  # noqa: E402
from lumina.api.routes.referrals import router as referrals_router  # noqa: E402
from lumina.database.engine import init_db  # noqa: E402

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — create tables, seed defaults, arm limiters."""
    engine = get_engine()
    init_db(engine)
    configure_rate_limiters(engine=engine)
    logger.info("Lumina referrals API started — engine ready (%s)", engine.url.database)
    yield
    logger.info("Lumina referrals API shutting down")


app = FastAPI(
    title="Lumina Referrals API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(referrals_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
