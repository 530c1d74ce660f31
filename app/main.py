"""FastAPI application wiring for the clinic WhatsApp messaging service.

This module bootstraps the HTTP API:

- Configures logging, CORS (optional, for the attendant inbox UI) and
  Prometheus metrics.
- Mounts the WhatsApp webhook, the internal service endpoints (outbound
  dispatch, AI decision, reminder trigger) and the attendant inbox.
- Exposes health and version probes.
"""

import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .routers import inbox, internal, webhooks

load_dotenv()

logger = logging.getLogger(__name__)

app = FastAPI(title="Clinic WhatsApp Messaging", version=__version__)
init_logging(app)
# Optional CORS for the attendant inbox UI
inbox_ui_origins = os.getenv("INBOX_UI_ORIGINS")
if inbox_ui_origins:
    origins = [o.strip() for o in inbox_ui_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(webhooks.router)
app.include_router(internal.router)
app.include_router(inbox.router)

# Expose Prometheus metrics
Instrumentator().instrument(app).expose(
    app, include_in_schema=False, endpoint="/api/metrics"
)


@app.get("/api/health")
async def health():
    """Liveness/readiness probe with a minimal JSON body."""
    return {"status": "ok"}


@app.get("/api/version")
async def version():
    """Return version information for the application."""
    return {
        "version": __version__,
        "build_date": __build_date__,
        "commit_sha": __commit_sha__,
    }
