"""FastAPI application wiring for the Lab Portal API.

This module bootstraps the HTTP and WebSocket surface of the project:

- Configures logging, CORS (optional for the operator UI), Prometheus metrics
  and rate limiting.
- Renders every domain error as the ``{"success": false, ...}`` envelope.
- Mounts the agenda (slot reservation) and live-chat (handoff queue) routers,
  including the ``/ws/chat`` WebSocket endpoint.
"""

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .core.errors import register_exception_handlers
from .core.rate_limit import get_client_ip, limiter
from .core.settings import get_settings
from .routers import agenda, livechat

load_dotenv()

app = FastAPI(title="Lab Portal API", version=__version__)
init_logging(app)
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)
register_exception_handlers(app)

# Optional CORS for the operator UI
admin_ui_origins = get_settings().admin_ui_origins
if admin_ui_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(admin_ui_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(agenda.router)
app.include_router(livechat.router)

# Expose Prometheus metrics
Instrumentator().instrument(app).expose(
    app, include_in_schema=False, endpoint="/api/metrics"
)


@app.get("/api/health")
async def health():
    """Liveness and readiness check with a minimal JSON body."""
    return {"status": "ok"}


@app.get("/api/version")
async def version():
    """Return version information for the application."""
    return {
        "version": __version__,
        "build_date": __build_date__,
        "commit_sha": __commit_sha__,
    }


__all__ = ["app", "get_client_ip"]
