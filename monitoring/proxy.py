"""
Graph API proxy — FastAPI app serving the Grafana JSON datasource protocol
and a read-only relay to Microsoft Graph.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..auth.authenticator import Authenticator, AuthenticationError
from ..config import ToolkitConfig
from ..graph.client import GraphAPIError, GraphClient
from ..safety.guardian import ChangeGuard
from .metrics import GraphMetricSource

logger = logging.getLogger("m365_admin.monitoring.proxy")


def create_app(
    config: Optional[ToolkitConfig] = None,
    source: Optional[GraphMetricSource] = None,
) -> FastAPI:
    """
    Build the proxy app.

    With a ready-made source the app serves it as-is; otherwise the Graph
    session is opened on startup from config and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if source is not None:
            app.state.source = source
            yield
            return

        if config is None:
            raise RuntimeError("create_app needs either a config or a metric source")
        # Tokens are fetched per request by the metric source
        authenticator = Authenticator(config.auth)
        # Proxy never writes: anything but a read raises SafetyViolation
        guard = ChangeGuard(read_only=True)
        async with GraphClient("", guard) as graph:
            app.state.source = GraphMetricSource(
                graph, authenticator, active_days=config.proxy.active_days
            )
            logger.info("Graph session opened for proxy")
            yield
        logger.info("Graph session closed")

    app = FastAPI(title="M365 Graph API Proxy", lifespan=lifespan)
    # Grafana datasources in browser access mode call the proxy cross-origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Health ──────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/")
    async def root():
        return {"message": "Microsoft Graph API Proxy is running"}

    # ── Grafana JSON datasource ─────────────────────────────

    @app.post("/search")
    async def search(request: Request):
        return request.app.state.source.list_metrics()

    @app.post("/query")
    async def query(request: Request):
        body = await request.json()
        targets = body.get("targets") or []
        try:
            return await request.app.state.source.query(targets)
        except AuthenticationError as e:
            logger.error(f"Query error: {e}")
            return JSONResponse({"error": str(e)}, status_code=500)

    # ── Graph relay ─────────────────────────────────────────

    @app.get("/api/graph/{path:path}")
    async def graph_passthrough(path: str, request: Request):
        params = dict(request.query_params)
        try:
            return await request.app.state.source.passthrough(path, params)
        except GraphAPIError as e:
            logger.error(f"Graph API proxy error: {e}")
            return JSONResponse({"error": e.message}, status_code=e.status_code)
        except AuthenticationError as e:
            logger.error(f"Graph API proxy error: {e}")
            return JSONResponse({"error": str(e)}, status_code=500)

    return app


def serve(config: ToolkitConfig) -> None:
    """Run the proxy under uvicorn until interrupted."""
    import uvicorn

    logger.info(f"Microsoft Graph API Proxy listening on port {config.proxy.port}")
    uvicorn.run(create_app(config), host=config.proxy.host, port=config.proxy.port)
