"""
HTTP admin API for the decision gate.

Lets external tools submit decisions, inspect traces and telemetry, and
hot-reload configuration on a running gate.

Run with:
    python -m decision_gate.api --config gate.yaml

Requires: pip install fastapi uvicorn
"""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import os
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config_watch import ConfigFileWatcher
from .health import build_registry_health_checker
from .logging_config import configure_logging, get_logger
from .registry import ServiceRegistry
from .types import Decision, TelemetryEventType, to_jsonable

logger = get_logger(__name__, subsystem="api")

API_VERSION = "0.1.0"


# ============================================================================
# Pydantic Models for API
# ============================================================================

class DecisionRequest(BaseModel):
    """Request body for submitting a decision."""
    type: str = Field(..., description="Decision type, e.g. 'spawn'")
    entity_id: str = Field(..., description="Entity the decision acts on")
    action: str = Field("", description="Action name checked against doctrine")
    parameters: Dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(0, description="Larger values are served first")
    faction_id: Optional[str] = None
    squad_id: Optional[str] = None
    id: Optional[str] = Field(None, description="Decision id (generated if omitted)")


class StatusResponse(BaseModel):
    """Registry status summary."""
    initialized: bool
    services: Dict[str, bool]
    pipeline: Dict[str, Any]
    counters: Dict[str, Any]
    telemetry: Dict[str, Any]
    autofix: Dict[str, Any]
    rate_limits: Dict[str, Any]
    metrics: Dict[str, Any]


# ============================================================================
# API Server
# ============================================================================

class DecisionGateAPIServer:
    """
    FastAPI-based admin server for one service registry.

    Provides endpoints for:
    - Decision submission and trace inspection
    - Telemetry events, counters and health
    - Configuration reads, validated patches and resets
    - Shutdown and reset of the registry
    """

    def __init__(
        self,
        registry: Optional[ServiceRegistry] = None,
        config_path: Optional[str] = None,
        run_maintenance: bool = False,
    ):
        """
        Initialize the API server.

        Args:
            registry: Registry to serve (a default one is created if None)
            config_path: YAML/JSON file polled for hot reload
            run_maintenance: Run the periodic tick/poll loop while serving
        """
        self.registry = registry or ServiceRegistry()
        self.watcher = ConfigFileWatcher(self.registry.config, config_path) if config_path else None
        self.health_checker = build_registry_health_checker(self.registry)

        if self.watcher is not None:
            self.watcher.poll()

        lifespan = self._lifespan if run_maintenance else None
        self.app = FastAPI(
            title="Decision Gate API",
            description="Admin API for the AI decision-governance pipeline",
            version=API_VERSION,
            lifespan=lifespan,
        )

        self._register_routes()

    def maintenance_step(self) -> None:
        """One pass of config polling and anomaly upkeep."""
        if self.watcher is not None:
            self.watcher.poll()
        self.registry.tick()

    @contextlib.asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        task = asyncio.create_task(self._maintenance_loop())
        try:
            yield
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _maintenance_loop(self) -> None:
        while True:
            interval_s = self.registry.telemetry.settings.anomaly_check_interval_ms / 1000.0
            await asyncio.sleep(interval_s)
            try:
                self.maintenance_step()
            except Exception as e:
                logger.error(f"Maintenance step failed: {e}")

    def _register_routes(self):
        """Register all API routes."""
        registry = self.registry

        @self.app.get("/")
        async def root():
            """API liveness check."""
            return {
                "status": "ok",
                "service": "decision-gate",
                "version": API_VERSION,
                "initialized": registry.is_initialized(),
            }

        @self.app.get("/health")
        async def health():
            """Run all health checks (503 when any fails)."""
            result = self.health_checker.run_all()
            return JSONResponse(
                status_code=200 if result.healthy else 503,
                content=to_jsonable(result.to_dict()),
            )

        @self.app.get("/status", response_model=StatusResponse)
        async def status():
            """Registry, pipeline and telemetry status."""
            service_status = registry.get_status()
            return StatusResponse(
                initialized=service_status.initialized,
                services=service_status.to_dict(),
                pipeline=registry.pipeline.get_stats(),
                counters=registry.get_counters().to_dict(),
                telemetry=registry.telemetry.stats(),
                autofix=registry.autofix.stats(),
                rate_limits=registry.validator.get_rate_limit_stats(),
                metrics=registry.metrics.summary(),
            )

        @self.app.post("/decisions")
        async def submit_decision(request: DecisionRequest):
            """Run a decision through the pipeline and return its trace."""
            try:
                decision = Decision.create(
                    type=request.type,
                    entity_id=request.entity_id,
                    action=request.action,
                    parameters=request.parameters,
                    priority=request.priority,
                    faction_id=request.faction_id,
                    squad_id=request.squad_id,
                    decision_id=request.id,
                )
            except ValueError as e:
                raise HTTPException(status_code=422, detail=str(e))

            trace = registry.process(decision)
            return to_jsonable(trace.to_dict())

        @self.app.get("/traces")
        async def list_traces(limit: int = Query(20, ge=1, le=1000)):
            """Most recent traces, newest first."""
            traces = registry.pipeline.get_recent_traces(limit)
            return {
                "stats": registry.pipeline.get_stats(),
                "traces": [to_jsonable(t.to_dict()) for t in traces],
            }

        @self.app.get("/traces/{trace_id}")
        async def get_trace(trace_id: str):
            trace = registry.pipeline.get_trace(trace_id)
            if trace is None:
                raise HTTPException(status_code=404, detail=f"Trace not found: {trace_id}")
            return to_jsonable(trace.to_dict())

        @self.app.get("/events")
        async def list_events(
            limit: int = Query(100, ge=1, le=10000),
            event_type: Optional[str] = None,
        ):
            """Most recent telemetry events, oldest first."""
            if event_type is not None:
                try:
                    TelemetryEventType(event_type)
                except ValueError:
                    raise HTTPException(status_code=422, detail=f"Unknown event type: {event_type}")
            events = registry.telemetry.get_recent_events(limit, event_type=event_type)
            return {"events": [e.to_dict() for e in events]}

        @self.app.get("/config")
        async def get_config():
            return registry.config.to_dict()

        @self.app.patch("/config")
        async def patch_config(partial: Dict[str, Any] = Body(...)):
            """Validate and apply a partial configuration."""
            errors = registry.config.validate(partial)
            if errors:
                raise HTTPException(status_code=422, detail={"errors": errors})
            registry.config.load(partial)
            return registry.config.to_dict()

        @self.app.get("/config/changes")
        async def config_changes(limit: int = Query(100, ge=1, le=1000)):
            return {
                "changes": [to_jsonable(c) for c in registry.config.get_change_logs(limit)],
            }

        @self.app.post("/config/reset")
        async def reset_config():
            registry.config.reset()
            return registry.config.to_dict()

        @self.app.post("/admin/shutdown")
        async def shutdown():
            """Clear all bounded state (services stay available)."""
            registry.shutdown()
            return {"status": "shutdown", "initialized": registry.is_initialized()}

        @self.app.post("/admin/reset")
        async def reset():
            """Clear all state and restore the default configuration."""
            registry.reset()
            return {"status": "reset", "initialized": registry.is_initialized()}


def create_app(
    registry: Optional[ServiceRegistry] = None,
    config_path: Optional[str] = None,
    run_maintenance: bool = False,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    server = DecisionGateAPIServer(
        registry=registry,
        config_path=config_path,
        run_maintenance=run_maintenance,
    )
    return server.app


def serve(
    host: str = "127.0.0.1",
    port: int = 8000,
    config_path: Optional[str] = None,
    strict: bool = False,
) -> None:
    """Serve a fresh registry until interrupted."""
    registry = ServiceRegistry(strict=strict)
    app = create_app(registry, config_path=config_path, run_maintenance=True)

    logger.info(f"Decision gate API on http://{host}:{port} (docs at /docs)")
    if config_path:
        logger.info(f"Watching config file {config_path}")

    uvicorn.run(app, host=host, port=port)


def main(argv: Optional[List[str]] = None):
    """Run the API server from command line."""
    parser = argparse.ArgumentParser(description="Decision Gate API Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    parser.add_argument("--config", help="YAML/JSON config file to load and watch")
    parser.add_argument("--strict", action="store_true", help="Enable strict world-rule validation")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("DECISION_GATE_LOG_LEVEL", "INFO"),
        help="Log level",
    )
    parser.add_argument("--log-dir", help="Directory for rotating log files")
    args = parser.parse_args(argv)

    configure_logging(level=args.log_level, log_dir=args.log_dir)
    serve(host=args.host, port=args.port, config_path=args.config, strict=args.strict)


if __name__ == "__main__":
    main()
