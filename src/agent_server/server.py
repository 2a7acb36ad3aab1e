"""FastAPI application exposing agent runs and the inference-service callbacks."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import httpx
from fastapi import FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .client import ExternalServiceClient, HttpServiceClient
from .config import load_config
from .controller import MAX_ITERATIONS, MIN_ITERATIONS, CompletionResult, RunController
from .errors import AgentRunError
from .events import EventLog
from .guard import AccessGuard
from .model_config import ModelConfig
from .registry import RunRegistry

logger = logging.getLogger(__name__)

ANONYMOUS = "anonymous"


# -----------------------------
# Pydantic request/response
# -----------------------------
class RunRequest(BaseModel):
    query: str = Field(..., min_length=1)
    max_iterations: int = Field(..., ge=MIN_ITERATIONS, le=MAX_ITERATIONS)


class RunCreated(BaseModel):
    run_id: int


class CompletionPayload(BaseModel):
    content: str = ""
    function_name: str = ""
    function_arguments: str = ""


class CompletionCallback(BaseModel):
    run_id: int = Field(..., ge=0)
    result: CompletionPayload = Field(default_factory=CompletionPayload)
    error: str = ""


class FunctionCallback(BaseModel):
    run_id: int = Field(..., ge=0)
    result: str = ""
    error: str = ""


class EndpointUpdate(BaseModel):
    endpoint: str = Field(..., min_length=1)


# -----------------------------
# Utilities
# -----------------------------
def _make_client(
    cfg: Dict[str, Any], transport: Optional[httpx.BaseTransport] = None
) -> HttpServiceClient:
    svc = cfg.get("service", {})
    endpoint = str(svc.get("endpoint") or "")
    if not endpoint:
        logger.warning("No service endpoint configured; requests are dropped until one is set.")
    return HttpServiceClient(
        endpoint,
        callback_url=str(svc.get("callback_url") or ""),
        api_key=svc.get("api_key") or None,
        timeout=float(svc["timeout"]) if svc.get("timeout") else None,
        transport=transport,
    )


def _make_controller(
    cfg: Dict[str, Any],
    client: Optional[ExternalServiceClient],
    registry: Optional[RunRegistry],
    events: Optional[EventLog],
    transport: Optional[httpx.BaseTransport] = None,
) -> RunController:
    access = cfg.get("access", {})
    storage = cfg.get("storage", {})
    return RunController(
        registry or RunRegistry(storage.get("runs_dir") or None),
        client or _make_client(cfg, transport),
        AccessGuard(access.get("admin"), access.get("service")),
        events=events or EventLog(storage.get("events_path") or None),
        model_config=ModelConfig.from_mapping(cfg.get("model")),
        system_prompt=str(cfg.get("agent", {}).get("system_prompt") or "").strip()
        or "You are a helpful assistant",
    )


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    client: Optional[ExternalServiceClient] = None,
    registry: Optional[RunRegistry] = None,
    events: Optional[EventLog] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    controller = _make_controller(cfg, client, registry, events, transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Let queued requests go out and release the HTTP connection pool.
        close = getattr(controller.client, "close", None)
        if close is not None:
            close()

    app = FastAPI(title="Agent Run Server", version="0.1.0", lifespan=lifespan)
    app.state.controller = controller
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.get("server", {}).get("cors_origins") or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AgentRunError)
    def agent_run_error(request: Request, exc: AgentRunError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.exception_handler(ValueError)
    def value_error(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "runs": len(controller.registry),
            "service_endpoint": controller.client.endpoint,
        }

    @app.post("/runs", response_model=RunCreated)
    def run_agent(req: RunRequest, x_caller_id: Optional[str] = Header(default=None)):
        run_id = controller.create(x_caller_id or ANONYMOUS, req.query, req.max_iterations)
        return RunCreated(run_id=run_id)

    @app.get("/runs/{run_id}")
    def get_run(run_id: int) -> Dict[str, Any]:
        with controller.registry.lock:
            return controller.get_run(run_id).to_dict()

    @app.get("/runs/{run_id}/messages/contents")
    def get_message_contents(run_id: int) -> List[str]:
        return controller.get_message_contents(run_id)

    @app.get("/runs/{run_id}/messages/roles")
    def get_message_roles(run_id: int) -> List[str]:
        return [r.value for r in controller.get_message_roles(run_id)]

    @app.get("/runs/{run_id}/finished")
    def is_finished(run_id: int) -> Dict[str, bool]:
        return {"finished": controller.is_finished(run_id)}

    @app.post("/callbacks/completion")
    def on_completion_result(
        body: CompletionCallback, x_caller_id: Optional[str] = Header(default=None)
    ) -> Dict[str, bool]:
        controller.on_completion_result(
            x_caller_id,
            body.run_id,
            CompletionResult(**body.result.model_dump()),
            body.error,
        )
        return {"ok": True}

    @app.post("/callbacks/function")
    def on_function_result(
        body: FunctionCallback, x_caller_id: Optional[str] = Header(default=None)
    ) -> Dict[str, bool]:
        controller.on_function_result(x_caller_id, body.run_id, body.result, body.error)
        return {"ok": True}

    @app.put("/admin/endpoint")
    def set_service_endpoint(
        body: EndpointUpdate, x_caller_id: Optional[str] = Header(default=None)
    ) -> Dict[str, str]:
        controller.set_service_endpoint(x_caller_id, body.endpoint)
        return {"endpoint": body.endpoint}

    return app
