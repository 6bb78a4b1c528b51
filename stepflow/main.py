import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .db import Database
from .errors import ToolError, error_envelope, http_status_for
from .messaging import MessagingClient
from .orchestrator import Orchestrator
from .plan_executor import RunOptions
from .reasoner import ReasonerClient
from .schemas import CommandRequest, PlanRequest, PlanRunReport, RetryCommandRequest, RunRequestOptions
from .tool_registry import ToolRegistry
from .tools.creation import Backend

logger = logging.getLogger("uvicorn.error")


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def _options(body: RunRequestOptions) -> RunOptions:
    return RunOptions.from_request(
        quoted_message_id=body.quoted_message_id,
        user_text=body.user_text,
        audio_already_transcribed=body.audio_already_transcribed,
        skip_ack_tools=body.skip_ack_tools,
    )


def _outcome_payload(outcome: Any) -> Dict[str, Any]:
    if isinstance(outcome, PlanRunReport):
        return {"kind": "multi", **outcome.summary()}
    return {"kind": "single", "result": outcome.model_dump(exclude_none=True)}


router = APIRouter()


@router.get("/health")
async def health(orchestrator: Orchestrator = Depends(get_orchestrator)):
    return {"ok": True, "tools": orchestrator.registry.names()}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="settings body must be an object")
    new_settings = AppSettings(**{**settings.model_dump(), **body})
    save_settings(new_settings, config_path=config_path)
    await db.save_config(new_settings.model_dump())
    # Running components keep their references; restart picks up structural changes.
    request.app.state.settings = new_settings
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.post("/api/conversations/{conversation_id}/plan")
async def run_plan(
    conversation_id: str,
    body: PlanRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    report = await orchestrator.run_plan(conversation_id, body.plan, _options(body))
    return _outcome_payload(report)


@router.post("/api/conversations/{conversation_id}/command")
async def run_command(
    conversation_id: str,
    body: CommandRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.run_command(
        conversation_id, body.tool, body.args, _options(body), instruction=body.instruction
    )
    return _outcome_payload(result)


@router.post("/api/conversations/{conversation_id}/retry")
async def retry_last(
    conversation_id: str,
    body: RetryCommandRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.retry(conversation_id, body, _options(body))
    return _outcome_payload(outcome)


@router.get("/api/conversations/{conversation_id}/last-command")
async def last_command(conversation_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    command = await orchestrator.ledger.get_last_command(conversation_id)
    if command is None:
        raise HTTPException(status_code=404, detail="no command recorded")
    return command.model_dump(mode="json")


async def tool_error_handler(request: Request, exc: ToolError) -> JSONResponse:
    logger.warning("%s error on %s: %s", exc.kind, request.url.path, exc)
    return JSONResponse(status_code=http_status_for(exc), content=error_envelope(exc))


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    channel: Optional[Any] = None,
    reasoner: Optional[Any] = None,
    backends: Optional[Dict[str, Dict[str, Backend]]] = None,
    registry: Optional[ToolRegistry] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        await app.state.db.save_config(app.state.settings.to_safe_dict())
        try:
            yield
        finally:
            for client in (app.state.channel, app.state.reasoner):
                close = getattr(client, "close", None)
                if close is not None:
                    await close()

    app = FastAPI(title="stepflow orchestrator", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.channel = channel or MessagingClient(
        settings.messaging.base_url,
        settings.messaging.api_token,
        send_delay_ms=settings.messaging.send_delay_ms,
        timeout=settings.messaging.timeout_s,
    )
    if reasoner is None and settings.reasoner_endpoint.base_url:
        reasoner = ReasonerClient(
            settings.reasoner_endpoint.base_url,
            settings.reasoner_endpoint.model_id,
            api_key=settings.reasoner_api_key,
        )
    app.state.reasoner = reasoner
    app.state.orchestrator = Orchestrator(
        settings,
        app.state.channel,
        reasoner=reasoner,
        backends=backends,
        registry=registry,
    )
    app.state.config_path = config_path or CONFIG_PATH
    app.add_exception_handler(ToolError, tool_error_handler)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("STEPFLOW_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "stepflow.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
