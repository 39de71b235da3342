from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from openai import AsyncOpenAI

from stationthis.api.protocol import (
    CancelRunRequest,
    ErrorData,
    ErrorResponse,
    PutSpellRequest,
    RunData,
    StartRunRequest,
    WebhookAck,
)
from stationthis.config.settings import get_settings
from stationthis.gateway.invocation import ToolInvocationGateway
from stationthis.infra.errors import (
    AggregationConflict,
    DefinitionError,
    GatewayError,
    RecordStoreError,
    RunNotFoundError,
    RunStateError,
    SpellNotFoundError,
    StationThisError,
    StepResultNotFoundError,
)
from stationthis.infra.logging import setup_logging
from stationthis.notify.dispatcher import LogNotifier, NotificationDispatcher
from stationthis.notify.webhook import WebhookNotifier
from stationthis.pipeline.aggregator import RunAggregator
from stationthis.pipeline.coordinator import SpellCoordinator
from stationthis.pipeline.definitions import SpellDefinition
from stationthis.pipeline.validation import validate_spell
from stationthis.store.database import create_db_engine, ensure_schema, make_session_factory
from stationthis.store.records import PgRecordStore, RecordStore
from stationthis.tools.catalog import load_tool_catalog, register_catalog
from stationthis.tools.registry import ToolRegistry

logger = structlog.get_logger()

_STATUS_BY_ERROR: list[tuple[type[StationThisError], int]] = [
    (DefinitionError, 422),
    (RunNotFoundError, 404),
    (SpellNotFoundError, 404),
    (StepResultNotFoundError, 404),
    (RunStateError, 409),
    (AggregationConflict, 409),
    (GatewayError, 400),
    (RecordStoreError, 500),
]


def status_for(error: StationThisError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: wire store, tools and coordinator on startup."""
    settings = get_settings()
    setup_logging(json_output=settings.log_json, log_level=settings.log_level)

    # DB is mandatory; startup fails if DB/schema unavailable.
    engine = await create_db_engine(settings.database)
    await ensure_schema(engine, settings.database.schema_)
    store = PgRecordStore(make_session_factory(engine))
    logger.info("db_connected")

    engine_client = httpx.AsyncClient(timeout=settings.comfydeploy.timeout_s)
    notify_client = httpx.AsyncClient(timeout=settings.notify.webhook_timeout_s)

    # OpenAI-compatible client only when an api_key is configured
    openai_client: AsyncOpenAI | None = None
    if settings.openai.api_key:
        openai_client = AsyncOpenAI(
            api_key=settings.openai.api_key, base_url=settings.openai.base_url
        )

    registry = ToolRegistry()
    register_catalog(
        registry,
        load_tool_catalog(settings.tools.catalog_path),
        http_client=engine_client,
        comfydeploy=settings.comfydeploy,
        openai_client=openai_client,
        openai_settings=settings.openai,
    )

    dispatcher = NotificationDispatcher(
        default=LogNotifier(),
        max_attempts=settings.notify.max_delivery_attempts,
        base_delay=settings.notify.base_delay_s,
    )
    dispatcher.register(
        "webhook",
        WebhookNotifier(notify_client, default_secret=settings.notify.webhook_secret),
    )

    invocation_gateway = ToolInvocationGateway(
        store,
        webhook_url=settings.gateway.webhook_url,
        max_attempts=settings.gateway.invoke_max_attempts,
        base_delay=settings.gateway.invoke_base_delay_s,
    )
    aggregator = RunAggregator(store, max_attempts=settings.gateway.aggregation_max_attempts)

    app.state.store = store
    app.state.tool_registry = registry
    app.state.coordinator = SpellCoordinator(
        store, registry, invocation_gateway, aggregator, event_sink=dispatcher
    )
    logger.info(
        "gateway_started",
        host=settings.gateway.host,
        port=settings.gateway.port,
        tools=registry.tool_ids(),
        notifiers=dispatcher.platforms(),
    )

    yield

    # Cleanup
    await engine_client.aclose()
    await notify_client.aclose()
    if openai_client is not None:
        await openai_client.close()
    await engine.dispose()
    logger.info("db_engine_disposed")


app = FastAPI(title="StationThis Coordinator", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StationThisError)
async def _stationthis_error_handler(request: Request, exc: StationThisError) -> JSONResponse:
    status = status_for(exc)
    log = logger.error if status >= 500 else logger.warning
    log("request_error", code=exc.code, error=str(exc), path=request.url.path)
    body = ErrorResponse(error=ErrorData(code=exc.code, message=str(exc)))
    return JSONResponse(status_code=status, content=body.model_dump())


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/runs", status_code=201)
async def start_run(body: StartRunRequest, request: Request) -> RunData:
    coordinator: SpellCoordinator = request.app.state.coordinator
    store: RecordStore = request.app.state.store
    run = await coordinator.start_run(
        body.definition_id,
        initiator_id=body.initiator_id,
        parameter_overrides=body.parameter_overrides,
        platform=body.platform,
        notification_context=body.notification_context,
        kind=body.kind,
        metadata=body.metadata,
    )
    return RunData.from_run(run, await store.list_step_results(run.id))


@app.get("/runs/{run_id}")
async def get_run(run_id: str, request: Request) -> RunData:
    store: RecordStore = request.app.state.store
    run = await store.get_run(run_id)
    return RunData.from_run(run, await store.list_step_results(run_id))


@app.post("/runs/{run_id}/cancel")
async def cancel_run(
    run_id: str, request: Request, body: CancelRunRequest | None = None
) -> RunData:
    coordinator: SpellCoordinator = request.app.state.coordinator
    reason = body.reason if body is not None else CancelRunRequest().reason
    run = await coordinator.cancel_run(run_id, reason)
    return RunData.from_run(run)


@app.post("/runs/{run_id}/resume")
async def resume_run(run_id: str, request: Request) -> RunData:
    coordinator: SpellCoordinator = request.app.state.coordinator
    store: RecordStore = request.app.state.store
    run = await coordinator.resume_run(run_id)
    return RunData.from_run(run, await store.list_step_results(run_id))


@app.post("/webhooks/comfydeploy")
async def comfydeploy_webhook(
    payload: dict[str, Any], request: Request, step_result_id: str | None = None
) -> WebhookAck:
    """Engine status callback. Progress events are acknowledged and ignored."""
    coordinator: SpellCoordinator = request.app.state.coordinator
    try:
        completed = await coordinator.handle_webhook(payload, step_result_id=step_result_id)
    except AggregationConflict:
        # Step is already terminal; the engine's retry lands as a suppressed duplicate.
        logger.error(
            "webhook_aggregation_exhausted",
            step_result_id=step_result_id,
            external_ref=payload.get("run_id"),
        )
        raise
    return WebhookAck(completed=completed)


@app.put("/spells/{slug}")
async def put_spell(slug: str, body: PutSpellRequest, request: Request) -> dict[str, Any]:
    store: RecordStore = request.app.state.store
    registry: ToolRegistry = request.app.state.tool_registry
    spell = SpellDefinition(slug=slug, name=body.name, steps=body.steps)
    issues = validate_spell(spell, registry)
    if issues:
        raise DefinitionError("; ".join(str(issue) for issue in issues))
    await store.upsert_spell(spell)
    return {"slug": spell.slug, "steps": len(spell.steps)}
