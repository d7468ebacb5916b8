"""FastAPI application for the aiswitch completion gateway.

Proxies OpenAI-compatible completion endpoints to the active provider,
applies its active preset, records every exchange in the audit log, and
exposes endpoints to manage providers and presets and to browse the log.

Endpoints:
- /api/v1/completions, /api/v1/chat/completions, /api/v1/models (proxy)
- /api/config/... (provider and preset management)
- /api/logs, /api/logs/{id} (audit log)
"""

import json
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from aiswitch.audit import AuditLog, AuditUnavailable
from aiswitch.config import (
    GatewayConfig,
    GatewaySelection,
    NoActiveProvider,
    SelectionError,
    load_config,
)
from aiswitch.forwarder import Forwarder, UpstreamUnavailable
from aiswitch.models import (
    ErrorDetail,
    ErrorResponse,
    LogPage,
    MessageResponse,
    PresetIn,
    PresetUpdate,
    ProviderIn,
)
from aiswitch.telemetry import logger, setup_logging
from aiswitch.usage import Route

CONFIG_PATH = os.getenv("AISWITCH_CONFIG", "config/aiswitch.config.json")

_config: Optional[GatewayConfig] = None
_selection: Optional[GatewaySelection] = None
_audit_log: Optional[AuditLog] = None
_client: Optional[httpx.AsyncClient] = None
_forwarder: Optional[Forwarder] = None


def get_config() -> GatewayConfig:
    """Return the loaded gateway configuration (lazy-init)."""
    global _config
    if _config is None:
        _config = load_config(CONFIG_PATH)
    return _config


def get_selection() -> GatewaySelection:
    """Return the lock-guarded provider selection (lazy-init from config)."""
    global _selection
    if _selection is None:
        _selection = GatewaySelection(get_config(), CONFIG_PATH)
    return _selection


def get_audit_log() -> AuditLog:
    """Return the audit log (lazy-init from config)."""
    global _audit_log
    if _audit_log is None:
        _audit_log = AuditLog(get_config().db_path)
    return _audit_log


def get_client() -> httpx.AsyncClient:
    """Return the shared upstream HTTP client."""
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=get_config().upstream_timeout)
    return _client


def get_forwarder() -> Forwarder:
    """Return the forwarding engine (lazy-init)."""
    global _forwarder
    if _forwarder is None:
        _forwarder = Forwarder(get_selection(), get_audit_log(), get_client())
    return _forwarder


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Initialize config, logging, audit log and HTTP client; drain on shutdown."""
    cfg = get_config()
    setup_logging(cfg.log_file, cfg.log_level)
    forwarder = get_forwarder()
    yield
    await forwarder.drain()
    await get_client().aclose()
    await get_audit_log().close()


app = FastAPI(title="aiswitch", version="0.1.0", lifespan=lifespan)


def _error_response(status: int, error_type: str, message: str) -> JSONResponse:
    """Build a consistent JSON error response."""
    body = ErrorResponse(error=ErrorDetail(type=error_type, message=message))
    return JSONResponse(status_code=status, content=body.model_dump())


def _message(message: str, status: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status, content=MessageResponse(message=message).model_dump()
    )


async def _read_text(request: Request) -> str:
    """Read a raw text body, unwrapping a JSON string if one was sent."""
    text = (await request.body()).decode("utf-8", errors="replace").strip()
    if text.startswith('"'):
        try:
            decoded = json.loads(text)
        except ValueError:
            return text
        if isinstance(decoded, str):
            return decoded
    return text


async def _proxy(route: Route, body: Dict[str, Any]) -> Response:
    """Forward one completion request and map domain errors to envelopes.

    An audit row must exist before dispatch, so a failed audit insert refuses
    the request with 503 instead of forwarding it unaudited.
    """
    try:
        result = await get_forwarder().forward(route, body)
    except NoActiveProvider as exc:
        return _error_response(503, "no_active_provider", exc.detail)
    except AuditUnavailable as exc:
        logger.error("Audit log unavailable: %s", exc.detail)
        return _error_response(503, "audit_unavailable", exc.detail)
    except UpstreamUnavailable as exc:
        return _error_response(503, "upstream_unavailable", exc.detail)

    if isinstance(result, str):
        return Response(content=result, media_type="application/json")
    return StreamingResponse(result, media_type="text/event-stream")


@app.post("/api/v1/completions", response_model=None)
async def proxy_completions(body: Dict[str, Any]) -> Response:
    """Forward a text completion request to the active provider."""
    return await _proxy(Route.COMPLETIONS, body)


@app.post("/api/v1/chat/completions", response_model=None)
async def proxy_chat_completions(body: Dict[str, Any]) -> Response:
    """Forward a chat completion request to the active provider."""
    return await _proxy(Route.CHAT_COMPLETIONS, body)


@app.get("/api/v1/models", response_model=None)
async def proxy_models() -> JSONResponse:
    """List the provider's models, narrowed to the preset's model if pinned."""
    try:
        data = await get_forwarder().list_models()
    except NoActiveProvider as exc:
        return _error_response(503, "no_active_provider", exc.detail)
    except UpstreamUnavailable as exc:
        return _error_response(503, "upstream_unavailable", exc.detail)
    return JSONResponse(status_code=200, content=data)


# --- Audit log ---


@app.get("/api/logs", response_model=None)
async def get_logs(
    page: Optional[str] = None,
    size: Optional[str] = None,
    sort: Optional[str] = None,
) -> JSONResponse:
    """Return one page of completed exchanges."""
    page_number = _parse_int(page, 0)
    page_size = _parse_int(size, 10)
    total, summaries = await get_audit_log().list_records(page_number, page_size, sort)
    body = LogPage(rowCount=total, logs=[s.to_dict() for s in summaries])
    return JSONResponse(status_code=200, content=body.model_dump())


@app.get("/api/logs/{record_id}", response_model=None)
async def get_log(record_id: int) -> JSONResponse:
    """Return one exchange with its request and response bodies."""
    record = await get_audit_log().get_record(record_id)
    if record is None:
        return _error_response(404, "not_found", "Log entry not found.")
    return JSONResponse(status_code=200, content=record.to_dict())


def _parse_int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


# --- Provider configuration ---


@app.get("/api/config", response_model=None)
async def get_full_config() -> Dict[str, Any]:
    config = await get_selection().snapshot()
    return {
        "providers": [p.to_dict() for p in config.providers],
        "active_provider_id": config.active_provider_id,
    }


@app.get("/api/config/providers", response_model=None)
async def get_providers() -> List[Dict[str, Any]]:
    config = await get_selection().snapshot()
    return [p.to_dict() for p in config.providers]


@app.get("/api/config/active-provider", response_model=None)
async def get_active_provider() -> Optional[str]:
    config = await get_selection().snapshot()
    return config.active_provider_id


@app.post("/api/config/active-provider", response_model=None)
async def set_active_provider(request: Request) -> JSONResponse:
    """Select the active provider; an empty body clears the selection."""
    provider_id = await _read_text(request)
    try:
        await get_selection().set_active_provider(provider_id)
    except SelectionError as exc:
        return _message(exc.detail, exc.status_code)
    return _message("Service updated successfully")


@app.post("/api/config/providers/{provider_id}", response_model=None)
async def add_provider(provider_id: str, provider: ProviderIn) -> JSONResponse:
    try:
        await get_selection().add_provider(provider.to_profile(provider_id))
    except SelectionError as exc:
        return _message(exc.detail, exc.status_code)
    return _message("Service added successfully")


@app.put("/api/config/providers/{provider_id}", response_model=None)
async def update_provider(provider_id: str, changes: Dict[str, Any]) -> JSONResponse:
    try:
        await get_selection().update_provider(provider_id, changes)
    except SelectionError as exc:
        return _message(exc.detail, exc.status_code)
    return _message("Service updated successfully")


@app.delete("/api/config/providers/{provider_id}", response_model=None)
async def delete_provider(provider_id: str) -> JSONResponse:
    try:
        await get_selection().delete_provider(provider_id)
    except SelectionError as exc:
        return _message(exc.detail, exc.status_code)
    return _message("Service deleted successfully")


@app.post("/api/config/providers/{provider_id}/active-preset", response_model=None)
async def set_active_preset(provider_id: str, request: Request) -> JSONResponse:
    """Activate a preset; an empty body clears it."""
    preset_id = await _read_text(request)
    try:
        await get_selection().set_active_preset(provider_id, preset_id)
    except SelectionError as exc:
        return _message(exc.detail, exc.status_code)
    if not preset_id:
        return _message("Preset removed successfully")
    return _message("Preset updated successfully")


@app.post("/api/config/providers/{provider_id}/presets", response_model=None)
async def add_preset(provider_id: str, preset: PresetIn) -> JSONResponse:
    try:
        await get_selection().add_preset(provider_id, preset.to_preset())
    except SelectionError as exc:
        return _message(exc.detail, exc.status_code)
    return _message("Preset added successfully")


@app.put(
    "/api/config/providers/{provider_id}/presets/{preset_id}", response_model=None
)
async def update_preset(
    provider_id: str, preset_id: str, changes: PresetUpdate
) -> JSONResponse:
    try:
        await get_selection().update_preset(
            provider_id, preset_id, name=changes.name, overrides=changes.overrides
        )
    except SelectionError as exc:
        return _message(exc.detail, exc.status_code)
    return _message("Preset updated successfully")


@app.exception_handler(422)
async def validation_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """Convert FastAPI's validation errors into our error envelope format."""
    return _error_response(
        422,
        "validation_error",
        "Request validation failed: {}".format(exc),
    )
