from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import (
    JSONResponse,
    PlainTextResponse,
    Response,
    StreamingResponse,
)

from copilot_gateway.context import GatewayContext, build_gateway_context
from copilot_gateway.errors import GatewayError
from copilot_gateway.gateway.anthropic_translation import anthropic_request_to_openai
from copilot_gateway.gateway.dispatch import (
    ChatRequest,
    CompleteResponse,
    DispatchOrchestrator,
    Target,
    error_envelope,
)
from copilot_gateway.reporting import (
    build_health_report,
    format_accounts_simple,
    format_accounts_table,
)
from copilot_gateway.settings import get_settings

app = FastAPI(
    title="Copilot Gateway",
    description="OpenAI- and Anthropic-compatible gateway in front of GitHub Copilot.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    context = build_gateway_context(settings)
    await context.start()
    app.state.settings = settings
    app.state.gateway = context
    logger.info(
        "startup complete gateway_config_path=%s data_dir=%s",
        settings.gateway_config_path,
        settings.data_path,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    context: GatewayContext | None = getattr(app.state, "gateway", None)
    if context is not None:
        await context.shutdown()
    logger.info("shutdown complete")


def _dispatcher() -> DispatchOrchestrator:
    context: GatewayContext = app.state.gateway
    return context.dispatcher


def _target_for_path(path: str) -> Target:
    return "anthropic" if path.startswith("/v1/messages") else "openai"


async def _read_json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Expected JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object request body.")
    return payload


async def _dispatch_chat(chat_request: ChatRequest) -> Response:
    result = await _dispatcher().dispatch_chat(chat_request)
    if isinstance(result, CompleteResponse):
        headers = {"x-copilot-cache": "hit" if result.from_cache else "miss"}
        if result.account_id:
            headers["x-copilot-account"] = result.account_id
        return JSONResponse(content=result.body, headers=headers)
    headers = {"cache-control": "no-cache"}
    if result.account_id:
        headers["x-copilot-account"] = result.account_id
    return StreamingResponse(
        content=result.events,
        media_type=result.media_type,
        headers=headers,
    )


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    payload = await _read_json_object(request)
    return await _dispatch_chat(ChatRequest(payload=payload, target="openai"))


@app.post("/v1/messages")
async def messages(request: Request) -> Response:
    payload = await _read_json_object(request)
    translated = anthropic_request_to_openai(payload)
    return await _dispatch_chat(ChatRequest(payload=translated, target="anthropic"))


@app.post("/v1/embeddings")
async def embeddings(request: Request) -> dict[str, Any]:
    payload = await _read_json_object(request)
    return await _dispatcher().dispatch_embeddings(payload)


@app.get("/health")
async def health() -> JSONResponse:
    context: GatewayContext = app.state.gateway
    report = build_health_report(
        pool_status=context.dispatcher.pool_status(),
        cache_stats=context.dispatcher.cache_stats(),
        uptime_seconds=context.uptime_seconds,
    )
    status_code = 503 if report["status"] == "unhealthy" else 200
    return JSONResponse(status_code=status_code, content=report)


@app.get("/account-limits")
async def account_limits(format: str = "json") -> Response:
    dispatcher = _dispatcher()
    status = dispatcher.pool_status()
    accounts = dispatcher.pool_accounts_status()
    strategy = status["strategy"] if status["enabled"] else None
    if format == "table":
        return PlainTextResponse(
            format_accounts_table(accounts, strategy=strategy, current_id=status["current_account"])
        )
    if format == "simple":
        return PlainTextResponse(
            format_accounts_simple(accounts, strategy=strategy, current_id=status["current_account"])
        )
    return JSONResponse(content={"status": "ok", **status, "accounts": accounts})


@app.get("/api/cache/stats")
async def cache_stats() -> dict[str, Any]:
    return {"status": "ok", "stats": _dispatcher().cache_stats()}


@app.post("/api/cache/clear")
async def cache_clear() -> dict[str, Any]:
    _dispatcher().cache_clear()
    return {"status": "ok", "message": "Cache cleared"}


@app.delete("/api/cache/{key}")
async def cache_delete(key: str) -> JSONResponse:
    if not _dispatcher().cache_delete(key):
        return JSONResponse(
            status_code=404,
            content={"status": "error", "error": "Cache entry not found"},
        )
    return JSONResponse(content={"status": "ok", "message": "Cache entry deleted"})


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    target = _target_for_path(request.url.path)
    status_code, body = error_envelope(exc, target)
    logger.warning(
        "gateway_error path=%s status=%d error_type=%s error=%s",
        request.url.path,
        status_code,
        exc.__class__.__name__,
        exc.message,
    )
    headers: dict[str, str] = {}
    retry_after = getattr(exc, "retry_after_seconds", None)
    if retry_after is not None:
        headers["retry-after"] = str(max(1, int(retry_after + 0.999)))
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def run() -> None:
    import uvicorn

    uvicorn.run("copilot_gateway.main:app", host="0.0.0.0", port=4141, reload=False)


if __name__ == "__main__":
    run()
