"""
LLM gateway HTTP service.

Accepts Responses-API requests whose `model` names either a concrete
`provider/model` pair or an `intent/policy` route, resolves a target from the
ranked catalog, and relays the provider's output as a response resource or an
SSE event stream.
"""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from auto_classifier import AutoClassifier, ClassificationCache
from catalog import CatalogRefresher, CatalogStore
from config import load_config
from credentials import CredentialsService, EnvSecretStore
from errors import CredentialsError, DataFetchError, ProviderInvocationError
from intent_resolver import IntentResolver
from logger import setup_logging
from options import has_structured_output
from orchestrator import FallbackOrchestrator, StreamHandle
from providers import ProviderRegistry, build_classifier_complete
from request_context import ApiKeyVerifier, AuthenticationError, resolve_request_context
from sse_handler import encode_sse_done, encode_sse_event
from utils import dump_config, load_env_files

load_env_files()
config = load_config()
config.validate()
log = setup_logging(config.log_path, config.log_level)
dump_config(config)

catalog_store = CatalogStore(config.data_path)
catalog_refresher = CatalogRefresher(config)
credentials_service = CredentialsService(EnvSecretStore())
provider_registry = ProviderRegistry.default(config)
classification_cache = ClassificationCache(
    max_entries_per_user=config.classification_cache_max_entries,
    ttl_s=config.classification_cache_ttl_s,
)
auto_classifier = AutoClassifier(
    build_classifier_complete(
        provider_registry,
        credentials_service,
        provider=config.classifier_provider,
        model=config.classifier_model,
        user_id=config.default_user_id,
    ),
    retries=config.classifier_retries,
)
intent_resolver = IntentResolver(catalog_store, auto_classifier)
orchestrator = FallbackOrchestrator(
    intent_resolver,
    credentials_service,
    provider_registry,
    cache=classification_cache,
)
api_key_verifier: Optional[ApiKeyVerifier] = ApiKeyVerifier(config) if config.backend_url else None


def error_response(
    status_code: int,
    message: str,
    *,
    type_: str = "invalid_request_error",
    code: Optional[str] = None,
    param: Optional[str] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"type": type_, "code": code, "message": message, "param": param}},
    )


async def refresh_catalog_loop() -> None:
    """Refresh catalog data whenever it is older than CATALOG_TTL_S."""
    interval = max(60, min(config.catalog_ttl_s, 3600))
    while True:
        try:
            await catalog_refresher.refresh_if_stale()
        except DataFetchError as e:
            log.error("Catalog refresh failed reason=%s err=%s", e.reason, e.message)
        except OSError as e:
            log.error("Catalog refresh could not write data path=%s err=%s", config.data_path, e)
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start the catalog refresh job when enabled; stop it on shutdown."""
    refresh_task: Optional[asyncio.Task[None]] = None
    if config.catalog_refresh_on_startup:
        refresh_task = asyncio.create_task(refresh_catalog_loop(), name="llm_gateway.catalog_refresh")

    yield

    if refresh_task is not None:
        refresh_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await refresh_task


app = FastAPI(
    title="llm-gateway",
    version="0.3.0",
    lifespan=lifespan,
)


@app.get("/healthz")
async def healthz() -> Dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/v1/models")
async def v1_models() -> Response:
    """Catalog slugs with the provider targets each resolves to."""
    try:
        catalog = await catalog_store.get_catalog()
    except DataFetchError as e:
        log.warning("/v1/models catalog unavailable reason=%s err=%s", e.reason, e.message)
        return error_response(503, e.message, type_="server_error", code=e.reason)

    data = [
        {
            "id": slug,
            "object": "model",
            "owned_by": "llm-gateway",
            "targets": [t.to_dict() for t in targets],
        }
        for slug, targets in catalog.get_catalog().items()
    ]
    log.info("/v1/models slugs=%d", len(data))
    return JSONResponse({"object": "list", "data": data})


def _check_request_size(request: Request) -> Optional[JSONResponse]:
    cl = request.headers.get("content-length")
    if not cl:
        return None
    try:
        n = int(cl)
    except ValueError:
        return error_response(400, f"Invalid Content-Length header: {cl!r}")
    if n < 0:
        return error_response(400, "Invalid Content-Length: must be non-negative")
    if n > config.max_request_bytes:
        return error_response(413, f"Request too large: {n} bytes (max {config.max_request_bytes})")
    return None


def _validate_body(body: Any) -> Optional[JSONResponse]:
    if not isinstance(body, dict):
        return error_response(400, "Invalid JSON body: expected object")
    model = body.get("model")
    if not isinstance(model, str) or not model.strip():
        return error_response(400, "Invalid request: 'model' must be a non-empty string", param="model")
    if body.get("input") in (None, "", []):
        return error_response(400, "Invalid request: 'input' is required", param="input")
    if body.get("stream") and has_structured_output(body):
        return error_response(
            400,
            "Structured output (text.format json_schema) is not supported with stream=true",
            param="text.format",
        )
    return None


def _sse_response(handle: StreamHandle, req_id: str) -> StreamingResponse:
    async def gen() -> AsyncGenerator[bytes, None]:
        count = 0
        async for event in orchestrator.stream_events(handle):
            count += 1
            yield encode_sse_event(event).encode("utf-8")
        yield encode_sse_done().encode("utf-8")
        log.info("SSE done req_id=%s events=%d", req_id, count)

    return StreamingResponse(
        gen(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.post("/v1/responses")
async def v1_responses(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> Response:
    """Create a model response, streamed or not."""
    too_large = _check_request_size(request)
    if too_large is not None:
        return too_large

    try:
        ctx = await resolve_request_context(config, api_key_verifier, authorization)
    except AuthenticationError as e:
        return error_response(401, str(e), type_="authentication_error", code="invalid_api_key")

    try:
        body = await request.json()
    except ValueError:
        return error_response(400, "Invalid JSON body")
    invalid = _validate_body(body)
    if invalid is not None:
        return invalid

    req_id = (
        (request.headers.get("x-request-id") or "").strip()
        or (request.headers.get("x-correlation-id") or "").strip()
        or uuid.uuid4().hex
    )
    stream = bool(body.get("stream"))
    log.info(
        "Incoming response req_id=%s user_id=%s model=%r stream=%s",
        req_id,
        ctx.user_id,
        body.get("model"),
        stream,
    )

    try:
        if stream:
            handle = await orchestrator.open_stream(body, ctx)
            return _sse_response(handle, req_id)
        resource = await orchestrator.execute(body, ctx)
    except CredentialsError as e:
        log.warning("Credentials error req_id=%s reason=%s err=%s", req_id, e.reason, e.message)
        return error_response(400, e.message, code=e.reason)
    except ProviderInvocationError as e:
        log.warning("Invalid input req_id=%s reason=%s err=%s", req_id, e.reason, e.message)
        return error_response(e.status_code or 400, e.message, code=e.reason)

    log.info("Response done req_id=%s status=%s", req_id, resource["status"])
    return JSONResponse(resource)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.port, reload=False)
