from __future__ import annotations

import logging
from contextlib import AsyncExitStack
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .backend import BackendClient
from .config import settings
from .errors import BackendError, ConversionError, ErrorType, error_body, status_for
from .logging_setup import setup_logging
from .streaming import StreamTranslator, translate_stream
from .transform import anthropic_to_openai_payload, openai_to_anthropic_response


setup_logging(settings.debug)
logger = logging.getLogger("msgbridge.main")

app = FastAPI(title="Messages Bridge")

# Shared backend client (connection pooling, optional HTTP/2)
backend = BackendClient(settings)


def _error_response(error: ConversionError) -> JSONResponse:
    return JSONResponse(status_code=status_for(error.type), content=error_body(error))


@app.post("/v1/messages")
async def messages(
    request: Request,
    x_api_key: Optional[str] = Header(default=None, alias="x-api-key"),
    authorization: Optional[str] = Header(default=None, alias="authorization"),
):
    try:
        body = await request.json()
    except ValueError:
        return _error_response(ConversionError(ErrorType.INVALID_REQUEST, "Invalid JSON body"))

    converted = anthropic_to_openai_payload(body, mapping=settings.model_mapping, image_mode=settings.image_mode)
    if not converted.success:
        logger.info("Rejected request: %s", converted.error.message)
        return _error_response(converted.error)
    payload = converted.value
    # Always echo the client's model string outward, not the mapped backend id
    requested_model = body["model"]
    headers = backend.headers(x_api_key, authorization)
    logger.debug("model %s -> %s (stream=%s)", requested_model, payload["model"], payload.get("stream"))

    if not payload.get("stream"):
        try:
            data = await backend.create(payload, headers)
        except BackendError as e:
            logger.warning("Backend error (non-stream): %s", e.message)
            return _error_response(e.to_conversion_error())
        result = openai_to_anthropic_response(data, requested_model=requested_model)
        if not result.success:
            return _error_response(result.error)
        return JSONResponse(content=result.value)

    # Streaming path: open upstream first so status errors still get a JSON error document
    stack = AsyncExitStack()
    try:
        lines = await stack.enter_async_context(backend.stream(payload, headers))
    except BackendError as e:
        await stack.aclose()
        logger.warning("Backend error (stream): %s", e.message)
        return _error_response(e.to_conversion_error())

    translator = StreamTranslator(requested_model)

    async def event_stream() -> AsyncIterator[bytes]:
        # Closing this generator (client disconnect) closes the upstream stream too
        try:
            async for frame in translate_stream(lines, translator):
                yield frame
        finally:
            await stack.aclose()

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@app.get("/")
async def root():
    return {"ok": True, **settings.describe()}


@app.get("/v1/models")
async def list_models():
    models_data = [
        {"id": pattern, "object": "model", "created": 0, "owned_by": "msgbridge"}
        for pattern in settings.model_mapping.patterns
    ]
    return JSONResponse(content={"object": "list", "data": models_data})


@app.on_event("shutdown")
async def _shutdown_close_client():
    await backend.aclose()
