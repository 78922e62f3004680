import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from droidops.constants import DEFAULT_HOST, DEFAULT_PORT, MAX_BODY_BYTES, SERVICE_VERSION
from droidops.errors import CapacityError, DroidOpsError
from droidops.routes import api
from droidops.routes import dashboard
from droidops.services.orchestrator import shutdown_orchestrator

LOGGER = logging.getLogger("droidops.main")


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    await shutdown_orchestrator()


app = FastAPI(title="droidops Android Orchestration", version=SERVICE_VERSION, lifespan=lifespan)
app.include_router(api.router)
app.include_router(dashboard.router)


def _error_response(exc: DroidOpsError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "reason": exc.reason})


@app.exception_handler(DroidOpsError)
async def handle_droidops_error(_: Request, exc: DroidOpsError) -> JSONResponse:
    if exc.status_code >= 500:
        LOGGER.warning("%s failed: %s", exc.reason, exc.message)
    return _error_response(exc)


@app.exception_handler(RequestValidationError)
async def handle_request_validation(_: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "invalid request")
        detail = f"{location}: {message}" if location else message
    else:
        detail = "invalid request"
    return JSONResponse(status_code=400, content={"error": detail, "reason": "validation_error"})


class BodySizeLimitMiddleware:
    """Reject oversized request bodies before they reach a route.

    A declared ``Content-Length`` is checked up front. Bodies sent without one
    are buffered and counted as they arrive, then replayed to the app.
    """

    def __init__(self, app: ASGIApp, max_bytes: int = MAX_BODY_BYTES) -> None:
        self.app = app
        self.max_bytes = max_bytes

    async def _reject(self, scope: Scope, receive: Receive, send: Send) -> None:
        LOGGER.warning("Rejected %s %s: body exceeds %d bytes", scope.get("method"), scope.get("path"), self.max_bytes)
        response = _error_response(CapacityError(f"Request body exceeds {self.max_bytes} bytes"))
        await response(scope, receive, send)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        length = Headers(scope=scope).get("content-length")
        if length is not None:
            try:
                declared = int(length)
            except ValueError:
                declared = 0
            if declared > self.max_bytes:
                await self._reject(scope, receive, send)
                return
            await self.app(scope, receive, send)
            return

        chunks = []
        received = 0
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] != "http.request":
                return
            body = message.get("body", b"")
            received += len(body)
            if received > self.max_bytes:
                await self._reject(scope, receive, send)
                return
            chunks.append(body)
            more_body = message.get("more_body", False)

        replayed = False

        async def replay() -> Message:
            nonlocal replayed
            if not replayed:
                replayed = True
                return {"type": "http.request", "body": b"".join(chunks), "more_body": False}
            return await receive()

        await self.app(scope, replay, send)


app.add_middleware(BodySizeLimitMiddleware, max_bytes=MAX_BODY_BYTES)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    host = os.getenv("DROIDOPS_HOST", DEFAULT_HOST)
    port = int(os.getenv("DROIDOPS_PORT", str(DEFAULT_PORT)))
    LOGGER.info("Starting droidops on http://%s:%s", host, port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
