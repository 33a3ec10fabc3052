# moderation_gateway/main.py
"""
Core FastAPI application, including middleware, endpoints, and audit logging.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Awaitable, List, TypeVar

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Receive, Scope, Send
from dotenv import load_dotenv

# Local module imports
from . import config, schemas
from .analyzer import EmptyBatchError, MessageAnalyzer, build_analyzer

load_dotenv()

# --- Logging ---
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)
audit_log = logging.getLogger("audit")

# --- App Setup ---
settings = config.load_config()

ANALYZE_PATHS = ("/api/analyze", "/api/analyze/detailed")
CORS_METHODS = "POST, OPTIONS"
CORS_HEADERS = "Content-Type"
# Status sent (to nobody) once the client has gone away.
CLIENT_CLOSED_REQUEST = 499

T = TypeVar("T")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Builds the backend once; a misconfigured backend aborts startup."""
    app.state.analyzer = build_analyzer(settings)
    try:
        yield
    finally:
        await app.state.analyzer.backend.aclose()


class PreflightMiddleware:
    """Answers every OPTIONS request on the analyze routes with an empty 200."""

    def __init__(self, app: ASGIApp, paths=ANALYZE_PATHS, allow_origins=("*",)):
        self.app = app
        self.paths = set(paths)
        self.allow_origins = list(allow_origins)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["method"] != "OPTIONS" or scope["path"] not in self.paths:
            await self.app(scope, receive, send)
            return

        headers = {
            "Access-Control-Allow-Methods": CORS_METHODS,
            "Access-Control-Allow-Headers": CORS_HEADERS,
        }
        origin = Headers(scope=scope).get("origin")
        if "*" in self.allow_origins:
            headers["Access-Control-Allow-Origin"] = "*"
        elif origin in self.allow_origins:
            headers["Access-Control-Allow-Origin"] = origin
            headers["Vary"] = "Origin"
        await Response(status_code=200, headers=headers)(scope, receive, send)


app = FastAPI(title="Moderation Gateway", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings["server"]["cors_allow_origins"],
    allow_methods=["POST", "OPTIONS"],
    allow_headers=[CORS_HEADERS],
)
# Added last so it wraps CORSMiddleware and sees OPTIONS first.
app.add_middleware(PreflightMiddleware, allow_origins=settings["server"]["cors_allow_origins"])


def audit_event(kind: str, payload: dict):
    """Logs an audit event if enabled."""
    if not settings["audit"]["enabled"]:
        return
    payload = dict(payload)
    payload["ts"] = int(time.time())
    audit_log.info({"event": kind, **payload})


def get_analyzer(request: Request) -> MessageAnalyzer:
    return request.app.state.analyzer


class ClientDisconnected(Exception):
    """The client closed the connection before the response was ready."""


async def _wait_for_disconnect(request: Request) -> None:
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


async def unless_disconnected(request: Request, work: Awaitable[T]) -> T:
    """Awaits ``work``, cancelling it as soon as the client disconnects.

    The request body must already have been read.
    """
    task = asyncio.ensure_future(work)
    watcher = asyncio.ensure_future(_wait_for_disconnect(request))
    try:
        await asyncio.wait({task, watcher}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for t in (task, watcher):
            t.cancel()
    if not task.done() or task.cancelled():
        # Let the cancellation reach every in-flight backend call.
        await asyncio.gather(task, return_exceptions=True)
        raise ClientDisconnected()
    return task.result()


# --- Error handlers ---

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": "Invalid request body"})


@app.exception_handler(ClientDisconnected)
async def client_disconnected_handler(request: Request, exc: ClientDisconnected):
    logger.warning("Client disconnected from %s; pending analyses cancelled", request.url.path)
    return Response(status_code=CLIENT_CLOSED_REQUEST)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# --- Endpoints ---

@app.get("/", response_class=PlainTextResponse)
def root():
    """Liveness check."""
    return "Content moderation service is running"


@app.get("/health")
def health(analyzer: MessageAnalyzer = Depends(get_analyzer)):
    return {"status": "ok", "backend": analyzer.backend.kind}


@app.post("/api/analyze", response_model=List[schemas.AnalysisResult])
async def analyze(
    req: schemas.AnalyzeRequest,
    request: Request,
    analyzer: MessageAnalyzer = Depends(get_analyzer),
):
    """Moderates a batch; messages whose analysis failed are left out."""
    try:
        results = await unless_disconnected(request, analyzer.analyze_batch(req.messages))
    except EmptyBatchError as e:
        raise HTTPException(status_code=400, detail=str(e))
    audit_event("analyze", {
        "received": len(req.messages),
        "analyzed": len(results),
        "dropped": len(req.messages) - len(results),
    })
    return results


@app.post(
    "/api/analyze/detailed",
    response_model=List[schemas.AnalysisOutcome],
    response_model_exclude_none=True,
)
async def analyze_detailed(
    req: schemas.AnalyzeRequest,
    request: Request,
    analyzer: MessageAnalyzer = Depends(get_analyzer),
):
    """Moderates a batch, returning one tagged outcome per message in input order."""
    try:
        outcomes = await unless_disconnected(request, analyzer.analyze_outcomes(req.messages))
    except EmptyBatchError as e:
        raise HTTPException(status_code=400, detail=str(e))
    failed = sum(1 for o in outcomes if o.error is not None)
    audit_event("analyze_detailed", {
        "received": len(req.messages),
        "analyzed": len(outcomes) - failed,
        "dropped": failed,
    })
    return outcomes


def run():
    """Console entry point: serves the app with uvicorn."""
    import uvicorn

    host, port = settings["server"]["host"], settings["server"]["port"]
    logger.info("Server starting on %s:%s", host, port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run()
