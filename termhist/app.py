# termhist/app.py
"""
Local HTTP surface over the history engine.

  GET  /health
  GET  /metrics
  GET  /api/history?limit=
  GET  /api/history/search?q=&limit=
  GET  /api/history/status/{request_id}
  POST /api/history/sync
"""
import time
from contextlib import asynccontextmanager
from typing import Optional

# Load .env BEFORE termhist imports (monitoring reads env vars at import time)
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Path, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from termhist import monitoring
from termhist.engine import HistoryEngine
from termhist.schemas import (
    HistoryEntryOut,
    HistoryListResponse,
    SearchResponse,
    StatusResponse,
    SyncRequest,
    SyncResponse,
)

# instantiate the engine once; it connects in the lifespan hook
engine = HistoryEngine.from_environment()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    await engine.initialize()
    engine.start_periodic_sync()
    try:
        yield
    finally:
        await engine.close()


app = FastAPI(title="termhist local history API", lifespan=lifespan)


def _error(status_code: int, error_code: str, message: str, **details):
    return JSONResponse(
        status_code=status_code,
        content={
            "status": "error",
            "error_code": error_code,
            "message": message,
            "details": details,
        },
    )


# ---------------------------------------------------------------------------
# Metrics middleware
# ---------------------------------------------------------------------------
@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    endpoint = request.url.path
    method = request.method
    status = "500"
    try:
        response = await call_next(request)
        status = str(response.status_code)
        return response
    except Exception:
        monitoring.logger.exception("Unhandled exception in request", extra={"path": endpoint})
        raise
    finally:
        monitoring.observe_request(start, endpoint, method, status)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@app.get("/api/history")
async def list_history(limit: int = Query(50, ge=1, le=1000)):
    entries = await engine.sync.get_history(limit)
    body = HistoryListResponse(
        offline=engine.offline,
        entries=[HistoryEntryOut(**e) for e in entries],
    )
    return JSONResponse(status_code=200, content=body.model_dump())


@app.get("/api/history/search")
async def search_history(q: str = Query(..., min_length=1), limit: int = Query(10, ge=1, le=100)):
    monitoring.logger.info("Received history search", extra={"query_preview": q[:200]})
    commands = await engine.sync.search_history(q, limit)
    return JSONResponse(status_code=200, content=SearchResponse(query=q, commands=commands).model_dump())


@app.get("/api/history/status/{request_id}")
async def get_status(request_id: str = Path(..., description="Request ID to look up")):
    status = await engine.lifecycle.get_status_by_request_id(request_id)
    if status == "unknown":
        return _error(404, "E_NOT_FOUND", "Request not found", request_id=request_id)
    return JSONResponse(status_code=200, content=StatusResponse(request_id=request_id, status=status).model_dump())


@app.post("/api/history/sync")
async def trigger_sync(req: Optional[SyncRequest] = None):
    """Manual trigger for pushing the local buffer to the remote store."""
    req = req or SyncRequest()
    if engine.offline:
        return JSONResponse(
            status_code=503,
            content=SyncResponse(status="offline", offline=True).model_dump(),
        )
    try:
        report = await engine.sync_local_buffer(limit=req.limit)
    except Exception as e:
        monitoring.logger.exception("Unexpected error in /api/history/sync handler")
        return _error(500, "E_INTERNAL", "Internal server error", exception=str(e))
    body = SyncResponse(
        status="aborted" if report.aborted else "success",
        offline=False,
        **report.as_dict(),
    )
    return JSONResponse(status_code=200, content=body.model_dump())


@app.get("/health")
async def health():
    return {"status": "ok", "offline": engine.offline}


@app.get("/metrics")
async def metrics():
    if not monitoring.PROMETHEUS_ENABLED:
        return PlainTextResponse("Prometheus disabled", status_code=404)
    payload, content_type = monitoring.prometheus_metrics_response()
    return Response(content=payload, media_type=content_type)
