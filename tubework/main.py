import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from . import redis_helper
from .api import jobs as jobs_api
from .errors import QueueConnectionError
from .metrics import metrics_response, request_latency_seconds

app = FastAPI(title="tubework control plane")

app.include_router(jobs_api.router)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    try:
        return await call_next(request)
    finally:
        request_latency_seconds.observe(time.time() - start)


@app.exception_handler(QueueConnectionError)
async def queue_unavailable(request: Request, exc: QueueConnectionError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/readyz")
async def readyz():
    client = await redis_helper.get_redis()
    try:
        await client.ping()
    except RedisError as exc:
        return JSONResponse(status_code=503, content={"ready": False, "detail": str(exc)})
    return {"ready": True}


@app.get("/metrics")
async def metrics():
    return metrics_response()
