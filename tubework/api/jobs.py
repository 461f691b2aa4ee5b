from typing import List

from fastapi import APIRouter, Depends, HTTPException

from .. import metrics, redis_helper
from ..auth import get_settings, require_api_key
from ..config import WorkerConfig
from ..errors import InvalidArgumentError, NotSerializableError, QueueConnectionError
from ..queue import RedisQueueConnection
from ..schemas import JobCreate, JobResponse, TubeStats

router = APIRouter()


async def get_queue() -> RedisQueueConnection:
    client = await redis_helper.get_redis()
    return RedisQueueConnection(client=client, url=get_settings().redis_url)


@router.post("/jobs", response_model=JobResponse)
async def create_job(job: JobCreate, authorized: bool = Depends(require_api_key),
                     queue: RedisQueueConnection = Depends(get_queue)):
    settings = get_settings()
    config = WorkerConfig(queue=queue, app_version=settings.app_version, default_tube=settings.tube)
    codec = config.codec
    try:
        target = codec.decode(job.target)
        args = [codec.decode(a) for a in job.args]
        job_id = await config.enqueuer().submit(target, job.operation, args, job.options)
    except (NotSerializableError, InvalidArgumentError) as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except QueueConnectionError as exc:
        metrics.error_count.inc()
        raise HTTPException(status_code=503, detail=str(exc))
    stats = await queue.stats(job_id)
    return JobResponse(job_id=job_id, status=stats["state"], tube=stats.get("tube"))


@router.get("/jobs/{job_id}")
async def get_job(job_id: int, queue: RedisQueueConnection = Depends(get_queue)):
    stats = await queue.stats(job_id)
    if stats["state"] == "deleted":
        raise HTTPException(status_code=404, detail="job not found")
    return stats


@router.post("/jobs/{job_id}/kick")
async def kick_job(job_id: int, authorized: bool = Depends(require_api_key),
                   queue: RedisQueueConnection = Depends(get_queue)):
    if not await queue.kick(job_id):
        raise HTTPException(status_code=404, detail="no buried job with that id")
    return {"ok": True}


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: int, authorized: bool = Depends(require_api_key),
                     queue: RedisQueueConnection = Depends(get_queue)):
    if not await queue.discard(job_id):
        raise HTTPException(status_code=409, detail="job is leased or does not exist")
    return {"ok": True}


@router.get("/tubes", response_model=List[str])
async def list_tubes(queue: RedisQueueConnection = Depends(get_queue)):
    return await queue.tubes()


@router.get("/tubes/{tube}", response_model=TubeStats)
async def tube_stats(tube: str, queue: RedisQueueConnection = Depends(get_queue)):
    stats = await queue.tube_stats(tube)
    return TubeStats(
        name=tube,
        ready=stats["current-jobs-ready"],
        delayed=stats["current-jobs-delayed"],
        reserved=stats["current-jobs-reserved"],
        buried=stats["current-jobs-buried"],
    )
