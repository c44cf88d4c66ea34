import logging
from typing import List
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from features.common.models.location_types import DepthReading
from features.depth.models.depth_types import BatchProcessResponse, ProcessedDepthReading
from features.depth.services.depth_pipeline import DepthProcessingPipeline
from features.offline.services.sync_queue import SyncQueue

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/depth",
    tags=["Depth"]
)

MAX_BATCH = 500

def get_pipeline(request: Request) -> DepthProcessingPipeline:
    """Get DepthProcessingPipeline instance from app state."""
    return request.app.state.depth_pipeline

def get_sync_queue(request: Request) -> SyncQueue:
    return request.app.state.offline_cache.sync_queue

@router.post(
    "/process",
    response_model=ProcessedDepthReading,
    summary="Correct a depth reading",
    description="Applies tide and environmental corrections, scores the result and queues the reading for upload"
)
async def process_reading(
    reading: DepthReading,
    sync: bool = Query(True, description="Queue the raw reading for upload to the remote API"),
    pipeline: DepthProcessingPipeline = Depends(get_pipeline),
    queue: SyncQueue = Depends(get_sync_queue)
) -> ProcessedDepthReading:
    processed = await pipeline.process(reading)
    if sync:
        queue.submit("depth_reading", reading.model_dump(mode="json"))
    return processed

@router.post(
    "/process/batch",
    response_model=BatchProcessResponse,
    summary="Correct a batch of depth readings"
)
async def process_batch(
    readings: List[DepthReading],
    sync: bool = Query(True),
    pipeline: DepthProcessingPipeline = Depends(get_pipeline),
    queue: SyncQueue = Depends(get_sync_queue)
) -> BatchProcessResponse:
    if len(readings) > MAX_BATCH:
        raise HTTPException(status_code=422, detail=f"At most {MAX_BATCH} readings per batch")
    result = await pipeline.batch_process(readings)
    if sync:
        for reading in readings:
            queue.enqueue("depth_reading", reading.model_dump(mode="json"))
        if queue.is_online:
            queue.schedule_drain()
    return result
