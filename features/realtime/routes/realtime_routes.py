from typing import List
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from features.realtime.models.realtime_types import ConnectionStatus, SubscriptionInfo
from features.realtime.services.distributor import RealtimeDistributor

router = APIRouter(
    prefix="/realtime",
    tags=["Realtime"]
)

class BatteryOptimizationUpdate(BaseModel):
    enabled: bool

def get_distributor(request: Request) -> RealtimeDistributor:
    """Get RealtimeDistributor instance from app state."""
    return request.app.state.distributor

@router.get(
    "/status",
    response_model=ConnectionStatus,
    summary="Get realtime connection status",
    description="State machine state, heartbeat latency and quality, and a connected/degraded/offline indicator"
)
async def get_connection_status(
    distributor: RealtimeDistributor = Depends(get_distributor)
) -> ConnectionStatus:
    return distributor.get_connection_status()

@router.get(
    "/subscriptions",
    response_model=List[SubscriptionInfo],
    summary="List active subscriptions"
)
async def get_subscriptions(
    distributor: RealtimeDistributor = Depends(get_distributor)
) -> List[SubscriptionInfo]:
    return distributor.get_active_subscriptions()

@router.put(
    "/battery-optimization",
    response_model=ConnectionStatus,
    summary="Toggle battery optimization"
)
async def set_battery_optimization(
    update: BatteryOptimizationUpdate,
    distributor: RealtimeDistributor = Depends(get_distributor)
) -> ConnectionStatus:
    distributor.enable_battery_optimization(update.enabled)
    return distributor.get_connection_status()

@router.post(
    "/connect",
    response_model=ConnectionStatus,
    summary="Open (or reopen after failure) the realtime connection"
)
async def connect(
    distributor: RealtimeDistributor = Depends(get_distributor)
) -> ConnectionStatus:
    await distributor.connect()
    return distributor.get_connection_status()

@router.post(
    "/disconnect",
    response_model=ConnectionStatus,
    summary="Close the realtime connection"
)
async def disconnect(
    distributor: RealtimeDistributor = Depends(get_distributor)
) -> ConnectionStatus:
    await distributor.disconnect()
    return distributor.get_connection_status()
