from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from core.config import settings
from core.logging_config import setup_logging
from core.scheduler import Scheduler

# Feature routes
from features.stations.routes.station_routes import router as station_router
from features.tides.routes.tide_routes import router as tide_router
from features.weather.routes.weather_routes import router as weather_router
from features.depth.routes.depth_routes import router as depth_router
from features.offline.routes.offline_routes import router as offline_router
from features.realtime.routes.realtime_routes import router as realtime_router

# Services and clients
from features.offline.services.store import create_store
from features.offline.services.offline_cache import OfflineCache
from features.offline.services.remote_sync import RemoteSyncClient
from features.stations.services.station_locator import StationLocator
from features.tides.services.tide_service import TideDataClient
from features.weather.services.weather_client import MultiProviderWeatherClient
from features.realtime.services.distributor import RealtimeDistributor
from features.depth.services.depth_pipeline import DepthProcessingPipeline

setup_logging()
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    try:
        logger.info("🚀 Starting Soundings API...")

        remote_sync = RemoteSyncClient()
        offline_cache = OfflineCache(
            store=create_store(settings.store_url),
            submitter=remote_sync.submit
        )
        station_locator = StationLocator(cache=offline_cache)
        tide_client = TideDataClient(cache=offline_cache, locator=station_locator)
        weather_client = MultiProviderWeatherClient(cache=offline_cache)
        distributor = RealtimeDistributor()

        # Store services in app state
        app.state.remote_sync = remote_sync
        app.state.offline_cache = offline_cache
        app.state.station_locator = station_locator
        app.state.tide_client = tide_client
        app.state.weather_client = weather_client
        app.state.distributor = distributor
        app.state.depth_pipeline = DepthProcessingPipeline(
            locator=station_locator,
            tide_client=tide_client,
            weather_client=weather_client,
            cache=offline_cache,
            distributor=distributor
        )

        if settings.realtime_enabled:
            logger.info(f"📡 Connecting realtime distributor to {settings.realtime_url}")
            if not await distributor.connect():
                logger.warning("Realtime connection not established, retrying in background")

        app.state.scheduler = Scheduler(offline_cache)
        app.state.scheduler.start()

        logger.info("✨ API startup complete - ready to serve requests")
        yield

    except Exception as e:
        logger.error(f"❌ Startup error: {str(e)}")
        raise
    finally:
        logger.info("🔄 Shutting down API...")
        if hasattr(app.state, "scheduler"):
            app.state.scheduler.shutdown()

        if hasattr(app.state, "distributor"):
            await app.state.distributor.destroy()

        for name in ("weather_client", "tide_client", "offline_cache", "remote_sync"):
            service = getattr(app.state, name, None)
            if service is not None:
                await service.close()

        logger.info("👋 API shutdown complete")

app = FastAPI(
    title="Soundings API",
    description="Tide and weather corrected depth soundings for marine navigation",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include feature routers
app.include_router(station_router)
app.include_router(tide_router)
app.include_router(weather_router)
app.include_router(depth_router)
app.include_router(offline_router)
app.include_router(realtime_router)

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "time": datetime.now(timezone.utc).isoformat()
    }

if __name__ == "__main__":
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 5010))

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=True,
        log_level="info",
        workers=1
    )
