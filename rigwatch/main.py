"""
rigwatch - Main Application Entry Point
"""
import logging
import sys

from fastapi import FastAPI

from rigwatch import __version__
from rigwatch.core.config import settings

# Setup logging FIRST
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)

from rigwatch.api import devices, discovery  # noqa: E402
from rigwatch.core.database import init_db  # noqa: E402
from rigwatch.core.mqtt import mqtt_client  # noqa: E402
from rigwatch.core.services import discovery_scanner, events, poll_scheduler  # noqa: E402


app = FastAPI(
    title="rigwatch",
    description="Mining hardware telemetry acquisition",
    version=__version__
)


@app.on_event("startup")
async def startup_event():
    """Application startup"""
    logger.info(f"🚀 Starting rigwatch on port {settings.WEB_PORT}")

    try:
        logger.info("🗄️  Initializing database...")
        await init_db()
        logger.info("✅ Database initialized")

        logger.info("📡 Starting MQTT client...")
        await mqtt_client.start(events)

        logger.info("⏰ Starting poll scheduler...")
        poll_scheduler.start()
        await poll_scheduler.start_polling_all_devices()
    except Exception:
        logger.exception("❌ Startup error")
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown"""
    logger.info("🛑 Shutting down rigwatch")
    discovery_scanner.cancel()
    poll_scheduler.shutdown()
    await mqtt_client.stop()


# Include API routes
app.include_router(devices.router, prefix="/api/devices", tags=["devices"])
app.include_router(discovery.router, prefix="/api/discovery", tags=["discovery"])


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "version": __version__,
        "polling": len(poll_scheduler.sessions)
    }


def run():
    import uvicorn
    uvicorn.run(
        "rigwatch.main:app",
        host="0.0.0.0",
        port=settings.WEB_PORT,
        reload=False
    )


if __name__ == "__main__":
    run()
