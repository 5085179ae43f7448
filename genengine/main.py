from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from genengine.config import settings
from genengine.middleware import add_error_handling_middleware

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.monitoring.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create FastAPI app instance
app = FastAPI(
    title=settings.app_name,
    description="Resource-aware job engine for 3D jewelry model generation",
    version=settings.app_version,
    debug=settings.debug
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add error handling middleware
add_error_handling_middleware(app)

# Include routers
from genengine.routes import health, jobs, system, websocket
from genengine.services.scheduler import init_scheduler, shutdown_scheduler

app.include_router(health.router, prefix=settings.api_v1_prefix)
app.include_router(jobs.router, prefix=settings.api_v1_prefix)
app.include_router(system.router, prefix=settings.api_v1_prefix)
app.include_router(websocket.router)


# Scheduler lifecycle
@app.on_event("startup")
async def _startup():
    logger.info("Starting %s %s (%s)", settings.app_name, settings.app_version, settings.environment)
    await init_scheduler(settings)


@app.on_event("shutdown")
async def _shutdown():
    await shutdown_scheduler()


@app.get("/")
async def root():
    """Root endpoint"""
    return {"message": settings.app_name, "version": settings.app_version}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
