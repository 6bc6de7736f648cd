from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from chunkflow.config import settings
from chunkflow.middleware import add_error_handling_middleware
from chunkflow.routes import health, info, uploads, websocket
from chunkflow.services.coordinator import init_coordinator, shutdown_coordinator

# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level.upper()))
logger = logging.getLogger(__name__)

# Create FastAPI app instance
app = FastAPI(
    title=settings.app_name,
    description="Resumable chunked upload server",
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

app.include_router(health.router, prefix=settings.api_v1_prefix)
app.include_router(info.router, prefix=settings.api_v1_prefix)
app.include_router(uploads.router, prefix=settings.api_v1_prefix)
app.include_router(websocket.router)


# Coordinator lifecycle
@app.on_event("startup")
async def _startup():
    await init_coordinator()
    logger.info(f"{settings.app_name} started")


@app.on_event("shutdown")
async def _shutdown():
    await shutdown_coordinator()


@app.get("/")
async def root():
    """Root endpoint"""
    return {"message": settings.app_name, "version": settings.app_version}


def run():
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
