from fastapi import APIRouter, Depends
from datetime import datetime
import logging

from chunkflow.errors import StorageFailure
from chunkflow.services.coordinator import UploadCoordinator, get_coordinator

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/healthz")
async def health_check(coordinator: UploadCoordinator = Depends(get_coordinator)):
    """
    Health check endpoint
    Reports OK when the session registry and chunk directory are reachable
    """
    checks = {
        "registry": "ok",
        "chunk_store": "ok" if coordinator.chunk_store.base_dir.is_dir() else "missing",
        "object_store": "ok" if coordinator.merger.object_dir.is_dir() else "missing",
    }
    try:
        coordinator.registry.get_session("healthcheck")
    except StorageFailure as e:
        logger.error(f"Health check failed: {e}")
        checks["registry"] = "unavailable"

    healthy = all(v == "ok" for v in checks.values())
    return {
        "status": "OK" if healthy else "DEGRADED",
        "timestamp": datetime.now().isoformat(),
        "service": "chunkflow-upload-server",
        "checks": checks,
    }
