from fastapi import APIRouter
from datetime import datetime, timezone
import logging
import platform
import sys

from chunkflow.config import settings

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/server/info")
async def server_info():
    """
    Server information endpoint
    Returns version, upload limits and interpreter details
    """
    return {
        "service": "chunkflow-upload-server",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "limits": {
            "max_upload_size_bytes": settings.max_upload_size_bytes,
            "max_chunk_size_bytes": settings.max_chunk_size_bytes,
            "chunk_checksum_alg": settings.chunk_checksum_alg,
            "merge_timeout_seconds": settings.merge_timeout_seconds,
        },
        "system": {
            "platform": platform.platform(),
            "python_version": sys.version,
        },
        "status": "running"
    }
