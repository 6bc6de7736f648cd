import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Header, HTTPException, Query, UploadFile
from pydantic import BaseModel, Field

from chunkflow.errors import InvalidArgument
from chunkflow.models import ChunkAcceptResult, UploadProgress, UploadSession, UploadStatus
from chunkflow.services.coordinator import UploadCoordinator, get_coordinator

logger = logging.getLogger(__name__)
router = APIRouter()

READ_BLOCK_SIZE = 1024 * 1024


class InitUploadRequest(BaseModel):
    content_hash: str
    original_name: str
    declared_size: int
    declared_media_type: str = "application/octet-stream"
    total_chunks: int
    hash_algorithm: Optional[str] = None


class InitUploadResponse(BaseModel):
    session_id: str
    status: str
    total_chunks: int
    uploaded_chunks: int
    missing_chunks: List[int] = Field(default_factory=list)


class StatusUpdateRequest(BaseModel):
    status: str


def get_owner_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Owner identity as established by the upstream auth layer."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_user_id


async def _read_chunk(content: UploadFile, limit: Optional[int]) -> bytes:
    parts = []
    size = 0
    try:
        while True:
            block = await content.read(READ_BLOCK_SIZE)
            if not block:
                break
            size += len(block)
            if limit is not None and size > limit:
                raise InvalidArgument("Chunk size exceeds configured maximum")
            parts.append(block)
    finally:
        await content.close()
    return b"".join(parts)


@router.post("/uploads", response_model=InitUploadResponse)
async def init_upload(
    req: InitUploadRequest,
    owner_id: str = Depends(get_owner_id),
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    session = await coordinator.init_session(
        owner_id=owner_id,
        content_hash=req.content_hash,
        declared_size=req.declared_size,
        declared_media_type=req.declared_media_type,
        original_name=req.original_name,
        total_chunks=req.total_chunks,
        hash_algorithm=req.hash_algorithm,
    )
    view = await coordinator.get_status(session.id, owner_id)
    return InitUploadResponse(
        session_id=session.id,
        status=view.session.status,
        total_chunks=view.session.total_chunks,
        uploaded_chunks=view.session.uploaded_chunks,
        missing_chunks=view.missing_chunks,
    )


@router.get("/uploads/exists")
async def upload_exists(
    content_hash: str = Query(...),
    owner_id: str = Depends(get_owner_id),
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    """Check whether this content was already uploaded by the caller."""
    session = await coordinator.find_completed(owner_id, content_hash)
    if session is None:
        return {"exists": False, "session_id": None, "final_object_key": None}
    return {
        "exists": True,
        "session_id": session.id,
        "final_object_key": session.final_object_key,
    }


@router.get("/uploads")
async def list_uploads(
    status: Optional[UploadStatus] = None,
    owner_id: str = Depends(get_owner_id),
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    sessions = await coordinator.list_sessions(owner_id, status)
    return {
        "total": len(sessions),
        "uploads": [s.model_dump(mode="json") for s in sessions],
    }


@router.put("/uploads/{session_id}/chunks/{index}", response_model=ChunkAcceptResult)
async def upload_chunk(
    session_id: str,
    index: int,
    chunk: UploadFile = File(...),
    x_chunk_checksum: Optional[str] = Header(None),
    owner_id: str = Depends(get_owner_id),
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    if not x_chunk_checksum:
        raise InvalidArgument("X-Chunk-Checksum header is required", session_id)
    payload = await _read_chunk(chunk, coordinator.max_chunk_size)
    return await coordinator.accept_chunk(session_id, owner_id, index, x_chunk_checksum, payload)


@router.post("/uploads/{session_id}/complete")
async def complete_upload(
    session_id: str,
    owner_id: str = Depends(get_owner_id),
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    session = await coordinator.complete(session_id, owner_id)
    return {
        "status": session.status,
        "session_id": session.id,
        "final_object_key": session.final_object_key,
    }


@router.get("/uploads/{session_id}")
async def upload_status(
    session_id: str,
    owner_id: str = Depends(get_owner_id),
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    view = await coordinator.get_status(session_id, owner_id)
    return view.model_dump(mode="json")


@router.get("/uploads/{session_id}/progress", response_model=UploadProgress)
async def upload_progress(
    session_id: str,
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    return await coordinator.get_progress(session_id)


@router.patch("/uploads/{session_id}/status", response_model=UploadSession)
async def update_upload_status(
    session_id: str,
    req: StatusUpdateRequest,
    owner_id: str = Depends(get_owner_id),
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    """Pause or resume an upload."""
    return await coordinator.set_status(session_id, owner_id, req.status)


@router.delete("/uploads/{session_id}")
async def delete_upload(
    session_id: str,
    owner_id: str = Depends(get_owner_id),
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    await coordinator.delete_session(session_id, owner_id)
    return {"status": "deleted", "session_id": session_id}
