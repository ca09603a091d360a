from __future__ import annotations

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

from stepwright.services.artifacts import get_artifact_store

router = APIRouter(tags=["artifacts"])


@router.get("/videos/{name}")
async def read_video(name: str) -> FileResponse:
    store = get_artifact_store()
    target = store.video_path(name)
    if target is None:
        raise HTTPException(status_code=404, detail="Video not found")
    return FileResponse(path=target, media_type="video/webm")
