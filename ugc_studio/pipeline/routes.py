"""
FastAPI routes for the multi-scene generation pipeline.

Video Endpoints (thin adapters over GenerationService):
  POST /video/script                      — Generate a UGC narration script
  POST /video/generate                    — Start a generation (scene 1 submitted)
  GET  /video/status/{task_id}            — Poll scene progress, drives the pipeline
  POST /video/next-scene                  — Extract the last frame of the latest scene
  GET  /video/frame-status/{request_id}   — Poll frame extraction
  POST /video/generate-scene              — Submit scene N from the extracted frame
  POST /video/lipsync                     — Start lip-sync for one scene
  GET  /video/lipsync-status/{task_id}    — Poll lip-sync for one scene
  POST /video/combine                     — Combine all scenes into the final video
  GET  /video/combine-status/{request_id} — Poll the combine job

Library Endpoints (bearer token required):
  GET    /videos           — List the caller's videos
  GET    /videos/completed — The caller's finished videos
  GET    /videos/{id}      — One video
  DELETE /videos/{id}      — Delete a video
"""

import logging
from typing import Callable, Optional

from fastapi import APIRouter, Depends, HTTPException

from .. import metrics
from ..auth import optional_user, require_user
from ..errors import PipelineError
from ..locks import build_step_lock
from .jobs import FrameExtractor, LipSyncEngine, SceneVideoGenerator, VideoComposer
from .models import (
    ScriptRequest,
    ScriptResponse,
    StartGenerationRequest,
    StartGenerationResponse,
    GenerationStatusResponse,
    NextSceneRequest,
    GenerateSceneRequest,
    LipSyncRequest,
    CombineRequest,
    JobHandle,
    FrameStatusResponse,
    LipSyncStatusResponse,
    CombineStatusResponse,
    GenerationRecord,
)
from .orchestrator import GenerationService
from .store import build_store

logger = logging.getLogger(__name__)

_service: Optional[GenerationService] = None


def get_service() -> GenerationService:
    """Lazily build the process-wide service from the environment."""
    global _service
    if _service is None:
        _service = GenerationService(
            store=build_store(),
            scenes=SceneVideoGenerator(),
            frames=FrameExtractor(),
            lipsync=LipSyncEngine(),
            composer=VideoComposer(),
            lock=build_step_lock(),
        )
    return _service


def _call(op: str, fn: Callable, *args, **kwargs):
    """Run one service operation, translating domain errors to HTTP."""
    try:
        return fn(*args, **kwargs)
    except PipelineError as e:
        metrics.inc_counter(f"requests.{op}.rejected")
        logger.warning(f"{op} rejected ({e.status_code}): {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        metrics.record_error(op, type(e).__name__, str(e))
        logger.error(f"{op} failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


# ═════════════════════════════════════════════════════════════════════════════
# Video Router
# ═════════════════════════════════════════════════════════════════════════════

video_router = APIRouter(prefix="/video", tags=["video"])


@video_router.post("/script", response_model=ScriptResponse)
def generate_script(request: ScriptRequest, service: GenerationService = Depends(get_service)):
    """Generate narration sized to ceil(duration/8) scenes."""
    script = _call("script", service.generate_script, request)
    return ScriptResponse(script=script)


@video_router.post("/generate", response_model=StartGenerationResponse)
def start_generation(
    request: StartGenerationRequest,
    service: GenerationService = Depends(get_service),
    user_id: Optional[str] = Depends(optional_user),
):
    """Create the generation record and submit scene 1. Anonymous callers get an ownerless record."""
    return _call("generate", service.start_generation, request, owner_id=user_id)


@video_router.get("/status/{task_id}", response_model=GenerationStatusResponse)
def poll_status(
    task_id: str,
    generation_id: Optional[str] = None,
    service: GenerationService = Depends(get_service),
):
    """
    Poll the current scene job. Side effects happen here: a finished scene
    is recorded, its lip-sync started and the next frame extraction requested.
    """
    return _call("status", service.poll_status, task_id, generation_id)


@video_router.post("/next-scene", response_model=JobHandle)
def request_frame_extraction(request: NextSceneRequest, service: GenerationService = Depends(get_service)):
    return _call("next_scene", service.request_frame_extraction, request.generation_id, request.previous_scene_url)


@video_router.get("/frame-status/{request_id}", response_model=FrameStatusResponse)
def poll_frame_extraction(
    request_id: str,
    generation_id: Optional[str] = None,
    service: GenerationService = Depends(get_service),
):
    return _call("frame_status", service.poll_frame_extraction, request_id, generation_id)


@video_router.post("/generate-scene", response_model=JobHandle)
def submit_next_scene(request: GenerateSceneRequest, service: GenerationService = Depends(get_service)):
    return _call(
        "generate_scene",
        service.submit_next_scene,
        request.generation_id,
        request.frame_url,
        request.scene_number,
    )


@video_router.post("/lipsync", response_model=JobHandle)
def request_lip_sync(request: LipSyncRequest, service: GenerationService = Depends(get_service)):
    return _call(
        "lipsync",
        service.request_lip_sync,
        request.generation_id,
        request.scene_index,
        request.video_url,
        request.script,
    )


@video_router.get("/lipsync-status/{task_id}", response_model=LipSyncStatusResponse)
def poll_lip_sync(
    task_id: str,
    generation_id: str,
    scene_index: int,
    service: GenerationService = Depends(get_service),
):
    return _call("lipsync_status", service.poll_lip_sync, task_id, generation_id, scene_index)


@video_router.post("/combine", response_model=JobHandle)
def request_combine(request: CombineRequest, service: GenerationService = Depends(get_service)):
    """
    Combine once every scene's lip-sync has settled. Scenes without a synced
    URL fall back to the raw scene. `force` skips waiting on lip-syncs.
    """
    return _call("combine", service.request_combine, request.generation_id, request.force)


@video_router.get("/combine-status/{request_id}", response_model=CombineStatusResponse)
def poll_combine(
    request_id: str,
    generation_id: Optional[str] = None,
    service: GenerationService = Depends(get_service),
):
    return _call("combine_status", service.poll_combine, request_id, generation_id)


# ═════════════════════════════════════════════════════════════════════════════
# Library Router: the caller's videos
# ═════════════════════════════════════════════════════════════════════════════

library_router = APIRouter(prefix="/videos", tags=["videos"])


def _owned(service: GenerationService, video_id: str, user_id: str) -> GenerationRecord:
    record = service.store.get_by_id(video_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Video not found")
    if record.user_id != user_id:
        raise HTTPException(status_code=403, detail="Not your video")
    return record


@library_router.get("", response_model=list[GenerationRecord])
def list_videos(
    user_id: str = Depends(require_user),
    service: GenerationService = Depends(get_service),
):
    """List the caller's videos, newest first."""
    return _call("list_videos", service.store.list_by_owner, user_id)


@library_router.get("/completed", response_model=list[GenerationRecord])
def list_completed_videos(
    user_id: str = Depends(require_user),
    service: GenerationService = Depends(get_service),
):
    """Completed videos with a final URL, for the library view."""
    return _call("list_completed_videos", service.store.list_completed_by_owner, user_id)


@library_router.get("/{video_id}", response_model=GenerationRecord)
def get_video(
    video_id: str,
    user_id: str = Depends(require_user),
    service: GenerationService = Depends(get_service),
):
    return _owned(service, video_id, user_id)


@library_router.delete("/{video_id}")
def delete_video(
    video_id: str,
    user_id: str = Depends(require_user),
    service: GenerationService = Depends(get_service),
):
    _owned(service, video_id, user_id)
    _call("delete_video", service.store.delete, video_id)
    service.recovery.cache.evict(video_id)
    logger.info(f"[Library] Video {video_id} deleted by {user_id}")
    return {"success": True}
