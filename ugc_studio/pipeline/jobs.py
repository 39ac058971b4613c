"""
External Job Clients.

Every provider capability is wrapped behind the same three calls:

    submit(input)          → external job id
    poll_status(job_id)    → JobStatus (queued / running / succeeded / failed)
    fetch_result(job_id)   → output, only once poll_status reports success

The transport modules (kie, fal, sync_so) raise ProviderRequestError on
transport or auth failures; this layer only maps provider vocabularies onto
JobState. Unrecognised provider states are reported as RUNNING so a new
provider status never reads as success.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from pydantic import BaseModel

from .. import fal, gemini, kie, sync_so
from ..errors import ProviderJobFailed, ProviderRequestError, ResultNotReady
from .models import JobState, JobStatus

logger = logging.getLogger(__name__)


class SceneInput(BaseModel):
    script: str
    image_url: str
    aspect_ratio: str = "9:16"
    product_image_url: Optional[str] = None
    is_continuation: bool = False


class LipSyncInput(BaseModel):
    video_url: str
    script: str
    voice_id: Optional[str] = None


class CombineResult(BaseModel):
    video_url: str
    thumbnail_url: Optional[str] = None


class JobClient(ABC):
    """Uniform submit / poll / fetch contract over one provider capability."""

    name = "job"

    @abstractmethod
    def submit(self, job_input) -> str:
        ...

    @abstractmethod
    def poll_status(self, job_id: str) -> JobStatus:
        ...

    @abstractmethod
    def fetch_result(self, job_id: str) -> Any:
        ...

    def _require_success(self, job_id: str) -> JobStatus:
        status = self.poll_status(job_id)
        if status.state == JobState.FAILED:
            raise ProviderJobFailed(
                f"{self.name} job {job_id} failed: {status.error or 'no detail'}",
                detail=status.detail,
            )
        if status.state != JobState.SUCCEEDED:
            raise ResultNotReady(f"{self.name} job {job_id} is {status.state.value}, result not ready")
        return status


# ═════════════════════════════════════════════════════════════════════════════
# Scene Video Generator: Kie.ai Veo
# ═════════════════════════════════════════════════════════════════════════════

class SceneVideoGenerator(JobClient):
    name = "scene"

    def submit(self, job_input: SceneInput) -> str:
        return kie.generate_video(
            prompt=job_input.script,
            image_url=job_input.image_url,
            aspect_ratio=job_input.aspect_ratio,
            product_url=job_input.product_image_url,
            is_continuation=job_input.is_continuation,
        )

    def poll_status(self, job_id: str) -> JobStatus:
        record = kie.get_task_status(job_id)
        flag = record.get("successFlag")
        if flag == kie.FLAG_SUCCESS:
            state = JobState.SUCCEEDED
        elif flag in kie.FLAG_FAILED:
            state = JobState.FAILED
        else:
            state = JobState.RUNNING
        return JobStatus(state=state, detail=record, error=record.get("errorMessage") or None)

    def fetch_result(self, job_id: str) -> str:
        status = self._require_success(job_id)
        url = kie.extract_video_url(status.detail)
        if not url:
            raise ProviderRequestError(f"Kie.ai task {job_id} succeeded without a video URL", provider="kie")
        return url


# ═════════════════════════════════════════════════════════════════════════════
# fal.ai queue jobs: Frame Extractor + Video Composer
# ═════════════════════════════════════════════════════════════════════════════

FAL_STATES = {
    "IN_QUEUE": JobState.QUEUED,
    "IN_PROGRESS": JobState.RUNNING,
    "COMPLETED": JobState.SUCCEEDED,
    "FAILED": JobState.FAILED,
    "ERROR": JobState.FAILED,
}


class _FalJob(JobClient):

    def poll_status(self, job_id: str) -> JobStatus:
        data = fal.get_request_status(job_id)
        state = FAL_STATES.get(str(data.get("status", "")).upper(), JobState.RUNNING)
        error = data.get("error")
        if state == JobState.SUCCEEDED and error:
            state = JobState.FAILED
        return JobStatus(state=state, detail=data, error=str(error) if error else None)


class FrameExtractor(_FalJob):
    name = "frame"

    def submit(self, job_input: str) -> str:
        return fal.extract_last_frame(job_input)

    def fetch_result(self, job_id: str) -> str:
        self._require_success(job_id)
        data = fal.get_request_result(job_id)
        images = data.get("images") or []
        if not images or not images[0].get("url"):
            raise ProviderRequestError(f"No images returned from frame extraction {job_id}", provider="fal")
        return images[0]["url"]


class VideoComposer(_FalJob):
    name = "combine"

    def submit(self, job_input: list[str]) -> str:
        return fal.combine_videos(job_input)

    def fetch_result(self, job_id: str) -> CombineResult:
        self._require_success(job_id)
        data = fal.get_request_result(job_id)
        if not data.get("video_url"):
            raise ProviderRequestError(f"Combine {job_id} returned no video_url", provider="fal")
        return CombineResult(video_url=data["video_url"], thumbnail_url=data.get("thumbnail_url"))


# ═════════════════════════════════════════════════════════════════════════════
# Lip-Sync Engine: Sync.so
# ═════════════════════════════════════════════════════════════════════════════

SYNC_STATES = {
    "PENDING": JobState.QUEUED,
    "PROCESSING": JobState.RUNNING,
    "COMPLETED": JobState.SUCCEEDED,
    "FAILED": JobState.FAILED,
    "REJECTED": JobState.FAILED,
}


class LipSyncEngine(JobClient):
    name = "lipsync"

    def submit(self, job_input: LipSyncInput) -> str:
        return sync_so.start_lip_sync(job_input.video_url, job_input.script, job_input.voice_id)

    def poll_status(self, job_id: str) -> JobStatus:
        data = sync_so.get_generation(job_id)
        state = SYNC_STATES.get(str(data.get("status", "")).upper(), JobState.RUNNING)
        if state == JobState.SUCCEEDED and not data.get("outputUrl"):
            # Completed rows occasionally lag their outputUrl
            state = JobState.RUNNING
        return JobStatus(state=state, detail=data, error=data.get("error") or None)

    def fetch_result(self, job_id: str) -> str:
        status = self._require_success(job_id)
        return status.detail["outputUrl"]


# ═════════════════════════════════════════════════════════════════════════════
# Script Generator: Gemini (synchronous, not a queued job)
# ═════════════════════════════════════════════════════════════════════════════

class ScriptGenerator:

    def generate(
        self,
        product_name: str,
        product_description: Optional[str] = None,
        tone: str = "friendly",
        duration: int = 32,
        language: str = "bg",
    ) -> str:
        return gemini.generate_script(product_name, product_description, tone, duration, language)
