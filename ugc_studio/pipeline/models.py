"""
Pydantic models and enums for the multi-scene generation pipeline.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Pipeline Status ──────────────────────────────────────────────────────────

class Stage(str, Enum):
    PENDING = "pending"
    GENERATING_SCENE = "generating_scene"
    EXTRACTING_FRAME = "extracting_frame"
    LIP_SYNCING_SCENE = "lip_syncing_scene"
    READY_TO_COMBINE = "ready_to_combine"
    COMBINING_VIDEOS = "combining_videos"
    COMPLETED = "completed"
    FAILED = "failed"


SCENE_STAGES = {Stage.GENERATING_SCENE, Stage.LIP_SYNCING_SCENE}
TERMINAL_STAGES = {Stage.COMPLETED, Stage.FAILED}


class PipelineStatus(BaseModel):
    """
    Tagged status: a stage plus the 1-based scene it refers to.

    The persisted `status` column holds str(PipelineStatus), e.g.
    "generating_scene_3" or "ready_to_combine".
    """
    model_config = ConfigDict(frozen=True)

    stage: Stage
    scene: Optional[int] = None

    @classmethod
    def parse(cls, text: Optional[str]) -> "PipelineStatus":
        text = (text or Stage.PENDING.value).strip()
        for stage in SCENE_STAGES:
            prefix = f"{stage.value}_"
            suffix = text[len(prefix):]
            if text.startswith(prefix) and suffix.isdigit():
                return cls(stage=stage, scene=int(suffix))
        return cls(stage=Stage(text))

    @classmethod
    def generating(cls, scene: int) -> "PipelineStatus":
        return cls(stage=Stage.GENERATING_SCENE, scene=scene)

    @classmethod
    def lip_syncing(cls, scene: int) -> "PipelineStatus":
        return cls(stage=Stage.LIP_SYNCING_SCENE, scene=scene)

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def __str__(self) -> str:
        if self.stage in SCENE_STAGES and self.scene is not None:
            return f"{self.stage.value}_{self.scene}"
        return self.stage.value


FAILED = PipelineStatus(stage=Stage.FAILED)
COMPLETED = PipelineStatus(stage=Stage.COMPLETED)


# ── External Job State ───────────────────────────────────────────────────────

class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobStatus(BaseModel):
    state: JobState
    detail: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.state in (JobState.QUEUED, JobState.RUNNING)


# ── Generation Record ────────────────────────────────────────────────────────

def set_at(values: list, index: int, value) -> list:
    """Copy of a sparse list with `index` set, padding with None."""
    out = list(values)
    while len(out) <= index:
        out.append(None)
    out[index] = value
    return out


def get_at(values: list, index: int):
    return values[index] if 0 <= index < len(values) else None


class GenerationRecord(BaseModel):
    """One row of the `videos` table: a generation end-to-end."""

    id: str
    user_id: Optional[str] = None
    script: str = ""
    scene_scripts: list[str] = Field(default_factory=list)
    avatar_url: str = ""
    avatar_id: Optional[str] = None
    product_image_url: Optional[str] = None
    product_name: Optional[str] = None
    aspect_ratio: str = "9:16"
    language: str = "bg"
    duration: int = 8
    total_scenes: int = 1
    current_scene: int = 0
    scene_urls: list[str] = Field(default_factory=list)
    scene_task_ids: list[str] = Field(default_factory=list)
    sync_task_ids: list[Optional[str]] = Field(default_factory=list)
    synced_scene_urls: list[Optional[str]] = Field(default_factory=list)
    failed_sync_scenes: list[int] = Field(default_factory=list)
    frame_extraction_request_id: Optional[str] = None
    frame_source_url: Optional[str] = None
    combine_request_id: Optional[str] = None
    current_task_id: Optional[str] = None
    final_video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    status: str = Stage.PENDING.value
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator(
        "scene_scripts", "scene_urls", "scene_task_ids",
        "sync_task_ids", "synced_scene_urls", "failed_sync_scenes",
        mode="before",
    )
    @classmethod
    def _null_list(cls, value):
        # Postgres json columns come back as null when never written
        return [] if value is None else value

    @property
    def pipeline_status(self) -> PipelineStatus:
        return PipelineStatus.parse(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status in (Stage.COMPLETED.value, Stage.FAILED.value) or bool(self.final_video_url)

    @property
    def all_scenes_generated(self) -> bool:
        return len(self.scene_urls) >= self.total_scenes

    @property
    def progress(self) -> int:
        if self.final_video_url:
            return 100
        return round(100 * len(self.scene_urls) / self.total_scenes) if self.total_scenes else 0

    def lip_sync_settled(self, index: int) -> bool:
        """A scene's lip-sync is settled once it produced a URL or failed."""
        return bool(get_at(self.synced_scene_urls, index)) or index in self.failed_sync_scenes

    @property
    def all_lip_syncs_settled(self) -> bool:
        return all(self.lip_sync_settled(i) for i in range(self.total_scenes))

    def combine_inputs(self) -> list[str]:
        """Per scene: the lip-synced URL when present, else the raw scene URL."""
        return [get_at(self.synced_scene_urls, i) or url for i, url in enumerate(self.scene_urls)]

    def derive_status(self) -> PipelineStatus:
        """Recompute the status tag from the other fields."""
        if self.status == Stage.FAILED.value:
            return FAILED
        if self.final_video_url:
            return COMPLETED
        if self.combine_request_id:
            return PipelineStatus(stage=Stage.COMBINING_VIDEOS)

        generated = len(self.scene_urls)
        if generated < self.total_scenes:
            if len(self.scene_task_ids) > generated:
                return PipelineStatus.generating(generated + 1)
            if generated == 0:
                return PipelineStatus(stage=Stage.PENDING)
            if self.frame_extraction_request_id and self.frame_source_url == self.scene_urls[-1]:
                return PipelineStatus(stage=Stage.EXTRACTING_FRAME)
            return PipelineStatus.generating(generated + 1)

        if self.total_scenes < 2:
            # A single finished scene always carries final_video_url
            return COMPLETED
        if self.all_lip_syncs_settled:
            return PipelineStatus(stage=Stage.READY_TO_COMBINE)
        unsettled = [i for i in range(self.total_scenes) if not self.lip_sync_settled(i)]
        return PipelineStatus.lip_syncing(unsettled[-1] + 1)

    def with_changes(self, fields: dict) -> "GenerationRecord":
        return self.model_copy(update=fields)


# ── API Request Models ───────────────────────────────────────────────────────

class ScriptRequest(BaseModel):
    product_name: str = ""
    product_description: Optional[str] = None
    tone: str = "friendly"
    duration: int = 32
    language: str = "bg"


class StartGenerationRequest(BaseModel):
    script: str = ""
    avatar_url: str = ""
    aspect_ratio: str = "9:16"
    language: str = "bg"
    duration: int = 8
    product_image_url: Optional[str] = None
    product_name: Optional[str] = None
    avatar_id: Optional[str] = None


class NextSceneRequest(BaseModel):
    generation_id: str
    previous_scene_url: Optional[str] = None


class GenerateSceneRequest(BaseModel):
    generation_id: str
    frame_url: str
    scene_number: int


class LipSyncRequest(BaseModel):
    generation_id: str
    scene_index: int
    video_url: str
    script: str


class CombineRequest(BaseModel):
    generation_id: str
    force: bool = Field(False, description="Combine without waiting for pending lip-syncs")


# ── API Response Models ──────────────────────────────────────────────────────

class ScriptResponse(BaseModel):
    success: bool = True
    script: str


class StartGenerationResponse(BaseModel):
    generation_id: str
    task_id: str
    total_scenes: int


class GenerationStatusResponse(BaseModel):
    task_id: str
    generation_id: str
    status: str
    progress: int = 0
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    scene_urls: list[str] = Field(default_factory=list)
    scene_scripts: list[str] = Field(default_factory=list)
    current_scene: int = 0
    total_scenes: int = 1
    frame_job_id: Optional[str] = None
    error: Optional[str] = None


class JobHandle(BaseModel):
    generation_id: str
    job_id: str
    scene_number: Optional[int] = None
    scene_index: Optional[int] = None


class FrameStatusResponse(BaseModel):
    job_id: str
    status: JobState
    completed: bool = False
    failed: bool = False
    frame_url: Optional[str] = None
    error: Optional[str] = None


class LipSyncStatusResponse(BaseModel):
    job_id: str
    scene_index: int
    status: JobState
    completed: bool = False
    failed: bool = False
    output_url: Optional[str] = None
    error: Optional[str] = None


class CombineStatusResponse(BaseModel):
    job_id: str
    status: JobState
    completed: bool = False
    failed: bool = False
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error: Optional[str] = None
