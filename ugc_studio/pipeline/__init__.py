"""
Multi-scene UGC video pipeline

  Scene Gen (Kie.ai Veo) → Frame Extract (fal.ai) → Scene Gen … → Lip-Sync (Sync.so) → Combine (fal.ai)

Progress is driven entirely by polls and step requests; the `videos` table
holds the state between them.
"""

from .orchestrator import GenerationService
from .routes import video_router, library_router
from .models import PipelineStatus, Stage

__all__ = [
    "GenerationService",
    "video_router",
    "library_router",
    "PipelineStatus",
    "Stage",
]
