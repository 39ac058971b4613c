"""
GenerationService — multi-scene pipeline orchestrator.

There is no background worker: every step forward happens inside a poll or
an explicit step request.

  Step 1: Scene generation        (Kie.ai Veo, sequential scene by scene)
  Step 2: Frame extraction        (fal.ai, last frame of scene k seeds scene k+1)
  Step 3: Lip-sync                (Sync.so, per scene, unordered, best-effort)
  Step 4: Combine                 (fal.ai compose, once every lip-sync settled)

The record store is authoritative. Every transition re-reads the record
inside the per-generation step lock, derives the new status from the
record's fields and persists everything in a single update. Each external
submission leaves a persisted marker (scene_task_ids, sync_task_ids,
frame_extraction_request_id + frame_source_url, combine_request_id) so a
repeated request hands back the recorded job instead of submitting again.
"""

import logging
from contextlib import contextmanager
from typing import Optional

from .. import metrics, sync_so
from ..errors import (
    GenerationNotFound,
    InsufficientScenes,
    InvalidTransition,
    ProviderRequestError,
    StepInProgress,
    ValidationError,
)
from ..locks import StepLock, InMemoryStepLock
from .jobs import (
    JobClient,
    LipSyncInput,
    SceneInput,
    ScriptGenerator,
)
from .models import (
    GenerationRecord,
    JobState,
    Stage,
    ScriptRequest,
    StartGenerationRequest,
    StartGenerationResponse,
    GenerationStatusResponse,
    JobHandle,
    FrameStatusResponse,
    LipSyncStatusResponse,
    CombineStatusResponse,
    get_at,
    set_at,
)
from .recovery import TaskCache, TaskRecovery
from .scenes import scene_count, split_script
from .store import GenerationStore

logger = logging.getLogger(__name__)


class GenerationService:
    """
    Usage:
        service = GenerationService(store, scenes, frames, lipsync, composer)

        started = service.start_generation(request)
        service.poll_status(started.task_id, started.generation_id)   # on a timer
        ...
        service.request_combine(generation_id)
        service.poll_combine(job_id, generation_id)                   # on a timer
    """

    def __init__(
        self,
        store: GenerationStore,
        scenes: JobClient,
        frames: JobClient,
        lipsync: JobClient,
        composer: JobClient,
        scripts: Optional[ScriptGenerator] = None,
        cache: Optional[TaskCache] = None,
        lock: Optional[StepLock] = None,
    ):
        self.store = store
        self.scenes = scenes
        self.frames = frames
        self.lipsync = lipsync
        self.composer = composer
        self.scripts = scripts or ScriptGenerator()
        self.recovery = TaskRecovery(store, cache)
        self.lock = lock or InMemoryStepLock()

    # ── Helpers ──────────────────────────────────────────────────────────

    @contextmanager
    def _step(self, generation_id: str):
        """Explicit step: the lock must be free."""
        with self.lock.hold(generation_id) as acquired:
            if not acquired:
                raise StepInProgress(f"Another step is in progress for generation {generation_id}")
            yield

    def _write(self, record: GenerationRecord, fields: dict) -> GenerationRecord:
        """Persist one transition atomically with its derived status."""
        fields = dict(fields)
        status = record.with_changes(fields).derive_status()
        fields["status"] = str(status)

        updated = self.store.update(record.id, fields)
        if updated.status != record.status:
            metrics.inc_counter(f"pipeline.transition.{status.stage.value}")
            logger.info(f"[{record.id}] {record.status} → {updated.status}")
        self.recovery.remember(updated)
        return updated

    def _fail(self, record: GenerationRecord, error: str, source: str) -> GenerationRecord:
        metrics.record_error(source, "ProviderJobFailed", error, generation_id=record.id)
        logger.error(f"[{record.id}] {source} job failed: {error}")
        return self._write(record, {"status": Stage.FAILED.value, "error_message": error})

    def _resolve(self, job_id: str, generation_id: Optional[str]) -> GenerationRecord:
        if generation_id:
            return self.store.require(generation_id)
        view = self.recovery.get_or_restore(job_id)
        return self.store.require(view.generation_id)

    @staticmethod
    def _scene_job_id(record: GenerationRecord, job_id: str) -> Optional[str]:
        """Scene job a status poll refers to. A generation id follows the active job."""
        if job_id in record.scene_task_ids:
            return job_id
        return record.current_task_id

    @staticmethod
    def _require_active(record: GenerationRecord):
        if record.is_terminal:
            raise InvalidTransition(f"Generation {record.id} is already {record.status}")

    def _snapshot(self, record: GenerationRecord, job_id: str) -> GenerationStatusResponse:
        frame_job_id = None
        if record.pipeline_status.stage == Stage.EXTRACTING_FRAME:
            frame_job_id = record.frame_extraction_request_id
        return GenerationStatusResponse(
            task_id=job_id,
            generation_id=record.id,
            status=record.status,
            progress=record.progress,
            video_url=record.final_video_url,
            thumbnail_url=record.thumbnail_url,
            scene_urls=record.scene_urls,
            scene_scripts=record.scene_scripts,
            current_scene=record.current_scene,
            total_scenes=record.total_scenes,
            frame_job_id=frame_job_id,
            error=record.error_message,
        )

    # ── Script ───────────────────────────────────────────────────────────

    def generate_script(self, request: ScriptRequest) -> str:
        return self.scripts.generate(
            product_name=request.product_name,
            product_description=request.product_description,
            tone=request.tone,
            duration=request.duration,
            language=request.language,
        )

    # ── Start ────────────────────────────────────────────────────────────

    def start_generation(
        self,
        request: StartGenerationRequest,
        owner_id: Optional[str] = None,
    ) -> StartGenerationResponse:
        if not request.script.strip():
            raise ValidationError("Script is required")
        if not request.avatar_url:
            raise ValidationError("Avatar reference image is required")
        if request.duration <= 0:
            raise ValidationError(f"Duration must be positive, got {request.duration}")

        total = scene_count(request.duration)
        scene_scripts = split_script(request.script, total)

        record = self.store.create(GenerationRecord(
            id="",
            user_id=owner_id,
            script=request.script,
            scene_scripts=scene_scripts,
            avatar_url=request.avatar_url,
            avatar_id=request.avatar_id,
            product_image_url=request.product_image_url,
            product_name=request.product_name,
            aspect_ratio=request.aspect_ratio,
            language=request.language,
            duration=request.duration,
            total_scenes=total,
            status=Stage.PENDING.value,
        ))
        logger.info(f"[{record.id}] Created generation: {total} scene(s), {request.duration}s")

        try:
            task_id = self.scenes.submit(SceneInput(
                script=scene_scripts[0],
                image_url=request.avatar_url,
                aspect_ratio=request.aspect_ratio,
                product_image_url=request.product_image_url,
                is_continuation=False,
            ))
        except ProviderRequestError as e:
            # Record stays pending; the caller may start again
            metrics.record_error("scene", "ProviderRequestError", e.message, generation_id=record.id)
            self._write(record, {"error_message": e.message})
            raise

        record = self._write(record, {"current_task_id": task_id, "scene_task_ids": [task_id]})
        logger.info(f"[{record.id}] Scene 1/{total} submitted: {task_id}")
        return StartGenerationResponse(generation_id=record.id, task_id=task_id, total_scenes=total)

    # ── Status poll (scene critical path) ────────────────────────────────

    def poll_status(self, job_id: str, generation_id: Optional[str] = None) -> GenerationStatusResponse:
        record = self._resolve(job_id, generation_id)
        if record.is_terminal:
            return self._snapshot(record, job_id)

        if record.combine_request_id:
            self.poll_combine(record.combine_request_id, record.id)
            return self._snapshot(self.store.require(record.id), job_id)

        scene_job = self._scene_job_id(record, job_id)
        if scene_job is None:
            return self._snapshot(record, job_id)
        job_id = scene_job

        status = self.scenes.poll_status(job_id)
        if status.is_pending:
            return self._snapshot(record, job_id)

        with self.lock.hold(record.id) as acquired:
            if not acquired:
                logger.info(f"[{record.id}] Step in flight elsewhere, reporting current state")
                return self._snapshot(record, job_id)

            record = self.store.require(record.id)
            if record.is_terminal:
                return self._snapshot(record, job_id)

            if status.state == JobState.FAILED:
                record = self._fail(record, status.error or "Scene generation failed", source="scene")
                return self._snapshot(record, job_id)

            url = self.scenes.fetch_result(job_id)
            if url not in record.scene_urls:
                record = self._append_scene(record, job_id, url)
            if not record.is_terminal:
                record = self._reconcile(record)

        return self._snapshot(record, job_id)

    def _append_scene(self, record: GenerationRecord, job_id: str, url: str) -> GenerationRecord:
        if record.all_scenes_generated:
            logger.warning(f"[{record.id}] Ignoring extra scene result from {job_id}: all scenes generated")
            return record

        index = len(record.scene_urls)
        expected = get_at(record.scene_task_ids, index)
        if expected and expected != job_id:
            logger.warning(f"[{record.id}] Job {job_id} is not the active scene job ({expected})")
            return record

        scene_urls = record.scene_urls + [url]
        fields = {
            "scene_urls": scene_urls,
            "current_scene": len(scene_urls),
            "scene_task_ids": set_at(record.scene_task_ids, index, job_id),
            "current_task_id": job_id,
        }
        if record.total_scenes == 1:
            fields["final_video_url"] = url

        logger.info(f"[{record.id}] Scene {index + 1}/{record.total_scenes} ready: {url}")
        return self._write(record, fields)

    def _reconcile(self, record: GenerationRecord) -> GenerationRecord:
        """
        Fire the follow-up jobs a finished scene implies. Runs under the step
        lock. Submission failures are logged and retried by the next poll.
        """
        if record.total_scenes > 1:
            record = self._trigger_lip_syncs(record)
        if not record.all_scenes_generated:
            record = self._trigger_frame_extraction(record)
        return record

    def _trigger_lip_syncs(self, record: GenerationRecord) -> GenerationRecord:
        voice_id = sync_so.voice_for_avatar(record.avatar_id)
        for index, url in enumerate(record.scene_urls):
            if get_at(record.sync_task_ids, index):
                continue
            try:
                sync_id = self.lipsync.submit(LipSyncInput(
                    video_url=url,
                    script=get_at(record.scene_scripts, index) or "",
                    voice_id=voice_id,
                ))
            except ProviderRequestError as e:
                metrics.record_error("lipsync", "ProviderRequestError", e.message, generation_id=record.id)
                logger.warning(f"[{record.id}] Lip-sync submission for scene {index + 1} failed: {e.message}")
                continue
            logger.info(f"[{record.id}] Lip-sync started for scene {index + 1}: {sync_id}")
            record = self._write(record, {"sync_task_ids": set_at(record.sync_task_ids, index, sync_id)})
        return record

    def _trigger_frame_extraction(self, record: GenerationRecord) -> GenerationRecord:
        source = record.scene_urls[-1]
        if len(record.scene_task_ids) > len(record.scene_urls):
            return record  # next scene already submitted
        if record.frame_extraction_request_id and record.frame_source_url == source:
            return record
        try:
            request_id = self.frames.submit(source)
        except ProviderRequestError as e:
            metrics.record_error("frame", "ProviderRequestError", e.message, generation_id=record.id)
            logger.warning(f"[{record.id}] Frame extraction submission failed: {e.message}")
            return record
        logger.info(f"[{record.id}] Frame extraction started from scene {len(record.scene_urls)}: {request_id}")
        return self._write(record, {"frame_extraction_request_id": request_id, "frame_source_url": source})

    # ── Frame extraction ─────────────────────────────────────────────────

    def request_frame_extraction(self, generation_id: str, previous_scene_url: Optional[str] = None) -> JobHandle:
        with self._step(generation_id):
            record = self.store.require(generation_id)
            self._require_active(record)
            if not record.scene_urls:
                raise ValidationError("No completed scene to extract a frame from")

            source = previous_scene_url or record.scene_urls[-1]
            if source not in record.scene_urls:
                raise ValidationError(f"{source} is not a scene of generation {generation_id}")

            if record.frame_extraction_request_id and record.frame_source_url == source:
                return JobHandle(generation_id=record.id, job_id=record.frame_extraction_request_id)

            if record.all_scenes_generated:
                raise InvalidTransition("All scenes are already generated")
            if source != record.scene_urls[-1] or len(record.scene_task_ids) > len(record.scene_urls):
                raise InvalidTransition("Frame extraction only continues from the latest scene")

            request_id = self.frames.submit(source)
            self._write(record, {"frame_extraction_request_id": request_id, "frame_source_url": source})
            logger.info(f"[{record.id}] Frame extraction requested: {request_id}")
            return JobHandle(generation_id=record.id, job_id=request_id)

    def poll_frame_extraction(self, job_id: str, generation_id: Optional[str] = None) -> FrameStatusResponse:
        status = self.frames.poll_status(job_id)

        if status.state == JobState.SUCCEEDED:
            frame_url = self.frames.fetch_result(job_id)
            return FrameStatusResponse(job_id=job_id, status=status.state, completed=True, frame_url=frame_url)

        if status.state == JobState.FAILED and generation_id:
            error = status.error or "Frame extraction failed"
            with self.lock.hold(generation_id) as acquired:
                if acquired:
                    record = self.store.require(generation_id)
                    if not record.is_terminal and record.frame_extraction_request_id == job_id:
                        self._fail(record, error, source="frame")
            return FrameStatusResponse(job_id=job_id, status=status.state, failed=True, error=error)

        return FrameStatusResponse(
            job_id=job_id,
            status=status.state,
            failed=status.state == JobState.FAILED,
            error=status.error,
        )

    # ── Next scene ───────────────────────────────────────────────────────

    def submit_next_scene(self, generation_id: str, frame_url: str, scene_number: int) -> JobHandle:
        if not frame_url:
            raise ValidationError("frame_url is required")

        with self._step(generation_id):
            record = self.store.require(generation_id)
            self._require_active(record)
            if not 2 <= scene_number <= record.total_scenes:
                raise ValidationError(f"scene_number must be between 2 and {record.total_scenes}")

            existing = get_at(record.scene_task_ids, scene_number - 1)
            if existing:
                return JobHandle(generation_id=record.id, job_id=existing, scene_number=scene_number)

            if len(record.scene_urls) != scene_number - 1:
                raise InvalidTransition(
                    f"Scene {scene_number} needs scene {scene_number - 1} finished first "
                    f"({len(record.scene_urls)} of {record.total_scenes} done)"
                )

            task_id = self.scenes.submit(SceneInput(
                script=record.scene_scripts[scene_number - 1],
                image_url=frame_url,
                aspect_ratio=record.aspect_ratio,
                product_image_url=record.product_image_url,
                is_continuation=True,
            ))
            self._write(record, {
                "current_task_id": task_id,
                "scene_task_ids": set_at(record.scene_task_ids, scene_number - 1, task_id),
            })
            logger.info(f"[{record.id}] Scene {scene_number}/{record.total_scenes} submitted: {task_id}")
            return JobHandle(generation_id=record.id, job_id=task_id, scene_number=scene_number)

    # ── Lip-sync ─────────────────────────────────────────────────────────

    def request_lip_sync(
        self,
        generation_id: str,
        scene_index: int,
        video_url: Optional[str] = None,
        script: Optional[str] = None,
    ) -> JobHandle:
        with self._step(generation_id):
            record = self.store.require(generation_id)
            self._require_active(record)
            if not 0 <= scene_index < record.total_scenes:
                raise ValidationError(f"scene_index must be between 0 and {record.total_scenes - 1}")

            existing = get_at(record.sync_task_ids, scene_index)
            if existing and scene_index not in record.failed_sync_scenes:
                return JobHandle(generation_id=record.id, job_id=existing, scene_index=scene_index)

            if scene_index >= len(record.scene_urls):
                raise InvalidTransition(f"Scene {scene_index + 1} has not been generated yet")

            sync_id = self.lipsync.submit(LipSyncInput(
                video_url=video_url or record.scene_urls[scene_index],
                script=script or get_at(record.scene_scripts, scene_index) or "",
                voice_id=sync_so.voice_for_avatar(record.avatar_id),
            ))
            self._write(record, {
                "sync_task_ids": set_at(record.sync_task_ids, scene_index, sync_id),
                "failed_sync_scenes": [i for i in record.failed_sync_scenes if i != scene_index],
            })
            logger.info(f"[{record.id}] Lip-sync requested for scene {scene_index + 1}: {sync_id}")
            return JobHandle(generation_id=record.id, job_id=sync_id, scene_index=scene_index)

    def poll_lip_sync(self, job_id: str, generation_id: str, scene_index: int) -> LipSyncStatusResponse:
        record = self.store.require(generation_id)
        if not 0 <= scene_index < record.total_scenes:
            raise ValidationError(f"scene_index must be between 0 and {record.total_scenes - 1}")
        if record.is_terminal:
            url = get_at(record.synced_scene_urls, scene_index)
            return LipSyncStatusResponse(
                job_id=job_id,
                scene_index=scene_index,
                status=JobState.SUCCEEDED if url else JobState.FAILED,
                completed=bool(url),
                failed=not url,
                output_url=url,
                error=None if url else f"Generation is already {record.status}",
            )

        status = self.lipsync.poll_status(job_id)
        if status.is_pending:
            return LipSyncStatusResponse(job_id=job_id, scene_index=scene_index, status=status.state)

        output_url = self.lipsync.fetch_result(job_id) if status.state == JobState.SUCCEEDED else None

        with self.lock.hold(record.id) as acquired:
            if acquired:
                record = self.store.require(record.id)
                recorded = get_at(record.sync_task_ids, scene_index)
                if not record.is_terminal and recorded in (None, job_id):
                    self._settle_lip_sync(record, job_id, scene_index, output_url, status.error)

        return LipSyncStatusResponse(
            job_id=job_id,
            scene_index=scene_index,
            status=status.state,
            completed=output_url is not None,
            failed=status.state == JobState.FAILED,
            output_url=output_url,
            error=status.error,
        )

    def _settle_lip_sync(
        self,
        record: GenerationRecord,
        job_id: str,
        scene_index: int,
        output_url: Optional[str],
        error: Optional[str],
    ) -> GenerationRecord:
        fields = {}
        if get_at(record.sync_task_ids, scene_index) is None:
            fields["sync_task_ids"] = set_at(record.sync_task_ids, scene_index, job_id)

        if output_url:
            if get_at(record.synced_scene_urls, scene_index) != output_url:
                fields["synced_scene_urls"] = set_at(record.synced_scene_urls, scene_index, output_url)
                fields["failed_sync_scenes"] = [i for i in record.failed_sync_scenes if i != scene_index]
                logger.info(f"[{record.id}] Scene {scene_index + 1} lip-synced: {output_url}")
        elif scene_index not in record.failed_sync_scenes and not record.lip_sync_settled(scene_index):
            # Best-effort: the raw scene will be combined instead
            fields["failed_sync_scenes"] = sorted(record.failed_sync_scenes + [scene_index])
            metrics.record_error("lipsync", "ProviderJobFailed", error or "Lip-sync failed", generation_id=record.id)
            logger.warning(f"[{record.id}] Lip-sync for scene {scene_index + 1} failed: {error}")

        if not fields:
            return record
        return self._write(record, fields)

    # ── Combine ──────────────────────────────────────────────────────────

    def request_combine(self, generation_id: str, force: bool = False) -> JobHandle:
        with self._step(generation_id):
            record = self.store.require(generation_id)
            self._require_active(record)

            if record.combine_request_id:
                return JobHandle(generation_id=record.id, job_id=record.combine_request_id)

            inputs = record.combine_inputs()
            if len(inputs) < 2:
                raise InsufficientScenes(f"Need at least 2 scene videos to combine, have {len(inputs)}")

            stage = record.pipeline_status.stage
            if stage != Stage.READY_TO_COMBINE and not (force and record.all_scenes_generated):
                raise InvalidTransition(f"Generation {record.id} is not ready to combine ({record.status})")

            request_id = self.composer.submit(inputs)
            self._write(record, {"combine_request_id": request_id})
            synced = sum(1 for i in range(len(inputs)) if get_at(record.synced_scene_urls, i))
            logger.info(f"[{record.id}] Combine submitted: {request_id} ({synced}/{len(inputs)} lip-synced)")
            return JobHandle(generation_id=record.id, job_id=request_id)

    def poll_combine(self, job_id: str, generation_id: Optional[str] = None) -> CombineStatusResponse:
        if generation_id:
            record = self.store.require(generation_id)
        else:
            record = self.store.find_by_combine_request_id(job_id)
            if record is None:
                raise GenerationNotFound(f"No generation found for combine request {job_id}")

        if record.final_video_url:
            return CombineStatusResponse(
                job_id=job_id,
                status=JobState.SUCCEEDED,
                completed=True,
                video_url=record.final_video_url,
                thumbnail_url=record.thumbnail_url,
            )
        if record.is_terminal:
            return CombineStatusResponse(job_id=job_id, status=JobState.FAILED, failed=True, error=record.error_message)

        status = self.composer.poll_status(job_id)
        if status.is_pending:
            return CombineStatusResponse(job_id=job_id, status=status.state)

        result = self.composer.fetch_result(job_id) if status.state == JobState.SUCCEEDED else None

        with self.lock.hold(record.id) as acquired:
            if acquired:
                record = self.store.require(record.id)
                if not record.is_terminal and record.combine_request_id == job_id:
                    if result is not None:
                        self._write(record, {
                            "final_video_url": result.video_url,
                            "thumbnail_url": result.thumbnail_url,
                        })
                        logger.info(f"[{record.id}] Final video ready: {result.video_url}")
                    else:
                        self._fail(record, status.error or "Combine failed", source="combine")

        if result is not None:
            return CombineStatusResponse(
                job_id=job_id,
                status=status.state,
                completed=True,
                video_url=result.video_url,
                thumbnail_url=result.thumbnail_url,
            )
        return CombineStatusResponse(job_id=job_id, status=status.state, failed=True, error=status.error)
