"""
Task view cache + recovery.

Pollers address a generation by whatever id they hold: the generation id
itself or the external job id they were last handed. The cache maps those
ids to a TaskView; on a miss the view is rebuilt from the record store,
which is always authoritative. Losing the cache (restart, eviction) only
costs one store lookup.
"""

import os
import logging
import threading
from collections import OrderedDict
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from ..errors import GenerationNotFound
from .models import GenerationRecord
from .store import GenerationStore, is_uuid

logger = logging.getLogger(__name__)

TASK_CACHE_SIZE = int(os.environ.get("TASK_CACHE_SIZE", "1024"))


class TaskView(BaseModel):
    """Working copy of the fields a poller needs to drive the next step."""

    generation_id: str
    task_id: str
    status: str
    current_scene: int = 1  # 1-based scene in progress
    total_scenes: int = 1
    scene_urls: list[str] = Field(default_factory=list)
    scene_scripts: list[str] = Field(default_factory=list)
    synced_scene_urls: list[Optional[str]] = Field(default_factory=list)
    frame_extraction_request_id: Optional[str] = None
    combine_request_id: Optional[str] = None
    final_video_url: Optional[str] = None
    avatar_url: str = ""

    @classmethod
    def from_record(cls, record: GenerationRecord, requested_id: Optional[str] = None) -> "TaskView":
        return cls(
            generation_id=record.id,
            task_id=record.current_task_id or requested_id or record.id,
            status=record.status,
            current_scene=record.current_scene + 1,
            total_scenes=record.total_scenes,
            scene_urls=list(record.scene_urls),
            scene_scripts=list(record.scene_scripts),
            synced_scene_urls=list(record.synced_scene_urls),
            frame_extraction_request_id=record.frame_extraction_request_id,
            combine_request_id=record.combine_request_id,
            final_video_url=record.final_video_url,
            avatar_url=record.avatar_url,
        )


class TaskCache:
    """Bounded LRU map from any known id to a TaskView."""

    def __init__(self, max_size: int = TASK_CACHE_SIZE):
        self.max_size = max_size
        self._lock = threading.Lock()
        self._views: "OrderedDict[str, TaskView]" = OrderedDict()

    def get(self, key: str) -> Optional[TaskView]:
        with self._lock:
            view = self._views.get(key)
            if view is not None:
                self._views.move_to_end(key)
            return view

    def put(self, keys: Iterable[Optional[str]], view: TaskView):
        with self._lock:
            for key in keys:
                if not key:
                    continue
                self._views[key] = view
                self._views.move_to_end(key)
            while len(self._views) > self.max_size:
                self._views.popitem(last=False)

    def evict(self, key: str):
        with self._lock:
            self._views.pop(key, None)

    def clear(self):
        with self._lock:
            self._views.clear()

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._views

    def __len__(self) -> int:
        with self._lock:
            return len(self._views)


class TaskRecovery:

    def __init__(self, store: GenerationStore, cache: Optional[TaskCache] = None):
        self.store = store
        self.cache = cache if cache is not None else TaskCache()

    def get_or_restore(self, identifier: str) -> TaskView:
        view = self.cache.get(identifier)
        if view is not None:
            return view

        record = self.store.get_by_id(identifier) if is_uuid(identifier) else None
        if record is None:
            record = self.store.find_by_current_job_id(identifier)
        if record is None:
            raise GenerationNotFound(f"No generation found for {identifier}")

        view = self.remember(record, identifier)
        logger.info(f"[Recovery] Restored {record.id} from store (requested={identifier}, status={record.status})")
        return view

    def remember(self, record: GenerationRecord, *extra_keys: str) -> TaskView:
        view = TaskView.from_record(record)
        self.cache.put([record.id, record.current_task_id, *extra_keys], view)
        return view
