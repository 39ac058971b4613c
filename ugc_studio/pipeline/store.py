"""
Generation Record Store.

The `videos` table is the single source of truth for pipeline progress.
Each transition is written with one `update()` call carrying all of its
fields, so readers never see half a transition.

Two implementations:
  - SupabaseGenerationStore: service-role client (bypasses RLS)
  - InMemoryGenerationStore: local development without Supabase, and tests
"""

import os
import re
import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from supabase import create_client, Client

from ..errors import GenerationNotFound
from .models import GenerationRecord, Stage

logger = logging.getLogger(__name__)

VIDEOS_TABLE = os.environ.get("VIDEOS_TABLE", "videos")

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


def is_uuid(value: str) -> bool:
    return bool(value and _UUID_RE.match(value))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class GenerationStore(ABC):

    @abstractmethod
    def create(self, record: GenerationRecord) -> GenerationRecord:
        ...

    @abstractmethod
    def get_by_id(self, generation_id: str) -> Optional[GenerationRecord]:
        ...

    @abstractmethod
    def find_by_current_job_id(self, job_id: str) -> Optional[GenerationRecord]:
        """Most recently updated record whose current_task_id is `job_id`."""

    @abstractmethod
    def find_by_combine_request_id(self, request_id: str) -> Optional[GenerationRecord]:
        ...

    @abstractmethod
    def update(self, generation_id: str, fields: dict) -> GenerationRecord:
        """Apply `fields` in one write and return the stored record."""

    @abstractmethod
    def list_by_owner(self, user_id: str) -> list[GenerationRecord]:
        ...

    @abstractmethod
    def list_completed_by_owner(self, user_id: str) -> list[GenerationRecord]:
        """Owner's completed generations that have a final video, newest first."""

    @abstractmethod
    def delete(self, generation_id: str) -> bool:
        ...

    def require(self, generation_id: str) -> GenerationRecord:
        record = self.get_by_id(generation_id)
        if record is None:
            raise GenerationNotFound(f"Generation {generation_id} not found")
        return record


# ═════════════════════════════════════════════════════════════════════════════
# Supabase
# ═════════════════════════════════════════════════════════════════════════════

_service_client: Optional[Client] = None


def _get_service_client() -> Client:
    """Lazy-init Supabase client using service role key."""
    global _service_client
    if _service_client is None:
        url = os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _service_client = create_client(url, key)
    return _service_client


def supabase_configured() -> bool:
    url = os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL", "")
    return bool(url and os.getenv("SUPABASE_SERVICE_ROLE_KEY"))


class SupabaseGenerationStore(GenerationStore):

    def __init__(self, client: Optional[Client] = None, table: str = VIDEOS_TABLE):
        self._client = client
        self.table_name = table

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = _get_service_client()
        return self._client

    def _table(self):
        return self.client.table(self.table_name)

    @staticmethod
    def _first(result) -> Optional[GenerationRecord]:
        rows = result.data or []
        return GenerationRecord(**rows[0]) if rows else None

    def create(self, record: GenerationRecord) -> GenerationRecord:
        now = _now_iso()
        row = record.model_dump()
        row["id"] = row.get("id") or str(uuid4())
        row["created_at"] = row.get("created_at") or now
        row["updated_at"] = now

        result = self._table().insert(row).execute()
        created = self._first(result)
        logger.info(f"[Supabase] Created video record {row['id']} (owner={row.get('user_id') or 'ANONYMOUS'})")
        return created or GenerationRecord(**row)

    def get_by_id(self, generation_id: str) -> Optional[GenerationRecord]:
        if not is_uuid(generation_id):
            return None
        result = self._table().select("*").eq("id", generation_id).limit(1).execute()
        return self._first(result)

    def find_by_current_job_id(self, job_id: str) -> Optional[GenerationRecord]:
        result = (
            self._table()
            .select("*")
            .eq("current_task_id", job_id)
            .order("updated_at", desc=True)
            .limit(1)
            .execute()
        )
        return self._first(result)

    def find_by_combine_request_id(self, request_id: str) -> Optional[GenerationRecord]:
        result = self._table().select("*").eq("combine_request_id", request_id).limit(1).execute()
        return self._first(result)

    def update(self, generation_id: str, fields: dict) -> GenerationRecord:
        fields = {**fields, "updated_at": _now_iso()}
        result = self._table().update(fields).eq("id", generation_id).execute()
        updated = self._first(result)
        if updated is None:
            raise GenerationNotFound(f"Generation {generation_id} not found")
        logger.info(f"[Supabase] Video {generation_id} updated: {sorted(fields)}")
        return updated

    def list_by_owner(self, user_id: str) -> list[GenerationRecord]:
        result = (
            self._table()
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .execute()
        )
        return [GenerationRecord(**row) for row in result.data or []]

    def list_completed_by_owner(self, user_id: str) -> list[GenerationRecord]:
        result = (
            self._table()
            .select("*")
            .eq("user_id", user_id)
            .eq("status", Stage.COMPLETED.value)
            .not_.is_("final_video_url", "null")
            .order("created_at", desc=True)
            .execute()
        )
        return [GenerationRecord(**row) for row in result.data or []]

    def delete(self, generation_id: str) -> bool:
        if not is_uuid(generation_id):
            return False
        result = self._table().delete().eq("id", generation_id).execute()
        return bool(result.data)


# ═════════════════════════════════════════════════════════════════════════════
# In-memory
# ═════════════════════════════════════════════════════════════════════════════

class InMemoryGenerationStore(GenerationStore):

    def __init__(self):
        self._lock = threading.Lock()
        self._rows: dict[str, dict] = {}

    def create(self, record: GenerationRecord) -> GenerationRecord:
        now = _now_iso()
        row = record.model_dump()
        row["id"] = row.get("id") or str(uuid4())
        row["created_at"] = row.get("created_at") or now
        row["updated_at"] = now
        with self._lock:
            self._rows[row["id"]] = row
            return GenerationRecord(**copy.deepcopy(row))

    def get_by_id(self, generation_id: str) -> Optional[GenerationRecord]:
        with self._lock:
            row = self._rows.get(generation_id)
            return GenerationRecord(**copy.deepcopy(row)) if row else None

    def _find(self, column: str, value: str) -> Optional[GenerationRecord]:
        with self._lock:
            matches = [row for row in self._rows.values() if row.get(column) == value]
            if not matches:
                return None
            row = max(matches, key=lambda r: r["updated_at"])
            return GenerationRecord(**copy.deepcopy(row))

    def find_by_current_job_id(self, job_id: str) -> Optional[GenerationRecord]:
        return self._find("current_task_id", job_id)

    def find_by_combine_request_id(self, request_id: str) -> Optional[GenerationRecord]:
        return self._find("combine_request_id", request_id)

    def update(self, generation_id: str, fields: dict) -> GenerationRecord:
        with self._lock:
            row = self._rows.get(generation_id)
            if row is None:
                raise GenerationNotFound(f"Generation {generation_id} not found")
            row.update(copy.deepcopy(fields))
            row["updated_at"] = _now_iso()
            return GenerationRecord(**copy.deepcopy(row))

    def list_by_owner(self, user_id: str) -> list[GenerationRecord]:
        with self._lock:
            rows = [row for row in self._rows.values() if row.get("user_id") == user_id]
            rows.sort(key=lambda r: r["created_at"], reverse=True)
            return [GenerationRecord(**copy.deepcopy(row)) for row in rows]

    def list_completed_by_owner(self, user_id: str) -> list[GenerationRecord]:
        return [
            record for record in self.list_by_owner(user_id)
            if record.status == Stage.COMPLETED.value and record.final_video_url
        ]

    def delete(self, generation_id: str) -> bool:
        with self._lock:
            return self._rows.pop(generation_id, None) is not None


def build_store() -> GenerationStore:
    if supabase_configured():
        return SupabaseGenerationStore()
    logger.warning("Supabase not configured — generation records are kept in memory only")
    return InMemoryGenerationStore()
