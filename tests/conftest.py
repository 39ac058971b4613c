from typing import Any, Optional
from unittest.mock import MagicMock

import pytest

from ugc_studio import metrics
from ugc_studio.locks import InMemoryStepLock
from ugc_studio.pipeline.jobs import JobClient
from ugc_studio.pipeline.models import JobState, JobStatus, StartGenerationRequest
from ugc_studio.pipeline.orchestrator import GenerationService
from ugc_studio.pipeline.recovery import TaskCache
from ugc_studio.pipeline.store import InMemoryGenerationStore


class FakeJobClient(JobClient):
    """Scriptable job client: jobs stay RUNNING until finished or failed by the test."""

    def __init__(self, name: str, prefix: str):
        self.name = name
        self.prefix = prefix
        self.submitted: list[Any] = []
        self.states: dict[str, JobState] = {}
        self.results: dict[str, Any] = {}
        self.errors: dict[str, str] = {}
        self.poll_count = 0
        self.submit_error: Optional[Exception] = None

    def submit(self, job_input) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(job_input)
        job_id = f"{self.prefix}-{len(self.submitted)}"
        self.states[job_id] = JobState.RUNNING
        return job_id

    def poll_status(self, job_id: str) -> JobStatus:
        self.poll_count += 1
        return JobStatus(state=self.states.get(job_id, JobState.RUNNING), error=self.errors.get(job_id))

    def fetch_result(self, job_id: str):
        self._require_success(job_id)
        return self.results[job_id]

    def finish(self, job_id: str, result):
        self.states[job_id] = JobState.SUCCEEDED
        self.results[job_id] = result

    def fail(self, job_id: str, error: str = "provider error"):
        self.states[job_id] = JobState.FAILED
        self.errors[job_id] = error

    @property
    def last_id(self) -> str:
        return f"{self.prefix}-{len(self.submitted)}"


@pytest.fixture(autouse=True)
def clean_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def store():
    return InMemoryGenerationStore()


@pytest.fixture
def lock():
    return InMemoryStepLock(ttl_seconds=30)


@pytest.fixture
def scenes():
    return FakeJobClient("scene", "kie")


@pytest.fixture
def frames():
    return FakeJobClient("frame", "frame")


@pytest.fixture
def lipsync():
    return FakeJobClient("lipsync", "sync")


@pytest.fixture
def composer():
    return FakeJobClient("combine", "combine")


@pytest.fixture
def scripts():
    generator = MagicMock()
    generator.generate.return_value = "Здравейте, това е нашият нов продукт."
    return generator


@pytest.fixture
def cache():
    return TaskCache(max_size=64)


@pytest.fixture
def service(store, scenes, frames, lipsync, composer, scripts, cache, lock):
    return GenerationService(
        store=store,
        scenes=scenes,
        frames=frames,
        lipsync=lipsync,
        composer=composer,
        scripts=scripts,
        cache=cache,
        lock=lock,
    )


@pytest.fixture
def make_request():
    def _make(duration: int = 16, **overrides) -> StartGenerationRequest:
        fields = {
            "script": " ".join(f"word{i}" for i in range(1, 41)),
            "avatar_url": "https://cdn.example.com/avatars/maria.png",
            "duration": duration,
            "avatar_id": "maria",
        }
        fields.update(overrides)
        return StartGenerationRequest(**fields)
    return _make
