import pytest
from fastapi.testclient import TestClient

from ugc_studio import metrics
from ugc_studio.auth import get_identity_resolver
from ugc_studio.main import app
from ugc_studio.pipeline.models import GenerationRecord
from ugc_studio.pipeline.routes import get_service

TOKENS = {"token-alice": "alice", "token-bob": "bob"}
AUTH_ALICE = {"Authorization": "Bearer token-alice"}
AUTH_BOB = {"Authorization": "Bearer token-bob"}


@pytest.fixture
def client(service):
    app.dependency_overrides[get_service] = lambda: service
    app.dependency_overrides[get_identity_resolver] = lambda: TOKENS.get
    yield TestClient(app)
    app.dependency_overrides.clear()


def _start(client, headers=None, duration=16):
    resp = client.post("/video/generate", json={
        "script": "Здравейте приятели това е новият ни серум за лице и го обожавам",
        "avatar_url": "https://cdn.example.com/avatars/maria.png",
        "duration": duration,
    }, headers=headers or {})
    assert resp.status_code == 200, resp.text
    return resp.json()


class TestVideoRoutes:

    def test_generate_and_poll(self, client, scenes):
        started = _start(client)
        assert started["task_id"] == "kie-1"
        assert started["total_scenes"] == 2

        resp = client.get(f"/video/status/{started['task_id']}", params={"generation_id": started["generation_id"]})
        assert resp.status_code == 200
        assert resp.json()["status"] == "generating_scene_1"

        scenes.finish("kie-1", "https://cdn.kie.ai/scene1.mp4")
        body = client.get(f"/video/status/{started['task_id']}").json()
        assert body["status"] == "extracting_frame"
        assert body["frame_job_id"] == "frame-1"
        assert body["progress"] == 50

    def test_owner_from_bearer_token(self, client, store):
        started = _start(client, headers=AUTH_ALICE)
        assert store.get_by_id(started["generation_id"]).user_id == "alice"

    def test_invalid_token_is_anonymous(self, client, store):
        started = _start(client, headers={"Authorization": "Bearer nope"})
        assert store.get_by_id(started["generation_id"]).user_id is None

    def test_validation_error(self, client):
        resp = client.post("/video/generate", json={"script": "", "avatar_url": "https://x/a.png"})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Script is required"

    def test_unknown_task(self, client):
        assert client.get("/video/status/kie-missing").status_code == 404

    def test_frame_and_next_scene(self, client, scenes, frames):
        started = _start(client)
        gid = started["generation_id"]
        scenes.finish("kie-1", "https://cdn.kie.ai/scene1.mp4")
        client.get("/video/status/kie-1", params={"generation_id": gid})

        resp = client.post("/video/next-scene", json={"generation_id": gid})
        assert resp.json()["job_id"] == "frame-1"

        frames.finish("frame-1", "https://fal.media/frame1.png")
        frame = client.get("/video/frame-status/frame-1", params={"generation_id": gid}).json()
        assert frame["completed"] is True
        assert frame["frame_url"] == "https://fal.media/frame1.png"

        resp = client.post("/video/generate-scene", json={
            "generation_id": gid, "frame_url": frame["frame_url"], "scene_number": 2,
        })
        assert resp.status_code == 200
        assert resp.json() == {"generation_id": gid, "job_id": "kie-2", "scene_number": 2, "scene_index": None}

    def test_lipsync_routes(self, client, scenes, lipsync):
        gid = _start(client)["generation_id"]
        scenes.finish("kie-1", "https://cdn.kie.ai/scene1.mp4")
        client.get("/video/status/kie-1", params={"generation_id": gid})

        resp = client.post("/video/lipsync", json={
            "generation_id": gid, "scene_index": 0,
            "video_url": "https://cdn.kie.ai/scene1.mp4", "script": "Здравейте",
        })
        assert resp.json()["job_id"] == "sync-1"

        lipsync.finish("sync-1", "https://sync.so/out1.mp4")
        body = client.get("/video/lipsync-status/sync-1", params={"generation_id": gid, "scene_index": 0}).json()
        assert body["completed"] is True
        assert body["output_url"] == "https://sync.so/out1.mp4"

    def test_status_by_generation_id(self, client, scenes):
        started = _start(client, duration=8)
        scenes.finish("kie-1", "https://cdn.kie.ai/scene1.mp4")

        body = client.get(f"/video/status/{started['generation_id']}").json()
        assert body["status"] == "completed"
        assert body["task_id"] == "kie-1"
        assert body["video_url"] == "https://cdn.kie.ai/scene1.mp4"

    def test_lipsync_status_scene_index_range(self, client):
        gid = _start(client)["generation_id"]
        resp = client.get("/video/lipsync-status/sync-1", params={"generation_id": gid, "scene_index": -1})
        assert resp.status_code == 400

    def test_combine_with_one_scene_is_rejected(self, client, scenes):
        gid = _start(client)["generation_id"]
        scenes.finish("kie-1", "https://cdn.kie.ai/scene1.mp4")
        client.get("/video/status/kie-1", params={"generation_id": gid})

        resp = client.post("/video/combine", json={"generation_id": gid, "force": True})
        assert resp.status_code == 400

    def test_step_in_progress(self, client, lock, scenes):
        gid = _start(client)["generation_id"]
        token = lock.acquire(gid)
        resp = client.post("/video/next-scene", json={"generation_id": gid})
        lock.release(gid, token)
        assert resp.status_code == 409

    def test_combine_status_unknown(self, client):
        assert client.get("/video/combine-status/combine-404").status_code == 404

    def test_script(self, client, scripts):
        resp = client.post("/video/script", json={"product_name": "Serum", "duration": 16})
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "script": scripts.generate.return_value}

    def test_unexpected_error_is_500(self, client, scripts):
        scripts.generate.side_effect = RuntimeError("boom")
        resp = client.post("/video/script", json={"product_name": "Serum"})
        assert resp.status_code == 500
        assert metrics.get_counter("errors.RuntimeError") == 1


class TestLibraryRoutes:

    def _own(self, store, owner):
        return store.create(GenerationRecord(id="", user_id=owner, script="hi"))

    def test_requires_token(self, client):
        assert client.get("/videos").status_code == 401
        assert client.get("/videos", headers={"Authorization": "Bearer nope"}).status_code == 401

    def test_list_own_videos(self, client, store):
        mine = self._own(store, "alice")
        self._own(store, "bob")
        resp = client.get("/videos", headers=AUTH_ALICE)
        assert resp.status_code == 200
        assert [v["id"] for v in resp.json()] == [mine.id]

    def test_list_completed(self, client, store):
        done = store.create(GenerationRecord(
            id="", user_id="alice", status="completed", final_video_url="https://v/final.mp4",
        ))
        self._own(store, "alice")
        resp = client.get("/videos/completed", headers=AUTH_ALICE)
        assert resp.status_code == 200
        assert [v["id"] for v in resp.json()] == [done.id]
        assert client.get("/videos/completed").status_code == 401

    def test_get_other_owner_forbidden(self, client, store):
        theirs = self._own(store, "bob")
        assert client.get(f"/videos/{theirs.id}", headers=AUTH_ALICE).status_code == 403
        assert client.get(f"/videos/{theirs.id}", headers=AUTH_BOB).status_code == 200

    def test_get_missing(self, client):
        assert client.get("/videos/3f2b8c1e-5d4a-4f6b-9c2d-1a2b3c4d5e6f", headers=AUTH_ALICE).status_code == 404

    def test_delete(self, client, store):
        mine = self._own(store, "alice")
        assert client.delete(f"/videos/{mine.id}", headers=AUTH_BOB).status_code == 403
        assert client.delete(f"/videos/{mine.id}", headers=AUTH_ALICE).json() == {"success": True}
        assert store.get_by_id(mine.id) is None


class TestServiceRoutes:

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert "kie_api_key_set" in body

    def test_metrics_counts_requests(self, client):
        client.get("/health")
        snapshot = client.get("/metrics").json()
        assert snapshot["counters"]["requests.total"] >= 1
        assert "GET /health" in " ".join(snapshot["counters"])
