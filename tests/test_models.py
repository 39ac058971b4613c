import pytest

from ugc_studio.pipeline.models import (
    GenerationRecord,
    PipelineStatus,
    Stage,
    get_at,
    set_at,
)


def _record(**fields) -> GenerationRecord:
    base = {"id": "gen-1", "total_scenes": 3, "scene_scripts": ["a", "b", "c"]}
    base.update(fields)
    return GenerationRecord(**base)


class TestPipelineStatus:

    @pytest.mark.parametrize("text", [
        "pending", "generating_scene_3", "extracting_frame", "lip_syncing_scene_2",
        "ready_to_combine", "combining_videos", "completed", "failed",
    ])
    def test_display_string_round_trips(self, text):
        assert str(PipelineStatus.parse(text)) == text

    def test_scene_index_is_carried(self):
        status = PipelineStatus.parse("lip_syncing_scene_12")
        assert status.stage == Stage.LIP_SYNCING_SCENE
        assert status.scene == 12

    def test_missing_status_is_pending(self):
        assert PipelineStatus.parse(None).stage == Stage.PENDING

    def test_unknown_status_rejected(self):
        with pytest.raises(ValueError):
            PipelineStatus.parse("teleporting")

    def test_terminal(self):
        assert PipelineStatus.parse("completed").is_terminal
        assert PipelineStatus.parse("failed").is_terminal
        assert not PipelineStatus.generating(1).is_terminal


class TestSparseLists:

    def test_set_at_pads_with_none(self):
        assert set_at([], 2, "x") == [None, None, "x"]

    def test_set_at_does_not_mutate(self):
        values = ["a"]
        set_at(values, 0, "b")
        assert values == ["a"]

    def test_get_at_out_of_range(self):
        assert get_at(["a"], 3) is None
        assert get_at(["a"], -1) is None


class TestGenerationRecord:

    def test_null_json_columns_become_empty_lists(self):
        record = GenerationRecord(id="x", scene_urls=None, sync_task_ids=None, failed_sync_scenes=None)
        assert record.scene_urls == []
        assert record.sync_task_ids == []
        assert record.failed_sync_scenes == []

    def test_progress(self):
        assert _record().progress == 0
        assert _record(scene_urls=["u1"]).progress == 33
        assert _record(scene_urls=["u1", "u2"]).progress == 67
        assert _record(scene_urls=["u1"], final_video_url="final").progress == 100

    def test_combine_inputs_prefer_synced_urls(self):
        record = _record(scene_urls=["u1", "u2", "u3"], synced_scene_urls=["s1", None, "s3"])
        assert record.combine_inputs() == ["s1", "u2", "s3"]

    def test_combine_inputs_without_synced_urls(self):
        record = _record(scene_urls=["u1", "u2"])
        assert record.combine_inputs() == ["u1", "u2"]

    def test_failed_lip_sync_counts_as_settled(self):
        record = _record(scene_urls=["u1", "u2", "u3"], synced_scene_urls=["s1", None, "s3"], failed_sync_scenes=[1])
        assert record.all_lip_syncs_settled


class TestDeriveStatus:

    def test_pending_before_first_submission(self):
        assert str(_record().derive_status()) == "pending"

    def test_generating_first_scene(self):
        assert str(_record(scene_task_ids=["k1"]).derive_status()) == "generating_scene_1"

    def test_extracting_frame_after_scene(self):
        record = _record(
            scene_task_ids=["k1"], scene_urls=["u1"],
            frame_extraction_request_id="f1", frame_source_url="u1",
        )
        assert str(record.derive_status()) == "extracting_frame"

    def test_stale_frame_extraction_ignored(self):
        record = _record(
            scene_task_ids=["k1", "k2"], scene_urls=["u1", "u2"],
            frame_extraction_request_id="f1", frame_source_url="u1",
        )
        assert str(record.derive_status()) == "generating_scene_3"

    def test_next_scene_submitted(self):
        record = _record(
            scene_task_ids=["k1", "k2"], scene_urls=["u1"],
            frame_extraction_request_id="f1", frame_source_url="u1",
        )
        assert str(record.derive_status()) == "generating_scene_2"

    def test_lip_syncing_last_unsettled_scene(self):
        record = _record(
            scene_task_ids=["k1", "k2", "k3"], scene_urls=["u1", "u2", "u3"],
            sync_task_ids=["s1", "s2", "s3"], synced_scene_urls=["o1"],
        )
        assert str(record.derive_status()) == "lip_syncing_scene_3"

    def test_ready_to_combine(self):
        record = _record(
            scene_urls=["u1", "u2", "u3"], synced_scene_urls=["o1", "o2", "o3"],
        )
        assert str(record.derive_status()) == "ready_to_combine"

    def test_combining(self):
        record = _record(scene_urls=["u1", "u2", "u3"], combine_request_id="c1")
        assert str(record.derive_status()) == "combining_videos"

    def test_final_url_means_completed(self):
        record = _record(scene_urls=["u1", "u2", "u3"], combine_request_id="c1", final_video_url="f")
        assert str(record.derive_status()) == "completed"
        assert record.is_terminal

    def test_failed_is_sticky(self):
        record = _record(status="failed", scene_urls=["u1"])
        assert str(record.derive_status()) == "failed"

    def test_single_scene_complete(self):
        record = GenerationRecord(id="x", total_scenes=1, scene_urls=["u1"], final_video_url="u1")
        assert str(record.derive_status()) == "completed"
