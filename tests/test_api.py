import os

import pytest

from stitcher.errors import TranscodeError
from stitcher.models.api import ProcessVideosRequest
from stitcher.models.domain import JobStatus
from stitcher.services.filter_graph import NodeRole

from conftest import AUDIO_URL, video_payload


def test_process_videos_orders_scenes_and_appends_outro(client, engine, settings, outro_file):
    resp = client.post("/process-videos", json=video_payload(2, 1, 3))
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["sceneOrder"] == [1, 2, 3]
    assert body["processedVideos"] == 3
    assert body["downloadUrl"] == f"/download/{body['jobId']}"
    assert body["videoStats"] == {"duration": 4.0, "fileSize": 2048, "fileSizeMB": "0.00"}
    assert body["message"] == "Successfully processed 3 videos with 1-minute audio track"

    stitch = engine.job("stitch")
    assert [os.path.basename(source.path) for source in stitch.inputs] == [
        "video_001.mp4",
        "video_002.mp4",
        "video_003.mp4",
    ]
    outro = engine.job("outro")
    assert [source.path for source in outro.inputs][1] == str(outro_file)
    assert outro.output_path.endswith(f"final_video_{body['jobId']}.mp4")
    assert engine.labels()[-3:] == ["stitch", "mux", "outro"]

    assert not os.path.exists(os.path.join(settings.temp_root, body["jobId"]))
    assert os.path.isfile(os.path.join(settings.output_dir, f"final_video_{body['jobId']}.mp4"))

    status_resp = client.get(f"/status/{body['jobId']}")
    assert status_resp.status_code == 200
    job = status_resp.json()
    assert job["status"] == "completed"
    assert job["progress"] == 100
    assert job["error"] is None
    assert job["sceneOrder"] == [1, 2, 3]
    assert job["downloadUrl"] == f"/download/{body['jobId']}"
    assert job["completedTime"] is not None

    download_resp = client.get(body["downloadUrl"])
    assert download_resp.status_code == 200
    assert download_resp.headers["content-type"] == "video/mp4"
    assert download_resp.headers["content-length"] == "2048"
    assert f"final_video_{body['jobId']}.mp4" in download_resp.headers["content-disposition"]


def test_progress_is_monotonic_and_ends_at_100(client, repo):
    resp = client.post("/process-videos", json=video_payload(1, 2, 3, 4))
    assert resp.status_code == 200
    values = repo.progress_log
    assert values == sorted(values)
    assert values[-1] == 100
    assert {10, 20, 60, 80, 90}.issubset(set(values))


def test_clip_without_audio_gets_silent_branch(client, engine, prober):
    prober.audio["video_002.mp4"] = False
    prober.durations["video_002.mp4"] = 7.25
    resp = client.post("/process-videos", json=video_payload(1, 2))
    assert resp.status_code == 200

    graph = engine.job("stitch").graph
    assert graph.has_audio_output
    silence = graph.nodes_with_role(NodeRole.SILENCE)
    assert len(silence) == 1
    assert silence[0].outputs == ("a1",)
    assert silence[0].filters[-2].option("duration") == "7.250"
    assert [node.outputs for node in graph.nodes_with_role(NodeRole.AUDIO)] == [("a0",)]


def test_outro_missing_fails_before_any_download(client, settings, retriever, engine):
    settings.outro_path = os.path.join(settings.temp_root, "missing-outro.mp4")
    resp = client.post("/process-videos", json=video_payload(1, 2))
    assert resp.status_code == 500
    body = resp.json()
    assert body["success"] is False
    assert "Outro asset not found" in body["error"]
    assert retriever.fetched == []
    assert engine.jobs == []
    assert not os.path.exists(os.path.join(settings.temp_root, body["jobId"]))

    job = client.get(f"/status/{body['jobId']}").json()
    assert job["status"] == "failed"
    assert job["progress"] == 0
    assert "Outro asset not found" in job["error"]
    assert job["failedTime"] is not None
    assert job["downloadUrl"] is None


def test_unreachable_audio_falls_back_to_silence(client, retriever, engine):
    retriever.failing.add(AUDIO_URL)
    resp = client.post("/process-videos", json=video_payload(1))
    assert resp.status_code == 200
    assert "silent audio track" in resp.json()["message"]
    assert "audio-silence" in engine.labels()
    assert not any(label.startswith("audio-decode") for label in engine.labels())
    mux = engine.job("mux")
    assert mux.inputs[1].path.endswith("audio_trimmed.m4a")


def test_outro_disabled_makes_mux_the_final_render(client, settings, engine):
    settings.outro_enabled = False
    resp = client.post("/process-videos", json=video_payload(1, 2))
    assert resp.status_code == 200
    assert "outro" not in engine.labels()
    assert engine.job("mux").output_path.endswith(f"final_video_{resp.json()['jobId']}.mp4")


def test_validation_errors_return_400_with_job_id(client, retriever):
    cases = [
        ({"videos": [], "mv_audio": AUDIO_URL}, "No videos provided"),
        ({"videos": [{"scene_number": 1, "final_video_url": "https://x/1.mp4"}]}, "Expected videos array"),
        ({"videos": "nope", "mv_audio": AUDIO_URL}, "Expected videos array"),
        (
            {
                "videos": [
                    {"scene_number": "abc", "final_video_url": "https://x/1.mp4"},
                    {"scene_number": 2},
                    {"scene_number": 3, "final_video_url": "https://x/3.mp4"},
                ],
                "mv_audio": AUDIO_URL,
            },
            "Invalid video entries: 2 videos",
        ),
        (video_payload(1, 1, 2), "Duplicate scene numbers: [1]"),
    ]
    for payload, expected in cases:
        resp = client.post("/process-videos", json=payload)
        assert resp.status_code == 400
        body = resp.json()
        assert expected in body["error"]
        assert body["jobId"]
        status_body = client.get(f"/status/{body['jobId']}").json()
        assert status_body["status"] == "failed"
    assert retriever.fetched == []


def test_segment_download_failure_fails_job(client, retriever, repo):
    retriever.failing.add("https://cdn.example.com/scene-2.mp4")
    resp = client.post("/process-videos", json=video_payload(1, 2, 3))
    assert resp.status_code == 500
    body = resp.json()
    assert body["error"].startswith("Failed to download video for scene 2")
    job = client.get(f"/status/{body['jobId']}").json()
    assert job["status"] == "failed"
    assert job["progress"] < 100
    assert repo.progress_log == sorted(repo.progress_log)


def test_invalid_downloaded_video_fails_job(client, prober):
    prober.invalid.add("video_001.mp4")
    resp = client.post("/process-videos", json=video_payload(1))
    assert resp.status_code == 500
    assert "scene 1 is invalid or corrupted" in resp.json()["error"]


def test_transcode_error_message_is_preserved(client, engine):
    engine.fail["stitch"] = "[Parsed_concat_0 @ 0x1] Input link parameters do not match"
    resp = client.post("/process-videos", json=video_payload(1, 2))
    assert resp.status_code == 500
    assert resp.json()["error"] == "[Parsed_concat_0 @ 0x1] Input link parameters do not match"


def test_unknown_job_returns_404(client):
    status_resp = client.get("/status/0123456789abcdef0123456789abcdef")
    assert status_resp.status_code == 404
    assert status_resp.json()["error"] == "Job not found"

    download_resp = client.get("/download/0123456789abcdef0123456789abcdef")
    assert download_resp.status_code == 404
    assert download_resp.json()["error"] == "Video file not found or not accessible"

    traversal_resp = client.get("/download/..%2Fetc")
    assert traversal_resp.status_code == 404


def test_health_and_descriptor(client):
    client.post("/process-videos", json=video_payload(1))
    health = client.get("/health")
    assert health.status_code == 200
    payload = health.json()
    assert payload["status"] == "OK"
    assert payload["activeJobs"] == 1

    root = client.get("/")
    assert root.status_code == 200
    assert root.json()["endpoints"]["process"] == "POST /process-videos"


def test_outro_without_audio_synthesizes_outro_silence(client, engine, prober):
    prober.audio["outro.mp4"] = False
    prober.durations["outro.mp4"] = 3.0
    resp = client.post("/process-videos", json=video_payload(1))
    assert resp.status_code == 200
    graph = engine.job("outro").graph
    silence = graph.nodes_with_role(NodeRole.SILENCE)
    assert [node.outputs for node in silence] == [("a1",)]
    assert graph.outputs == ("outv", "outa")


def test_prober_sees_no_audio_anywhere_gives_video_only_stitch(client, engine, prober):
    prober.audio.update({"video_001.mp4": False, "video_002.mp4": False})
    resp = client.post("/process-videos", json=video_payload(1, 2))
    assert resp.status_code == 200
    stitch = engine.job("stitch")
    assert stitch.graph.outputs == ("outv",)
    assert "-c:a" not in stitch.output_options


def test_mux_copies_video_and_maps_prepared_audio(client, engine):
    resp = client.post("/process-videos", json=video_payload(1, 2))
    assert resp.status_code == 200
    mux = engine.job("mux")
    assert os.path.basename(mux.inputs[0].path) == "stitched_video.mp4"
    assert mux.inputs[1].path.endswith("audio_trimmed.m4a")
    assert mux.maps == ["-map", "0:v:0", "-map", "1:a:0"]
    options = mux.output_options
    assert options[options.index("-c:v") + 1] == "copy"
    assert "-shortest" in options
    assert mux.graph is None


def test_failed_outro_leaves_nothing_to_download(client, settings, engine):
    engine.fail["outro"] = "Conversion failed!"
    engine.partial.add("outro")
    resp = client.post("/process-videos", json=video_payload(1, 2))
    assert resp.status_code == 500
    job_id = resp.json()["jobId"]
    assert client.get(f"/status/{job_id}").json()["status"] == "failed"
    assert client.get(f"/download/{job_id}").status_code == 404
    assert os.listdir(settings.output_dir) == []


def test_stats_failure_after_final_render_is_not_published(client, settings, prober, engine):
    settings.outro_enabled = False
    prober.unreadable.add("final_video_")
    resp = client.post("/process-videos", json=video_payload(1))
    assert resp.status_code == 500
    assert "moov atom not found" in resp.json()["error"]
    job_id = resp.json()["jobId"]
    assert engine.job("mux").output_path.startswith(os.path.join(settings.temp_root, job_id))
    assert client.get(f"/download/{job_id}").status_code == 404
    assert os.listdir(settings.output_dir) == []


def test_final_output_is_rendered_in_workspace_then_published(client, settings, engine):
    resp = client.post("/process-videos", json=video_payload(1))
    job_id = resp.json()["jobId"]
    assert engine.job("outro").output_path == os.path.join(settings.temp_root, job_id, f"final_video_{job_id}.mp4")
    assert os.listdir(settings.output_dir) == [f"final_video_{job_id}.mp4"]


def test_failed_job_removes_stale_output(service, engine):
    job = service.create_job()
    stale = service.output_path(job.id)
    with open(stale, "wb") as f:
        f.write(b"stale")
    engine.fail["stitch"] = "Error while filtering"
    with pytest.raises(TranscodeError):
        service.process(job.id, ProcessVideosRequest(**video_payload(1)))
    assert not os.path.exists(stale)
    assert service.get_job(job.id).status == JobStatus.FAILED
