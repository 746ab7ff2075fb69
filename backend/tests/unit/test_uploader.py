import httpx
import pytest

from app.client.uploader import BULK_UPLOAD_PATH, BatchUploader


def _ok(dataset_id):
    return httpx.Response(
        200,
        json={"results": [{"filename": "x", "success": True, "dataset": {"id": dataset_id}}]},
    )


@pytest.fixture
def payload(tmp_path, geojson):
    return geojson.write(tmp_path / "adams.geojson", geojson.collection(geojson.sample_features()))


def test_stalled_upload_is_retried(payload):
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.WriteTimeout("no bytes sent", request=request)
        return _ok(11)

    with BatchUploader("http://geo", 7, "OH", transport=httpx.MockTransport(handler)) as up:
        result = up.upload_file(payload)

    assert result.success and result.dataset_id == 11
    assert result.attempts == 2
    assert calls[-1].url.path == BULK_UPLOAD_PATH
    assert calls[-1].headers["X-User-Id"] == "7"


def test_gives_up_after_max_retries(payload):
    def handler(request):
        raise httpx.ReadTimeout("stalled", request=request)

    with BatchUploader("http://geo", 7, "OH", max_retries=2, transport=httpx.MockTransport(handler)) as up:
        result = up.upload_file(payload)
    assert not result.success
    assert result.attempts == 3
    assert result.error.startswith("stalled")


def test_rejection_is_not_retried(payload):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"detail": "region is required"})

    with BatchUploader("http://geo", 7, "", transport=httpx.MockTransport(handler)) as up:
        result = up.upload_file(payload)
    assert len(calls) == 1
    assert not result.success and result.error == "region is required"


def test_progress_and_summary(payload, tmp_path, geojson):
    second = geojson.write(tmp_path / "brown.ndjson", geojson.ndjson(geojson.sample_features()))
    progress, done = [], []
    ids = iter([21, 22])

    def handler(request):
        request.read()
        return _ok(next(ids))

    with BatchUploader(
        "http://geo", 7, "OH",
        on_progress=lambda name, sent, total: progress.append((name, sent, total)),
        on_file_done=done.append,
        transport=httpx.MockTransport(handler),
    ) as up:
        summary = up.upload_files([payload, second])

    assert summary.total == 2 and summary.success_count == 2 and summary.fail_count == 0
    assert [r.dataset_id for r in done] == [21, 22]
    last = [p for p in progress if p[0] == "adams.geojson"][-1]
    assert last[1] == last[2] == payload.stat().st_size


def test_from_settings_uses_configured_budget(settings):
    tuned = settings.model_copy(update={"stall_timeout_seconds": 5.0, "upload_max_retries": 1})
    with BatchUploader.from_settings("http://geo", 7, "OH", settings=tuned) as up:
        assert up.max_retries == 1
        assert up.client.timeout.write == 5.0
