import io
from pathlib import Path

import pytest

from app.core.entities import DatasetStatus, UploadedFile, UploadMetadata
from app.core.errors import ParseError, ValidationError
from app.core.services.gateway import split_extension, sub_region_from_filename
from app.core.services.progress import EventKind


def _file(name, data):
    return UploadedFile(filename=name, stream=io.BytesIO(data))


def _stored(container):
    upload_dir = Path(container.settings.upload_dir)
    return sorted(upload_dir.iterdir()) if upload_dir.exists() else []


@pytest.mark.parametrize(
    "name, ext",
    [
        ("adams.geojson", ".geojson"),
        ("adams.GeoJSON.gz", ".GeoJSON.gz"),
        ("adams.ndjson.gz", ".ndjson.gz"),
        ("adams.geojsonl", ".geojsonl"),
        ("adams.csv", None),
        (".geojson", None),
    ],
)
def test_split_extension(name, ext):
    assert split_extension(name) == ext


def test_sub_region_from_filename():
    assert sub_region_from_filename("adams-addresses-county.geojson.gz") == "Adams"
    assert sub_region_from_filename("BROWN_county.ndjson") == "Brown"


def test_missing_region_rejects_without_side_effects(container, geojson):
    data = geojson.collection(geojson.sample_features())
    with pytest.raises(ValidationError, match="region"):
        container.gateway.upload(_file("adams.geojson", data), UploadMetadata("Adams", "", "Adams"), 7)
    assert _stored(container) == []
    assert container.dataset_repo.list()[1] == 0


def test_single_upload_is_processed_in_background(container, geojson):
    data = geojson.collection(geojson.sample_features())
    dataset = container.gateway.upload(
        _file("adams.geojson", data), UploadMetadata(" Adams County ", "oh", "ADAMS"), 7
    )
    assert dataset.region == "OH" and dataset.sub_region == "Adams"
    assert dataset.file_size == len(data)
    assert Path(dataset.file_path).name.endswith("_OH_Adams_Adams_County.geojson")

    assert container.scheduler.wait_idle(10)
    done = container.dataset_repo.get(dataset.id)
    assert done.status is DatasetStatus.COMPLETED
    assert done.record_count == 3


def test_unparsable_single_upload_leaves_nothing(container):
    with pytest.raises(ParseError):
        container.gateway.upload(_file("adams.geojson", b"not,a,geojson"), UploadMetadata("A", "OH", "Adams"), 7)
    assert _stored(container) == []
    assert container.dataset_repo.list()[1] == 0


def test_bad_extension_rejects_whole_batch(container, geojson):
    data = geojson.collection(geojson.sample_features())
    files = [_file("adams.geojson", data), _file("brown.csv", b"a,b")]
    with pytest.raises(ValidationError, match="brown.csv"):
        container.gateway.upload_many(files, "OH", 7)
    assert _stored(container) == []
    assert container.dataset_repo.list()[1] == 0


def test_upload_many_preserves_input_order(container, geojson):
    data = geojson.ndjson(geojson.sample_features())
    names = ["clermont.ndjson", "adams.ndjson", "brown.ndjson", "adams.ndjson"]
    result = container.gateway.upload_many([_file(n, data) for n in names], "oh", 7)

    assert [r.filename for r in result.results] == names
    assert result.success_count == 4
    assert [r.dataset.sub_region for r in result.results] == ["Clermont", "Adams", "Brown", "Adams"]
    assert len(_stored(container)) == 4


def test_explicit_sub_region_overrides_filename(container, geojson):
    data = geojson.ndjson(geojson.sample_features())
    result = container.gateway.upload_many([_file("export-01.ndjson", data)], "OH", 7, sub_region="hamilton")
    assert result.results[0].dataset.sub_region == "Hamilton"
    assert result.results[0].dataset.name == "Hamilton County Addresses"


def test_stream_upload_event_order(container, geojson):
    good = geojson.collection(geojson.sample_features())
    names = ["adams.geojson", "brown.geojson", "clermont.geojson", "highland.geojson", "pike.geojson"]
    files = [_file(n, b"not,a,geojson" if i == 2 else good) for i, n in enumerate(names)]

    events = list(container.gateway.stream_upload(files, "OH", 7).events(timeout=10))
    kinds = [e.kind for e in events]

    assert kinds[0] is EventKind.START and events[0].payload["total"] == 5
    assert kinds[-1] is EventKind.COMPLETE
    assert kinds.count(EventKind.COMPLETE) == 1
    assert events[-1].payload["success_count"] == 4
    assert events[-1].payload["fail_count"] == 1

    for name in names:
        started = next(i for i, e in enumerate(events) if e.kind is EventKind.PROCESSING and e.payload["filename"] == name)
        terminal = next(
            i for i, e in enumerate(events)
            if e.kind in (EventKind.FILE_SAVED, EventKind.FILE_ERROR) and e.payload["filename"] == name
        )
        assert started < terminal

    errors = [e.payload["filename"] for e in events if e.kind is EventKind.FILE_ERROR]
    assert errors == ["clermont.geojson"]
    started = next(e for e in events if e.kind is EventKind.PROCESSING_STARTED)
    assert len(started.payload["dataset_ids"]) == 4

    assert container.scheduler.wait_idle(10)
    rows, total = container.dataset_repo.list()
    assert total == 4
    assert all(d.status is DatasetStatus.COMPLETED for d in rows)


def test_stream_upload_closes_each_stream(container, geojson):
    good = geojson.collection(geojson.sample_features())
    files = [_file("adams.geojson", good), _file("brown.geojson", b"not,a,geojson"), _file("pike.geojson", good)]

    events = list(container.gateway.stream_upload(files, "OH", 7).events(timeout=10))

    assert events[-1].kind is EventKind.COMPLETE
    assert all(f.stream.closed for f in files)
