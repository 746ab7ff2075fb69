import json

import pytest

from app.core.entities import DatasetStatus

DATASETS = "/api/v1/admin/datasets"


def _container(client):
    return client.app.state.container


def _upload_bulk(client, headers, files, region="OH", **form):
    return client.post(
        f"{DATASETS}/upload-bulk",
        data={"region": region, **form},
        files=[("files", (name, data, "application/octet-stream")) for name, data in files],
        headers=headers,
    )


@pytest.fixture
def loaded(client, actor_headers, geojson):
    r = _upload_bulk(client, actor_headers, [("hamilton.geojson", geojson.collection(geojson.sample_features()))])
    assert r.status_code == 200, r.text
    assert _container(client).scheduler.wait_idle(10)
    return r.json()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
    ready = client.get("/health/ready").json()
    assert ready["status"] == "ready" and ready["store_backend"] == "memory"


def test_upload_requires_actor(client, geojson):
    r = _upload_bulk(client, {}, [("adams.geojson", geojson.collection([]))])
    assert r.status_code == 401


def test_single_upload(client, actor_headers, geojson):
    r = client.post(
        f"{DATASETS}/upload",
        data={"name": "Adams County Addresses", "region": "oh", "sub_region": "adams"},
        files={"file": ("adams.geojson", geojson.collection(geojson.sample_features()), "application/json")},
        headers=actor_headers,
    )
    assert r.status_code == 201, r.text
    body = r.json()["dataset"]
    assert body["region"] == "OH" and body["sub_region"] == "Adams"
    assert body["uploaded_by"] == 7

    assert _container(client).scheduler.wait_idle(10)
    done = client.get(f"{DATASETS}/{body['id']}").json()
    assert done["status"] == "completed"
    assert done["record_count"] == 3


def test_single_upload_missing_region(client, actor_headers, geojson):
    r = client.post(
        f"{DATASETS}/upload",
        data={"name": "Adams", "sub_region": "Adams"},
        files={"file": ("adams.geojson", geojson.collection([]), "application/json")},
        headers=actor_headers,
    )
    assert r.status_code == 400
    assert "region" in r.json()["detail"]
    assert client.get(DATASETS).json()["total"] == 0


def test_bulk_rejects_bad_extension(client, actor_headers):
    r = _upload_bulk(client, actor_headers, [("a.geojson", b"{}"), ("b.txt", b"{}")])
    assert r.status_code == 400


def test_text_search_distinguishes_streets(client, loaded):
    oakley = client.get("/api/v1/addresses", params={"q": "oakley"}).json()
    assert [a["street"] for a in oakley["addresses"]] == ["Oakley Ave"]
    assert oakley["total"] == 1

    landsbrook = client.get("/api/v1/addresses", params={"street": "landsbrook"}).json()
    assert [a["house_number"] for a in landsbrook["addresses"]] == ["2600"]

    by_city = client.get("/api/v1/addresses", params={"city": "cincinnati", "limit": 1}).json()
    assert by_city["count"] == 1 and by_city["total"] == 2 and by_city["limit"] == 1


def test_ranked_search(client, loaded):
    r = client.get("/api/v1/addresses/search", params={"q": "2525 Oakley Ave"}).json()
    assert r["addresses"][0]["street"] == "Oakley Ave"
    assert r["addresses"][0]["score"] > 0
    assert client.get("/api/v1/addresses/search").status_code == 422


def test_ranked_search_accepts_spelled_out_street_type(client, loaded):
    r = client.get("/api/v1/addresses/search", params={"q": "2525 Oakley Avenue"}).json()
    assert r["addresses"][0]["house_number"] == "2525"
    assert r["addresses"][0]["score"] == 90
    tokens = client.get("/api/v1/addresses", params={"q": "oakley avenue"}).json()
    assert [a["street"] for a in tokens["addresses"]] == ["Oakley Ave"]


def test_nearby(client, loaded):
    r = client.get("/api/v1/addresses/nearby", params={"lat": 39.152, "lng": -84.446, "radius": 2}).json()
    assert r["unit"] == "km"
    assert r["total"] == 2
    first = r["addresses"][0]
    assert first["street"] == "Oakley Ave"
    assert first["distance_km"] == pytest.approx(0.0, abs=1e-6)
    assert r["addresses"][1]["distance_km"] > first["distance_km"]

    bad = client.get("/api/v1/addresses/nearby", params={"lat": 95, "lng": 0})
    assert bad.status_code == 400


def test_geo_filter_requires_all_params(client, loaded):
    r = client.get("/api/v1/addresses", params={"q": "oakley", "lat": 39.15})
    assert r.status_code == 400


def test_proximity_check(client):
    params = {"lat1": 39.152, "lng1": -84.446, "lat2": 39.153, "lng2": -84.447, "radius": 1, "unit": "mi"}
    r = client.get("/api/v1/proximity", params=params).json()
    assert r["within_radius"] is True
    assert 0 < r["distance_miles"] < 1
    assert client.get("/api/v1/proximity", params={**params, "unit": "furlong"}).status_code == 400


def test_stream_upload_frames(client, actor_headers, geojson):
    good = geojson.collection(geojson.sample_features())
    files = [("adams.geojson", good), ("brown.geojson", b"not,a,geojson"), ("pike.geojson", good)]
    r = client.post(
        f"{DATASETS}/upload-bulk-stream",
        data={"region": "OH"},
        files=[("files", (n, d, "application/octet-stream")) for n, d in files],
        headers=actor_headers,
    )
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")

    frames = [f for f in r.text.split("\n\n") if f.strip()]
    kinds = [f.split("\n")[0][len("event: "):] for f in frames]
    assert kinds[0] == "start" and kinds[-1] == "complete"
    assert kinds.count("file_saved") == 2 and kinds.count("file_error") == 1
    summary = json.loads(frames[-1].split("\n")[1][len("data: "):])
    assert summary["success_count"] == 2 and summary["fail_count"] == 1


def test_reprocess_conflicts_while_processing(client, dataset_factory, tmp_path):
    repo = _container(client).dataset_repo
    path = tmp_path / "adams.geojson"
    path.write_text("{}")
    d = repo.create(dataset_factory(file_path=path))
    repo.transition(d.id, {DatasetStatus.PENDING}, DatasetStatus.PROCESSING)

    assert client.post(f"{DATASETS}/{d.id}/reprocess").status_code == 409
    assert client.get(f"{DATASETS}/{d.id}").json()["status"] == "processing"
    assert client.post(f"{DATASETS}/999/reprocess").status_code == 404


def test_reprocess_failed_dataset(client, dataset_factory, geojson, tmp_path):
    container = _container(client)
    path = geojson.write(tmp_path / "adams.geojson", geojson.collection(geojson.sample_features()))
    d = container.dataset_repo.create(dataset_factory(file_path=path))
    container.dataset_repo.transition(d.id, {DatasetStatus.PENDING}, DatasetStatus.PROCESSING)
    container.dataset_repo.fail(d.id, "database went away")

    r = client.post(f"{DATASETS}/{d.id}/reprocess")
    assert r.status_code == 202
    assert r.json()["dataset"]["status"] == "processing"
    assert container.scheduler.wait_idle(10)
    assert client.get(f"{DATASETS}/{d.id}").json()["status"] == "completed"


def test_list_stats_and_delete(client, loaded):
    dataset_id = loaded["results"][0]["dataset"]["id"]

    listing = client.get(DATASETS, params={"region": "oh", "status": "completed"}).json()
    assert listing["total"] == 1
    assert client.get(DATASETS, params={"status": "archived"}).status_code == 400

    stats = client.get(f"{DATASETS}/stats").json()
    assert stats["total_datasets"] == 1
    assert stats["total_records"] == 3
    assert stats["region_breakdown"] == {"OH": 1}
    assert stats["status_breakdown"]["completed"] == 1

    assert client.delete(f"{DATASETS}/{dataset_id}").status_code == 200
    assert client.get(f"{DATASETS}/{dataset_id}").status_code == 404
    assert client.delete(f"{DATASETS}/{dataset_id}").status_code == 404


def test_stream_upload_spills_large_files_to_disk(client, actor_headers, geojson):
    features = [
        geojson.feature(-84.4 - i / 1000, 39.1, number=str(i), street="Oakley Ave", city="Cincinnati")
        for i in range(50)
    ]
    r = client.post(
        f"{DATASETS}/upload-bulk-stream",
        data={"region": "OH"},
        files=[("files", ("adams.geojson", geojson.collection(features), "application/octet-stream"))],
        headers=actor_headers,
    )
    assert r.status_code == 200
    assert _container(client).scheduler.wait_idle(10)
    rows, _ = _container(client).dataset_repo.list()
    assert [d.record_count for d in rows] == [50]
