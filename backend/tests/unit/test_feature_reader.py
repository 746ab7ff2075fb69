import json

import pytest

from app.core.errors import ParseError
from app.core.services.feature_reader import (
    AGGREGATE,
    LINE_DELIMITED,
    detect_format,
    iter_features,
    sniff_format,
)


def test_sniff_line_delimited():
    assert sniff_format(b'{ "type" : "Feature", "geometry": {}}\n{"type"') == LINE_DELIMITED


def test_sniff_aggregate():
    assert sniff_format(b'{"type": "FeatureCollection", "features": [') == AGGREGATE
    assert sniff_format(b'\xef\xbb\xbf  [{"type": "Feature"}]') == AGGREGATE


def test_sniff_rejects_non_json():
    with pytest.raises(ParseError):
        sniff_format(b"house,street,city\n")


def test_collection_plain_and_gzip(tmp_path, geojson):
    data = geojson.collection(geojson.sample_features())
    plain = geojson.write(tmp_path / "a.geojson", data)
    packed = geojson.write(tmp_path / "b.geojson.gz", data, gz=True)
    assert len(list(iter_features(plain))) == 3
    assert len(list(iter_features(packed))) == 3


def test_gzip_detected_by_magic_without_suffix(tmp_path, geojson):
    path = geojson.write(tmp_path / "c.json", geojson.ndjson(geojson.sample_features()), gz=True)
    assert detect_format(path) == LINE_DELIMITED
    assert len(list(iter_features(path))) == 3


def test_ndjson_skips_malformed_lines(tmp_path, geojson):
    features = geojson.sample_features()
    data = geojson.ndjson(features[:1]) + b"{not json\n\n" + geojson.ndjson(features[1:])
    path = geojson.write(tmp_path / "d.ndjson", data)
    assert len(list(iter_features(path))) == 3


def test_single_feature_and_bare_array(tmp_path, geojson):
    f = geojson.sample_features()[0]
    single = geojson.write(tmp_path / "e.geojson", json.dumps(f).encode())
    assert len(list(iter_features(single))) == 1

    bare = geojson.write(tmp_path / "f.json", json.dumps([f, f]).encode())
    assert len(list(iter_features(bare))) == 2


def test_truncated_collection_fails_whole_file(tmp_path, geojson):
    data = geojson.collection(geojson.sample_features())[:-20]
    path = geojson.write(tmp_path / "g.geojson", data)
    with pytest.raises(ParseError):
        list(iter_features(path))


def test_corrupt_gzip_is_parse_error(tmp_path):
    path = tmp_path / "h.geojson.gz"
    path.write_bytes(b"\x1f\x8b\x08\x00garbage-not-deflate")
    with pytest.raises(ParseError):
        list(iter_features(path))
