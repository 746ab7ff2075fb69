from __future__ import annotations

import gzip
import io
import json
import re
import zlib
from pathlib import Path
from typing import BinaryIO, Iterator

from app.core.errors import ParseError
import logging

log = logging.getLogger("geo.ingest.reader")

GZIP_MAGIC = b"\x1f\x8b"
LINE_DELIMITED = "ndjson"
AGGREGATE = "collection"

# A line-delimited file opens with a bare Feature object, e.g. {"type": "Feature", ...
_FEATURE_LINE_PREFIX = re.compile(r'^\{\s*"type"\s*:\s*"Feature"')
_MAX_LOGGED_BAD_LINES = 3


def is_gzip(path: Path, head: bytes) -> bool:
    return head.startswith(GZIP_MAGIC) or path.suffix.lower() == ".gz"


def open_payload(path: str | Path) -> BinaryIO:
    """Open a raw upload, transparently decompressing gzip content."""
    path = Path(path)
    with path.open("rb") as fh:
        head = fh.read(2)
    if is_gzip(path, head):
        return gzip.open(path, "rb")
    return path.open("rb")


def read_prefix(path: str | Path, size: int) -> bytes:
    """First ``size`` bytes of the decompressed payload."""
    with open_payload(path) as f:
        try:
            return f.read(size)
        except (OSError, EOFError, zlib.error) as e:
            raise ParseError(f"cannot decompress {Path(path).name}: {e}") from e


def sniff_format(prefix: bytes) -> str:
    """Decide the framing from a short prefix; ambiguous input is treated as aggregate."""
    text = prefix.decode("utf-8", errors="ignore").lstrip("\ufeff \t\r\n")
    if not text or text[0] not in "{[":
        raise ParseError("payload is not a JSON feature document")
    if _FEATURE_LINE_PREFIX.match(text):
        return LINE_DELIMITED
    return AGGREGATE


def detect_format(path: str | Path, sniff_bytes: int = 100) -> str:
    return sniff_format(read_prefix(path, sniff_bytes))


def _iter_line_delimited(stream: BinaryIO, name: str) -> Iterator[dict]:
    bad = 0
    for lineno, raw in enumerate(io.TextIOWrapper(stream, encoding="utf-8-sig"), 1):
        line = raw.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as e:
            bad += 1
            if bad <= _MAX_LOGGED_BAD_LINES:
                log.warning("⚠️ Bad JSON in %s on line %d: %s", name, lineno, e)
            continue
        if isinstance(obj, dict):
            yield obj
    if bad:
        log.info("Skipped %d malformed line(s) in %s", bad, name)


def _iter_aggregate(stream: BinaryIO, name: str) -> Iterator[dict]:
    try:
        data = json.load(io.TextIOWrapper(stream, encoding="utf-8-sig"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ParseError(f"failed to parse {name}: {e}") from e

    if isinstance(data, dict) and data.get("type") == "Feature":
        features = [data]
    elif isinstance(data, dict):
        features = data.get("features")
        if not isinstance(features, list):
            raise ParseError(f"{name} has no 'features' array")
    elif isinstance(data, list):
        features = data
    else:
        raise ParseError(f"{name} is not a feature collection")

    for obj in features:
        if isinstance(obj, dict):
            yield obj


def iter_features(path: str | Path, sniff_bytes: int = 100) -> Iterator[dict]:
    """Stream raw feature objects from an uploaded file (plain or gzip)."""
    path = Path(path)
    fmt = detect_format(path, sniff_bytes)
    log.debug("Detected %s framing for %s", fmt, path.name)
    try:
        with open_payload(path) as stream:
            if fmt == LINE_DELIMITED:
                yield from _iter_line_delimited(stream, path.name)
            else:
                yield from _iter_aggregate(stream, path.name)
    except (EOFError, zlib.error, gzip.BadGzipFile, UnicodeDecodeError) as e:
        raise ParseError(f"unreadable payload in {path.name}: {e}") from e
