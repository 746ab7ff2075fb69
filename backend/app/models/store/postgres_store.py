# backend/app/models/store/postgres_store.py

from __future__ import annotations
import time
from contextlib import contextmanager, nullcontext
from typing import Iterable, List, Optional, Sequence, Tuple
import logging

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from app.core.entities import Dataset, DatasetStats, DatasetStatus, LocationRecord, PhrasePlan, RecordQuery
from app.core.matching import (
    EXACT_ADDRESS_SCORE,
    PHRASE_TIERS,
    STREET_FALLBACK_SCORE,
    token_alternates,
)
from app.core.services.geo import EARTH_RADIUS_MILES
from app.core.ports.datasets import IDatasetRepository
from app.core.ports.store import ILocationStore
from app.db.session import DatabasePool

logger = logging.getLogger("geo.store.postgres")

LOCATIONS_TABLE = "locations"
DATASETS_TABLE = "datasets"
WRITE_ATTEMPTS = 3

SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS {datasets} (
    id            BIGSERIAL PRIMARY KEY,
    name          TEXT NOT NULL,
    region        VARCHAR(8) NOT NULL,
    sub_region    TEXT NOT NULL,
    file_type     TEXT NOT NULL,
    file_path     TEXT NOT NULL,
    file_size     BIGINT NOT NULL DEFAULT 0,
    record_count  BIGINT NOT NULL DEFAULT 0,
    status        TEXT NOT NULL DEFAULT 'pending'
                  CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    error_message TEXT,
    uploaded_by   BIGINT NOT NULL DEFAULT 0,
    uploaded_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
    processed_at  TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS {datasets_region_status} ON {datasets} (region, status);

CREATE TABLE IF NOT EXISTS {locations} (
    id            BIGSERIAL PRIMARY KEY,
    hash          TEXT NOT NULL UNIQUE,
    house_number  TEXT NOT NULL DEFAULT '',
    street        TEXT NOT NULL DEFAULT '',
    unit          TEXT NOT NULL DEFAULT '',
    city          TEXT NOT NULL DEFAULT '',
    sub_region    TEXT NOT NULL DEFAULT '',
    region        TEXT NOT NULL DEFAULT '',
    postcode      TEXT NOT NULL DEFAULT '',
    full_address  TEXT NOT NULL DEFAULT '',
    latitude      DOUBLE PRECISION NOT NULL,
    longitude     DOUBLE PRECISION NOT NULL,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS {locations_lat_lng} ON {locations} (latitude, longitude);
CREATE INDEX IF NOT EXISTS {locations_region} ON {locations} (region);
"""

_LOCATION_COLUMNS = (
    "hash", "house_number", "street", "unit", "city", "sub_region",
    "region", "postcode", "full_address", "latitude", "longitude",
)
_TEXT_COLUMNS = _LOCATION_COLUMNS[:-2]


def _require_pool():
    if not DatabasePool.pool:
        raise RuntimeError("Database pool not initialized")
    return DatabasePool.pool


def ensure_schema() -> None:
    """Create the two tables this service owns when they do not exist yet."""
    ddl = sql.SQL(SCHEMA_DDL).format(
        datasets=sql.Identifier(DATASETS_TABLE),
        locations=sql.Identifier(LOCATIONS_TABLE),
        datasets_region_status=sql.Identifier(f"idx_{DATASETS_TABLE}_region_status"),
        locations_lat_lng=sql.Identifier(f"idx_{LOCATIONS_TABLE}_lat_lng"),
        locations_region=sql.Identifier(f"idx_{LOCATIONS_TABLE}_region"),
    )
    with _require_pool().connection() as conn:
        conn.execute(ddl)
    logger.info("✅ Schema ready (%s, %s)", DATASETS_TABLE, LOCATIONS_TABLE)


def like_pattern(term: str) -> str:
    """``%term%`` with LIKE wildcards in ``term`` escaped."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def pg_word_pattern(words: Sequence[str]) -> str:
    """Whole-word POSIX regex; twin of ``app.core.matching.alternates_pattern``."""
    return r"\m(?:" + "|".join(words) + r")\M"


def _row_to_record(row: dict) -> LocationRecord:
    return LocationRecord(
        hash=row["hash"],
        house_number=row["house_number"],
        street=row["street"],
        unit=row["unit"],
        city=row["city"],
        sub_region=row["sub_region"],
        region=row["region"],
        postcode=row["postcode"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        id=row["id"],
        created_at=row["created_at"],
    )


def _normalized(expr: str) -> sql.Composable:
    """SQL twin of ``app.core.matching.normalize``."""
    return sql.SQL("btrim(regexp_replace(lower({}), '[^0-9a-z]+', ' ', 'g'))").format(sql.SQL(expr))


def _contains_any(expr: sql.Composable) -> sql.Composable:
    return sql.SQL(
        "EXISTS (SELECT 1 FROM unnest(%s::text[]) AS t(term) WHERE strpos({}, t.term) > 0)"
    ).format(expr)


_PHRASE_FIELDS = {
    "city": _normalized("city"),
    "street": _normalized("street"),
    "house_number": _normalized("house_number"),
    "postcode": _normalized("postcode"),
    "street_city": _normalized("street || ' ' || city"),
    "full_address": _normalized("full_address"),
}

_HAVERSINE = sql.SQL(
    "2 * %s * asin(least(1.0, sqrt(power(sin(radians(latitude - %s) / 2), 2)"
    " + cos(radians(%s)) * cos(radians(latitude)) * power(sin(radians(longitude - %s) / 2), 2))))"
)


def phrase_score_sql(plan: PhrasePlan) -> Tuple[sql.Composable, list]:
    """CASE expression scoring rows exactly like ``app.core.matching.phrase_score``."""
    variants = list(plan.variants)
    parts: List[sql.Composable] = [
        sql.SQL("WHEN {} = ANY(%s::text[]) THEN %s").format(_PHRASE_FIELDS["full_address"])
    ]
    params: list = [variants, EXACT_ADDRESS_SCORE]
    for name, weight in PHRASE_TIERS:
        parts.append(sql.SQL("WHEN {} THEN %s").format(_contains_any(_PHRASE_FIELDS[name])))
        params.extend([variants, weight])
    if plan.fallback:
        parts.append(sql.SQL("WHEN {} THEN %s").format(_contains_any(_PHRASE_FIELDS["full_address"])))
        params.extend([list(plan.fallback), STREET_FALLBACK_SCORE])
    case = sql.SQL("CASE ") + sql.SQL(" ").join(parts) + sql.SQL(" ELSE 0 END")
    return case, params


def build_where(query: RecordQuery) -> Tuple[sql.Composable, list]:
    """WHERE clause and parameters matching ``app.core.matching.matches_query``."""
    conditions: List[sql.Composable] = []
    params: list = []

    fields = ("house_number", "street", "city", "sub_region", "postcode", "(house_number || ' ' || street)")
    for token in query.tokens:
        alternates = token_alternates(token)
        checks = [sql.SQL("{} ILIKE %s").format(sql.SQL(f)) for f in fields]
        params.extend([like_pattern(token)] * len(fields))
        if alternates:
            checks += [sql.SQL("{} ~* %s").format(sql.SQL(f)) for f in fields]
            params.extend([pg_word_pattern(alternates)] * len(fields))
        conditions.append(sql.SQL("(") + sql.SQL(" OR ").join(checks) + sql.SQL(")"))

    if query.phrase is not None:
        conditions.append(_contains_any(_PHRASE_FIELDS["full_address"]))
        params.append(list(query.phrase.terms))

    for column in ("street", "city", "sub_region"):
        value = getattr(query, column)
        if value:
            conditions.append(sql.SQL("{} ILIKE %s").format(sql.Identifier(column)))
            params.append(like_pattern(value))
    if query.postcode:
        conditions.append(sql.SQL("lower(postcode) = lower(%s)"))
        params.append(query.postcode)
    if query.region:
        conditions.append(sql.SQL("region = %s"))
        params.append(query.region.upper())
    if query.bbox is not None:
        b = query.bbox
        conditions.append(sql.SQL("latitude BETWEEN %s AND %s AND longitude BETWEEN %s AND %s"))
        params.extend([b.min_lat, b.max_lat, b.min_lng, b.max_lng])
    if query.center is not None and query.radius_miles is not None:
        c = query.center
        conditions.append(_HAVERSINE + sql.SQL(" <= %s"))
        params.extend([EARTH_RADIUS_MILES, c.lat, c.lat, c.lng, query.radius_miles])

    if not conditions:
        return sql.SQL(""), params
    return sql.SQL("WHERE ") + sql.SQL(" AND ").join(conditions), params


class PostgresLocationStore(ILocationStore):
    """Location rows in Postgres; writes go through the pool's ingestion slots."""

    def __init__(self, table: str = LOCATIONS_TABLE, retry_delay: float = 5.0):
        self.table = table
        self.retry_delay = retry_delay

    @contextmanager
    def _write_connection(self):
        pool = _require_pool()
        slots = DatabasePool.ingest_slots
        with slots if slots is not None else nullcontext():
            with pool.connection() as conn:
                yield conn

    def upsert_batch(self, records: Sequence[LocationRecord]) -> int:
        if not records:
            return 0
        columns = [[getattr(r, c) for r in records] for c in _LOCATION_COLUMNS]
        casts = ["%s::text[]"] * len(_TEXT_COLUMNS) + ["%s::float8[]", "%s::float8[]"]
        stmt = sql.SQL(
            "INSERT INTO {table} ({cols}) SELECT * FROM unnest({arrays}) ON CONFLICT (hash) DO NOTHING"
        ).format(
            table=sql.Identifier(self.table),
            cols=sql.SQL(", ").join(map(sql.Identifier, _LOCATION_COLUMNS)),
            arrays=sql.SQL(", ".join(casts)),
        )

        for attempt in range(1, WRITE_ATTEMPTS + 1):
            try:
                with self._write_connection() as conn:
                    with conn.cursor() as cur:
                        cur.execute(stmt, columns)
                        inserted = max(cur.rowcount, 0)
                logger.debug("Upserted batch of %d | inserted=%d", len(records), inserted)
                return inserted
            except psycopg.errors.AdminShutdown:
                if attempt == WRITE_ATTEMPTS:
                    raise
                logger.warning(f"⚠️ Database restarted (AdminShutdown). Retrying batch ({attempt}/{WRITE_ATTEMPTS})...")
                time.sleep(self.retry_delay)
            except psycopg.OperationalError as e:
                if "closed" not in str(e).lower() or attempt == WRITE_ATTEMPTS:
                    raise
                logger.warning(f"⚠️ Connection lost, retrying batch ({attempt}/{WRITE_ATTEMPTS})...")
                time.sleep(self.retry_delay)
        return 0

    def search(self, query: RecordQuery) -> Tuple[List[LocationRecord], int]:
        where, params = build_where(query)
        table = sql.Identifier(self.table)

        if query.phrase is not None:
            score, order_params = phrase_score_sql(query.phrase)
            order = sql.SQL("ORDER BY {} DESC, lower(city), lower(street), house_number, id").format(score)
        elif query.center is not None:
            order = sql.SQL("ORDER BY (latitude - %s) ^ 2 + ((longitude - %s) * cos(radians(%s))) ^ 2, id")
            order_params = [query.center.lat, query.center.lng, query.center.lat]
        else:
            order = sql.SQL("ORDER BY lower(city), lower(street), house_number, id")
            order_params = []

        page = sql.SQL("LIMIT %s OFFSET %s") if query.limit is not None else sql.SQL("OFFSET %s")
        page_params = [query.limit, query.offset] if query.limit is not None else [query.offset]

        count_stmt = sql.SQL("SELECT count(*) AS n FROM {table} {where}").format(table=table, where=where)
        select_stmt = sql.SQL("SELECT * FROM {table} {where} {order} {page}").format(
            table=table, where=where, order=order, page=page
        )
        with _require_pool().connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(count_stmt, params)
                total = cur.fetchone()["n"]
                cur.execute(select_stmt, params + order_params + page_params)
                rows = cur.fetchall()
        return [_row_to_record(r) for r in rows], total

    def count(self) -> int:
        with _require_pool().connection() as conn:
            row = conn.execute(
                sql.SQL("SELECT count(*) FROM {table}").format(table=sql.Identifier(self.table))
            ).fetchone()
        return row[0]


def _row_to_dataset(row: dict) -> Dataset:
    return Dataset(
        id=row["id"],
        name=row["name"],
        region=row["region"],
        sub_region=row["sub_region"],
        file_type=row["file_type"],
        file_path=row["file_path"],
        file_size=row["file_size"],
        record_count=row["record_count"],
        status=DatasetStatus(row["status"]),
        error_message=row["error_message"],
        uploaded_by=row["uploaded_by"],
        uploaded_at=row["uploaded_at"],
        processed_at=row["processed_at"],
    )


class PostgresDatasetRepository(IDatasetRepository):
    """Dataset lifecycle rows. Every status change is one conditional UPDATE."""

    def __init__(self, table: str = DATASETS_TABLE):
        self.table = table

    def _one(self, stmt: sql.Composable, params) -> Optional[Dataset]:
        with _require_pool().connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(stmt, params)
                row = cur.fetchone()
        return _row_to_dataset(row) if row else None

    def create(self, dataset: Dataset) -> Dataset:
        stmt = sql.SQL(
            """
            INSERT INTO {table} (name, region, sub_region, file_type, file_path, file_size,
                                 status, uploaded_by, uploaded_at)
            VALUES (%s, %s, %s, %s, %s, %s, 'pending', %s, coalesce(%s, now()))
            RETURNING *
            """
        ).format(table=sql.Identifier(self.table))
        created = self._one(stmt, (
            dataset.name, dataset.region, dataset.sub_region, dataset.file_type,
            dataset.file_path, dataset.file_size, dataset.uploaded_by, dataset.uploaded_at,
        ))
        return created

    def get(self, dataset_id: int) -> Optional[Dataset]:
        stmt = sql.SQL("SELECT * FROM {table} WHERE id = %s").format(table=sql.Identifier(self.table))
        return self._one(stmt, (dataset_id,))

    def list(
        self,
        region: Optional[str] = None,
        status: Optional[DatasetStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Dataset], int]:
        conditions, params = [], []
        if region:
            conditions.append(sql.SQL("region = %s"))
            params.append(region)
        if status:
            conditions.append(sql.SQL("status = %s"))
            params.append(status.value)
        where = sql.SQL("WHERE ") + sql.SQL(" AND ").join(conditions) if conditions else sql.SQL("")
        table = sql.Identifier(self.table)

        with _require_pool().connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(sql.SQL("SELECT count(*) AS n FROM {t} {w}").format(t=table, w=where), params)
                total = cur.fetchone()["n"]
                cur.execute(
                    sql.SQL("SELECT * FROM {t} {w} ORDER BY uploaded_at DESC, id DESC LIMIT %s OFFSET %s")
                    .format(t=table, w=where),
                    params + [limit, offset],
                )
                rows = cur.fetchall()
        return [_row_to_dataset(r) for r in rows], total

    def stats(self) -> DatasetStats:
        table = sql.Identifier(self.table)
        stats = DatasetStats()
        with _require_pool().connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    sql.SQL(
                        "SELECT count(*), coalesce(sum(record_count), 0), coalesce(sum(file_size), 0) FROM {t}"
                    ).format(t=table)
                )
                stats.total_datasets, stats.total_records, stats.total_storage_size = cur.fetchone()
                cur.execute(sql.SQL("SELECT region, count(*) FROM {t} GROUP BY region").format(t=table))
                stats.region_breakdown = {region: n for region, n in cur.fetchall()}
                cur.execute(sql.SQL("SELECT status, count(*) FROM {t} GROUP BY status").format(t=table))
                stats.status_breakdown = {status: n for status, n in cur.fetchall()}
        return stats

    def delete(self, dataset_id: int) -> Optional[Dataset]:
        stmt = sql.SQL("DELETE FROM {table} WHERE id = %s RETURNING *").format(table=sql.Identifier(self.table))
        return self._one(stmt, (dataset_id,))

    def transition(
        self, dataset_id: int, expected: Iterable[DatasetStatus], target: DatasetStatus
    ) -> Optional[Dataset]:
        stmt = sql.SQL(
            """
            UPDATE {table}
               SET status = %(target)s::text,
                   error_message = CASE WHEN %(target)s::text = 'processing' THEN NULL ELSE error_message END
             WHERE id = %(id)s AND status = ANY(%(expected)s::text[])
            RETURNING *
            """
        ).format(table=sql.Identifier(self.table))
        return self._one(stmt, {
            "target": target.value,
            "id": dataset_id,
            "expected": [s.value for s in expected],
        })

    def complete(self, dataset_id: int, record_count: int) -> Optional[Dataset]:
        stmt = sql.SQL(
            """
            UPDATE {table}
               SET status = 'completed', record_count = %s, error_message = NULL, processed_at = now()
             WHERE id = %s AND status = 'processing'
            RETURNING *
            """
        ).format(table=sql.Identifier(self.table))
        return self._one(stmt, (record_count, dataset_id))

    def fail(self, dataset_id: int, error_message: str) -> Optional[Dataset]:
        stmt = sql.SQL(
            """
            UPDATE {table}
               SET status = 'failed', error_message = %s, processed_at = now()
             WHERE id = %s AND status = 'processing'
            RETURNING *
            """
        ).format(table=sql.Identifier(self.table))
        return self._one(stmt, (error_message, dataset_id))
