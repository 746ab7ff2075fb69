from unittest.mock import MagicMock

import pytest

from app.core.errors import PersistenceError
from app.core.services.batch_writer import BatchWriter
from app.models.store.inmemory_store import InMemoryLocationStore


def test_flushes_in_fixed_size_batches(record_factory):
    store = MagicMock()
    store.upsert_batch.side_effect = lambda rows: len(rows)
    with BatchWriter(store, batch_size=2) as writer:
        for i in range(5):
            writer.add(record_factory(house=str(i)))
    assert [len(c.args[0]) for c in store.upsert_batch.call_args_list] == [2, 2, 1]
    assert writer.accepted == 5
    assert writer.batches == 3


def test_in_batch_duplicates_collapsed(record_factory):
    store = InMemoryLocationStore()
    with BatchWriter(store, batch_size=10) as writer:
        writer.add(record_factory())
        writer.add(record_factory())
    assert writer.duplicates == 1
    assert writer.accepted == 1
    assert store.count() == 1


def test_existing_rows_count_as_accepted_not_inserted(record_factory):
    store = InMemoryLocationStore()
    store.upsert_batch([record_factory()])
    with BatchWriter(store, batch_size=10) as writer:
        writer.add(record_factory())
        writer.add(record_factory(house="9"))
    assert writer.accepted == 2
    assert writer.inserted == 1
    assert writer.skipped_existing == 1


def test_store_failure_is_persistence_error(record_factory):
    store = MagicMock()
    store.upsert_batch.side_effect = RuntimeError("connection reset")
    writer = BatchWriter(store, batch_size=1)
    with pytest.raises(PersistenceError, match="connection reset"):
        writer.add(record_factory())


def test_no_flush_when_block_raises(record_factory):
    store = MagicMock()
    with pytest.raises(KeyError):
        with BatchWriter(store, batch_size=10) as writer:
            writer.add(record_factory())
            raise KeyError("boom")
    store.upsert_batch.assert_not_called()


def test_invalid_batch_size():
    with pytest.raises(ValueError):
        BatchWriter(MagicMock(), batch_size=0)


@pytest.mark.parametrize("batch_size", [1, 2, 1000])
def test_repeated_hash_across_batches_counted_once(record_factory, batch_size):
    store = MagicMock()
    store.upsert_batch.side_effect = lambda rows: len(rows)
    with BatchWriter(store, batch_size=batch_size) as writer:
        for house in ("1", "2", "1"):
            writer.add(record_factory(house=house))
    assert writer.accepted == 2
    assert writer.duplicates == 1
    written = [r.house_number for c in store.upsert_batch.call_args_list for r in c.args[0]]
    assert sorted(written) == ["1", "2"]
