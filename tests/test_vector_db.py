"""
Tests for the VectorDB coordinator: flat search, index management,
persistence, concurrency and lifecycle.
"""

import asyncio
import logging
import os
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from simindex import (
    AsyncVectorDB,
    DimensionMismatchError,
    IndexNotBuiltError,
    IndexType,
    PersistenceError,
    ServiceUnavailableError,
    VectorDB,
    VectorNotFoundError,
)


@pytest.fixture
def temp_db():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    yield path
    try:
        os.unlink(path)
    except OSError:
        pass


@pytest.fixture
def db(temp_db):
    database = VectorDB(db_path=temp_db, seed=42)
    yield database
    database.close()


def add_abc(db):
    db.add("A", [1.0, 0.0, 0.0])
    db.add("B", [0.99, 0.01, 0.0])
    db.add("C", [0.0, 1.0, 0.0])


class TestBasicSearch:
    def test_empty_store_returns_nothing(self, db):
        assert db.find_similar_by_vector([0.1, 0.2, 0.3], limit=5) == []

    def test_single_vector_has_no_neighbors(self, db):
        db.add("A", [0.1, 0.2, 0.3])
        assert db.find_similar("A", limit=5) == []

    def test_find_similar_orders_by_score(self, db):
        add_abc(db)
        assert db.find_similar("A", limit=2) == ["B", "C"]

    def test_find_similar_respects_limit(self, db):
        add_abc(db)
        assert db.find_similar("A", limit=1) == ["B"]
        assert db.find_similar("A", limit=0) == []

    def test_query_dimension_mismatch(self, db):
        add_abc(db)
        with pytest.raises(DimensionMismatchError):
            db.find_similar_by_vector([1.0, 0.0], limit=5)
        with pytest.raises(DimensionMismatchError):
            db.search_approximate([1.0, 0.0], limit=5)

    def test_add_dimension_mismatch(self, db):
        add_abc(db)
        with pytest.raises(DimensionMismatchError) as exc_info:
            db.add("D", [1.0, 0.0])
        assert exc_info.value.expected == 3
        assert exc_info.value.actual == 2
        assert db.count() == 3

    def test_find_similar_unknown_id(self, db):
        add_abc(db)
        with pytest.raises(VectorNotFoundError) as exc_info:
            db.find_similar("missing")
        assert exc_info.value.vector_id == "missing"
        assert isinstance(exc_info.value, KeyError)

    def test_negative_limit_rejected(self, db):
        add_abc(db)
        with pytest.raises(ValueError):
            db.find_similar_by_vector([1.0, 0.0, 0.0], limit=-1)

    def test_find_similar_by_vector_scores(self, db):
        add_abc(db)
        results = db.find_similar_by_vector([1.0, 0.0, 0.0], limit=3)
        assert [r.id for r in results] == ["A", "B", "C"]
        assert results[0].score == pytest.approx(1.0)
        assert results[2].score == pytest.approx(0.0)

    def test_results_sorted_and_self_excluded(self, db):
        rng = np.random.default_rng(42)
        vectors = rng.standard_normal((50, 16)).astype(np.float32)
        db.add_many([str(i) for i in range(50)], vectors)

        for qi in range(10):
            neighbors = db.find_similar(str(qi), limit=10)
            assert len(neighbors) == 10
            assert str(qi) not in neighbors

            results = db.find_similar_by_vector(vectors[qi], limit=10)
            scores = [r.score for r in results]
            assert scores == sorted(scores, reverse=True)
            assert all(-1.0 <= s <= 1.0 for s in scores)
            assert results[0].id == str(qi)

    def test_ties_keep_insertion_order(self, db):
        db.add("x", [1.0, 0.0])
        db.add("y", [1.0, 0.0])
        db.add("z", [1.0, 0.0])
        assert [r.id for r in db.find_similar_by_vector([1.0, 0.0], limit=3)] == ["x", "y", "z"]


class TestMutations:
    def test_add_is_idempotent(self, db):
        db.add("A", [1.0, 0.0])
        db.add("A", [1.0, 0.0])
        assert db.count() == 1
        assert len(db) == 1

    def test_update_overwrites(self, db):
        db.add("A", [1.0, 0.0])
        db.update("A", [0.0, 1.0])
        assert np.array_equal(db.get("A"), [0.0, 1.0])

    def test_get_returns_copy(self, db):
        db.add("A", [1.0, 0.0])
        vec = db.get("A")
        vec[0] = 5.0
        assert db.get("A")[0] == 1.0
        assert db.get("missing") is None

    def test_remove(self, db):
        add_abc(db)
        assert db.remove("B") is True
        assert db.remove("B") is False
        assert "B" not in db
        assert db.find_similar("A", limit=5) == ["C"]

    def test_clear(self, db):
        add_abc(db)
        db.create_index("hnsw")
        db.clear()
        assert db.count() == 0
        assert db.index_type is None
        assert db.dimension is None
        db.add("new", [1.0, 0.0])
        assert db.dimension == 2

    def test_nested_vector_rejected(self, db):
        with pytest.raises(ValueError):
            db.add("A", [[1.0, 0.0], [0.0, 1.0]])
        assert db.count() == 0
        assert db.dimension is None

        db.add("A", [1.0, 0.0])
        with pytest.raises(ValueError):
            db.find_similar_by_vector([[1.0, 0.0]])

    def test_add_many(self, db):
        rng = np.random.default_rng(42)
        vectors = rng.standard_normal((20, 8)).astype(np.float32)
        db.add_many([f"v{i}" for i in range(20)], vectors)
        assert db.count() == 20
        assert db.contains("v19")


class TestIndexManagement:
    def test_no_index_by_default(self, db):
        assert db.index_type is None

    def test_create_index_replaces_previous(self, db):
        add_abc(db)
        db.create_index("ivf")
        assert db.index_type == IndexType.IVF
        db.create_index(IndexType.HNSW)
        assert db.index_type == IndexType.HNSW
        db.drop_index()
        assert db.index_type is None

    def test_default_index_is_ivf(self, db):
        add_abc(db)
        db.create_index()
        assert db.index_type == IndexType.IVF

    def test_unknown_index_type(self, db):
        with pytest.raises(ValueError):
            db.create_index("annoy")

    def test_create_index_on_empty_store(self, db):
        db.create_index("hnsw")
        assert db.find_similar_by_vector([1.0, 0.0], limit=5) == []

    def test_search_with_index_requires_built_index(self, db):
        add_abc(db)
        with pytest.raises(IndexNotBuiltError):
            db.search_with_index([1.0, 0.0, 0.0], "ivf")

        db.create_index("ivf")
        with pytest.raises(IndexNotBuiltError):
            db.search_with_index([1.0, 0.0, 0.0], "hnsw")

        results = db.search_with_index([1.0, 0.0, 0.0], "ivf", limit=1, approximation_factor=1.0)
        assert results[0].id == "A"

    @pytest.mark.parametrize("index_type", ["flat", "ivf", "hnsw", "lsh"])
    def test_every_index_finds_scenario_neighbors(self, temp_db, index_type):
        with VectorDB(db_path=temp_db, approximation_factor=1.0, seed=42) as db:
            add_abc(db)
            db.create_index(index_type)
            # an exact copy of a stored vector always lands among its candidates
            results = db.find_similar_by_vector([1.0, 0.0, 0.0], limit=1)
            assert results[0].id == "A"

    def test_flat_index_matches_live_scan(self, db):
        rng = np.random.default_rng(42)
        vectors = rng.standard_normal((100, 16)).astype(np.float32)
        db.add_many([str(i) for i in range(100)], vectors)
        query = rng.standard_normal(16).astype(np.float32)

        expected = db.find_similar_by_vector(query, limit=10)
        db.create_index("flat")
        results = db.find_similar_by_vector(query, limit=10)
        assert [r.id for r in results] == [r.id for r in expected]
        assert np.allclose([r.score for r in results], [r.score for r in expected])

    def test_removed_vectors_never_returned(self, db):
        rng = np.random.default_rng(42)
        vectors = rng.standard_normal((30, 8)).astype(np.float32)
        db.add_many([str(i) for i in range(30)], vectors)
        db.create_index("flat")

        db.remove("0")
        results = db.find_similar_by_vector(vectors[0], limit=30)
        assert "0" not in [r.id for r in results]
        assert len(results) == 29

    def test_rebuild_after_threshold(self, temp_db):
        rng = np.random.default_rng(42)
        vectors = rng.standard_normal((10, 8)).astype(np.float32)

        with VectorDB(db_path=temp_db, rebuild_threshold=5) as db:
            db.add_many([str(i) for i in range(10)], vectors)
            db.create_index("flat")

            new_vec = rng.standard_normal(8).astype(np.float32)
            db.add("new", new_vec)
            # not yet part of the index
            assert "new" not in [r.id for r in db.find_similar_by_vector(new_vec, limit=3)]

            for i in range(4):
                db.add(f"extra{i}", rng.standard_normal(8).astype(np.float32))

            results = db.find_similar_by_vector(new_vec, limit=3)
            assert results[0].id == "new"
            assert db.index_type == IndexType.FLAT

    def test_add_many_counts_towards_rebuild(self, temp_db):
        rng = np.random.default_rng(42)
        with VectorDB(db_path=temp_db, rebuild_threshold=5) as db:
            db.add_many([str(i) for i in range(10)], rng.standard_normal((10, 8)))
            db.create_index("flat")

            batch = rng.standard_normal((5, 8)).astype(np.float32)
            db.add_many([f"b{i}" for i in range(5)], batch)
            assert db.find_similar_by_vector(batch[0], limit=1)[0].id == "b0"

    def test_logs_index_build(self, db, caplog):
        add_abc(db)
        caplog.set_level(logging.INFO, logger="simindex")
        db.create_index("ivf")
        assert any("Created vector index of type ivf" in r.getMessage() for r in caplog.records)


class TestApproximateSearch:
    def test_falls_back_to_lsh_without_index(self, db):
        rng = np.random.default_rng(42)
        vectors = rng.standard_normal((100, 16)).astype(np.float32)
        db.add_many([str(i) for i in range(100)], vectors)

        results = db.search_approximate(vectors[7], limit=5, approximation_factor=1.0)
        assert results[0].id == "7"
        assert results[0].score == pytest.approx(1.0, abs=1e-5)
        assert db.index_type is None

    def test_uses_built_index(self, db):
        add_abc(db)
        db.create_index("hnsw")
        results = db.search_approximate([1.0, 0.0, 0.0], limit=2)
        assert [r.id for r in results] == ["A", "B"]

    def test_empty_store(self, db):
        assert db.search_approximate([1.0, 0.0], limit=5) == []

    @pytest.mark.parametrize("factor", [0.0, -0.5, 1.5])
    def test_invalid_factor(self, db, factor):
        add_abc(db)
        with pytest.raises(ValueError):
            db.search_approximate([1.0, 0.0, 0.0], approximation_factor=factor)

    def test_invalid_default_factor(self, temp_db):
        with pytest.raises(ValueError):
            VectorDB(db_path=temp_db, approximation_factor=2.0)


class TestAnalysis:
    def test_find_clusters(self, db):
        db.add("a1", [1.0, 0.0, 0.0])
        db.add("a2", [0.95, 0.05, 0.0])
        db.add("b1", [0.0, 1.0, 0.0])
        db.add("b2", [0.0, 0.95, 0.05])
        db.add("c", [0.0, 0.0, 1.0])

        clusters = db.find_clusters(min_similarity=0.9)
        assert sorted(sorted(c.member_ids) for c in clusters) == [["a1", "a2"], ["b1", "b2"]]
        for cluster in clusters:
            assert cluster.average_similarity >= 0.9
            assert len(cluster.centroid) == 3
        assert len({c.id for c in clusters}) == 2

    def test_find_clusters_empty(self, db):
        assert db.find_clusters() == []

    def test_find_outliers(self, db):
        db.add("a1", [1.0, 0.0, 0.0])
        db.add("a2", [0.95, 0.05, 0.0])
        db.add("lonely", [0.0, 0.0, 1.0])
        assert db.find_outliers(threshold=0.3) == ["lonely"]

    def test_single_vector_is_outlier(self, db):
        db.add("only", [1.0, 0.0])
        assert db.find_outliers() == ["only"]


class TestPersistence:
    def test_vectors_survive_restart(self, temp_db):
        rng = np.random.default_rng(42)
        vectors = rng.standard_normal((20, 8)).astype(np.float32)

        with VectorDB(db_path=temp_db) as db:
            db.add_many([str(i) for i in range(20)], vectors)
            db.create_index("hnsw")

        with VectorDB(db_path=temp_db) as db:
            assert db.count() == 20
            assert db.dimension == 8
            # indexes are not persisted
            assert db.index_type is None
            assert np.array_equal(db.get("3"), vectors[3])
            assert db.find_similar_by_vector(vectors[3], limit=1)[0].id == "3"

    def test_clear_survives_restart(self, temp_db):
        with VectorDB(db_path=temp_db) as db:
            add_abc(db)
            db.clear()

        with VectorDB(db_path=temp_db) as db:
            assert db.count() == 0

    def test_unopenable_database(self, temp_db):
        missing = os.path.join(os.path.dirname(temp_db), "simindex-no-such-dir", "vectors.db")
        with pytest.raises(PersistenceError):
            VectorDB(db_path=missing)

    def test_rebuild_threshold_from_env(self, temp_db, monkeypatch):
        monkeypatch.setenv("SIMINDEX_REBUILD_THRESHOLD", "7")
        monkeypatch.setenv("SIMINDEX_APPROXIMATION_FACTOR", "0.5")
        with VectorDB(db_path=temp_db) as db:
            assert db.rebuild_threshold == 7
            assert db.approximation_factor == 0.5

    def test_bad_env_values_use_defaults(self, temp_db, monkeypatch):
        monkeypatch.setenv("SIMINDEX_REBUILD_THRESHOLD", "lots")
        monkeypatch.setenv("SIMINDEX_APPROXIMATION_FACTOR", "3")
        with VectorDB(db_path=temp_db) as db:
            assert db.rebuild_threshold == 100
            assert db.approximation_factor == 0.1


class TestConcurrency:
    def test_concurrent_adds(self, db):
        def add_range(start):
            for i in range(start, start + 50):
                db.add(str(i), [float(i), 1.0, 0.0])

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(add_range, range(0, 400, 50)))

        assert db.count() == 400

    def test_concurrent_reads_and_writes(self, db):
        rng = np.random.default_rng(42)
        db.add_many([str(i) for i in range(100)], rng.standard_normal((100, 8)))
        db.create_index("ivf")
        errors = []

        def reader():
            try:
                for _ in range(20):
                    results = db.find_similar_by_vector(np.ones(8), limit=5)
                    assert len(results) <= 5
            except Exception as e:
                errors.append(e)

        def writer():
            try:
                for i in range(20):
                    db.add(f"w{i}", np.ones(8) * (i + 1))
                    db.remove(str(i))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=reader) for _ in range(4)]
        threads.append(threading.Thread(target=writer))
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert db.count() == 100


class TestLifecycle:
    def test_calls_after_close_fail(self, temp_db):
        db = VectorDB(db_path=temp_db)
        db.add("A", [1.0, 0.0])
        db.close()
        assert db.closed

        with pytest.raises(ServiceUnavailableError):
            db.add("B", [0.0, 1.0])
        with pytest.raises(ServiceUnavailableError):
            db.find_similar("A")

        with pytest.raises(ServiceUnavailableError):
            db.index_type
        with pytest.raises(ServiceUnavailableError):
            db.dimension

        # closing twice is harmless
        db.close()

    def test_queued_call_fails_on_close(self, temp_db):
        db = VectorDB(db_path=temp_db)
        started = threading.Event()
        release = threading.Event()

        def block():
            started.set()
            release.wait(5)

        db._worker.submit(block)
        assert started.wait(5)

        outcome = []

        def count():
            try:
                outcome.append(db.count())
            except ServiceUnavailableError as e:
                outcome.append(e)

        caller = threading.Thread(target=count)
        caller.start()
        while db._worker._queue.qsize() == 0:
            time.sleep(0.01)

        closer = threading.Thread(target=db.close)
        closer.start()
        while not db.closed:
            time.sleep(0.01)
        time.sleep(0.05)
        release.set()

        closer.join(5)
        caller.join(5)
        assert len(outcome) == 1
        assert isinstance(outcome[0], ServiceUnavailableError)


class TestAsync:
    def test_async_round_trip(self, temp_db):
        async def main():
            async with AsyncVectorDB(db_path=temp_db) as db:
                await db.add("A", [1.0, 0.0, 0.0])
                await db.add("B", [0.99, 0.01, 0.0])
                await db.add("C", [0.0, 1.0, 0.0])
                assert await db.count() == 3
                assert await db.contains("B")

                neighbors = await db.find_similar("A", limit=2)
                results = await db.find_similar_by_vector([1.0, 0.0, 0.0], limit=1)
                await db.create_index("hnsw")
                approx = await db.search_approximate([0.0, 1.0, 0.0], limit=1)
                assert await db.remove("C") is True
                return neighbors, results, approx

        neighbors, results, approx = asyncio.run(main())
        assert neighbors == ["B", "C"]
        assert results[0].id == "A"
        assert approx[0].id == "C"

    def test_async_errors_propagate(self, temp_db):
        async def main():
            db = AsyncVectorDB(db_path=temp_db)
            await db.add("A", [1.0, 0.0])
            with pytest.raises(DimensionMismatchError):
                await db.add("B", [1.0, 0.0, 0.0])
            with pytest.raises(VectorNotFoundError):
                await db.find_similar("missing")
            await db.close()
            with pytest.raises(ServiceUnavailableError):
                await db.add("C", [0.0, 1.0])

        asyncio.run(main())

    def test_async_index_management(self, temp_db):
        async def main():
            async with AsyncVectorDB(db_path=temp_db) as db:
                assert await db.dimension() is None
                await db.add("A", [1.0, 0.0, 0.0])
                await db.add("B", [0.0, 1.0, 0.0])
                assert await db.dimension() == 3

                with pytest.raises(IndexNotBuiltError):
                    await db.search_with_index([1.0, 0.0, 0.0], "ivf")

                await db.create_index("ivf")
                results = await db.search_with_index(
                    [1.0, 0.0, 0.0], "ivf", limit=1, approximation_factor=1.0
                )
                with pytest.raises(IndexNotBuiltError):
                    await db.search_with_index([1.0, 0.0, 0.0], "hnsw")

                await db.drop_index()
                with pytest.raises(IndexNotBuiltError):
                    await db.search_with_index([1.0, 0.0, 0.0], "ivf")
                return results, db.db.index_type

        results, index_type = asyncio.run(main())
        assert results[0].id == "A"
        assert index_type is None

        asyncio.run(main())

    def test_shares_sync_database(self, db):
        db.add("A", [1.0, 0.0])

        async def main():
            adb = AsyncVectorDB(db)
            await adb.add("B", [0.0, 1.0])
            return await adb.count()

        assert asyncio.run(main()) == 2
        assert db.contains("B")
