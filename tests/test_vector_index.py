"""Tests for the on-disk ANN index."""

from pathlib import Path

import numpy as np
import pytest

from hyve_knowledge.vector_index import IndexNotReadyError, VectorIndex


def _random_vectors(count: int, dim: int, seed: int = 7) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.normal(size=(count, dim)).astype(np.float32)


class TestBuildAndQuery:
    """In-memory index behaviour."""

    def test_build_returns_count(self):
        index = VectorIndex(dimension=8)
        assert index.build(_random_vectors(20, 8)) == 20
        assert index.size() == 20
        assert index.is_loaded()
        assert not index.on_disk

    def test_empty_build(self):
        index = VectorIndex(dimension=8)
        assert index.build([]) == 0
        assert not index.is_loaded()

    def test_self_query_is_top_hit(self):
        """Test every stored vector finds itself first with a near-perfect score."""
        vectors = _random_vectors(50, 16)
        index = VectorIndex()
        index.build(vectors)

        for ordinal in (0, 13, 49):
            hits = index.query(vectors[ordinal], 3)
            assert hits[0][0] == ordinal
            assert hits[0][1] == pytest.approx(1.0, abs=1e-5)

    def test_scores_are_descending_and_bounded(self):
        vectors = _random_vectors(30, 8)
        index = VectorIndex()
        index.build(vectors)

        scores = [score for _, score in index.query(vectors[3], 10)]
        assert scores == sorted(scores, reverse=True)
        assert all(0.0 <= s <= 1.0 + 1e-6 for s in scores)

    def test_opposite_vector_scores_zero(self):
        index = VectorIndex(dimension=2)
        index.build([[1.0, 0.0], [0.0, 1.0]])
        hits = dict(index.query([-1.0, 0.0], 2))
        assert hits[0] == pytest.approx(0.0, abs=1e-6)
        assert hits[1] == pytest.approx(0.5, abs=1e-6)

    def test_k_larger_than_size(self):
        index = VectorIndex()
        index.build(_random_vectors(4, 8))
        hits = index.query(_random_vectors(1, 8, seed=1)[0], 10)
        assert sorted(ordinal for ordinal, _ in hits) == [0, 1, 2, 3]

    def test_query_before_build_raises(self):
        with pytest.raises(IndexNotReadyError):
            VectorIndex(dimension=4).query([0.0, 0.0, 0.0, 1.0], 1)

    def test_dimension_mismatch(self):
        index = VectorIndex()
        index.build(_random_vectors(5, 8))
        with pytest.raises(ValueError):
            index.query([1.0, 0.0], 1)

    def test_recall_against_brute_force(self):
        """Test graph search agrees with exact search on most neighbours."""
        vectors = _random_vectors(300, 24, seed=3)
        index = VectorIndex(max_degree=16)
        index.build(vectors)

        normed = vectors / np.linalg.norm(vectors, axis=1, keepdims=True)
        queries = _random_vectors(10, 24, seed=11)
        found = 0
        for query in queries:
            exact = set(np.argsort(-(normed @ (query / np.linalg.norm(query))))[:10].tolist())
            approx = {ordinal for ordinal, _ in index.query(query, 10)}
            found += len(exact & approx)
        assert found / 100 >= 0.8


class TestPersistence:
    """Save/load through a memory-mapped file."""

    def test_save_load_round_trip(self, temp_dir: Path):
        vectors = _random_vectors(40, 12)
        built = VectorIndex()
        built.build(vectors)
        path = temp_dir / "hnsw" / "code.hnsw"
        built.save(path)

        loaded = VectorIndex()
        loaded.load(path)
        assert loaded.on_disk
        assert loaded.size() == 40
        assert loaded.dimension == 12
        for ordinal in range(len(vectors)):
            assert loaded.query(vectors[ordinal], 1)[0][0] == ordinal
        assert loaded.query(vectors[5], 5) == built.query(vectors[5], 5)
        loaded.close()

    def test_overwrite_leaves_loaded_instance_intact(self, temp_dir: Path):
        """Test saving over a file another instance has mapped does not disturb it."""
        vectors = _random_vectors(500, 16)
        original = VectorIndex()
        original.build(vectors)
        path = temp_dir / "gamedata.hnsw"
        original.save(path)
        original.close()

        live = VectorIndex()
        live.load(path)
        before = live.query(vectors[250], 3)

        replacement = VectorIndex()
        replacement.build(_random_vectors(3, 16, seed=99))
        replacement.save(path)

        assert live.size() == 500
        assert live.query(vectors[250], 3) == before
        assert not (temp_dir / "gamedata.hnsw.tmp").exists()

        reloaded = VectorIndex()
        reloaded.load(path)
        assert reloaded.size() == 3
        reloaded.close()
        live.close()

    def test_save_without_graph_raises(self, temp_dir: Path):
        with pytest.raises(IndexNotReadyError):
            VectorIndex().save(temp_dir / "x.hnsw")

    def test_load_rejects_foreign_file(self, temp_dir: Path):
        path = temp_dir / "bogus.hnsw"
        path.write_bytes(b"NOPE" + b"\x00" * 64)
        with pytest.raises(ValueError):
            VectorIndex().load(path)

    def test_load_rejects_truncated_file(self, temp_dir: Path):
        built = VectorIndex()
        built.build(_random_vectors(10, 8))
        path = temp_dir / "code.hnsw"
        built.save(path)
        path.write_bytes(path.read_bytes()[:-16])
        with pytest.raises(ValueError):
            VectorIndex().load(path)

    def test_close_releases_state(self, temp_dir: Path):
        built = VectorIndex()
        built.build(_random_vectors(3, 4))
        built.close()
        assert not built.is_loaded()
        with pytest.raises(IndexNotReadyError):
            built.query([1.0, 0.0, 0.0, 0.0], 1)
