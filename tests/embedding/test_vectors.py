import numpy as np
import pytest

from boltindex.core.errors import DimensionMismatchError, EmbeddingError
from boltindex.embedding.vectors import combine, cosine_similarity, normalize, weighted_mean


def test_combine_256_default_weights_is_unit_norm():
    rng = np.random.default_rng(7)
    structural = rng.normal(size=256)
    semantic = rng.normal(size=256)

    combined = combine(structural, semantic, 0.4, 0.6)

    assert combined.shape == (256,)
    assert abs(np.linalg.norm(combined) - 1.0) < 1e-6


def test_combine_matches_weighted_sum_direction():
    a = np.array([1.0, 0.0, 0.0])
    b = np.array([0.0, 1.0, 0.0])

    combined = combine(a, b, 0.4, 0.6)

    expected = np.array([0.4, 0.6, 0.0]) / np.linalg.norm([0.4, 0.6])
    assert np.allclose(combined, expected, atol=1e-6)


@pytest.mark.parametrize("da,db", [(3, 4), (256, 255), (1, 384)])
def test_combine_dimension_mismatch(da, db):
    with pytest.raises(DimensionMismatchError) as exc:
        combine(np.ones(da), np.ones(db))

    assert exc.value.expected == da
    assert exc.value.found == db


def test_combine_rejects_bad_weights():
    with pytest.raises(EmbeddingError):
        combine(np.ones(3), np.ones(3), -0.1, 1.0)
    with pytest.raises(EmbeddingError):
        combine(np.ones(3), np.ones(3), 0.0, 0.0)


def test_normalize_keeps_zero_vector():
    assert np.array_equal(normalize(np.zeros(4)), np.zeros(4))


def test_non_finite_vectors_rejected():
    with pytest.raises(EmbeddingError):
        normalize([1.0, float("nan")])


def test_cosine_similarity():
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([1, 0], [-2, 0]) == pytest.approx(-1.0)
    assert cosine_similarity([0, 0], [1, 0]) == 0.0


def test_weighted_mean_prefers_heavier_child():
    pooled = weighted_mean([[1.0, 0.0], [0.0, 1.0]], [3, 1])

    assert pooled[0] > pooled[1]
    assert abs(np.linalg.norm(pooled) - 1.0) < 1e-6


def test_weighted_mean_zero_weights_fall_back_to_uniform():
    pooled = weighted_mean([[1.0, 0.0], [0.0, 1.0]], [0, 0])

    assert pooled[0] == pytest.approx(pooled[1])


def test_weighted_mean_errors():
    with pytest.raises(EmbeddingError):
        weighted_mean([], [])
    with pytest.raises(DimensionMismatchError):
        weighted_mean([[1.0, 0.0], [1.0]], [1, 1])
