import numpy as np
import pytest

from VarioKrigE.utils import (
    as_coords,
    compute_distance_weights,
    distance,
    iter_pair_blocks,
    pairwise_distances,
    row_blocks,
)


def test_distance_is_symmetric_and_zero_on_self():
    a, b = (1.0, 2.0), (4.0, 6.0)
    assert distance(a, b) == 5.0
    assert distance(b, a) == distance(a, b)
    assert distance(a, a) == 0.0


def test_distance_rejects_non_finite():
    with pytest.raises(ValueError):
        distance((0.0, np.nan), (1.0, 1.0))


def test_pairwise_distances_matrix(rng):
    X = rng.uniform(-50, 50, size=(25, 2))
    D = pairwise_distances(X)
    assert D.shape == (25, 25)
    np.testing.assert_allclose(D, D.T)
    np.testing.assert_array_equal(np.diag(D), 0.0)
    assert D[3, 7] == pytest.approx(distance(X[3], X[7]))


def test_pairwise_distances_to_targets(rng):
    X = rng.uniform(size=(6, 2))
    T = rng.uniform(size=(4, 2))
    D = pairwise_distances(X, T)
    assert D.shape == (6, 4)
    assert D[5, 2] == pytest.approx(np.hypot(*(X[5] - T[2])))


def test_as_coords_rejects_bad_input():
    with pytest.raises(ValueError, match="shape"):
        as_coords(np.zeros((4, 3)))
    with pytest.raises(ValueError, match="non-finite"):
        as_coords([[0.0, 0.0], [np.inf, 1.0]])


def test_iter_pair_blocks_streams_upper_triangle(rng):
    X = rng.uniform(size=(10, 2))
    full = pairwise_distances(X)
    seen = 0
    for i0, D in iter_pair_blocks(X, block_rows=3):
        for r in range(D.shape[0]):
            i = i0 + r
            np.testing.assert_allclose(D[r, i - i0 + 1:], full[i, i + 1:])
            seen += D.shape[1] - (i - i0 + 1)
    assert seen == 10 * 9 // 2


def test_row_blocks_cover_all_rows():
    blocks = row_blocks(100, 7)
    assert blocks[0][0] == 0 and blocks[-1][1] == 100
    for (a0, a1), (b0, b1) in zip(blocks[:-1], blocks[1:]):
        assert a1 == b0
    assert row_blocks(1, 4) == [(0, 1)]


def test_cressie_weights():
    w = compute_distance_weights([1.0, 2.0, 4.0], [10, 20, 40], weight_type="cressie")
    np.testing.assert_allclose(w, [10.0, 5.0, 2.5])
    with pytest.raises(ValueError):
        compute_distance_weights([0.0, 1.0], [1, 1], weight_type="cressie")
    with pytest.raises(ValueError):
        compute_distance_weights([1.0], [1], weight_type="bogus")
