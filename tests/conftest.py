import numpy as np
import pytest

from VarioKrigE import Dataset, VariogramModel


@pytest.fixture
def rng():
    return np.random.default_rng(12345)


@pytest.fixture
def four_corners():
    return Dataset.from_records([(0, 0, 10.0), (10, 0, 12.0), (0, 10, 11.0), (10, 10, 9.0)])


@pytest.fixture
def line_dataset():
    # pair distances 1 (x3), 2 (x2), 3 (x1)
    return Dataset.from_records([(0, 0, 0.0), (1, 0, 1.0), (2, 0, 3.0), (3, 0, 6.0)])


@pytest.fixture
def scattered(rng):
    coords = rng.uniform(0.0, 100.0, size=(40, 2))
    values = np.sin(coords[:, 0] / 20.0) + np.cos(coords[:, 1] / 25.0) + 0.05 * rng.normal(size=40)
    return Dataset.from_arrays(coords, values)


@pytest.fixture
def exp_model():
    return VariogramModel("exponential", nugget=0.0, sill=1.0, range=30.0)


@pytest.fixture
def simulate_field():
    """Zero-mean Gaussian field with covariance sill * exp(-h / range) at random points."""

    def _simulate(n, extent, sill, range_, seed):
        rs = np.random.default_rng(seed)
        coords = rs.uniform(0.0, extent, size=(n, 2))
        d = np.hypot(coords[:, None, 0] - coords[None, :, 0], coords[:, None, 1] - coords[None, :, 1])
        C = sill * np.exp(-d / range_) + 1e-10 * np.eye(n)
        L = np.linalg.cholesky(C)
        return coords, L @ rs.normal(size=n)

    return _simulate
