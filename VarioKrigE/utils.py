"""
Planar distance helpers and fitting weights shared by the variogram and kriging modules.

Coordinates are expected in a projected (planar) system; reprojection is the caller's job.
"""

import numpy as np


def as_coords(coords, name="coords"):
    """
    Coerce locations to a finite (n, 2) float array.

    Raises
    ------
    ValueError
        If the array is not (n, 2) or holds NaN / inf coordinates.
    """
    X = np.asarray(coords, float)
    if X.ndim == 1 and X.size == 2:
        X = X.reshape(1, 2)
    if X.ndim != 2 or X.shape[1] != 2:
        raise ValueError(f"{name} must have shape (n, 2): (x, y), got {X.shape}")
    if not np.all(np.isfinite(X)):
        bad = np.flatnonzero(~np.isfinite(X).all(axis=1))
        raise ValueError(f"{name} contains non-finite coordinates at rows {bad[:10].tolist()}")
    return X


# Planar Euclidean distance
def distance(a, b):
    """Euclidean distance between two (x, y) locations."""
    ax, ay = float(a[0]), float(a[1])
    bx, by = float(b[0]), float(b[1])
    if not np.all(np.isfinite((ax, ay, bx, by))):
        raise ValueError("distance: locations must have finite coordinates")
    return float(np.hypot(ax - bx, ay - by))


def pairwise_distances(coords, targets=None):
    """
    Planar distance matrix between two sets of locations.

    Parameters
    ----------
    coords : (n, 2) array_like
        Observation locations (x, y).
    targets : (m, 2) array_like, optional
        Second set of locations. If None, distances among `coords` are returned.

    Returns
    -------
    D : (n, n) or (n, m) ndarray
        Euclidean distances in the units of the input coordinates.

    Notes
    -----
    Materializes the full matrix, O(n*m) memory. Use `iter_pair_blocks`
    when only a streaming pass over the pairs is needed.
    """
    X = as_coords(coords)
    XT = X if targets is None else as_coords(targets, name="targets")
    x, y = X[:, 0], X[:, 1]
    xT, yT = XT[:, 0], XT[:, 1]
    return np.hypot(x[:, None] - xT[None, :], y[:, None] - yT[None, :])


def iter_pair_blocks(coords, block_rows=512):
    """
    Stream the upper triangle of the pairwise distance matrix in row blocks.

    Yields
    ------
    i0 : int
        Index of the first row in the block.
    D : (k, n - i0) ndarray
        Distances from rows ``i0:i0+k`` to columns ``i0:n``. Entries on or below
        the diagonal (j <= i) belong to already visited pairs and must be skipped
        by the caller.
    """
    X = as_coords(coords)
    n = X.shape[0]
    if block_rows is None or block_rows <= 0:
        block_rows = n
    for i0 in range(0, n, block_rows):
        i1 = min(n, i0 + block_rows)
        dx = X[i0:i1, None, 0] - X[None, i0:, 0]
        dy = X[i0:i1, None, 1] - X[None, i0:, 1]
        yield i0, np.hypot(dx, dy)


def row_blocks(n, n_blocks):
    """
    Split rows ``0..n-1`` of the upper triangle into blocks with about the same
    number of pairs each (row i owns n - i - 1 pairs).
    """
    n_blocks = max(1, min(int(n_blocks), max(n - 1, 1)))
    if n_blocks == 1:
        return [(0, n)]
    # cumulative pair count up to row i
    pairs = np.cumsum(np.arange(n - 1, -1, -1, dtype=float))
    total = pairs[-1]
    cuts = np.searchsorted(pairs, total * np.arange(1, n_blocks) / n_blocks) + 1
    edges = np.unique(np.concatenate([[0], cuts, [n]]))
    return [(int(a), int(b)) for a, b in zip(edges[:-1], edges[1:]) if b > a]


# Compute weights
def compute_distance_weights(h_lag, n_j, weight_type="cressie", weight_params=None):
    """
    Build per-bin weights for fitting.

    Parameters
    ----------
    h_lag : (k,) array_like of float
        Representative lag of each bin (same order as the target vector).
    n_j : (k,) array_like of float
        Pair counts per bin.
    weight_type : {'cressie', 'inverse-linear weighting', 'linear weighting', None, 'ols'}
        'cressie'                 : w(h)=n_j / h^2
        'inverse-linear weighting': w(h)=n_j * 1/(1+h/b)
        'linear weighting'        : w(h)=n_j
        None / 'ols'              : ones (plain OLS)
    weight_params : list[float] | None
        ``[b]`` for 'inverse-linear weighting'; ignored otherwise.

    Returns
    -------
    weights : (k,) ndarray of float

    Raises
    ------
    ValueError
        If `weight_type` is unknown, required params are missing, or a Cressie
        weight is requested for a zero lag.
    """

    h_lag = np.asarray(h_lag, float)
    n_j = np.asarray(n_j, float)

    if weight_type == "cressie":
        if np.any(h_lag <= 0):
            raise ValueError("cressie weights need strictly positive lags")
        w = n_j / h_lag**2
    elif weight_type == "inverse-linear weighting":
        if not weight_params:
            raise ValueError("'inverse-linear weighting' needs weight_params=[b]")
        w = n_j * (1.0 / (1.0 + h_lag / weight_params[0]))
    elif weight_type == "linear weighting":
        w = n_j * np.ones_like(h_lag, dtype=float)
    elif weight_type is None or weight_type == "ols":
        w = np.ones_like(h_lag, dtype=float)
    else:
        raise ValueError("Invalid weight_type: choose 'cressie', None/'ols', 'inverse-linear weighting' or 'linear weighting'")

    return w
