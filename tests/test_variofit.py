import numpy as np
import pandas as pd
import pytest
from scipy.optimize import OptimizeResult

import importlib
from VarioKrigE import (
    ConvergenceError,
    Dataset,
    EmpiricalVariogram,
    InsufficientDataError,
    InvalidModelParameterError,
    VariogramBin,
    VariogramFamily,
    VariogramModel,
    empirical_variogram,
    fit_variogram_model,
    load_model,
    save_model,
    variofitmulti,
)
from VarioKrigE.utils import pairwise_distances

# the package re-exports a function named `variofit`, which shadows the submodule attribute
vf = importlib.import_module("VarioKrigE.variofit")

MODELS = [
    VariogramModel("exponential", nugget=0.2, sill=1.0, range=50.0),
    VariogramModel("spherical", nugget=0.2, sill=1.0, range=50.0),
    VariogramModel("gaussian", nugget=0.0, sill=2.0, range=50.0),
    VariogramModel("stable", nugget=0.1, sill=1.0, range=50.0, kappa=1.5),
    VariogramModel("matern", nugget=0.1, sill=1.0, range=20.0, kappa=1.5),
]


@pytest.mark.parametrize("model", MODELS, ids=lambda m: m.family.value)
def test_gamma_zero_at_origin_and_non_decreasing(model):
    h = np.linspace(0.0, 400.0, 2001)
    g = model(h)
    assert g[0] == 0.0
    assert model(0.0) == 0.0
    assert np.all(np.diff(g) >= -1e-12)
    # nugget is the limit just off the origin
    assert model(1e-9) == pytest.approx(model.nugget, abs=1e-6)
    assert g[-1] <= model.total_sill + 1e-12


def test_spherical_reaches_sill_at_range():
    m = VariogramModel("spherical", nugget=0.5, sill=2.0, range=100.0)
    assert m(100.0) == pytest.approx(2.5)
    assert m(250.0) == pytest.approx(2.5)
    assert m(50.0) == pytest.approx(0.5 + 2.0 * (0.75 - 0.0625))


def test_exponential_form_and_matern_half_matches_it():
    m = VariogramModel("exponential", nugget=0.0, sill=1.0, range=500.0)
    assert m(500.0) == pytest.approx(1.0 - np.exp(-1.0))
    h = np.linspace(1.0, 3000.0, 50)
    mat = VariogramModel("matern", nugget=0.0, sill=1.0, range=500.0, kappa=0.5)
    np.testing.assert_allclose(mat(h), m(h), rtol=1e-8)


def test_covariance_is_total_sill_minus_gamma():
    m = VariogramModel("exponential", nugget=0.1, sill=0.9, range=10.0)
    assert m.covariance(0.0) == pytest.approx(1.0)
    assert m.covariance(10.0) == pytest.approx(0.9 * np.exp(-1.0))


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(family="exponential", nugget=-0.1, sill=1.0, range=1.0),
        dict(family="exponential", nugget=0.0, sill=0.0, range=1.0),
        dict(family="spherical", nugget=0.0, sill=1.0, range=0.0),
        dict(family="spherical", nugget=0.0, sill=np.nan, range=1.0),
        dict(family="stable", nugget=0.0, sill=1.0, range=1.0),
        dict(family="stable", nugget=0.0, sill=1.0, range=1.0, kappa=2.5),
        dict(family="exponential", nugget=0.0, sill=1.0, range=1.0, kappa=1.0),
        dict(family="hole-effect", nugget=0.0, sill=1.0, range=1.0),
    ],
)
def test_invalid_model_parameters(kwargs):
    with pytest.raises(InvalidModelParameterError):
        VariogramModel(**kwargs)


def test_model_record_round_trip(tmp_path):
    m = VariogramModel("stable", nugget=0.05, sill=1.2, range=750.0, kappa=1.3)
    record = m.to_dict()
    assert record == {"family": "stable", "nugget": 0.05, "sill": 1.2, "range": 750.0, "kappa": 1.3}
    assert VariogramModel.from_dict(record) == m

    path = tmp_path / "model.yaml"
    save_model(m, path)
    assert load_model(path) == m

    with pytest.raises(InvalidModelParameterError):
        VariogramModel.from_dict({"family": "exponential", "nugget": 0.0, "sill": 1.0})


def test_empirical_variogram_bins(line_dataset):
    ev = empirical_variogram(line_dataset, bin_width=0.8, max_distance=3.0)
    assert len(ev) == 3
    assert ev.counts.tolist() == [3, 2, 1]
    np.testing.assert_allclose(ev.distances, [1.0, 2.0, 3.0])
    np.testing.assert_allclose(ev.semivariances, [7.0 / 3.0, 8.5, 18.0])
    assert [b.lo for b in ev.bins] == pytest.approx([0.8, 1.6, 2.4])
    # the closing bin ends at the cutoff
    assert ev.bins[-1].hi == pytest.approx(3.0)
    assert ev.n_pairs == 6


def test_pairs_beyond_cutoff_are_discarded(line_dataset):
    ev = empirical_variogram(line_dataset, bin_width=0.8, max_distance=2.5, min_bins=2)
    assert ev.n_pairs == 5
    assert ev.counts.tolist() == [3, 2]


def test_default_cutoff_is_half_max_distance(line_dataset):
    ev = empirical_variogram(line_dataset, n_bins=3, min_bins=1)
    assert ev.max_distance == pytest.approx(1.5)
    assert ev.bin_width == pytest.approx(0.5)
    assert len(ev) == 1
    assert ev.bins[0].count == 3


def test_too_few_bins_raises(line_dataset):
    with pytest.raises(InsufficientDataError):
        empirical_variogram(line_dataset, bin_width=1.0, max_distance=3.0)
    with pytest.raises(InsufficientDataError):
        empirical_variogram(Dataset.from_records([(0, 0, 1.0)]))


def test_cressie_hawkins_estimator(line_dataset):
    ev = empirical_variogram(line_dataset, bin_width=0.8, max_distance=3.0, estimator="cressie_hawkins")
    n = 3
    mean_root = np.mean(np.sqrt([1.0, 2.0, 3.0]))
    expected = 0.5 * mean_root**4 / (0.457 + 0.494 / n + 0.045 / n**2)
    assert ev.semivariances[0] == pytest.approx(expected)
    with pytest.raises(ValueError):
        empirical_variogram(line_dataset, estimator="dowd")


def test_empirical_variogram_matches_brute_force(rng):
    X = rng.uniform(0, 1000, size=(120, 2))
    z = rng.normal(size=120)
    ds = Dataset.from_arrays(X, z)
    ev = empirical_variogram(ds, bin_width=50.0, max_distance=400.0)

    D = pairwise_distances(X)
    iu = np.triu_indices(120, k=1)
    d, dz = D[iu], (z[:, None] - z[None, :])[iu]
    keep = d <= 400.0
    idx = np.minimum((d[keep] / 50.0).astype(int), 7)
    semi = 0.5 * dz[keep] ** 2
    for b in ev.bins:
        k = int(round(b.lo / 50.0))
        assert b.count == np.sum(idx == k)
        assert b.semivariance == pytest.approx(semi[idx == k].mean())
        assert b.distance == pytest.approx(d[keep][idx == k].mean())


def test_parallel_accumulation_is_identical(rng, monkeypatch):
    ds = Dataset.from_arrays(rng.uniform(0, 100, size=(300, 2)), rng.normal(size=300))
    monkeypatch.setattr(vf, "PAIRS_PER_BLOCK", 1000)
    serial = empirical_variogram(ds, bin_width=5.0, max_distance=50.0)
    threaded = empirical_variogram(ds, bin_width=5.0, max_distance=50.0, n_jobs=4)
    assert serial.bins == threaded.bins


def _synthetic_empirical(model, lags, count=100):
    bins = tuple(
        VariogramBin(lo=h - 1.0, hi=h + 1.0, distance=float(h), semivariance=float(model(h)), count=count)
        for h in lags
    )
    return EmpiricalVariogram(bins=bins, bin_width=2.0, max_distance=float(lags[-1]) + 1.0)


def test_make_init_and_bounds_heuristics():
    h = np.arange(1.0, 10.0)
    g = np.linspace(0.2, 1.8, 9)
    x0, bounds = vf.make_init_and_bounds("exponential", h, g, sample_variance=2.0)
    assert x0 == pytest.approx((3.0, 2.0, 0.0))
    assert bounds[0] == (0.5, 18.0)
    assert bounds[2] == (0.0, None)

    x0, _ = vf.make_init_and_bounds("spherical", h, g, sample_variance=2.0, nugget_init="first_bin")
    assert x0 == pytest.approx((3.0, 1.8, 0.2))

    _, bounds = vf.make_init_and_bounds("exponential", h, g, fix_nugget=True)
    assert bounds[2] == (0.0, 0.0)


def test_fit_recovers_exact_exponential_curve():
    truth = VariogramModel("exponential", nugget=0.1, sill=1.0, range=300.0)
    ev = _synthetic_empirical(truth, np.arange(50.0, 1001.0, 50.0))
    res = fit_variogram_model(ev, ["exponential"], sample_variance=1.1)
    assert res.model.family is VariogramFamily.EXPONENTIAL
    assert res.model.nugget == pytest.approx(0.1, abs=0.01)
    assert res.model.sill == pytest.approx(1.0, rel=0.02)
    assert res.model.range == pytest.approx(300.0, rel=0.02)
    assert res.wsse == pytest.approx(0.0, abs=1e-6)


def test_fit_selects_lowest_wsse_family():
    truth = VariogramModel("spherical", nugget=0.0, sill=2.0, range=600.0)
    ev = _synthetic_empirical(truth, np.arange(30.0, 901.0, 30.0))
    res = fit_variogram_model(ev, ["exponential", "spherical"], sample_variance=2.0)
    assert res.family is VariogramFamily.SPHERICAL
    assert res.model.range == pytest.approx(600.0, rel=0.03)
    cand = res.candidates.set_index("family")
    assert cand["converged"].all()
    assert cand.loc["spherical", "wsse"] < cand.loc["exponential", "wsse"]
    assert res.wsse == pytest.approx(cand.loc["spherical", "wsse"])


def test_convergence_error_when_no_candidate_converges(monkeypatch):
    truth = VariogramModel("exponential", nugget=0.0, sill=1.0, range=100.0)
    ev = _synthetic_empirical(truth, np.arange(10.0, 201.0, 10.0))

    def stalled(fun, x0, bounds=None, method=None, options=None):
        return OptimizeResult(x=np.asarray(x0, float), fun=float(fun(x0)), success=False,
                              nit=options["maxiter"], message="STOP: TOTAL NO. OF ITERATIONS REACHED LIMIT")

    monkeypatch.setattr(vf, "minimize", stalled)
    with pytest.raises(ConvergenceError) as exc:
        fit_variogram_model(ev, ["exponential", "spherical"], maxiter=5)
    assert set(exc.value.failures) == {"exponential", "spherical"}


def test_unknown_family_is_rejected():
    truth = VariogramModel("exponential", nugget=0.0, sill=1.0, range=100.0)
    ev = _synthetic_empirical(truth, np.arange(10.0, 101.0, 10.0))
    with pytest.raises(ValueError, match="Invalid Model"):
        fit_variogram_model(ev, ["linear"])


def test_variofitmulti_reports_failed_groups(rng):
    n = 80
    df = pd.DataFrame({
        "x": rng.uniform(0, 1000, size=n + 2),
        "y": rng.uniform(0, 1000, size=n + 2),
        "log_ppsm": rng.normal(8.0, 0.3, size=n + 2),
        "district": ["A"] * n + ["B"] * 2,
    })
    summary, results = variofitmulti(df, "log_ppsm", "district", families=["exponential"], progress=False)
    assert list(summary["group"]) == ["A", "B"]
    assert set(results) == {"A"}
    row_a = summary.set_index("group").loc["A"]
    assert row_a["family"] == "exponential" and row_a["error"] is None
    assert summary.set_index("group").loc["B", "error"].startswith("InsufficientDataError")
