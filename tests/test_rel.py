"""
End-to-end tests for RelaxedELEstimator
"""
import numpy as np
import pandas as pd
import pytest
import torch

from relaxedel import ConfigurationError, RELData, RelaxedELEstimator, iv_moment
from relaxedel.base import resolve_device


@pytest.fixture
def fitted(location_design):
    model = RelaxedELEstimator(
        location_design["moment_fn"], lam=location_design["lam"], xtol=1e-6, ftol=1e-10
    )
    return model.fit(location_design["data"], beta0=np.zeros(2))


def test_recovers_generating_beta(fitted, location_design):
    assert fitted.result_.converged
    assert fitted.is_fitted
    np.testing.assert_allclose(
        fitted.params["coef"].cpu().numpy(), location_design["beta_true"], atol=5e-5
    )


def test_recovery_with_tight_solver_tolerances(location_design):
    model = RelaxedELEstimator(
        location_design["moment_fn"],
        lam=location_design["lam"],
        solvers="CLARABEL",
        xtol=1e-8,
        ftol=1e-12,
        tol_gap_abs=1e-12,
        tol_gap_rel=1e-12,
        tol_feas=1e-12,
    )
    model.fit(location_design["data"], beta0=np.zeros(2))
    assert model.adapter.solver_options["tol_feas"] == 1e-12
    # accuracy is bounded by the inner solver, not by the outer tolerances
    np.testing.assert_allclose(model.result_.beta, location_design["beta_true"], atol=5e-6)


def test_params_and_diagnostics(fitted, location_design):
    n = location_design["data"].n_obs
    assert set(fitted.params) == {"coef", "weights", "log_weights"}
    weights = fitted.params["weights"]
    assert isinstance(weights, torch.Tensor)
    assert weights.shape == (n,)
    assert float(weights.sum()) == pytest.approx(1.0, abs=1e-6)
    assert torch.all(weights >= -1e-9)

    diagnostics = fitted.diagnostics_
    assert diagnostics["n_obs"] == n
    assert diagnostics["n_moments"] == 3
    assert diagnostics["lam"] == location_design["lam"]
    assert diagnostics["log_likelihood"] == pytest.approx(-diagnostics["objective"], abs=1e-5)
    # the relaxed constraints bind, so the likelihood is below the uniform bound
    assert diagnostics["log_likelihood"] < -n * np.log(n)
    assert diagnostics["el_ratio"] > 0
    assert 0.0 <= diagnostics["el_ratio_pvalue"] <= 1.0
    assert diagnostics["moment_violation"] <= location_design["lam"] + 1e-6
    assert diagnostics["n_starts"] == 1


def test_criterion_is_lowest_at_estimate(fitted):
    beta_hat = fitted.result_.beta
    at_hat = fitted.criterion(beta_hat)
    for shift in ([0.1, 0.0], [0.0, 0.1], [-0.1, -0.1]):
        assert fitted.criterion(beta_hat + np.array(shift)) > at_hat


def test_summary(fitted):
    table = fitted.summary()
    assert isinstance(table, pd.DataFrame)
    assert list(table.index) == ["beta0", "beta1"]
    assert list(table.columns) == ["coef"]
    assert table.attrs["converged"]
    assert "el_ratio" in table.attrs


def test_to_moves_fitted_tensors(fitted):
    assert fitted.to("cpu") is fitted
    assert fitted.device == torch.device("cpu")
    assert all(v.device.type == "cpu" for v in fitted.params.values())

    fitted.params["weights"] = None
    fitted.to(torch.device("cpu"))
    assert fitted.params["weights"] is None
    assert fitted.params["coef"].device.type == "cpu"


def test_resolve_device():
    assert resolve_device("cpu") == torch.device("cpu")
    expected = "cuda" if torch.cuda.is_available() else "cpu"
    assert resolve_device(None).type == expected


def test_not_fitted_errors(location_design):
    model = RelaxedELEstimator(location_design["moment_fn"], lam=0.01)
    with pytest.raises(ValueError, match="not fitted"):
        model.summary()
    with pytest.raises(ValueError, match="not been fitted"):
        model.criterion(np.zeros(2))
    assert not model.is_fitted


def test_lambda_path_monotone(fitted, location_design):
    n = location_design["data"].n_obs
    path = fitted.lambda_path(location_design["beta_true"], [0.01, 0.05, 0.1, 1.0])
    assert list(path.columns) == ["lam", "log_likelihood", "status", "moment_violation"]
    assert np.all(np.diff(path["log_likelihood"].to_numpy()) >= -1e-6)
    # uniform weights satisfy every moment once lam exceeds the sample means
    assert path["log_likelihood"].iloc[-1] == pytest.approx(-n * np.log(n), abs=1e-4)
    assert (path["status"] == "optimal").all()


def test_multi_start_threads(location_design):
    model = RelaxedELEstimator(
        location_design["moment_fn"],
        lam=location_design["lam"],
        xtol=1e-6,
        ftol=1e-10,
        n_jobs=2,
    )
    model.fit(location_design["data"], beta0=np.array([[0.0, 0.0], [1.0, 0.0]]))
    assert len(model.starts_) == 2
    assert model.inner_.evaluator.n_moments == 3
    assert model.diagnostics_["n_starts"] == 2
    assert any(r is model.result_ for r in model.starts_)
    np.testing.assert_allclose(model.result_.beta, location_design["beta_true"], atol=5e-5)


def test_declarative_builder_agrees(fitted, location_design):
    model = RelaxedELEstimator(
        location_design["moment_fn"],
        lam=location_design["lam"],
        builder="declarative",
        xtol=1e-6,
        ftol=1e-10,
    )
    model.fit(location_design["data"], beta0=np.zeros(2))
    np.testing.assert_allclose(model.result_.beta, fitted.result_.beta, atol=1e-4)


def test_torch_backend_smoke(location_design):
    model = RelaxedELEstimator(
        location_design["moment_fn"], lam=location_design["lam"], backend="torch", maxiter=5
    )
    model.fit(location_design["data"], beta0=location_design["beta_true"])
    assert np.isfinite(model.diagnostics_["objective"])
    np.testing.assert_allclose(model.result_.beta, location_design["beta_true"], atol=5e-2)


def test_evaluation_budget(location_design):
    model = RelaxedELEstimator(
        location_design["moment_fn"], lam=location_design["lam"], max_evaluations=4
    )
    model.fit(location_design["data"], beta0=np.zeros(2))
    assert not model.diagnostics_["converged"]
    assert model.diagnostics_["n_evaluations"] == 4


def test_iv_fit_runs(iv_data):
    data, true_coef = iv_data
    model = RelaxedELEstimator(iv_moment, lam=0.01, xtol=1e-4, ftol=1e-5)
    model.fit(data, beta0=true_coef.numpy())
    assert model.params["coef"].shape == (2,)
    assert np.isfinite(model.diagnostics_["objective"])
    # just identified: no over-identification test
    assert model.diagnostics_["el_ratio_pvalue"] is None


@pytest.mark.parametrize("lam", [-0.1, "0.1", True])
def test_invalid_lambda(location_design, lam):
    with pytest.raises(ConfigurationError, match="lam"):
        RelaxedELEstimator(location_design["moment_fn"], lam=lam)


def test_invalid_configuration(location_design):
    with pytest.raises(ConfigurationError, match="not supported"):
        RelaxedELEstimator(location_design["moment_fn"], lam=0.1, backend="jax")
    with pytest.raises(ConfigurationError, match="n_jobs"):
        RelaxedELEstimator(location_design["moment_fn"], lam=0.1, n_jobs=0)

    model = RelaxedELEstimator(location_design["moment_fn"], lam=0.1)
    with pytest.raises(ConfigurationError, match="RELData"):
        model.fit(location_design["data"].to_dict(), beta0=np.zeros(2))
    with pytest.raises(ConfigurationError, match="beta0"):
        model.fit(location_design["data"], beta0=np.zeros((2, 2, 2)))
    with pytest.raises(ConfigurationError, match="2-dimensional"):
        model.fit(RELData(Z=torch.zeros(5)), beta0=np.zeros(2))
