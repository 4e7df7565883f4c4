import numpy as np
import pytest
import torch

from relaxedel import (
    ConfigurationError,
    MomentEvaluator,
    NumericalFault,
    RELData,
    iv_moment,
    poisson_moment,
)


# ============================================================================
# Data Container Tests
# ============================================================================


def test_rel_data_from_arrays():
    rng = np.random.default_rng(1)
    data = RELData.from_arrays(y=rng.normal(size=10), X=rng.normal(size=(10, 2)))
    assert data.n_obs == 10
    assert data.y.dtype == torch.float64
    assert data.Z is None
    assert set(data.to_dict()) == {"y", "X"}


def test_rel_data_validation_errors():
    with pytest.raises(ConfigurationError, match="At least one"):
        RELData().validate()

    with pytest.raises(ConfigurationError, match="same length"):
        RELData(y=torch.zeros(5), X=torch.zeros(4, 2)).validate()

    with pytest.raises(ConfigurationError, match="2-dimensional"):
        RELData(Z=torch.zeros(5)).validate()

    with pytest.raises(ConfigurationError, match="zero observations"):
        RELData(Z=torch.zeros(0, 3)).validate()


# ============================================================================
# Moment Evaluation Tests
# ============================================================================


def test_iv_moment_shape(iv_data):
    data, true_coef = iv_data
    evaluator = MomentEvaluator(iv_moment, data, n_params=2)
    H = evaluator.compute_moments(true_coef)
    assert isinstance(H, np.ndarray)
    assert H.shape == (data.n_obs, 2)
    assert evaluator.n_moments == 2


def test_moments_recomputed_for_every_beta(location_design):
    evaluator = MomentEvaluator(location_design["moment_fn"], location_design["data"])
    beta = np.array([0.0, 0.0])
    H0 = evaluator.compute_moments(beta)
    H1 = evaluator.compute_moments(beta + 1.0)
    G = location_design["G"].numpy()
    np.testing.assert_allclose(H0 - H1, np.tile(G @ np.ones(2), (H0.shape[0], 1)))


def test_numpy_moment_function_accepted(location_design):
    def numpy_moment(data, beta):
        return data.Z.numpy() - 1.0

    evaluator = MomentEvaluator(numpy_moment, location_design["data"])
    H = evaluator.compute_moments([0.0, 0.0])
    assert H.shape == (50, 3)


def test_wrong_beta_length_is_configuration_error(location_design):
    evaluator = MomentEvaluator(location_design["moment_fn"], location_design["data"], n_params=2)
    with pytest.raises(ConfigurationError, match="expected 2"):
        evaluator.compute_moments(np.zeros(3))


def test_wrong_row_count_is_configuration_error(location_design):
    evaluator = MomentEvaluator(lambda data, beta: torch.zeros(7, 3), location_design["data"])
    with pytest.raises(ConfigurationError, match="must return shape"):
        evaluator.compute_moments(np.zeros(2))


def test_changing_moment_count_is_configuration_error(location_design):
    def unstable(data, beta):
        return data.Z[:, :2] if beta[0] > 0 else data.Z

    evaluator = MomentEvaluator(unstable, location_design["data"])
    evaluator.compute_moments(np.array([-1.0]))
    with pytest.raises(ConfigurationError, match="changed"):
        evaluator.compute_moments(np.array([1.0]))


def test_initialize_records_moment_count(location_design):
    evaluator = MomentEvaluator(location_design["moment_fn"], location_design["data"], n_params=2)
    assert evaluator.n_moments is None
    assert evaluator.initialize(np.zeros(2)) == 3
    assert evaluator.n_moments == 3
    evaluator.compute_moments(np.ones(2))
    assert evaluator.n_moments == 3


def test_initialize_records_shape_of_non_finite_moments():
    n = 20
    data = RELData(
        y=torch.ones(n, dtype=torch.float64),
        X=torch.full((n, 1), 1000.0, dtype=torch.float64),
        Z=torch.ones(n, 2, dtype=torch.float64),
    )
    evaluator = MomentEvaluator(poisson_moment, data)
    assert evaluator.initialize(np.array([1.0])) == 2
    with pytest.raises(NumericalFault):
        evaluator.compute_moments(np.array([1.0]))


def test_initialize_rejects_changed_moment_count(location_design):
    def unstable(data, beta):
        return data.Z[:, :2] if beta[0] > 0 else data.Z

    evaluator = MomentEvaluator(unstable, location_design["data"])
    evaluator.compute_moments(np.array([-1.0]))
    with pytest.raises(ConfigurationError, match="changed"):
        evaluator.initialize(np.array([1.0]))


def test_poisson_overflow_raises_numerical_fault():
    n = 20
    data = RELData(
        y=torch.ones(n, dtype=torch.float64),
        X=torch.full((n, 1), 1000.0, dtype=torch.float64),
        Z=torch.ones(n, 1, dtype=torch.float64),
    )
    evaluator = MomentEvaluator(poisson_moment, data)
    with pytest.raises(NumericalFault, match="Non-finite"):
        evaluator.compute_moments(np.array([1.0]))
    # finite at a moderate parameter
    assert np.all(np.isfinite(evaluator.compute_moments(np.array([0.001]))))


def test_floating_point_error_raises_numerical_fault(location_design):
    def raising(data, beta):
        raise FloatingPointError("overflow encountered in exp")

    evaluator = MomentEvaluator(raising, location_design["data"])
    with pytest.raises(NumericalFault, match="overflow"):
        evaluator.compute_moments(np.zeros(2))


def test_compute_moments_tensor_keeps_graph(location_design):
    evaluator = MomentEvaluator(location_design["moment_fn"], location_design["data"])
    beta = torch.zeros(2, dtype=torch.float64, requires_grad=True)
    H = evaluator.compute_moments_tensor(beta)
    (grad,) = torch.autograd.grad(H[:, 0].sum(), beta)
    G = location_design["G"]
    assert torch.allclose(grad, -50 * G[0])
