"""
Pytest configuration and fixtures for relaxedel tests
"""
import numpy as np
import pytest
import torch

from relaxedel import RELData, location_moment


@pytest.fixture(scope="session")
def seed_torch():
    """Set random seed for reproducible tests"""
    torch.manual_seed(42)
    if torch.cuda.is_available():
        torch.cuda.manual_seed(42)


@pytest.fixture
def moment_matrix():
    """Moment matrix with non-zero column means (n=40, m=3)"""
    rng = np.random.default_rng(0)
    return rng.normal(loc=0.2, scale=1.0, size=(40, 3))


@pytest.fixture
def location_design():
    """
    Three moments linear in a 2-d beta: h_i = Z_i - G beta, n = 50.

    The noise is invariant under the cyclic permutation P of the coordinates
    (16 orbits of size three plus two points on the diagonal). Its mean lies
    along (1, 1, 1) and exceeds lam, so all three upper moment bounds bind with
    equal multipliers. The columns of G are orthogonal to (1, 1, 1), hence
    beta_true satisfies the first-order conditions of the concave profiled
    likelihood and is its unique maximizer.
    """
    torch.manual_seed(42)
    G = torch.tensor([[1.0, 0.0], [-1.0, 1.0], [0.0, -1.0]], dtype=torch.float64)
    P = torch.eye(3, dtype=torch.float64)[[1, 2, 0]]
    u = torch.randn(16, 3, dtype=torch.float64)
    diagonal = torch.tensor([[0.5, 0.5, 0.5], [-0.5, -0.5, -0.5]], dtype=torch.float64)
    e = torch.cat([u, u @ P.T, u @ P.T @ P.T, diagonal], dim=0)
    e = e - e.mean(dim=0) + 0.3 / 3 ** 0.5

    beta_true = torch.tensor([0.5, -0.25], dtype=torch.float64)
    Z = beta_true @ G.T + e
    return {
        "data": RELData(Z=Z),
        "G": G,
        "beta_true": beta_true.numpy(),
        "moment_fn": location_moment(G),
        "lam": 0.01,
    }


@pytest.fixture
def iv_data():
    """Just-identified linear IV sample with an intercept"""
    torch.manual_seed(42)
    n = 200
    z = torch.randn(n, 1, dtype=torch.float64)
    v = torch.randn(n, dtype=torch.float64)
    x = 0.8 * z[:, 0] + v
    eps = 0.5 * v + 0.5 * torch.randn(n, dtype=torch.float64)
    true_coef = torch.tensor([1.0, 2.0], dtype=torch.float64)
    X = torch.stack([torch.ones(n, dtype=torch.float64), x], dim=1)
    Z = torch.cat([torch.ones(n, 1, dtype=torch.float64), z], dim=1)
    y = X @ true_coef + eps
    return RELData(y=y, X=X, Z=Z), true_coef
