"""
Tests for the majorization engine and classical scaling.
"""

import json
import sys

import numpy as np
import scipy.sparse as sp
import torch
from scipy.spatial.distance import pdist, squareform

from config import SmacofConfig
from conftest import great_circle_distances
from convergence_tracker import STOP_EPSILON, STOP_MAX_ITER, STOP_TOL_FUN, ConvergenceTracker
from smacof import StressMajorizer, cmdscale, smacof, stress
from sphere_geometry import project_to_sphere, random_sphere_points


def _noisy_distances(n=15, seed=0):
    rng = np.random.default_rng(seed)
    d = squareform(pdist(rng.standard_normal((n, 3))))
    noise = rng.uniform(0.9, 1.1, (n, n))
    d = d * 0.5 * (noise + noise.T)
    return d, rng.standard_normal((n, 3))


def test_stress_definition():
    d = np.array([[0.0, 1.0, 2.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0]])
    y = np.array([[0.0, 0.0, 0.0], [2.0, 0.0, 0.0], [0.0, 5.0, 0.0]])
    # pairs (0,1) and (0,2) only, pair (1,2) is excluded
    assert np.isclose(stress(d, y), (1.0 - 2.0) ** 2 + (2.0 - 5.0) ** 2)


def test_stress_is_non_increasing():
    d, y0 = _noisy_distances()
    config = SmacofConfig(max_iter=50, epsilon=0.0, tol_fun=0.0)
    result = smacof(d, y0, config)

    assert result.iterations == 50
    assert result.stop_condition == [STOP_MAX_ITER]
    assert np.all(np.diff(result.sigma) <= 1e-10 * result.sigma[0])
    assert result.sigma[-1] < result.sigma[0]
    assert np.all(np.diff(result.t) >= 0)
    print("✓ SMACOF stress is monotonic")


def test_stress_is_non_increasing_with_excluded_pairs():
    d, y0 = _noisy_distances(n=20, seed=1)
    rng = np.random.default_rng(1)
    drop = np.triu(rng.uniform(size=d.shape) < 0.4, k=1)
    d[drop | drop.T] = 0.0

    config = SmacofConfig(max_iter=40, epsilon=0.0, tol_fun=0.0)
    result = smacof(sp.csr_matrix(d), y0, config)

    assert np.all(np.diff(result.sigma) <= 1e-10 * result.sigma[0])
    np.testing.assert_allclose(result.sigma[-1], stress(d, result.y))


def test_fixed_rows_do_not_move():
    d, y0 = _noisy_distances(n=12, seed=2)
    is_free = np.zeros(12, dtype=bool)
    is_free[[0, 3, 7]] = True
    result = smacof(d, y0, SmacofConfig(max_iter=20, epsilon=0.0, tol_fun=0.0), is_free)

    np.testing.assert_array_equal(result.y[~is_free], y0[~is_free])
    assert np.all(np.diff(result.sigma) <= 1e-10 * result.sigma[0])


def test_unweighted_row_keeps_its_position(icosphere1):
    x = np.array(icosphere1.vertices)
    d = great_circle_distances(x, 1.0)
    d[0, :] = 0.0
    d[:, 0] = 0.0
    d = sp.csr_matrix(d)

    majorizer = StressMajorizer(d)
    assert not majorizer.is_free[0]
    assert majorizer.is_free[1:].all()

    y0 = x.copy()
    y0[0] *= 1.5
    result = smacof(d, y0, SmacofConfig(max_iter=5, epsilon=0.0, tol_fun=0.0))
    np.testing.assert_array_equal(result.y[0], y0[0])
    assert np.all(np.isfinite(result.y))


def test_guttman_transform_keeps_exact_configuration(icosphere):
    y = torch.as_tensor(np.array(icosphere.vertices))
    d = squareform(pdist(icosphere.vertices))
    majorizer = StressMajorizer(d)
    np.testing.assert_allclose(majorizer.guttman_transform(y).numpy(), y.numpy(), atol=1e-12)


def test_optimal_configuration_stops_at_first_iteration(icosphere):
    d = squareform(pdist(icosphere.vertices))
    result = smacof(d, icosphere.vertices)

    assert result.iterations == 1
    assert STOP_TOL_FUN in result.stop_condition
    assert result.sigma[-1] < 1e-20


def test_relative_change_stop_condition():
    d, y0 = _noisy_distances(seed=3)
    result = smacof(d, y0, SmacofConfig(max_iter=1000, epsilon=1e-3, tol_fun=0.0))

    assert STOP_EPSILON in result.stop_condition
    assert result.iterations < 1000
    rel = (result.sigma[-2] - result.sigma[-1]) / result.sigma[-2]
    assert rel < 1e-3


def test_cmdscale_recovers_sphere():
    rng = np.random.default_rng(4)
    half = random_sphere_points(20, 2.0, rng)
    # antipodal pairs keep the centroid at the origin
    points = np.vstack([half, -half])
    d = squareform(pdist(points))

    y, sphrad = project_to_sphere(cmdscale(d))

    np.testing.assert_allclose(sphrad, 2.0, rtol=1e-8)
    # same configuration up to a rotation or reflection
    np.testing.assert_allclose(squareform(pdist(y)), d, atol=1e-8)
    np.testing.assert_allclose(y.mean(axis=0), 0.0, atol=1e-8)
    print("✓ Classical scaling recovers a spherical configuration")


def test_cmdscale_pads_missing_dimensions():
    # collinear points only have one positive eigenvalue
    x = np.array([[0.0], [1.0], [3.0], [4.5]])
    d = squareform(pdist(x))
    y = cmdscale(d, ndim=3)

    assert y.shape == (4, 3)
    np.testing.assert_allclose(y[:, 1:], 0.0, atol=1e-6)
    np.testing.assert_allclose(squareform(pdist(y)), d, atol=1e-8)


def test_tracker_stop_conditions_and_save(tmp_path):
    tracker = ConvergenceTracker(SmacofConfig(max_iter=1, epsilon=0.1, tol_fun=1e-3))
    tracker.record(10.0)
    assert tracker.stop_conditions() == []

    tracker.record(9.5)
    assert tracker.stop_conditions() == [STOP_MAX_ITER, STOP_EPSILON]
    assert tracker.stop_conditions(check_relative=False) == [STOP_MAX_ITER]

    filename = tmp_path / "trace.json"
    tracker.save(str(filename))
    with open(filename) as f:
        data = json.load(f)
    assert data["stress"] == [10.0, 9.5]
    assert len(data["time"]) == 2


def run_all_tests():
    """Run the majorization tests that need no fixtures."""
    print("=" * 50)
    print("Running SMACOF tests")
    print("=" * 50)

    tests = [
        ("Stress definition", test_stress_definition),
        ("Monotone stress", test_stress_is_non_increasing),
        ("Monotone stress, sparse", test_stress_is_non_increasing_with_excluded_pairs),
        ("Fixed rows", test_fixed_rows_do_not_move),
        ("Relative change stop", test_relative_change_stop_condition),
        ("Classical scaling", test_cmdscale_recovers_sphere),
        ("Classical scaling padding", test_cmdscale_pads_missing_dimensions),
    ]

    failed = 0
    for test_name, test_func in tests:
        print(f"\n{'='*20} {test_name} {'='*20}")
        try:
            test_func()
            print(f"✓ {test_name} PASSED")
        except Exception as e:
            failed += 1
            print(f"✗ {test_name} FAILED with exception: {e}")

    print(f"\n{'='*50}")
    print(f"Test Results: {len(tests) - failed} passed, {failed} failed")
    print(f"{'='*50}")
    return failed == 0


if __name__ == "__main__":
    sys.exit(0 if run_all_tests() else 1)
