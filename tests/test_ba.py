import cv2 as cv
import numpy as np
import pyceres
import pytest
import torch

from ba import angle_axis_rotate_point, bundle_adjustment
from cameras import StandardCamera, StandardCameraRadial
from sfm_data import Dataset, SplitNViewMatch

WIDTH, HEIGHT = 501, 401


def evaluate(cost, parameters, sizes, num_residuals):
    residuals = np.zeros(num_residuals)
    jacobians = [np.zeros(num_residuals * size) for size in sizes]
    assert cost.Evaluate([np.asarray(p, dtype=np.float64) for p in parameters], residuals, jacobians)
    return residuals, [J.reshape(num_residuals, size) for J, size in zip(jacobians, sizes)]


def numeric_jacobians(cam, params, point, key, h=1e-6):
    """Central differences of project(X) - key with respect to camera params and the point."""

    def residual(p, X):
        probe = cam.clone()
        probe.set_params(p)
        return probe.project(X) - key

    J_cam = np.zeros((2, len(params)))
    for i in range(len(params)):
        dp = np.zeros(len(params))
        dp[i] = h
        J_cam[:, i] = (residual(params + dp, point) - residual(params - dp, point)) / (2 * h)
    J_pt = np.zeros((2, 3))
    for i in range(3):
        dX = np.zeros(3)
        dX[i] = h
        J_pt[:, i] = (residual(params, point + dX) - residual(params, point - dX)) / (2 * h)
    return J_cam, J_pt


@pytest.mark.parametrize("rvec", [(0.0, 0.0, 0.0), (0.2, -0.1, 0.3)])
def test_angle_axis_rotate_point_matches_rodrigues(rvec):
    X = np.array([0.3, -1.2, 2.0])
    R = cv.Rodrigues(np.array(rvec))[0]
    rotated = angle_axis_rotate_point(torch.tensor(rvec, dtype=torch.float64), torch.tensor(X))
    np.testing.assert_allclose(rotated.numpy(), R @ X, atol=1e-12)


@pytest.mark.parametrize(
    "cls, params",
    [
        (StandardCamera, [0.0, 0.0, 0.0, 0.1, -0.2, -1.0, 400.0]),
        (StandardCamera, [0.1, -0.2, 0.05, 0.1, -0.2, -1.0, 400.0]),
        (StandardCameraRadial, [0.1, -0.2, 0.05, 0.1, -0.2, -1.0, 400.0, -0.1, 0.02]),
    ],
)
def test_reprojection_cost_function(cls, params):
    params = np.array(params)
    cam = cls("img.jpg", width=WIDTH, height=HEIGHT)
    cam.set_params(params)
    cam.add_feature(260.0, 190.0, np.zeros(128))
    point = np.array([0.4, -0.3, 4.0])

    cost = cam.cost_function(0)
    residuals, (J_cam, J_pt) = evaluate(cost, [params, point], [cam.n_params, 3], 2)

    np.testing.assert_allclose(residuals, cam.project(point) - cam.key(0), atol=1e-9)
    J_cam_num, J_pt_num = numeric_jacobians(cam, params, point, cam.key(0))
    np.testing.assert_allclose(J_cam, J_cam_num, rtol=1e-5, atol=1e-4)
    np.testing.assert_allclose(J_pt, J_pt_num, rtol=1e-5, atol=1e-4)


def test_cost_function_skips_constant_blocks():
    cam = StandardCamera("img.jpg", width=WIDTH, height=HEIGHT)
    cam.set_params([0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 400.0])
    cam.add_feature(250.0, 200.0, np.zeros(128))
    residuals = np.zeros(2)
    jac_pt = np.zeros(6)
    assert cam.cost_function(0).Evaluate([cam.params(), np.array([0.0, 0.0, 2.0])], residuals, [None, jac_pt])
    np.testing.assert_allclose(jac_pt.reshape(2, 3), [[200.0, 0.0, 0.0], [0.0, 200.0, 0.0]])


def test_constraints_cost_function():
    cam = StandardCameraRadial("img.jpg", width=WIDTH, height=HEIGHT)
    cam.constrain_focal(400.0, 2.0)
    cam.constrain_radial([0.0, 0.0], [10.0, 0.0])
    params = np.array([0.1, 0.2, 0.3, 1.0, 2.0, 3.0, 410.0, 0.05, 0.5])

    residuals, (J,) = evaluate(cam.constraints_cost_function(), [params], [9], 9)

    np.testing.assert_allclose(residuals, [0, 0, 0, 0, 0, 0, 20.0, 0.5, 0.0])
    np.testing.assert_allclose(J, np.diag([0, 0, 0, 0, 0, 0, 2.0, 10.0, 0.0]))


def test_constraints_cost_function_zero_at_target():
    cam = StandardCamera("img.jpg", width=WIDTH, height=HEIGHT)
    cam.set_params_constraints(np.arange(7.0), np.ones(7))
    residuals, _ = evaluate(cam.constraints_cost_function(), [np.arange(7.0)], [7], 7)
    np.testing.assert_array_equal(residuals, np.zeros(7))


@pytest.fixture
def two_view_dataset():
    rng = np.random.default_rng(1)
    dataset = Dataset("unused")
    for params in ([0.0, 0.0, 0.0, 0.0, 0.0, -5.0, 500.0], [0.0, 0.1, 0.0, 1.0, 0.0, -5.0, 500.0]):
        cam = StandardCamera("img.jpg", width=WIDTH, height=HEIGHT)
        cam.set_params(params)
        dataset.add_camera(cam)

    X_true = rng.uniform(-1.0, 1.0, size=(30, 3))
    for cam in dataset.cams:
        keys = np.array([cam.project(X) for X in X_true])
        cam.set_features(np.column_stack([keys, np.ones(len(keys)), np.zeros(len(keys))]), np.zeros((len(keys), 128)))

    X_noisy = X_true + rng.normal(scale=0.05, size=X_true.shape)
    views = [SplitNViewMatch(observed_part={0: i, 1: i}) for i in range(len(X_true))]
    dataset.points.add_points_split(X_noisy, views)
    dataset.mark_cam_as_reconstructed(0)
    dataset.mark_cam_as_reconstructed(1)
    return dataset


def reprojection_rms(dataset):
    errors = [
        dataset.cam(cam_idx).project(X) - dataset.cam(cam_idx).key(key_idx)
        for X, entry in zip(dataset.points.pt_coord, dataset.points.pt_data)
        for cam_idx, key_idx in entry.reconstructed.items()
    ]
    return float(np.sqrt(np.mean(np.square(errors))))


def test_bundle_adjustment_refines_points_in_place(two_view_dataset):
    dataset = two_view_dataset
    dataset.cam(1).constrain_focal(500.0, 10.0)
    point_arrays = list(dataset.points.pt_coord)
    rms_before = reprojection_rms(dataset)

    summary = bundle_adjustment(
        dataset,
        fix_first_camera=True,
        huber_delta=None,
        linear_solver_type=pyceres.LinearSolverType.DENSE_SCHUR,
    )

    assert summary.final_cost < summary.initial_cost
    assert reprojection_rms(dataset) < 1e-2 * rms_before
    assert all(a is b for a, b in zip(point_arrays, dataset.points.pt_coord))
    np.testing.assert_array_equal(dataset.cam(0).params(), [0.0, 0.0, 0.0, 0.0, 0.0, -5.0, 500.0])


def test_bundle_adjustment_without_reconstructed_cameras():
    dataset = Dataset("unused")
    assert bundle_adjustment(dataset) is None
