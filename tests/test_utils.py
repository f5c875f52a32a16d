import cv2 as cv
import numpy as np
import pytest

from utils import AngleAxis, approximate_inverse_radial_distortion, filter_out_outliers, filter_vector, p2krc


def test_angle_axis_from_zero_vector():
    rot = AngleAxis.from_vector(np.zeros(3))
    assert rot.angle == 0.0
    np.testing.assert_array_equal(rot.axis, [1.0, 0.0, 0.0])
    np.testing.assert_array_equal(rot.matrix(), np.eye(3))


def test_angle_axis_from_rotation_matrix():
    rvec = np.array([0.2, -0.4, 0.1])
    rot = AngleAxis.from_rotation_matrix(cv.Rodrigues(rvec)[0])
    assert rot.angle == pytest.approx(np.linalg.norm(rvec))
    np.testing.assert_allclose(rot.vector(), rvec, atol=1e-12)


def test_p2krc_recovers_factors():
    K = np.array([[900.0, 0.5, 320.0], [0.0, 880.0, 240.0], [0.0, 0.0, 1.0]])
    R = cv.Rodrigues(np.array([-0.3, 0.2, 0.6]))[0]
    C = np.array([0.5, -1.0, 2.0])
    P = -3.0 * K @ R @ np.hstack([np.eye(3), -C[:, None]])

    K_est, R_est, C_est = p2krc(P)

    np.testing.assert_allclose(K_est, K, atol=1e-8)
    np.testing.assert_allclose(R_est, R, atol=1e-10)
    np.testing.assert_allclose(C_est, C, atol=1e-10)
    assert np.linalg.det(R_est) == pytest.approx(1.0)


def test_inverse_radial_distortion_without_distortion():
    np.testing.assert_array_equal(approximate_inverse_radial_distortion([0.0, 0.0, 0.0, 0.0], 4, 1.0), np.zeros(4))
    np.testing.assert_array_equal(approximate_inverse_radial_distortion([0.0, 0.1], 3, 0.0), np.zeros(3))


def test_inverse_radial_distortion_undoes_forward():
    forward = [0.0, 0.08, 0.0, -0.01]  # k1 r^2 + k2 r^4
    inverse = approximate_inverse_radial_distortion(forward, 4, max_radius=1.0)

    r_u = np.linspace(0.05, 0.9, 10)
    r_d = r_u * (1 + 0.08 * r_u**2 - 0.01 * r_u**4)
    r_u_est = r_d * (1 + sum(c * r_d ** (j + 1) for j, c in enumerate(inverse)))
    np.testing.assert_allclose(r_u_est, r_u, atol=5e-4)


def test_filter_vector():
    assert filter_vector([True, False, True], ["a", "b", "c"]) == ["a", "c"]
    with pytest.raises(ValueError):
        filter_vector([True], ["a", "b"])


def test_filter_out_outliers():
    assert filter_out_outliers([2, 0], ["a", "b", "c", "d"]) == ["b", "d"]
    assert filter_out_outliers([], ["a"]) == ["a"]
    with pytest.raises(IndexError):
        filter_out_outliers([4], ["a", "b"])
