import logging
from typing import TYPE_CHECKING, Callable, Sequence

import numpy as np
import pyceres
import torch

from utils import NDArrayFloat

if TYPE_CHECKING:
    from sfm_data import Dataset

logger = logging.getLogger(__name__)


def angle_axis_rotate_point(rvec: torch.Tensor, X: torch.Tensor) -> torch.Tensor:
    """Rotate X by the rotation given in minimal (axis * angle) form; differentiable everywhere."""
    theta2 = torch.dot(rvec, rvec)
    if theta2 > torch.finfo(rvec.dtype).eps:
        theta = torch.sqrt(theta2)
        w = rvec / theta
        cos, sin = torch.cos(theta), torch.sin(theta)
        return X * cos + torch.linalg.cross(w, X) * sin + w * torch.dot(w, X) * (1.0 - cos)
    # first order Taylor expansion near zero rotation
    return X + torch.linalg.cross(rvec, X)


class ReprojectionErrorFunctor:
    """Residual `project(X) - key` of a pinhole camera.

    Camera parameters: [rx, ry, rz, Cx, Cy, Cz, f]; principal point x0 is fixed.
    """

    def __init__(self, key_x: float, key_y: float, x0: NDArrayFloat):
        self.key = torch.tensor([key_x, key_y], dtype=torch.float64)
        self.x0 = torch.tensor(np.asarray(x0, dtype=np.float64))

    def normalized(self, params: torch.Tensor, point: torch.Tensor) -> torch.Tensor:
        pt_cam = angle_axis_rotate_point(params[0:3], point - params[3:6])
        return pt_cam[:2] / pt_cam[2]

    def project(self, params: torch.Tensor, point: torch.Tensor) -> torch.Tensor:
        return params[6] * self.normalized(params, point) + self.x0

    def __call__(self, params: torch.Tensor, point: torch.Tensor) -> torch.Tensor:
        return self.project(params, point) - self.key


class RadialReprojectionErrorFunctor(ReprojectionErrorFunctor):
    """Residual of a pinhole camera with radial distortion [..., k1, k2]."""

    def project(self, params: torch.Tensor, point: torch.Tensor) -> torch.Tensor:
        pt_cam = self.normalized(params, point)
        r2 = torch.dot(pt_cam, pt_cam)
        distortion = 1.0 + r2 * (params[7] + r2 * params[8])
        return params[6] * distortion * pt_cam + self.x0


class ParamsConstraintsFunctor:
    """Soft priors `weight_i * (param_i - constraint_i)`; zero weight disables a prior."""

    def __init__(self, constraints: Sequence[float], weights: Sequence[float]):
        self.constraints = torch.tensor(np.asarray(constraints, dtype=np.float64))
        self.weights = torch.tensor(np.asarray(weights, dtype=np.float64))

    def __call__(self, params: torch.Tensor) -> torch.Tensor:
        return self.weights * (params - self.constraints)


class AutoDiffCostFunction(pyceres.CostFunction):
    """Ceres cost function whose Jacobians are computed by torch autograd.

    The functor takes one float64 tensor per parameter block and returns the residual vector.
    """

    def __init__(
        self,
        functor: Callable[..., torch.Tensor],
        num_residuals: int,
        parameter_block_sizes: Sequence[int],
    ):
        super().__init__()
        self.functor = functor
        self.set_num_residuals(num_residuals)
        self.set_parameter_block_sizes(list(parameter_block_sizes))

    def Evaluate(self, parameters, residuals, jacobians):
        inputs = tuple(torch.tensor(np.asarray(p, dtype=np.float64)) for p in parameters)
        residuals[:] = self.functor(*inputs).detach().numpy()

        if jacobians is not None:
            blocks = torch.autograd.functional.jacobian(self.functor, inputs)
            for jac_out, block in zip(jacobians, blocks):
                if jac_out is not None:  # None for constant parameter blocks
                    jac_out[:] = block.detach().numpy().ravel()  # row-major (residual, param)
        return True


def bundle_adjustment(
    dataset: "Dataset",
    fix_first_camera: bool = False,
    huber_delta: float | None = 1.0,
    max_num_iterations: int = 100,
    linear_solver_type=pyceres.LinearSolverType.SPARSE_SCHUR,
    verbose: bool = False,
):
    """Refine parameters of all reconstructed cameras and all points of the dataset.

    Camera parameters are written back via `set_params`; point coordinates are refined in place.
    """
    cam_params = {cam_idx: dataset.cam(cam_idx).params() for cam_idx in sorted(dataset.reconstructed_cams)}
    points = dataset.points

    problem = pyceres.Problem()
    loss = pyceres.HuberLoss(huber_delta) if huber_delta else pyceres.TrivialLoss()

    cost_functions = []  # Python cost functions must outlive the solve
    observed_cams = set()
    num_observations = 0
    for pt_idx, entry in enumerate(points.pt_data):
        for cam_idx, key_idx in entry.reconstructed.items():
            if cam_idx not in cam_params:
                continue
            cost = dataset.cam(cam_idx).cost_function(key_idx)
            cost_functions.append(cost)
            problem.add_residual_block(cost, loss, [cam_params[cam_idx], points.pt_coord_of(pt_idx)])
            observed_cams.add(cam_idx)
            num_observations += 1

    if not observed_cams:
        logger.warning("Nothing to optimize: no observations of reconstructed cameras.")
        return None

    for cam_idx in observed_cams:
        cam = dataset.cam(cam_idx)
        if np.any(cam.params_constraints_weights != 0):
            cost_functions.append(cam.constraints_cost_function())
            problem.add_residual_block(cost_functions[-1], pyceres.TrivialLoss(), [cam_params[cam_idx]])

    # Fix the first camera (to avoid gauge freedom)
    if fix_first_camera:
        first_cam_idx = min(observed_cams)
        problem.set_parameter_block_constant(cam_params[first_cam_idx])
        logger.info(f"Fixed camera {first_cam_idx} to avoid gauge freedom")

    options = pyceres.SolverOptions()
    options.linear_solver_type = linear_solver_type
    options.minimizer_progress_to_stdout = verbose
    options.max_num_iterations = max_num_iterations

    summary = pyceres.SolverSummary()
    pyceres.solve(options, problem, summary)
    logger.info(summary.BriefReport())

    for cam_idx in observed_cams:
        dataset.cam(cam_idx).set_params(cam_params[cam_idx])

    logger.info(
        f"Bundle adjustment complete: {len(observed_cams)} cameras, {points.num_pts} points, "
        f"{num_observations} observations."
    )
    return summary
