import copy
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Sequence

import numpy as np

from ba import (
    AutoDiffCostFunction,
    ParamsConstraintsFunctor,
    RadialReprojectionErrorFunctor,
    ReprojectionErrorFunctor,
)
from utils import (
    AngleAxis,
    Matrix34,
    NDArrayFloat,
    Point3D,
    approximate_inverse_radial_distortion,
    image_dims,
    p2krc,
)

logger = logging.getLogger(__name__)


class Camera(ABC):
    """An image with its detected features.

    Keypoints are stored as (N, 2) positions plus per-keypoint scale and orientation [rad];
    descriptors as an (N, D) matrix, one row per keypoint.
    Abstract: subclasses add a projection model and its optimizable parameter vector.
    """

    def __init__(self, img_filename: str | Path, width: int | None = None, height: int | None = None):
        self._img_filename = str(img_filename)
        if width is None or height is None:
            width, height = self._probe_dims(self._img_filename)
        self._img_width = int(width)
        self._img_height = int(height)

        self._keys = np.zeros((0, 2))
        self._keys_scale = np.zeros(0)
        self._keys_orientation = np.zeros(0)
        self._descr = np.zeros((0, 0), dtype=np.float32)

    @staticmethod
    def _probe_dims(img_filename: str) -> tuple[int, int]:
        try:
            return image_dims(img_filename)
        except OSError as e:
            logger.warning(f"Could not read dimensions of {img_filename}: {e}")
            return -1, -1

    def clone(self) -> "Camera":
        """Independent copy preserving the camera model."""
        return copy.deepcopy(self)

    @property
    def img_filename(self) -> str:
        return self._img_filename

    @property
    def img_width(self) -> int:
        return self._img_width

    @property
    def img_height(self) -> int:
        return self._img_height

    # --- features ---

    @property
    def num_keys(self) -> int:
        return len(self._keys)

    @property
    def keys(self) -> NDArrayFloat:
        return self._keys

    def key(self, i: int) -> NDArrayFloat:
        return self._keys[i]

    @property
    def keys_scale(self) -> NDArrayFloat:
        return self._keys_scale

    @property
    def keys_orientation(self) -> NDArrayFloat:
        return self._keys_orientation

    @property
    def descr(self) -> NDArrayFloat:
        return self._descr[: self.num_keys]

    def reserve_features(self, num: int, dim: int):
        """Drop current features and preallocate descriptor storage for `add_feature`."""
        self._keys = np.zeros((0, 2))
        self._keys_scale = np.zeros(0)
        self._keys_orientation = np.zeros(0)
        self._descr = np.zeros((num, dim), dtype=np.float32)

    def add_feature(self, x: float, y: float, descr: Sequence[float], scale: float = 0.0, orientation: float = 0.0):
        descr = np.asarray(descr, dtype=np.float32).ravel()
        idx = self.num_keys
        capacity, dim = self._descr.shape
        if dim != descr.size:
            if idx > 0:
                raise ValueError(f"Descriptor dimension {descr.size} does not match {dim}")
            capacity, dim = 0, descr.size
            self._descr = np.zeros((0, dim), dtype=np.float32)
        if idx >= capacity:
            self._descr = np.vstack([self._descr, np.zeros((max(1, capacity), dim), dtype=np.float32)])

        self._descr[idx] = descr
        self._keys = np.vstack([self._keys, [x, y]])
        self._keys_scale = np.append(self._keys_scale, scale)
        self._keys_orientation = np.append(self._keys_orientation, orientation)

    def resize_features(self, num: int, dim: int):
        """Allocate storage for exactly `num` features, to be filled by `set_feature`."""
        self._keys = np.zeros((num, 2))
        self._keys_scale = np.zeros(num)
        self._keys_orientation = np.zeros(num)
        self._descr = np.zeros((num, dim), dtype=np.float32)

    def set_feature(self, i: int, x: float, y: float, scale: float, orientation: float, descr: Sequence[float]):
        self._keys[i] = (x, y)
        self._keys_scale[i] = scale
        self._keys_orientation[i] = orientation
        self._descr[i] = descr

    def set_features(self, keys: NDArrayFloat, descr: NDArrayFloat):
        """Copy detector output into the camera.

        keys: (N, 4) array of (x, y, scale, orientation); descr: (N, D)
        """
        keys = np.asarray(keys, dtype=np.float64).reshape(-1, 4)
        descr = np.asarray(descr, dtype=np.float32)
        if len(keys) != len(descr):
            raise ValueError(f"Got {len(keys)} keypoints but {len(descr)} descriptors")
        self._keys = keys[:, :2].copy()
        self._keys_scale = keys[:, 2].copy()
        self._keys_orientation = keys[:, 3].copy()
        self._descr = (descr if descr.ndim == 2 else descr.reshape(len(keys), -1)).copy()

    def clear_descriptors(self):
        """Release descriptor storage; keypoints are kept. Features cannot be re-matched afterwards."""
        self._descr = np.zeros((0, 0), dtype=np.float32)

    # --- camera model interface ---

    @property
    @abstractmethod
    def n_params(self) -> int:
        """Length of the optimizable parameter vector."""

    @abstractmethod
    def project(self, pt: Point3D) -> NDArrayFloat:
        """World point -> pixel coordinates."""

    @abstractmethod
    def key_normalized(self, i: int) -> NDArrayFloat:
        """Keypoint `i` in normalized (undistorted) camera coordinates."""

    @abstractmethod
    def params(self) -> NDArrayFloat:
        pass

    @abstractmethod
    def set_params(self, params: Sequence[float]):
        pass

    @abstractmethod
    def set_params_from_P(self, P: Matrix34):
        pass

    @abstractmethod
    def cost_function(self, key_idx: int) -> AutoDiffCostFunction:
        pass

    @abstractmethod
    def constraints_cost_function(self) -> AutoDiffCostFunction:
        pass


class StandardCamera(Camera):
    """Calibrated pinhole camera with a single focal length.

    Parameters: rotation (axis * angle), center C, focal length f -> [rx, ry, rz, Cx, Cy, Cz, f].
    The principal point x0 is fixed to the image center.
    """

    N_PARAMS = 7
    ROT_IDX = 0
    C_IDX = 3
    F_IDX = 6

    reprojection_functor = ReprojectionErrorFunctor

    def __init__(self, img_filename: str | Path, width: int | None = None, height: int | None = None):
        super().__init__(img_filename, width, height)
        self._rot = AngleAxis()
        self._C = np.zeros(3)
        self._f = 0.0
        # assume the image center to be the principal point
        self._x0 = np.array([0.5 * (self.img_width - 1), 0.5 * (self.img_height - 1)])

        self._params_constraints = np.zeros(self.N_PARAMS)
        self._params_constraints_weights = np.zeros(self.N_PARAMS)

    @property
    def n_params(self) -> int:
        return self.N_PARAMS

    @property
    def f(self) -> float:
        return self._f

    @property
    def x0(self) -> NDArrayFloat:
        return self._x0

    @property
    def C(self) -> NDArrayFloat:
        return self._C

    @property
    def rot(self) -> AngleAxis:
        return self._rot

    @property
    def R(self) -> NDArrayFloat:
        return self._rot.matrix()

    @property
    def K(self) -> NDArrayFloat:
        K = np.eye(3)
        K[0, 0] = K[1, 1] = self._f
        K[:2, 2] = self._x0
        return K

    @property
    def pose(self) -> NDArrayFloat:
        """[R | -R C]: world -> camera coordinates."""
        return self.R @ np.hstack([np.eye(3), -self._C[:, None]])

    @property
    def P(self) -> NDArrayFloat:
        return self.K @ self.pose

    def set_focal(self, f: float):
        self._f = float(f)

    def set_rotation(self, R: NDArrayFloat):
        self._rot = AngleAxis.from_rotation_matrix(R)

    def set_C(self, C: Sequence[float]):
        self._C = np.asarray(C, dtype=np.float64).reshape(3).copy()

    def project(self, pt: Point3D) -> NDArrayFloat:
        pt_cam = self.R @ (np.asarray(pt, dtype=np.float64) - self._C)
        return self._f * pt_cam[:2] / pt_cam[2] + self._x0

    def key_normalized(self, i: int) -> NDArrayFloat:
        return (self.key(i) - self._x0) / self._f

    def params(self) -> NDArrayFloat:
        params = np.zeros(self.N_PARAMS)
        params[self.ROT_IDX : self.ROT_IDX + 3] = self._rot.vector()
        params[self.C_IDX : self.C_IDX + 3] = self._C
        params[self.F_IDX] = self._f
        return params

    def set_params(self, params: Sequence[float]):
        params = np.asarray(params, dtype=np.float64)
        if params.shape != (self.N_PARAMS,):
            raise ValueError(f"{type(self).__name__} expects {self.N_PARAMS} parameters, got shape {params.shape}")
        self._rot = AngleAxis.from_vector(params[self.ROT_IDX : self.ROT_IDX + 3])
        self._C = params[self.C_IDX : self.C_IDX + 3].copy()
        self._f = float(params[self.F_IDX])

    def set_params_from_P(self, P: Matrix34):
        K, R, C = p2krc(P)
        self.set_focal(0.5 * (K[0, 0] + K[1, 1]))
        self._C = C
        self._rot = AngleAxis.from_rotation_matrix(R)

    # --- priors ---

    @property
    def params_constraints(self) -> NDArrayFloat:
        return self._params_constraints

    @property
    def params_constraints_weights(self) -> NDArrayFloat:
        return self._params_constraints_weights

    def constrain_focal(self, constraint: float, weight: float):
        self._params_constraints[self.F_IDX] = constraint
        self._params_constraints_weights[self.F_IDX] = weight

    def set_params_constraints(self, constraints: Sequence[float], weights: Sequence[float]):
        constraints = np.asarray(constraints, dtype=np.float64)
        weights = np.asarray(weights, dtype=np.float64)
        if constraints.shape != (self.N_PARAMS,) or weights.shape != (self.N_PARAMS,):
            raise ValueError(f"Expected {self.N_PARAMS} constraints and weights")
        self._params_constraints[:] = constraints
        self._params_constraints_weights[:] = weights

    # --- optimizer terms ---

    def cost_function(self, key_idx: int) -> AutoDiffCostFunction:
        """Reprojection error of keypoint `key_idx`; parameter blocks [camera params, 3D point]."""
        x, y = self.key(key_idx)
        functor = self.reprojection_functor(x, y, self._x0)
        return AutoDiffCostFunction(functor, 2, [self.N_PARAMS, 3])

    def constraints_cost_function(self) -> AutoDiffCostFunction:
        functor = ParamsConstraintsFunctor(self._params_constraints, self._params_constraints_weights)
        return AutoDiffCostFunction(functor, self.N_PARAMS, [self.N_PARAMS])


class StandardCameraRadial(StandardCamera):
    """Pinhole camera with two-parameter radial distortion.

    Parameters: [rx, ry, rz, Cx, Cy, Cz, f, k1, k2]. The distortion factor 1 + r^2 (k1 + r^2 k2)
    scales normalized image coordinates. Observed keypoints are undistorted by an approximate
    inverse polynomial in the distorted radius, refitted whenever k1, k2 change.
    """

    N_PARAMS = 9
    RAD_IDX = 7
    N_INV_RAD_PARAMS = 4

    reprojection_functor = RadialReprojectionErrorFunctor

    def __init__(self, img_filename: str | Path, width: int | None = None, height: int | None = None):
        super().__init__(img_filename, width, height)
        self._rad_params = np.zeros(2)
        self._inv_rad_params = np.zeros(self.N_INV_RAD_PARAMS)

    @property
    def rad_params(self) -> NDArrayFloat:
        return self._rad_params

    @property
    def inv_rad_params(self) -> NDArrayFloat:
        return self._inv_rad_params

    def constrain_radial(self, constraints: Sequence[float], weights: Sequence[float]):
        self._params_constraints[self.RAD_IDX : self.RAD_IDX + 2] = constraints
        self._params_constraints_weights[self.RAD_IDX : self.RAD_IDX + 2] = weights

    def project(self, pt: Point3D) -> NDArrayFloat:
        pt_cam = self.R @ (np.asarray(pt, dtype=np.float64) - self._C)
        pt_cam = pt_cam[:2] / pt_cam[2]
        r2 = pt_cam @ pt_cam
        distortion = 1.0 + r2 * (self._rad_params[0] + r2 * self._rad_params[1])
        return self._f * distortion * pt_cam + self._x0

    def key_normalized(self, i: int) -> NDArrayFloat:
        distorted = super().key_normalized(i)
        radius = np.linalg.norm(distorted)
        c = self._inv_rad_params
        undistort_factor = 1.0 + radius * (c[0] + radius * (c[1] + radius * (c[2] + radius * c[3])))
        return undistort_factor * distorted

    def params(self) -> NDArrayFloat:
        params = super().params()
        params[self.RAD_IDX : self.RAD_IDX + 2] = self._rad_params
        return params

    def set_params(self, params: Sequence[float]):
        super().set_params(params)
        self._rad_params = np.asarray(params, dtype=np.float64)[self.RAD_IDX : self.RAD_IDX + 2].copy()
        self._update_inv_rad_params()

    def set_params_from_P(self, P: Matrix34):
        super().set_params_from_P(P)
        self._rad_params = np.zeros(2)
        self._inv_rad_params = np.zeros(self.N_INV_RAD_PARAMS)

    def _max_radius(self) -> float:
        """Distance from the principal point to the farthest image corner, in normalized coordinates."""
        x_max = self.img_width - self._x0[0]
        y_max = self.img_height - self._x0[1]
        radius = float(np.hypot(x_max, y_max))
        return radius / abs(self._f) if self._f else radius

    def _update_inv_rad_params(self):
        forward = [0.0, self._rad_params[0], 0.0, self._rad_params[1]]
        self._inv_rad_params = approximate_inverse_radial_distortion(
            forward, self.N_INV_RAD_PARAMS, self._max_radius()
        )
