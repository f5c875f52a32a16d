from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Any, Iterable, Literal, Sequence, TypeVar

import cv2 as cv
import numpy as np
from numpy.typing import NDArray
from PIL import Image

NDArrayFloat = NDArray[np.floating[Any]]
NDArrayInt = NDArray[np.integer[Any]]
Point3D = Annotated[NDArrayFloat, Literal[3]]
Matrix34 = Annotated[NDArrayFloat, Literal[3, 4]]

T = TypeVar("T")

UNIT_X = np.array([1.0, 0.0, 0.0])


def image_dims(img_path: str | Path) -> tuple[int, int]:
    """Return (width, height) of an image without decoding its pixels."""
    with Image.open(img_path) as img:
        return img.size


@dataclass(eq=False)
class AngleAxis:
    """Rotation as an angle [rad] about a unit axis."""

    angle: float = 0.0
    axis: NDArrayFloat = field(default_factory=lambda: UNIT_X.copy())

    @classmethod
    def from_vector(cls, rvec: NDArrayFloat) -> "AngleAxis":
        """Minimal (axis * angle) representation -> AngleAxis.

        Zero vector maps to the identity rotation about the X axis.
        """
        rvec = np.asarray(rvec, dtype=np.float64).reshape(3)
        angle = float(np.linalg.norm(rvec))
        if angle == 0.0:
            return cls(0.0, UNIT_X.copy())
        return cls(angle, rvec / angle)

    @classmethod
    def from_rotation_matrix(cls, R: NDArrayFloat) -> "AngleAxis":
        rvec = cv.Rodrigues(np.asarray(R, dtype=np.float64))[0]
        return cls.from_vector(rvec)

    def vector(self) -> NDArrayFloat:
        return self.angle * self.axis

    def matrix(self) -> NDArrayFloat:
        return cv.Rodrigues(self.vector())[0]


def p2krc(P: Matrix34) -> tuple[NDArrayFloat, NDArrayFloat, NDArrayFloat]:
    """Decompose projection matrix P = K R [I | -C] into (K, R, C).

    K is normalized so that K[2, 2] = 1 and has a positive diagonal; R is a proper rotation.
    P may carry an arbitrary (also negative) scale.
    """
    P = np.asarray(P, dtype=np.float64)
    M = P[:, :3]
    _, K, R, *_ = cv.RQDecomp3x3(M)

    # RQ factorization is unique only up to the signs of the columns of K
    D = np.diag(np.sign(np.diag(K)))
    K = K @ D
    R = D @ R
    if np.linalg.det(R) < 0:  # negative scale of P
        K, R = -K, -R
    K = K / K[2, 2]

    C = -np.linalg.solve(M, P[:, 3])
    return K, R, C


def _smallest_positive_root(coeffs: NDArrayFloat) -> float | None:
    roots = np.roots(coeffs)
    real = roots[np.abs(roots.imag) < 1e-9].real
    positive = real[real > 0]
    return float(positive.min()) if positive.size else None


def approximate_inverse_radial_distortion(
    forward: Sequence[float],
    n_inverse: int,
    max_radius: float,
    n_samples: int = 100,
) -> NDArrayFloat:
    """Fit coefficients of an approximate inverse radial distortion.

    Forward model:  r_d = r_u * (1 + sum_i forward[i] * r_u^(i+1))
    Inverse model:  r_u = r_d * (1 + sum_j inverse[j] * r_d^(j+1))

    The inverse is fitted in the least-squares sense on samples whose distorted radius spans
    [0, max_radius]. Sampling stops early at the first turning point of the forward model,
    where the forward model stops being invertible.
    """
    forward = np.asarray(forward, dtype=np.float64)
    if not forward.any() or max_radius <= 0:
        return np.zeros(n_inverse)

    # r_d as a polynomial in r_u, highest degree first
    poly = np.concatenate([forward[::-1], [1.0, 0.0]])
    poly_at_max = poly.copy()
    poly_at_max[-1] -= max_radius

    limits = [r for r in (_smallest_positive_root(poly_at_max), _smallest_positive_root(np.polyder(poly))) if r]
    r_u_max = min(limits) if limits else max_radius

    r_u = np.linspace(0.0, r_u_max, n_samples + 1)[1:]
    r_d = np.polyval(poly, r_u)
    A = np.stack([r_d ** (j + 1) for j in range(n_inverse)], axis=1)
    b = r_u / r_d - 1.0
    inverse, *_ = np.linalg.lstsq(A, b, rcond=None)
    return inverse


def filter_vector(keep: Sequence[bool], items: Sequence[T]) -> list[T]:
    """Keep items where keep is True, preserving order."""
    if len(keep) != len(items):
        raise ValueError(f"Mask length {len(keep)} does not match number of items {len(items)}")
    return [item for item, k in zip(items, keep) if k]


def filter_out_outliers(outlier_idxs: Iterable[int], items: Sequence[T]) -> list[T]:
    """Remove items at the given indices, preserving order of the rest."""
    outliers = set(outlier_idxs)
    for idx in outliers:
        if not 0 <= idx < len(items):
            raise IndexError(f"Index {idx} out of range for {len(items)} items")
    return [item for i, item in enumerate(items) if i not in outliers]
