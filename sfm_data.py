import copy
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

import numpy as np

from cameras import Camera, StandardCameraRadial
from utils import NDArrayFloat, NDArrayInt, Point3D, filter_out_outliers, filter_vector

logger = logging.getLogger(__name__)

NViewMatch = dict[int, int]  # cam_idx -> kp_idx; observations of one physical feature


@dataclass
class SplitNViewMatch:
    """Track split into cameras already used for the point and cameras still to be used."""

    observed_part: NViewMatch = field(default_factory=dict)
    unobserved_part: NViewMatch = field(default_factory=dict)


@dataclass
class PointData:
    reconstructed: NViewMatch = field(default_factory=dict)
    to_reconstruct: NViewMatch = field(default_factory=dict)


@dataclass
class CameraPair:
    """Pairwise matches between two cameras. Filled and consumed by the matching stage."""

    matches: NDArrayInt = field(default_factory=lambda: np.zeros((0, 2), dtype=int))  # (M, 2) kp indices
    dists: NDArrayFloat = field(default_factory=lambda: np.zeros(0))  # (M,)
    F: NDArrayFloat | None = None  # fundamental matrix

    @property
    def size(self) -> int:
        return len(self.matches)


def _as_point(xyz) -> Point3D:
    return np.array(xyz, dtype=np.float64).reshape(3)


class Points:
    """Reconstructed 3D points and the tracks still waiting to be triangulated.

    For every point, observing cameras are split into `reconstructed` (observation already used
    to compute the point) and `to_reconstruct` (known observation, not used yet). The two are
    disjoint at all times.
    """

    def __init__(self):
        self.matches_to_reconstruct: list[NViewMatch] = []
        self.pt_coord: list[Point3D] = []  # one array per point; refined in place by the optimizer
        self.pt_data: list[PointData] = []

    @property
    def num_pts(self) -> int:
        return len(self.pt_coord)

    def pt_coord_of(self, pt_idx: int) -> Point3D:
        return self.pt_coord[pt_idx]

    def add_points(
        self,
        cams_idxs: tuple[int, int],
        matches_to_reconstruct_idxs: Sequence[int],
        coord: Sequence[Point3D] | NDArrayFloat,
    ):
        """Add points triangulated from two cameras and drop their tracks from `matches_to_reconstruct`.

        coord[i] is the point of track matches_to_reconstruct[matches_to_reconstruct_idxs[i]].
        """
        cam0, cam1 = cams_idxs
        if len(matches_to_reconstruct_idxs) != len(coord):
            raise ValueError(f"Got {len(matches_to_reconstruct_idxs)} tracks but {len(coord)} points")

        tracks = []
        for match_idx in matches_to_reconstruct_idxs:
            if not 0 <= match_idx < len(self.matches_to_reconstruct):
                raise IndexError(f"Track {match_idx} out of range ({len(self.matches_to_reconstruct)} tracks)")
            track = self.matches_to_reconstruct[match_idx]
            if cam0 not in track or cam1 not in track:
                raise ValueError(f"Track {match_idx} is not observed by both cameras {cam0} and {cam1}")
            tracks.append(track)

        for xyz, track in zip(coord, tracks):
            reconstructed = {cam0: track[cam0], cam1: track[cam1]}
            to_reconstruct = {cam_idx: kp_idx for cam_idx, kp_idx in track.items() if cam_idx not in reconstructed}
            self.pt_coord.append(_as_point(xyz))
            self.pt_data.append(PointData(reconstructed, to_reconstruct))

        self.matches_to_reconstruct = filter_out_outliers(matches_to_reconstruct_idxs, self.matches_to_reconstruct)

    def add_points_split(self, point_coord: Sequence[Point3D] | NDArrayFloat, point_views: Sequence[SplitNViewMatch]):
        """Add points whose observed/unobserved camera split was computed elsewhere."""
        if len(point_coord) != len(point_views):
            raise ValueError(f"Got {len(point_coord)} points but {len(point_views)} views")
        for xyz, views in zip(point_coord, point_views):
            self.pt_coord.append(_as_point(xyz))
            self.pt_data.append(PointData(dict(views.observed_part), dict(views.unobserved_part)))

    def remove_points(self, keep: Sequence[bool]):
        self.pt_coord = filter_vector(keep, self.pt_coord)
        self.pt_data = filter_vector(keep, self.pt_data)

    def mark_cam_as_reconstructed(
        self,
        cam_idx: int,
        corresponding_points: Sequence[int] | None = None,
        corresponding_points_inliers: Sequence[int] | None = None,
    ):
        """Promote observations of a newly registered camera from `to_reconstruct` to `reconstructed`.

        Without `corresponding_points`, every point waiting for `cam_idx` is promoted.
        Otherwise only corresponding_points[i] for i in corresponding_points_inliers are promoted,
        and `cam_idx` is removed from `to_reconstruct` of all corresponding points, so that
        outlier observations are discarded for good.
        """
        if corresponding_points is None:
            for entry in self.pt_data:
                if cam_idx in entry.to_reconstruct:
                    entry.reconstructed[cam_idx] = entry.to_reconstruct.pop(cam_idx)
            return

        if corresponding_points_inliers is None:
            raise ValueError("corresponding_points_inliers must be given together with corresponding_points")

        for pt_idx in corresponding_points:
            if not 0 <= pt_idx < self.num_pts:
                raise IndexError(f"Point {pt_idx} out of range ({self.num_pts} points)")
        for inlier_idx in corresponding_points_inliers:
            if not 0 <= inlier_idx < len(corresponding_points):
                raise IndexError(f"Inlier {inlier_idx} out of range ({len(corresponding_points)} corresponding points)")

        inlier_pts = [corresponding_points[inlier_idx] for inlier_idx in corresponding_points_inliers]
        for pt_idx in inlier_pts:
            if cam_idx not in self.pt_data[pt_idx].to_reconstruct:
                raise KeyError(f"Point {pt_idx} has no pending observation in camera {cam_idx}")

        for pt_idx in inlier_pts:
            entry = self.pt_data[pt_idx]
            entry.reconstructed[cam_idx] = entry.to_reconstruct[cam_idx]
        for pt_idx in corresponding_points:
            self.pt_data[pt_idx].to_reconstruct.pop(cam_idx, None)


class Dataset:
    """Cameras, their pairwise matches, and the state of the reconstruction."""

    def __init__(self, dir: str | Path):
        self.dir = Path(dir)
        self.cams: list[Camera] = []
        self.pairs: dict[tuple[int, int], CameraPair] = {}
        self.points = Points()
        self._reconstructed_cams: set[int] = set()

    def copy(self) -> "Dataset":
        """Deep copy; cameras are cloned keeping their models."""
        other = Dataset(self.dir)
        other.cams = [cam.clone() for cam in self.cams]
        other.pairs = copy.deepcopy(self.pairs)
        other.points = copy.deepcopy(self.points)
        other._reconstructed_cams = set(self._reconstructed_cams)
        return other

    def __deepcopy__(self, memo) -> "Dataset":
        return self.copy()

    @property
    def num_cams(self) -> int:
        return len(self.cams)

    def cam(self, idx: int) -> Camera:
        return self.cams[idx]

    def add_camera(self, cam: Camera) -> int:
        self.cams.append(cam)
        return len(self.cams) - 1

    def add_cameras_from_dir(self, ext: str = "jpg", camera_cls: type[Camera] = StandardCameraRadial) -> int:
        """Add one camera per image in `dir`, in sorted filename order."""
        img_paths = sorted(self.dir.glob(f"*.{ext}"))
        if not img_paths:
            raise ValueError(f"No *.{ext} images found in {self.dir}")
        for img_path in img_paths:
            self.add_camera(camera_cls(img_path))
        logger.info(f"Added {len(img_paths)} cameras from {self.dir}")
        return len(img_paths)

    @property
    def reconstructed_cams(self) -> frozenset[int]:
        return frozenset(self._reconstructed_cams)

    def clear_descriptors(self):
        """Release descriptors of all cameras once matching is done."""
        for cam in self.cams:
            cam.clear_descriptors()

    def mark_cam_as_reconstructed(
        self,
        cam_idx: int,
        corresponding_points: Sequence[int] | None = None,
        corresponding_points_inliers: Sequence[int] | None = None,
    ):
        """Register camera `cam_idx` as part of the reconstruction. See `Points.mark_cam_as_reconstructed`."""
        self.points.mark_cam_as_reconstructed(cam_idx, corresponding_points, corresponding_points_inliers)
        self._reconstructed_cams.add(cam_idx)
