import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Sequence

import cv2 as cv
import kornia as K
import kornia.feature as KF
import numpy as np
import torch

from cameras import Camera
from config import OptionsSIFT
from utils import NDArrayFloat

logger = logging.getLogger(__name__)

device = K.core.utils.get_cuda_or_mps_device_if_available()

DESCRIPTOR_DIM = 128

ProgressCallback = Callable[[Any, int], None]


class SiftContext(ABC):
    """Scoped SIFT detector: configure -> create_context -> allocate_pyramid -> run/features -> release.

    Use as a context manager to guarantee `release`. Keypoints are reported in the coordinates
    of the original image as (N, 4) rows of (x, y, scale, orientation [rad]).
    """

    # options the backend cannot honour; a non-default value is logged and otherwise ignored
    UNSUPPORTED_OPTIONS: tuple[str, ...] = ()

    def __init__(self):
        self.opt = OptionsSIFT()
        self._keys = np.zeros((0, 4))
        self._descr = np.zeros((0, DESCRIPTOR_DIM), dtype=np.float32)

    def __enter__(self) -> "SiftContext":
        return self

    def __exit__(self, *exc_info):
        self.release()

    def configure(self, opt: OptionsSIFT):
        self.opt = opt
        defaults = OptionsSIFT()
        for name in self.UNSUPPORTED_OPTIONS:
            value = getattr(opt, name)
            if value != getattr(defaults, name):
                logger.debug(f"{type(self).__name__} ignores option {name}={value}")

    def create_context(self) -> bool:
        return True

    def allocate_pyramid(self, width: int, height: int):
        """Size the context for images up to width x height; backends allocate lazily."""
        logger.debug(f"{type(self).__name__} sized for images up to {width}x{height}")

    def release(self):
        self._keys = np.zeros((0, 4))
        self._descr = np.zeros((0, DESCRIPTOR_DIM), dtype=np.float32)

    def _working_scale(self, img_hw: tuple[int, int]) -> float:
        """Downscaling factor so that the image fits the max working dimension."""
        if not self.opt.is_set_max_working_dimension():
            return 1.0
        return min(1.0, self.opt.max_working_dimension / max(img_hw))

    @abstractmethod
    def _detect(self, gray: np.ndarray) -> tuple[NDArrayFloat, NDArrayFloat]:
        """Keypoints (N, 4) and descriptors (N, D) of a grayscale image."""

    def run(self, img_filename: str | Path) -> bool:
        gray = cv.imread(str(img_filename), cv.IMREAD_GRAYSCALE)
        if gray is None:
            logger.error(f"Could not read image {img_filename}")
            return False

        scale = self._working_scale(gray.shape[:2])
        if scale < 1.0:
            # AREA interpolation friendlier to feature extraction
            gray = cv.resize(gray, dsize=None, fx=scale, fy=scale, interpolation=cv.INTER_AREA)

        try:
            keys, descr = self._detect(gray)
        except (cv.error, RuntimeError) as e:
            logger.error(f"SIFT detection failed on {img_filename}: {e}")
            return False

        keys[:, :3] /= scale  # x, y, scale back to the original resolution
        self._keys, self._descr = keys, descr
        return True

    def features(self) -> tuple[NDArrayFloat, NDArrayFloat]:
        return self._keys, self._descr


class KorniaSiftContext(SiftContext):
    """SIFT on the GPU (CUDA/MPS) when available, via kornia."""

    UNSUPPORTED_OPTIONS = ("first_octave", "max_octaves", "dog_levels_in_an_octave", "dog_thresh", "edge_thresh")

    def __init__(self, num_features: int = 8000):
        super().__init__()
        self.num_features = num_features
        self._device: torch.device | None = None
        self._sift: KF.SIFTFeature | None = None

    def create_context(self) -> bool:
        dev = torch.device(self.opt.device) if self.opt.device else device
        if dev.type == "cuda" and not torch.cuda.is_available():
            logger.error(f"Could not create SIFT context: device {dev} is not available.")
            return False
        self._device = dev
        self._sift = KF.SIFTFeature(
            num_features=self.num_features, upright=self.opt.detect_upright_sift, rootsift=False, device=dev
        ).eval()
        return True

    def release(self):
        super().release()
        self._sift = None
        if self._device is not None and self._device.type == "cuda":
            torch.cuda.empty_cache()

    def _detect(self, gray: np.ndarray) -> tuple[NDArrayFloat, NDArrayFloat]:
        img = torch.from_numpy(gray).to(self._device, torch.float32)[None, None] / 255.0  # (1, 1, H, W)
        with torch.inference_mode():
            lafs, _, descs = self._sift(img)

        xy = KF.get_laf_center(lafs)[0].cpu().numpy()  # (N, 2)
        scale = KF.get_laf_scale(lafs)[0].reshape(-1).cpu().numpy()  # (N,)
        ori = KF.get_laf_orientation(lafs)[0].reshape(-1).cpu().numpy()  # degrees
        keys = np.column_stack([xy, scale, np.deg2rad(ori)]).astype(np.float64)
        return keys, descs[0].cpu().numpy().astype(np.float32)


def _upright(kps: Sequence[cv.KeyPoint]) -> list[cv.KeyPoint]:
    """One keypoint per location, orientation fixed to 0."""
    seen = set()
    upright = []
    for kp in kps:
        loc = (kp.pt, kp.size)
        if loc in seen:
            continue
        seen.add(loc)
        upright.append(cv.KeyPoint(kp.pt[0], kp.pt[1], kp.size, 0.0, kp.response, kp.octave, kp.class_id))
    return upright


class OpenCVSiftContext(SiftContext):
    """SIFT on the CPU via OpenCV."""

    UNSUPPORTED_OPTIONS = ("first_octave", "max_octaves")

    def __init__(self, num_features: int = 0):
        super().__init__()
        self.num_features = num_features
        self._sift = None

    def create_context(self) -> bool:
        kwargs: dict[str, Any] = {"nfeatures": self.num_features}
        if self.opt.is_set_dog_levels_in_an_octave():
            kwargs["nOctaveLayers"] = self.opt.dog_levels_in_an_octave
        if self.opt.is_set_dog_thresh():
            kwargs["contrastThreshold"] = self.opt.dog_thresh
        if self.opt.is_set_edge_thresh():
            kwargs["edgeThreshold"] = self.opt.edge_thresh
        try:
            self._sift = cv.SIFT_create(**kwargs)  # ty:ignore[unresolved-attribute]
        except cv.error as e:
            logger.error(f"Could not create SIFT context: {e}")
            return False
        return True

    def release(self):
        super().release()
        self._sift = None

    def _detect(self, gray: np.ndarray) -> tuple[NDArrayFloat, NDArrayFloat]:
        if self.opt.detect_upright_sift:
            kps = _upright(self._sift.detect(gray, None))
            kps, des = self._sift.compute(gray, kps)
        else:
            kps, des = self._sift.detectAndCompute(gray, None)

        if des is None:
            des = np.zeros((0, DESCRIPTOR_DIM), dtype=np.float32)
        keys = np.array([(kp.pt[0], kp.pt[1], kp.size, np.deg2rad(kp.angle)) for kp in kps], dtype=np.float64)
        return keys.reshape(-1, 4), des.astype(np.float32)


def _initialize_sift(opt: OptionsSIFT, max_width: int, max_height: int, sift: SiftContext) -> bool:
    sift.configure(opt)
    if not sift.create_context():
        logger.error(f"Could not create {type(sift).__name__} context.")
        return False
    sift.allocate_pyramid(max_width, max_height)
    return True


def _detect_sift(sift: SiftContext, cam: Camera) -> bool:
    if not sift.run(cam.img_filename):
        cam.set_features(np.zeros((0, 4)), np.zeros((0, DESCRIPTOR_DIM), dtype=np.float32))
        return False
    keys, descr = sift.features()
    cam.set_features(keys, descr)
    return True


def detect_sift(
    opt: OptionsSIFT,
    cams: Sequence[Camera],
    callback: ProgressCallback | None = None,
    callback_obj: Any = None,
    context_factory: Callable[[], SiftContext] = KorniaSiftContext,
) -> int:
    """Detect SIFT features in all cameras using one detection context.

    A camera whose detection fails is left without features. `callback(callback_obj, done)` is
    called after every camera, with `done` counting from 0. If the context cannot be created,
    no camera is processed.

    Returns:
        Number of cameras with successfully detected features.
    """
    if not cams:
        return 0
    max_width = max(cam.img_width for cam in cams)
    max_height = max(cam.img_height for cam in cams)

    with context_factory() as sift:
        if not _initialize_sift(opt, max_width, max_height, sift):
            return 0

        log_camera = logger.info if opt.verbosity_level > 1 else logger.debug
        n_detected = 0
        for done, cam in enumerate(cams):
            if _detect_sift(sift, cam):
                n_detected += 1
                log_camera(f"{cam.img_filename}: {cam.num_keys} keypoints")
            else:
                logger.warning(f"No features detected for {cam.img_filename}")
            if callback is not None:
                callback(callback_obj, done)

    logger.info(f"Detected SIFT features in {n_detected}/{len(cams)} images")
    return n_detected


def detect_sift_single(
    opt: OptionsSIFT,
    cam: Camera,
    context_factory: Callable[[], SiftContext] = KorniaSiftContext,
) -> bool:
    """Detect SIFT features in a single camera with its own detection context."""
    with context_factory() as sift:
        if not _initialize_sift(opt, cam.img_width, cam.img_height, sift):
            return False
        return _detect_sift(sift, cam)
