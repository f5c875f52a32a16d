"""Configuration for SIFT feature detection."""

from dataclasses import dataclass, fields
from typing import TextIO

UNSET = -1


@dataclass
class OptionsSIFT:
    """Options for SIFT feature detection.

    Numeric options set to -1 are unset and left to the detector defaults.
    Command-line overrides: see `sfm.py detect --help`
    """

    max_working_dimension: int = UNSET
    """Maximum image dimension used for detection (larger images are downscaled)"""

    first_octave: int = -1
    """Index of the first octave (-1 = upsample the input once)"""

    max_octaves: int = UNSET
    """Maximum number of octaves (-1 = automatic)"""

    dog_levels_in_an_octave: int = UNSET
    """Number of DoG levels per octave"""

    dog_thresh: float = UNSET
    """DoG (contrast) threshold"""

    edge_thresh: float = UNSET
    """Edge threshold"""

    detect_upright_sift: bool = False
    """Detect a single, fixed orientation per feature"""

    verbosity_level: int = 2
    """Detector verbosity (0 = silent)"""

    device: str | None = None
    """Torch device for GPU detection; None picks CUDA/MPS when available"""

    def is_set_max_working_dimension(self) -> bool:
        return self.max_working_dimension >= 0

    def is_set_max_octaves(self) -> bool:
        return self.max_octaves >= 0

    def is_set_dog_levels_in_an_octave(self) -> bool:
        return self.dog_levels_in_an_octave >= 0

    def is_set_dog_thresh(self) -> bool:
        return self.dog_thresh >= 0

    def is_set_edge_thresh(self) -> bool:
        return self.edge_thresh >= 0

    def write(self, file: TextIO):
        """Write a human-readable report, one option per line."""
        for field in fields(self):
            file.write(f" {field.name}: {getattr(self, field.name)}\n")
