"""
Pairwise frame comparison.

Both strategies reduce two equally sized images to a per-pixel difference
mask (0 = same, 1 = differs) and a count of differing pixels, so callers
never need to know which strategy produced the result.
"""

from dataclasses import dataclass

import numpy as np
from PIL import Image
from scipy.ndimage import convolve
from skimage import color

from spam_errors import DimensionMismatchError

# Defaults
BINARY_PIXEL_TOLERANCE = 4  # per channel, 0-255
PERCEPTUAL_GAMMA = 2.2
PERCEPTUAL_LUMINANCE_WEIGHT = 1.0
PERCEPTUAL_CHROMA_WEIGHT = 1.0
PERCEPTUAL_COLOR_DISTANCE = 2.3  # roughly one just-noticeable difference in Lab

SRGB_GAMMA = 2.2

# 8-neighbourhood, centre excluded
_NEIGHBOURS = np.array([[1, 1, 1],
                        [1, 0, 1],
                        [1, 1, 1]], dtype=np.uint8)


@dataclass
class DiffResult:
    mask: np.ndarray
    differing: int
    total: int

    @property
    def percentage(self) -> float:
        """Share of differing pixels, 0-100."""
        if self.total == 0:
            return 0.0
        return 100.0 * self.differing / self.total


def premultiplied_rgba(image: Image.Image) -> np.ndarray:
    """
    RGBA array with colour scaled by alpha, so fully transparent pixels
    compare equal whatever colour they carry. Opaque images are unchanged.
    """
    if image.mode != 'RGBA':
        image = image.convert('RGBA')
    arr = np.asarray(image, dtype=np.int32)
    alpha = arr[:, :, 3:4]
    rgb = (arr[:, :, :3] * alpha + 127) // 255
    return np.concatenate([rgb, alpha], axis=2).astype(np.int16)


class Differ:
    """Compare(imageA, imageB) -> DiffResult."""

    name = "base"

    def compare(self, image_a: Image.Image, image_b: Image.Image) -> DiffResult:
        if image_a.size != image_b.size:
            raise DimensionMismatchError(image_a.size, image_b.size)

        mask = self.difference_mask(image_a, image_b)
        width, height = image_a.size
        return DiffResult(
            mask=mask.astype(np.uint8),
            differing=int(np.count_nonzero(mask)),
            total=width * height,
        )

    def difference_mask(self, image_a: Image.Image, image_b: Image.Image) -> np.ndarray:
        """Boolean (height, width) array, True where the pixels differ."""
        raise NotImplementedError


class BinaryDiffer(Differ):
    """
    Exact pixel match in the image's own colour representation.

    A pixel differs when any channel differs by more than `tolerance`.
    Decoded video is lossy, so a little slack (a few levels per channel)
    keeps codec rounding from counting as change.
    """

    name = "binary"

    def __init__(self, tolerance: int = BINARY_PIXEL_TOLERANCE):
        self.tolerance = tolerance

    def difference_mask(self, image_a, image_b):
        a = premultiplied_rgba(image_a)
        b = premultiplied_rgba(image_b)
        return np.abs(a - b).max(axis=2) > self.tolerance


class PerceptualDiffer(Differ):
    """
    Colour distance in CIE L*a*b*.

    Args:
        gamma: Display gamma the frames are interpreted with. 2.2 keeps the
            sRGB curve; other values re-shape the tones before conversion.
        luminance_weight: Weight of the L* difference.
        chroma_weight: Weight of the a*/b* differences.
        color_distance: Pixels further apart than this differ.
        anti_alias: Drop differing pixels whose 8 neighbours all agree,
            which is what sub-pixel text rendering tends to produce. Frames
            narrower or shorter than 3 pixels have no full neighbourhood
            and skip this pass.
    """

    name = "perceptual"

    def __init__(
        self,
        gamma: float = PERCEPTUAL_GAMMA,
        luminance_weight: float = PERCEPTUAL_LUMINANCE_WEIGHT,
        chroma_weight: float = PERCEPTUAL_CHROMA_WEIGHT,
        color_distance: float = PERCEPTUAL_COLOR_DISTANCE,
        anti_alias: bool = True,
    ):
        self.gamma = gamma
        self.luminance_weight = luminance_weight
        self.chroma_weight = chroma_weight
        self.color_distance = color_distance
        self.anti_alias = anti_alias

    def to_lab(self, image: Image.Image) -> np.ndarray:
        rgba = premultiplied_rgba(image)
        rgb = rgba[:, :, :3].astype(np.float64) / 255.0
        if self.gamma != SRGB_GAMMA:
            rgb = np.power(rgb, self.gamma / SRGB_GAMMA)
        return color.rgb2lab(rgb)

    def distance(self, image_a: Image.Image, image_b: Image.Image) -> np.ndarray:
        """Weighted per-pixel Lab distance."""
        delta = self.to_lab(image_a) - self.to_lab(image_b)
        d_l = self.luminance_weight * delta[:, :, 0]
        d_a = self.chroma_weight * delta[:, :, 1]
        d_b = self.chroma_weight * delta[:, :, 2]
        return np.sqrt(d_l * d_l + d_a * d_a + d_b * d_b)

    def difference_mask(self, image_a, image_b):
        mask = self.distance(image_a, image_b) > self.color_distance
        if self.anti_alias and min(mask.shape) >= 3 and mask.any():
            neighbours = convolve(mask.astype(np.uint8), _NEIGHBOURS, mode='constant', cval=0)
            mask &= neighbours > 0
        return mask
