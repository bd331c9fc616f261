"""
Perceptual comparison hook.

The traversal only needs a count of pixels that fail a perceptual test.
LuminanceComparator is the default provider: it blurs Rec. 709 luminance
slightly and fails a pixel when the local difference exceeds a Weber
fraction of the local adaptation luminance. Any object with a
compare(a, b) -> int method can be used instead.
"""

import logging
import numpy as np
from scipy import ndimage

from .core import PixelBuffer, DeepDataError

logger = logging.getLogger(__name__)

REC709_WEIGHTS = np.array([0.2126, 0.7152, 0.0722], dtype=np.float64)

class LuminanceComparator:
    """Counts pixels whose blurred luminance difference is noticeable"""

    def __init__(self, weber_fraction: float = 0.02, sigma: float = 1.0, floor: float = 0.05):
        self.weber_fraction = weber_fraction
        self.sigma = sigma
        self.floor = floor

    @staticmethod
    def luminance(buffer: PixelBuffer) -> np.ndarray:
        """(depth, height, width) luminance; non-finite samples count as 0"""
        pixels = np.nan_to_num(buffer.pixels.astype(np.float64), nan=0.0, posinf=0.0, neginf=0.0)
        if buffer.shape.nchannels >= 3:
            return pixels[..., :3] @ REC709_WEIGHTS
        if buffer.shape.nchannels == 0:
            return np.zeros(pixels.shape[:3])
        return pixels[..., 0]

    def compare(self, a: PixelBuffer, b: PixelBuffer) -> int:
        if a.deep or b.deep:
            raise DeepDataError("Perceptual comparison needs dense images")
        lum_a = self.luminance(a)
        lum_b = self.luminance(b)
        if self.sigma > 0 and lum_a.size:
            # blur within each slice only
            lum_a = ndimage.gaussian_filter(lum_a, sigma=(0, self.sigma, self.sigma), mode='nearest')
            lum_b = ndimage.gaussian_filter(lum_b, sigma=(0, self.sigma, self.sigma), mode='nearest')
        adaptation = np.maximum(0.5 * (np.abs(lum_a) + np.abs(lum_b)), self.floor)
        failed = np.abs(lum_a - lum_b) > self.weber_fraction * adaptation
        count = int(np.count_nonzero(failed))
        logger.debug(f"Perceptual test: {count} of {failed.size} pixels failed")
        return count
