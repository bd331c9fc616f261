"""
pixdiff core - numeric image comparison engine
Compares two float pixel buffers sample by sample, scores the difference and
classifies it against error thresholds.

Contents:
- ImageShape / PixelBuffer: read-only float views addressed (z, y, x, channel).
- ThresholdConfig: immutable per-run thresholds, loadable from JSON.
- compare_buffers: mean / RMS / PSNR / max error and warn/fail pixel counts.
- classify / fold_verdict: threshold rules and cross-level aggregation.
- build_diff_image: scaled signed or absolute difference image.
"""

import json
import logging
import math
from dataclasses import dataclass, asdict, field, fields, replace
from enum import IntEnum
from typing import Dict, Optional, Sequence, Tuple, Any
import numpy as np

logger = logging.getLogger(__name__)

# Constants
DEFAULT_FAIL_THRESH = 1.0e-6
DEFAULT_WARN_THRESH = 1.0e-6
DEFAULT_HARD_LIMIT = float(np.finfo(np.float32).max)
DEFAULT_PEAK = 1.0
NAN_POLICIES = ("match", "strict")
VERSION = "1.0.0"

class PixDiffError(Exception):
    """Base class for pixdiff errors"""
    pass

class ConfigError(PixDiffError):
    """Configuration related errors"""
    pass

class ImageReadError(PixDiffError):
    """An input image could not be opened or read"""
    pass

class DeepDataError(PixDiffError):
    """Numeric operation requested on deep (variable sample count) data"""
    pass

class DiffWriteError(PixDiffError):
    """The difference image could not be written"""
    pass

class Verdict(IntEnum):
    """Comparison outcome. Values double as process exit codes, ordered by severity."""
    PASS = 0
    WARN = 1
    FAIL = 2
    SIZE_MISMATCH = 3
    IO_ERROR = 4

    @property
    def label(self) -> str:
        if self is Verdict.PASS:
            return "PASS"
        if self is Verdict.WARN:
            return "WARNING"
        return "FAILURE"

@dataclass(frozen=True)
class ImageShape:
    """Resolution and channel count of one subimage/MIP level"""
    width: int
    height: int
    depth: int = 1
    nchannels: int = 1

    def compatible(self, other: 'ImageShape') -> bool:
        return (self.width == other.width and self.height == other.height and
                self.depth == other.depth and self.nchannels == other.nchannels)

    @property
    def npixels(self) -> int:
        return self.width * self.height * max(self.depth, 1)

    def describe(self) -> str:
        """Compact form used in size mismatch messages, e.g. (640x480x3)"""
        dims = [str(self.width), str(self.height)]
        if self.depth > 1:
            dims.append(str(self.depth))
        dims.append(str(self.nchannels))
        return "(" + "x".join(dims) + ")"

def default_channel_names(nchannels: int) -> Tuple[str, ...]:
    """R, G, B, A for up to four channels, channel<N> beyond that"""
    if nchannels == 1:
        return ("Y",)
    if nchannels <= 4:
        return ("R", "G", "B", "A")[:nchannels]
    return tuple(f"channel{c}" for c in range(nchannels))

@dataclass(frozen=True)
class PixelBuffer:
    """
    Read-only float32 samples of one subimage/MIP level.

    `pixels` is laid out (depth, height, width, nchannels). Deep buffers only
    carry their shape; their samples are never compared numerically.
    """
    shape: ImageShape
    pixels: Optional[np.ndarray]
    channel_names: Tuple[str, ...] = ()
    deep: bool = False

    @classmethod
    def from_array(cls, array: Any, channel_names: Optional[Sequence[str]] = None) -> 'PixelBuffer':
        """Build a dense buffer from a 2D (HxW), 3D (HxWxC) or 4D (DxHxWxC) array"""
        data = np.array(array, dtype=np.float32)
        if data.ndim == 2:
            data = data[np.newaxis, :, :, np.newaxis]
        elif data.ndim == 3:
            data = data[np.newaxis]
        elif data.ndim != 4:
            raise ValueError(f"Expected a 2D, 3D or 4D pixel array, got {data.ndim} dimensions")
        data.setflags(write=False)
        depth, height, width, nchannels = data.shape
        shape = ImageShape(width=width, height=height, depth=depth, nchannels=nchannels)
        return cls(shape=shape, pixels=data, channel_names=_channel_names(channel_names, nchannels))

    @classmethod
    def deep_placeholder(cls, shape: ImageShape, channel_names: Optional[Sequence[str]] = None) -> 'PixelBuffer':
        """Shape-only stand-in for a deep image level"""
        return cls(shape=shape, pixels=None,
                   channel_names=_channel_names(channel_names, shape.nchannels), deep=True)

    def channel_name(self, channel: int) -> str:
        if channel < len(self.channel_names):
            return self.channel_names[channel]
        return f"channel{channel}"

def _channel_names(names: Optional[Sequence[str]], nchannels: int) -> Tuple[str, ...]:
    if names is None:
        return default_channel_names(nchannels)
    names = tuple(str(n) for n in names)
    if len(names) != nchannels:
        raise ValueError(f"{len(names)} channel names given for {nchannels} channels")
    return names

@dataclass(frozen=True)
class ThresholdConfig:
    """Thresholds for one comparison run"""
    fail_thresh: float = DEFAULT_FAIL_THRESH
    fail_percent: float = 0.0
    hard_fail: float = DEFAULT_HARD_LIMIT
    warn_thresh: float = DEFAULT_WARN_THRESH
    warn_percent: float = 0.0
    hard_warn: float = DEFAULT_HARD_LIMIT
    perceptual: bool = False
    nan_policy: str = "match"  # "match": NaN vs NaN is zero error; "strict": any NaN is infinite error
    peak: float = DEFAULT_PEAK  # peak signal value for PSNR

    def __post_init__(self):
        self.validate()

    def validate(self):
        for name in ("fail_thresh", "warn_thresh", "hard_fail", "hard_warn"):
            value = getattr(self, name)
            if math.isnan(value) or value < 0:
                raise ConfigError(f"{name} must be a non-negative number, got {value}")
        for name in ("fail_percent", "warn_percent"):
            value = getattr(self, name)
            if not 0.0 <= value <= 100.0:
                raise ConfigError(f"{name} must be between 0 and 100, got {value}")
        if self.nan_policy not in NAN_POLICIES:
            raise ConfigError(f"nan_policy must be one of {', '.join(NAN_POLICIES)}, got {self.nan_policy!r}")
        if not self.peak > 0:
            raise ConfigError(f"peak must be positive, got {self.peak}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ThresholdConfig':
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
        try:
            return cls(**data)
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    @classmethod
    def from_json(cls, path: str) -> 'ThresholdConfig':
        """Load configuration from JSON file"""
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Failed to load config from {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Failed to load config from {path}: expected a JSON object")
        return cls.from_dict(data)

    def to_json(self, path: str):
        """Save configuration to JSON file"""
        with open(path, 'w') as f:
            json.dump(asdict(self), f, indent=2)

    def with_overrides(self, **overrides) -> 'ThresholdConfig':
        """Copy with every non-None override applied"""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if not changes:
            return self
        return replace(self, **changes)

@dataclass(frozen=True)
class DiffOptions:
    """Difference image request"""
    path: Optional[str] = None
    absolute: bool = False
    scale: float = 1.0
    only_if_nonzero: bool = False

    @property
    def requested(self) -> bool:
        return bool(self.path)

@dataclass
class CompareResult:
    """Error statistics for one pair of equally shaped buffers"""
    mean_error: float = 0.0
    rms_error: float = 0.0
    psnr: float = math.inf
    max_error: float = 0.0
    max_x: int = 0
    max_y: int = 0
    max_z: int = 0
    max_channel: int = 0
    nwarn: int = 0
    nfail: int = 0
    npixels: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

def sample_errors(a: np.ndarray, b: np.ndarray, nan_policy: str = "match") -> np.ndarray:
    """
    Absolute per-sample error |a - b| as float64.

    Equal samples (including equal infinities) give zero. Anything that would
    produce NaN (a NaN input, inf - inf) gives +inf, except that NaN against
    NaN is zero under the "match" policy.
    """
    a64 = np.asarray(a, dtype=np.float64)
    b64 = np.asarray(b, dtype=np.float64)
    with np.errstate(invalid='ignore', over='ignore'):
        err = np.abs(a64 - b64)
    err[a64 == b64] = 0.0
    err[np.isnan(err)] = np.inf
    if nan_policy == "match":
        err[np.isnan(a64) & np.isnan(b64)] = 0.0
    return err

def psnr_from_rms(rms_error: float, peak: float = DEFAULT_PEAK) -> float:
    if rms_error == 0:
        return math.inf
    if math.isinf(rms_error):
        return -math.inf
    return 20.0 * math.log10(peak / rms_error)

def _check_pair(a: PixelBuffer, b: PixelBuffer):
    if a.deep or b.deep:
        raise DeepDataError("Deep images cannot be compared numerically")
    if not a.shape.compatible(b.shape):
        raise ValueError(f"Buffer shapes differ: {a.shape.describe()} versus {b.shape.describe()}")

def compare_buffers(a: PixelBuffer, b: PixelBuffer, config: Optional[ThresholdConfig] = None) -> CompareResult:
    """Compute error statistics over two dense buffers of identical shape"""
    config = config or ThresholdConfig()
    _check_pair(a, b)

    err = sample_errors(a.pixels, b.pixels, config.nan_policy)
    npixels = max(1, a.shape.npixels)
    nsamples = max(1, err.size)

    total = float(err.sum())
    total_sq = float(np.square(err).sum())
    result = CompareResult(npixels=npixels)
    result.mean_error = total / nsamples
    result.rms_error = math.sqrt(total_sq / nsamples)
    result.psnr = psnr_from_rms(result.rms_error, config.peak)

    if err.size:
        # argmax returns the first maximum in (z, y, x, channel) order
        flat = int(np.argmax(err))
        z, y, x, c = np.unravel_index(flat, err.shape)
        result.max_error = float(err.flat[flat])
        result.max_x, result.max_y, result.max_z, result.max_channel = int(x), int(y), int(z), int(c)

    # A pixel is counted once no matter how many of its channels exceed
    result.nwarn = int(np.count_nonzero(np.any(err > config.warn_thresh, axis=3)))
    result.nfail = int(np.count_nonzero(np.any(err > config.fail_thresh, axis=3)))
    logger.debug(f"Compared {npixels} pixels: mean={result.mean_error:g} max={result.max_error:g} "
                 f"nwarn={result.nwarn} nfail={result.nfail}")
    return result

def classify(result: CompareResult, perceptual_failures: int, npixels: int,
             config: ThresholdConfig) -> Verdict:
    """Apply fail rules, then warn rules, to one level's statistics"""
    npixels = max(1, npixels)
    fail_limit = config.fail_percent / 100.0 * npixels
    if (result.nfail > fail_limit or result.max_error > config.hard_fail or
            perceptual_failures > fail_limit):
        return Verdict.FAIL
    warn_limit = config.warn_percent / 100.0 * npixels
    if result.nwarn > warn_limit or result.max_error > config.hard_warn:
        return Verdict.WARN
    return Verdict.PASS

def fold_verdict(current: Verdict, new: Verdict) -> Verdict:
    """The more severe of two verdicts"""
    return max(current, new)

def build_diff_image(a: PixelBuffer, b: PixelBuffer, absolute: bool = False,
                     scale: float = 1.0) -> PixelBuffer:
    """
    Difference image shaped like `a`: scale * (a - b), or scale * |a - b|.

    Samples of `b` are taken at the same (z, y, x) coordinate as those of `a`.
    """
    _check_pair(a, b)
    with np.errstate(invalid='ignore', over='ignore'):
        diff = a.pixels.astype(np.float64) - b.pixels.astype(np.float64)
        if absolute:
            diff = np.abs(diff)
        out = (scale * diff).astype(np.float32)
    return PixelBuffer.from_array(out, channel_names=a.channel_names)

@dataclass
class LevelOutcome:
    """What happened at one (subimage, MIP level) step"""
    subimage: int
    level: int
    verdict: Verdict
    shape: Optional[ImageShape] = None
    result: Optional[CompareResult] = None
    perceptual_failures: int = 0
    note: str = ""

@dataclass
class RunResult:
    """Aggregate outcome of comparing two images"""
    verdict: Verdict = Verdict.PASS
    levels: list = field(default_factory=list)
    nsubimages_a: int = 0
    nsubimages_b: int = 0
    diff_path: Optional[str] = None
    diff_error: Optional[str] = None
    error: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return int(self.verdict)
