"""pixdiff package
Exporting main classes for external use.

Example:
    from pixdiff import ThresholdConfig, compare_files
"""
from .core import (
    CompareResult,
    ConfigError,
    DeepDataError,
    DiffOptions,
    DiffWriteError,
    ImageReadError,
    ImageShape,
    LevelOutcome,
    PixDiffError,
    PixelBuffer,
    RunResult,
    ThresholdConfig,
    Verdict,
    VERSION,
    build_diff_image,
    classify,
    compare_buffers,
    fold_verdict,
)
from .sources import ArraySource, DiffImageFileWriter, ImageFileSource, PixelSource, open_image
from .perceptual import LuminanceComparator
from .traversal import ImageComparator, compare_files

__all__ = [
    'CompareResult',
    'ConfigError',
    'DeepDataError',
    'DiffOptions',
    'DiffWriteError',
    'ImageReadError',
    'ImageShape',
    'LevelOutcome',
    'PixDiffError',
    'PixelBuffer',
    'RunResult',
    'ThresholdConfig',
    'Verdict',
    'VERSION',
    'build_diff_image',
    'classify',
    'compare_buffers',
    'fold_verdict',
    'ArraySource',
    'DiffImageFileWriter',
    'ImageFileSource',
    'PixelSource',
    'open_image',
    'LuminanceComparator',
    'ImageComparator',
    'compare_files'
]
