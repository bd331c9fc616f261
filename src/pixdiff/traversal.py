"""
Subimage / MIP level traversal.

ImageComparator walks both images level by level, gates each step on shape
compatibility, runs the engine and the classifier, folds the verdicts and
emits at most one difference image.

Named exits:
- an ImageReadError ends the whole run with IO_ERROR;
- a size or deep/dense mismatch ends the current subimage with SIZE_MISMATCH;
- differing MIP level counts end the current subimage with SIZE_MISMATCH
  once level 0 has been compared.
"""

import logging
import time
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional, Union

from .core import (
    DiffOptions,
    DiffWriteError,
    ImageReadError,
    LevelOutcome,
    PixelBuffer,
    RunResult,
    ThresholdConfig,
    Verdict,
    build_diff_image,
    classify,
    compare_buffers,
    fold_verdict,
)
from .perceptual import LuminanceComparator
from .report import TextReport
from .sources import DiffImageFileWriter, PixelSource, open_image

logger = logging.getLogger(__name__)

LEVEL_COUNT_MESSAGE = "Files do not match in their number of MIPmap levels"
DEEP_MISMATCH_MESSAGE = "One image contains deep data, the other does not"

class SubimageExit(Enum):
    """Why the level loop of one subimage stopped"""
    COMPLETED = "completed"
    LEVEL_COUNT_MISMATCH = "level count mismatch"
    SIZE_MISMATCH = "size mismatch"
    DEEP_MISMATCH = "deep/dense mismatch"

class ImageComparator:
    """Compares every matching subimage/MIP level of two pixel sources"""

    def __init__(self, config: Optional[ThresholdConfig] = None,
                 diff_options: Optional[DiffOptions] = None,
                 compare_all: bool = False,
                 verbose: bool = False,
                 report: Optional[TextReport] = None,
                 perceptual_comparator=None,
                 diff_writer=None):
        self.config = config or ThresholdConfig()
        self.diff_options = diff_options or DiffOptions()
        self.compare_all = compare_all
        self.verbose = verbose
        self.report = report or TextReport()
        self.perceptual_comparator = perceptual_comparator or LuminanceComparator()
        self.diff_writer = diff_writer or DiffImageFileWriter()

    def run(self, source_a: PixelSource, source_b: PixelSource) -> RunResult:
        result = RunResult(nsubimages_a=source_a.nsubimages(), nsubimages_b=source_b.nsubimages())
        diff_pending = self.diff_options.requested
        start_time = time.time()
        try:
            for subimage in self._subimages(result):
                exit_reason, diff_pending = self._compare_subimage(
                    source_a, source_b, subimage, result, diff_pending)
                logger.debug(f"Subimage {subimage}: {exit_reason.value}")
        except ImageReadError as e:
            logger.error(f"Aborting comparison: {e}")
            self.report.error(str(e))
            result.verdict = Verdict.IO_ERROR
            result.error = str(e)
            return result

        if self.compare_all and result.nsubimages_a != result.nsubimages_b:
            self.report.message(f"Images had differing numbers of subimages "
                                f"({result.nsubimages_a} vs {result.nsubimages_b})")
            result.verdict = fold_verdict(result.verdict, Verdict.FAIL)
        if not self.compare_all and (result.nsubimages_a > 1 or result.nsubimages_b > 1):
            self.report.message(f"Only compared the first subimage (of {result.nsubimages_a} "
                                f"and {result.nsubimages_b}, respectively)")

        self.report.verdict(result.verdict)
        logger.debug(f"Comparison finished in {time.time() - start_time:.2f}s: {result.verdict.name}")
        return result

    def _subimages(self, result: RunResult) -> Iterator[int]:
        subimage = 0
        while subimage < result.nsubimages_a:
            if subimage > 0 and not self.compare_all:
                return
            if subimage >= result.nsubimages_b:
                return
            yield subimage
            subimage += 1

    def _compare_subimage(self, source_a: PixelSource, source_b: PixelSource, subimage: int,
                          result: RunResult, diff_pending: bool):
        nlevels_a = source_a.nlevels(subimage)
        nlevels_b = source_b.nlevels(subimage)
        if nlevels_a != nlevels_b:
            self.report.message(LEVEL_COUNT_MESSAGE)

        for level in range(nlevels_a):
            if level > 0 and not self.compare_all:
                break
            if level > 0 and nlevels_a != nlevels_b:
                self.report.message(LEVEL_COUNT_MESSAGE)
                self._record(result, LevelOutcome(subimage, level, Verdict.SIZE_MISMATCH,
                                                  note=f"{nlevels_a} vs {nlevels_b} MIP levels"))
                return SubimageExit.LEVEL_COUNT_MISMATCH, diff_pending

            buffer_a = source_a.read(subimage, level)
            buffer_b = source_b.read(subimage, level)
            nsubimages = max(result.nsubimages_a, 1)

            if not buffer_a.shape.compatible(buffer_b.shape):
                self.report.shape(buffer_a, subimage, level, nsubimages, nlevels_a)
                self.report.size_mismatch(buffer_a, buffer_b)
                self._record(result, LevelOutcome(subimage, level, Verdict.SIZE_MISMATCH,
                                                  shape=buffer_a.shape, note="size mismatch"))
                return SubimageExit.SIZE_MISMATCH, diff_pending
            if buffer_a.deep != buffer_b.deep:
                self.report.message(DEEP_MISMATCH_MESSAGE)
                self._record(result, LevelOutcome(subimage, level, Verdict.SIZE_MISMATCH,
                                                  shape=buffer_a.shape, note="deep/dense mismatch"))
                return SubimageExit.DEEP_MISMATCH, diff_pending
            if buffer_a.deep:
                if self.verbose:
                    self.report.shape(buffer_a, subimage, level, nsubimages, nlevels_a)
                    self.report.message("  Deep data compared by shape only")
                self._record(result, LevelOutcome(subimage, level, Verdict.PASS, shape=buffer_a.shape,
                                                  note="deep data compared by shape only"))
                continue

            self._compare_level(buffer_a, buffer_b, subimage, level, nsubimages, nlevels_a, result)
            if diff_pending and self._write_diff(buffer_a, buffer_b, result):
                diff_pending = False
        return SubimageExit.COMPLETED, diff_pending

    def _compare_level(self, buffer_a: PixelBuffer, buffer_b: PixelBuffer, subimage: int, level: int,
                       nsubimages: int, nlevels: int, result: RunResult):
        config = self.config
        cr = compare_buffers(buffer_a, buffer_b, config)
        perceptual_failures = 0
        if config.perceptual:
            perceptual_failures = self.perceptual_comparator.compare(buffer_a, buffer_b)
        verdict = classify(cr, perceptual_failures, cr.npixels, config)
        self._record(result, LevelOutcome(subimage, level, verdict, shape=buffer_a.shape, result=cr,
                                          perceptual_failures=perceptual_failures))

        if self.verbose or result.verdict != Verdict.PASS:
            if self.compare_all:
                self.report.shape(buffer_a, subimage, level, nsubimages, nlevels)
            self.report.statistics(buffer_a, cr, config, perceptual_failures)

    def _record(self, result: RunResult, outcome: LevelOutcome):
        result.levels.append(outcome)
        result.verdict = fold_verdict(result.verdict, outcome.verdict)

    def _write_diff(self, buffer_a: PixelBuffer, buffer_b: PixelBuffer, result: RunResult) -> bool:
        """Emit the difference image for this level; False if this level does not qualify"""
        options = self.diff_options
        max_error = result.levels[-1].result.max_error
        if options.only_if_nonzero and max_error == 0:
            return False
        diff = build_diff_image(buffer_a, buffer_b, absolute=options.absolute, scale=options.scale)
        try:
            self.diff_writer.write(options.path, diff)
        except DiffWriteError as e:
            logger.warning(str(e))
            self.report.message(f"Could not write difference image {options.path}: {e}")
            result.diff_error = str(e)
        else:
            result.diff_path = str(options.path)
        return True

def compare_files(path_a: Union[str, Path], path_b: Union[str, Path],
                  config: Optional[ThresholdConfig] = None,
                  diff_options: Optional[DiffOptions] = None,
                  compare_all: bool = False,
                  verbose: bool = False,
                  report: Optional[TextReport] = None,
                  perceptual_comparator=None,
                  diff_writer=None) -> RunResult:
    """Open two image files and compare them; both files are closed on every path out"""
    report = report or TextReport()
    comparator = ImageComparator(config, diff_options, compare_all=compare_all, verbose=verbose,
                                 report=report, perceptual_comparator=perceptual_comparator,
                                 diff_writer=diff_writer)
    report.comparing(str(path_a), str(path_b))
    try:
        with open_image(path_a) as source_a, open_image(path_b) as source_b:
            return comparator.run(source_a, source_b)
    except ImageReadError as e:
        logger.error(str(e))
        report.error(str(e))
        return RunResult(verdict=Verdict.IO_ERROR, error=str(e))
