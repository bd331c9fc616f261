"""Human readable comparison report written to stdout"""

import math
import sys
from typing import List, Optional, TextIO
from tabulate import tabulate

from .core import CompareResult, ImageShape, LevelOutcome, PixelBuffer, ThresholdConfig, Verdict

def format_double(value: float) -> str:
    """%g formatting with NaN and infinities spelled nan / inf on every platform"""
    if math.isnan(value):
        return "nan"
    if math.isinf(value):
        return "inf"
    return f"{value:g}"

def format_percent(count: int, npixels: int) -> str:
    return f"{100.0 * count / max(1, npixels):.3g}"

def shape_line(shape: ImageShape, subimage: int, level: int, nsubimages: int, nlevels: int) -> str:
    line = ""
    if nsubimages > 1:
        line += f"Subimage {subimage} "
    if nlevels > 1:
        line += f" MIP level {level} "
    if nsubimages > 1 or nlevels > 1:
        line += ": "
    line += f"{shape.width} x {shape.height}"
    if shape.depth > 1:
        line += f" x {shape.depth}"
    return line + f", {shape.nchannels} channel"

class TextReport:
    """
    Writes the report line by line. Streams are looked up at write time, so
    redirecting sys.stdout after construction still works.
    """

    def __init__(self, stream: Optional[TextIO] = None, error_stream: Optional[TextIO] = None):
        self._stream = stream
        self._error_stream = error_stream

    def _out(self, text: str):
        print(text, file=self._stream or sys.stdout)

    def comparing(self, name_a: str, name_b: str):
        self._out(f'Comparing "{name_a}" and "{name_b}"')

    def message(self, text: str):
        self._out(text)

    def error(self, text: str):
        print(f"pixdiff ERROR: {text}", file=self._error_stream or sys.stderr)

    def shape(self, buffer: PixelBuffer, subimage: int, level: int, nsubimages: int, nlevels: int):
        self._out(shape_line(buffer.shape, subimage, level, nsubimages, nlevels))

    def size_mismatch(self, a: PixelBuffer, b: PixelBuffer):
        self._out(f"Images do not match in size: {a.shape.describe()} versus {b.shape.describe()}")

    def statistics(self, buffer: PixelBuffer, result: CompareResult, config: ThresholdConfig,
                   perceptual_failures: int = 0):
        self._out(f"  Mean error = {format_double(result.mean_error)}")
        self._out(f"  RMS error = {format_double(result.rms_error)}")
        self._out(f"  Peak SNR = {format_double(result.psnr)}")
        line = f"  Max error  = {format_double(result.max_error)}"
        if result.max_error != 0:
            coords = [str(result.max_x), str(result.max_y)]
            if buffer.shape.depth > 1:
                coords.append(str(result.max_z))
            coords.append(buffer.channel_name(result.max_channel))
            line += " @ (" + ", ".join(coords) + ")"
        self._out(line)
        self._out(f"  {result.nwarn} pixels ({format_percent(result.nwarn, result.npixels)}%) "
                  f"over {config.warn_thresh:g}")
        self._out(f"  {result.nfail} pixels ({format_percent(result.nfail, result.npixels)}%) "
                  f"over {config.fail_thresh:g}")
        if config.perceptual:
            self._out(f"  {perceptual_failures} pixels "
                      f"({format_percent(perceptual_failures, result.npixels)}%) "
                      f"failed the perceptual test")

    def verdict(self, verdict: Verdict):
        self._out(verdict.label)

    def summary(self, levels: List[LevelOutcome]):
        self._out(summary_table(levels))

def summary_table(levels: List[LevelOutcome]) -> str:
    """One row per compared level"""
    rows = []
    for outcome in levels:
        size = ""
        if outcome.shape is not None:
            size = f"{outcome.shape.width}x{outcome.shape.height}"
            if outcome.shape.depth > 1:
                size += f"x{outcome.shape.depth}"
            size += f"x{outcome.shape.nchannels}"
        r = outcome.result
        if r is None:
            stats = ["-"] * 6
        else:
            stats = [format_double(r.mean_error), format_double(r.rms_error), format_double(r.psnr),
                     format_double(r.max_error), r.nwarn, r.nfail]
        rows.append([outcome.subimage, outcome.level, size] + stats +
                    [outcome.verdict.name, outcome.note])
    headers = ["Subimage", "Level", "Size", "Mean", "RMS", "PSNR", "Max", "Warn", "Fail", "Verdict", "Note"]
    return tabulate(rows, headers=headers, tablefmt="simple")
