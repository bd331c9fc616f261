#!/usr/bin/env python3
"""
pixdiff command line entry point and convenience functions.

Exit status is the verdict: 0 PASS, 1 WARN, 2 FAIL, 3 size mismatch,
4 file error.
"""

import argparse
import logging
import sys
from typing import List, Optional

from .core import (
    ConfigError,
    DiffOptions,
    RunResult,
    ThresholdConfig,
    Verdict,
    NAN_POLICIES,
    VERSION,
)
from .report import TextReport
from .traversal import compare_files

__all__ = [
    'PixDiffCLI',
    'compare_images',
    'load_config',
    'save_config',
    'main'
]

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

def compare_images(image_a: str, image_b: str, config: ThresholdConfig = None, **kwargs) -> RunResult:
    """
    Convenience function to compare two image files

    Args:
        image_a: Path to the reference image
        image_b: Path to the candidate image
        config: Optional ThresholdConfig
        **kwargs: diff_options, compare_all, verbose, report, ... as for compare_files

    Returns:
        RunResult with the overall verdict and one LevelOutcome per compared level

    Example:
        >>> result = compare_images('ref.exr', 'out.exr', ThresholdConfig(fail_thresh=0.004))
        >>> sys.exit(result.exit_code)
    """
    return compare_files(image_a, image_b, config or ThresholdConfig(), **kwargs)

def load_config(filepath: str) -> ThresholdConfig:
    """Load thresholds from a JSON file"""
    return ThresholdConfig.from_json(filepath)

def save_config(config: ThresholdConfig, filepath: str):
    """Save thresholds to a JSON file"""
    config.to_json(filepath)
    logger.info(f"Configuration saved to {filepath}")

class PixDiffArgumentParser(argparse.ArgumentParser):
    """Usage errors exit with the file-error status; 2 is reserved for FAIL"""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(int(Verdict.IO_ERROR), f"{self.prog}: error: {message}\n")

class PixDiffCLI:
    """Command-line interface: pixdiff [options] image1 image2"""

    def __init__(self):
        self.parser = self._create_parser()

    def _create_parser(self) -> argparse.ArgumentParser:
        parser = PixDiffArgumentParser(
            prog='pixdiff',
            description='pixdiff -- compare two images',
            usage='pixdiff [options] image1 image2',
            allow_abbrev=False,
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog='Exit status: 0 pass, 1 warning, 2 failure, 3 size mismatch, 4 file error'
        )
        parser.add_argument('--version', action='version', version=f'pixdiff v{VERSION}')
        parser.add_argument('images', nargs=2, metavar='image', help='Images to compare')
        parser.add_argument('-v', '--verbose', action='store_true', help='Verbose status messages')
        parser.add_argument('-a', '--all', dest='compare_all', action='store_true',
                            help='Compare all subimages/miplevels')
        parser.add_argument('--config', help='JSON file with threshold settings')
        parser.add_argument('--save-config', metavar='PATH', help='Write the effective thresholds to PATH')
        parser.add_argument('--summary', action='store_true', help='Print a table of per-level results')

        thresholds = parser.add_argument_group('Thresholding and comparison options')
        thresholds.add_argument('-fail', '--fail', dest='fail_thresh', type=float,
                                help='Failure threshold difference (0.000001)')
        thresholds.add_argument('-failpercent', '--failpercent', dest='fail_percent', type=float,
                                help='Allow this percentage of failures (0)')
        thresholds.add_argument('-hardfail', '--hardfail', dest='hard_fail', type=float,
                                help='Fail if any one pixel exceeds this error (infinity)')
        thresholds.add_argument('-warn', '--warn', dest='warn_thresh', type=float,
                                help='Warning threshold difference (0.000001)')
        thresholds.add_argument('-warnpercent', '--warnpercent', dest='warn_percent', type=float,
                                help='Allow this percentage of warnings (0)')
        thresholds.add_argument('-hardwarn', '--hardwarn', dest='hard_warn', type=float,
                                help='Warn if any one pixel exceeds this error (infinity)')
        thresholds.add_argument('-p', '--perceptual', dest='perceptual', action='store_true', default=None,
                                help='Perform perceptual (rather than numeric) comparison')
        thresholds.add_argument('--nan-policy', choices=NAN_POLICIES,
                                help='How NaN against NaN is scored (match)')

        diff = parser.add_argument_group('Difference image options')
        diff.add_argument('-o', '--out', dest='diff_image', help='Output difference image')
        diff.add_argument('-od', '--outdiffonly', dest='outdiffonly', action='store_true',
                          help='Output image only if nonzero difference')
        diff.add_argument('-abs', '--abs', dest='diffabs', action='store_true',
                          help='Output image of absolute value, not signed difference')
        diff.add_argument('-scale', '--scale', dest='diffscale', type=float, default=1.0,
                          help='Scale the output image by this factor')
        return parser

    def _load_config(self, args) -> ThresholdConfig:
        config = ThresholdConfig.from_json(args.config) if args.config else ThresholdConfig()
        return config.with_overrides(
            fail_thresh=args.fail_thresh,
            fail_percent=args.fail_percent,
            hard_fail=args.hard_fail,
            warn_thresh=args.warn_thresh,
            warn_percent=args.warn_percent,
            hard_warn=args.hard_warn,
            perceptual=args.perceptual,
            nan_policy=args.nan_policy
        )

    def run(self, args: Optional[List[str]] = None) -> int:
        args = self.parser.parse_args(args)

        logging.basicConfig(level=logging.WARNING, format=LOG_FORMAT)
        logging.getLogger('pixdiff').setLevel(logging.DEBUG if args.verbose else logging.NOTSET)

        try:
            config = self._load_config(args)
            if args.save_config:
                save_config(config, args.save_config)
        except (ConfigError, OSError) as e:
            logger.error(f"Error: {e}")
            return int(Verdict.IO_ERROR)

        diff_options = DiffOptions(path=args.diff_image, absolute=args.diffabs,
                                   scale=args.diffscale, only_if_nonzero=args.outdiffonly)
        report = TextReport()
        result = compare_files(args.images[0], args.images[1], config, diff_options,
                               compare_all=args.compare_all, verbose=args.verbose, report=report)
        if args.summary and result.levels:
            report.summary(result.levels)
        return result.exit_code

def main():
    cli = PixDiffCLI()
    sys.exit(cli.run())

if __name__ == '__main__':
    main()
