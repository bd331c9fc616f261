#!/usr/bin/env python3
"""
Command line tests for pixdiff, run against real image files
"""

import contextlib
import io
import json
import logging
import os
import shutil
import tempfile
import unittest
from unittest import mock
import numpy as np
from PIL import Image

from pixdiff import ImageReadError, ThresholdConfig, Verdict, open_image
from pixdiff.cli import PixDiffCLI, compare_images

class CLITestCase(unittest.TestCase):
    """Creates the test images once per class"""

    @classmethod
    def setUpClass(cls):
        cls.test_dir = tempfile.mkdtemp()

        img1 = Image.new('RGB', (32, 32), color=(100, 150, 200))
        cls.original = cls.path('original.png')
        img1.save(cls.original)
        cls.copy = cls.path('copy.png')
        img1.save(cls.copy)

        img2 = img1.copy()
        img2.putpixel((5, 9), (255, 0, 0))
        cls.modified = cls.path('modified.png')
        img2.save(cls.modified)

        cls.gray = cls.path('gray.png')
        Image.new('L', (32, 32), color=100).save(cls.gray)

        pages = [Image.new('RGB', (16, 16), color=(10 * i, 20, 30)) for i in range(3)]
        cls.three_pages = cls.path('three.tif')
        pages[0].save(cls.three_pages, save_all=True, append_images=pages[1:])
        cls.two_pages = cls.path('two.tif')
        pages[0].save(cls.two_pages, save_all=True, append_images=pages[1:2])

        base = np.full((8, 8, 3), 0.5, dtype=np.float32)
        cls.mip3 = cls.path('mip3.npz')
        np.savez(cls.mip3, subimage0_level0=base, subimage0_level1=base[:4, :4], subimage0_level2=base[:2, :2])
        cls.mip2 = cls.path('mip2.npz')
        np.savez(cls.mip2, subimage0_level0=base, subimage0_level1=base[:4, :4])

    @classmethod
    def tearDownClass(cls):
        shutil.rmtree(cls.test_dir)

    @classmethod
    def path(cls, name):
        return os.path.join(cls.test_dir, name)

    def run_cli(self, *args):
        self.out = io.StringIO()
        with contextlib.redirect_stdout(self.out), contextlib.redirect_stderr(io.StringIO()):
            return PixDiffCLI().run([str(a) for a in args])

    @property
    def lines(self):
        return self.out.getvalue().splitlines()

class TestExitCodes(CLITestCase):

    def test_identical_images_pass(self):
        self.assertEqual(self.run_cli(self.original, self.copy), 0)
        self.assertEqual(self.lines[0], f'Comparing "{self.original}" and "{self.copy}"')
        self.assertEqual(self.lines[-1], "PASS")

    def test_modified_pixel_fails(self):
        self.assertEqual(self.run_cli(self.original, self.modified), 2)
        self.assertIn("  1 pixels (0.0977%) over 1e-06", self.lines)
        self.assertTrue(any(line.startswith("  Max error  = 0.784314 @ (5, 9, B)") for line in self.lines))
        self.assertEqual(self.lines[-1], "FAILURE")

    def test_relaxed_fail_threshold_warns(self):
        self.assertEqual(self.run_cli(self.original, self.modified, '-fail', 1), 1)
        self.assertEqual(self.lines[-1], "WARNING")

    def test_percentages_allow_pass(self):
        code = self.run_cli(self.original, self.modified, '-failpercent', 1, '-warnpercent', 1)
        self.assertEqual(code, 0)

    def test_hard_fail_overrides_percentage(self):
        code = self.run_cli(self.original, self.modified, '-failpercent', 1, '-hardfail', 0.5)
        self.assertEqual(code, 2)

    def test_hard_warn(self):
        code = self.run_cli(self.original, self.modified, '-failpercent', 1, '-warnpercent', 1,
                            '-hardwarn', 0.5)
        self.assertEqual(code, 1)

    def test_double_dash_options(self):
        self.assertEqual(self.run_cli(self.original, self.modified, '--fail', 1, '--warn', 1), 0)

    def test_size_mismatch(self):
        self.assertEqual(self.run_cli(self.original, self.gray), 3)
        self.assertIn("Images do not match in size: (32x32x3) versus (32x32x1)", self.lines)

    def test_missing_file(self):
        self.assertEqual(self.run_cli(self.original, self.path('missing.png')), 4)
        self.assertNotIn("PASS", self.lines)

    def test_perceptual_mode(self):
        self.assertEqual(self.run_cli(self.original, self.copy, '-p'), 0)
        self.assertEqual(self.run_cli(self.original, self.modified, '-p', '-v'), 2)
        self.assertTrue(any("failed the perceptual test" in line for line in self.lines))

class TestSubimages(CLITestCase):

    def test_compare_all_subimage_mismatch(self):
        self.assertEqual(self.run_cli('-a', self.three_pages, self.two_pages), 2)
        self.assertIn("Images had differing numbers of subimages (3 vs 2)", self.lines)

    def test_first_subimage_only(self):
        self.assertEqual(self.run_cli(self.three_pages, self.two_pages), 0)
        self.assertIn("Only compared the first subimage (of 3 and 2, respectively)", self.lines)

    def test_mip_level_mismatch(self):
        self.assertEqual(self.run_cli('-a', self.mip3, self.mip2), 3)
        self.assertEqual(self.lines.count("Files do not match in their number of MIPmap levels"), 2)

    def test_mip_levels_match(self):
        self.assertEqual(self.run_cli('-a', '-v', self.mip2, self.mip2), 0)
        self.assertIn(" MIP level 1 : 4 x 4, 3 channel", self.lines)

    def test_summary(self):
        self.assertEqual(self.run_cli('-a', '--summary', self.mip3, self.mip2), 3)
        self.assertTrue(any("SIZE_MISMATCH" in line for line in self.lines))

class TestDiffImage(CLITestCase):

    def test_png_diff(self):
        diff_path = self.path('diff_abs.png')
        self.assertEqual(self.run_cli(self.original, self.modified, '-o', diff_path, '-abs'), 2)
        with Image.open(diff_path) as diff:
            self.assertEqual(diff.mode, 'RGB')
            self.assertEqual(diff.size, (32, 32))
            self.assertEqual(diff.getpixel((5, 9)), (155, 150, 200))
            self.assertEqual(diff.getpixel((0, 0)), (0, 0, 0))

    def test_npy_diff_signed_scaled(self):
        diff_path = self.path('diff.npy')
        self.run_cli(self.original, self.modified, '-o', diff_path, '-scale', 2)
        diff = np.load(diff_path)
        self.assertEqual(diff.shape, (32, 32, 3))
        self.assertAlmostEqual(float(diff[9, 5, 0]), 2 * (100 - 255) / 255.0, places=5)
        self.assertAlmostEqual(float(diff[9, 5, 2]), 2 * 200 / 255.0, places=5)

    def test_only_if_nonzero(self):
        diff_path = self.path('never.png')
        self.assertEqual(self.run_cli(self.original, self.copy, '-o', diff_path, '-od'), 0)
        self.assertFalse(os.path.exists(diff_path))

    def test_unwritable_diff_is_not_fatal(self):
        diff_path = self.path('no_such_dir/diff.png')
        self.assertEqual(self.run_cli(self.original, self.copy, '-o', diff_path), 0)
        self.assertTrue(any(line.startswith("Could not write difference image") for line in self.lines))

    def test_float_tiff_diff(self):
        diff_path = self.path('diff.tif')
        self.run_cli(self.gray, self.gray, '-o', diff_path)
        with Image.open(diff_path) as diff:
            self.assertEqual(diff.mode, 'F')

class TestConfigFiles(CLITestCase):

    def test_config_file(self):
        config_path = self.path('relaxed.json')
        with open(config_path, 'w') as f:
            json.dump({'fail_thresh': 1.0, 'warn_thresh': 1.0}, f)
        self.assertEqual(self.run_cli('--config', config_path, self.original, self.modified), 0)
        self.assertEqual(self.run_cli('--config', config_path, '-warn', 0.1, self.original, self.modified), 1)

    def test_bad_config_file(self):
        config_path = self.path('bad.json')
        with open(config_path, 'w') as f:
            f.write('{"fail_percent": 200}')
        self.assertEqual(self.run_cli('--config', config_path, self.original, self.copy), 4)

    def test_save_config(self):
        saved = self.path('saved.json')
        self.run_cli('--save-config', saved, '-fail', 0.25, '-p', self.original, self.copy)
        config = ThresholdConfig.from_json(saved)
        self.assertEqual(config.fail_thresh, 0.25)
        self.assertTrue(config.perceptual)

class TestLibraryAPI(CLITestCase):

    def test_compare_images(self):
        with contextlib.redirect_stdout(io.StringIO()):
            result = compare_images(self.original, self.modified, ThresholdConfig(fail_thresh=1, warn_thresh=1))
        self.assertEqual(result.verdict, Verdict.PASS)
        self.assertEqual(result.nsubimages_a, 1)

    def test_open_image_float_samples(self):
        with open_image(self.original) as source:
            buf = source.read()
            self.assertEqual(buf.channel_names, ('R', 'G', 'B'))
            self.assertAlmostEqual(float(buf.pixels[0, 0, 0, 1]), 150 / 255.0, places=6)
            self.assertIs(source.read(0, 0), buf)
            with self.assertRaises(ImageReadError):
                source.read(1, 0)

    def test_open_image_errors(self):
        with self.assertRaises(ImageReadError):
            open_image(self.path('missing.png'))
        not_an_image = self.path('junk.png')
        with open(not_an_image, 'w') as f:
            f.write('not an image')
        with self.assertRaises(ImageReadError):
            open_image(not_an_image)
        bad_npz = self.path('bad.npz')
        np.savez(bad_npz, pixels=np.zeros((2, 2)))
        with self.assertRaises(ImageReadError):
            open_image(bad_npz)

    def test_swapped_array_suffixes(self):
        array_in_npz = self.path('plain_array.npz')
        with open(array_in_npz, 'wb') as f:
            np.save(f, np.zeros((4, 4, 3), dtype=np.float32))
        archive_in_npy = self.path('archive.npy')
        with open(archive_in_npy, 'wb') as f:
            np.savez(f, subimage0_level0=np.zeros((4, 4, 3), dtype=np.float32))

        with self.assertRaises(ImageReadError):
            open_image(array_in_npz)
        with self.assertRaises(ImageReadError):
            open_image(archive_in_npy)
        self.assertEqual(self.run_cli(array_in_npz, self.mip2), 4)
        self.assertEqual(self.run_cli(self.mip2, archive_in_npy), 4)

    def test_frame_count_failure_closes_image(self):
        class UnreadableFrames:
            format = 'TIFF'
            closed = False

            @property
            def n_frames(self):
                raise OSError("truncated file")

            def close(self):
                self.closed = True

        image = UnreadableFrames()
        with mock.patch('pixdiff.sources.Image.open', return_value=image):
            with self.assertRaises(ImageReadError):
                open_image(self.original)
        self.assertTrue(image.closed)

class TestCommandLine(CLITestCase):

    def run_cli_expecting_exit(self, *args):
        with self.assertRaises(SystemExit) as cm:
            self.run_cli(*args)
        return cm.exception.code

    def test_unknown_option_is_not_a_failure_verdict(self):
        self.assertEqual(self.run_cli_expecting_exit('-nosuchflag', self.original, self.copy), 4)

    def test_missing_image_argument(self):
        self.assertEqual(self.run_cli_expecting_exit(self.original), 4)

    def test_bad_threshold_value(self):
        self.assertEqual(self.run_cli_expecting_exit('-fail', 'lots', self.original, self.copy), 4)

    def test_version_exits_cleanly(self):
        self.assertEqual(self.run_cli_expecting_exit('--version'), 0)

    def test_verbose_only_raises_package_logging(self):
        self.run_cli('-v', self.original, self.copy)
        self.assertEqual(logging.getLogger('pixdiff').level, logging.DEBUG)
        self.assertNotEqual(logging.getLogger().level, logging.DEBUG)
        self.assertGreater(logging.getLogger('PIL').getEffectiveLevel(), logging.DEBUG)

        self.run_cli(self.original, self.copy)
        self.assertEqual(logging.getLogger('pixdiff').level, logging.NOTSET)

if __name__ == '__main__':
    unittest.main(verbosity=2)
