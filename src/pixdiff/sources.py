"""
Pixel sources and the difference image writer.

A PixelSource hands out one PixelBuffer per (subimage, MIP level). Whatever
the file stores, samples come out as float32, so the comparison engine never
has to care about the on-disk format.
"""

import logging
import re
import zipfile
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence, Tuple, Union
import numpy as np
from PIL import Image

from .core import DiffWriteError, ImageReadError, PixelBuffer

logger = logging.getLogger(__name__)

ARRAY_SUFFIXES = ('.npy', '.npz')
NPZ_KEY = re.compile(r'^subimage(\d+)_level(\d+)$')
PathLike = Union[str, Path]

class PixelSource:
    """
    One opened image. Subclasses implement nsubimages, nlevels and _read.

    The most recently read level is kept, so asking for the same
    (subimage, level) twice does not decode it again. Sources are context
    managers and release whatever they hold on exit.
    """

    def __init__(self, name: str):
        self.name = name
        self._current: Optional[Tuple[Tuple[int, int], PixelBuffer]] = None

    def nsubimages(self) -> int:
        raise NotImplementedError

    def nlevels(self, subimage: int = 0) -> int:
        raise NotImplementedError

    def _read(self, subimage: int, level: int) -> PixelBuffer:
        raise NotImplementedError

    def read(self, subimage: int = 0, level: int = 0) -> PixelBuffer:
        key = (subimage, level)
        if self._current is not None and self._current[0] == key:
            return self._current[1]
        if not 0 <= subimage < self.nsubimages():
            raise ImageReadError(f"{self.name}: no subimage {subimage}")
        if not 0 <= level < self.nlevels(subimage):
            raise ImageReadError(f"{self.name}: subimage {subimage} has no MIP level {level}")
        buffer = self._read(subimage, level)
        logger.debug(f"Read {self.name} subimage {subimage} level {level}: {buffer.shape}")
        self._current = (key, buffer)
        return buffer

    def close(self):
        self._current = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

def image_to_float(img: Image.Image) -> Tuple[np.ndarray, Tuple[str, ...]]:
    """Pixel data of a Pillow image as float32 HxWxC plus its band names"""
    mode = img.mode
    if mode in ('P', 'PA'):
        img = img.convert('RGBA' if mode == 'PA' or 'transparency' in img.info else 'RGB')
    elif mode == '1':
        img = img.convert('L')
    elif mode in ('CMYK', 'YCbCr', 'LAB', 'HSV'):
        img = img.convert('RGB')
    mode = img.mode

    if mode == 'F':
        data = np.asarray(img, dtype=np.float32)
    elif mode == 'I' or mode.startswith('I;16'):
        data = np.asarray(img, dtype=np.float32) / 65535.0
    else:
        data = np.asarray(img, dtype=np.float32) / 255.0
    if data.ndim == 2:
        data = data[:, :, np.newaxis]
    return data, tuple(img.getbands())

class ImageFileSource(PixelSource):
    """Image file read through Pillow; each frame is a subimage with one level"""

    def __init__(self, path: PathLike):
        super().__init__(str(path))
        self.path = Path(path)
        try:
            self._image = Image.open(self.path)
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            raise ImageReadError(f"Could not open {self.path}: {e}") from e
        try:
            self._frames = int(getattr(self._image, 'n_frames', 1))
        except (OSError, EOFError, ValueError) as e:
            self._image.close()
            raise ImageReadError(f"Could not count the subimages of {self.path}: {e}") from e
        logger.debug(f"Opened {self.path} ({self._image.format}, {self._frames} subimage(s))")

    def nsubimages(self) -> int:
        return self._frames

    def nlevels(self, subimage: int = 0) -> int:
        return 1

    def _read(self, subimage: int, level: int) -> PixelBuffer:
        try:
            self._image.seek(subimage)
            data, bands = image_to_float(self._image)
        except (OSError, EOFError, ValueError) as e:
            raise ImageReadError(f"Could not read {self.path} subimage {subimage}: {e}") from e
        return PixelBuffer.from_array(data, channel_names=bands)

    def close(self):
        super().close()
        self._image.close()

class ArraySource(PixelSource):
    """
    In-memory image: a list of subimages, each a list of MIP level arrays.

    Arrays may be 2D (HxW), 3D (HxWxC) or 4D (DxHxWxC). Levels listed in
    `deep_levels` as (subimage, level) pairs are treated as deep data.
    """

    def __init__(self, subimages: Union[np.ndarray, Sequence[Sequence[Any]]], name: str = '<array>',
                 deep_levels: Iterable[Tuple[int, int]] = (),
                 channel_names: Optional[Sequence[str]] = None):
        super().__init__(name)
        if isinstance(subimages, np.ndarray):
            subimages = [[subimages]]
        self._subimages: List[List[Any]] = [list(levels) for levels in subimages]
        self._deep = set(deep_levels)
        self._channel_names = channel_names

    def nsubimages(self) -> int:
        return len(self._subimages)

    def nlevels(self, subimage: int = 0) -> int:
        return len(self._subimages[subimage])

    def _read(self, subimage: int, level: int) -> PixelBuffer:
        try:
            buffer = PixelBuffer.from_array(self._subimages[subimage][level], self._channel_names)
        except ValueError as e:
            raise ImageReadError(f"{self.name}: subimage {subimage} level {level}: {e}") from e
        if (subimage, level) in self._deep:
            return PixelBuffer.deep_placeholder(buffer.shape, buffer.channel_names)
        return buffer

def load_array_file(path: PathLike) -> ArraySource:
    """
    Load a .npy file (one subimage, one level) or a .npz archive whose keys are
    named subimage<S>_level<M>.
    """
    path = Path(path)
    single = path.suffix.lower() == '.npy'
    try:
        loaded = np.load(path, allow_pickle=False)
        if not isinstance(loaded, np.lib.npyio.NpzFile):
            if not single:
                raise ImageReadError(f"{path}: holds a single .npy array, expected a .npz archive")
            return ArraySource([[loaded]], name=str(path))
        with loaded as archive:
            if single:
                raise ImageReadError(f"{path}: holds a .npz archive, expected a single .npy array")
            entries = {}
            for key in archive.files:
                match = NPZ_KEY.match(key)
                if match is None:
                    raise ImageReadError(f"{path}: unexpected array {key!r}, expected subimage<S>_level<M>")
                entries[(int(match.group(1)), int(match.group(2)))] = archive[key]
    except (OSError, ValueError, zipfile.BadZipFile) as e:
        raise ImageReadError(f"Could not read {path}: {e}") from e
    if not entries:
        raise ImageReadError(f"{path}: archive holds no image data")

    subimages = []
    for s in range(len({s for s, _ in entries})):
        levels = []
        while (s, len(levels)) in entries:
            levels.append(entries[(s, len(levels))])
        if not levels:
            raise ImageReadError(f"{path}: subimage {s} has no level 0")
        subimages.append(levels)
    if len(entries) != sum(len(levels) for levels in subimages):
        raise ImageReadError(f"{path}: subimage/level numbering is not contiguous")
    return ArraySource(subimages, name=str(path))

def open_image(path: PathLike) -> PixelSource:
    """Open an image file as a PixelSource, choosing the reader by suffix"""
    if Path(path).suffix.lower() in ARRAY_SUFFIXES:
        return load_array_file(path)
    return ImageFileSource(path)

class DiffImageFileWriter:
    """
    Writes difference images.

    .npy keeps the float samples of any shape. Single channel .tif/.tiff files
    are written as 32-bit float. Everything else goes through Pillow as 8-bit,
    clipped to [0, 1].
    """

    BAND_MODES = {1: 'L', 2: 'LA', 3: 'RGB', 4: 'RGBA'}

    def write(self, path: PathLike, buffer: PixelBuffer):
        path = Path(path)
        suffix = path.suffix.lower()
        pixels = buffer.pixels
        shape = buffer.shape
        if suffix == '.npy':
            data = pixels[0] if shape.depth == 1 else pixels
            self._save(path, lambda: np.save(path, data))
            return
        if shape.depth > 1:
            raise DiffWriteError(f"Volumetric difference images can only be written as .npy, not {path}")
        mode = self.BAND_MODES.get(shape.nchannels)
        if mode is None:
            raise DiffWriteError(f"Cannot write {shape.nchannels} channel image to {path}")

        plane = pixels[0]
        if shape.nchannels == 1 and suffix in ('.tif', '.tiff'):
            img = Image.fromarray(np.ascontiguousarray(plane[:, :, 0], dtype=np.float32))
        else:
            data = np.nan_to_num(plane, nan=0.0, posinf=1.0, neginf=0.0)
            data = np.round(np.clip(data, 0.0, 1.0) * 255.0).astype(np.uint8)
            bands = [Image.fromarray(np.ascontiguousarray(data[:, :, c])) for c in range(shape.nchannels)]
            img = Image.merge(mode, bands)
        self._save(path, lambda: img.save(path))

    def _save(self, path: Path, save):
        try:
            save()
        except (OSError, ValueError, KeyError) as e:
            raise DiffWriteError(f"Could not write difference image {path}: {e}") from e
        logger.info(f"Difference image saved to {path}")
