"""
Photo sources: asset enumeration and image decoding.

The pipeline only needs two things from a photo library: a stable, ordered
list of :class:`AssetRef` (newest first) and an asynchronous "decode this
asset to a pixel buffer of roughly this size" call.  :class:`PhotoLibrary`
describes that contract and :class:`FolderPhotoLibrary` implements it over
a directory tree, reading creation timestamps from EXIF where available and
optionally skipping perceptual duplicates.
"""

from __future__ import annotations

import asyncio
import datetime as _dt
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

import imagehash
import numpy as np
from loguru import logger
from PIL import ExifTags, Image, ImageOps

from .errors import DecodeError

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".bmp", ".webp", ".tif", ".tiff")
CONTENT_MODES = ("aspect_fit", "aspect_fill")

_EXIF_IFD = 0x8769
# Map EXIF tag names to their numerical IDs
_DATETIME_TAG = None
for k, v in ExifTags.TAGS.items():
    if v == "DateTimeOriginal":
        _DATETIME_TAG = k
        break


@dataclass(frozen=True)
class AssetRef:
    """Opaque reference to a photo in a library."""
    id: str
    created_at: float  # seconds since epoch


class PhotoLibrary:
    """Base class for photo sources consumed by the pipeline."""

    def enumerate_assets(self) -> List[AssetRef]:
        """Return every asset, ordered by creation date descending."""
        raise NotImplementedError

    async def decode_image(self, asset: AssetRef, target_size: Tuple[int, int],
                           content_mode: str = "aspect_fit") -> np.ndarray:
        """Decode ``asset`` to an RGB ``uint8`` array near ``target_size``.

        Raises :class:`~galleryface_cluster.errors.DecodeError` on failure.
        """
        raise NotImplementedError


def sort_assets(assets: List[AssetRef]) -> List[AssetRef]:
    """Order assets newest first, breaking ties by id for stability."""
    by_id = sorted(assets, key=lambda a: a.id)
    return sorted(by_id, key=lambda a: a.created_at, reverse=True)


def iter_image_paths(root: Path) -> Iterator[Path]:
    """Yield all files under ``root`` that have an image‑like extension."""
    for dirpath, _dirnames, filenames in os.walk(root):
        for fn in sorted(filenames):
            if fn.lower().endswith(IMAGE_EXTENSIONS):
                yield Path(dirpath) / fn


def read_image_metadata(path: Path, compute_phash: bool = False) -> Optional[Tuple[float, Optional[str], Optional[str]]]:
    """Read the creation timestamp (and optionally a perceptual hash) of an image.

    Returns ``(timestamp, exif_datetime, phash)`` or ``None`` if the file
    cannot be opened.  The timestamp comes from EXIF ``DateTimeOriginal``
    when present, otherwise from the file's modification time.
    """
    try:
        with Image.open(path) as im:
            exif_datetime = None
            exif = im.getexif()
            if _DATETIME_TAG is not None:
                value = exif.get_ifd(_EXIF_IFD).get(_DATETIME_TAG)
                if value:
                    exif_datetime = str(value).strip()
            timestamp = path.stat().st_mtime
            if exif_datetime:
                try:
                    timestamp = _dt.datetime.strptime(exif_datetime, "%Y:%m:%d %H:%M:%S").timestamp()
                except ValueError:
                    logger.debug(f"Unparseable EXIF datetime {exif_datetime!r} in {path}")
            phash = str(imagehash.phash(im)) if compute_phash else None
            return timestamp, exif_datetime, phash
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        logger.warning(f"Cannot read metadata of {path}: {exc}")
        return None


def _scaled_size(width: int, height: int, target: Tuple[int, int], content_mode: str) -> Tuple[int, int]:
    """Size that fits (or fills) ``target`` while keeping aspect ratio; never upscales."""
    tw, th = target
    if content_mode == "aspect_fill":
        scale = max(tw / width, th / height)
    else:
        scale = min(tw / width, th / height)
    scale = min(1.0, scale)
    return max(1, int(round(width * scale))), max(1, int(round(height * scale)))


def decode_file(path: Path, target_size: Tuple[int, int], content_mode: str = "aspect_fit") -> np.ndarray:
    """Synchronously decode an image file to an RGB array."""
    if content_mode not in CONTENT_MODES:
        raise ValueError(f"Unknown content mode {content_mode!r}")
    try:
        with Image.open(path) as im:
            im = ImageOps.exif_transpose(im).convert("RGB")
            size = _scaled_size(im.width, im.height, target_size, content_mode)
            if size != im.size:
                im = im.resize(size, Image.Resampling.LANCZOS)
            return np.asarray(im, dtype=np.uint8)
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise DecodeError(f"Cannot decode {path}: {exc}") from exc


class FolderPhotoLibrary(PhotoLibrary):
    """Photo library backed by a directory tree.

    Asset ids are POSIX paths relative to ``root``.

    Parameters
    ----------
    root: Path
        Directory scanned recursively for images.
    use_phash: bool
        Skip images whose perceptual hash was already seen.
    """
    def __init__(self, root: Path, use_phash: bool = False) -> None:
        self.root = Path(root)
        self.use_phash = use_phash
        self._paths: Dict[str, Path] = {}

    def enumerate_assets(self) -> List[AssetRef]:
        if not self.root.is_dir():
            raise FileNotFoundError(f"Photo library {self.root} does not exist")
        assets: List[AssetRef] = []
        seen_hashes = set()
        self._paths.clear()
        for path in iter_image_paths(self.root):
            meta = read_image_metadata(path, compute_phash=self.use_phash)
            if meta is None:
                # Listed anyway so the failed decode is reported against this asset
                timestamp, phash = path.stat().st_mtime, None
            else:
                timestamp, _exif_datetime, phash = meta
            # Skip duplicate photos if using perceptual hashes
            if self.use_phash and phash:
                if phash in seen_hashes:
                    logger.debug(f"Skipping perceptual duplicate {path}")
                    continue
                seen_hashes.add(phash)
            asset_id = path.relative_to(self.root).as_posix()
            self._paths[asset_id] = path
            assets.append(AssetRef(id=asset_id, created_at=float(timestamp)))
        return sort_assets(assets)

    def path_for(self, asset: AssetRef) -> Path:
        return self._paths.get(asset.id, self.root / asset.id)

    async def decode_image(self, asset: AssetRef, target_size: Tuple[int, int],
                           content_mode: str = "aspect_fit") -> np.ndarray:
        return await asyncio.to_thread(decode_file, self.path_for(asset), target_size, content_mode)
