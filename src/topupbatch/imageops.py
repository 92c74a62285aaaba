"""
Image arithmetic and statistics over NIfTI files.

Statistics follow ``fslstats`` conventions: ranges cover every voxel, while
means, standard deviations and percentiles use non-zero voxels only.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Sequence, cast

import nibabel as nib
import numpy as np


class ImageReadError(ValueError):
    """Raised when an image cannot be loaded or has an unusable shape."""


class ImageGridError(ImageReadError):
    """Raised when images that must share a voxel grid do not."""


def _load(path: Path) -> Any:
    try:
        return cast(Any, nib.load(str(path)))
    except Exception as err:  # noqa: BLE001
        raise ImageReadError(f"Cannot read image {path}: {err}") from err


def _save(data: np.ndarray, like: Any, dest: Path) -> Path:
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    header = like.header.copy()
    header.set_data_dtype(np.float32)
    img = nib.Nifti1Image(np.asarray(data, dtype=np.float32), like.affine, header)
    nib.save(img, str(dest))
    return dest


def _data(path: Path) -> tuple[Any, np.ndarray]:
    img = _load(path)
    try:
        return img, np.asarray(img.get_fdata(dtype=np.float32))
    except Exception as err:  # noqa: BLE001
        raise ImageReadError(f"Cannot read image data {path}: {err}") from err


def n_volumes(path: Path) -> int:
    shape = _load(path).shape
    if len(shape) < 3:
        raise ImageReadError(f"Image {path} has fewer than 3 dimensions: {shape}")
    if len(shape) == 3:
        return 1
    return int(np.prod(shape[3:]))


def reduce_to_single_volume(source: Path, dest: Path) -> int:
    """
    Write a single-volume copy of ``source`` to ``dest`` (``.nii.gz``).

    Multi-volume inputs are averaged over time; single-volume inputs are
    re-saved unchanged. Returns the input volume count.
    """
    count = n_volumes(source)
    if count <= 0:
        raise ImageReadError(f"Image {source} has no volumes")
    img, data = _data(source)
    if data.ndim > 3:
        data = data.reshape(data.shape[:3] + (-1,))
        data = data.mean(axis=3) if count > 1 else data[..., 0]
    _save(data, img, dest)
    return count


def abs_difference(first: Path, second: Path, dest: Path) -> Path:
    img, a = _data(first)
    _, b = _data(second)
    if a.shape != b.shape:
        raise ImageGridError(f"Shape mismatch: {first} {a.shape} vs {second} {b.shape}")
    return _save(np.abs(a - b), img, dest)


def merge_volumes(sources: Sequence[Path], dest: Path) -> Path:
    """Concatenate images along time; each source contributes all of its volumes."""
    if not sources:
        raise ValueError("merge_volumes needs at least one source")
    first_img = None
    volumes = []
    for source in sources:
        img, data = _data(source)
        if first_img is None:
            first_img = img
        if data.ndim == 3:
            data = data[..., np.newaxis]
        volumes.append(data.reshape(data.shape[:3] + (-1,)))
    shapes = {v.shape[:3] for v in volumes}
    if len(shapes) != 1:
        raise ImageGridError(f"Cannot merge images with different grids: {sorted(shapes)}")
    return _save(np.concatenate(volumes, axis=3), first_img, dest)


def extract_volume(source: Path, index: int, dest: Path) -> Path:
    img, data = _data(source)
    if data.ndim == 3:
        if index != 0:
            raise ImageReadError(f"Volume {index} out of range for 3D image {source}")
        return _save(data, img, dest)
    data = data.reshape(data.shape[:3] + (-1,))
    if not 0 <= index < data.shape[3]:
        raise ImageReadError(f"Volume {index} out of range for {source} ({data.shape[3]} vols)")
    return _save(data[..., index], img, dest)


def scale_image(source: Path, factor: float, dest: Path) -> Path:
    img, data = _data(source)
    return _save(data * float(factor), img, dest)


def pixel_spacing(path: Path, axis: int) -> float:
    """Voxel size along a zero-based spatial axis (1 is the phase-encode ``j`` axis)."""
    zooms = _load(path).header.get_zooms()
    return float(zooms[axis])


def header_summary(path: Path) -> dict:
    img = _load(path)
    shape = tuple(int(s) for s in img.shape)
    zooms = tuple(float(z) for z in img.header.get_zooms())
    return {"dim": shape, "pixdim": zooms}


def range_mean_std(path: Path) -> dict:
    _, data = _data(path)
    nonzero = data[data != 0]
    return {
        "min": float(data.min()) if data.size else 0.0,
        "max": float(data.max()) if data.size else 0.0,
        "mean": float(nonzero.mean()) if nonzero.size else 0.0,
        "std": float(nonzero.std()) if nonzero.size else 0.0,
    }


def abs_percentile_stats(path: Path, percentiles: Sequence[float] = (50, 95, 99)) -> dict:
    """Mean, percentiles and range of ``|image|``; keys are ``mean``, ``p50``... ``min``, ``max``."""
    _, data = _data(path)
    data = np.abs(data)
    nonzero = data[data != 0]
    stats = {"mean": float(nonzero.mean()) if nonzero.size else 0.0}
    for pct in percentiles:
        value = float(np.percentile(nonzero, pct)) if nonzero.size else 0.0
        stats[f"p{int(pct)}"] = value
    stats["min"] = float(data.min()) if data.size else 0.0
    stats["max"] = float(data.max()) if data.size else 0.0
    return stats


def format_stats(stats: dict) -> str:
    return " ".join(f"{value:.6f}" for value in stats.values())
