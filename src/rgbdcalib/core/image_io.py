from __future__ import annotations

from pathlib import Path

import numpy as np
from PIL import Image

from rgbdcalib.core.cloud import PointCloud
from rgbdcalib.errors import MalformedInputError


def load_color_u8(path: str | Path) -> np.ndarray:
    """
    Load an image as RGB uint8 (H,W,3).

    Primary backend is OpenCV (if installed). Pillow is used as a fallback.
    """
    p = Path(path)
    try:
        import cv2  # type: ignore

        img = cv2.imread(str(p), cv2.IMREAD_COLOR)
        if img is not None:
            img = cv2.cvtColor(img, cv2.COLOR_BGR2RGB)
            if img.dtype != np.uint8:
                img = np.clip(img, 0, 255).astype(np.uint8)
            return img
    except Exception:
        # Fall back to Pillow below.
        pass

    with Image.open(p) as im:
        im = im.convert("RGB")
        arr = np.asarray(im, dtype=np.uint8)
    return arr


def load_cloud(path: str | Path) -> PointCloud:
    """Organized (H,W,3) cloud in metres stored as .npy; missing cells are NaN."""
    arr = np.load(str(path))
    try:
        return PointCloud.from_array(np.asarray(arr, dtype=np.float32))
    except ValueError as e:
        raise MalformedInputError(f"{path}: {e}") from e


def iter_frame_pairs(data_dir: str | Path) -> list[tuple[str, Path, Path]]:
    """
    (stem, image path, cloud path) for every `<stem>.png` with a matching
    `<stem>.npy`, sorted by stem.
    """
    data_dir = Path(data_dir)
    if not data_dir.is_dir():
        raise FileNotFoundError(f"Missing {data_dir}")
    pairs: list[tuple[str, Path, Path]] = []
    for img in sorted(data_dir.glob("*.png")):
        cloud = img.with_suffix(".npy")
        if cloud.exists():
            pairs.append((img.stem, img, cloud))
    return pairs
