from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from rgbdcalib.core.image_io import iter_frame_pairs, load_cloud, load_color_u8
from rgbdcalib.errors import MalformedInputError


def test_load_color_u8_png(tmp_path: Path) -> None:
    arr = np.zeros((8, 8, 3), dtype=np.uint8)
    arr[..., 0] = 200
    arr[..., 2] = 10
    p = tmp_path / "a.png"
    Image.fromarray(arr).save(p)

    img = load_color_u8(p)
    assert img.shape == (8, 8, 3)
    assert img.dtype == np.uint8
    # channel order is RGB whichever backend decoded it
    assert int(img[0, 0, 0]) == 200
    assert int(img[0, 0, 2]) == 10


def test_load_cloud_and_pairs(tmp_path: Path) -> None:
    pts = np.ones((4, 5, 3))
    pts[0, 0] = np.nan
    np.save(tmp_path / "0001.npy", pts)
    Image.fromarray(np.zeros((4, 5, 3), dtype=np.uint8)).save(tmp_path / "0001.png")
    Image.fromarray(np.zeros((4, 5, 3), dtype=np.uint8)).save(tmp_path / "0002.png")
    np.save(tmp_path / "0000.npy", pts)

    cloud = load_cloud(tmp_path / "0001.npy")
    assert cloud.points.shape == (4, 5, 3)
    assert cloud.points.dtype == np.float32
    assert not cloud.is_dense

    pairs = iter_frame_pairs(tmp_path)
    assert [stem for stem, _img, _cloud in pairs] == ["0001"]

    np.save(tmp_path / "flat.npy", np.ones((4, 5)))
    with pytest.raises(MalformedInputError):
        load_cloud(tmp_path / "flat.npy")
    with pytest.raises(FileNotFoundError):
        iter_frame_pairs(tmp_path / "missing")
