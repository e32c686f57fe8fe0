from __future__ import annotations

from types import SimpleNamespace

import numpy as np
import pytest

from rgbdcalib.calib.bootstrap import collect_bootstrap_views, estimate_plane_based_extrinsics, estimate_transform
from rgbdcalib.core.geometry import Plane, Pose
from rgbdcalib.errors import InsufficientSamplesError

from rgbd_scene import TRUE_COLOR_POSE, make_scene, make_sensors, make_view


class _CountingExtractor:
    def __init__(self, per_call: int = 1, productive: set[int] | None = None) -> None:
        self.per_call = per_call
        self.productive = productive
        self.calls: list[int] = []

    def extract(self, frame, *, constraint=None, only_images=False):
        self.calls.append(frame.id)
        assert constraint is not None and constraint.distance == pytest.approx(2.0)
        if self.productive is not None and frame.id not in self.productive:
            return []
        return [object() for _ in range(self.per_call)]


def _frames(n: int):
    return [SimpleNamespace(id=i + 1) for i in range(n)]


def test_stops_at_min_views():
    ex = _CountingExtractor()
    views = collect_bootstrap_views(_frames(25), ex, rng=np.random.default_rng(0), min_views=10)
    assert len(views) == 10
    assert len(ex.calls) == 10


def test_terminates_when_frames_exhausted():
    ex = _CountingExtractor()
    views = collect_bootstrap_views(_frames(4), ex, rng=np.random.default_rng(0), min_views=10)
    assert len(ex.calls) == 4
    assert len(views) == 4

    barren = _CountingExtractor(productive=set())
    assert collect_bootstrap_views(_frames(6), barren, rng=np.random.default_rng(0)) == []
    assert len(barren.calls) == 6


def test_sampling_is_reproducible_with_seed():
    a = _CountingExtractor()
    b = _CountingExtractor()
    collect_bootstrap_views(_frames(30), a, rng=np.random.default_rng(42), min_views=10)
    collect_bootstrap_views(_frames(30), b, rng=np.random.default_rng(42), min_views=10)
    assert a.calls == b.calls


def _plane_pairs(pose: Pose, n: int, seed: int = 0):
    rng = np.random.default_rng(seed)
    color, depth = [], []
    for _ in range(n):
        nrm = rng.normal(size=3) * np.array([0.4, 0.4, 1.0])
        nrm /= np.linalg.norm(nrm)
        pc = Plane(normal=nrm, offset=float(-rng.uniform(0.8, 2.0)))
        color.append(pc)
        depth.append(pc.transformed(pose))
    return color, depth


def test_plane_based_solver_recovers_pose():
    color, depth = _plane_pairs(TRUE_COLOR_POSE, 5)
    pose = estimate_plane_based_extrinsics(color, depth)
    ang, dist = pose.distance_to(TRUE_COLOR_POSE)
    assert ang < 1e-7
    assert dist < 1e-9


def test_plane_based_solver_needs_three_varied_pairs():
    color, depth = _plane_pairs(TRUE_COLOR_POSE, 2)
    with pytest.raises(InsufficientSamplesError):
        estimate_plane_based_extrinsics(color, depth)

    p = Plane(normal=np.array([0.0, 0.0, 1.0]), offset=-1.0)
    same = [p, Plane(normal=p.normal, offset=-1.5), Plane(normal=p.normal, offset=-2.0)]
    with pytest.raises(InsufficientSamplesError):
        estimate_plane_based_extrinsics(same, [q.transformed(TRUE_COLOR_POSE) for q in same])


def test_estimate_transform_from_views_skips_missing_planes():
    color, depth = make_sensors()
    frames, poses = make_scene(4, color, depth)
    views = [make_view(f, p) for f, p in zip(frames, poses)]
    pose = estimate_transform([None] + views)
    ang, dist = pose.distance_to(TRUE_COLOR_POSE)
    assert ang < 1e-7
    assert dist < 1e-7
