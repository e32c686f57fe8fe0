from __future__ import annotations

import enum
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

import numpy as np

from rgbdcalib.calib.bootstrap import ViewExtractor, collect_bootstrap_views, estimate_transform
from rgbdcalib.calib.extraction import CheckerboardViewsExtractor
from rgbdcalib.calib.full_opt import optimize_all
from rgbdcalib.calib.publisher import Publisher
from rgbdcalib.calib.transform_opt import optimize_transform
from rgbdcalib.calib.undistortion import DepthData, DepthUndistortionEstimation
from rgbdcalib.config import BootstrapConfig, CalibrationConfig, SolverConfig
from rgbdcalib.core.checkerboard import Checkerboard
from rgbdcalib.core.cloud import PointCloud
from rgbdcalib.core.depth_models import GlobalModel, LocalModel
from rgbdcalib.core.geometry import Pose
from rgbdcalib.core.sensors import DepthSensor, PinholeSensor
from rgbdcalib.core.views import CheckerboardView, Frame, build_frame
from rgbdcalib.errors import CalibrationError, InsufficientSamplesError, SensorNotSetError

logger = logging.getLogger(__name__)

ExtractorFactory = Callable[[Sequence[Checkerboard]], ViewExtractor]


class Stage(enum.Enum):
    INIT = "init"
    BOOTSTRAP_EXTRINSICS = "bootstrap_extrinsics"
    ESTIMATE_DISTORTION = "estimate_distortion"
    REFINE_EXTRINSICS = "refine_extrinsics"
    DONE = "done"


@dataclass(frozen=True)
class CalibrationResult:
    color_pose: Pose  # color sensor in the depth frame
    depth_intrinsics: np.ndarray  # (4,) fx, fy, cx, cy after the intrinsics delta
    local_model: Optional[LocalModel] = None
    global_model: Optional[GlobalModel] = None
    summaries: dict[str, dict[str, float]] = field(default_factory=dict)


def _default_extractor_factory(checkerboards: Sequence[Checkerboard]) -> ViewExtractor:
    return CheckerboardViewsExtractor(checkerboards=list(checkerboards))


class Calibration:
    """
    RGB-D extrinsic calibration run.

    Stages, in order and never revisited:

      INIT -> [BOOTSTRAP_EXTRINSICS] -> [ESTIMATE_DISTORTION] -> REFINE_EXTRINSICS -> DONE

    `perform()` covers the first three, `optimize()` the refinement. The run
    owns its frames and views; the sensors are shared and updated in place
    after each stage.
    """

    def __init__(
        self,
        *,
        color_sensor: PinholeSensor | None,
        depth_sensor: DepthSensor | None,
        checkerboards: Sequence[Checkerboard],
        downsample_ratio: int = 1,
        estimate_initial_transform: bool = False,
        bootstrap: BootstrapConfig = BootstrapConfig(),
        solver: SolverConfig = SolverConfig(),
        publisher: Publisher | None = None,
        rng: np.random.Generator | None = None,
        extractor_factory: ExtractorFactory | None = None,
    ) -> None:
        self.color_sensor = color_sensor
        self.depth_sensor = depth_sensor
        self.checkerboards = list(checkerboards)
        self.downsample_ratio = int(downsample_ratio)
        self.estimate_initial_transform = bool(estimate_initial_transform)
        self.bootstrap = bootstrap
        self.solver = solver
        self.publisher = publisher
        self.rng = rng if rng is not None else np.random.default_rng(bootstrap.seed)
        self.extractor_factory = extractor_factory or _default_extractor_factory

        self.estimate_depth_undistortion_model = False
        self.local_model: LocalModel | None = None
        self.global_model: GlobalModel | None = None
        self.estimator: DepthUndistortionEstimation | None = None

        self._stage = Stage.INIT
        self._performed = False
        self._frames: list[Frame] = []
        self._test_frames: list[Frame] = []
        self._views: list[CheckerboardView | None] = []
        self._depth_data: list[DepthData] = []
        self._summaries: dict[str, dict[str, float]] = {}
        self._optimized_intrinsics = depth_sensor.intrinsics() if depth_sensor is not None else None

    @classmethod
    def from_config(
        cls,
        config: CalibrationConfig,
        *,
        publisher: Publisher | None = None,
        rng: np.random.Generator | None = None,
        extractor_factory: ExtractorFactory | None = None,
    ) -> "Calibration":
        depth = config.build_depth_sensor()
        color = config.build_color_sensor(depth_sensor=depth)
        calib = cls(
            color_sensor=color,
            depth_sensor=depth,
            checkerboards=config.build_checkerboards(),
            downsample_ratio=config.downsample_ratio,
            estimate_initial_transform=config.estimate_initial_transform,
            bootstrap=config.bootstrap,
            solver=config.solver,
            publisher=publisher,
            rng=rng,
            extractor_factory=extractor_factory,
        )
        if config.estimate_depth_undistortion_model:
            size = (depth.width_px, depth.height_px)
            calib.init_depth_undistortion_model(
                LocalModel.identity(size, config.undistortion.local_bin_size), GlobalModel.identity(size)
            )
        return calib

    @property
    def stage(self) -> Stage:
        return self._stage

    @property
    def frames(self) -> list[Frame]:
        return list(self._frames)

    @property
    def views(self) -> list[CheckerboardView | None]:
        return list(self._views)

    @property
    def depth_data(self) -> list[DepthData]:
        return list(self._depth_data)

    @property
    def optimized_intrinsics(self) -> np.ndarray | None:
        return None if self._optimized_intrinsics is None else self._optimized_intrinsics.copy()

    @property
    def summaries(self) -> dict[str, dict[str, float]]:
        return dict(self._summaries)

    def _require_sensors(self) -> tuple[PinholeSensor, DepthSensor]:
        if self.color_sensor is None:
            raise SensorNotSetError("color sensor not set")
        if self.depth_sensor is None:
            raise SensorNotSetError("depth sensor not set")
        return self.color_sensor, self.depth_sensor

    def _build_frame(self, image: np.ndarray, cloud: PointCloud | np.ndarray, frame_id: int) -> Frame:
        color, depth = self._require_sensors()
        return build_frame(
            frame_id=frame_id,
            image=image,
            cloud=cloud,
            color_sensor=color,
            depth_sensor=depth,
            ratio=self.downsample_ratio,
        )

    def add_data(self, image: np.ndarray, cloud: PointCloud | np.ndarray) -> Frame:
        frame = self._build_frame(image, cloud, len(self._frames) + 1)
        self._frames.append(frame)
        logger.debug("added frame %d", frame.id)
        return frame

    def add_test_data(self, image: np.ndarray, cloud: PointCloud | np.ndarray) -> Frame:
        """Frames kept for publishing only; they take no part in the estimation."""
        frame = self._build_frame(image, cloud, len(self._frames) + len(self._test_frames) + 1)
        self._test_frames.append(frame)
        return frame

    def add_checkerboard_views(self, views: Sequence[CheckerboardView]) -> None:
        self._views.extend(views)

    def init_depth_undistortion_model(
        self,
        local_model: LocalModel,
        global_model: GlobalModel,
        estimator: DepthUndistortionEstimation | None = None,
    ) -> None:
        _color, depth = self._require_sensors()
        self.local_model = local_model
        self.global_model = global_model
        self.estimator = estimator or DepthUndistortionEstimation(
            depth_sensor=depth,
            local_model=local_model,
            global_model=global_model,
            max_threads=self.solver.max_threads,
        )
        self.estimate_depth_undistortion_model = True

    def _advance(self, stage: Stage) -> None:
        logger.info("stage %s -> %s", self._stage.value, stage.value)
        self._stage = stage

    def perform(self) -> None:
        """Initial extrinsics, optional depth-distortion estimation, view extraction."""
        color, depth = self._require_sensors()
        if self._performed or self._stage is not Stage.INIT:
            raise CalibrationError(f"perform() already ran (stage {self._stage.value})")
        if not self._frames and not self._views:
            raise InsufficientSamplesError("no frames added")
        self._performed = True
        extractor = self.extractor_factory(self.checkerboards)

        if self.estimate_initial_transform or color.parent is None:
            self._advance(Stage.BOOTSTRAP_EXTRINSICS)
            boot_views = collect_bootstrap_views(
                self._frames,
                extractor,
                rng=self.rng,
                min_views=self.bootstrap.min_views,
                max_distance=self.bootstrap.max_distance,
            )
            color.set_pose(estimate_transform(boot_views), parent=depth)
            self._publish_pose("color_bootstrap", color.pose)

        if self.estimate_depth_undistortion_model:
            self._advance(Stage.ESTIMATE_DISTORTION)
            self._estimate_distortion(extractor)
        elif not self._views:
            self._views = list(extractor.extract_all(self._frames))

        color.set_pose(estimate_transform(self._views), parent=depth)
        self._publish_pose("color_initial", color.pose)

    def _estimate_distortion(self, extractor: ViewExtractor) -> None:
        color, _depth = self._require_sensors()
        if self.estimator is None:
            raise CalibrationError("depth undistortion model not initialized")
        views: list[CheckerboardView | None] = list(extractor.extract_all(self._frames, only_images=True))
        logger.info("distortion estimation: %d view(s)", len(views))
        self._depth_data = []
        for v in views:
            in_depth = v.color_checkerboard.transformed(color.pose)
            self._depth_data.append(self.estimator.add_depth_data(v.frame.cloud, in_depth, ratio=v.frame.ratio))

        logger.info("estimating local undistortion model")
        self.estimator.estimate_local_model()
        logger.info("re-estimating local undistortion model")
        self.estimator.estimate_local_model_reverse()
        logger.info("estimating global undistortion model")
        self.estimator.estimate_global_model()

        dropped = 0
        for i, data in enumerate(self._depth_data):
            if data.plane_extracted and data.estimated_plane is not None:
                views[i] = views[i].with_plane_inliers(data.estimated_plane)
            else:
                views[i] = None
                dropped += 1
        if dropped:
            logger.warning("distortion estimation: %d view(s) without a depth plane cleared", dropped)
        self._views = views

    def _undistorted_views(self) -> list[CheckerboardView]:
        collected: list[tuple[int, CheckerboardView]] = []
        lock = threading.Lock()

        def build(i: int) -> None:
            view = self._views[i]
            data = self._depth_data[i]
            if view is None or data.undistorted_cloud is None or data.estimated_plane is None:
                return
            und = view.with_frame(view.frame.with_cloud(data.undistorted_cloud), "_undistorted")
            und = und.with_plane_inliers(data.estimated_plane)
            with lock:
                collected.append((i, und))

        with ThreadPoolExecutor(max_workers=self.solver.max_threads) as pool:
            list(pool.map(build, range(len(self._views))))
        collected.sort(key=lambda item: item[0])
        return [v for _i, v in collected]

    def optimize(self) -> None:
        """Joint refinement; the distortion-aware problem is used when a distortion model was estimated."""
        color, depth = self._require_sensors()
        if self._stage is Stage.DONE or self._stage is Stage.REFINE_EXTRINSICS:
            raise CalibrationError(f"optimize() called in stage {self._stage.value}")
        if not self._views:
            raise InsufficientSamplesError("no checkerboard views; call perform() first")
        self._advance(Stage.REFINE_EXTRINSICS)

        if self.estimate_depth_undistortion_model and self._depth_data:
            und_views = self._undistorted_views()
            res = optimize_all(
                views=und_views,
                color_sensor=color,
                depth_sensor=depth,
                global_model=self.global_model,
                pixel_noise=self.solver.pixel_noise,
                max_iterations=self.solver.all_max_iterations,
            )
            color.set_pose(res.color_pose, parent=depth)
            self.global_model.coeffs = res.global_coeffs
            fx, fy, cx, cy = self._optimized_intrinsics
            d = res.delta
            self._optimized_intrinsics = np.array([fx * d[0], fy * d[1], cx + d[2], cy + d[3]], dtype=np.float64)
            self._summaries["optimize_all"] = dict(res.diagnostics)
            logger.info("intrinsics delta: %s", np.array2string(d, precision=6))
        else:
            res = optimize_transform(
                views=self._views,
                color_sensor=color,
                depth_sensor=depth,
                pixel_noise=self.solver.pixel_noise,
                f_scale=self.solver.cauchy_scale,
                max_iterations=self.solver.transform_max_iterations,
            )
            color.set_pose(res.color_pose, parent=depth)
            self._summaries["optimize_transform"] = dict(res.diagnostics)

        self._advance(Stage.DONE)
        self._publish_pose("color_optimized", color.pose)

    def result(self) -> CalibrationResult:
        color, depth = self._require_sensors()
        return CalibrationResult(
            color_pose=color.pose,
            depth_intrinsics=self.optimized_intrinsics if self._optimized_intrinsics is not None else depth.intrinsics(),
            local_model=self.local_model,
            global_model=self.global_model,
            summaries=self.summaries,
        )

    def _publish_pose(self, name: str, pose: Pose) -> None:
        if self.publisher is None:
            return
        try:
            self.publisher.publish_pose(name, pose)
        except Exception as e:
            logger.warning("publisher failed on pose %s: %s", name, e)

    def publish_data(self) -> None:
        """Emit sensor poses, test frames and views; publisher errors are logged, never raised."""
        if self.publisher is None:
            return
        color, depth = self._require_sensors()
        self._publish_pose(depth.name, depth.pose)
        self._publish_pose(color.name, color.pose)
        for frame in self._test_frames:
            try:
                self.publisher.publish_frame(frame)
            except Exception as e:
                logger.warning("publisher failed on frame %d: %s", frame.id, e)
        for view in self._views:
            if view is None:
                continue
            try:
                self.publisher.publish_view(view)
            except Exception as e:
                logger.warning("publisher failed on view %s: %s", view.id, e)
