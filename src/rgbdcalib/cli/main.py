from __future__ import annotations

import argparse
import logging
from pathlib import Path

from rgbdcalib.api.model_io import save_calibration_result
from rgbdcalib.calib.calibration import Calibration
from rgbdcalib.calib.publisher import LoggingPublisher
from rgbdcalib.config import load_calibration_config
from rgbdcalib.core.image_io import iter_frame_pairs, load_cloud, load_color_u8

logger = logging.getLogger(__name__)


def run_calibrate(config_path: Path, data_dir: Path, out_dir: Path) -> Path:
    config = load_calibration_config(config_path)
    calib = Calibration.from_config(config, publisher=LoggingPublisher(level=logging.DEBUG))

    pairs = iter_frame_pairs(data_dir)
    if not pairs:
        raise FileNotFoundError(f"No <stem>.png + <stem>.npy pairs in {data_dir}")
    for stem, image_path, cloud_path in pairs:
        frame = calib.add_data(load_color_u8(image_path), load_cloud(cloud_path))
        logger.debug("frame %d <- %s", frame.id, stem)
    logger.info("loaded %d frame(s) from %s", len(pairs), data_dir)

    calib.perform()
    calib.optimize()
    calib.publish_data()
    return save_calibration_result(out_dir, calib.result())


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="rgbdcalib")
    parser.add_argument(
        "--log",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level.",
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    val = sub.add_parser("validate-config", help="Parse and validate a calibration config (JSON).")
    val.add_argument("config", type=Path)

    cal = sub.add_parser(
        "calibrate",
        help="Calibrate a color/depth pair from <stem>.png + <stem>.npy frame pairs.",
    )
    cal.add_argument("config", type=Path)
    cal.add_argument("data_dir", type=Path)
    cal.add_argument("--out", type=Path, required=True, help="Output directory for calibration.json + depth_models.npz.")

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.cmd == "validate-config":
        cfg = load_calibration_config(args.config)
        print(f"OK {args.config} ({len(cfg.checkerboards)} checkerboard(s), ratio {cfg.downsample_ratio})")
        return 0

    if args.cmd == "calibrate":
        out = run_calibrate(args.config, args.data_dir, args.out)
        print(f"Wrote {out}")
        return 0

    raise AssertionError(f"Unhandled cmd: {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
