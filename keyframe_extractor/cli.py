"""Command-line interface for keyframe-extractor."""

import argparse
import logging
import sys

from . import __version__
from .config import ImageFormat, ProcessingOptions, RunConfig
from .pipeline import format_time, run_pipeline


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keyframe-extractor",
        description="Save one sharp screenshot per distinct item shown in a video.",
        epilog=(
            "Examples:\n"
            "  keyframe-extractor input.mp4\n"
            "  keyframe-extractor input.mp4 -o shots/ --format jpeg\n"
            "  keyframe-extractor input.mp4 --change-threshold 0.2 --min-blur 50\n"
            "  keyframe-extractor input.mp4 --report shots.json\n"
            "\n"
            "Detection options can also be set with KEYFRAME_* environment\n"
            "variables (e.g. KEYFRAME_CHANGE_THRESHOLD=0.2); flags win.\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "input",
        help="Path to the input video file.",
    )
    parser.add_argument(
        "-o", "--output-dir",
        default=None,
        help="Directory for screenshots. Defaults to <input>_screenshots/.",
    )

    # ── Detection options ───────────────────────────────────────────

    detect_group = parser.add_argument_group("change detection")
    detect_group.add_argument(
        "--change-threshold",
        type=float,
        default=None,
        help="Difference from baseline (0-1) that counts as a change. Default: 0.12.",
    )
    detect_group.add_argument(
        "--sample-interval",
        type=float,
        default=None,
        help="Seconds between frame samples. Default: 0.2.",
    )
    detect_group.add_argument(
        "--motion-smoothing",
        type=int,
        default=None,
        help="Number of recent differences averaged. Default: 3.",
    )
    detect_group.add_argument(
        "--fast-diff",
        action="store_true",
        help="Use plain pixel difference instead of histogram + block comparison.",
    )

    # ── Selection options ───────────────────────────────────────────

    select_group = parser.add_argument_group("frame selection")
    select_group.add_argument(
        "--min-interval",
        type=float,
        default=None,
        help="Minimum seconds between two screenshots. Default: 1.0.",
    )
    select_group.add_argument(
        "--stability-window",
        type=float,
        default=None,
        help="Seconds to collect candidate frames after a change. Default: 0.5.",
    )
    select_group.add_argument(
        "--stability-threshold",
        type=float,
        default=None,
        help="Max difference (0-1) for a frame to count as stable. Default: 0.05.",
    )
    select_group.add_argument(
        "--min-blur",
        type=float,
        default=None,
        help="Minimum sharpness (Laplacian variance) to keep a frame. Default: 100.",
    )

    # ── Source options ──────────────────────────────────────────────

    source_group = parser.add_argument_group("video source")
    source_group.add_argument(
        "--seek-timeout",
        type=float,
        default=1.0,
        help="Seconds to wait for a seek before using the last frame. Default: 1.0.",
    )
    source_group.add_argument(
        "--settle-delay",
        type=float,
        default=0.0,
        help="Fixed wait in seconds between seek and read. Default: 0.",
    )

    # ── Output options ──────────────────────────────────────────────

    output_group = parser.add_argument_group("output")
    output_group.add_argument(
        "--format",
        choices=[f.value for f in ImageFormat],
        default=ImageFormat.PNG.value,
        help="Screenshot image format. Default: png.",
    )
    output_group.add_argument(
        "--jpeg-quality",
        type=int,
        default=92,
        help="JPEG quality (1-95). Default: 92.",
    )
    output_group.add_argument(
        "--report",
        default=None,
        help="Path to write a JSON report.",
    )
    output_group.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging.",
    )
    output_group.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> RunConfig:
    """Environment defaults first, then explicit flags on top."""
    options = ProcessingOptions.from_env().with_overrides(
        change_threshold=args.change_threshold,
        min_screenshot_interval=args.min_interval,
        sample_interval=args.sample_interval,
        motion_smoothing=args.motion_smoothing,
        stability_window=args.stability_window,
        stability_threshold=args.stability_threshold,
        min_blur_threshold=args.min_blur,
    )
    return RunConfig(
        input_path=args.input,
        output_dir=args.output_dir,
        seek_timeout=args.seek_timeout,
        settle_delay=args.settle_delay,
        options=options,
        fast_diff=args.fast_diff,
        image_format=ImageFormat(args.format),
        jpeg_quality=args.jpeg_quality,
        report_path=args.report,
    )


def main(argv=None):
    args = build_parser().parse_args(argv)

    # Configure logging
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        config = config_from_args(args)
        screenshots = run_pipeline(config)
        print(f"\n{len(screenshots)} screenshot(s):")
        for shot in screenshots:
            print(f"  #{shot.index:<3d} {format_time(shot.timestamp)}  sharpness {shot.sharpness_score:.1f}")
    except Exception as e:
        logging.getLogger(__name__).error("Pipeline failed: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
