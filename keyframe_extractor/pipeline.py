"""Main pipeline: video file in, one screenshot per distinct item out.

Steps:
1. Open the video and read its metadata
2. Sample frames and select key frames (engine)
3. Write each screenshot to the output directory as it is emitted
4. (Optional) Write a JSON report
"""

import json
import logging
import threading
import time
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from .config import RunConfig
from .engine import KeyFrameEngine, Screenshot
from .errors import ExtractionAbortedError
from .exporter import DirectoryExporter
from .extractor import VideoFrameSource
from .sharpness import clarity_index, clarity_label

logger = logging.getLogger(__name__)


def format_time(seconds: float) -> str:
    """Format seconds as M:SS."""
    mins = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{mins}:{secs:02d}"


def default_output_dir(input_path: str) -> str:
    input_p = Path(input_path)
    return str(input_p.with_name(f"{input_p.stem}_screenshots"))


def run_pipeline(
    config: RunConfig,
    cancel_event: Optional[threading.Event] = None,
) -> list[Screenshot]:
    """
    Run the full extraction pipeline.

    Args:
        config: Run configuration. ``output_dir`` defaults to
            <input>_screenshots next to the input file.
        cancel_event: Optional event; setting it stops sampling after the
            current sample. Screenshots found so far are still exported.

    Returns:
        The emitted screenshots, in timestamp order.
    """
    input_p = Path(config.input_path)
    if not input_p.exists():
        raise FileNotFoundError(f"Input video not found: {config.input_path}")

    output_dir = config.output_dir or default_output_dir(config.input_path)

    # Build the engine first so bad options fail before the video is opened.
    exporter = DirectoryExporter(
        output_dir,
        image_format=config.image_format,
        quality=config.jpeg_quality,
    )
    engine = KeyFrameEngine(
        config.options,
        use_histogram=not config.fast_diff,
        sink=exporter,
    )

    # ── Step 1: Open video ──────────────────────────────────────────

    aborted: Optional[ExtractionAbortedError] = None
    with VideoFrameSource(
        config.input_path,
        seek_timeout=config.seek_timeout,
        settle_delay=config.settle_delay,
    ) as source:
        meta = source.meta
        logger.info(
            "Video: %dx%d, %.1f fps, %d frames (%s)",
            meta.width, meta.height, meta.fps, meta.total_frames,
            format_time(meta.duration_seconds),
        )

        # ── Step 2-3: Sample, select and export ─────────────────────

        t0 = time.time()
        try:
            screenshots = engine.run(source, cancel_event=cancel_event)
        except ExtractionAbortedError as e:
            aborted = e
            screenshots = e.screenshots
        elapsed = time.time() - t0

    logger.info(
        "Selected %d screenshot(s) in %.1fs. Output: %s",
        len(screenshots), elapsed, output_dir,
    )

    # ── Step 4: Report ──────────────────────────────────────────────

    if config.report_path:
        report = {
            "input": config.input_path,
            "output_dir": output_dir,
            "video": {
                "width": meta.width,
                "height": meta.height,
                "fps": meta.fps,
                "total_frames": meta.total_frames,
                "codec": meta.codec,
                "duration_seconds": round(meta.duration_seconds, 2),
            },
            "settings": {
                **asdict(config.options),
                "fast_diff": config.fast_diff,
                "image_format": config.image_format.value,
                "seek_timeout": config.seek_timeout,
            },
            "stats": {
                "frames_sampled": engine.frame_number,
                "screenshots": len(screenshots),
                "processing_seconds": round(elapsed, 2),
                "aborted": aborted is not None,
            },
            "screenshots": [
                {
                    **shot.to_dict(),
                    "time": format_time(shot.timestamp),
                    "clarity": clarity_label(clarity_index(shot.sharpness_score)),
                    "file": str(exporter.path_for(shot.id) or ""),
                }
                for shot in screenshots
            ],
        }
        Path(config.report_path).write_text(json.dumps(report, indent=2))
        logger.info("Report written to %s", config.report_path)

    if aborted is not None:
        raise aborted
    return screenshots
