"""Screenshot sinks: receive emitted screenshots and progress updates.

Sinks are called synchronously from the sampling loop, once per emission
(in timestamp order) and once per sample for progress. A slow sink slows
the run down.
"""

import logging
from pathlib import Path
from typing import Optional

from .config import ImageFormat
from .encoder import save_frame
from .sharpness import clarity_index

logger = logging.getLogger(__name__)


class ScreenshotSink:
    """Base sink; every callback is a no-op."""

    def on_screenshot(self, screenshot):
        pass

    def on_progress(self, percent: float, current_time: float, duration: float):
        pass


class CollectingSink(ScreenshotSink):
    """Keeps every callback in memory, in call order."""

    def __init__(self):
        self.screenshots = []
        self.progress: list[tuple[float, float, float]] = []

    def on_screenshot(self, screenshot):
        self.screenshots.append(screenshot)

    def on_progress(self, percent: float, current_time: float, duration: float):
        self.progress.append((percent, current_time, duration))


class DirectoryExporter(ScreenshotSink):
    """Writes each screenshot to ``output_dir`` as it is emitted.

    Progress is logged at roughly every ``log_every_percent``.
    """

    def __init__(
        self,
        output_dir: str,
        image_format: ImageFormat = ImageFormat.PNG,
        quality: int = 92,
        log_every_percent: float = 10.0,
    ):
        self.output_dir = Path(output_dir)
        self.image_format = image_format
        self.quality = quality
        self.log_every_percent = log_every_percent

        self.files: dict[str, Path] = {}  # screenshot id -> written path
        self._next_progress_log = 0.0

    def filename_for(self, screenshot) -> str:
        ms = int(round(screenshot.timestamp * 1000))
        return f"screenshot_{screenshot.index:03d}_{ms:08d}ms{self.image_format.extension}"

    def on_screenshot(self, screenshot):
        path = save_frame(
            screenshot.frame,
            self.output_dir / self.filename_for(screenshot),
            self.image_format,
            self.quality,
        )
        self.files[screenshot.id] = path
        logger.info(
            "Saved screenshot #%d at %.2fs (sharpness %.1f, clarity %d) -> %s",
            screenshot.index, screenshot.timestamp, screenshot.sharpness_score,
            clarity_index(screenshot.sharpness_score), path.name,
        )

    def on_progress(self, percent: float, current_time: float, duration: float):
        if percent >= self._next_progress_log or percent >= 100:
            logger.info("Progress: %5.1f%% (%.1fs / %.1fs)", percent, current_time, duration)
            self._next_progress_log = percent + self.log_every_percent

    def path_for(self, screenshot_id: str) -> Optional[Path]:
        return self.files.get(screenshot_id)
