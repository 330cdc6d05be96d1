"""Frame acquisition: decoded pixel buffers at requested timestamps."""

import cv2
import math
import time
import logging
import numpy as np
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import InvalidInputError, SeekTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Frame:
    """An immutable RGB(A) pixel buffer captured at a video-relative time."""
    pixels: np.ndarray
    timestamp: float = 0.0

    def __post_init__(self):
        pixels = self.pixels
        if not isinstance(pixels, np.ndarray) or pixels.ndim != 3 or pixels.shape[2] not in (3, 4):
            raise InvalidInputError(
                "Frame pixels must be an HxWx3 (RGB) or HxWx4 (RGBA) array, "
                f"got shape {getattr(pixels, 'shape', None)}"
            )
        if pixels.shape[0] == 0 or pixels.shape[1] == 0:
            raise InvalidInputError(f"Frame has zero dimension: {pixels.shape[:2]}")
        if pixels.dtype != np.uint8:
            pixels = np.clip(pixels, 0, 255).astype(np.uint8)
        elif pixels.flags.writeable:
            # The caller keeps its buffer; the frame freezes its own copy.
            pixels = pixels.copy()
        pixels.setflags(write=False)
        object.__setattr__(self, "pixels", pixels)

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    @property
    def rgb(self) -> np.ndarray:
        """The RGB channels, dropping alpha if present."""
        return self.pixels[:, :, :3]

    def same_size(self, other: "Frame") -> bool:
        return self.width == other.width and self.height == other.height


@dataclass
class VideoMeta:
    """Metadata about the source video."""
    width: int
    height: int
    fps: float
    total_frames: int
    codec: str
    duration_seconds: float


def clamp_timestamp(timestamp: float, duration: float) -> float:
    """Clamp a requested seek time into [0, duration]."""
    if not math.isfinite(timestamp):
        return 0.0
    return min(max(0.0, timestamp), duration)


def _meta_from_capture(cap) -> VideoMeta:
    width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
    height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
    fps = cap.get(cv2.CAP_PROP_FPS)
    total_frames = int(cap.get(cv2.CAP_PROP_FRAME_COUNT))
    fourcc = int(cap.get(cv2.CAP_PROP_FOURCC))
    codec = "".join([chr((fourcc >> 8 * i) & 0xFF) for i in range(4)])
    duration = total_frames / fps if fps > 0 else 0

    return VideoMeta(
        width=width,
        height=height,
        fps=fps,
        total_frames=total_frames,
        codec=codec,
        duration_seconds=duration,
    )


def get_video_meta(video_path: str) -> VideoMeta:
    """Extract metadata from a video file."""
    cap = cv2.VideoCapture(video_path)
    if not cap.isOpened():
        raise InvalidInputError(f"Cannot open video: {video_path}")
    try:
        return _meta_from_capture(cap)
    finally:
        cap.release()


class FrameSource:
    """Interface for anything that can hand out frames by timestamp.

    ``seek_and_capture`` must clamp out-of-range timestamps and keep the
    frame dimensions constant for the whole run. It may raise
    SeekTimeoutError when a seek does not settle in time.
    """

    duration: float = 0.0
    width: int = 0
    height: int = 0

    def seek_and_capture(self, timestamp: float) -> Frame:
        raise NotImplementedError

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class RenderedFrameSource(FrameSource):
    """Frame source backed by a callable that renders pixels for a time.

    Useful for synthetic input: ``render(t)`` must return an HxWx3 RGB
    (or HxWx4 RGBA) uint8 array of constant shape.
    """

    def __init__(
        self,
        render: Callable[[float], np.ndarray],
        duration: float,
        width: int,
        height: int,
    ):
        self.render = render
        self.duration = duration
        self.width = width
        self.height = height
        self.requests: list[float] = []

    def seek_and_capture(self, timestamp: float) -> Frame:
        t = clamp_timestamp(timestamp, self.duration)
        self.requests.append(t)
        return Frame(np.ascontiguousarray(self.render(t)), timestamp=t)


class VideoFrameSource(FrameSource):
    """Seekable frame source over a video file decoded with OpenCV.

    Each seek + decode runs on a single worker thread and is awaited for at
    most ``seek_timeout`` seconds. A decode that overruns is left to finish
    in the background; until it does, further seeks fail fast with
    SeekTimeoutError carrying the last good frame.
    """

    def __init__(
        self,
        video_path: str,
        seek_timeout: float = 1.0,
        settle_delay: float = 0.0,
    ):
        self.video_path = video_path
        self.seek_timeout = seek_timeout
        self.settle_delay = settle_delay

        self._cap = cv2.VideoCapture(video_path)
        if not self._cap.isOpened():
            raise InvalidInputError(f"Cannot open video: {video_path}")

        self.meta = _meta_from_capture(self._cap)
        self.width = self.meta.width
        self.height = self.meta.height
        self.duration = self.meta.duration_seconds
        logger.debug(
            "Opened %s: %dx%d, %.1f fps, %.2fs (%s)",
            video_path, self.width, self.height, self.meta.fps, self.duration, self.meta.codec,
        )

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="seek")
        self._pending = None
        self._last_frame: Optional[Frame] = None

    def _frame_index(self, t: float) -> int:
        idx = int(round(t * self.meta.fps)) if self.meta.fps > 0 else 0
        return max(0, min(self.meta.total_frames - 1, idx))

    def _read_at(self, t: float) -> Optional[Frame]:
        self._cap.set(cv2.CAP_PROP_POS_FRAMES, self._frame_index(t))
        if self.settle_delay > 0:
            time.sleep(self.settle_delay)
        ret, frame_bgr = self._cap.read()
        if not ret:
            return None
        return Frame(cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB), timestamp=t)

    def seek_and_capture(self, timestamp: float) -> Frame:
        t = clamp_timestamp(timestamp, self.duration)

        if self._pending is not None:
            if not self._pending.done():
                raise SeekTimeoutError(t, self._last_frame, "Previous seek still in progress")
            self._pending = None

        future = self._executor.submit(self._read_at, t)
        try:
            frame = future.result(timeout=self.seek_timeout)
        except FutureTimeout:
            self._pending = future
            raise SeekTimeoutError(t, self._last_frame) from None

        if frame is None:
            # Decoder could not produce a frame here; hand back the last one.
            raise SeekTimeoutError(t, self._last_frame, f"No frame decoded at {t:.3f}s")

        self._last_frame = frame
        return frame

    def close(self):
        self._executor.shutdown(wait=False, cancel_futures=True)
        if self._pending is not None and not self._pending.done():
            # A decode still holds the capture; release it once that finishes.
            self._pending.add_done_callback(lambda _: self._cap.release())
        else:
            self._cap.release()
