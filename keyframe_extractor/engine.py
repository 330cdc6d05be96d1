"""Key-frame selection: turns a stream of sampled frames into screenshots.

The engine compares every sample against a *baseline* (the last emitted
screenshot, not the previous sample). When the smoothed difference jumps
past the change threshold it opens a short stability window, keeps the
sharpest stable frames it sees, and when the window closes emits the best
one. States:

  AWAITING_BASELINE  ->  SAMPLING  <->  CHANGE_WINDOW_OPEN

Everything here is synchronous and single-threaded; the only blocking call
is the frame source's seek.
"""

import logging
import math
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .config import ProcessingOptions
from .difference import frame_difference
from .errors import ExtractionAbortedError, InvalidInputError, SeekTimeoutError
from .exporter import ScreenshotSink
from .extractor import Frame, FrameSource, clamp_timestamp
from .sharpness import clarity_index, sharpness

logger = logging.getLogger(__name__)

START_OFFSET = 0.1         # seconds skipped at the start while the decoder settles
END_EPSILON = 0.1          # sampling stops this far before the end
MAX_CANDIDATES = 5
CHANGE_SPIKE_FACTOR = 1.5  # a single diff this far over threshold is a change on its own
SKIP_AHEAD_FACTOR = 0.5    # of min_screenshot_interval, after each window
SHARPNESS_WEIGHT = 0.7
STABILITY_WEIGHT = 0.3
DEBUG_LOG_EVERY = 10       # sampled frames
CLOCK_DECIMALS = 6
TIME_EPSILON = 1e-9


class EngineState(str, Enum):
    AWAITING_BASELINE = "awaiting_baseline"
    SAMPLING = "sampling"
    CHANGE_WINDOW_OPEN = "change_window_open"


@dataclass(frozen=True, eq=False)
class Candidate:
    """A stable, sharp-enough frame collected while waiting to emit."""
    frame: Frame
    capture_time: float
    stability_score: float   # difference from baseline, lower = steadier
    sharpness_score: float
    order: int = 0           # collection order, breaks ranking ties

    @property
    def rank_score(self) -> float:
        return (
            SHARPNESS_WEIGHT * self.sharpness_score
            + STABILITY_WEIGHT * (1.0 - self.stability_score)
        )


@dataclass(frozen=True, eq=False)
class Screenshot:
    """The representative frame emitted for one distinct item."""
    id: str
    frame: Frame
    timestamp: float
    index: int
    sharpness_score: float
    frame_number: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "index": self.index,
            "timestamp": round(self.timestamp, 3),
            "frame_number": self.frame_number,
            "sharpness": round(self.sharpness_score, 2),
            "clarity_index": clarity_index(self.sharpness_score),
            "width": self.frame.width,
            "height": self.frame.height,
        }


class CandidatePool:
    """
    Fixed-capacity pool of the sharpest candidates seen, sharpest first.

    New candidates are insertion-sorted behind any existing candidate of
    equal sharpness, so on ties the earlier frame wins both the retention
    cut and the final ranking.
    """

    def __init__(self, capacity: int = MAX_CANDIDATES):
        self.capacity = capacity
        self._slots: list[Candidate] = []
        self._next_order = 0

    def add(
        self,
        frame: Frame,
        capture_time: float,
        stability_score: float,
        sharpness_score: float,
    ) -> Optional[Candidate]:
        """Insert a candidate; returns it, or None if it did not make the cut."""
        candidate = Candidate(
            frame=frame,
            capture_time=capture_time,
            stability_score=stability_score,
            sharpness_score=sharpness_score,
            order=self._next_order,
        )
        self._next_order += 1

        pos = len(self._slots)
        while pos > 0 and self._slots[pos - 1].sharpness_score < sharpness_score:
            pos -= 1
        if pos >= self.capacity:
            return None

        self._slots.insert(pos, candidate)
        del self._slots[self.capacity:]
        return candidate

    def best(self) -> Optional[Candidate]:
        """Highest rank score; earliest collected on ties."""
        if not self._slots:
            return None
        return min(self._slots, key=lambda c: (-c.rank_score, c.order))

    def clear(self):
        self._slots.clear()

    def __len__(self) -> int:
        return len(self._slots)

    def __iter__(self):
        return iter(self._slots)


@dataclass
class Step:
    """Outcome of feeding one sample to the engine."""
    resolved: bool = False                 # a change window closed on this sample
    screenshot: Optional[Screenshot] = None


class KeyFrameEngine:
    """
    Change/stability state machine.

    Can be driven sample by sample (``start``, ``bootstrap``, ``observe``,
    ``flush``, ``finalize``) or end to end over a frame source with ``run``.
    """

    def __init__(
        self,
        options: Optional[ProcessingOptions] = None,
        use_histogram: bool = True,
        sink: Optional[ScreenshotSink] = None,
    ):
        self.options = (options or ProcessingOptions()).validate()
        self.use_histogram = use_histogram
        self.sink = sink or ScreenshotSink()
        self.reset()

    def reset(self):
        self.state = EngineState.AWAITING_BASELINE
        self.baseline: Optional[Frame] = None
        self.recent_diffs: deque = deque(maxlen=int(self.options.motion_smoothing))
        self.candidates = CandidatePool()
        self.change_detected_at: Optional[float] = None
        self.last_emit_time: Optional[float] = None
        self.screenshots: list[Screenshot] = []
        self.frame_number = 0

    # ── Transitions ─────────────────────────────────────────────────

    def start(self, frame: Frame):
        """Take the first usable frame as baseline."""
        if self.state != EngineState.AWAITING_BASELINE:
            raise RuntimeError(f"Engine already started (state={self.state.value})")
        self.baseline = frame
        self.frame_number += 1
        self.state = EngineState.SAMPLING

    def bootstrap(self, frame: Frame, at: float) -> Screenshot:
        """Emit the opening screenshot, skipping the blur gate."""
        if self.state == EngineState.AWAITING_BASELINE:
            self.start(frame)
        return self._emit(frame, at, sharpness(frame))

    def observe(self, frame: Frame, at: float) -> Step:
        """Feed one sampled frame taken at ``at`` seconds."""
        if self.state == EngineState.AWAITING_BASELINE:
            self.start(frame)
            return Step()

        opts = self.options
        self.frame_number += 1

        diff = frame_difference(self.baseline, frame, self.use_histogram)
        self.recent_diffs.append(diff)
        smoothed = sum(self.recent_diffs) / len(self.recent_diffs)

        if self.frame_number % DEBUG_LOG_EVERY == 0 and logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "Frame %d at %.2fs: diff=%.3f, smoothed=%.3f, threshold=%.3f, blur=%.1f/%.1f",
                self.frame_number, at, diff, smoothed, opts.change_threshold,
                sharpness(frame), opts.min_blur_threshold,
            )

        # Stable frames are collected even before a change is flagged.
        score = None
        if diff < opts.stability_threshold:
            score = sharpness(frame)
            if score >= opts.min_blur_threshold:
                self.candidates.add(frame, at, diff, score)
            else:
                logger.debug("Frame at %.2fs rejected: too blurry (score: %.1f)", at, score)

        if self.state == EngineState.SAMPLING and (
            smoothed > opts.change_threshold
            or diff > opts.change_threshold * CHANGE_SPIKE_FACTOR
        ):
            self.change_detected_at = at
            self.candidates.clear()
            self.state = EngineState.CHANGE_WINDOW_OPEN
            logger.info(
                "Change detected at %.2fs (diff: %.3f, smoothed: %.3f)",
                at, diff, smoothed,
            )

        if (
            self.state == EngineState.CHANGE_WINDOW_OPEN
            and at - self.change_detected_at >= opts.stability_window - TIME_EPSILON
        ):
            return Step(resolved=True, screenshot=self._resolve_window(frame, at, score))

        return Step()

    def flush(self) -> Optional[Screenshot]:
        """Resolve a window left open at end of stream, from candidates only."""
        if self.state != EngineState.CHANGE_WINDOW_OPEN:
            return None

        shot = None
        best = self.candidates.best()
        if best is not None and self._interval_ok(best.capture_time):
            shot = self._emit(best.frame, best.capture_time, best.sharpness_score)
            logger.info(
                "Pending change resolved at %.2fs (blur score: %.1f)",
                best.capture_time, best.sharpness_score,
            )
        else:
            logger.debug("Pending change at %.2fs dropped", self.change_detected_at)

        self._close_window()
        return shot

    def finalize(self, frame: Frame, at: float) -> Optional[Screenshot]:
        """Consider the frame at the very end of the video."""
        self.frame_number += 1
        score = sharpness(frame)
        if score < self.options.min_blur_threshold:
            logger.debug("Final frame rejected: too blurry (score: %.1f)", score)
            return None

        if self.screenshots:
            if not self._interval_ok(at):
                return None
            if (
                self.baseline is not None
                and frame_difference(self.baseline, frame, self.use_histogram)
                <= self.options.stability_threshold
            ):
                logger.debug("Final frame matches the last screenshot, skipping")
                return None

        return self._emit(frame, at, score)

    # ── Internals ───────────────────────────────────────────────────

    def _interval_ok(self, t: float) -> bool:
        if self.last_emit_time is None:
            return True
        return (
            t > self.last_emit_time
            and t - self.last_emit_time >= self.options.min_screenshot_interval - TIME_EPSILON
        )

    def _resolve_window(self, frame: Frame, at: float, score: Optional[float]) -> Optional[Screenshot]:
        opts = self.options
        shot = None

        best = self.candidates.best()
        if best is not None:
            if self._interval_ok(best.capture_time):
                shot = self._emit(best.frame, best.capture_time, best.sharpness_score)
                logger.info(
                    "Sharp frame captured at %.2fs (blur score: %.1f, stability: %.3f)",
                    best.capture_time, best.sharpness_score, best.stability_score,
                )
            else:
                logger.debug(
                    "Best candidate at %.2fs too close to previous screenshot",
                    best.capture_time,
                )
        elif self._interval_ok(at):
            if score is None:
                score = sharpness(frame)
            if score >= opts.min_blur_threshold:
                shot = self._emit(frame, at, score)
                logger.info(
                    "Frame captured at %.2fs (blur score: %.1f, no stable frame found)",
                    at, score,
                )
            else:
                logger.info(
                    "Frame at %.2fs rejected: too blurry (score: %.1f, threshold: %.1f)",
                    at, score, opts.min_blur_threshold,
                )

        self._close_window()
        return shot

    def _close_window(self):
        self.candidates.clear()
        self.recent_diffs.clear()
        self.change_detected_at = None
        self.state = EngineState.SAMPLING

    def _emit(self, frame: Frame, at: float, score: float) -> Screenshot:
        index = len(self.screenshots)
        shot = Screenshot(
            id=f"screenshot-{index}-{int(round(at * 1000))}",
            frame=frame,
            timestamp=at,
            index=index,
            sharpness_score=score,
            frame_number=self.frame_number,
        )
        self.screenshots.append(shot)
        self.baseline = frame
        self.last_emit_time = at
        self.candidates.clear()
        self.sink.on_screenshot(shot)
        return shot

    def _capture(self, source: FrameSource, t: float) -> Optional[Frame]:
        try:
            return source.seek_and_capture(t)
        except SeekTimeoutError as e:
            logger.warning("%s, continuing with best-effort frame", e)
            return e.frame

    # ── Driving loop ────────────────────────────────────────────────

    def run(
        self,
        source: FrameSource,
        cancel_event: Optional[threading.Event] = None,
        sink: Optional[ScreenshotSink] = None,
    ) -> list[Screenshot]:
        """
        Sample ``source`` from start to end and return the screenshots.

        Args:
            source: Where frames come from. Must report a finite, positive
                duration and non-zero width/height.
            cancel_event: Checked once per sample; when set, the run stops
                and returns what it has so far.
            sink: Receives screenshots and progress. Replaces the sink given
                at construction for this and later runs.

        Raises:
            InvalidInputError: Before any sampling, for unusable input.
            ExtractionAbortedError: If sampling fails midway. Carries the
                screenshots emitted up to that point.
        """
        if sink is not None:
            self.sink = sink
        opts = self.options

        try:
            duration = float(source.duration)
        except (TypeError, ValueError):
            raise InvalidInputError(f"Invalid video duration: {source.duration!r}") from None
        if not math.isfinite(duration) or duration <= 0:
            raise InvalidInputError(f"Invalid video duration: {duration}")
        if not source.width or not source.height or source.width <= 0 or source.height <= 0:
            raise InvalidInputError(
                f"Video dimensions not available: {source.width}x{source.height}"
            )

        self.reset()
        logger.info(
            "Processing %.2fs of %dx%d video with %s",
            duration, source.width, source.height, opts,
        )

        end = duration - END_EPSILON
        # A zero interval would leave the clock stuck after every window.
        skip_ahead = opts.min_screenshot_interval * SKIP_AHEAD_FACTOR or opts.sample_interval
        cancelled = False

        try:
            # Short videos clamp both the baseline and bootstrap times to the end.
            first = self._capture(source, clamp_timestamp(START_OFFSET, duration))
            if first is not None:
                self.start(first)
            bootstrap_at = round(
                clamp_timestamp(START_OFFSET + opts.stability_window, duration), CLOCK_DECIMALS
            )
            second = self._capture(source, bootstrap_at)
            if second is not None:
                self.bootstrap(second, bootstrap_at)
                logger.info("First frame captured at %.2fs", bootstrap_at)

            t = round(START_OFFSET + opts.stability_window + opts.sample_interval, CLOCK_DECIMALS)
            while t < end:
                if cancel_event is not None and cancel_event.is_set():
                    logger.warning(
                        "Cancelled at %.2fs with %d screenshot(s)", t, len(self.screenshots),
                    )
                    cancelled = True
                    break

                self.sink.on_progress(min(t / duration * 100, 99.9), t, duration)

                frame = self._capture(source, t)
                if frame is None:
                    t = round(t + opts.sample_interval, CLOCK_DECIMALS)
                    continue

                step = self.observe(frame, t)
                if step.resolved:
                    t = round(t + skip_ahead, CLOCK_DECIMALS)
                else:
                    t = round(t + opts.sample_interval, CLOCK_DECIMALS)

            if not cancelled:
                self.flush()
                final_at = round(max(0.0, duration - END_EPSILON), CLOCK_DECIMALS)
                final = self._capture(source, final_at)
                if final is not None:
                    self.finalize(final, final_at)
        except Exception as e:
            logger.error("Sampling aborted after %d screenshot(s): %s", len(self.screenshots), e)
            raise ExtractionAbortedError(str(e), self.screenshots) from e
        finally:
            self.sink.on_progress(100.0, duration, duration)

        logger.info("Extracted %d screenshot(s) from %.2fs of video", len(self.screenshots), duration)
        return list(self.screenshots)


def extract_keyframes(
    source: FrameSource,
    options: Optional[ProcessingOptions] = None,
    sink: Optional[ScreenshotSink] = None,
    cancel_event: Optional[threading.Event] = None,
    use_histogram: bool = True,
) -> list[Screenshot]:
    """Run a fresh engine over ``source`` and return its screenshots."""
    engine = KeyFrameEngine(options, use_histogram=use_histogram, sink=sink)
    return engine.run(source, cancel_event=cancel_event)
