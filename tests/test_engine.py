"""Tests for the key-frame selection engine."""

import threading

import numpy as np
import pytest

from keyframe_extractor import (
    CandidatePool,
    EngineState,
    ExtractionAbortedError,
    InvalidInputError,
    KeyFrameEngine,
    ProcessingOptions,
    SeekTimeoutError,
    extract_keyframes,
)
from keyframe_extractor.difference import frame_difference
from keyframe_extractor.exporter import CollectingSink
from keyframe_extractor.extractor import FrameSource

from synthetic import (
    BLUE,
    GRAY,
    GREEN,
    RED,
    checkerboard,
    frame,
    red_then_blue,
    solid,
    source,
)

EPS = 1e-9


def _assert_spaced(shots, min_interval):
    times = [s.timestamp for s in shots]
    for earlier, later in zip(times, times[1:]):
        assert later > earlier
        assert later - earlier >= min_interval - EPS


# ── Candidate pool ───────────────────────────────────────────────────


def test_pool_keeps_five_sharpest():
    pool = CandidatePool()
    f = frame(solid(GRAY))
    for i, score in enumerate([10, 50, 30, 70, 20, 60, 40]):
        pool.add(f, float(i), 0.0, float(score))
    assert len(pool) == 5
    assert [c.sharpness_score for c in pool] == [70, 60, 50, 40, 30]


def test_pool_drops_tie_that_arrives_last():
    pool = CandidatePool(capacity=2)
    f = frame(solid(GRAY))
    first = pool.add(f, 0.0, 0.0, 100.0)
    second = pool.add(f, 1.0, 0.0, 100.0)
    third = pool.add(f, 2.0, 0.0, 100.0)
    assert third is None
    assert list(pool) == [first, second]


def test_pool_ranks_by_sharpness_then_stability():
    pool = CandidatePool()
    f = frame(solid(GRAY))
    pool.add(f, 0.0, 0.04, 200.0)
    steadier = pool.add(f, 1.0, 0.0, 200.0)
    pool.add(f, 2.0, 0.0, 150.0)
    assert pool.best() is steadier


def test_pool_ties_resolve_to_earliest():
    pool = CandidatePool()
    f = frame(solid(GRAY))
    earliest = pool.add(f, 0.0, 0.01, 120.0)
    pool.add(f, 1.0, 0.01, 120.0)
    assert pool.best() is earliest


def test_pool_clear():
    pool = CandidatePool()
    pool.add(frame(solid(GRAY)), 0.0, 0.0, 1.0)
    pool.clear()
    assert len(pool) == 0
    assert pool.best() is None


# ── Step-level state machine ─────────────────────────────────────────


def test_first_frame_becomes_baseline():
    engine = KeyFrameEngine()
    assert engine.state == EngineState.AWAITING_BASELINE
    first = frame(solid(RED))
    step = engine.observe(first, 0.1)
    assert not step.resolved
    assert engine.state == EngineState.SAMPLING
    assert engine.baseline is first


def test_bootstrap_skips_blur_gate():
    engine = KeyFrameEngine(ProcessingOptions(min_blur_threshold=1e9))
    engine.start(frame(solid(RED)))
    blurry = frame(solid(RED))
    shot = engine.bootstrap(blurry, 0.6)
    assert shot.index == 0
    assert shot.sharpness_score == 0.0
    assert engine.baseline is blurry
    assert engine.last_emit_time == 0.6


def test_recent_diffs_bounded_by_motion_smoothing():
    engine = KeyFrameEngine(ProcessingOptions(motion_smoothing=2, change_threshold=1.0))
    engine.start(frame(solid(GRAY)))
    for i in range(5):
        engine.observe(frame(solid(GRAY)), 0.2 * (i + 1))
    assert len(engine.recent_diffs) == 2


def test_stable_sharp_frames_collected_before_change():
    engine = KeyFrameEngine(ProcessingOptions())
    board = checkerboard()
    engine.start(frame(board))
    for i in range(8):
        engine.observe(frame(board.copy()), 0.2 * (i + 1))
    assert engine.state == EngineState.SAMPLING
    assert len(engine.candidates) == 5


def test_blurry_stable_frames_not_collected():
    engine = KeyFrameEngine(ProcessingOptions())
    engine.start(frame(solid(GRAY)))
    engine.observe(frame(solid(GRAY)), 0.2)
    assert len(engine.candidates) == 0


def test_change_opens_window_and_clears_candidates():
    engine = KeyFrameEngine(ProcessingOptions(min_blur_threshold=0))
    engine.start(frame(solid(RED)))
    engine.observe(frame(solid(RED)), 0.2)
    assert len(engine.candidates) == 1

    step = engine.observe(frame(solid(BLUE)), 0.4)
    assert not step.resolved
    assert engine.state == EngineState.CHANGE_WINDOW_OPEN
    assert engine.change_detected_at == 0.4
    assert len(engine.candidates) == 0


def test_smoothed_change_triggers_without_spike():
    opts = ProcessingOptions(change_threshold=0.1, motion_smoothing=3)
    engine = KeyFrameEngine(opts)
    base = solid(GRAY)
    engine.start(frame(base))
    # a moderate difference: above 0.1 but below 0.15
    shifted = base.copy()
    shifted[:, :24] = (200, 200, 200)
    diff_frame = frame(shifted)
    d = frame_difference(engine.baseline, diff_frame)
    assert 0.1 < d < 0.15

    engine.observe(diff_frame, 0.2)
    assert engine.state == EngineState.CHANGE_WINDOW_OPEN


def test_window_resolves_to_fallback_frame():
    opts = ProcessingOptions(min_blur_threshold=0, stability_window=0.5)
    engine = KeyFrameEngine(opts)
    engine.start(frame(solid(RED)))
    engine.bootstrap(frame(solid(RED)), 0.6)

    engine.observe(frame(solid(BLUE)), 3.0)
    assert not engine.observe(frame(solid(BLUE)), 3.2).resolved
    assert not engine.observe(frame(solid(BLUE)), 3.4).resolved
    last = frame(solid(BLUE))
    step = engine.observe(last, 3.6)

    assert step.resolved
    assert step.screenshot is not None
    assert step.screenshot.timestamp == 3.6
    assert engine.baseline is last
    assert engine.state == EngineState.SAMPLING
    assert engine.change_detected_at is None
    assert len(engine.recent_diffs) == 0


def test_window_prefers_ranked_candidate_over_current_frame():
    # Baseline is a checkerboard; a noisy spike triggers the change while
    # near-identical sharp frames keep arriving as candidates.
    opts = ProcessingOptions(min_blur_threshold=0, min_screenshot_interval=0.5)
    engine = KeyFrameEngine(opts)
    board = checkerboard()
    engine.start(frame(board))
    engine.bootstrap(frame(board), 0.6)

    engine.observe(frame(solid(GREEN)), 1.2)  # spike: change
    assert engine.state == EngineState.CHANGE_WINDOW_OPEN
    stable = frame(board.copy())
    engine.observe(stable, 1.4)
    step = engine.observe(frame(solid(GREEN)), 1.8)

    assert step.resolved
    assert step.screenshot.frame is stable
    assert step.screenshot.timestamp == 1.4


def test_window_rejects_blurry_fallback():
    engine = KeyFrameEngine(ProcessingOptions())
    engine.start(frame(solid(RED)))
    engine.bootstrap(frame(solid(RED)), 0.6)
    engine.observe(frame(solid(BLUE)), 3.0)
    step = engine.observe(frame(solid(BLUE)), 3.6)
    assert step.resolved
    assert step.screenshot is None
    assert len(engine.screenshots) == 1
    assert engine.state == EngineState.SAMPLING


def test_window_respects_min_interval():
    opts = ProcessingOptions(min_blur_threshold=0, min_screenshot_interval=5.0)
    engine = KeyFrameEngine(opts)
    engine.start(frame(solid(RED)))
    engine.bootstrap(frame(solid(RED)), 0.6)
    engine.observe(frame(solid(BLUE)), 1.0)
    step = engine.observe(frame(solid(BLUE)), 1.6)
    assert step.resolved
    assert step.screenshot is None


def test_flush_emits_best_pending_candidate():
    opts = ProcessingOptions(min_blur_threshold=0, min_screenshot_interval=0.5, stability_window=10)
    engine = KeyFrameEngine(opts)
    board = checkerboard()
    engine.start(frame(board))
    engine.bootstrap(frame(board), 0.6)
    engine.observe(frame(solid(GREEN)), 1.2)
    engine.observe(frame(board.copy()), 1.4)

    shot = engine.flush()
    assert shot is not None
    assert shot.timestamp == 1.4
    assert engine.state == EngineState.SAMPLING


def test_flush_without_open_window_is_noop():
    engine = KeyFrameEngine()
    engine.start(frame(solid(RED)))
    assert engine.flush() is None


def test_finalize_skips_frame_matching_baseline():
    opts = ProcessingOptions(min_blur_threshold=0)
    engine = KeyFrameEngine(opts)
    engine.bootstrap(frame(solid(RED)), 0.6)
    assert engine.finalize(frame(solid(RED)), 9.9) is None
    assert engine.finalize(frame(solid(BLUE)), 9.9) is not None


def test_finalize_respects_min_interval_and_blur():
    engine = KeyFrameEngine(ProcessingOptions(min_screenshot_interval=2.0))
    engine.bootstrap(frame(solid(RED)), 0.6)
    assert engine.finalize(frame(checkerboard()), 1.0) is None      # too close
    assert engine.finalize(frame(solid(BLUE)), 9.9) is None          # too blurry
    assert engine.finalize(frame(checkerboard()), 9.9) is not None


# ── End-to-end runs ──────────────────────────────────────────────────


def test_scenario_red_then_blue():
    # Solid frames have zero sharpness, so the blur gate is opened.
    opts = ProcessingOptions(min_blur_threshold=0)
    shots = extract_keyframes(source(red_then_blue(3.0), 10.0), opts)

    assert len(shots) == 2
    assert shots[0].timestamp == pytest.approx(0.6)
    assert np.array_equal(shots[0].frame.rgb[0, 0], RED)
    assert np.array_equal(shots[1].frame.rgb[0, 0], BLUE)
    assert 3.0 <= shots[1].timestamp <= 3.0 + opts.stability_window + opts.sample_interval
    _assert_spaced(shots, opts.min_screenshot_interval)


def test_scenario_constant_video():
    shots = extract_keyframes(source(lambda t: solid(GRAY), 8.0))
    assert len(shots) == 1
    assert shots[0].index == 0
    assert shots[0].timestamp == pytest.approx(0.1 + ProcessingOptions().stability_window)


def test_scenario_constant_sharp_video_has_no_duplicate_tail():
    board = checkerboard()
    shots = extract_keyframes(source(lambda t: board, 8.0))
    assert len(shots) == 1


def test_scenario_only_first_frame_sharp():
    board = checkerboard()
    colors = [GRAY, RED, GREEN, BLUE]

    def render(t):
        if t < 0.3:
            return board
        return solid(colors[int(t // 2) % len(colors)])

    engine = KeyFrameEngine(ProcessingOptions())
    shots = engine.run(source(render, 10.0))
    assert len(shots) == 1
    assert shots[0].sharpness_score < ProcessingOptions().min_blur_threshold


def test_sequence_of_items():
    colors = [RED, GREEN, BLUE, GRAY]
    opts = ProcessingOptions(min_blur_threshold=0)
    shots = extract_keyframes(source(lambda t: solid(colors[min(3, int(t // 3))]), 12.0), opts)

    assert len(shots) == 4
    assert [tuple(s.frame.rgb[0, 0]) for s in shots] == colors
    assert [s.index for s in shots] == [0, 1, 2, 3]
    _assert_spaced(shots, opts.min_screenshot_interval)


def test_min_interval_enforced_for_rapid_changes():
    colors = [RED, GREEN, BLUE, GRAY]
    opts = ProcessingOptions(min_blur_threshold=0, min_screenshot_interval=2.5)
    shots = extract_keyframes(
        source(lambda t: solid(colors[int(t // 0.8) % 4]), 12.0), opts,
    )
    assert shots
    _assert_spaced(shots, opts.min_screenshot_interval)


def test_runs_are_deterministic():
    rng = np.random.default_rng(42)
    scenes = [rng.integers(0, 256, size=(48, 64, 3), dtype=np.uint8) for _ in range(4)]
    opts = ProcessingOptions(min_blur_threshold=0)

    def run():
        shots = extract_keyframes(source(lambda t: scenes[int(t // 2.5) % 4], 10.0), opts)
        return [(s.timestamp, s.sharpness_score, s.id) for s in shots]

    assert run() == run()


def test_progress_reports_until_100():
    sink = CollectingSink()
    shots = extract_keyframes(source(red_then_blue(), 5.0), ProcessingOptions(min_blur_threshold=0), sink=sink)

    percents = [p for p, _, _ in sink.progress]
    assert percents[-1] == 100.0
    assert all(0 <= p <= 99.9 for p in percents[:-1])
    assert percents[:-1] == sorted(percents[:-1])
    assert sink.screenshots == shots


def test_sink_receives_screenshots_in_order():
    sink = CollectingSink()
    opts = ProcessingOptions(min_blur_threshold=0)
    extract_keyframes(source(red_then_blue(), 10.0), opts, sink=sink)
    assert [s.index for s in sink.screenshots] == list(range(len(sink.screenshots)))


def test_fast_diff_mode_detects_change():
    opts = ProcessingOptions(min_blur_threshold=0)
    shots = extract_keyframes(source(red_then_blue(), 10.0), opts, use_histogram=False)
    assert len(shots) == 2


# ── Errors, cancellation, timeouts ───────────────────────────────────


@pytest.mark.parametrize("duration", [0.0, -1.0, float("inf"), float("nan")])
def test_invalid_duration_rejected(duration):
    with pytest.raises(InvalidInputError):
        extract_keyframes(source(lambda t: solid(GRAY), duration))


def test_numpy_scalar_duration_accepted():
    shots = extract_keyframes(source(lambda t: solid(GRAY), np.float32(5.0)))
    assert len(shots) == 1


def test_zero_dimensions_rejected():
    with pytest.raises(InvalidInputError):
        extract_keyframes(source(lambda t: solid(GRAY), 5.0, width=0, height=48))


def test_invalid_options_rejected():
    with pytest.raises(InvalidInputError):
        KeyFrameEngine(ProcessingOptions(sample_interval=0))


def test_cancel_returns_partial_results():
    sink = CollectingSink()
    cancel = threading.Event()
    cancel.set()
    shots = extract_keyframes(source(red_then_blue(), 10.0), sink=sink, cancel_event=cancel)

    assert len(shots) == 1  # the bootstrap item only
    assert sink.progress[-1][0] == 100.0


class _FlakySource(FrameSource):
    """Times out on selected samples, handing back the last good frame."""

    def __init__(self, inner, timeout_times):
        self.inner = inner
        self.duration = inner.duration
        self.width = inner.width
        self.height = inner.height
        self.timeout_times = timeout_times
        self.last = None

    def seek_and_capture(self, timestamp):
        if any(abs(timestamp - t) < 1e-6 for t in self.timeout_times):
            raise SeekTimeoutError(timestamp, self.last)
        self.last = self.inner.seek_and_capture(timestamp)
        return self.last


def test_seek_timeouts_are_recovered():
    inner = source(red_then_blue(), 10.0)
    flaky = _FlakySource(inner, timeout_times=[0.1, 1.0, 3.2, 3.4])
    opts = ProcessingOptions(min_blur_threshold=0)
    shots = extract_keyframes(flaky, opts)
    assert len(shots) == 2


class _BrokenSource(FrameSource):
    def __init__(self, inner, fail_after):
        self.inner = inner
        self.duration = inner.duration
        self.width = inner.width
        self.height = inner.height
        self.fail_after = fail_after

    def seek_and_capture(self, timestamp):
        if timestamp > self.fail_after:
            raise OSError("decoder crashed")
        return self.inner.seek_and_capture(timestamp)


def test_unexpected_failure_keeps_partial_results():
    sink = CollectingSink()
    broken = _BrokenSource(source(lambda t: solid(GRAY), 10.0), fail_after=2.0)
    with pytest.raises(ExtractionAbortedError) as excinfo:
        extract_keyframes(broken, sink=sink)
    assert len(excinfo.value.screenshots) == 1
    assert sink.progress[-1][0] == 100.0


def test_out_of_range_seeks_are_clamped():
    src = source(red_then_blue(), 5.0)
    assert src.seek_and_capture(-3.0).timestamp == 0.0
    assert src.seek_and_capture(99.0).timestamp == 5.0
    assert np.array_equal(src.seek_and_capture(99.0).rgb, src.seek_and_capture(5.0).rgb)


@pytest.mark.parametrize("duration", [0.3, 0.05])
def test_video_shorter_than_bootstrap_point(duration):
    src = source(lambda t: solid(GRAY), duration)
    shots = extract_keyframes(src)

    assert [s.timestamp for s in shots] == [pytest.approx(duration)]
    assert all(t <= duration for t in src.requests)
