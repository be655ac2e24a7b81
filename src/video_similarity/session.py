"""Comparison session: cooperative, cancellable long-running comparisons.

A session owns two video slots and their offsets and runs at most one
operation at a time: stepwise comparison along the timeline, a sampled full
comparison with an identity verdict, or offset detection. Operations never
block: each tick does one bounded piece of work and asks the scheduler to run
the next tick soon, so the host loop regains control in between.
"""

import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Union

from PIL import Image

from .cache import DEFAULT_CAPACITY, FrameCache
from .finder import MAX_OFFSET_MS, OffsetSearch
from .hashing import compute_signature
from .models import (
    AutoComparisonResult,
    ComparisonResult,
    FrameSignature,
    OffsetResult,
    SessionState,
    Slot,
    VideoRef,
)
from .sampler import (
    MAX_SCENE_CHANGES,
    generate_sample_timestamps,
    is_scene_change,
    scene_scan_timestamps,
)
from .similarity import similarity
from .video import FrameSource

COMPARE_INTERVAL_MS = 1000

# Identity verdict thresholds
IDENTICAL_OVERALL = 0.85
IDENTICAL_MIN_SAMPLE = 0.75
IDENTICAL_HIGH_SAMPLE = 0.90
IDENTICAL_HIGH_SHARE = 0.70


@dataclass(frozen=True)
class IdentityThresholds:
    """Limits a sampled comparison must meet to call two videos identical."""

    overall: float = IDENTICAL_OVERALL  # Mean similarity
    min_sample: float = IDENTICAL_MIN_SAMPLE  # Every sample
    high_sample: float = IDENTICAL_HIGH_SAMPLE
    high_share: float = IDENTICAL_HIGH_SHARE  # Share of samples >= high_sample

# Share of auto-comparison progress spent scanning for scene changes
SCAN_PROGRESS_SHARE = 20


class Scheduler(Protocol):
    """Runs a callback soon, after returning control to the host loop."""

    def call_soon(self, callback: Callable[[], None]) -> None: ...


class ManualScheduler:
    """Queues callbacks until the owner runs them. Used by the CLI and tests."""

    def __init__(self) -> None:
        self._queue: deque[Callable[[], None]] = deque()

    @property
    def pending(self) -> int:
        return len(self._queue)

    def call_soon(self, callback: Callable[[], None]) -> None:
        self._queue.append(callback)

    def run_pending(self) -> bool:
        """Run the oldest queued callback. Returns False if none was queued."""
        if not self._queue:
            return False
        self._queue.popleft()()
        return True

    def run_until_idle(self, max_steps: Optional[int] = None) -> int:
        """Run callbacks (including newly queued ones) until the queue is empty."""
        steps = 0
        while max_steps is None or steps < max_steps:
            if not self.run_pending():
                break
            steps += 1
        return steps


class AsyncioScheduler:
    """Schedules ticks on an asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop or asyncio.get_running_loop()

    def call_soon(self, callback: Callable[[], None]) -> None:
        self._loop.call_soon_threadsafe(callback)


class SessionListener:
    """Receives session events. Override the methods of interest."""

    def on_progress(self, percent: int) -> None:
        pass

    def on_frame_compared(self, timestamp: int, similarity: float) -> None:
        pass

    def on_comparison_complete(self, results: list[ComparisonResult]) -> None:
        pass

    def on_partial_results(self, results: list[ComparisonResult]) -> None:
        """Results gathered by an operation that was cancelled."""

    def on_auto_comparison_complete(self, result: AutoComparisonResult) -> None:
        pass

    def on_offset_detected(self, result: OffsetResult) -> None:
        pass


def overlap_window(
    duration_a: int, offset_a: int, duration_b: int, offset_b: int
) -> tuple[int, int]:
    """
    Shared timeline span of two videos after applying their offsets.

    A base timestamp t maps to t + offset in each video.

    Returns:
        (start, duration); duration is <= 0 when the videos do not overlap
    """
    start = max(-offset_a, -offset_b)
    end = min(duration_a - offset_a, duration_b - offset_b)
    return start, end - start


def _clip(timestamp: int, duration: int) -> int:
    return max(0, min(timestamp, duration - 1))


def calculate_overall_similarity(similarities: list[float]) -> float:
    if not similarities:
        return 0.0
    return sum(similarities) / len(similarities)


def determine_if_identical(
    overall: float,
    similarities: list[float],
    thresholds: IdentityThresholds = IdentityThresholds(),
) -> bool:
    """
    Perceptual identity verdict over sampled similarities.

    Requires a high mean, no weak sample, and most samples near-perfect.
    """
    if not similarities or overall < thresholds.overall:
        return False
    if min(similarities) < thresholds.min_sample:
        return False
    high = sum(1 for s in similarities if s >= thresholds.high_sample)
    return high / len(similarities) >= thresholds.high_share


def summarize(
    overall: float,
    identical: bool,
    similarities: list[float],
    high_sample: float = IDENTICAL_HIGH_SAMPLE,
) -> str:
    verdict = "Videos appear identical" if identical else "Videos differ"
    high = sum(1 for s in similarities if s >= high_sample)
    return (
        f"{verdict}: overall similarity {overall * 100:.2f}% over "
        f"{len(similarities)} samples, minimum {min(similarities) * 100:.2f}%, "
        f"{high * 100 // len(similarities)}% of samples above "
        f"{high_sample * 100:.0f}%"
    )


def describe(score: float) -> str:
    return f"Similarity: {score * 100:.2f}%"


class ComparisonSession:
    """
    State machine driving comparisons between the videos in slots A and B.

    Starting an operation while another is active, or without both videos,
    is rejected. Setters may be called from a different thread than the one
    running ticks; shared fields are guarded by a lock.
    """

    def __init__(
        self,
        source: FrameSource,
        scheduler: Optional[Scheduler] = None,
        listener: Optional[SessionListener] = None,
        cache_capacity: int = DEFAULT_CAPACITY,
        compare_interval_ms: int = COMPARE_INTERVAL_MS,
        max_offset_ms: int = MAX_OFFSET_MS,
        identity: Optional[IdentityThresholds] = None,
        search_options: Optional[dict[str, Any]] = None,
    ) -> None:
        self.source = source
        self.scheduler = scheduler or ManualScheduler()
        self.listener = listener or SessionListener()
        self.cache = FrameCache(cache_capacity)
        self.compare_interval_ms = compare_interval_ms
        self.max_offset_ms = max_offset_ms
        self.identity = identity or IdentityThresholds()
        # Extra keyword arguments for OffsetSearch, e.g. preload_step_ms
        self.search_options = dict(search_options or {})

        self._lock = threading.RLock()
        self._videos: dict[Slot, Optional[VideoRef]] = {Slot.A: None, Slot.B: None}
        self._offsets: dict[Slot, int] = {Slot.A: 0, Slot.B: 0}
        self._state = SessionState.IDLE
        self._generation = 0
        self._in_tick = False
        self._cancel_requested = False

        # Per-operation state, reset on every start
        self._results: list[ComparisonResult] = []
        self._window_start = 0
        self._window_duration = 0
        self._position = 0
        self._snapshot: dict[Slot, tuple[VideoRef, int]] = {}
        self._scan_times: list[int] = []
        self._scan_index = 0
        self._scan_prev: Optional[Image.Image] = None
        self._scene_changes: list[int] = []
        self._samples: list[int] = []
        self._signatures: dict[tuple[Slot, int], FrameSignature] = {}
        self._search: Optional[OffsetSearch] = None

    # Properties and setters

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def is_active(self) -> bool:
        return self.state != SessionState.IDLE

    def video(self, slot: Union[Slot, str]) -> Optional[VideoRef]:
        with self._lock:
            return self._videos[Slot(slot)]

    def offset(self, slot: Union[Slot, str]) -> int:
        with self._lock:
            return self._offsets[Slot(slot)]

    def set_video(
        self, slot: Union[Slot, str], path: Optional[Union[str, Path]]
    ) -> None:
        """Register a video for a slot, or clear the slot with None."""
        slot = Slot(slot)
        ref = None
        if path is not None:
            ref = VideoRef(path=Path(path), duration_ms=self.source.duration_ms(path))
            logging.debug(f"Video {slot.value}: {ref.path} ({ref.duration_ms}ms)")

        with self._lock:
            old = self._videos[slot]
            self._videos[slot] = ref
            if old is not None and (ref is None or old.path != ref.path):
                dropped = self.cache.invalidate_path(old.path)
                logging.debug(f"Dropped {dropped} cached frames of {old.path}")

    def set_offset(self, slot: Union[Slot, str], offset_ms: int) -> None:
        with self._lock:
            self._offsets[Slot(slot)] = int(offset_ms)

    def apply_detected_offset(self, result: OffsetResult) -> None:
        """Shift video B so that it lines up with video A."""
        with self._lock:
            self._offsets[Slot.B] = self._offsets[Slot.A] + result.offset_ms

    # Starting and cancelling

    def _can_start(self, operation: str) -> bool:
        if self._state != SessionState.IDLE:
            logging.warning(
                f"Cannot start {operation}: {self._state.value} is in progress"
            )
            return False
        if self._videos[Slot.A] is None or self._videos[Slot.B] is None:
            logging.warning(f"Cannot start {operation}: both videos must be loaded")
            return False
        return True

    def _begin(self, state: SessionState) -> None:
        self._state = state
        self._generation += 1
        self._cancel_requested = False
        self._results = []
        self._signatures = {}
        self._search = None
        self._schedule_tick()

    def _window(self) -> tuple[int, int]:
        ref_a, ref_b = self._videos[Slot.A], self._videos[Slot.B]
        assert ref_a is not None and ref_b is not None
        return overlap_window(
            ref_a.duration_ms,
            self._offsets[Slot.A],
            ref_b.duration_ms,
            self._offsets[Slot.B],
        )

    def start_stepwise_comparison(self) -> bool:
        """Compare frames along the shared timeline at a fixed interval."""
        with self._lock:
            if not self._can_start("comparison"):
                return False
            start, duration = self._window()
            if duration <= 0:
                logging.warning("Cannot start comparison: the videos do not overlap")
                degenerate = True
            else:
                degenerate = False
                self._window_start = start
                self._window_duration = duration
                self._position = 0
                self._begin(SessionState.COMPARING)

        if degenerate:
            self.listener.on_comparison_complete([])
            return False
        return True

    def start_auto_comparison(self) -> bool:
        """Sample the shared timeline and decide whether the videos are identical."""
        with self._lock:
            if not self._can_start("auto comparison"):
                return False
            start, duration = self._window()
            if duration <= 0:
                failure = AutoComparisonResult(
                    overall_similarity=0.0,
                    is_identical=False,
                    summary=(
                        f"Videos do not overlap with offsets A={self._offsets[Slot.A]}ms "
                        f"B={self._offsets[Slot.B]}ms (effective duration {duration}ms); "
                        "no samples taken"
                    ),
                )
            else:
                failure = None
                self._window_start = start
                self._window_duration = duration
                self._snapshot = {
                    slot: (self._videos[slot], self._offsets[slot])  # type: ignore[misc]
                    for slot in Slot
                }
                self._scan_times = list(scene_scan_timestamps(duration))
                self._scan_index = 0
                self._scan_prev = None
                self._scene_changes = []
                self._samples = []
                self._position = 0
                self._begin(SessionState.AUTO_COMPARING)

        if failure is not None:
            logging.warning(failure.summary)
            self.listener.on_auto_comparison_complete(failure)
            return False
        return True

    def start_offset_detection(self) -> bool:
        """Search for the offset of video B relative to video A."""
        with self._lock:
            if not self._can_start("offset detection"):
                return False
            ref_a, ref_b = self._videos[Slot.A], self._videos[Slot.B]
            assert ref_a is not None and ref_b is not None
            self._begin(SessionState.DETECTING_OFFSET)
            self._search = OffsetSearch(
                self.source,
                ref_a.path,
                ref_a.duration_ms,
                ref_b.path,
                ref_b.duration_ms,
                max_offset_ms=self.max_offset_ms,
                **self.search_options,
            )
        return True

    def cancel(self) -> None:
        """
        Stop the running operation.

        Outside a tick the session returns to idle at once; from inside a tick
        (e.g. a listener callback) it stops at the next tick boundary.
        """
        with self._lock:
            if self._state == SessionState.IDLE:
                return
            if self._in_tick:
                self._cancel_requested = True
                return
            state, partial = self._stop()
        self._emit_cancelled(state, partial)

    def _stop(self) -> tuple[SessionState, list[ComparisonResult]]:
        state = self._state
        partial = list(self._results)
        self._reset()
        return state, partial

    def _emit_cancelled(
        self, state: SessionState, partial: list[ComparisonResult]
    ) -> None:
        logging.debug(f"Cancelled {state.value} after {len(partial)} results")
        if partial and state in (SessionState.COMPARING, SessionState.AUTO_COMPARING):
            self.listener.on_partial_results(partial)

    def _reset(self) -> None:
        self._state = SessionState.IDLE
        self._generation += 1
        self._cancel_requested = False
        self._signatures = {}
        self._search = None
        self._scan_prev = None

    # Ticking

    def _schedule_tick(self) -> None:
        generation = self._generation
        self.scheduler.call_soon(lambda: self._tick(generation))

    def _tick(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._state == SessionState.IDLE:
                return
            if self._cancel_requested:
                stopped = self._stop()
            else:
                stopped = None
                self._in_tick = True
                state = self._state

        if stopped is not None:
            self._emit_cancelled(*stopped)
            return

        try:
            if state == SessionState.COMPARING:
                more = self._step_stepwise()
            elif state == SessionState.AUTO_COMPARING:
                more = self._step_auto()
            else:
                more = self._step_offset()
        except Exception:
            logging.exception(f"{state.value} step failed, returning to idle")
            with self._lock:
                if generation == self._generation:
                    self._reset()
            raise
        finally:
            with self._lock:
                self._in_tick = False

        with self._lock:
            if more and generation == self._generation:
                self._schedule_tick()

    def _signature(self, path: Path, timestamp: int) -> FrameSignature:
        """Signature from the shared cache, decoding on a miss."""
        with self._lock:
            signature = self.cache.get(path, timestamp)
        if signature is None:
            signature = compute_signature(self.source.extract_frame(path, timestamp))
            with self._lock:
                self.cache.put(path, timestamp, signature)
        return signature

    def _step_stepwise(self) -> bool:
        with self._lock:
            ref_a, ref_b = self._videos[Slot.A], self._videos[Slot.B]
            offset_a, offset_b = self._offsets[Slot.A], self._offsets[Slot.B]
            position = self._position
            duration = self._window_duration
            base = self._window_start + position

        if ref_a is None or ref_b is None:
            # A slot was cleared mid-run; keep what we have
            return self._complete_stepwise()

        ts_a = _clip(base + offset_a, ref_a.duration_ms)
        ts_b = _clip(base + offset_b, ref_b.duration_ms)
        score = similarity(
            self._signature(ref_a.path, ts_a),
            self._signature(ref_b.path, ts_b),
        )

        with self._lock:
            self._results.append(ComparisonResult(base, score, describe(score)))
            self._position = position + self.compare_interval_ms
            finished = self._position >= duration
            percent = min(100, self._position * 100 // duration)

        self.listener.on_frame_compared(base, score)
        self.listener.on_progress(percent)

        if finished:
            return self._complete_stepwise()
        return True

    def _complete_stepwise(self) -> bool:
        with self._lock:
            results = list(self._results)
            self._reset()
        self.listener.on_comparison_complete(results)
        return False

    def _frame_at(self, slot: Slot, relative: int) -> tuple[Path, int]:
        ref, offset = self._snapshot[slot]
        return ref.path, _clip(self._window_start + relative + offset, ref.duration_ms)

    def _step_auto(self) -> bool:
        with self._lock:
            scanning = self._scan_index < len(self._scan_times)

        if scanning:
            self._step_scene_scan()
            return True

        with self._lock:
            if not self._samples and self._position == 0:
                self._samples = generate_sample_timestamps(
                    self._window_duration, scene_changes=self._scene_changes
                )
                logging.debug(
                    f"Auto comparison: {len(self._samples)} samples over "
                    f"{self._window_duration}ms, scene changes at {self._scene_changes}"
                )
            if self._position >= len(self._samples):
                return self._complete_auto()
            relative = self._samples[self._position]

        signatures = []
        for slot in Slot:
            path, timestamp = self._frame_at(slot, relative)
            signature = self._signatures.get((slot, timestamp))
            if signature is None:
                signature = compute_signature(self.source.extract_frame(path, timestamp))
                self._signatures[(slot, timestamp)] = signature
            signatures.append(signature)
        score = similarity(signatures[0], signatures[1])
        base = self._window_start + relative

        with self._lock:
            self._results.append(ComparisonResult(base, score, describe(score)))
            self._position += 1
            done = self._position
            total = len(self._samples)

        self.listener.on_frame_compared(base, score)
        self.listener.on_progress(
            SCAN_PROGRESS_SHARE + done * (100 - SCAN_PROGRESS_SHARE) // total
        )
        if done >= total:
            return self._complete_auto()
        return True

    def _step_scene_scan(self) -> None:
        relative = self._scan_times[self._scan_index]
        path, timestamp = self._frame_at(Slot.A, relative)
        frame = self.source.extract_frame(path, timestamp)

        if frame is not None:
            if self._scan_prev is not None and is_scene_change(self._scan_prev, frame):
                self._scene_changes.append(relative)
            self._scan_prev = frame

        with self._lock:
            self._scan_index += 1
            if len(self._scene_changes) >= MAX_SCENE_CHANGES:
                self._scan_index = len(self._scan_times)
            percent = self._scan_index * SCAN_PROGRESS_SHARE // len(self._scan_times)
        self.listener.on_progress(percent)

    def _complete_auto(self) -> bool:
        with self._lock:
            samples = list(self._results)
            self._reset()

        similarities = [r.similarity for r in samples]
        if not similarities:
            result = AutoComparisonResult(
                overall_similarity=0.0,
                is_identical=False,
                summary="Videos differ: no samples could be taken",
            )
        else:
            overall = calculate_overall_similarity(similarities)
            identical = determine_if_identical(overall, similarities, self.identity)
            result = AutoComparisonResult(
                overall_similarity=overall,
                is_identical=identical,
                summary=summarize(
                    overall, identical, similarities, self.identity.high_sample
                ),
                samples=samples,
            )
        logging.debug(result.summary)
        self.listener.on_auto_comparison_complete(result)
        return False

    def _step_offset(self) -> bool:
        search = self._search
        assert search is not None
        more = search.step()
        self.listener.on_progress(search.progress)
        if more:
            return True

        with self._lock:
            self._reset()
        if search.result is None:
            logging.warning("Offset detection found no overlapping frames to compare")
        else:
            self.listener.on_offset_detected(search.result)
        return False
