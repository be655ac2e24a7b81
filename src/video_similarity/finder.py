"""Offset discovery using hierarchical coarse-to-fine search."""

import logging
from enum import Enum
from pathlib import Path
from typing import Optional, Union

import numpy as np
from tqdm import tqdm

from .hashing import compute_signature
from .models import FrameSignature, OffsetResult, Slot
from .similarity import similarity
from .video import FrameSource

MAX_OFFSET_MS = 15000
COARSE_STEP_MS = 1000
FINE_STEP_MS = 25
REFINE_WINDOW_MS = 750
MIN_REFINE_SCORE = 0.4

# Reference frames: every 500ms of video A between 2s and 20s
PRELOAD_STEP_MS = 500
PRELOAD_START_MS = 2000
PRELOAD_END_MS = 20000

MIN_CONFIDENCE_CANDIDATES = 3


class SearchPhase(str, Enum):
    """Phases of an offset search, in order."""

    PRELOAD = "preload"
    COARSE = "coarse"
    FINE = "fine"
    DONE = "done"


def compute_confidence(candidate_scores: dict[int, float], best_offset: int) -> float:
    """
    Rate how clearly the best offset stands out from the other candidates.

    Combines the separation of the best score above the 75th percentile with
    how high the best score is in absolute terms.

    Args:
        candidate_scores: Offset (ms) -> average similarity
        best_offset: The chosen offset, must be a key of candidate_scores

    Returns:
        Confidence in [0, 1]; 0 when fewer than three candidates were scored
    """
    if len(candidate_scores) < MIN_CONFIDENCE_CANDIDATES:
        return 0.0

    scores = np.array(list(candidate_scores.values()), dtype=np.float64)
    best = candidate_scores[best_offset]
    median = float(np.median(scores))
    p75 = float(np.percentile(scores, 75))

    separation = float(np.clip((best - p75) / (1.0 - p75 + 0.001), 0.0, 1.0))
    absolute = float(np.clip((best - 0.7) / 0.3, 0.0, 1.0))

    logging.debug(
        f"Confidence inputs: best={best:.3f}, median={median:.3f}, p75={p75:.3f}, "
        f"separation={separation:.3f}, absolute={absolute:.3f}"
    )
    return 0.6 * separation + 0.4 * absolute


def _aligned_range(start: int, stop: int, step: int, anchor: int) -> range:
    """Range over [start, stop) on the grid anchor + k * step, with start clipped to 0."""
    first = max(0, start)
    remainder = (first - anchor) % step
    if remainder:
        first += step - remainder
    return range(first, stop, step)


class OffsetSearch:
    """
    Incremental search for the offset that best aligns video B to video A.

    An offset o pairs A at time t with B at time t + o. Each call to `step()`
    performs one bounded unit of work: one frame decode while preloading, or
    one candidate offset while searching. Signatures are held in maps scoped
    to this search and are never evicted.
    """

    def __init__(
        self,
        source: FrameSource,
        path_a: Union[str, Path],
        duration_a: int,
        path_b: Union[str, Path],
        duration_b: int,
        max_offset_ms: int = MAX_OFFSET_MS,
        coarse_step_ms: int = COARSE_STEP_MS,
        fine_step_ms: int = FINE_STEP_MS,
        refine_window_ms: int = REFINE_WINDOW_MS,
        min_refine_score: float = MIN_REFINE_SCORE,
        preload_step_ms: int = PRELOAD_STEP_MS,
        preload_start_ms: int = PRELOAD_START_MS,
        preload_end_ms: int = PRELOAD_END_MS,
    ) -> None:
        self.source = source
        self.path_a = path_a
        self.path_b = path_b
        self.max_offset_ms = max_offset_ms
        self.coarse_step_ms = coarse_step_ms
        self.fine_step_ms = fine_step_ms
        self.refine_window_ms = refine_window_ms
        self.min_refine_score = min_refine_score

        sample_end = min(preload_end_ms, duration_a)
        ref_times = _aligned_range(
            preload_start_ms, sample_end, preload_step_ms, preload_start_ms
        )
        # B must cover t + o for every reference t and candidate o
        shifted_times = _aligned_range(
            preload_start_ms - max_offset_ms,
            min(duration_b, sample_end + max_offset_ms + 1),
            preload_step_ms,
            preload_start_ms,
        )
        self._preload: list[tuple[Slot, int]] = [(Slot.A, t) for t in ref_times]
        self._preload += [(Slot.B, t) for t in shifted_times]

        self.reference: dict[int, FrameSignature] = {}
        self.shifted: dict[int, FrameSignature] = {}
        self.candidate_scores: dict[int, float] = {}

        # Multiples of the coarse step, so candidates land on the preload grid
        first = -(max_offset_ms // coarse_step_ms) * coarse_step_ms
        self._coarse = list(range(first, max_offset_ms + 1, coarse_step_ms))
        self._fine: list[int] = []
        self._fine_estimate = 2 * refine_window_ms // fine_step_ms + 1
        self._cursor = 0
        self._done_units = 0
        self.phase = SearchPhase.PRELOAD
        self.refined = False
        self.result: Optional[OffsetResult] = None

        logging.debug(
            f"Offset search: {len(ref_times)} reference frames in "
            f"[{preload_start_ms}, {sample_end}), {len(shifted_times)} frames of B, "
            f"{len(self._coarse)} coarse candidates"
        )

    @property
    def done(self) -> bool:
        return self.phase == SearchPhase.DONE

    @property
    def progress(self) -> int:
        """Completion percentage, 0..100."""
        if self.done:
            return 100
        fine_total = len(self._fine) if self.phase == SearchPhase.FINE else self._fine_estimate
        total = len(self._preload) + len(self._coarse) + fine_total
        return min(99, self._done_units * 100 // max(1, total))

    def score_offset(self, offset_ms: int) -> Optional[float]:
        """
        Average similarity of all reference frames against B shifted by offset_ms.

        Only exact preloaded timestamps of B are used. Returns None when no
        reference frame has a counterpart.
        """
        scores = [
            similarity(signature, self.shifted[t + offset_ms])
            for t, signature in self.reference.items()
            if t + offset_ms in self.shifted
        ]
        if not scores:
            return None
        return sum(scores) / len(scores)

    def step(self) -> bool:
        """Perform one unit of work. Returns True while work remains."""
        if self.phase == SearchPhase.PRELOAD:
            self._step_preload()
        elif self.phase == SearchPhase.COARSE:
            self._step_candidate(self._coarse)
            if self._cursor >= len(self._coarse):
                self._finish_coarse()
        elif self.phase == SearchPhase.FINE:
            self._step_candidate(self._fine)
            if self._cursor >= len(self._fine):
                self._finish()
        return not self.done

    def _step_preload(self) -> None:
        if self._cursor < len(self._preload):
            slot, timestamp = self._preload[self._cursor]
            path = self.path_a if slot == Slot.A else self.path_b
            signature = compute_signature(self.source.extract_frame(path, timestamp))
            target = self.reference if slot == Slot.A else self.shifted
            target[timestamp] = signature
            self._cursor += 1
            self._done_units += 1

        if self._cursor >= len(self._preload):
            self.phase = SearchPhase.COARSE
            self._cursor = 0

    def _step_candidate(self, candidates: list[int]) -> None:
        if self._cursor < len(candidates):
            offset = candidates[self._cursor]
            score = self.score_offset(offset)
            if score is not None:
                self.candidate_scores[offset] = score
            self._cursor += 1
            self._done_units += 1

    def _best_offset(self) -> Optional[int]:
        if not self.candidate_scores:
            return None
        # Ties go to the offset closest to zero
        return max(
            self.candidate_scores,
            key=lambda offset: (self.candidate_scores[offset], -abs(offset)),
        )

    def _finish_coarse(self) -> None:
        best = self._best_offset()
        if best is None:
            logging.debug("Coarse search found no overlapping frames")
            self._finish()
            return

        best_score = self.candidate_scores[best]
        logging.debug(f"Coarse result: offset = {best}ms, score = {best_score:.3f}")

        # TODO: revisit the neighbour test if the coarse step stops being 1000ms
        has_neighbour = any(
            best + delta in self.candidate_scores
            for delta in (-self.coarse_step_ms, self.coarse_step_ms)
        )
        if not has_neighbour or best_score < self.min_refine_score:
            logging.debug("Skipping refinement")
            self._finish()
            return

        self._fine = [
            offset
            for offset in range(
                best - self.refine_window_ms,
                best + self.refine_window_ms + 1,
                self.fine_step_ms,
            )
            if offset not in self.candidate_scores
            and abs(offset) <= self.max_offset_ms
        ]
        self.refined = True
        self.phase = SearchPhase.FINE
        self._cursor = 0
        if not self._fine:
            self._finish()

    def _finish(self) -> None:
        self.phase = SearchPhase.DONE
        if self.refined:
            scored = sum(1 for offset in self._fine if offset in self.candidate_scores)
            logging.debug(
                f"Refinement scored {scored} of {len(self._fine)} fine candidates"
            )
        best = self._best_offset()
        if best is None:
            return

        self.result = OffsetResult(
            offset_ms=best,
            confidence=compute_confidence(self.candidate_scores, best),
            score=self.candidate_scores[best],
            candidates_scored=len(self.candidate_scores),
            method="hierarchical_ahash" if self.refined else "coarse_ahash",
        )
        logging.debug(
            f"Offset result: {best}ms, score = {self.result.score:.3f}, "
            f"confidence = {self.result.confidence:.3f} "
            f"({self.result.candidates_scored} candidates)"
        )


def find_offset(
    source: FrameSource,
    path_a: Union[str, Path],
    path_b: Union[str, Path],
    max_offset_ms: int = MAX_OFFSET_MS,
    quiet: bool = False,
) -> Optional[OffsetResult]:
    """
    Find the offset of video B relative to video A, blocking until done.

    Args:
        source: Frame source used to read durations and decode frames
        path_a: Reference video path
        path_b: Video to align against the reference
        max_offset_ms: Search range, offsets in [-max, +max] are considered
        quiet: If True, suppress the progress bar

    Returns:
        OffsetResult, or None when no candidate had overlapping frames
    """
    search = OffsetSearch(
        source,
        path_a,
        source.duration_ms(path_a),
        path_b,
        source.duration_ms(path_b),
        max_offset_ms=max_offset_ms,
    )
    with tqdm(total=100, desc="Offset search", disable=quiet) as bar:
        while search.step():
            bar.update(search.progress - bar.n)
        bar.update(100 - bar.n)
    return search.result
