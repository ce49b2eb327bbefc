# ivp_engine/src/ivp_engine/history.py
"""History buffer: the append-only log of accepted dense-output segments.

The buffer answers value/derivative lookups at arbitrary past times by binary
search over contiguous segments. It backs delay right-hand sides and the
``sol(t)`` evaluator on integration results.

Invariants:
    - Segments are contiguous and non-overlapping: each new segment starts
      exactly where the previous one ended.
    - Only accepted segments are recorded; lookups beyond the last recorded
      time are contract violations (HistoryUnavailable), never extrapolation.
    - Lookups before t0 use the caller's initial history, or fail.

At a shared boundary (including zero-width event jumps) the later segment
wins, so lookups are right-continuous across discontinuities.
"""

from __future__ import annotations

from bisect import bisect_right
from typing import TYPE_CHECKING, Any

import numpy as np
import numpy.typing as npt

from .errors import HistoryUnavailable, raise_history_before_start, raise_history_in_future
from .problem import LaggedState

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from .dense import DenseSegment

FloatArray = npt.NDArray[np.floating[Any]]

_CONTIGUITY_ERROR = (
    "segment starts at t={t_begin!r} but the history ends at t={t_last!r}; "
    "segments must be contiguous"
)
_BACKWARD_ERROR = "segment end {t_end!r} precedes its start {t_begin!r}"
_NO_SLOPE_ERROR = "no derivative is available at t0={t0!r} before the first accepted step"

_FD_REL_STEP = 1e-7
_ROUNDING_ULPS = 64 * float(np.finfo(np.float64).eps)


class HistoryBuffer:
    """Ordered, contiguous store of dense-output segments."""

    def __init__(
        self,
        t0: float,
        y0: npt.ArrayLike,
        initial_history: Callable[[float], FloatArray] | None = None,
        initial_derivative: Callable[[], FloatArray] | None = None,
    ) -> None:
        """Create an empty buffer anchored at (t0, y0).

        Args:
            t0: Run start time.
            y0: Initial state, returned for lookups at t0 before any segment
                is recorded.
            initial_history: Callable used for lookups strictly before t0.
            initial_derivative: Zero-argument callable giving the derivative at
                t0; evaluated once, on the first lookup at t0 before any
                segment is recorded.
        """
        self.t0 = float(t0)
        self.y0 = np.array(y0, dtype=np.float64)
        self.initial_history = initial_history
        self.initial_derivative = initial_derivative
        self._slope0: FloatArray | None = None
        self._segments: list[DenseSegment] = []
        self._starts: list[float] = []

    @property
    def segments(self) -> Sequence[DenseSegment]:
        """Recorded segments in time order (read-only view)."""
        return tuple(self._segments)

    @property
    def t_last(self) -> float:
        """End of the last recorded segment (t0 when empty)."""
        return self._segments[-1].t_end if self._segments else self.t0

    def __len__(self) -> int:
        """Number of recorded segments."""
        return len(self._segments)

    def record(self, segment: DenseSegment) -> None:
        """Append an accepted segment.

        Raises:
            ValueError: If the segment is not contiguous with the history.
        """
        if segment.t_end < segment.t_begin:
            raise ValueError(
                _BACKWARD_ERROR.format(t_begin=segment.t_begin, t_end=segment.t_end)
            )
        if segment.t_begin != self.t_last:
            raise ValueError(
                _CONTIGUITY_ERROR.format(t_begin=segment.t_begin, t_last=self.t_last)
            )
        self._segments.append(segment)
        self._starts.append(segment.t_begin)

    def _locate(self, t: float) -> tuple[float, DenseSegment | None]:
        if t < self.t0:
            return t, None
        if t > self.t_last:
            # Stage times like (t + h) - tau may overshoot by a few ulps.
            if t - self.t_last > _ROUNDING_ULPS * max(1.0, abs(t)):
                raise_history_in_future(t=t, t_last=self.t_last)
            t = self.t_last
        if not self._segments:
            return t, None
        idx = max(bisect_right(self._starts, t) - 1, 0)
        return t, self._segments[idx]

    def lookup_value(self, t: float) -> FloatArray:
        """State at time t.

        Raises:
            HistoryUnavailable: Before t0 without initial history, or after the
                last recorded time.
        """
        t = float(t)
        t, seg = self._locate(t)
        if seg is not None:
            return seg(t)
        if t >= self.t0:
            return self.y0.copy()
        if self.initial_history is None:
            raise_history_before_start(t=t, t0=self.t0)
        return np.asarray(self.initial_history(t), dtype=np.float64)

    def lookup_derivative(self, t: float) -> FloatArray:
        """State derivative at time t.

        Before t0 the initial history is differenced numerically. At t0, before
        any segment is recorded, the initial derivative is used.

        Raises:
            HistoryUnavailable: Before t0 without initial history, or after the
                last recorded time.
        """
        t = float(t)
        t, seg = self._locate(t)
        if seg is not None:
            return seg.derivative(t)
        if t >= self.t0:
            return self._initial_slope()
        if self.initial_history is None:
            raise_history_before_start(t=t, t0=self.t0)
        step = _FD_REL_STEP * max(1.0, abs(t))
        hist = self.initial_history
        return (np.asarray(hist(t)) - np.asarray(hist(t - step))) / step

    def _initial_slope(self) -> FloatArray:
        if self._slope0 is None:
            if self.initial_derivative is not None:
                self._slope0 = np.asarray(self.initial_derivative(), dtype=np.float64)
            elif self.initial_history is not None:
                step = _FD_REL_STEP * max(1.0, abs(self.t0))
                before = np.asarray(self.initial_history(self.t0 - step), dtype=np.float64)
                self._slope0 = (self.y0 - before) / step
            else:
                raise HistoryUnavailable(_NO_SLOPE_ERROR.format(t0=self.t0), time=self.t0)
        return self._slope0.copy()

    def lagged(self, t: float, delays: Sequence[float]) -> LaggedState:
        """LaggedState for a delay right-hand side evaluated at time t."""
        values = np.array([self.lookup_value(t - tau) for tau in delays])
        derivatives = np.array([self.lookup_derivative(t - tau) for tau in delays])
        return LaggedState(values=values, derivatives=derivatives)
