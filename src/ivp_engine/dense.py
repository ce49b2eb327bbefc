# ivp_engine/src/ivp_engine/dense.py
"""Dense-output segments (continuous interpolants over one accepted step).

Every accepted step produces one immutable segment covering
[t_begin, t_end]. Segments are the step records of a run: they feed report-time
interpolation, event location, the history buffer for delay lookups, and the
``sol(t)`` evaluator on the final result.

Endpoint contract:
    seg(t_begin) returns y_begin and seg(t_end) returns y_end bit-for-bit,
    so consecutive segments agree exactly at shared step boundaries.

Implementations:
    - HermiteSegment:       cubic Hermite from endpoint states and slopes.
    - DormandPrinceSegment: 5th-order continuous extension of DOPRI5.
    - RadauSegment:         Radau IIA collocation polynomial.
    - BDFSegment:           backward-difference interpolating polynomial.
    - ConstantSegment:      constant state (zero width for event jumps).
    - TruncatedSegment:     a segment cut short at an event time.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import numpy as np
import numpy.typing as npt

FloatArray = npt.NDArray[np.floating[Any]]

_OUTSIDE_ERROR = "t={t!r} lies outside the segment [{t0!r}, {t1!r}]"
_TRUNCATE_ERROR = "cut time {t!r} lies outside the segment [{t0!r}, {t1!r}]"

# Hairer's DOPRI5 dense-output coefficients.
_DOPRI_D = np.array(
    [
        -12715105075 / 11282082432,
        0.0,
        87487479700 / 32700410799,
        -10690763975 / 1880347072,
        701980252875 / 199316789632,
        -1453857185 / 822651844,
        69997945 / 29380423,
    ]
)


def _frozen(arr: npt.ArrayLike) -> FloatArray:
    out = np.array(arr, dtype=np.float64)
    out.setflags(write=False)
    return out


class DenseSegment(ABC):
    """Continuous interpolant over [t_begin, t_end]."""

    __slots__ = ("t_begin", "t_end", "y_begin", "y_end")

    def __init__(
        self,
        t_begin: float,
        t_end: float,
        y_begin: npt.ArrayLike,
        y_end: npt.ArrayLike,
    ) -> None:
        """Store the boundary data of the segment.

        Args:
            t_begin: Segment start time.
            t_end: Segment end time (>= t_begin).
            y_begin: State at t_begin.
            y_end: State at t_end.
        """
        self.t_begin = float(t_begin)
        self.t_end = float(t_end)
        self.y_begin = _frozen(y_begin)
        self.y_end = _frozen(y_end)

    @property
    def width(self) -> float:
        """Segment length t_end - t_begin."""
        return self.t_end - self.t_begin

    def contains(self, t: float) -> bool:
        """Whether t lies in the closed interval."""
        return self.t_begin <= t <= self.t_end

    def __call__(self, t: float) -> FloatArray:
        """Interpolated state at t.

        Raises:
            ValueError: If t lies outside the segment.
        """
        t = float(t)
        if t == self.t_begin:
            return self.y_begin.copy()
        if t == self.t_end:
            return self.y_end.copy()
        self._check(t)
        return self._value(t)

    def derivative(self, t: float) -> FloatArray:
        """Interpolated time derivative at t.

        Raises:
            ValueError: If t lies outside the segment.
        """
        t = float(t)
        self._check(t)
        return self._derivative(t)

    def evaluate(self, ts: npt.ArrayLike) -> FloatArray:
        """Evaluate at several times; returns shape (len(ts), n)."""
        return np.array([self(t) for t in np.atleast_1d(ts)])

    def truncate(self, t_cut: float) -> DenseSegment:
        """Return the part of this segment on [t_begin, t_cut]."""
        if t_cut == self.t_end:
            return self
        return TruncatedSegment(self, t_cut)

    def _check(self, t: float) -> None:
        if not self.contains(t):
            raise ValueError(_OUTSIDE_ERROR.format(t=t, t0=self.t_begin, t1=self.t_end))

    @abstractmethod
    def _value(self, t: float) -> FloatArray: ...

    @abstractmethod
    def _derivative(self, t: float) -> FloatArray: ...


class ConstantSegment(DenseSegment):
    """Constant state; with zero width it records an event jump."""

    __slots__ = ()

    def __init__(self, t_begin: float, t_end: float, y: npt.ArrayLike) -> None:
        """Create a constant segment holding `y` on [t_begin, t_end]."""
        super().__init__(t_begin, t_end, y, y)

    def _value(self, t: float) -> FloatArray:  # noqa: ARG002
        return self.y_begin.copy()

    def _derivative(self, t: float) -> FloatArray:  # noqa: ARG002
        return np.zeros_like(self.y_begin)


class HermiteSegment(DenseSegment):
    """Cubic Hermite interpolant from endpoint states and slopes."""

    __slots__ = ("f_begin", "f_end")

    def __init__(  # noqa: PLR0913
        self,
        t_begin: float,
        t_end: float,
        y_begin: npt.ArrayLike,
        y_end: npt.ArrayLike,
        f_begin: npt.ArrayLike,
        f_end: npt.ArrayLike,
    ) -> None:
        """Create the interpolant.

        Args:
            t_begin: Segment start.
            t_end: Segment end.
            y_begin: State at t_begin.
            y_end: State at t_end.
            f_begin: Slope at t_begin.
            f_end: Slope at t_end.
        """
        super().__init__(t_begin, t_end, y_begin, y_end)
        self.f_begin = _frozen(f_begin)
        self.f_end = _frozen(f_end)

    def _value(self, t: float) -> FloatArray:
        h = self.width
        s = (t - self.t_begin) / h
        h00 = (1 + 2 * s) * (1 - s) ** 2
        h10 = s * (1 - s) ** 2
        h01 = s * s * (3 - 2 * s)
        h11 = s * s * (s - 1)
        return (
            h00 * self.y_begin
            + h10 * h * self.f_begin
            + h01 * self.y_end
            + h11 * h * self.f_end
        )

    def _derivative(self, t: float) -> FloatArray:
        h = self.width
        if h == 0.0:
            return self.f_begin.copy()
        s = (t - self.t_begin) / h
        d00 = 6 * s * (s - 1)
        d10 = (1 - s) * (1 - 3 * s)
        d01 = -d00
        d11 = s * (3 * s - 2)
        return (
            d00 * self.y_begin / h
            + d10 * self.f_begin
            + d01 * self.y_end / h
            + d11 * self.f_end
        )


class DormandPrinceSegment(DenseSegment):
    """Hairer's 5th-order continuous extension of Dormand-Prince 5(4)."""

    __slots__ = ("_r",)

    def __init__(
        self,
        t_begin: float,
        t_end: float,
        y_begin: npt.ArrayLike,
        y_end: npt.ArrayLike,
        stages: FloatArray,
    ) -> None:
        """Create the interpolant.

        Args:
            t_begin: Segment start.
            t_end: Segment end.
            y_begin: State at t_begin.
            y_end: State at t_end.
            stages: Stage derivatives including the FSAL stage, shape (7, n).
        """
        super().__init__(t_begin, t_end, y_begin, y_end)
        h = self.width
        r1 = self.y_begin
        r2 = self.y_end - self.y_begin
        r3 = h * stages[0] - r2
        r4 = r2 - h * stages[6] - r3
        r5 = h * (_DOPRI_D @ stages)
        self._r = _frozen(np.stack([r1, r2, r3, r4, r5]))

    def _value(self, t: float) -> FloatArray:
        u = (t - self.t_begin) / self.width
        r1, r2, r3, r4, r5 = self._r
        return r1 + u * (r2 + (1 - u) * (r3 + u * (r4 + (1 - u) * r5)))

    def _derivative(self, t: float) -> FloatArray:
        h = self.width
        u = (t - self.t_begin) / h
        _, r2, r3, r4, r5 = self._r
        p = r3 + u * (r4 + (1 - u) * r5)
        dp = r4 + (1 - 2 * u) * r5
        q = r2 + (1 - u) * p
        dq = -p + (1 - u) * dp
        return (q + u * dq) / h


class RadauSegment(DenseSegment):
    """Collocation polynomial of a Radau IIA step.

    y(t) = y_begin + sum_j Q_j x^(j+1),  x = (t - t_begin) / h,
    interpolating the stage increments Z_i at the nodes c_i.
    """

    __slots__ = ("_q",)

    def __init__(
        self,
        t_begin: float,
        t_end: float,
        y_begin: npt.ArrayLike,
        y_end: npt.ArrayLike,
        nodes: FloatArray,
        increments: FloatArray,
    ) -> None:
        """Create the interpolant.

        Args:
            t_begin: Segment start.
            t_end: Segment end.
            y_begin: State at t_begin.
            y_end: State at t_end.
            nodes: Collocation nodes c, shape (s,).
            increments: Stage increments Z, shape (s, n).
        """
        super().__init__(t_begin, t_end, y_begin, y_end)
        powers = np.arange(1, nodes.size + 1)
        vander = nodes[:, None] ** powers[None, :]
        self._q = _frozen(np.linalg.solve(vander, increments))

    def _value(self, t: float) -> FloatArray:
        x = (t - self.t_begin) / self.width
        powers = x ** np.arange(1, self._q.shape[0] + 1)
        return self.y_begin + powers @ self._q

    def _derivative(self, t: float) -> FloatArray:
        h = self.width
        x = (t - self.t_begin) / h
        k = np.arange(1, self._q.shape[0] + 1)
        return ((k * x ** (k - 1)) @ self._q) / h

    def extrapolate_increments(self, nodes: FloatArray, h_next: float) -> FloatArray:
        """Extrapolate stage increments for the next step (initial Newton guess).

        Args:
            nodes: Collocation nodes of the next step.
            h_next: Next step size.

        Returns:
            Predicted increments, shape (s, n).
        """
        x = 1.0 + nodes * h_next / self.width
        k = np.arange(1, self._q.shape[0] + 1)
        y_nodes = self.y_begin + (x[:, None] ** k[None, :]) @ self._q
        return y_nodes - self.y_end


class BDFSegment(DenseSegment):
    """Backward-difference interpolating polynomial of a BDF step."""

    __slots__ = ("_d", "_denom", "_shift")

    def __init__(  # noqa: PLR0913
        self,
        t_begin: float,
        t_end: float,
        y_begin: npt.ArrayLike,
        y_end: npt.ArrayLike,
        h: float,
        differences: FloatArray,
    ) -> None:
        """Create the interpolant.

        Args:
            t_begin: Segment start.
            t_end: Segment end (the newest BDF node).
            y_begin: State at t_begin.
            y_end: State at t_end.
            h: Internal BDF step size (constant across the difference table).
            differences: Difference table rows D[0..order], shape (order+1, n).
        """
        super().__init__(t_begin, t_end, y_begin, y_end)
        order = differences.shape[0] - 1
        self._d = _frozen(differences)
        self._shift = _frozen(self.t_end - h * np.arange(order))
        self._denom = _frozen(h * (1 + np.arange(order)))

    def _value(self, t: float) -> FloatArray:
        out = self._d[0].copy()
        p = 1.0
        for j in range(self._shift.size):
            p *= (t - self._shift[j]) / self._denom[j]
            out += self._d[j + 1] * p
        return out

    def _derivative(self, t: float) -> FloatArray:
        out = np.zeros_like(self._d[0])
        p = 1.0
        dp = 0.0
        for j in range(self._shift.size):
            x = (t - self._shift[j]) / self._denom[j]
            dp = dp * x + p / self._denom[j]
            p *= x
            out += self._d[j + 1] * dp
        return out


class TruncatedSegment(DenseSegment):
    """A segment restricted to [t_begin, t_cut] of a parent segment."""

    __slots__ = ("_parent",)

    def __init__(self, parent: DenseSegment, t_cut: float) -> None:
        """Restrict `parent` to end at `t_cut`.

        Raises:
            ValueError: If t_cut lies outside the parent segment.
        """
        if not parent.contains(t_cut):
            raise ValueError(
                _TRUNCATE_ERROR.format(t=t_cut, t0=parent.t_begin, t1=parent.t_end)
            )
        super().__init__(parent.t_begin, t_cut, parent.y_begin, parent(t_cut))
        self._parent = parent

    def _value(self, t: float) -> FloatArray:
        return self._parent(t)

    def _derivative(self, t: float) -> FloatArray:
        return self._parent.derivative(t)
