# ivp_engine/src/ivp_engine/events.py
"""Event / root finder over accepted steps.

The locator runs a small state machine over each accepted step:

    NO_SIGN_CHANGE      no armed root changed sign (in its allowed direction)
    CANDIDATE_BRACKET   at least one root changed sign between t_begin, t_end
    EVENT_LOCATED       the earliest crossing has been bracketed below root_tol

Refinement uses the Illinois variant of regula falsi on the step's dense
interpolant, falling back to bisection whenever the bracket stops shrinking
fast enough. The reported event time is the bracket end on the far side of the
crossing, so the root function has already changed sign there.

Arming rule: a root component whose value is exactly zero at the start of a
step takes its starting sign from the dense output a short distance into the
step, min(root_tol, h / 2). A reset that lands exactly on the surface (e.g. a
ball bounced at height 0) therefore does not re-trigger immediately, yet the
next crossing inside the same step is still seen. A component that is still
exactly zero there stays unarmed for the step.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

import numpy as np
import numpy.typing as npt

from .errors import raise_invalid_configuration

if TYPE_CHECKING:
    from .dense import DenseSegment
    from .problem import Problem

logger = logging.getLogger(__name__)

FloatArray = npt.NDArray[np.floating[Any]]

_ROOT_TOL_ERROR = "root_tol must be positive and finite; got {value}"
_DIRECTION_LEN_ERROR = "event_direction has {got} entries but root_fn returns {n}"
_TERMINAL_INDEX_ERROR = "terminal_events index {index} out of range for {n} root(s)"
_ROOT_SHAPE_ERROR = "root_fn must return a 1D sequence; got shape {shape}"
_MAX_REFINE_ITER = 200


class EventState(Enum):
    """States of the per-step event state machine."""

    NO_SIGN_CHANGE = "no_sign_change"
    CANDIDATE_BRACKET = "candidate_bracket"
    EVENT_LOCATED = "event_located"


@dataclass(frozen=True, slots=True)
class Event:
    """A located event.

    Attributes:
        time: Event time.
        index: Root index (or position in event_times for scheduled events).
        value: Root function value at `time` (0.0 for scheduled events).
        kind: "root" or "scheduled".
        terminal: Whether the event stops the run.
        y_before: State just before the reset.
        y_after: State after the reset (equal to y_before without a reset).
    """

    time: float
    index: int
    value: float
    kind: Literal["root", "scheduled"] = "root"
    terminal: bool = False
    y_before: FloatArray | None = None
    y_after: FloatArray | None = None


@dataclass(frozen=True, slots=True)
class EventCheck:
    """Outcome of checking one accepted step.

    Attributes:
        state: Final state reached by the state machine.
        candidates: Root indices that changed sign over the step.
        event: Earliest located event, when state is EVENT_LOCATED.
    """

    state: EventState
    candidates: tuple[int, ...] = ()
    event: Event | None = None


def _as_roots(values: Any) -> FloatArray:
    arr = np.asarray(values, dtype=np.float64)
    if arr.ndim == 0:
        arr = arr.reshape(1)
    if arr.ndim != 1:
        raise ValueError(_ROOT_SHAPE_ERROR.format(shape=arr.shape))
    return arr


class EventLocator:
    """Detects and locates root-function sign changes over accepted steps."""

    def __init__(self, problem: Problem, root_tol: float) -> None:
        """Bind the locator to a problem.

        Args:
            problem: Problem with an optional root function.
            root_tol: Bracket width at which a crossing counts as located.

        Raises:
            InvalidConfiguration: For a bad tolerance or inconsistent
                direction / terminal settings.
        """
        if not np.isfinite(root_tol) or root_tol <= 0.0:
            raise_invalid_configuration(
                field="root_tol", detail=_ROOT_TOL_ERROR.format(value=root_tol)
            )
        self.problem = problem
        self.root_tol = float(root_tol)
        self.n_gev = 0
        self._g_prev: FloatArray = np.empty(0)
        self._direction: npt.NDArray[np.int_] = np.empty(0, dtype=int)
        self._terminal: frozenset[int] = frozenset(problem.terminal_events)

    @property
    def active(self) -> bool:
        """Whether any root function is configured."""
        return self._g_prev.size > 0

    def _g(self, t: float, y: FloatArray) -> FloatArray:
        self.n_gev += 1
        fn = self.problem.root_fn
        if fn is None:
            return np.empty(0)
        return _as_roots(fn(t, y, self.problem.params))

    def start(self, t: float, y: FloatArray) -> None:
        """(Re)arm the locator from the state at t.

        Raises:
            InvalidConfiguration: If directions / terminal indices do not match
                the number of roots.
        """
        g = self._g(t, y)
        n = g.size
        if self._direction.size != n:
            direction = np.atleast_1d(np.asarray(self.problem.event_direction, dtype=int))
            if direction.size == 1:
                direction = np.full(n, int(direction[0]), dtype=int)
            if direction.size != n:
                raise_invalid_configuration(
                    field="event_direction",
                    detail=_DIRECTION_LEN_ERROR.format(got=direction.size, n=n),
                )
            for idx in self._terminal:
                if not 0 <= idx < n:
                    raise_invalid_configuration(
                        field="terminal_events",
                        detail=_TERMINAL_INDEX_ERROR.format(index=idx, n=n),
                    )
            self._direction = direction
        self._g_prev = g

    def _crossed(self, g0: FloatArray, g1: FloatArray) -> npt.NDArray[np.bool_]:
        armed = g0 != 0.0
        rising = (g0 < 0.0) & (g1 >= 0.0)
        falling = (g0 > 0.0) & (g1 <= 0.0)
        d = self._direction
        allowed = np.where(d > 0, rising, np.where(d < 0, falling, rising | falling))
        return armed & allowed

    def scan(self, g_begin: FloatArray, g_end: FloatArray) -> EventCheck:
        """Classify root values at both ends of a step.

        Args:
            g_begin: Root values at the step start.
            g_end: Root values at the step end.

        Returns:
            NO_SIGN_CHANGE, or CANDIDATE_BRACKET with the crossing indices.
        """
        crossed = np.flatnonzero(self._crossed(g_begin, g_end))
        if crossed.size == 0:
            return EventCheck(state=EventState.NO_SIGN_CHANGE)
        return EventCheck(
            state=EventState.CANDIDATE_BRACKET, candidates=tuple(int(i) for i in crossed)
        )

    def check(self, segment: DenseSegment) -> EventCheck:
        """Run the state machine over an accepted step.

        When no event is located, the end-of-step root values become the start
        values of the next step. When an event is located the caller must call
        :meth:`start` again from the (possibly reset) event state.

        Args:
            segment: Dense output of the accepted step.

        Returns:
            EventCheck describing the outcome.
        """
        if not self.active:
            return EventCheck(state=EventState.NO_SIGN_CHANGE)

        g1 = self._g(segment.t_end, segment.y_end)
        t_start, g0 = self._armed_start(segment)
        bracket = self.scan(g0, g1)
        if bracket.state is EventState.NO_SIGN_CHANGE:
            self._g_prev = g1
            return bracket

        located = [
            (
                *self._locate(
                    segment, idx, float(t_start[idx]), float(g0[idx]), float(g1[idx])
                ),
                idx,
            )
            for idx in bracket.candidates
        ]
        t_event, value, index = min(located)
        logger.debug("root %d located at t=%r (value %.3e)", index, t_event, value)
        event = Event(
            time=t_event,
            index=index,
            value=value,
            kind="root",
            terminal=index in self._terminal,
            y_before=segment(t_event),
        )
        return EventCheck(
            state=EventState.EVENT_LOCATED, candidates=bracket.candidates, event=event
        )

    def _armed_start(self, segment: DenseSegment) -> tuple[FloatArray, FloatArray]:
        """Per-component bracket start times and root values for a step.

        Components sitting exactly on zero at the step start are sampled a
        short distance into the step instead.
        """
        g0 = self._g_prev.copy()
        t_start = np.full(g0.size, segment.t_begin)
        on_surface = g0 == 0.0
        if on_surface.any() and segment.t_end > segment.t_begin:
            t_probe = segment.t_begin + min(
                self.root_tol, 0.5 * (segment.t_end - segment.t_begin)
            )
            g_probe = self._g(t_probe, segment(t_probe))
            g0[on_surface] = g_probe[on_surface]
            t_start[on_surface] = t_probe
        return t_start, g0

    def _locate(  # noqa: PLR0913
        self,
        segment: DenseSegment,
        idx: int,
        t_begin: float,
        g_begin: float,
        g_end: float,
    ) -> tuple[float, float]:
        """Illinois regula falsi with bisection fallback on one root component.

        Returns:
            (t_far, g_far): far-side bracket end and the root value there.
        """

        def phi(t: float) -> float:
            return float(self._g(t, segment(t))[idx])

        a, fa = t_begin, g_begin
        b, fb = segment.t_end, g_end
        gb = g_end
        side = 0

        for _ in range(_MAX_REFINE_ITER):
            width = b - a
            if width <= self.root_tol:
                break
            c = (a * fb - b * fa) / (fb - fa)
            if not a < c < b:
                c = 0.5 * (a + b)
            fc = phi(c)
            if fc == 0.0:
                return c, 0.0
            if fc * fa > 0.0:
                a, fa = c, fc
                if side == -1:
                    fb *= 0.5
                side = -1
            else:
                b, fb, gb = c, fc, fc
                if side == 1:
                    fa *= 0.5
                side = 1

            if b - a > 0.5 * width:
                # Regula falsi stalled; take one bisection step.
                mid = 0.5 * (a + b)
                fm = phi(mid)
                if fm == 0.0:
                    return mid, 0.0
                if fm * fa > 0.0:
                    a, fa = mid, fm
                else:
                    b, fb, gb = mid, fm, fm
                side = 0

        return b, gb
