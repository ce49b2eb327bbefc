# tests/ivp_engine/test_events.py
"""Event location, resets and scheduled events.

Key properties:
- located event times agree with analytic crossings,
- a reset produces a (t_e, y_before), (t_e, y_after) sample pair,
- direction filters and terminal events are honoured,
- a reset landing exactly on the surface does not re-trigger,
- scheduled event times bound the step and apply their reset exactly once.
"""

from __future__ import annotations

import numpy as np
import pytest

from ivp_engine import (
    EventLocator,
    EventState,
    InvalidConfiguration,
    Problem,
    RunConfig,
    ToleranceConfig,
    integrate,
)
from ivp_engine.dense import HermiteSegment

G = 9.81


def _fall(t: float, y: np.ndarray, params: object) -> np.ndarray:  # noqa: ARG001
    return np.array([y[1], -G])


def _height(t: float, y: np.ndarray, params: object) -> list[float]:  # noqa: ARG001
    return [y[0]]


def _bounce(t: float, y: np.ndarray, params: object) -> np.ndarray:  # noqa: ARG001
    return np.array([0.0, -0.9 * y[1]])


def _tight(**kwargs: object) -> RunConfig:
    return RunConfig(tolerances=ToleranceConfig(rtol=1e-9, atol=1e-12), **kwargs)  # type: ignore[arg-type]


# -----------------------------------------------------------------------------
# Locator state machine
# -----------------------------------------------------------------------------


def test_scan_classifies_sign_changes() -> None:
    problem = Problem(y0=[1.0], rhs=lambda t, y, p: -y, root_fn=lambda t, y, p: [y[0], -y[0]])
    locator = EventLocator(problem, 1e-10)
    locator.start(0.0, problem.y0)

    quiet = locator.scan(np.array([1.0, -1.0]), np.array([0.5, -0.5]))
    assert quiet.state is EventState.NO_SIGN_CHANGE

    crossing = locator.scan(np.array([1.0, -1.0]), np.array([-0.5, 0.5]))
    assert crossing.state is EventState.CANDIDATE_BRACKET
    assert crossing.candidates == (0, 1)

    # Components that start exactly at zero are not armed.
    disarmed = locator.scan(np.array([0.0, -1.0]), np.array([-0.5, -0.5]))
    assert disarmed.state is EventState.NO_SIGN_CHANGE


def test_locator_reports_far_side_of_the_crossing() -> None:
    problem = Problem(y0=[1.0], rhs=lambda t, y, p: -y, root_fn=lambda t, y, p: [y[0] - 0.3])
    locator = EventLocator(problem, 1e-12)
    locator.start(0.0, np.array([0.0]))

    # y = t on [0, 1].
    check = locator.check(HermiteSegment(0.0, 1.0, [0.0], [1.0], [1.0], [1.0]))

    assert check.state is EventState.EVENT_LOCATED
    assert check.event is not None
    assert check.event.time == pytest.approx(0.3, abs=1e-11)
    assert check.event.time >= 0.3 - 1e-15
    assert check.event.value >= 0.0


def test_root_on_the_surface_is_armed_inside_the_step() -> None:
    problem = Problem(y0=[0.0], rhs=lambda t, y, p: -y, root_fn=_height, event_direction=-1)
    locator = EventLocator(problem, 1e-12)
    locator.start(0.0, np.array([0.0]))

    # y = t - 2 t^2 leaves the surface upward and falls back through it at 0.5.
    rebound = HermiteSegment(0.0, 1.0, [0.0], [-1.0], [1.0], [-3.0])
    check = locator.check(rebound)

    assert check.state is EventState.EVENT_LOCATED
    assert check.event is not None
    assert check.event.time == pytest.approx(0.5, abs=1e-10)


def test_root_leaving_the_surface_the_wrong_way_is_not_an_event() -> None:
    problem = Problem(y0=[0.0], rhs=lambda t, y, p: -y, root_fn=_height, event_direction=-1)
    locator = EventLocator(problem, 1e-12)
    locator.start(0.0, np.array([0.0]))

    # y = -t starts on the surface and only moves away from it.
    check = locator.check(HermiteSegment(0.0, 1.0, [0.0], [-1.0], [-1.0], [-1.0]))

    assert check.state is EventState.NO_SIGN_CHANGE


def test_locator_validates_its_settings() -> None:
    problem = Problem(y0=[1.0], rhs=lambda t, y, p: -y, root_fn=_height, event_direction=[1, 1])
    with pytest.raises(InvalidConfiguration, match="root_tol"):
        EventLocator(problem, 0.0)
    with pytest.raises(InvalidConfiguration, match="event_direction"):
        EventLocator(problem, 1e-10).start(0.0, problem.y0)

    bad_terminal = Problem(y0=[1.0], rhs=lambda t, y, p: -y, root_fn=_height, terminal_events=(3,))
    with pytest.raises(InvalidConfiguration, match="terminal_events"):
        EventLocator(bad_terminal, 1e-10).start(0.0, bad_terminal.y0)


# -----------------------------------------------------------------------------
# Root events in a run
# -----------------------------------------------------------------------------


def test_bouncing_ball_reset_pair() -> None:
    ball = Problem(
        y0=[1.0, 0.0], rhs=_fall, root_fn=_height, event_direction=-1, event_reset=_bounce
    )

    result = integrate(ball, 2.0, config=_tight())

    t_hit = np.sqrt(2.0 / G)
    first = result.events[0]
    assert first.time == pytest.approx(t_hit, abs=1e-6)
    assert first.y_before is not None
    assert first.y_after is not None
    assert first.y_after[1] == pytest.approx(-0.9 * first.y_before[1])

    # The trajectory carries both sides of the jump at the same time.
    jumps = np.flatnonzero(np.diff(result.t) == 0.0)
    assert jumps.size == len(result.events)
    i = int(jumps[0])
    assert result.t[i] == first.time
    assert result.y[i, 0] == pytest.approx(0.0, abs=1e-6)
    assert result.y[i, 1] == pytest.approx(-G * t_hit, rel=1e-6)
    np.testing.assert_allclose(result.y[i + 1], [0.0, 0.9 * G * t_hit], rtol=1e-6)


def test_bounce_sequence_times() -> None:
    ball = Problem(
        y0=[1.0, 0.0], rhs=_fall, root_fn=_height, event_direction=-1, event_reset=_bounce
    )

    result = integrate(ball, 2.0, config=_tight())

    t1 = np.sqrt(2.0 / G)
    v1 = G * t1
    # Each flight lasts 2 v / g with the rebound speed reduced by 0.9.
    expected = [t1, t1 + 2 * 0.9 * v1 / G, t1 + 2 * 0.9 * v1 / G + 2 * 0.81 * v1 / G]
    got = [e.time for e in result.events[:3]]
    np.testing.assert_allclose(got, expected, atol=1e-5)
    assert result.diagnostics.events == len(result.events)
    # The ball never ends up below the floor at a sample.
    assert result.y[:, 0].min() > -1e-6


def test_every_bounce_is_caught_at_default_tolerances() -> None:
    ball = Problem(
        y0=[1.0, 0.0], rhs=_fall, root_fn=_height, event_direction=-1, event_reset=_bounce
    )

    result = integrate(ball, 3.0)

    t1 = np.sqrt(2.0 / G)
    flights = 2.0 * t1 * 0.9 ** np.arange(1, 4)
    expected = t1 + np.concatenate([[0.0], np.cumsum(flights)])
    expected = expected[expected < 3.0]
    assert len(result.events) == len(expected)
    np.testing.assert_allclose([e.time for e in result.events], expected, atol=1e-4)
    assert result.y[:, 0].min() > -1e-6


def test_terminal_event_stops_the_run() -> None:
    ball = Problem(y0=[1.0, 0.0], rhs=_fall, root_fn=_height, terminal_events=(0,))

    result = integrate(ball, 5.0, config=_tight())

    assert result.status == "terminated"
    assert result.success
    assert len(result.events) == 1
    assert result.events[0].terminal
    assert result.t[-1] == pytest.approx(np.sqrt(2.0 / G), abs=1e-6)
    assert "terminal event 0" in result.message


def test_direction_filters_crossings() -> None:
    def wave(t: float, y: np.ndarray, params: object) -> np.ndarray:  # noqa: ARG001
        return np.array([np.cos(t)])

    def level(t: float, y: np.ndarray, params: object) -> list[float]:  # noqa: ARG001
        return [y[0] - 0.5, y[0] - 0.5]

    # y = sin(t) crosses 0.5 upward at pi/6 (+2k pi) and downward at 5 pi/6.
    problem = Problem(y0=[0.0], rhs=wave, root_fn=level, event_direction=[1, -1])

    result = integrate(problem, 4.0 * np.pi, config=_tight())

    rising = [e.time for e in result.events if e.index == 0]
    falling = [e.time for e in result.events if e.index == 1]
    np.testing.assert_allclose(rising, [np.pi / 6, np.pi / 6 + 2 * np.pi], atol=1e-6)
    np.testing.assert_allclose(falling, [5 * np.pi / 6, 5 * np.pi / 6 + 2 * np.pi], atol=1e-6)
    # Events without a reset leave the trajectory continuous.
    for e in result.events:
        np.testing.assert_array_equal(e.y_before, e.y_after)


def test_events_are_reported_in_time_order() -> None:
    def two_levels(t: float, y: np.ndarray, params: object) -> list[float]:  # noqa: ARG001
        return [y[0] - 0.7, y[0] - 0.2]

    problem = Problem(y0=[0.0], rhs=lambda t, y, p: np.ones(1), root_fn=two_levels)

    result = integrate(problem, 1.0, config=RunConfig(h_init=1.0))

    assert [e.index for e in result.events] == [1, 0]
    np.testing.assert_allclose([e.time for e in result.events], [0.2, 0.7], atol=1e-9)


# -----------------------------------------------------------------------------
# Scheduled events
# -----------------------------------------------------------------------------


def _dose(t: float, y: np.ndarray, params: dict[str, float]) -> np.ndarray:  # noqa: ARG001
    return y + params["dose"]


def test_scheduled_event_times_apply_resets() -> None:
    problem = Problem(
        y0=[1.0],
        rhs=lambda t, y, p: -y,
        params={"dose": 1.0},
        event_times=(1.0, 2.0),
        event_reset=_dose,
    )

    result = integrate(problem, 3.0, report_times=[3.0], config=_tight())

    assert [e.kind for e in result.events] == ["scheduled", "scheduled"]
    assert [e.time for e in result.events] == pytest.approx([1.0, 2.0])
    # y(3) = ((e^-1 + 1) e^-1 + 1) e^-1
    expected = ((np.exp(-1.0) + 1.0) * np.exp(-1.0) + 1.0) * np.exp(-1.0)
    assert result.y[-1, 0] == pytest.approx(expected, abs=1e-7)
    # The history is right-continuous across the dose.
    assert result.sol(1.0)[0] == pytest.approx(np.exp(-1.0) + 1.0, abs=1e-7)


def test_report_at_a_scheduled_time_is_not_duplicated() -> None:
    problem = Problem(
        y0=[1.0],
        rhs=lambda t, y, p: -y,
        params={"dose": 1.0},
        event_times=(1.0,),
        event_reset=_dose,
    )

    result = integrate(problem, 2.0, report_times=[0.5, 1.0, 2.0], config=_tight())

    # The report at the event time doubles as the pre-reset sample.
    np.testing.assert_array_equal(result.t, [0.5, 1.0, 1.0, 2.0])
    e1 = np.exp(-1.0)
    np.testing.assert_allclose(
        result.y[:, 0], [np.exp(-0.5), e1, e1 + 1.0, (e1 + 1.0) * e1], atol=1e-7
    )


def test_scheduled_times_outside_the_span_are_ignored() -> None:
    problem = Problem(
        y0=[1.0],
        rhs=lambda t, y, p: -y,
        params={"dose": 1.0},
        event_times=(-1.0, 0.0, 5.0),
        event_reset=_dose,
    )
    result = integrate(problem, 2.0, config=_tight())
    assert result.events == ()


def test_event_times_need_a_reset() -> None:
    problem = Problem(y0=[1.0], rhs=lambda t, y, p: -y, event_times=(1.0,))
    with pytest.raises(InvalidConfiguration, match="event_reset"):
        integrate(problem, 2.0)


def test_bad_event_direction_is_rejected() -> None:
    problem = Problem(y0=[1.0], rhs=lambda t, y, p: -y, root_fn=_height, event_direction=2)
    with pytest.raises(InvalidConfiguration, match="event_direction"):
        integrate(problem, 1.0)
