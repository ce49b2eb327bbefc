# tests/ivp_engine/test_history_dense.py
"""Tests for dense-output segments and the history buffer.

Key properties:
- every segment returns its stored endpoint states exactly,
- consecutive segments agree bit-for-bit at shared boundaries,
- lookups past the last accepted time fail instead of extrapolating,
- lookups before t0 use the initial history (or fail without one).
"""

from __future__ import annotations

import numpy as np
import pytest

from ivp_engine.dense import (
    BDFSegment,
    ConstantSegment,
    DormandPrinceSegment,
    HermiteSegment,
    RadauSegment,
)
from ivp_engine.errors import HistoryUnavailable
from ivp_engine.history import HistoryBuffer


def _hermite(t0: float, t1: float) -> HermiteSegment:
    """Exact Hermite segment of y = t**2 on [t0, t1]."""
    return HermiteSegment(t0, t1, [t0**2], [t1**2], [2 * t0], [2 * t1])


# -----------------------------------------------------------------------------
# Segments
# -----------------------------------------------------------------------------


def test_hermite_reproduces_cubics() -> None:
    seg = HermiteSegment(0.0, 2.0, [0.0], [8.0], [0.0], [12.0])
    for t in (0.3, 1.0, 1.7):
        assert seg(t)[0] == pytest.approx(t**3)
        assert seg.derivative(t)[0] == pytest.approx(3 * t**2)


def test_endpoints_are_exact() -> None:
    y0 = np.array([0.1 + 0.2, 1.0 / 3.0])
    y1 = np.array([np.pi, np.e])
    stages = np.random.default_rng(0).normal(size=(7, 2))
    segments = [
        HermiteSegment(0.0, 0.7, y0, y1, y0, y1),
        DormandPrinceSegment(0.0, 0.7, y0, y1, stages),
        RadauSegment(
            0.0,
            0.7,
            y0,
            y1,
            np.array([0.155, 0.645, 1.0]),
            np.vstack([0.2 * (y1 - y0), 0.6 * (y1 - y0), y1 - y0]),
        ),
    ]
    for seg in segments:
        np.testing.assert_array_equal(seg(0.0), y0)
        np.testing.assert_array_equal(seg(0.7), y1)


def test_segment_rejects_times_outside() -> None:
    seg = _hermite(0.0, 1.0)
    with pytest.raises(ValueError, match="outside"):
        seg(1.5)
    with pytest.raises(ValueError, match="outside"):
        seg.truncate(-0.1)


def test_truncate_keeps_the_interpolant() -> None:
    seg = _hermite(0.0, 1.0)
    cut = seg.truncate(0.4)
    assert cut.t_end == 0.4
    np.testing.assert_array_equal(cut(0.4), seg(0.4))
    assert cut(0.2)[0] == pytest.approx(0.04)
    assert seg.truncate(1.0) is seg


def test_radau_segment_interpolates_stage_increments() -> None:
    nodes = np.array([0.2, 0.6, 1.0])
    # y(t) = 1 + t + t^2 on [0, 1]
    incr = (nodes + nodes**2)[:, None]
    seg = RadauSegment(0.0, 1.0, [1.0], [3.0], nodes, incr)
    assert seg(0.5)[0] == pytest.approx(1.75)
    assert seg.derivative(0.5)[0] == pytest.approx(2.0)
    np.testing.assert_allclose(seg.extrapolate_increments(nodes, 1.0)[:, 0],
                               (1 + nodes) + (1 + nodes) ** 2 - 2.0)


def test_bdf_segment_linear_difference_table() -> None:
    # Order-1 table for y = 2t with h = 0.5, newest node t = 1.
    diffs = np.array([[2.0], [1.0]])
    seg = BDFSegment(0.5, 1.0, [1.0], [2.0], 0.5, diffs)
    assert seg(0.75)[0] == pytest.approx(1.5)
    assert seg.derivative(0.75)[0] == pytest.approx(2.0)


def test_zero_width_constant_segment() -> None:
    seg = ConstantSegment(1.0, 1.0, [5.0])
    assert seg.width == 0.0
    np.testing.assert_array_equal(seg(1.0), [5.0])
    np.testing.assert_array_equal(seg.derivative(1.0), [0.0])


# -----------------------------------------------------------------------------
# History buffer
# -----------------------------------------------------------------------------


def test_history_continuity_at_boundaries() -> None:
    buf = HistoryBuffer(0.0, [0.0])
    for t0, t1 in ((0.0, 0.5), (0.5, 1.25), (1.25, 2.0)):
        buf.record(_hermite(t0, t1))

    assert len(buf) == 3
    assert buf.t_last == 2.0
    for boundary in (0.5, 1.25):
        np.testing.assert_array_equal(buf.lookup_value(boundary), [boundary**2])
    assert buf.lookup_value(0.9)[0] == pytest.approx(0.81)
    assert buf.lookup_derivative(1.5)[0] == pytest.approx(3.0)


def test_history_rejects_gaps() -> None:
    buf = HistoryBuffer(0.0, [0.0])
    buf.record(_hermite(0.0, 0.5))
    with pytest.raises(ValueError, match="contiguous"):
        buf.record(_hermite(0.6, 1.0))


def test_history_never_extrapolates() -> None:
    buf = HistoryBuffer(0.0, [0.0])
    buf.record(_hermite(0.0, 0.5))
    with pytest.raises(HistoryUnavailable) as info:
        buf.lookup_value(0.5000001)
    assert info.value.time == pytest.approx(0.5000001)


def test_history_before_start() -> None:
    bare = HistoryBuffer(0.0, [1.0])
    with pytest.raises(HistoryUnavailable, match="before the run start"):
        bare.lookup_value(-0.1)

    buf = HistoryBuffer(0.0, [1.0], initial_history=lambda t: np.array([1.0 + t]))
    np.testing.assert_allclose(buf.lookup_value(-0.5), [0.5])
    np.testing.assert_allclose(buf.lookup_derivative(-0.5), [1.0], rtol=1e-5)
    # Before any segment is recorded, t0 maps to y0.
    np.testing.assert_array_equal(buf.lookup_value(0.0), [1.0])


def test_derivative_at_t0_before_the_first_segment() -> None:
    calls: list[int] = []

    def slope() -> np.ndarray:
        calls.append(1)
        return np.array([-2.0])

    buf = HistoryBuffer(0.0, [1.0], initial_derivative=slope)
    np.testing.assert_array_equal(buf.lookup_derivative(0.0), [-2.0])
    np.testing.assert_array_equal(buf.lookup_derivative(0.0), [-2.0])
    assert calls == [1]

    # Without a derivative the initial history is differenced up to t0.
    from_history = HistoryBuffer(
        0.0, [1.0], initial_history=lambda t: np.array([1.0 + 3.0 * t])
    )
    np.testing.assert_allclose(from_history.lookup_derivative(0.0), [3.0], rtol=1e-5)

    with pytest.raises(HistoryUnavailable, match="no derivative"):
        HistoryBuffer(0.0, [1.0]).lookup_derivative(0.0)


def test_jump_segments_make_lookups_right_continuous() -> None:
    buf = HistoryBuffer(0.0, [0.0])
    buf.record(_hermite(0.0, 1.0))
    buf.record(ConstantSegment(1.0, 1.0, [-7.0]))
    buf.record(ConstantSegment(1.0, 2.0, [-7.0]))

    np.testing.assert_array_equal(buf.lookup_value(1.0), [-7.0])
    assert buf.lookup_value(0.999)[0] == pytest.approx(0.998001)


def test_lagged_state_stacks_delays() -> None:
    buf = HistoryBuffer(0.0, [0.0], initial_history=lambda t: np.array([0.0]))
    buf.record(_hermite(0.0, 2.0))
    lagged = buf.lagged(2.0, (0.5, 1.0))
    np.testing.assert_allclose(lagged.values[:, 0], [2.25, 1.0])
    np.testing.assert_allclose(lagged.derivatives[:, 0], [3.0, 2.0])
