# ivp_engine/src/ivp_engine/grid.py
"""Structured spatial grids for method-of-lines discretizations.

Grids are immutable once built. Every derived quantity the flux layer needs
(cell widths, face-to-center distances, polar face lengths and cell areas) is
computed once at construction and stored alongside the coordinates as
read-only arrays.

Supported layouts:
    - Grid1D:    cells on an interval, uniform or from explicit faces.
    - Grid2D:    tensor product of two Grid1D axes; fields are indexed [ix, iy].
    - PolarGrid: annulus/disk in (r, theta); theta is always cyclic.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, cast

import numpy as np
import numpy.typing as npt

from .errors import raise_invalid_configuration

FloatArray = npt.NDArray[np.floating[Any]]

_CELL_COUNT_ERROR = "cell_count must be a positive integer; got {n}"
_BOUNDS_ERROR = "bounds must satisfy lower < upper; got {bounds}"
_FACES_ERROR = "faces must be a strictly increasing 1D array with at least two entries"
_RADIUS_ERROR = "polar r_bounds must satisfy 0 <= r_min < r_max; got {bounds}"


def _frozen(arr: npt.ArrayLike) -> FloatArray:
    out = np.array(arr, dtype=np.float64)
    out.setflags(write=False)
    return cast("FloatArray", out)


def _check_bounds(bounds: tuple[float, float]) -> tuple[float, float]:
    lo, hi = (float(bounds[0]), float(bounds[1]))
    if not (np.isfinite(lo) and np.isfinite(hi) and lo < hi):
        raise_invalid_configuration(
            field="bounds", detail=_BOUNDS_ERROR.format(bounds=bounds)
        )
    return lo, hi


def _check_count(n: int) -> int:
    if int(n) != n or n < 1:
        raise_invalid_configuration(
            field="cell_count", detail=_CELL_COUNT_ERROR.format(n=n)
        )
    return int(n)


@dataclass(frozen=True, slots=True)
class Grid1D:
    """Cell-centered 1D grid.

    Attributes:
        faces: Face coordinates, shape (n + 1,).
        centers: Cell-center coordinates, shape (n,).
        widths: Cell widths, shape (n,).
        center_distances: Distance used by the diffusive flux at each face,
            shape (n + 1,). Interior entries are center-to-center distances;
            the two boundary entries are the half-cell distances from the
            boundary face to the adjacent center.
    """

    faces: FloatArray
    centers: FloatArray
    widths: FloatArray
    center_distances: FloatArray

    @property
    def n_cells(self) -> int:
        """Number of cells."""
        return int(self.centers.size)

    @property
    def bounds(self) -> tuple[float, float]:
        """Domain interval (lower, upper)."""
        return float(self.faces[0]), float(self.faces[-1])

    @property
    def length(self) -> float:
        """Domain length."""
        return float(self.faces[-1] - self.faces[0])


@dataclass(frozen=True, slots=True)
class Grid2D:
    """Tensor-product 2D grid; fields have shape (x.n_cells, y.n_cells)."""

    x: Grid1D
    y: Grid1D
    cell_areas: FloatArray

    @property
    def shape(self) -> tuple[int, int]:
        """Field shape (nx, ny)."""
        return self.x.n_cells, self.y.n_cells


@dataclass(frozen=True, slots=True)
class PolarGrid:
    """Polar grid on r in [r_min, r_max], theta in [0, 2*pi) (cyclic).

    Fields have shape (n_r, n_theta).

    Attributes:
        r: Radial Grid1D.
        theta: Angular Grid1D over [0, 2*pi).
        cell_areas: Cell areas 0.5*(r_out^2 - r_in^2)*dtheta, shape (n_r, n_theta).
        radial_face_lengths: Length of each radial face r_f*dtheta,
            shape (n_r + 1, n_theta).
        angular_face_lengths: Length of each angular face dr, shape (n_r, n_theta + 1).
        angular_center_distances: Arc distance between neighbouring angular
            centers r_c*dtheta, shape (n_r, n_theta + 1).
    """

    r: Grid1D
    theta: Grid1D
    cell_areas: FloatArray
    radial_face_lengths: FloatArray
    angular_face_lengths: FloatArray
    angular_center_distances: FloatArray

    @property
    def shape(self) -> tuple[int, int]:
        """Field shape (n_r, n_theta)."""
        return self.r.n_cells, self.theta.n_cells


def grid_from_faces(faces: npt.ArrayLike) -> Grid1D:
    """Build a Grid1D from explicit (possibly non-uniform) face coordinates.

    Args:
        faces: Strictly increasing face coordinates, length n + 1.

    Returns:
        Immutable Grid1D.
    """
    faces_arr = np.asarray(faces, dtype=np.float64)
    if (
        faces_arr.ndim != 1
        or faces_arr.size < 2
        or not np.all(np.isfinite(faces_arr))
        or np.any(np.diff(faces_arr) <= 0.0)
    ):
        raise_invalid_configuration(field="faces", detail=_FACES_ERROR)

    centers = 0.5 * (faces_arr[:-1] + faces_arr[1:])
    widths = np.diff(faces_arr)

    distances = np.empty(faces_arr.size, dtype=np.float64)
    distances[1:-1] = np.diff(centers)
    distances[0] = centers[0] - faces_arr[0]
    distances[-1] = faces_arr[-1] - centers[-1]

    return Grid1D(
        faces=_frozen(faces_arr),
        centers=_frozen(centers),
        widths=_frozen(widths),
        center_distances=_frozen(distances),
    )


def build_grid(bounds: tuple[float, float], cell_count: int) -> Grid1D:
    """Build a uniform cell-centered 1D grid.

    Args:
        bounds: Domain interval (lower, upper).
        cell_count: Number of cells.

    Returns:
        Immutable Grid1D.
    """
    lo, hi = _check_bounds(bounds)
    n = _check_count(cell_count)
    return grid_from_faces(np.linspace(lo, hi, n + 1))


def build_grid_2d(
    x_bounds: tuple[float, float],
    y_bounds: tuple[float, float],
    nx: int,
    ny: int,
) -> Grid2D:
    """Build a uniform tensor-product 2D grid.

    Args:
        x_bounds: Interval along the first axis.
        y_bounds: Interval along the second axis.
        nx: Cells along the first axis.
        ny: Cells along the second axis.

    Returns:
        Immutable Grid2D.
    """
    x = build_grid(x_bounds, nx)
    y = build_grid(y_bounds, ny)
    return Grid2D(x=x, y=y, cell_areas=_frozen(np.outer(x.widths, y.widths)))


def build_polar_grid(
    r_bounds: tuple[float, float],
    n_r: int,
    n_theta: int,
) -> PolarGrid:
    """Build a polar grid with a cyclic angular direction.

    Args:
        r_bounds: Radial interval (r_min, r_max) with r_min >= 0.
        n_r: Number of radial cells.
        n_theta: Number of angular cells.

    Returns:
        Immutable PolarGrid.
    """
    r_min, r_max = _check_bounds(r_bounds)
    if r_min < 0.0:
        raise_invalid_configuration(
            field="r_bounds", detail=_RADIUS_ERROR.format(bounds=r_bounds)
        )

    r = build_grid((r_min, r_max), n_r)
    theta = build_grid((0.0, 2.0 * np.pi), n_theta)
    dtheta = theta.widths[:, None].T  # (1, n_theta)

    r_faces = r.faces[:, None]
    r_centers = r.centers[:, None]

    cell_areas = 0.5 * (r_faces[1:] ** 2 - r_faces[:-1] ** 2) * dtheta
    radial_face_lengths = r_faces * dtheta
    angular_face_lengths = np.repeat(r.widths[:, None], theta.n_cells + 1, axis=1)

    # Cyclic direction: every angular face (including the wrap face) joins two
    # cells one dtheta apart.
    dtheta_faces = np.full(theta.n_cells + 1, float(theta.widths[0]))
    angular_center_distances = r_centers * dtheta_faces[None, :]

    return PolarGrid(
        r=r,
        theta=theta,
        cell_areas=_frozen(cell_areas),
        radial_face_lengths=_frozen(radial_face_lengths),
        angular_face_lengths=_frozen(angular_face_lengths),
        angular_center_distances=_frozen(angular_center_distances),
    )
