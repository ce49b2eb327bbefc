# ivp_engine/src/ivp_engine/flux.py
"""Finite-volume flux discretization for method-of-lines right-hand sides.

This module turns a cell-averaged field into face fluxes and a per-cell rate of
change, so a PDE of the form

    du/dt = -div(F),   F = -D grad(u) + v u

becomes a semi-discrete ODE system that the time integrators can consume. It is
called from inside user right-hand-side callbacks; the integration driver never
calls it directly.

Conventions:
    - Face fluxes are positive in the direction of increasing coordinate.
    - `divergence` in the returned results is the rate of change
      -(F_out - F_in) / cell_measure, i.e. already carries the minus sign.
    - Diffusive flux: central difference across the face scaled by D and the
      inverse center distance (half-cell distance at value boundaries).
    - Advective flux: limited upwind reconstruction of the face value. The
      limiter policy is always explicit configuration.

Boundary handling:
    - Value boundary: diffusive flux uses the boundary value at the face; the
      advective face value is the boundary value on inflow and the adjacent
      interior cell on outflow.
    - Flux boundary: the given flux is the total flux through the boundary face.
    - Periodic (1D) and the angular direction of polar grids wrap the last cell
      onto the first.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal, TypeAlias, cast

import numpy as np
import numpy.typing as npt
from scipy.sparse import csr_matrix, diags, identity, kron

from .errors import raise_invalid_boundary, raise_invalid_configuration
from .grid import Grid1D, Grid2D, PolarGrid

FloatArray = npt.NDArray[np.floating[Any]]
LimiterName = Literal["upwind", "muscl", "superbee"]
LimiterFunction = Callable[[FloatArray], FloatArray]

PERIODIC: Literal["periodic"] = "periodic"

_UNKNOWN_LIMITER_ERROR = "Unknown advection limiter: {name!r}; expected one of {allowed}"
_FIELD_SHAPE_ERROR = "field shape {actual} does not match grid shape {expected}"
_COEFF_SHAPE_ERROR = (
    "{name} shape {shape} is neither scalar, per-cell (..., {n}) nor per-face (..., {nf})"
)
_BOUNDARIES_ERROR = "boundaries must be a (lower, upper) pair of BoundaryCondition or 'periodic'"
_NEGATIVE_DIFFUSION_ERROR = "diffusion coefficient must be non-negative"


# =============================================================================
# Boundary conditions / configuration
# =============================================================================


@dataclass(frozen=True, slots=True)
class BoundaryCondition:
    """Boundary condition at one domain edge.

    Exactly one of `value` and `flux` must be given. Either may be a scalar or,
    on 2D/polar grids, an array along the edge.

    Attributes:
        value: Fixed boundary value (Dirichlet-like).
        flux: Fixed total flux through the boundary face (positive toward
            increasing coordinate).
        label: Name used in error messages.
    """

    value: float | FloatArray | None = None
    flux: float | FloatArray | None = None
    label: str = "boundary"

    def __post_init__(self) -> None:
        """Validate that exactly one of value/flux is specified.

        Raises:
            InvalidBoundaryCondition: If both or neither are given.
        """
        if (self.value is None) == (self.flux is None):
            raise_invalid_boundary(side=self.label, value=self.value, flux=self.flux)

    @property
    def is_value(self) -> bool:
        """Whether this boundary fixes the field value."""
        return self.value is not None


def value_boundary(value: float | FloatArray, label: str = "boundary") -> BoundaryCondition:
    """Convenience constructor for a fixed-value boundary."""
    return BoundaryCondition(value=value, label=label)


def flux_boundary(flux: float | FloatArray, label: str = "boundary") -> BoundaryCondition:
    """Convenience constructor for a fixed-flux boundary."""
    return BoundaryCondition(flux=flux, label=label)


BoundaryPair: TypeAlias = tuple[BoundaryCondition, BoundaryCondition]
BoundarySpec: TypeAlias = BoundaryPair | Literal["periodic"]


@dataclass(frozen=True, slots=True)
class FluxConfig:
    """Explicit flux-discretization policy.

    Attributes:
        limiter: Advection limiter policy.
    """

    limiter: LimiterName = "upwind"


@dataclass(frozen=True, slots=True)
class FluxResult:
    """Result of a 1D flux computation.

    Attributes:
        face_flux: Total flux at each face, shape (n + 1,).
        divergence: Per-cell rate of change -(dF/dx), shape (n,).
    """

    face_flux: FloatArray
    divergence: FloatArray


@dataclass(frozen=True, slots=True)
class DirectionalFluxResult:
    """Result of a directionally split 2D/polar flux computation.

    Attributes:
        face_fluxes: Face fluxes along each axis, e.g. (F_x, F_y) with shapes
            (nx + 1, ny) and (nx, ny + 1), or (F_r, F_theta) on polar grids.
        divergence: Summed per-cell rate of change, same shape as the field.
    """

    face_fluxes: tuple[FloatArray, FloatArray]
    divergence: FloatArray


# =============================================================================
# Limiters
# =============================================================================


def _limiter_upwind(r: FloatArray) -> FloatArray:
    return np.zeros_like(r)


def _limiter_muscl(r: FloatArray) -> FloatArray:
    # Monotonized-central MUSCL limiter.
    return np.maximum(0.0, np.minimum(np.minimum(2.0 * r, 0.5 * (1.0 + r)), 2.0))


def _limiter_superbee(r: FloatArray) -> FloatArray:
    return np.maximum(
        0.0,
        np.maximum(np.minimum(2.0 * r, 1.0), np.minimum(r, 2.0)),
    )


_LIMITERS: dict[str, LimiterFunction] = {
    "upwind": _limiter_upwind,
    "muscl": _limiter_muscl,
    "superbee": _limiter_superbee,
}


def get_limiter(name: str) -> LimiterFunction:
    """Resolve a limiter name to its psi(r) function.

    Args:
        name: One of "upwind", "muscl", "superbee".

    Returns:
        Vectorized limiter function psi(r).
    """
    key = str(name).strip().lower()
    if key not in _LIMITERS:
        raise_invalid_configuration(
            field="advection_limiter",
            detail=_UNKNOWN_LIMITER_ERROR.format(name=name, allowed=sorted(_LIMITERS)),
        )
    return _LIMITERS[key]


# =============================================================================
# Axis kernel
# =============================================================================


def _face_coefficient(
    coeff: float | npt.ArrayLike,
    n: int,
    *,
    name: str,
    harmonic: bool,
    periodic: bool,
) -> FloatArray:
    """Map a scalar/per-cell/per-face coefficient onto faces along the last axis."""
    arr = np.asarray(coeff, dtype=np.float64)
    if arr.ndim == 0 or arr.shape[-1] == n + 1:
        return arr
    if arr.shape[-1] != n:
        raise_invalid_configuration(
            field=name,
            detail=_COEFF_SHAPE_ERROR.format(name=name, shape=arr.shape, n=n, nf=n + 1),
        )

    left = np.concatenate([arr[..., -1:] if periodic else arr[..., :1], arr], axis=-1)
    right = np.concatenate([arr, arr[..., :1] if periodic else arr[..., -1:]], axis=-1)
    if not harmonic:
        return 0.5 * (left + right)

    total = left + right
    prod = 2.0 * left * right
    out = np.zeros_like(total)
    np.divide(prod, total, out=out, where=total > 0.0)
    return out


def _edge_values(spec: float | FloatArray, m: int) -> FloatArray:
    return np.broadcast_to(np.asarray(spec, dtype=np.float64), (m,))


def _axis_fluxes(  # noqa: PLR0913
    u: FloatArray,
    boundaries: BoundarySpec,
    coeff: float | npt.ArrayLike,
    velocity: float | npt.ArrayLike,
    distances: FloatArray,
    limiter: LimiterFunction,
) -> FloatArray:
    """Face fluxes along the last axis of a (m, n) field.

    Args:
        u: Field, shape (m, n).
        boundaries: (lower, upper) boundary pair or "periodic".
        coeff: Diffusion coefficient (scalar, per-cell or per-face).
        velocity: Advection velocity (scalar, per-cell or per-face).
        distances: Center distances at faces, broadcastable to (m, n + 1).
        limiter: Limiter function psi(r).

    Returns:
        Total face fluxes, shape (m, n + 1).
    """
    m, n = u.shape
    periodic = isinstance(boundaries, str)

    d_face = np.broadcast_to(
        _face_coefficient(coeff, n, name="diffusion_coeff", harmonic=True, periodic=periodic),
        (m, n + 1),
    )
    if np.any(d_face < 0.0):
        raise_invalid_configuration(field="diffusion_coeff", detail=_NEGATIVE_DIFFUSION_ERROR)
    v_face = np.broadcast_to(
        _face_coefficient(velocity, n, name="velocity", harmonic=False, periodic=periodic),
        (m, n + 1),
    )
    dist = np.broadcast_to(distances, (m, n + 1))

    # Two ghost layers per side.
    if periodic:
        lo_ghost = u[:, -2:] if n >= 2 else np.repeat(u[:, -1:], 2, axis=1)
        hi_ghost = u[:, :2] if n >= 2 else np.repeat(u[:, :1], 2, axis=1)
    else:
        lo_bc, hi_bc = boundaries
        lo_fill = _edge_values(lo_bc.value, m) if lo_bc.is_value else u[:, 0]
        hi_fill = _edge_values(hi_bc.value, m) if hi_bc.is_value else u[:, -1]
        lo_ghost = np.repeat(np.asarray(lo_fill)[:, None], 2, axis=1)
        hi_ghost = np.repeat(np.asarray(hi_fill)[:, None], 2, axis=1)
    ug = np.concatenate([lo_ghost, u, hi_ghost], axis=1)

    left2 = ug[:, 0 : n + 1]
    left1 = ug[:, 1 : n + 2]
    right1 = ug[:, 2 : n + 3]
    right2 = ug[:, 3 : n + 4]

    # Diffusive part.
    flux = -d_face * (right1 - left1) / dist

    # Limited upwind face values for both wind directions.
    jump = right1 - left1
    r_pos = np.zeros_like(jump)
    np.divide(left1 - left2, jump, out=r_pos, where=jump != 0.0)
    face_pos = left1 + 0.5 * limiter(r_pos) * jump

    jump_neg = -jump
    r_neg = np.zeros_like(jump)
    np.divide(right2 - right1, jump_neg, out=r_neg, where=jump_neg != 0.0)
    face_neg = right1 + 0.5 * limiter(r_neg) * jump_neg

    face_value = np.where(v_face >= 0.0, face_pos, face_neg)

    if not periodic:
        lo_bc, hi_bc = boundaries
        if lo_bc.is_value:
            face_value[:, 0] = np.where(v_face[:, 0] >= 0.0, ug[:, 1], u[:, 0])
        if hi_bc.is_value:
            face_value[:, -1] = np.where(v_face[:, -1] >= 0.0, u[:, -1], ug[:, -2])

    flux = flux + v_face * face_value

    if not periodic:
        lo_bc, hi_bc = boundaries
        if not lo_bc.is_value:
            flux[:, 0] = _edge_values(cast("float | FloatArray", lo_bc.flux), m)
        if not hi_bc.is_value:
            flux[:, -1] = _edge_values(cast("float | FloatArray", hi_bc.flux), m)

    return cast("FloatArray", flux)


def _check_boundaries(boundaries: object) -> BoundarySpec:
    if isinstance(boundaries, str):
        if boundaries.strip().lower() != PERIODIC:
            raise_invalid_configuration(field="boundaries", detail=_BOUNDARIES_ERROR)
        return PERIODIC
    if (
        not isinstance(boundaries, tuple)
        or len(boundaries) != 2
        or not all(isinstance(bc, BoundaryCondition) for bc in boundaries)
    ):
        raise_invalid_configuration(field="boundaries", detail=_BOUNDARIES_ERROR)
    return cast("BoundaryPair", boundaries)


def _check_field(field: npt.ArrayLike, shape: tuple[int, ...]) -> FloatArray:
    arr = np.asarray(field, dtype=np.float64)
    if arr.shape != shape:
        raise ValueError(_FIELD_SHAPE_ERROR.format(actual=arr.shape, expected=shape))
    return arr


# =============================================================================
# Public flux operators
# =============================================================================


def compute_flux(  # noqa: PLR0913
    field: npt.ArrayLike,
    boundaries: BoundarySpec,
    diffusion_coeff: float | npt.ArrayLike,
    velocity: float | npt.ArrayLike,
    grid: Grid1D,
    limiter: str = "upwind",
) -> FluxResult:
    """Compute face fluxes and per-cell rate of change on a 1D grid.

    Args:
        field: Cell values, shape (n,).
        boundaries: (lower, upper) BoundaryCondition pair, or "periodic".
        diffusion_coeff: Scalar, per-cell (n,) or per-face (n + 1,) coefficient.
            Per-cell values are harmonically averaged onto interior faces.
        velocity: Scalar, per-cell (n,) or per-face (n + 1,) advection velocity.
        grid: Grid1D the field lives on.
        limiter: Advection limiter policy ("upwind", "muscl" or "superbee").

    Returns:
        FluxResult with face fluxes (n + 1,) and divergence (n,).
    """
    u = _check_field(field, (grid.n_cells,))
    spec = _check_boundaries(boundaries)
    psi = get_limiter(limiter)

    distances = np.asarray(grid.center_distances)
    if spec == PERIODIC:
        # Wrap face joins the last and first centers.
        wrap = float(grid.center_distances[0] + grid.center_distances[-1])
        distances = distances.copy()
        distances[0] = wrap
        distances[-1] = wrap

    face_flux = _axis_fluxes(u[None, :], spec, diffusion_coeff, velocity, distances, psi)[0]
    divergence = -(face_flux[1:] - face_flux[:-1]) / grid.widths
    return FluxResult(face_flux=face_flux, divergence=divergence)


def _velocity_pair(velocity: object) -> tuple[Any, Any]:
    if isinstance(velocity, tuple) and len(velocity) == 2:
        return velocity[0], velocity[1]
    if np.ndim(cast("Any", velocity)) == 0:
        return velocity, velocity
    msg = "velocity must be a scalar or a (component_0, component_1) pair"
    raise_invalid_configuration(field="velocity", detail=msg)
    return 0.0, 0.0  # pragma: no cover


def _transpose_coeff(coeff: float | npt.ArrayLike) -> Any:
    arr = np.asarray(coeff, dtype=np.float64)
    return arr if arr.ndim < 2 else arr.T


def compute_flux_2d(  # noqa: PLR0913
    field: npt.ArrayLike,
    boundaries_x: BoundarySpec,
    boundaries_y: BoundarySpec,
    diffusion_coeff: float | npt.ArrayLike,
    velocity: float | tuple[float | npt.ArrayLike, float | npt.ArrayLike],
    grid: Grid2D,
    limiter: str = "upwind",
) -> DirectionalFluxResult:
    """Directionally split flux computation on a tensor-product 2D grid.

    Args:
        field: Cell values, shape (nx, ny).
        boundaries_x: Boundaries at x = x_min / x_max (values along y, shape (ny,)).
        boundaries_y: Boundaries at y = y_min / y_max (values along x, shape (nx,)).
        diffusion_coeff: Scalar or per-cell (nx, ny) coefficient.
        velocity: Scalar or (v_x, v_y); each scalar or per-face array
            ((nx + 1, ny) and (nx, ny + 1) respectively).
        grid: Grid2D the field lives on.
        limiter: Advection limiter policy.

    Returns:
        DirectionalFluxResult with (F_x, F_y) and the summed divergence.
    """
    u = _check_field(field, grid.shape)
    spec_x = _check_boundaries(boundaries_x)
    spec_y = _check_boundaries(boundaries_y)
    psi = get_limiter(limiter)
    vx, vy = _velocity_pair(velocity)

    dist_x = _periodic_distances(grid.x, spec_x)
    dist_y = _periodic_distances(grid.y, spec_y)

    flux_x = _axis_fluxes(
        u.T, spec_x, _transpose_coeff(diffusion_coeff), _transpose_coeff(vx), dist_x, psi
    ).T
    flux_y = _axis_fluxes(u, spec_y, diffusion_coeff, vy, dist_y, psi)

    div_x = -(flux_x[1:, :] - flux_x[:-1, :]) / grid.x.widths[:, None]
    div_y = -(flux_y[:, 1:] - flux_y[:, :-1]) / grid.y.widths[None, :]
    return DirectionalFluxResult(face_fluxes=(flux_x, flux_y), divergence=div_x + div_y)


def compute_flux_polar(  # noqa: PLR0913
    field: npt.ArrayLike,
    boundaries_r: BoundaryPair,
    diffusion_coeff: float | npt.ArrayLike,
    velocity: float | tuple[float | npt.ArrayLike, float | npt.ArrayLike],
    grid: PolarGrid,
    limiter: str = "upwind",
) -> DirectionalFluxResult:
    """Directionally split flux computation on a polar grid.

    The angular direction is cyclic: the last angular cell exchanges flux with
    the first.

    Args:
        field: Cell values, shape (n_r, n_theta).
        boundaries_r: Boundaries at r_min / r_max (values along theta).
        diffusion_coeff: Scalar or per-cell (n_r, n_theta) coefficient.
        velocity: Scalar or (v_r, v_theta); each scalar or per-face array.
        grid: PolarGrid the field lives on.
        limiter: Advection limiter policy.

    Returns:
        DirectionalFluxResult with (F_r, F_theta) and the summed divergence.
    """
    u = _check_field(field, grid.shape)
    spec_r = _check_boundaries(boundaries_r)
    if spec_r == PERIODIC:
        raise_invalid_configuration(
            field="boundaries_r", detail="the radial direction cannot be periodic"
        )
    psi = get_limiter(limiter)
    v_r, v_theta = _velocity_pair(velocity)

    flux_r = _axis_fluxes(
        u.T,
        spec_r,
        _transpose_coeff(diffusion_coeff),
        _transpose_coeff(v_r),
        np.asarray(grid.r.center_distances),
        psi,
    ).T
    flux_theta = _axis_fluxes(
        u,
        PERIODIC,
        diffusion_coeff,
        v_theta,
        np.asarray(grid.angular_center_distances),
        psi,
    )

    radial_transport = flux_r * grid.radial_face_lengths
    angular_transport = flux_theta * grid.angular_face_lengths
    div_r = -(radial_transport[1:, :] - radial_transport[:-1, :]) / grid.cell_areas
    div_theta = -(angular_transport[:, 1:] - angular_transport[:, :-1]) / grid.cell_areas
    return DirectionalFluxResult(
        face_fluxes=(flux_r, flux_theta), divergence=div_r + div_theta
    )


def _periodic_distances(axis: Grid1D, spec: BoundarySpec) -> FloatArray:
    distances = np.array(axis.center_distances, dtype=np.float64)
    if spec == PERIODIC:
        wrap = float(axis.center_distances[0] + axis.center_distances[-1])
        distances[0] = wrap
        distances[-1] = wrap
    return distances


# =============================================================================
# Jacobian sparsity for method-of-lines systems
# =============================================================================


def _band_pattern(n: int, width: int, *, periodic: bool) -> csr_matrix:
    offsets = [k for k in range(-width, width + 1) if abs(k) < n]
    pattern = diags([np.ones(n - abs(k)) for k in offsets], offsets, shape=(n, n)).tolil()
    if periodic:
        for k in range(1, width + 1):
            for i in range(k):
                pattern[i, n - k + i] = 1.0
                pattern[n - k + i, i] = 1.0
    return csr_matrix(pattern)


def stencil_sparsity(
    grid: Grid1D | Grid2D | PolarGrid,
    n_fields: int = 1,
    *,
    limiter: str = "upwind",
    periodic: bool = False,
) -> csr_matrix:
    """Sparsity pattern of the semi-discrete Jacobian for a flux stencil.

    The state vector is assumed field-major: all cells of field 0 (C-order
    raveled), then all cells of field 1, and so on. Fields are coupled to each
    other only within the same cell (local reaction terms).

    Args:
        grid: Grid the fields live on.
        n_fields: Number of coupled fields.
        limiter: Limiter policy; limited schemes widen the stencil to two cells.
        periodic: Whether a 1D grid (or the first 2D axis) wraps around.

    Returns:
        Boolean-valued CSR pattern of shape (N, N), N = n_fields * n_cells.
    """
    width = 1 if str(limiter).strip().lower() == "upwind" else 2
    get_limiter(limiter)

    if isinstance(grid, Grid1D):
        spatial = _band_pattern(grid.n_cells, width, periodic=periodic)
    elif isinstance(grid, Grid2D):
        nx, ny = grid.shape
        spatial = kron(
            _band_pattern(nx, width, periodic=periodic), identity(ny)
        ) + kron(identity(nx), _band_pattern(ny, width, periodic=False))
    else:
        n_r, n_theta = grid.shape
        spatial = kron(
            _band_pattern(n_r, width, periodic=False), identity(n_theta)
        ) + kron(identity(n_r), _band_pattern(n_theta, width, periodic=True))

    n_cells = spatial.shape[0]
    coupling = kron(np.ones((n_fields, n_fields)), identity(n_cells))
    pattern = kron(identity(n_fields), spatial) + coupling
    out = csr_matrix(pattern)
    # kron with a dense block stores explicit zeros.
    out.eliminate_zeros()
    out.data[:] = 1.0
    return out
