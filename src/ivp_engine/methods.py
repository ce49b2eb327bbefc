# ivp_engine/src/ivp_engine/methods.py
"""Method descriptors: the closed set of supported integration families.

A method is selected once, explicitly, and never switched automatically. Each
family is a frozen variant tagged by `kind`; adding a method means adding a
variant here and its stepper in :mod:`ivp_engine.steppers`.

Supported names (keyword `method=`):
    - "rk45" / "dopri5" / "explicit-embedded-rk":
                  Dormand-Prince 5(4), FSAL, 5th-order dense output.
    - "rk23":     Bogacki-Shampine 3(2), FSAL, cubic Hermite dense output.
    - "bdf":      Variable-order (1..5) BDF/NDF in backward-difference form.
    - "radau":    Radau IIA, 3 stages, order 5 (stiffly accurate).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias

import numpy as np
import numpy.typing as npt

from .errors import raise_invalid_configuration

FloatArray = npt.NDArray[np.floating[Any]]
MethodName = Literal["rk45", "rk23", "bdf", "radau"]

_UNKNOWN_METHOD_ERROR = "Unknown method: {method!r}; expected one of {allowed}"
_BDF_ORDER_ERROR = "BDF max_order must be in [1, 5]; got {order}"
_BDF_FIXED_ERROR = "BDF fixed_order must be in [1, max_order]; got {order}"
_RADAU_STAGES_ERROR = "only 3-stage Radau IIA is supported; got {stages}"

BDF_MAX_ORDER = 5


def _frozen(values: Any) -> FloatArray:
    arr = np.array(values, dtype=np.float64)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, slots=True)
class RKTableau:
    """Butcher tableau of an explicit embedded Runge-Kutta pair.

    Attributes:
        c: Stage nodes, shape (s,).
        a: Lower-triangular stage matrix, shape (s, s).
        b: High-order weights, shape (s,).
        e: Error weights (b - b_hat) padded with the FSAL stage, shape (s + 1,).
        order: Order of the propagated solution.
        error_order: Order of the embedded estimate.
        dense: Dense-output scheme ("dopri" or "hermite").
    """

    c: FloatArray
    a: FloatArray
    b: FloatArray
    e: FloatArray
    order: int
    error_order: int
    dense: Literal["dopri", "hermite"] = "hermite"

    @property
    def stages(self) -> int:
        """Number of stages excluding the FSAL evaluation."""
        return int(self.b.size)


DORMAND_PRINCE_54 = RKTableau(
    c=_frozen([0.0, 1 / 5, 3 / 10, 4 / 5, 8 / 9, 1.0]),
    a=_frozen(
        [
            [0, 0, 0, 0, 0],
            [1 / 5, 0, 0, 0, 0],
            [3 / 40, 9 / 40, 0, 0, 0],
            [44 / 45, -56 / 15, 32 / 9, 0, 0],
            [19372 / 6561, -25360 / 2187, 64448 / 6561, -212 / 729, 0],
            [9017 / 3168, -355 / 33, 46732 / 5247, 49 / 176, -5103 / 18656],
        ]
    ),
    b=_frozen([35 / 384, 0, 500 / 1113, 125 / 192, -2187 / 6784, 11 / 84]),
    e=_frozen(
        [
            -71 / 57600,
            0,
            71 / 16695,
            -71 / 1920,
            17253 / 339200,
            -22 / 525,
            1 / 40,
        ]
    ),
    order=5,
    error_order=4,
    dense="dopri",
)

BOGACKI_SHAMPINE_32 = RKTableau(
    c=_frozen([0.0, 1 / 2, 3 / 4]),
    a=_frozen([[0, 0], [1 / 2, 0], [0, 3 / 4]]),
    b=_frozen([2 / 9, 1 / 3, 4 / 9]),
    e=_frozen([5 / 72, -1 / 12, -1 / 9, 1 / 8]),
    order=3,
    error_order=2,
    dense="hermite",
)


@dataclass(frozen=True, slots=True)
class ExplicitRK:
    """Explicit embedded Runge-Kutta family."""

    name: str
    tableau: RKTableau
    kind: Literal["explicit_rk"] = field(default="explicit_rk", init=False)

    @property
    def implicit(self) -> bool:
        """Whether the method solves nonlinear stage equations."""
        return False


@dataclass(frozen=True, slots=True)
class BDF:
    """Variable-order backward differentiation formulas (NDF variant)."""

    max_order: int = BDF_MAX_ORDER
    fixed_order: int | None = None
    kind: Literal["bdf"] = field(default="bdf", init=False)

    def __post_init__(self) -> None:
        """Validate order bounds.

        Raises:
            InvalidConfiguration: If orders are outside [1, 5].
        """
        if not 1 <= self.max_order <= BDF_MAX_ORDER:
            raise_invalid_configuration(
                field="bdf_max_order", detail=_BDF_ORDER_ERROR.format(order=self.max_order)
            )
        if self.fixed_order is not None and not 1 <= self.fixed_order <= self.max_order:
            raise_invalid_configuration(
                field="fixed_order", detail=_BDF_FIXED_ERROR.format(order=self.fixed_order)
            )

    @property
    def name(self) -> str:
        """Canonical method name."""
        return "bdf"

    @property
    def implicit(self) -> bool:
        """Whether the method solves nonlinear stage equations."""
        return True


@dataclass(frozen=True, slots=True)
class Radau:
    """Radau IIA collocation family."""

    stages: int = 3
    kind: Literal["radau"] = field(default="radau", init=False)

    def __post_init__(self) -> None:
        """Validate the stage count.

        Raises:
            InvalidConfiguration: For anything but three stages.
        """
        if self.stages != 3:  # noqa: PLR2004
            raise_invalid_configuration(
                field="stages", detail=_RADAU_STAGES_ERROR.format(stages=self.stages)
            )

    @property
    def name(self) -> str:
        """Canonical method name."""
        return "radau"

    @property
    def implicit(self) -> bool:
        """Whether the method solves nonlinear stage equations."""
        return True


MethodDescriptor: TypeAlias = ExplicitRK | BDF | Radau

_ALIASES: dict[str, str] = {
    "rk45": "rk45",
    "dopri5": "rk45",
    "explicit-embedded-rk": "rk45",
    "rk23": "rk23",
    "bdf": "bdf",
    "radau": "radau",
    "radau5": "radau",
}


def resolve_method(
    method: str | MethodDescriptor,
    *,
    bdf_max_order: int = BDF_MAX_ORDER,
) -> MethodDescriptor:
    """Map a method name (or descriptor) to its descriptor.

    Args:
        method: Method name or an existing descriptor.
        bdf_max_order: Maximum order for the BDF family.

    Returns:
        Immutable method descriptor.

    Raises:
        InvalidConfiguration: For unknown names.
    """
    if isinstance(method, (ExplicitRK, BDF, Radau)):
        return method

    key = _ALIASES.get(str(method).strip().lower())
    if key is None:
        raise_invalid_configuration(
            field="method",
            detail=_UNKNOWN_METHOD_ERROR.format(method=method, allowed=sorted(_ALIASES)),
        )
    if key == "rk45":
        return ExplicitRK(name="rk45", tableau=DORMAND_PRINCE_54)
    if key == "rk23":
        return ExplicitRK(name="rk23", tableau=BOGACKI_SHAMPINE_32)
    if key == "bdf":
        return BDF(max_order=bdf_max_order)
    return Radau()
