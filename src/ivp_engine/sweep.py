# ivp_engine/src/ivp_engine/sweep.py
"""Independent integrations over a batch of parameter sets.

Each run gets its own Problem copy (via ``Problem.with_params``), state,
history and diagnostics; nothing is shared between runs. Results come back
in input order regardless of completion order.

The "process" executor pickles the problem, so its callbacks must be
module-level functions.
"""

from __future__ import annotations

import logging
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from typing import TYPE_CHECKING, Any, Literal

from .driver import Integrator, RunConfig
from .errors import raise_invalid_configuration

if TYPE_CHECKING:
    from collections.abc import Sequence

    import numpy.typing as npt

    from .driver import IntegrationResult
    from .problem import Problem

logger = logging.getLogger(__name__)

ExecutorKind = Literal["serial", "thread", "process"]

_EXECUTOR_ERROR = "executor must be one of 'serial', 'thread', 'process'; got {kind!r}"
_WORKERS_ERROR = "max_workers must be a positive integer or None; got {value!r}"


def _run_one(
    problem: Problem,
    params: Any,
    t_span: float | Sequence[float],
    report_times: npt.ArrayLike | None,
    config: RunConfig,
) -> IntegrationResult:
    return Integrator(problem.with_params(params), config).run(
        t_span, report_times=report_times
    )


def run_sweep(  # noqa: PLR0913
    problem: Problem,
    param_sets: Sequence[Any],
    t_span: float | Sequence[float],
    *,
    report_times: npt.ArrayLike | None = None,
    config: RunConfig | None = None,
    max_workers: int | None = None,
    executor: ExecutorKind = "thread",
) -> list[IntegrationResult]:
    """
    Integrate one problem once per parameter set.

    Args:
        problem: Template problem; its params are replaced per run.
        param_sets: Parameter objects, one per run.
        t_span: End time, or (t0, t_end).
        report_times: Output times shared by all runs.
        config: Run configuration shared by all runs.
        max_workers: Worker count (executor default when None).
        executor: "serial", "thread" or "process".

    Returns:
        One IntegrationResult per parameter set, in input order.

    Raises:
        InvalidConfiguration: On an unknown executor, a bad worker count, or an
            invalid problem/configuration (checked once, before any run).
    """
    if executor not in {"serial", "thread", "process"}:
        raise_invalid_configuration(
            field="executor", detail=_EXECUTOR_ERROR.format(kind=executor)
        )
    if max_workers is not None and (int(max_workers) != max_workers or max_workers < 1):
        raise_invalid_configuration(
            field="max_workers", detail=_WORKERS_ERROR.format(value=max_workers)
        )
    cfg = config or RunConfig()
    # Validate the shared problem/config up front so errors surface once.
    Integrator(problem, cfg)

    params = list(param_sets)
    logger.info("sweep start: %d run(s), executor=%s", len(params), executor)
    if executor == "serial" or max_workers == 1 or len(params) <= 1:
        results = [_run_one(problem, p, t_span, report_times, cfg) for p in params]
    else:
        pool_cls = ThreadPoolExecutor if executor == "thread" else ProcessPoolExecutor
        with pool_cls(max_workers=max_workers) as ex:
            futures = [
                ex.submit(_run_one, problem, p, t_span, report_times, cfg) for p in params
            ]
            results = [f.result() for f in futures]

    failed = sum(not r.success for r in results)
    if failed:
        logger.warning("sweep finished with %d failed run(s) of %d", failed, len(results))
    else:
        logger.info("sweep finished: %d run(s)", len(results))
    return results
