"""
ELBO maximization over the unconstrained parameters of the active sources.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Sequence

import numpy as np
from scipy.optimize import minimize

from .errors import NumericalDivergence
from .model_params import ModelParams
from .objective import Objective, as_objective_result
from .transform import ParameterTransform

logger = logging.getLogger("celestefit.optimize")


class OptimizeStatus(str, Enum):
    CONVERGED = "converged"
    MAX_ITERS = "max_iters"
    # Line search could not improve further; the point is still usable.
    STALLED = "stalled"


@dataclass
class OptimizeResult:
    iter_count: int
    max_f: float
    max_x: list[np.ndarray]
    status: OptimizeStatus
    message: str = ""
    trace: list[float] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.status is OptimizeStatus.CONVERGED


def _frozen_free_indices(transform: ParameterTransform, n_active: int, frozen: Sequence[str]) -> np.ndarray:
    per_source = [transform.layout.free_index(name).ravel() for name in frozen]
    if not per_source:
        return np.zeros(0, dtype=int)
    base = np.concatenate(per_source)
    return np.concatenate([base + k * transform.free_size for k in range(n_active)])


def maximize_f(
    objective: Objective,
    tiled_images: Sequence[Any],
    mp: ModelParams,
    transform: ParameterTransform | None = None,
    *,
    max_iters: int = 50,
    ftol: float = 1e-9,
    gtol: float = 1e-6,
    frozen: Sequence[str] = (),
    verbose: bool = False,
) -> OptimizeResult:
    """Maximize the objective over the active sources of ``mp`` with L-BFGS.

    ``mp.vp`` is updated in place at every evaluation and holds the final point
    on return. Raises NumericalDivergence on a non-finite objective, gradient
    or parameter vector; the active vectors are then restored to their
    starting values.
    """
    if transform is None:
        transform = ParameterTransform(mp.layout)
    if transform.layout is not mp.layout and transform.layout != mp.layout:
        raise ValueError("transform layout does not match the model parameter layout")
    active = mp.active_sources
    if not active:
        raise ValueError("maximize_f needs at least one active source")
    if int(max_iters) < 1:
        raise ValueError(f"max_iters must be >= 1, got {max_iters}")

    n = transform.free_size
    x0 = np.concatenate([transform.to_free(mp.vp[s]) for s in active])
    start = [mp.vp[s].copy() for s in active]

    bounds = None
    pinned = _frozen_free_indices(transform, len(active), frozen)
    if pinned.size:
        bounds = [(None, None)] * x0.size
        for i in pinned:
            bounds[i] = (float(x0[i]), float(x0[i]))

    level = logging.INFO if verbose else logging.DEBUG
    pfx = f"[src {','.join(str(s) for s in active)}] "
    n_eval = 0
    trace: list[float] = []

    def _write_constrained(x: np.ndarray) -> list[np.ndarray]:
        out = []
        for k, s in enumerate(active):
            vs = transform.from_free(x[k * n:(k + 1) * n])
            if not np.all(np.isfinite(vs)):
                raise NumericalDivergence(active, n_eval, "parameter vector")
            mp.vp[s][:] = vs
            out.append(vs)
        return out

    def _neg_f(x: np.ndarray) -> tuple[float, np.ndarray]:
        nonlocal n_eval
        n_eval += 1
        constrained = _write_constrained(x)
        res = as_objective_result(objective(tiled_images, mp, active))
        value = float(res.value)
        if not np.isfinite(value):
            raise NumericalDivergence(active, n_eval, "objective")
        grad = np.empty_like(x)
        for k, s in enumerate(active):
            if s not in res.gradient:
                raise KeyError(f"objective returned no gradient for active source {s}")
            dfdvs = np.asarray(res.gradient[s], dtype=float)
            if not np.all(np.isfinite(dfdvs)):
                raise NumericalDivergence(active, n_eval, "gradient")
            grad[k * n:(k + 1) * n] = transform.grad_to_free(constrained[k], dfdvs)
        if not trace:
            trace.append(value)
        return -value, -grad

    def _callback(intermediate_result) -> None:
        elbo = -float(intermediate_result.fun)
        trace.append(elbo)
        logger.log(level, "%sopt iter %02d  elbo=%s", pfx, len(trace) - 1, str(elbo))

    try:
        res = minimize(
            _neg_f,
            x0,
            jac=True,
            method="L-BFGS-B",
            bounds=bounds,
            callback=_callback,
            options=dict(maxiter=int(max_iters), maxfun=max(15000, 20 * int(max_iters)), ftol=float(ftol), gtol=float(gtol)),
        )
    except NumericalDivergence:
        for s, vs in zip(active, start):
            mp.vp[s][:] = vs
        raise

    max_x = _write_constrained(np.asarray(res.x, dtype=float))
    max_f = -float(res.fun)
    if res.status == 0:
        status = OptimizeStatus.CONVERGED
    elif res.status == 1:
        status = OptimizeStatus.MAX_ITERS
    else:
        status = OptimizeStatus.STALLED
    message = res.message if isinstance(res.message, str) else str(res.message)

    if status is OptimizeStatus.MAX_ITERS:
        logger.info("%sWARNING: did not converge. niters=%d max_iters=%d elbo=%s",
                    pfx, int(res.nit), int(max_iters), str(max_f))
    else:
        logger.log(level, "%s%s after %d iteration(s): %s", pfx, status.value, int(res.nit), message)

    return OptimizeResult(
        iter_count=int(res.nit),
        max_f=max_f,
        max_x=[vs.copy() for vs in max_x],
        status=status,
        message=message,
        trace=trace,
    )
