"""
Constrained <-> unconstrained reparameterization of per-source parameters.

Each constrained family has a forward map (free -> constrained), its inverse,
and a gradient map that turns df/d(constrained) into df/d(free) with the exact
Jacobian. ``ParameterTransform`` applies the families block by block according
to a ``ParamLayout``.

Families:
  simplex   z_i = exp(r_i) / (1 + sum_j exp(r_j)),  z_n = 1 / (1 + sum_j exp(r_j))
  unit      x = z_1 of the binary simplex [x, 1 - x]  (logistic)
  positive  beta = exp(b)
  scaled    x = alpha * y
"""

from __future__ import annotations

import numpy as np

from .errors import TransformError
from .layout import Constraint, ParamLayout

SIMPLEX_TOL = 1e-6
# Floor of the forward maps, so exp underflow stays inside the open domain.
TINY = np.finfo(float).tiny
_UNIT_MAX = np.nextafter(1.0, 0.0)


def _as_vector(v, *, what: str) -> np.ndarray:
    arr = np.asarray(v, dtype=float)
    if arr.ndim != 1:
        raise TransformError(f"{what} must be 1-D, got shape {arr.shape}")
    return arr


def _check_length(arr: np.ndarray, n: int, *, what: str) -> None:
    if arr.shape[0] != n:
        raise TransformError(f"{what} has length {arr.shape[0]}, expected {n}")


# ---------------------------------------------------------------------------
#  Simplex family
# ---------------------------------------------------------------------------

def free_to_simplex(r) -> np.ndarray:
    r = _as_vector(r, what="free simplex vector")
    # Shift by max(0, max r): the implicit n-th logit is 0.
    m = max(0.0, float(np.max(r))) if r.size else 0.0
    e = np.exp(r - m)
    e_last = np.exp(-m)
    denom = e_last + float(np.sum(e))
    z = np.empty(r.size + 1, dtype=float)
    z[:-1] = e / denom
    z[-1] = e_last / denom
    return np.maximum(z, TINY)


def _check_simplex(z: np.ndarray, tol: float) -> None:
    if not np.all(np.isfinite(z)):
        raise TransformError(f"simplex vector has non-finite entries: {z}")
    if np.any(z <= 0.0) or np.any(z > 1.0):
        raise TransformError(f"simplex entries must lie in (0, 1]: {z}")
    s = float(np.sum(z))
    if abs(s - 1.0) > tol:
        raise TransformError(f"simplex vector sums to {s}, not 1")


def simplex_to_free(z, tol: float = SIMPLEX_TOL) -> np.ndarray:
    z = _as_vector(z, what="simplex vector")
    if z.size < 2:
        raise TransformError("simplex vector needs at least 2 entries")
    _check_simplex(z, tol)
    return np.log(z[:-1]) - np.log(z[-1])


def simplex_grad_to_free(z, dfdz, tol: float = SIMPLEX_TOL) -> np.ndarray:
    """df/dr_i = z_i * (df/dz_i - sum_j z_j df/dz_j), i < n."""
    z = _as_vector(z, what="simplex vector")
    dfdz = _as_vector(dfdz, what="simplex gradient")
    _check_length(dfdz, z.size, what="simplex gradient")
    _check_simplex(z, tol)
    weighted = float(np.dot(z, dfdz))
    return z[:-1] * (dfdz[:-1] - weighted)


# ---------------------------------------------------------------------------
#  Unit interval (binary simplex with implicit complement)
# ---------------------------------------------------------------------------

def free_to_unit(r) -> np.ndarray:
    r = np.asarray(r, dtype=float)
    out = np.empty_like(r)
    for i, ri in np.ndenumerate(r):
        out[i] = free_to_simplex([ri])[0]
    # logistic(r) rounds to 1.0 for r > ~37
    return np.minimum(out, _UNIT_MAX)


def _check_unit(x: np.ndarray) -> None:
    if not np.all(np.isfinite(x)) or np.any(x <= 0.0) or np.any(x >= 1.0):
        raise TransformError(f"unit-interval values must lie in (0, 1): {x}")


def unit_to_free(x) -> np.ndarray:
    x = np.asarray(x, dtype=float)
    _check_unit(x)
    return np.log(x) - np.log1p(-x)


def unit_grad_to_free(x, dfdx) -> np.ndarray:
    x = np.asarray(x, dtype=float)
    dfdx = np.asarray(dfdx, dtype=float)
    if dfdx.shape != x.shape:
        raise TransformError(f"unit gradient shape {dfdx.shape} does not match {x.shape}")
    _check_unit(x)
    return dfdx * x * (1.0 - x)


# ---------------------------------------------------------------------------
#  Positive family
# ---------------------------------------------------------------------------

def free_to_positive(b) -> np.ndarray:
    return np.maximum(np.exp(np.asarray(b, dtype=float)), TINY)


def _check_positive(beta: np.ndarray) -> None:
    if not np.all(np.isfinite(beta)) or np.any(beta <= 0.0):
        raise TransformError(f"positive-constrained values must be > 0: {beta}")


def positive_to_free(beta) -> np.ndarray:
    beta = np.asarray(beta, dtype=float)
    _check_positive(beta)
    return np.log(beta)


def positive_grad_to_free(beta, dfdbeta) -> np.ndarray:
    beta = np.asarray(beta, dtype=float)
    dfdbeta = np.asarray(dfdbeta, dtype=float)
    if dfdbeta.shape != beta.shape:
        raise TransformError(f"positive gradient shape {dfdbeta.shape} does not match {beta.shape}")
    _check_positive(beta)
    return dfdbeta * beta


# ---------------------------------------------------------------------------
#  Linear scaling family
# ---------------------------------------------------------------------------

def free_to_scaled(y, alpha: float) -> np.ndarray:
    return float(alpha) * np.asarray(y, dtype=float)


def scaled_to_free(x, alpha: float) -> np.ndarray:
    return np.asarray(x, dtype=float) / float(alpha)


def scaled_grad_to_free(dfdx, alpha: float) -> np.ndarray:
    # x = alpha * y  =>  df/dy = alpha * df/dx
    return float(alpha) * np.asarray(dfdx, dtype=float)


# ---------------------------------------------------------------------------
#  Layout-level transform
# ---------------------------------------------------------------------------

class ParameterTransform:
    """Block-wise map between a constrained source vector and its free vector."""

    def __init__(self, layout: ParamLayout, simplex_tol: float = SIMPLEX_TOL):
        self.layout = layout
        self.simplex_tol = float(simplex_tol)

    @property
    def size(self) -> int:
        return self.layout.size

    @property
    def free_size(self) -> int:
        return self.layout.free_size

    def to_free(self, vs) -> np.ndarray:
        vs = _as_vector(vs, what="parameter vector")
        _check_length(vs, self.size, what="parameter vector")
        out = np.empty(self.free_size, dtype=float)
        for blk in self.layout.blocks:
            x = vs[self.layout.index(blk.name).ravel()]
            fi = self.layout.free_index(blk.name).ravel()
            try:
                if blk.constraint is Constraint.SIMPLEX:
                    out[fi] = simplex_to_free(x, tol=self.simplex_tol)
                elif blk.constraint is Constraint.UNIT:
                    out[fi] = unit_to_free(x)
                elif blk.constraint is Constraint.POSITIVE:
                    out[fi] = positive_to_free(x)
                elif blk.constraint is Constraint.SCALED:
                    out[fi] = scaled_to_free(x, blk.scale)
                else:
                    out[fi] = x
            except TransformError as e:
                raise TransformError(f"block '{blk.name}': {e}") from None
        return out

    def from_free(self, free) -> np.ndarray:
        free = _as_vector(free, what="free vector")
        _check_length(free, self.free_size, what="free vector")
        out = np.empty(self.size, dtype=float)
        for blk in self.layout.blocks:
            r = free[self.layout.free_index(blk.name).ravel()]
            idx = self.layout.index(blk.name).ravel()
            if blk.constraint is Constraint.SIMPLEX:
                out[idx] = free_to_simplex(r)
            elif blk.constraint is Constraint.UNIT:
                out[idx] = free_to_unit(r)
            elif blk.constraint is Constraint.POSITIVE:
                out[idx] = free_to_positive(r)
            elif blk.constraint is Constraint.SCALED:
                out[idx] = free_to_scaled(r, blk.scale)
            else:
                out[idx] = r
        return out

    def grad_to_free(self, vs, dfdvs) -> np.ndarray:
        """Chain rule: gradient w.r.t. the constrained vector -> w.r.t. the free vector."""
        vs = _as_vector(vs, what="parameter vector")
        dfdvs = _as_vector(dfdvs, what="gradient")
        _check_length(vs, self.size, what="parameter vector")
        _check_length(dfdvs, self.size, what="gradient")
        out = np.empty(self.free_size, dtype=float)
        for blk in self.layout.blocks:
            idx = self.layout.index(blk.name).ravel()
            fi = self.layout.free_index(blk.name).ravel()
            x = vs[idx]
            g = dfdvs[idx]
            try:
                if blk.constraint is Constraint.SIMPLEX:
                    out[fi] = simplex_grad_to_free(x, g, tol=self.simplex_tol)
                elif blk.constraint is Constraint.UNIT:
                    out[fi] = unit_grad_to_free(x, g)
                elif blk.constraint is Constraint.POSITIVE:
                    out[fi] = positive_grad_to_free(x, g)
                elif blk.constraint is Constraint.SCALED:
                    out[fi] = scaled_grad_to_free(g, blk.scale)
                else:
                    out[fi] = g
            except TransformError as e:
                raise TransformError(f"block '{blk.name}': {e}") from None
        return out
