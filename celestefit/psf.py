"""
Finite-support point-spread functions used to bound a source's footprint.

Profiles are normalized to unit integral over the plane (before truncation)
and are exactly zero beyond ``radius``.
"""

from __future__ import annotations

import math
from typing import Any, Protocol

import numpy as np

FWHM_TO_SIGMA = 1.0 / 2.3548200450309493


class PointSpreadFunction(Protocol):
    fwhm: float
    radius: float

    def evaluate(self, dx, dy) -> np.ndarray:
        ...


def _moffat_alpha_from_fwhm(fwhm_pix: float, beta: float) -> float:
    """
    Circular Moffat:
        I(r) ∝ (1 + (r/alpha)^2)^(-beta)
    FWHM relation:
        FWHM = 2 * alpha * sqrt(2^(1/beta) - 1)
    """
    fwhm_pix = float(fwhm_pix)
    beta = float(beta)
    if not np.isfinite(fwhm_pix) or fwhm_pix <= 0:
        raise ValueError(f"Bad fwhm_pix: {fwhm_pix}")
    if not np.isfinite(beta) or beta <= 1:
        # beta>1 ensures finite total flux in 2D
        raise ValueError(f"Bad beta (must be >1): {beta}")
    denom = 2.0 * math.sqrt(math.pow(2.0, 1.0 / beta) - 1.0)
    return fwhm_pix / denom


def _check_radius(radius_pix: float) -> float:
    radius_pix = float(radius_pix)
    if not (np.isfinite(radius_pix) and radius_pix >= 1):
        raise ValueError(f"Bad radius_pix: {radius_pix}")
    return radius_pix


class MoffatPSF:
    """Circular Moffat profile truncated at ``radius_pix``."""

    def __init__(self, fwhm_pix: float, beta: float = 3.5, radius_pix: float = 25.0):
        self.fwhm = float(fwhm_pix)
        self.beta = float(beta)
        self.radius = _check_radius(radius_pix)
        self.alpha = _moffat_alpha_from_fwhm(self.fwhm, self.beta)
        self._norm = (self.beta - 1.0) / (math.pi * self.alpha * self.alpha)

    def __repr__(self) -> str:
        return f"MoffatPSF(fwhm_pix={self.fwhm:.3f}, beta={self.beta:.3f}, radius_pix={self.radius:.1f})"

    def evaluate(self, dx, dy) -> np.ndarray:
        rr2 = np.asarray(dx, dtype=float) ** 2 + np.asarray(dy, dtype=float) ** 2
        out = self._norm * np.power(1.0 + rr2 / (self.alpha * self.alpha), -self.beta)
        return np.where(rr2 <= self.radius * self.radius, out, 0.0)


class GaussianPSF:
    """Circular Gaussian profile truncated at ``radius_pix``."""

    def __init__(self, fwhm_pix: float, radius_pix: float = 25.0):
        fwhm_pix = float(fwhm_pix)
        if not np.isfinite(fwhm_pix) or fwhm_pix <= 0:
            raise ValueError(f"Bad fwhm_pix: {fwhm_pix}")
        self.fwhm = fwhm_pix
        self.sigma = max(fwhm_pix * FWHM_TO_SIGMA, 1e-3)
        self.radius = _check_radius(radius_pix)

    def __repr__(self) -> str:
        return f"GaussianPSF(fwhm_pix={self.fwhm:.3f}, radius_pix={self.radius:.1f})"

    def evaluate(self, dx, dy) -> np.ndarray:
        rr2 = np.asarray(dx, dtype=float) ** 2 + np.asarray(dy, dtype=float) ** 2
        s2 = self.sigma * self.sigma
        out = np.exp(-0.5 * rr2 / s2) / (2.0 * math.pi * s2)
        return np.where(rr2 <= self.radius * self.radius, out, 0.0)


def psf_from_config(psf_cfg: dict[str, Any] | None, fwhm_pix: float | None = None) -> PointSpreadFunction:
    cfg = psf_cfg or {}
    fwhm = float(fwhm_pix) if fwhm_pix is not None else float(cfg.get("fwhm_default_pix", 4.0))
    radius = float(cfg.get("radius_pix", 25.0))
    model = str(cfg.get("model", "moffat")).lower()
    if model == "moffat":
        return MoffatPSF(fwhm_pix=fwhm, beta=float(cfg.get("beta", 3.5)), radius_pix=radius)
    if model == "gaussian":
        return GaussianPSF(fwhm_pix=fwhm, radius_pix=radius)
    raise ValueError(f"psf.model must be 'moffat' or 'gaussian'. Got: {model}")
