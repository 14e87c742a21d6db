"""
Variational parameters of every catalog source, plus their initialization
from catalog entries.
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, Sequence

import numpy as np

from .catalog import CatalogEntry
from .layout import ParamLayout

logger = logging.getLogger("celestefit.model_params")

STAR = 0
GALAXY = 1

MIN_FLUX_INIT = 0.1
COLOR_CLIP = 9.0
UNIT_CLIP = (0.015, 0.985)
MIN_SCALE = 0.2


class ModelParams:
    """Per-source constrained parameter vectors and the set being optimized.

    ``vp[s]`` is the constrained vector of source ``s``. ``active_sources``
    lists the sources an optimizer may change; it is validated on assignment.
    """

    def __init__(self, vp: Sequence[np.ndarray], layout: ParamLayout, active_sources: Iterable[int] = ()):
        self.layout = layout
        self.vp: list[np.ndarray] = []
        for s, vs in enumerate(vp):
            vs = np.asarray(vs, dtype=float)
            if vs.shape != (layout.size,):
                raise ValueError(f"source {s}: parameter vector has shape {vs.shape}, expected ({layout.size},)")
            self.vp.append(vs)
        self._active: list[int] = []
        self.active_sources = active_sources

    @property
    def S(self) -> int:
        return len(self.vp)

    @property
    def active_sources(self) -> list[int]:
        return list(self._active)

    @active_sources.setter
    def active_sources(self, sources: Iterable[int]) -> None:
        out: list[int] = []
        for s in sources:
            s = int(s)
            if not (0 <= s < len(self.vp)):
                raise ValueError(f"active source {s} out of range for {len(self.vp)} source(s)")
            if s in out:
                raise ValueError(f"active source {s} listed twice")
            out.append(s)
        self._active = out

    def with_active(self, sources: Iterable[int]) -> "ModelParams":
        """Working copy: active vectors are copied, the rest are shared."""
        sources = [int(s) for s in sources]
        wanted = set(sources)
        vp = [vs.copy() if s in wanted else vs for s, vs in enumerate(self.vp)]
        return ModelParams(vp, self.layout, sources)

    def __repr__(self) -> str:
        return f"ModelParams(S={self.S}, active={self._active})"


def _color(lower_flux: float, upper_flux: float) -> float:
    if lower_flux > 0 and upper_flux > 0:
        return float(min(max(math.log(upper_flux / lower_flux), -COLOR_CLIP), COLOR_CLIP))
    if upper_flux > 0:
        return 3.0
    if lower_flux > 0:
        return -3.0
    return 0.0


def init_source(entry: CatalogEntry, layout: ParamLayout) -> np.ndarray:
    """Initial constrained vector for one catalog entry."""
    star_fluxes = np.asarray(entry.star_fluxes, dtype=float)
    gal_fluxes = np.asarray(entry.gal_fluxes, dtype=float)
    if star_fluxes.shape != (layout.n_bands,) or gal_fluxes.shape != (layout.n_bands,):
        raise ValueError(
            f"catalog entry {entry.objid}: expected {layout.n_bands} band fluxes, "
            f"got {star_fluxes.shape[0]}/{gal_fluxes.shape[0]}"
        )
    star_fluxes = np.where(np.isfinite(star_fluxes), star_fluxes, 0.0)
    gal_fluxes = np.where(np.isfinite(gal_fluxes), gal_fluxes, 0.0)

    vs = np.zeros(layout.size, dtype=float)
    vs[layout.u] = np.asarray(entry.pos, dtype=float)
    vs[layout.a] = [0.8, 0.2] if entry.is_star else [0.2, 0.8]

    ref = layout.ref_band
    for i, fluxes in ((STAR, star_fluxes), (GALAXY, gal_fluxes)):
        vs[layout.r1[i]] = math.log(max(MIN_FLUX_INIT, float(fluxes[ref])))
        vs[layout.r2[i]] = 1e-3
        for b in range(layout.n_bands - 1):
            vs[layout.c1[b, i]] = _color(float(fluxes[b]), float(fluxes[b + 1]))
            vs[layout.c2[b, i]] = 1e-2

    lo, hi = UNIT_CLIP
    vs[layout.e_dev] = min(max(float(entry.gal_frac_dev), lo), hi)
    vs[layout.e_axis] = 0.8 if entry.is_star else min(max(float(entry.gal_ab), lo), hi)
    vs[layout.e_angle] = float(entry.gal_angle)
    vs[layout.e_scale] = MIN_SCALE if entry.is_star else max(float(entry.gal_scale), MIN_SCALE)
    return vs


def initialize_model_params(catalog: Sequence[CatalogEntry], layout: ParamLayout) -> ModelParams:
    vp = [init_source(entry, layout) for entry in catalog]
    logger.debug("Initialized %d source(s)", len(vp))
    return ModelParams(vp, layout)


def source_fluxes(vs, layout: ParamLayout, type_index: int) -> np.ndarray:
    """Expected per-band flux of one source type.

    The reference band flux is the log-normal mean exp(r1 + r2/2); the other
    bands follow from the color locations c1 walking up and down from it.
    """
    vs = np.asarray(vs, dtype=float)
    i = int(type_index)
    ref = layout.ref_band
    out = np.empty(layout.n_bands, dtype=float)
    out[ref] = math.exp(vs[layout.r1[i]] + 0.5 * vs[layout.r2[i]])
    for b in range(ref, layout.n_bands - 1):
        out[b + 1] = out[b] * math.exp(vs[layout.c1[b, i]])
    for b in range(ref, 0, -1):
        out[b - 1] = out[b] / math.exp(vs[layout.c1[b - 1, i]])
    return out


def catalog_entry_from_params(vs, layout: ParamLayout, objid: str = "", thing_id: int = -1) -> CatalogEntry:
    vs = np.asarray(vs, dtype=float)
    u = vs[layout.u]
    return CatalogEntry(
        pos=(float(u[0]), float(u[1])),
        is_star=bool(vs[layout.a[STAR]] > 0.5),
        star_fluxes=source_fluxes(vs, layout, STAR),
        gal_fluxes=source_fluxes(vs, layout, GALAXY),
        gal_frac_dev=float(vs[layout.e_dev[0]]),
        gal_ab=float(vs[layout.e_axis[0]]),
        gal_angle=float(vs[layout.e_angle[0]]),
        gal_scale=float(vs[layout.e_scale[0]]),
        objid=str(objid),
        thing_id=int(thing_id),
    )
