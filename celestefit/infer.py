"""
Per-source inference driver.

Every target source is fitted on its own: it becomes the only active source
of a working copy of the model parameters, its tiles are trimmed, and its
ELBO is maximized. Source-level failures are collected as ``SourceOutcome``
values instead of aborting the run.
"""

from __future__ import annotations

import concurrent.futures as cf
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

import numpy as np
import pandas as pd

from .catalog import CatalogEntry, flux_to_mag, fluxes_to_color, max_star_flux
from .errors import SOURCE_FAILURES
from .images import Image
from .layout import ParamLayout, celeste_layout
from .model_params import STAR, ModelParams, catalog_entry_from_params, initialize_model_params
from .objective import Objective
from .optimize import OptimizeStatus, maximize_f
from .tiling import TiledImage, break_blob_into_tiles, trim_source_tiles
from .transform import ParameterTransform

logger = logging.getLogger("celestefit.infer")


@dataclass
class InferOptions:
    tile_width: int = 20
    min_flux: float = 2.0
    max_iters: int = 50
    noise_fraction: float = 0.1
    objid: str | None = None
    ra_range: tuple[float, float] = (-1000.0, 1000.0)
    dec_range: tuple[float, float] = (-1000.0, 1000.0)
    max_workers: int = 1
    ftol: float = 1e-9
    gtol: float = 1e-6
    frozen: tuple[str, ...] = ()
    verbose: bool = False

    def __post_init__(self):
        if int(self.tile_width) < 1:
            raise ValueError(f"tile_width must be >= 1, got {self.tile_width}")
        if int(self.max_iters) < 1:
            raise ValueError(f"max_iters must be >= 1, got {self.max_iters}")
        if int(self.max_workers) < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        if not (np.isfinite(self.noise_fraction) and self.noise_fraction >= 0):
            raise ValueError(f"noise_fraction must be finite and >= 0, got {self.noise_fraction}")
        for name in ("ra_range", "dec_range"):
            lo, hi = getattr(self, name)
            if not float(lo) < float(hi):
                raise ValueError(f"{name} must be (low, high) with low < high, got {getattr(self, name)}")
            setattr(self, name, (float(lo), float(hi)))
        if self.objid is not None:
            self.objid = str(self.objid)
        self.frozen = tuple(str(x) for x in self.frozen)

    @classmethod
    def from_config(cls, cfg: dict[str, Any]) -> "InferOptions":
        icfg = cfg.get("infer", {}) or {}
        ocfg = cfg.get("optimizer", {}) or {}
        return cls(
            tile_width=int(icfg.get("tile_width", 20)),
            min_flux=float(icfg.get("min_flux", 2.0)),
            max_iters=int(icfg.get("max_iters", 50)),
            noise_fraction=float(icfg.get("noise_fraction", 0.1)),
            objid=icfg.get("objid", None),
            ra_range=tuple(icfg.get("ra_range", (-1000.0, 1000.0))),
            dec_range=tuple(icfg.get("dec_range", (-1000.0, 1000.0))),
            max_workers=int(icfg.get("max_workers", 1)),
            ftol=float(ocfg.get("ftol", 1e-9)),
            gtol=float(ocfg.get("gtol", 1e-6)),
            frozen=tuple(ocfg.get("frozen", ()) or ()),
            verbose=bool(ocfg.get("verbose", False)),
        )


@dataclass
class InferenceResult:
    thing_id: int
    objid: str
    ra: float
    dec: float
    vs: np.ndarray
    iteration_count: int
    converged: bool
    status: OptimizeStatus
    max_f: float
    init_time: float
    fit_time: float


@dataclass
class SourceOutcome:
    """Result of one source: either ``result`` or the ``error`` that stopped it."""

    source: int
    thing_id: int
    objid: str
    result: InferenceResult | None = None
    error: Exception | None = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.result is not None

    @property
    def reason(self) -> str:
        if self.error is None:
            return ""
        return f"{type(self.error).__name__}: {self.error}"


def select_target_sources(
    catalog: Sequence[CatalogEntry],
    options: InferOptions,
) -> tuple[list[CatalogEntry], list[int]]:
    """Apply the flux floor and objid filter, then pick targets inside the RA/Dec box.

    Returns the kept catalog (targets and their neighbors) and the indices of
    the targets within it.
    """
    kept = [e for e in catalog if max_star_flux(e) >= float(options.min_flux)]
    if options.objid is not None:
        kept = [e for e in kept if e.objid == options.objid]
    ra_lo, ra_hi = options.ra_range
    dec_lo, dec_hi = options.dec_range
    targets = [
        i for i, e in enumerate(kept)
        if ra_lo < e.ra < ra_hi and dec_lo < e.dec < dec_hi
    ]
    return kept, targets


def _fit_source(
    s: int,
    entry: CatalogEntry,
    mp: ModelParams,
    tiled_images: Sequence[TiledImage],
    objective: Objective,
    transform: ParameterTransform,
    options: InferOptions,
    lock: threading.Lock,
) -> SourceOutcome:
    t0 = time.time()
    work = mp.with_active([s])
    try:
        trimmed = trim_source_tiles(s, work, tiled_images, options.noise_fraction)
        init_time = time.time() - t0
        t1 = time.time()
        opt = maximize_f(
            objective,
            trimmed,
            work,
            transform,
            max_iters=options.max_iters,
            ftol=options.ftol,
            gtol=options.gtol,
            frozen=options.frozen,
            verbose=options.verbose,
        )
        fit_time = time.time() - t1
    except SOURCE_FAILURES as e:
        return SourceOutcome(source=s, thing_id=entry.thing_id, objid=entry.objid, error=e)

    vs = opt.max_x[0]
    with lock:
        # Swap the reference; other workers keep their own snapshot.
        mp.vp[s] = vs.copy()
    u = vs[mp.layout.u]
    result = InferenceResult(
        thing_id=entry.thing_id,
        objid=entry.objid,
        ra=float(u[0]),
        dec=float(u[1]),
        vs=vs,
        iteration_count=opt.iter_count,
        converged=opt.converged,
        status=opt.status,
        max_f=opt.max_f,
        init_time=float(init_time),
        fit_time=float(fit_time),
    )
    return SourceOutcome(source=s, thing_id=entry.thing_id, objid=entry.objid, result=result)


def _check_bands(images: Sequence[Image], layout: ParamLayout) -> None:
    for img in images:
        if not (0 <= int(img.band) < layout.n_bands):
            raise ValueError(f"image {img.name or '?'} has band {img.band}, layout has {layout.n_bands} band(s)")


def fit_sources(
    catalog: Sequence[CatalogEntry],
    images: Sequence[Image],
    objective: Objective,
    options: InferOptions | None = None,
    layout: ParamLayout | None = None,
) -> list[SourceOutcome]:
    """Pre-filter, then fit every target; returns one outcome per target in catalog order."""
    options = options or InferOptions()
    kept, targets = select_target_sources(catalog, options)
    logger.info("Catalog: %d entries | kept after flux/objid cut: %d | targets in box: %d",
                len(catalog), len(kept), len(targets))
    if not targets:
        return []

    if layout is None:
        layout = celeste_layout(n_bands=len(kept[0].star_fluxes))
    _check_bands(images, layout)

    tiled_images = break_blob_into_tiles(images, options.tile_width)
    mp = initialize_model_params(kept, layout)
    transform = ParameterTransform(layout)
    lock = threading.Lock()

    def _one(s: int) -> SourceOutcome:
        return _fit_source(s, kept[s], mp, tiled_images, objective, transform, options, lock)

    workers = max(1, min(int(options.max_workers), len(targets)))
    if workers == 1:
        outcomes = [_one(s) for s in targets]
    else:
        logger.info("Fitting %d source(s) with %d worker(s)", len(targets), workers)
        by_source: dict[int, SourceOutcome] = {}
        with cf.ThreadPoolExecutor(max_workers=workers) as ex:
            futs = {ex.submit(_one, s): s for s in targets}
            for fut in cf.as_completed(futs):
                by_source[futs[fut]] = fut.result()
        outcomes = [by_source[s] for s in targets]
    return outcomes


def infer(
    catalog: Sequence[CatalogEntry],
    images: Sequence[Image],
    objective: Objective,
    options: InferOptions | None = None,
    layout: ParamLayout | None = None,
) -> dict[int, InferenceResult]:
    """Fit every target source; failed sources are logged and left out of the map."""
    outcomes = fit_sources(catalog, images, objective, options, layout)
    results: dict[int, InferenceResult] = {}
    n_conv = n_max = n_fail = 0
    for o in outcomes:
        if not o.ok:
            n_fail += 1
            logger.warning("source objid=%s thing_id=%d failed: %s", o.objid, o.thing_id, o.reason)
            continue
        results[o.thing_id] = o.result
        if o.result.status is OptimizeStatus.MAX_ITERS:
            n_max += 1
        else:
            n_conv += 1
        logger.info("source objid=%s thing_id=%d: %s in %d iter(s), init %.3fs fit %.3fs",
                    o.objid, o.thing_id, o.result.status.value, o.result.iteration_count,
                    o.result.init_time, o.result.fit_time)
    logger.info("Inference summary: converged=%d max-iters=%d failed=%d total=%d",
                n_conv, n_max, n_fail, len(outcomes))
    return results


def results_to_frame(
    results: dict[int, InferenceResult],
    layout: ParamLayout,
    band_names: Sequence[str] | None = None,
) -> pd.DataFrame:
    if band_names is None:
        band_names = [str(b) for b in range(layout.n_bands)]
    band_names = list(band_names)
    if len(band_names) != layout.n_bands:
        raise ValueError(f"got {len(band_names)} band name(s) for a {layout.n_bands}-band layout")
    ref = band_names[layout.ref_band]

    rows = []
    for thing_id in sorted(results):
        r = results[thing_id]
        fitted = catalog_entry_from_params(r.vs, layout, objid=r.objid, thing_id=r.thing_id)
        row: dict[str, Any] = dict(
            thing_id=int(r.thing_id),
            ID=str(r.objid),
            RA_fit=float(r.ra),
            DEC_fit=float(r.dec),
            prob_star=float(r.vs[layout.a[STAR]]),
            is_star=bool(fitted.is_star),
        )
        for kind, fluxes in (("star", fitted.star_fluxes), ("gal", fitted.gal_fluxes)):
            row[f"{kind}_flux_{ref}"] = float(fluxes[layout.ref_band])
            row[f"{kind}_mag_{ref}"] = float(flux_to_mag(fluxes[layout.ref_band]))
            for b in range(layout.n_bands - 1):
                row[f"{kind}_color_{band_names[b]}{band_names[b + 1]}"] = float(fluxes_to_color(fluxes[b], fluxes[b + 1]))
        row.update(
            gal_frac_dev=float(fitted.gal_frac_dev),
            gal_ab=float(fitted.gal_ab),
            gal_angle_deg=float(np.rad2deg(fitted.gal_angle)),
            gal_scale=float(fitted.gal_scale),
            opt_niters=int(r.iteration_count),
            opt_converged=bool(r.converged),
            opt_status=str(r.status.value),
            elbo=float(r.max_f),
            init_time=float(r.init_time),
            fit_time=float(r.fit_time),
        )
        rows.append(row)
    return pd.DataFrame(rows)


def write_results(
    results: dict[int, InferenceResult],
    path: Path,
    layout: ParamLayout,
    band_names: Sequence[str] | None = None,
) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df = results_to_frame(results, layout, band_names)
    df.to_csv(path, index=False)
    logger.info("Wrote: %s (%d rows)", path, len(df))
    return path
